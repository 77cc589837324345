"""
Shared pytest fixtures for notes_recall tests.

Provides deterministic providers so no model is loaded and no network is used.
"""

import re
from typing import List, Optional, Sequence

import pytest

from notes_recall.config import AppConfig
from notes_recall.providers import AnswerResult, ChatMessage, Citation, ContextChunk
from notes_recall.store import IndexStore


VOCAB = [
    "cell",
    "energy",
    "glucose",
    "respiration",
    "mitochondria",
    "atp",
    "light",
    "plant",
    "sugar",
    "photosynthesis",
]


class KeywordEmbedder:
    """
    Bag-of-words embedding over a tiny fixed vocabulary.

    The last component is a small constant so no text embeds to a zero vector.
    """

    dimension = len(VOCAB) + 1

    def __init__(self, fail_on_call: Optional[int] = None):
        self.calls: List[List[str]] = []
        self.fail_on_call = fail_on_call

    @property
    def embedded_texts(self) -> List[str]:
        return [t for call in self.calls for t in call]

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.fail_on_call is not None and len(self.calls) == self.fail_on_call:
            raise ConnectionError("embedding service unavailable")
        return [self._vector(t) for t in texts]

    def _vector(self, text: str) -> List[float]:
        vec = [0.0] * self.dimension
        for word in re.findall(r"[a-z]+", text.lower()):
            if word.endswith("s") and word[:-1] in VOCAB:
                word = word[:-1]
            if word == "cellular":
                word = "cell"
            if word in VOCAB:
                vec[VOCAB.index(word)] += 1.0
        vec[-1] = 0.1
        return vec


class StaticConceptExtractor:
    def __init__(self, concepts=None, error: Optional[Exception] = None):
        self.concepts = concepts or []
        self.error = error
        self.calls = []

    async def extract_concepts(self, question: str, context_summary: str) -> List[str]:
        self.calls.append((question, context_summary))
        if self.error is not None:
            raise self.error
        return list(self.concepts)


class RecordingAnswerGenerator:
    def __init__(self, answer: str = "Cells get energy from glucose.", error: Optional[Exception] = None):
        self.answer_text = answer
        self.error = error
        self.calls = []

    async def answer(
        self,
        question: str,
        contexts: Sequence[ContextChunk],
        history: Optional[Sequence[ChatMessage]] = None,
    ) -> AnswerResult:
        self.calls.append({"question": question, "contexts": list(contexts), "history": list(history or [])})
        if self.error is not None:
            raise self.error
        citations = []
        if contexts:
            first = contexts[0]
            citations.append(Citation(chunk_id=first.chunk_id, note_id=first.note_id, quote=first.text[:20]))
        return AnswerResult(answer=self.answer_text, citations=citations)


class CountingStore(IndexStore):
    """IndexStore that counts calls to its write operations."""

    WRITES = (
        "put_document_meta",
        "put_chunks",
        "delete_chunks",
        "replace_document_chunks",
        "put_vectors",
        "delete_document",
    )

    def __init__(self, path):
        super().__init__(path)
        self.writes = {name: 0 for name in self.WRITES}

    @property
    def total_writes(self) -> int:
        return sum(self.writes.values())

    async def put_document_meta(self, meta):
        self.writes["put_document_meta"] += 1
        return await super().put_document_meta(meta)

    async def put_chunks(self, rows):
        self.writes["put_chunks"] += 1
        return await super().put_chunks(rows)

    async def delete_chunks(self, chunk_ids):
        self.writes["delete_chunks"] += 1
        return await super().delete_chunks(chunk_ids)

    async def replace_document_chunks(self, note_id, rows):
        self.writes["replace_document_chunks"] += 1
        return await super().replace_document_chunks(note_id, rows)

    async def put_vectors(self, rows):
        self.writes["put_vectors"] += 1
        return await super().put_vectors(rows)

    async def delete_document(self, note_id):
        self.writes["delete_document"] += 1
        return await super().delete_document(note_id)


@pytest.fixture
async def store(tmp_path):
    """A fresh on-disk store, closed after the test."""
    s = CountingStore(tmp_path / "index" / "notes.sqlite3")
    await s.open()
    yield s
    await s.close()


@pytest.fixture
def embedder():
    return KeywordEmbedder()


@pytest.fixture
def cfg():
    return AppConfig(chunk_max_chars=100, chunk_overlap_chars=20, embed_batch_size=64)


def digits_text(length: int) -> str:
    """Text with no repeated 4-character groups and no whitespace."""
    return "".join(f"{i:04d}" for i in range(length // 4 + 1))[:length]
