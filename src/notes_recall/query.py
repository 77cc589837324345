from __future__ import annotations

import logging
from dataclasses import dataclass, field
from textwrap import shorten
from typing import List, Optional, Sequence

import numpy as np
from rich.console import Console
from rich.panel import Panel

from .config import AppConfig, SearchPass
from .errors import InvalidInput, NotesRecallError, ProviderFailure
from .providers import (
    AnswerGenerator,
    AnswerResult,
    ChatMessage,
    Citation,
    ConceptExtractor,
    ContextChunk,
    EmbeddingProvider,
    call_provider,
    check_embeddings,
    clamp_contexts,
    clamp_history,
)
from .search import Retrieved, VectorSearch, normalize_rows

logger = logging.getLogger(__name__)

console = Console()


@dataclass
class RagAnswer:
    answer: str
    citations: List[Citation]
    used_chunk_ids: List[str]


@dataclass
class RagResult:
    answer: RagAnswer
    retrieved: List[Retrieved]
    expanded_concepts: List[str] = field(default_factory=list)


def build_context_summary(hits: Sequence[Retrieved], max_chars: int = 500) -> str:
    return "\n\n".join(f"[{r.note_title}]: {r.text[:max_chars]}" for r in hits)


def merge_first_seen(primary: Sequence[Retrieved], secondary: Sequence[Retrieved]) -> List[Retrieved]:
    """Append `secondary` hits whose chunk is not already present; earlier scores win."""
    merged = list(primary)
    seen = {r.chunk_id for r in merged}
    for r in secondary:
        if r.chunk_id not in seen:
            seen.add(r.chunk_id)
            merged.append(r)
    return merged


def rank(hits: Sequence[Retrieved], top_n: int) -> List[Retrieved]:
    # sorted() is stable, so ties keep their merge order.
    return sorted(hits, key=lambda r: r.score, reverse=True)[:top_n]


class MultiHopRetriever:
    """
    Answers questions over the index in one or two retrieval passes.

    The first pass samples broadly across notes. Concepts drawn from those
    hits are embedded and searched alongside the question in a second, more
    permissive pass, and the union is re-ranked before answering. Concept
    extraction is optional: if it fails the question is answered from the
    first pass alone.
    """

    def __init__(
        self,
        search: VectorSearch,
        embedder: EmbeddingProvider,
        concept_extractor: Optional[ConceptExtractor],
        answer_generator: AnswerGenerator,
        cfg: AppConfig | None = None,
    ) -> None:
        self.search = search
        self.embedder = embedder
        self.concept_extractor = concept_extractor
        self.answer_generator = answer_generator
        self.cfg = cfg or AppConfig()

    async def ask(self, question: str, history: Optional[Sequence[ChatMessage]] = None) -> RagResult:
        question = _check_question(question)
        query_vec = (await self._embed([question]))[0]

        first = self.cfg.first_pass
        pass1 = await self.search.search_top_k(query_vec, first.k, first.min_score, first.max_per_document)
        logger.debug("Pass 1 returned %d chunks", len(pass1))

        concepts = await self._extract_concepts(question, pass1)
        merged = list(pass1)
        if concepts:
            concept_vecs = await self._embed(concepts)
            expansion = self.cfg.expansion_pass
            pass2 = await self.search.search_multiple_queries(
                [query_vec, *concept_vecs],
                expansion.k,
                expansion.min_score,
                expansion.max_per_document,
            )
            logger.debug("Pass 2 over %d concepts returned %d chunks", len(concepts), len(pass2))
            merged = merge_first_seen(pass1, pass2)

        top = rank(merged, self.cfg.final_top_n)
        answer = await self._answer(question, top, history)
        return RagResult(answer=answer, retrieved=top, expanded_concepts=concepts)

    async def ask_simple(self, question: str, history: Optional[Sequence[ChatMessage]] = None) -> RagResult:
        """Single retrieval pass with no concept expansion."""
        question = _check_question(question)
        query_vec = (await self._embed([question]))[0]
        settings: SearchPass = self.cfg.single_pass
        retrieved = await self.search.search_top_k(
            query_vec, settings.k, settings.min_score, settings.max_per_document
        )
        answer = await self._answer(question, retrieved, history)
        return RagResult(answer=answer, retrieved=retrieved)

    async def _embed(self, texts: List[str]) -> np.ndarray:
        raw = await call_provider("embedding", self.embedder.embed(texts), self.cfg.provider_timeout_s)
        return normalize_rows(check_embeddings(raw, len(texts)))

    async def _extract_concepts(self, question: str, hits: Sequence[Retrieved]) -> List[str]:
        if self.concept_extractor is None or self.cfg.max_concepts == 0:
            return []
        summary = build_context_summary(hits, self.cfg.concept_context_chars)
        try:
            raw = await call_provider(
                "concepts",
                self.concept_extractor.extract_concepts(question, summary),
                self.cfg.provider_timeout_s,
            )
        except NotesRecallError as e:
            logger.warning("Concept extraction failed, answering from the first pass only: %s", e)
            return []
        if not isinstance(raw, (list, tuple)):
            logger.warning("Concept extractor returned %s, ignoring", type(raw).__name__)
            return []
        concepts = [c.strip() for c in raw if isinstance(c, str) and c.strip()]
        return concepts[: self.cfg.max_concepts]

    async def _answer(
        self,
        question: str,
        hits: Sequence[Retrieved],
        history: Optional[Sequence[ChatMessage]],
    ) -> RagAnswer:
        cfg = self.cfg
        contexts = clamp_contexts(
            [
                ContextChunk(chunk_id=r.chunk_id, note_id=r.note_id, note_title=r.note_title, text=r.text)
                for r in hits
            ],
            cfg.answer_max_contexts,
            cfg.answer_context_chars,
            cfg.answer_total_context_chars,
        )
        turns = clamp_history(history, cfg.history_max_messages, cfg.history_message_chars)
        out = await call_provider(
            "answer",
            self.answer_generator.answer(question, contexts, turns),
            self.cfg.provider_timeout_s,
        )
        if not isinstance(out, AnswerResult):
            raise ProviderFailure("answer", f"expected AnswerResult, got {type(out).__name__}")
        return RagAnswer(
            answer=out.answer,
            citations=list(out.citations),
            used_chunk_ids=[c.chunk_id for c in contexts],
        )


def _check_question(question: str) -> str:
    cleaned = (question or "").strip()
    if not cleaned:
        raise InvalidInput("question must not be empty")
    return cleaned


def print_result(result: RagResult) -> None:
    console.rule("[bold green]Answer[/bold green]")
    console.print(result.answer.answer.strip())

    if result.expanded_concepts:
        console.print(f"[dim]Expanded with: {', '.join(result.expanded_concepts)}[/dim]")

    if result.answer.citations:
        console.rule("[bold magenta]Citations[/bold magenta]")
        for c in result.answer.citations:
            console.print(f"[magenta]{c.note_id}[/magenta]: \"{c.quote}\"")

    console.rule("[bold blue]Retrieved Chunks[/bold blue]")
    for r in result.retrieved:
        preview = shorten(r.text.replace("\n", " "), width=180, placeholder="...")
        console.print(
            Panel(
                preview,
                title=r.note_title,
                subtitle=f"score={r.score:.3f}",
                expand=False,
            )
        )


__all__ = [
    "MultiHopRetriever",
    "RagAnswer",
    "RagResult",
    "build_context_summary",
    "merge_first_seen",
    "print_result",
    "rank",
]
