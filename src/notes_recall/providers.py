"""
Provider contracts the retrieval core depends on, plus concrete adapters.

The core only ever talks to the three protocols below. Responses coming back
from a provider are decoded strictly at this boundary: anything that does not
fit the expected shape becomes a ProviderFailure instead of leaking into the
index or the orchestrator.
"""

from __future__ import annotations

import asyncio
import logging
import math
import os
from typing import Any, Awaitable, List, Literal, Optional, Protocol, Sequence, TypeVar, runtime_checkable

from openai import AsyncOpenAI
from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ProviderFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ContextChunk(BaseModel):
    chunk_id: str
    note_id: str
    note_title: str
    text: str


class Citation(BaseModel):
    chunk_id: str = Field(min_length=1, validation_alias="chunkId")
    note_id: str = Field(min_length=1, validation_alias="noteId")
    quote: str = Field(min_length=1)

    model_config = {"populate_by_name": True}


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class AnswerResult(BaseModel):
    answer: str
    citations: List[Citation] = Field(default_factory=list)


class ConceptPayload(BaseModel):
    concepts: List[str] = Field(default_factory=list)

    @field_validator("concepts")
    @classmethod
    def _strip_blank(cls, value: List[str]) -> List[str]:
        return [c.strip() for c in value if c and c.strip()]


class AnswerPayload(AnswerResult):
    answer: str = Field(min_length=1)

    @field_validator("citations", mode="before")
    @classmethod
    def _drop_bad_citations(cls, value: Any) -> List[Citation]:
        # A malformed citation costs the citation, not the answer.
        if not isinstance(value, list):
            return []
        kept: List[Citation] = []
        for item in value:
            try:
                kept.append(Citation.model_validate(item))
            except ValidationError:
                logger.debug("Dropping malformed citation: %r", item)
        return kept


DEFAULT_MAX_CONTEXTS = 10
DEFAULT_CONTEXT_CHARS = 2500
DEFAULT_TOTAL_CONTEXT_CHARS = 20000
DEFAULT_MAX_HISTORY = 20
DEFAULT_HISTORY_CHARS = 4000


def clamp_contexts(
    contexts: Sequence[ContextChunk],
    max_contexts: int = DEFAULT_MAX_CONTEXTS,
    max_chars_per: int = DEFAULT_CONTEXT_CHARS,
    max_total_chars: int = DEFAULT_TOTAL_CONTEXT_CHARS,
) -> List[ContextChunk]:
    """
    Bound what is sent to the answer model.

    Takes at most `max_contexts` contexts in order, cuts each text to
    `max_chars_per`, stops before the running total passes `max_total_chars`
    and drops contexts left without an id, note id or text.
    """
    out: List[ContextChunk] = []
    total = 0
    for c in list(contexts)[:max_contexts]:
        text = c.text[:max_chars_per]
        if total + len(text) > max_total_chars:
            break
        total += len(text)
        if c.chunk_id and c.note_id and text:
            out.append(c if text == c.text else c.model_copy(update={"text": text}))
    return out


def clamp_history(
    history: Optional[Sequence[ChatMessage]],
    max_messages: int = DEFAULT_MAX_HISTORY,
    max_chars: int = DEFAULT_HISTORY_CHARS,
) -> List[ChatMessage]:
    """Keep the last `max_messages` turns, each cut to `max_chars`."""
    recent = list(history or [])[-max_messages:] if max_messages > 0 else []
    return [
        m if len(m.content) <= max_chars else m.model_copy(update={"content": m.content[:max_chars]})
        for m in recent
    ]


@runtime_checkable
class EmbeddingProvider(Protocol):
    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        """One vector per input text, same order, one dimension per call."""
        ...


@runtime_checkable
class ConceptExtractor(Protocol):
    async def extract_concepts(self, question: str, context_summary: str) -> List[str]:
        """A handful of short search phrases related to the question."""
        ...


@runtime_checkable
class AnswerGenerator(Protocol):
    async def answer(
        self,
        question: str,
        contexts: Sequence[ContextChunk],
        history: Optional[Sequence[ChatMessage]] = None,
    ) -> AnswerResult:
        ...


async def call_provider(name: str, awaitable: Awaitable[T], timeout: Optional[float]) -> T:
    """
    Await a provider call under a timeout.

    Timeouts and any exception raised by the provider are reported as
    ProviderFailure with the original error chained.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except ProviderFailure:
        raise
    except asyncio.TimeoutError as e:
        raise ProviderFailure(name, f"timed out after {timeout}s") from e
    except Exception as e:
        raise ProviderFailure(name, str(e) or type(e).__name__) from e


def check_embeddings(vectors: Any, expected: int, provider: str = "embedding") -> List[List[float]]:
    """Validate a raw embedding response: count, shared dimension, finite values."""
    if not isinstance(vectors, (list, tuple)):
        raise ProviderFailure(provider, f"expected a list of vectors, got {type(vectors).__name__}")
    if len(vectors) != expected:
        raise ProviderFailure(provider, f"returned {len(vectors)} vectors for {expected} texts")
    out: List[List[float]] = []
    dimension: Optional[int] = None
    for v in vectors:
        try:
            values = [float(x) for x in v]
        except (TypeError, ValueError) as e:
            raise ProviderFailure(provider, "vector contains non-numeric values") from e
        if not values:
            raise ProviderFailure(provider, "returned an empty vector")
        if dimension is None:
            dimension = len(values)
        elif len(values) != dimension:
            raise ProviderFailure(provider, f"mixed dimensions {dimension} and {len(values)} in one call")
        if not all(math.isfinite(x) for x in values):
            raise ProviderFailure(provider, "vector contains non-finite values")
        out.append(values)
    return out


def _decode(model: type[BaseModel], content: str, provider: str) -> Any:
    try:
        return model.model_validate_json(content)
    except ValidationError as e:
        raise ProviderFailure(provider, f"unexpected response shape: {e.error_count()} error(s)") from e


def _openai_client(api_key: str | None) -> AsyncOpenAI:
    key = api_key or os.environ.get("OPENAI_API_KEY")
    if not key:
        raise SystemExit("OPENAI_API_KEY is not set. Put it in a .env file or environment variable.")
    return AsyncOpenAI(api_key=key)


# -----------------------------------------------------------------------------
# Embedding adapters
# -----------------------------------------------------------------------------


class SentenceTransformerEmbedder:
    """Local embedding model. Encoding runs in a worker thread."""

    def __init__(self, model_name: str = "sentence-transformers/all-MiniLM-L6-v2") -> None:
        self.model_name = model_name
        self._model = None

    def _load(self):
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            logger.info("Loading embedding model: %s", self.model_name)
            self._model = SentenceTransformer(self.model_name)
        return self._model

    def _encode(self, texts: List[str]) -> List[List[float]]:
        model = self._load()
        embeddings = model.encode(texts, batch_size=32, convert_to_numpy=True)
        return embeddings.astype("float32").tolist()

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        raw = await asyncio.to_thread(self._encode, list(texts))
        return check_embeddings(raw, len(texts), "sentence-transformers")


class OpenAIEmbedder:
    def __init__(self, model: str = "text-embedding-3-small", api_key: str | None = None) -> None:
        self.model = model
        self._client = _openai_client(api_key)

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        response = await self._client.embeddings.create(model=self.model, input=list(texts))
        data = sorted(response.data, key=lambda d: d.index)
        return check_embeddings([d.embedding for d in data], len(texts), "openai-embeddings")


# -----------------------------------------------------------------------------
# Chat adapters
# -----------------------------------------------------------------------------

CONCEPT_SYSTEM_PROMPT = "\n".join(
    [
        "You extract key concepts, entities, and related topics from note contexts.",
        "Given a user question and some context from their notes, identify 2-4 additional search terms",
        "that would help find related information across their notes.",
        "",
        "Focus on named entities, related topics that might contain supporting information,",
        "and terms that could connect to other notes.",
        "",
        "Return ONLY valid JSON with this exact shape:",
        '{ "concepts": string[] }',
        "Each concept must be a short, specific phrase different from the original question.",
    ]
)

ANSWER_SYSTEM_PROMPT = "\n".join(
    [
        "You are a careful assistant answering questions over the user's notes.",
        "Prefer the provided note contexts when they are relevant and sufficient.",
        "When several notes touch on related topics, connect them and point out contradictions.",
        "If the contexts are insufficient you may use general knowledge, but then cite nothing.",
        "",
        "Return ONLY valid JSON with this exact shape:",
        '{ "answer": string, "citations": Array<{ "chunkId": string, "noteId": string, "quote": string }> }',
        "Citations must quote short exact snippets, and chunkId/noteId must match a provided context.",
    ]
)


class OpenAIConceptExtractor:
    def __init__(self, model: str = "gpt-4o-mini", api_key: str | None = None, max_concepts: int = 4) -> None:
        self.model = model
        self.max_concepts = max_concepts
        self._client = _openai_client(api_key)

    async def extract_concepts(self, question: str, context_summary: str) -> List[str]:
        user = "\n".join(
            [
                "QUESTION:",
                question,
                "",
                "CONTEXT FROM INITIAL SEARCH:",
                context_summary[:8000] or "(none)",
                "",
                "Extract 2-4 additional search concepts:",
            ]
        )
        response = await self._client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": CONCEPT_SYSTEM_PROMPT},
                {"role": "user", "content": user},
            ],
            temperature=0.3,
            max_tokens=150,
            response_format={"type": "json_object"},
        )
        content = response.choices[0].message.content or ""
        payload: ConceptPayload = _decode(ConceptPayload, content, "openai-concepts")
        return payload.concepts[: self.max_concepts]


def format_contexts(contexts: Sequence[ContextChunk]) -> str:
    blocks = [
        f"chunkId: {c.chunk_id}\nnoteId: {c.note_id}\nnoteTitle: {c.note_title}\ntext: {c.text}"
        for c in contexts
    ]
    return "\n\n---\n\n".join(blocks)


class OpenAIAnswerGenerator:
    """
    JSON-mode chat answerer.

    Contexts and history are clamped again here so the prompt stays bounded
    whoever the caller is.
    """

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        api_key: str | None = None,
        max_output_tokens: int = 1200,
        max_contexts: int = DEFAULT_MAX_CONTEXTS,
        context_chars: int = DEFAULT_CONTEXT_CHARS,
        total_context_chars: int = DEFAULT_TOTAL_CONTEXT_CHARS,
        max_history: int = DEFAULT_MAX_HISTORY,
        history_chars: int = DEFAULT_HISTORY_CHARS,
    ) -> None:
        self.model = model
        self.max_output_tokens = max_output_tokens
        self.max_contexts = max_contexts
        self.context_chars = context_chars
        self.total_context_chars = total_context_chars
        self.max_history = max_history
        self.history_chars = history_chars
        self._client = _openai_client(api_key)

    async def answer(
        self,
        question: str,
        contexts: Sequence[ContextChunk],
        history: Optional[Sequence[ChatMessage]] = None,
    ) -> AnswerResult:
        contexts = clamp_contexts(contexts, self.max_contexts, self.context_chars, self.total_context_chars)
        messages: List[dict] = [{"role": "system", "content": ANSWER_SYSTEM_PROMPT}]
        for msg in clamp_history(history, self.max_history, self.history_chars):
            messages.append({"role": msg.role, "content": msg.content})
        messages.append(
            {
                "role": "user",
                "content": f"CONTEXTS:\n{format_contexts(contexts) or '(none)'}\n\nQUESTION:\n{question}",
            }
        )
        response = await self._client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=0.2,
            max_tokens=self.max_output_tokens,
            response_format={"type": "json_object"},
        )
        choice = response.choices[0]
        if choice.finish_reason == "length":
            raise ProviderFailure("openai-chat", "response was truncated due to length")
        payload: AnswerPayload = _decode(AnswerPayload, choice.message.content or "", "openai-chat")
        return AnswerResult(answer=payload.answer, citations=payload.citations)


__all__ = [
    "AnswerGenerator",
    "AnswerPayload",
    "AnswerResult",
    "ChatMessage",
    "Citation",
    "ConceptExtractor",
    "ConceptPayload",
    "ContextChunk",
    "EmbeddingProvider",
    "OpenAIAnswerGenerator",
    "OpenAIConceptExtractor",
    "OpenAIEmbedder",
    "SentenceTransformerEmbedder",
    "call_provider",
    "check_embeddings",
    "clamp_contexts",
    "clamp_history",
    "format_contexts",
]
