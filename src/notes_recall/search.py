from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

import faiss
import numpy as np

from .chunking import ChunkRow
from .errors import InvalidInput
from .store import IndexStore, VectorRow

logger = logging.getLogger(__name__)


@dataclass
class Retrieved:
    chunk_id: str
    note_id: str
    note_title: str
    text: str
    score: float


def normalize_rows(matrix: np.ndarray) -> np.ndarray:
    """Return a float32 copy of `matrix` with every non-zero row scaled to unit L2 length."""
    out = np.array(matrix, dtype="float32", ndmin=2, copy=True)
    faiss.normalize_L2(out)
    return out


def normalize_vector(vector: Sequence[float] | np.ndarray) -> np.ndarray:
    return normalize_rows(np.asarray(vector, dtype="float32").reshape(1, -1))[0]


class VectorSearch:
    """
    Exhaustive cosine-similarity search over every stored vector.

    Query vectors must already be unit length, so the inner product is the
    cosine similarity. Results are capped per note so a single long note
    cannot crowd out the rest.
    """

    def __init__(self, store: IndexStore) -> None:
        self.store = store

    async def search_top_k(
        self,
        query_vector: Sequence[float] | np.ndarray,
        k: int,
        min_score: float = 0.2,
        max_per_document: int = 4,
    ) -> List[Retrieved]:
        return await self.search_multiple_queries([query_vector], k, min_score, max_per_document)

    async def search_multiple_queries(
        self,
        query_vectors: Sequence[Sequence[float] | np.ndarray],
        k: int,
        min_score: float = 0.2,
        max_per_document: int = 4,
    ) -> List[Retrieved]:
        """
        Score each chunk against every query and keep its best score.

        A chunk that matches any single query well surfaces even if the other
        queries miss it entirely.
        """
        _check_limits(k, max_per_document)
        if len(query_vectors) == 0:
            return []

        dimensions = {len(q) for q in query_vectors}
        if len(dimensions) != 1 or 0 in dimensions:
            raise InvalidInput(f"query vectors must share one non-zero dimension, got {sorted(dimensions)}")
        queries = np.asarray([np.asarray(q, dtype="float32") for q in query_vectors], dtype="float32")
        rows = await self.store.get_scan_rows()
        chunks, matrix = _matching_dimension(rows, queries.shape[1])
        if not chunks:
            return []

        scores = _best_scores(matrix, queries)
        return _select(chunks, scores, k, min_score, max_per_document)


def _check_limits(k: int, max_per_document: int) -> None:
    if k <= 0:
        raise InvalidInput(f"k must be positive, got {k}")
    if max_per_document <= 0:
        raise InvalidInput(f"max_per_document must be positive, got {max_per_document}")


def _matching_dimension(
    rows: List[Tuple[ChunkRow, VectorRow]], dimension: int
) -> Tuple[List[ChunkRow], np.ndarray]:
    chunks: List[ChunkRow] = []
    components: List[np.ndarray] = []
    skipped = 0
    for chunk, vector in rows:
        if vector.dimension != dimension:
            skipped += 1
            continue
        chunks.append(chunk)
        components.append(vector.components)
    if skipped:
        logger.warning("Skipped %d stored vectors whose dimension is not %d", skipped, dimension)
    if not components:
        return chunks, np.empty((0, dimension), dtype="float32")
    return chunks, np.vstack(components).astype("float32", copy=False)


def _best_scores(matrix: np.ndarray, queries: np.ndarray) -> np.ndarray:
    n = matrix.shape[0]
    index = faiss.IndexFlatIP(matrix.shape[1])
    index.add(np.ascontiguousarray(matrix))
    distances, indices = index.search(np.ascontiguousarray(queries), n)

    per_query = np.full((queries.shape[0], n), np.nan, dtype="float32")
    for q in range(queries.shape[0]):
        found = indices[q] >= 0
        per_query[q, indices[q][found]] = distances[q][found]
    # fmax ignores NaN from a single query as long as another query scored the chunk.
    return np.fmax.reduce(per_query, axis=0)


def _select(
    chunks: List[ChunkRow],
    scores: np.ndarray,
    k: int,
    min_score: float,
    max_per_document: int,
) -> List[Retrieved]:
    keep = np.flatnonzero(np.isfinite(scores) & (scores >= min_score))
    # Stable sort: equal scores stay in vector insertion order.
    order = keep[np.argsort(-scores[keep], kind="stable")]

    results: List[Retrieved] = []
    per_note: Dict[str, int] = {}
    for i in order:
        if len(results) >= k:
            break
        chunk = chunks[int(i)]
        count = per_note.get(chunk.note_id, 0)
        if count >= max_per_document:
            continue
        per_note[chunk.note_id] = count + 1
        results.append(
            Retrieved(
                chunk_id=chunk.chunk_id,
                note_id=chunk.note_id,
                note_title=chunk.note_title,
                text=chunk.text,
                score=float(scores[i]),
            )
        )
    return results


__all__ = ["Retrieved", "VectorSearch", "normalize_rows", "normalize_vector"]
