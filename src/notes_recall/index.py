from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Sequence

from .chunking import UNTITLED, ChunkRow, build_chunk_rows, combined_text, sha256_hex
from .config import AppConfig
from .errors import ProviderFailure
from .ingest import Note
from .providers import EmbeddingProvider, call_provider, check_embeddings
from .search import normalize_rows
from .store import IndexStore, NoteMeta, VectorRow

logger = logging.getLogger(__name__)


@dataclass
class IndexResult:
    changed: bool
    embedded_count: int
    total_chunks: int


@dataclass
class SyncReport:
    indexed: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    embedded_count: int = 0


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Indexer:
    """
    Keeps the store in step with note content.

    A note is re-chunked only when the hash of its normalised text changes,
    and only chunks without a stored vector are sent to the embedder. Note
    metadata is written last, so an interrupted pass is simply redone (minus
    the vectors it already saved) on the next call.
    """

    def __init__(self, store: IndexStore, embedder: EmbeddingProvider, cfg: AppConfig | None = None) -> None:
        self.store = store
        self.embedder = embedder
        self.cfg = cfg or AppConfig()

    async def upsert_document(self, note: Note) -> IndexResult:
        text = combined_text(note.title, note.content)
        body_hash = sha256_hex(text)

        existing = await self.store.get_document_meta(note.id)
        if existing is not None and existing.body_hash == body_hash:
            logger.debug("Note %s unchanged, skipping", note.id)
            return IndexResult(changed=False, embedded_count=0, total_chunks=0)

        rows = build_chunk_rows(
            note.id,
            note.title,
            text,
            max_chars=self.cfg.chunk_max_chars,
            overlap_chars=self.cfg.chunk_overlap_chars,
        )
        removed = await self.store.replace_document_chunks(note.id, rows)
        if removed:
            logger.debug("Note %s: removed %d stale chunks", note.id, len(removed))

        missing = set(await self.store.chunk_ids_missing_vectors([r.chunk_id for r in rows]))
        to_embed = [r for r in rows if r.chunk_id in missing]
        embedded = await self._embed_chunks(to_embed)

        now = _now()
        await self.store.put_document_meta(
            NoteMeta(
                note_id=note.id,
                title=rows[0].note_title if rows else (note.title or UNTITLED),
                body_hash=body_hash,
                updated_at=note.updated_at or now,
                last_indexed_at=now,
            )
        )
        logger.info("Indexed note %s: %d chunks, %d embedded", note.id, len(rows), embedded)
        return IndexResult(changed=True, embedded_count=embedded, total_chunks=len(rows))

    async def _embed_chunks(self, chunks: Sequence[ChunkRow]) -> int:
        if not chunks:
            return 0
        size = self.cfg.embed_batch_size
        batches = [chunks[i : i + size] for i in range(0, len(chunks), size)]
        semaphore = asyncio.Semaphore(self.cfg.embed_concurrency)

        async def run(batch: Sequence[ChunkRow]) -> int:
            async with semaphore:
                raw = await call_provider(
                    "embedding",
                    self.embedder.embed([c.text for c in batch]),
                    self.cfg.provider_timeout_s,
                )
                vectors = check_embeddings(raw, len(batch))
                unit = normalize_rows(vectors)
                # Each batch is persisted on its own; finished batches survive a later failure.
                await self.store.put_vectors(
                    [VectorRow(chunk_id=c.chunk_id, components=unit[j]) for j, c in enumerate(batch)]
                )
                return len(batch)

        results = await asyncio.gather(*(run(b) for b in batches), return_exceptions=True)
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            raise errors[0]
        return sum(results)

    async def delete_document(self, note_id: str) -> None:
        await self.store.delete_document(note_id)
        logger.info("Removed note %s from the index", note_id)

    async def rebuild(self, notes: Iterable[Note]) -> List[IndexResult]:
        """Drop the index entries of `notes` and index them again from scratch."""
        notes = list(notes)
        for note in notes:
            await self.store.delete_document(note.id)
        return [await self.upsert_document(note) for note in notes]

    async def sync(
        self,
        notes: Iterable[Note],
        on_note: Optional[Callable[[Note], None]] = None,
        keep: Iterable[str] = (),
    ) -> SyncReport:
        """
        Bring the index in line with exactly `notes`.

        Notes missing from `notes` are removed from the index unless their id
        is in `keep` (for example a file that exists but could not be read).
        An embedding failure on one note is recorded and the others still
        proceed.
        """
        report = SyncReport()
        seen = set(keep)
        for note in notes:
            seen.add(note.id)
            try:
                result = await self.upsert_document(note)
            except ProviderFailure as e:
                logger.error("Could not index note %s: %s", note.id, e)
                report.failed.append(note.id)
            else:
                (report.indexed if result.changed else report.unchanged).append(note.id)
                report.embedded_count += result.embedded_count
            if on_note is not None:
                on_note(note)

        for note_id in await self.store.get_all_indexed_note_ids():
            if note_id not in seen:
                await self.delete_document(note_id)
                report.removed.append(note_id)
        return report


__all__ = ["IndexResult", "Indexer", "SyncReport"]
