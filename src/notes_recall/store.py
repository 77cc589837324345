"""
SQLite-backed index store.

Holds three tables that always change together:

- notes_meta: one row per indexed note, carrying the body hash
- chunks: content-addressed slices of each note, indexed by note_id
- vectors: one unit-length embedding per chunk

Every logical operation runs in a single transaction, so readers never see
new chunks next to orphaned ones or a vector whose chunk is gone.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Iterable, List, Optional, Sequence, Tuple

import aiosqlite
import numpy as np

from .chunking import ChunkRow
from .errors import StorageFailure

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS notes_meta (
    note_id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    body_hash TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    last_indexed_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS chunks (
    chunk_id TEXT PRIMARY KEY,
    note_id TEXT NOT NULL,
    note_title TEXT NOT NULL,
    text TEXT NOT NULL,
    ordinal INTEGER NOT NULL,
    content_hash TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_chunks_note_id ON chunks(note_id);
CREATE TABLE IF NOT EXISTS vectors (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    chunk_id TEXT NOT NULL UNIQUE REFERENCES chunks(chunk_id) ON DELETE CASCADE,
    dimension INTEGER NOT NULL,
    components BLOB NOT NULL
);
"""

_CHUNK_COLUMNS = "chunk_id, note_id, note_title, text, ordinal, content_hash"
_MAX_PARAMS = 500


@dataclass
class NoteMeta:
    note_id: str
    title: str
    body_hash: str
    updated_at: str
    last_indexed_at: str


@dataclass
class VectorRow:
    chunk_id: str
    components: np.ndarray

    @property
    def dimension(self) -> int:
        return int(self.components.shape[0])


@dataclass
class StoreStats:
    notes: int
    chunks: int
    vectors: int


def _chunk_from_row(row: sqlite3.Row) -> ChunkRow:
    return ChunkRow(
        chunk_id=row["chunk_id"],
        note_id=row["note_id"],
        note_title=row["note_title"],
        text=row["text"],
        ordinal=row["ordinal"],
        content_hash=row["content_hash"],
    )


def _vector_from_row(row: sqlite3.Row) -> VectorRow:
    components = np.frombuffer(row["components"], dtype="float32", count=row["dimension"])
    return VectorRow(chunk_id=row["chunk_id"], components=components.copy())


def _placeholders(n: int) -> str:
    return ", ".join("?" for _ in range(n))


class IndexStore:
    """
    Explicitly constructed store handle.

    Use ``async with IndexStore(path) as store`` or call ``open()`` and
    ``close()`` yourself. One writer per store instance is assumed; writes
    issued concurrently from several coroutines are serialised.
    """

    def __init__(self, path: Path | str) -> None:
        self._path: Path | str = path if str(path) == ":memory:" else Path(path)
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def open(self) -> "IndexStore":
        if self._conn is not None:
            return self
        if isinstance(self._path, Path):
            self._path.parent.mkdir(parents=True, exist_ok=True)
        try:
            # Autocommit mode; transactions are opened explicitly below.
            self._conn = await aiosqlite.connect(str(self._path), isolation_level=None)
            self._conn.row_factory = sqlite3.Row
            await self._conn.execute("PRAGMA foreign_keys = ON")
            await self._conn.execute_fetchall("PRAGMA journal_mode = WAL")
            await self._conn.executescript(_SCHEMA)
        except sqlite3.Error as e:
            raise StorageFailure(f"Could not open index store at {self._path}: {e}") from e
        logger.debug("Opened index store at %s", self._path)
        return self

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> "IndexStore":
        return await self.open()

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def path(self) -> Path | str:
        return self._path

    @asynccontextmanager
    async def _transaction(self, write: bool = False) -> AsyncIterator[aiosqlite.Connection]:
        if self._conn is None:
            raise StorageFailure("Index store is not open")
        conn = self._conn
        async with self._lock:
            try:
                await conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
            except sqlite3.Error as e:
                raise StorageFailure(f"Could not begin transaction: {e}") from e
            try:
                yield conn
                await conn.execute("COMMIT")
            except sqlite3.Error as e:
                await self._rollback(conn)
                raise StorageFailure(f"Transaction rolled back: {e}") from e
            except BaseException:
                await self._rollback(conn)
                raise

    @staticmethod
    async def _rollback(conn: aiosqlite.Connection) -> None:
        if not conn.in_transaction:
            return
        try:
            await conn.execute("ROLLBACK")
        except sqlite3.Error:
            logger.exception("Rollback failed")

    # -------------------------------------------------------------------------
    # Note metadata
    # -------------------------------------------------------------------------

    async def get_document_meta(self, note_id: str) -> Optional[NoteMeta]:
        async with self._transaction() as conn:
            rows = await conn.execute_fetchall("SELECT * FROM notes_meta WHERE note_id = ?", (note_id,))
        if not rows:
            return None
        row = rows[0]
        return NoteMeta(
            note_id=row["note_id"],
            title=row["title"],
            body_hash=row["body_hash"],
            updated_at=row["updated_at"],
            last_indexed_at=row["last_indexed_at"],
        )

    async def put_document_meta(self, meta: NoteMeta) -> None:
        async with self._transaction(write=True) as conn:
            await conn.execute(
                "INSERT OR REPLACE INTO notes_meta (note_id, title, body_hash, updated_at, last_indexed_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (meta.note_id, meta.title, meta.body_hash, meta.updated_at, meta.last_indexed_at),
            )

    async def get_all_indexed_note_ids(self) -> List[str]:
        """Ids of every note that has chunks or metadata in the store."""
        async with self._transaction() as conn:
            rows = await conn.execute_fetchall(
                "SELECT note_id FROM notes_meta UNION SELECT DISTINCT note_id FROM chunks ORDER BY note_id"
            )
        return [r["note_id"] for r in rows]

    # -------------------------------------------------------------------------
    # Chunks
    # -------------------------------------------------------------------------

    async def get_chunks_by_document(self, note_id: str) -> List[ChunkRow]:
        async with self._transaction() as conn:
            rows = await conn.execute_fetchall(
                f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE note_id = ? ORDER BY ordinal",
                (note_id,),
            )
        return [_chunk_from_row(r) for r in rows]

    async def get_chunk_by_id(self, chunk_id: str) -> Optional[ChunkRow]:
        async with self._transaction() as conn:
            rows = await conn.execute_fetchall(
                f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE chunk_id = ?", (chunk_id,)
            )
        return _chunk_from_row(rows[0]) if rows else None

    async def get_all_chunks(self) -> List[ChunkRow]:
        async with self._transaction() as conn:
            rows = await conn.execute_fetchall(f"SELECT {_CHUNK_COLUMNS} FROM chunks ORDER BY note_id, ordinal")
        return [_chunk_from_row(r) for r in rows]

    async def get_chunks_for_documents(self, note_ids: Iterable[str]) -> List[ChunkRow]:
        ids = sorted(set(note_ids))
        if not ids:
            return []
        async with self._transaction() as conn:
            rows = await conn.execute_fetchall(
                f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE note_id IN ({_placeholders(len(ids))}) "
                "ORDER BY note_id, ordinal",
                ids,
            )
        return [_chunk_from_row(r) for r in rows]

    async def put_chunks(self, rows: Sequence[ChunkRow]) -> None:
        if not rows:
            return
        async with self._transaction(write=True) as conn:
            await self._upsert_chunks(conn, rows)

    async def delete_chunks(self, chunk_ids: Sequence[str]) -> None:
        """Delete chunks and, through the foreign key, their vectors."""
        if not chunk_ids:
            return
        async with self._transaction(write=True) as conn:
            await conn.executemany("DELETE FROM chunks WHERE chunk_id = ?", [(c,) for c in chunk_ids])

    async def replace_document_chunks(self, note_id: str, rows: Sequence[ChunkRow]) -> List[str]:
        """
        Make `rows` the complete chunk set of `note_id`.

        Chunks of the note that are not in `rows` are deleted together with
        their vectors, and every row is upserted, all in one transaction.

        Returns:
            The deleted chunk ids.
        """
        keep = {r.chunk_id for r in rows}
        async with self._transaction(write=True) as conn:
            existing = [
                r["chunk_id"]
                for r in await conn.execute_fetchall("SELECT chunk_id FROM chunks WHERE note_id = ?", (note_id,))
            ]
            orphans = [c for c in existing if c not in keep]
            if orphans:
                await conn.executemany("DELETE FROM chunks WHERE chunk_id = ?", [(c,) for c in orphans])
            await self._upsert_chunks(conn, rows)
        return orphans

    @staticmethod
    async def _upsert_chunks(conn: aiosqlite.Connection, rows: Sequence[ChunkRow]) -> None:
        # ON CONFLICT keeps the row (and so its vector) alive; REPLACE would cascade.
        await conn.executemany(
            f"INSERT INTO chunks ({_CHUNK_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(chunk_id) DO UPDATE SET note_id = excluded.note_id, "
            "note_title = excluded.note_title, text = excluded.text, "
            "ordinal = excluded.ordinal, content_hash = excluded.content_hash",
            [(r.chunk_id, r.note_id, r.note_title, r.text, r.ordinal, r.content_hash) for r in rows],
        )

    # -------------------------------------------------------------------------
    # Vectors
    # -------------------------------------------------------------------------

    async def put_vectors(self, rows: Sequence[VectorRow]) -> None:
        if not rows:
            return
        payload = []
        for r in rows:
            components = np.ascontiguousarray(r.components, dtype="float32")
            payload.append((r.chunk_id, int(components.shape[0]), components.tobytes()))
        async with self._transaction(write=True) as conn:
            await conn.executemany(
                "INSERT INTO vectors (chunk_id, dimension, components) VALUES (?, ?, ?) "
                "ON CONFLICT(chunk_id) DO UPDATE SET dimension = excluded.dimension, "
                "components = excluded.components",
                payload,
            )

    async def get_vector_by_chunk(self, chunk_id: str) -> Optional[VectorRow]:
        async with self._transaction() as conn:
            rows = await conn.execute_fetchall(
                "SELECT chunk_id, dimension, components FROM vectors WHERE chunk_id = ?", (chunk_id,)
            )
        return _vector_from_row(rows[0]) if rows else None

    async def chunk_ids_missing_vectors(self, chunk_ids: Sequence[str]) -> List[str]:
        """Return the ids in `chunk_ids` that have no stored vector, in input order."""
        if not chunk_ids:
            return []
        ids = list(chunk_ids)
        present = set()
        async with self._transaction() as conn:
            # Stay under SQLite's bound-parameter limit for very long notes.
            for i in range(0, len(ids), _MAX_PARAMS):
                batch = ids[i : i + _MAX_PARAMS]
                rows = await conn.execute_fetchall(
                    f"SELECT chunk_id FROM vectors WHERE chunk_id IN ({_placeholders(len(batch))})",
                    batch,
                )
                present.update(r["chunk_id"] for r in rows)
        return [c for c in ids if c not in present]

    async def get_all_vectors(self) -> List[VectorRow]:
        async with self._transaction() as conn:
            rows = await conn.execute_fetchall("SELECT chunk_id, dimension, components FROM vectors ORDER BY seq")
        return [_vector_from_row(r) for r in rows]

    async def get_scan_rows(self) -> List[Tuple[ChunkRow, VectorRow]]:
        """Every chunk that has a vector, in vector insertion order, from one snapshot."""
        async with self._transaction() as conn:
            rows = await conn.execute_fetchall(
                "SELECT c.chunk_id, c.note_id, c.note_title, c.text, c.ordinal, c.content_hash, "
                "v.dimension, v.components FROM vectors v JOIN chunks c ON c.chunk_id = v.chunk_id "
                "ORDER BY v.seq"
            )
        return [(_chunk_from_row(r), _vector_from_row(r)) for r in rows]

    # -------------------------------------------------------------------------
    # Whole-note operations
    # -------------------------------------------------------------------------

    async def delete_document(self, note_id: str) -> None:
        async with self._transaction(write=True) as conn:
            await conn.execute("DELETE FROM chunks WHERE note_id = ?", (note_id,))
            await conn.execute("DELETE FROM notes_meta WHERE note_id = ?", (note_id,))

    async def clear(self) -> None:
        async with self._transaction(write=True) as conn:
            await conn.execute("DELETE FROM vectors")
            await conn.execute("DELETE FROM chunks")
            await conn.execute("DELETE FROM notes_meta")

    async def count_rows(self) -> StoreStats:
        async with self._transaction() as conn:
            counts = []
            for table in ("notes_meta", "chunks", "vectors"):
                rows = await conn.execute_fetchall(f"SELECT COUNT(*) AS n FROM {table}")
                counts.append(rows[0]["n"])
        return StoreStats(*counts)


__all__ = ["IndexStore", "NoteMeta", "StoreStats", "VectorRow"]
