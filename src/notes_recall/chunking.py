from __future__ import annotations

import hashlib
import re
import warnings
from dataclasses import dataclass
from typing import List

from bs4 import BeautifulSoup, MarkupResemblesLocatorWarning

from .errors import InvalidInput

DEFAULT_MAX_CHARS = 2000
DEFAULT_OVERLAP_CHARS = 250
UNTITLED = "Untitled Note"

_TRAILING_BLANKS = re.compile(r"[ \t]+\n")
_BLANK_RUNS = re.compile(r"\n{3,}")


@dataclass
class ChunkRow:
    chunk_id: str
    note_id: str
    note_title: str
    text: str
    ordinal: int
    content_hash: str


def normalize(raw_markup: str) -> str:
    """
    Convert note markup to readable plain text for embedding.

    Tags are dropped, non-breaking spaces become plain spaces and runs of
    blank lines collapse to a single blank line.
    """
    if not raw_markup:
        return ""
    with warnings.catch_warnings():
        # Plain-text notes that look like a path or URL are still notes.
        warnings.simplefilter("ignore", MarkupResemblesLocatorWarning)
        text = BeautifulSoup(raw_markup, "html.parser").get_text()
    text = text.replace("\u00a0", " ")
    text = _TRAILING_BLANKS.sub("\n", text)
    text = _BLANK_RUNS.sub("\n\n", text)
    return text.strip()


def combined_text(title: str | None, content: str | None) -> str:
    return f"{title or ''}\n\n{normalize(content or '')}".strip()


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def chunk_text(
    text: str,
    max_chars: int = DEFAULT_MAX_CHARS,
    overlap_chars: int = DEFAULT_OVERLAP_CHARS,
) -> List[str]:
    if max_chars <= 0:
        raise InvalidInput(f"max_chars must be positive, got {max_chars}")
    if overlap_chars < 0:
        raise InvalidInput(f"overlap_chars must not be negative, got {overlap_chars}")

    chunks: List[str] = []
    cleaned = text.strip()
    if not cleaned:
        return chunks

    start = 0
    while start < len(cleaned):
        end = min(len(cleaned), start + max_chars)
        piece = cleaned[start:end].strip()
        if piece:
            chunks.append(piece)
        if end >= len(cleaned):
            break
        next_start = end - overlap_chars
        # An overlap as wide as the window would never advance.
        start = next_start if next_start > start else end
    return chunks


def stable_chunk_id(note_id: str, content_hash: str, used: set[str], ordinal: int) -> str:
    chunk_id = f"{note_id}:{content_hash}"
    if chunk_id in used:
        chunk_id = f"{note_id}:{content_hash}-{ordinal}"
    used.add(chunk_id)
    return chunk_id


def build_chunk_rows(
    note_id: str,
    note_title: str | None,
    text: str,
    max_chars: int = DEFAULT_MAX_CHARS,
    overlap_chars: int = DEFAULT_OVERLAP_CHARS,
) -> List[ChunkRow]:
    """Chunk `text` and assign content-addressed ids in ordinal order."""
    used: set[str] = set()
    rows: List[ChunkRow] = []
    for ordinal, piece in enumerate(chunk_text(text, max_chars, overlap_chars)):
        content_hash = sha256_hex(piece)
        rows.append(
            ChunkRow(
                chunk_id=stable_chunk_id(note_id, content_hash, used, ordinal),
                note_id=note_id,
                note_title=note_title or UNTITLED,
                text=piece,
                ordinal=ordinal,
                content_hash=content_hash,
            )
        )
    return rows


__all__ = [
    "ChunkRow",
    "build_chunk_rows",
    "chunk_text",
    "combined_text",
    "normalize",
    "sha256_hex",
    "stable_chunk_id",
]
