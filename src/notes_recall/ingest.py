from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional

from pypdf import PdfReader
from pypdf.errors import PdfReadError
from rich.console import Console

from .errors import InvalidInput

console = Console()

NOTE_SUFFIXES = {".md", ".markdown", ".txt", ".html", ".htm", ".pdf"}


@dataclass
class Note:
    id: str
    title: str
    content: str
    updated_at: Optional[str] = None


@dataclass
class NoteScan:
    notes: List[Note] = field(default_factory=list)
    unreadable: List[str] = field(default_factory=list)


def load_text(path: Path) -> str:
    return path.read_text(encoding="utf-8")


def load_pdf(path: Path) -> str:
    reader = PdfReader(str(path))
    pages = []
    for page in reader.pages:
        try:
            pages.append(page.extract_text() or "")
        except Exception as exc:  # pypdf raises a wide range of errors on damaged pages
            console.print(f"[yellow]Skipping unreadable page in {path.name}: {exc}[/yellow]")
            pages.append("")
    return "\n\n".join(pages)


def iter_files(data_dir: Path) -> Iterable[Path]:
    for path in sorted(data_dir.rglob("*")):
        if path.is_file() and path.suffix.lower() in NOTE_SUFFIXES:
            yield path


def note_from_path(path: Path, data_dir: Path) -> Note:
    """Read one file as a note. The note id is the path relative to `data_dir`."""
    if path.suffix.lower() == ".pdf":
        content = load_pdf(path)
    else:
        content = load_text(path)
    mtime = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
    return Note(
        id=path.relative_to(data_dir).as_posix(),
        title=path.stem.replace("_", " ").strip(),
        content=content,
        updated_at=mtime.isoformat(),
    )


def load_notes(data_dir: Path) -> NoteScan:
    """
    Read every note under `data_dir`.

    Files that cannot be read are reported in `unreadable` by note id, so a
    sync can tell them apart from notes that were deleted.
    """
    if not data_dir.is_dir():
        raise InvalidInput(f"Data directory not found: {data_dir}")

    scan = NoteScan()
    for path in iter_files(data_dir):
        try:
            scan.notes.append(note_from_path(path, data_dir))
        except (OSError, UnicodeDecodeError, PdfReadError) as exc:
            console.print(f"[red]Failed to read {path}: {exc}[/red]")
            scan.unreadable.append(path.relative_to(data_dir).as_posix())

    if not scan.notes:
        console.print(f"[yellow]No notes found in {data_dir}[/yellow]")
    return scan


__all__ = ["NOTE_SUFFIXES", "Note", "NoteScan", "iter_files", "load_notes", "note_from_path"]
