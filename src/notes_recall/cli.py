from __future__ import annotations

import argparse
import asyncio
from pathlib import Path

from rich.console import Console
from rich.progress import Progress

from .config import AppConfig, load_config
from .errors import NotesRecallError
from .index import Indexer, SyncReport
from .ingest import load_notes
from .logging_config import configure_logging
from .providers import (
    EmbeddingProvider,
    OpenAIAnswerGenerator,
    OpenAIConceptExtractor,
    OpenAIEmbedder,
    SentenceTransformerEmbedder,
)
from .query import MultiHopRetriever, print_result
from .search import VectorSearch
from .store import IndexStore

console = Console()


def build_embedder(cfg: AppConfig) -> EmbeddingProvider:
    if cfg.embedding_backend == "openai":
        return OpenAIEmbedder(model=cfg.openai_embedding_model)
    return SentenceTransformerEmbedder(cfg.embedding_model_name)


async def run_ingest(cfg: AppConfig, rebuild: bool = False) -> SyncReport:
    # Raises for a missing data directory before the store is opened.
    scan = await asyncio.to_thread(load_notes, cfg.data_dir_resolved)
    notes = scan.notes
    async with IndexStore(cfg.store_path_resolved) as store:
        indexer = Indexer(store, build_embedder(cfg), cfg)
        if rebuild:
            await store.clear()
        with Progress(console=console) as progress:
            task = progress.add_task("Indexing notes...", total=len(notes))
            report = await indexer.sync(
                notes,
                on_note=lambda note: progress.update(task, advance=1, description=f"Indexed {note.id}"),
                keep=scan.unreadable,
            )
    return report


async def run_ask(cfg: AppConfig, question: str, simple: bool = False) -> None:
    async with IndexStore(cfg.store_path_resolved) as store:
        retriever = MultiHopRetriever(
            VectorSearch(store),
            build_embedder(cfg),
            OpenAIConceptExtractor(model=cfg.openai_model, max_concepts=cfg.max_concepts),
            OpenAIAnswerGenerator(
                model=cfg.openai_model,
                max_output_tokens=cfg.max_output_tokens,
                max_contexts=cfg.answer_max_contexts,
                context_chars=cfg.answer_context_chars,
                total_context_chars=cfg.answer_total_context_chars,
                max_history=cfg.history_max_messages,
                history_chars=cfg.history_message_chars,
            ),
            cfg,
        )
        stats = await store.count_rows()
        if stats.vectors == 0:
            console.print("[yellow]The index is empty. Run 'notes-recall ingest' first.[/yellow]")
            return
        console.print(f"[green]Searching {stats.notes} notes for:[/green] {question!r}")
        result = await (retriever.ask_simple(question) if simple else retriever.ask(question))
    print_result(result)


async def run_forget(cfg: AppConfig, note_id: str) -> None:
    async with IndexStore(cfg.store_path_resolved) as store:
        await store.delete_document(note_id)
    console.print(f"[green]Removed from index:[/green] {note_id}")


async def run_status(cfg: AppConfig) -> None:
    async with IndexStore(cfg.store_path_resolved) as store:
        stats = await store.count_rows()
    console.print(f"[green]Index:[/green] {cfg.store_path_resolved}")
    console.print(f"notes={stats.notes} chunks={stats.chunks} vectors={stats.vectors}")
    if stats.chunks > stats.vectors:
        console.print(
            f"[yellow]{stats.chunks - stats.vectors} chunks are waiting for embeddings; "
            "run ingest again to finish them.[/yellow]"
        )


def _print_report(report: SyncReport) -> None:
    console.print(
        f"[bold green]Index updated.[/bold green] indexed={len(report.indexed)} "
        f"unchanged={len(report.unchanged)} removed={len(report.removed)} "
        f"embedded_chunks={report.embedded_count}"
    )
    if report.failed:
        console.print(f"[red]Failed (will retry on next ingest):[/red] {', '.join(report.failed)}")


def main() -> None:
    parser = argparse.ArgumentParser(
        description="notes-recall - keep a local semantic index of your notes and ask questions over it."
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Show debug logging.")
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a config YAML file (default: $NOTES_RECALL_CONFIG or config.yaml).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    ingest_parser = subparsers.add_parser(
        "ingest",
        help="Index new and changed notes, and drop deleted ones.",
    )
    ingest_parser.add_argument(
        "--rebuild",
        action="store_true",
        help="Discard the whole index and embed every note again.",
    )

    ask_parser = subparsers.add_parser(
        "ask",
        help="Ask a question using the existing index.",
    )
    ask_parser.add_argument("question", type=str, help="Question to ask over your notes.")
    ask_parser.add_argument(
        "--simple",
        action="store_true",
        help="Single retrieval pass without concept expansion (faster).",
    )

    forget_parser = subparsers.add_parser("forget", help="Remove one note from the index.")
    forget_parser.add_argument("note_id", type=str, help="Note id (path relative to the data directory).")

    subparsers.add_parser("status", help="Show index statistics.")

    args = parser.parse_args()

    configure_logging(args.verbose)
    cfg = load_config(Path(args.config) if args.config else None)

    try:
        if args.command == "ingest":
            console.print("[bold green]Updating index...[/bold green]")
            _print_report(asyncio.run(run_ingest(cfg, rebuild=args.rebuild)))
        elif args.command == "ask":
            asyncio.run(run_ask(cfg, args.question, simple=args.simple))
        elif args.command == "forget":
            asyncio.run(run_forget(cfg, args.note_id))
        elif args.command == "status":
            asyncio.run(run_status(cfg))
        else:  # pragma: no cover - argparse rejects unknown commands
            parser.print_help()
    except NotesRecallError as e:
        raise SystemExit(f"Error: {e}") from e


if __name__ == "__main__":
    main()
