"""
Logging setup for the notes_recall CLI.

Library modules only create loggers; handlers are installed here.
"""

from __future__ import annotations

import logging

from rich.logging import RichHandler

NOISY_LOGGERS = ("sentence_transformers", "transformers", "httpx", "openai", "faiss")


def configure_logging(verbose: bool = False) -> logging.Handler:
    """
    Route notes_recall logs through rich.

    Args:
        verbose: log DEBUG from notes_recall and INFO from libraries;
            otherwise notes_recall logs at WARNING and libraries at ERROR.

    Returns:
        The installed handler.
    """
    logger = logging.getLogger("notes_recall")
    for h in list(logger.handlers):
        if isinstance(h, RichHandler):
            logger.removeHandler(h)

    handler = RichHandler(show_path=verbose, rich_tracebacks=verbose)
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="%H:%M:%S"))
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logger.propagate = False

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.INFO if verbose else logging.ERROR)
    return handler


__all__ = ["configure_logging"]
