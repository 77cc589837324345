"""
notes-recall.

Local, incremental semantic index over personal notes with multi-hop
question answering.
"""

__all__ = [
    "chunking",
    "cli",
    "config",
    "errors",
    "index",
    "ingest",
    "logging_config",
    "providers",
    "query",
    "search",
    "store",
]

__version__ = "0.1.0"
