from __future__ import annotations

import os
from pathlib import Path
from typing import Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError


class SearchPass(BaseModel):
    """Tuning for one retrieval pass."""

    k: int = Field(ge=1)
    min_score: float = Field(ge=-1.0, le=1.0)
    max_per_document: int = Field(ge=1)


class AppConfig(BaseModel):
    data_dir: Path = Field(default=Path("data"))
    store_path: Path = Field(default=Path("index/notes.sqlite3"))

    embedding_backend: Literal["sentence-transformers", "openai"] = "sentence-transformers"
    embedding_model_name: str = Field(
        default="sentence-transformers/all-MiniLM-L6-v2"
    )
    openai_embedding_model: str = Field(default="text-embedding-3-small")
    openai_model: str = Field(default="gpt-4o-mini")
    max_output_tokens: int = Field(default=1200, ge=64)

    chunk_max_chars: int = Field(default=2000, ge=1)
    chunk_overlap_chars: int = Field(default=250, ge=0)
    embed_batch_size: int = Field(default=64, ge=1)
    embed_concurrency: int = Field(default=4, ge=1)
    provider_timeout_s: Optional[float] = Field(default=60.0, gt=0)

    # Single-pass fallback.
    single_pass: SearchPass = SearchPass(k=10, min_score=0.2, max_per_document=4)
    # Multi-hop: a breadth-first first pass, then a looser expansion pass.
    first_pass: SearchPass = SearchPass(k=6, min_score=0.2, max_per_document=3)
    expansion_pass: SearchPass = SearchPass(k=10, min_score=0.15, max_per_document=3)
    final_top_n: int = Field(default=12, ge=1)
    max_concepts: int = Field(default=4, ge=0)
    concept_context_chars: int = Field(default=500, ge=0)
    # What the answer model may see.
    answer_max_contexts: int = Field(default=10, ge=1)
    answer_context_chars: int = Field(default=2500, ge=1)
    answer_total_context_chars: int = Field(default=20000, ge=1)
    history_max_messages: int = Field(default=20, ge=0)
    history_message_chars: int = Field(default=4000, ge=1)

    @property
    def data_dir_resolved(self) -> Path:
        return self.data_dir.resolve()

    @property
    def store_path_resolved(self) -> Path:
        return self.store_path.resolve()


CONFIG_ENV_VAR = "NOTES_RECALL_CONFIG"


def load_config(path: Optional[Path] = None) -> AppConfig:
    """
    Build the configuration from `.env` and an optional YAML file.

    The file is `path` if given, else `$NOTES_RECALL_CONFIG`, else
    `config.yaml` in the working directory. Every key is optional; a missing
    file means all defaults. Invalid values exit with pydantic's report.
    """
    load_dotenv()

    if path is None:
        path = Path(os.environ.get(CONFIG_ENV_VAR, "config.yaml"))

    raw: dict = {}
    if path.exists():
        with path.open("r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise SystemExit(f"Invalid configuration in {path}: expected a mapping at the top level")

    try:
        cfg = AppConfig.model_validate(raw)
    except ValidationError as e:
        raise SystemExit(f"Invalid configuration in {path}:\n{e}") from e
    return cfg


__all__ = ["AppConfig", "CONFIG_ENV_VAR", "SearchPass", "load_config"]
