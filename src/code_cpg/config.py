#!/usr/bin/env python3
"""
config.py

Runtime settings for code-cpg.

Values come from ``CODECPG_*`` environment variables or a ``.env`` file;
list-valued settings are given as JSON (``CODECPG_LANGUAGES='["python"]'``).
CLI options default from these settings.

Author: Eric G. Suchanek, PhD
"""

from __future__ import annotations

import logging
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CPGSettings(BaseSettings):
    """Settings for the graph store, builder and query surfaces."""

    model_config = SettingsConfigDict(
        env_prefix="CODECPG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    db_path: str = Field(default="codecpg.sqlite", description="SQLite database file")
    include_patterns: list[str] = Field(default_factory=list, description="fnmatch globs to include")
    exclude_patterns: list[str] = Field(default_factory=list, description="fnmatch globs to exclude")
    languages: list[str] = Field(default_factory=list, description="Language ids to index (empty = all)")
    purpose_batch_size: int = Field(default=5, ge=1, description="Concurrent summaries per batch")
    purpose_rate_limit_seconds: float = Field(default=1.0, ge=0.0, description="Pause between batches")
    purpose_in_background: bool = Field(default=True, description="Annotate purposes on a background thread")
    log_level: str = Field(default="INFO", description="Logging level name")
    default_max_depth: int = Field(default=5, ge=1, description="Default traversal depth")


@lru_cache(maxsize=1)
def get_settings() -> CPGSettings:
    """Return the process-wide settings (read once)."""
    return CPGSettings()


def configure_logging(level: str | None = None) -> None:
    """Configure root logging for the CLIs (settings level by default)."""
    logging.basicConfig(
        level=(level or get_settings().log_level).upper(),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
