"""
Configuration management for newsdedup using Pydantic.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Setup Logging ---
log = logging.getLogger(__name__)

# --- Nested Configuration Models ---


class HashingConfig(BaseModel):
    """Content fingerprinting floors."""

    min_normalized_length: int = Field(
        default=10, description="Texts shorter than this are never hashed by content."
    )
    min_combined_length: int = Field(
        default=20, description="Title + content shorter than this skips the hash stage."
    )


class ArticleDedupConfig(BaseModel):
    """Thresholds for ingest-time article deduplication."""

    # Hash stage
    max_hash_candidates: int = Field(default=3, description="Hash hits inspected before falling through.")
    hash_simple_title_threshold: float = Field(default=0.90, ge=0, le=1)
    hash_detailed_title_threshold: float = Field(default=0.70, ge=0, le=1)
    hash_combined_threshold: float = Field(default=0.50, ge=0, le=1)
    hash_combined_title_threshold: float = Field(default=0.50, ge=0, le=1)

    # Semantic (more-like-this) stage
    mlt_title_boost: int = Field(default=3, description="Boost weight of the title field.")
    mlt_content_boost: int = Field(default=1, description="Boost weight of the content field.")
    mlt_window_days: int = Field(default=7, description="Only documents created within this window match.")
    mlt_min_score: float = Field(default=2.0, description="Raw relevance floor enforced by the engine.")
    mlt_score_divisor: float = Field(default=10.0, description="Raw relevance is divided by this.")
    mlt_min_term_freq: int = 1
    mlt_max_query_terms: int = 25
    mlt_minimum_should_match: str = "60%"
    mlt_max_hits: int = 10
    semantic_score_threshold: float = Field(default=1.5, description="Normalized score needed to consider a hit.")
    semantic_content_threshold: float = Field(default=0.50, ge=0, le=1)

    # Save policy
    reject_min_score: float = Field(
        default=1.5, description="Semantic duplicates scoring below this are still saved, flagged."
    )
    hash_match_blocks_save: bool = Field(
        default=False, description="Reject hash-stage duplicates even though their score stays below reject_min_score."
    )


class SweepConfig(BaseModel):
    """Thresholds for the retroactive duplicate sweep."""

    detailed_title_threshold: float = Field(default=0.85, ge=0, le=1)
    simple_title_threshold: float = Field(default=0.90, ge=0, le=1)
    semantic_threshold: float = Field(default=0.90)


class SourceDedupConfig(BaseModel):
    """Gates and weights for RSS source deduplication."""

    title_gate: float = 0.85
    title_weight: float = 0.4
    description_gate: float = 0.80
    description_weight: float = 0.3
    link_gate: float = 0.90
    link_weight: float = 0.3
    url_gate: float = 0.80
    url_weight: float = 0.2
    duplicate_threshold: float = Field(default=0.75, description="Confidence above which a source is a duplicate.")
    potential_duplicate_threshold: float = 0.70
    stats_pair_threshold: float = 0.5


class SearchConfig(BaseModel):
    """OpenSearch connection settings."""

    hosts: List[str] = Field(default_factory=lambda: ["http://localhost:9200"])
    index_name: str = Field(default="news-normalized")
    username: Optional[str] = None
    password: Optional[str] = None
    verify_certs: bool = False
    timeout: float = Field(default=10.0, description="Request timeout in seconds.")


class SQLiteConfig(BaseModel):
    """Configuration for the SQLite document store."""

    db_path: Path = Field(
        default_factory=lambda: Path.home() / ".newsdedup" / "news.db",
        description="SQLite database file path",
    )
    pool_size: int = Field(default=5, description="Size of the connection pool.")
    wal_mode: bool = Field(default=True, description="Enable Write-Ahead Logging for higher concurrency.")

    @field_validator("db_path", mode="before")
    @classmethod
    def ensure_db_directory(cls, v: Any) -> Path:
        """Ensure database directory exists."""
        path = Path(v) if not isinstance(v, Path) else v
        path.parent.mkdir(parents=True, exist_ok=True)
        return path


class IngestorConfig(BaseModel):
    """AI normalization agent endpoint."""

    endpoint: Optional[str] = Field(default=None, description="Base URL of the AI agent.")
    api_key: Optional[str] = None
    timeout: float = 120.0


class MonitoringConfig(BaseModel):
    log_level: str = Field(default="INFO", description="Logging level (e.g., DEBUG, INFO, WARNING).")
    log_file: str | None = Field(default=None, description="Path to log file. If None, logs to console.")
    prometheus_port: int | None = Field(
        default=None,
        description="Port for Prometheus metrics exporter. None to disable.",
    )

    @field_validator("log_file", mode="before")
    @classmethod
    def create_parent_dir(cls, v: str | Path | None) -> str | None:
        if v is None:
            return None
        path = Path(v)
        path.parent.mkdir(parents=True, exist_ok=True)
        return str(path)


# --- Main Configuration Class ---


class Config(BaseSettings):
    project_name: str = "newsdedup"
    version: str = "0.1.0"
    hashing: HashingConfig = Field(default_factory=HashingConfig)
    article_dedup: ArticleDedupConfig = Field(default_factory=ArticleDedupConfig)
    sweep: SweepConfig = Field(default_factory=SweepConfig)
    source_dedup: SourceDedupConfig = Field(default_factory=SourceDedupConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    storage: SQLiteConfig = Field(default_factory=SQLiteConfig)
    ingestor: IngestorConfig = Field(default_factory=IngestorConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = SettingsConfigDict(env_prefix="NEWSDEDUP_", env_nested_delimiter="__", case_sensitive=False)

    @classmethod
    def from_yaml(cls, path: Path) -> Config:
        log.debug("Loading configuration from YAML file: %s", path)
        if not path.is_file():
            raise FileNotFoundError(f"Configuration file not found or is not a file: {path}")
        with open(path, "r", encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f)
        if not yaml_data:
            log.warning("Configuration file is empty: %s. Using default settings.", path)
            return cls.model_validate({})
        return cls.model_validate(yaml_data)


def find_config_file() -> Path | None:
    """config.yaml or config.yml in the working directory, if present."""
    current_dir = Path.cwd()
    for path in (current_dir / "config.yaml", current_dir / "config.yml"):
        if path.exists():
            return path
    return None

