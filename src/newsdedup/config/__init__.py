"""Configuration models."""

from .config import (
    ArticleDedupConfig,
    Config,
    HashingConfig,
    IngestorConfig,
    MonitoringConfig,
    SearchConfig,
    SourceDedupConfig,
    SQLiteConfig,
    SweepConfig,
    find_config_file,
)

__all__ = [
    "ArticleDedupConfig",
    "Config",
    "HashingConfig",
    "IngestorConfig",
    "MonitoringConfig",
    "SearchConfig",
    "SourceDedupConfig",
    "SQLiteConfig",
    "SweepConfig",
    "find_config_file",
]
