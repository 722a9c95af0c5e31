"""Logging and metrics for newsdedup."""

from __future__ import annotations

from .logging import configure_logging
from .metrics import METRICS, increment, observe, start_metrics_server

__all__ = ["configure_logging", "METRICS", "increment", "observe", "start_metrics_server"]
