"""
Defines Prometheus metrics for the deduplication engines.
"""

from __future__ import annotations

from typing import Any, Callable, Dict

from prometheus_client import REGISTRY as _PROM_REGISTRY
from prometheus_client import Counter as _OrigCounter
from prometheus_client import Histogram as _OrigHistogram
from prometheus_client import start_http_server

# ---------------------------------------------------------------------------
# Duplicate-safe Prometheus metric wrappers
# ---------------------------------------------------------------------------
# Re-importing this module (test suites, reloads) must not raise duplicate
# registration errors, so an existing collector is reused when present.


def _duplicate_safe_factory(metric_cls: Any) -> Callable[..., Any]:
    """Return a factory that reuses an existing collector if already present."""

    def _factory(name: str, documentation: str, *args: Any, **kwargs: Any) -> Any:
        existing = _PROM_REGISTRY._names_to_collectors.get(name)
        if existing is not None:
            return existing

        try:
            return metric_cls(name, documentation, *args, **kwargs)
        except ValueError:
            # Registration lost the race, fall back to the now-existing collector.
            return _PROM_REGISTRY._names_to_collectors[name]

    return _factory


Counter = _duplicate_safe_factory(_OrigCounter)
Histogram = _duplicate_safe_factory(_OrigHistogram)

METRICS: Dict[str, Any] = {
    "article_checks": Counter(
        "newsdedup_article_checks_total",
        "Ingest-time duplicate checks by decision method",
        ["method"],
    ),
    "articles_processed": Counter(
        "newsdedup_articles_processed_total",
        "Articles processed by outcome",
        ["outcome"],
    ),
    "check_latency": Histogram(
        "newsdedup_check_latency_seconds",
        "Duplicate check latency in seconds",
        ["stage"],
        buckets=[0.005, 0.01, 0.02, 0.05, 0.1, 0.2, 0.5, 1.0, 2.0, 5.0],
    ),
    "sweep_candidates": Counter(
        "newsdedup_sweep_candidates_total",
        "Duplicate sweep candidates by action",
        ["action"],
    ),
    "source_checks": Counter(
        "newsdedup_source_checks_total",
        "RSS source duplicate checks by outcome",
        ["outcome"],
    ),
    "gateway_errors": Counter(
        "newsdedup_gateway_errors_total",
        "Collaborator failures absorbed by the engines",
        ["operation"],
    ),
}


def increment(name: str, **labels: Any) -> None:
    """Increment a counter metric."""
    metric = METRICS.get(name)
    if metric is None:
        return
    if labels:
        metric.labels(**labels).inc()
    else:
        metric.inc()


def observe(name: str, value: float, **labels: Any) -> None:
    """Record an observation on a histogram metric."""
    metric = METRICS.get(name)
    if metric is None:
        return
    if labels:
        metric.labels(**labels).observe(value)
    else:
        metric.observe(value)


def start_metrics_server(port: int) -> None:
    """Expose the default registry over HTTP."""
    start_http_server(port)
