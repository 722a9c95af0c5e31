"""
Helpers for validating metric value changes during tests.
"""

from contextlib import contextmanager
from typing import Any


def _value(metric: Any, labels: dict) -> float:
    child = metric.labels(**labels) if labels else metric
    return child._value.get()


@contextmanager
def metric_delta(metric, expected_delta=1, **labels):
    """
    Context manager to validate a counter change.

    Usage:
        with metric_delta(METRICS["article_checks"], method="hash"):
            # Code that should increment the labelled counter by 1
            pass
    """
    initial_value = _value(metric, labels)

    yield

    final_value = _value(metric, labels)
    actual_delta = final_value - initial_value
    if actual_delta != expected_delta:
        raise AssertionError(
            f"Expected metric to change by {expected_delta}, "
            f"but it changed by {actual_delta} "
            f"(from {initial_value} to {final_value})"
        )
