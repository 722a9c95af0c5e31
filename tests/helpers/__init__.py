from .fake_search import FakeSearchIndex
from .metric_delta import metric_delta

__all__ = ["FakeSearchIndex", "metric_delta"]
