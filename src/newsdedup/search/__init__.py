"""Search index gateway implementations."""

from .opensearch_gateway import NEWS_INDEX_MAPPING, OpenSearchGateway

__all__ = ["NEWS_INDEX_MAPPING", "OpenSearchGateway"]
