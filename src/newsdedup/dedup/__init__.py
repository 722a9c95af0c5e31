"""
Deduplication engines for normalized articles and RSS sources.
"""

from .article_dedup import ArticleDeduplicationEngine
from .hashing import ContentHasher, calculate_content_hash, normalize_for_hash
from .similarity import detailed_similarity, edit_similarity, simple_similarity
from .source_dedup import SourceDeduplicationEngine, extract_domain, normalize_url
from .sweep import DuplicateSweepEngine

__all__ = [
    "ArticleDeduplicationEngine",
    "ContentHasher",
    "DuplicateSweepEngine",
    "SourceDeduplicationEngine",
    "calculate_content_hash",
    "detailed_similarity",
    "edit_similarity",
    "extract_domain",
    "normalize_for_hash",
    "normalize_url",
    "simple_similarity",
]
