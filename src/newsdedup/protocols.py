"""
Protocols and dataclasses for newsdedup.

This module defines the core contracts and data structures shared by the
deduplication engines, the document store and the search index gateway.

Architecture Overview:
- Pure hashing and similarity scoring with no I/O
- Search index gateway (exact hash lookup, more-like-this, term filters)
- Ingest-time article deduplication, retroactive sweep, source deduplication
- Document store of record behind async protocols
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

# ============================================================================
# Enums and Constants
# ============================================================================


class Theme(Enum):
    """Closed taxonomy of subject categories assigned by the normalizer."""

    POLITICS = "Политика"
    ECONOMY = "Экономика"
    TECHNOLOGY = "Технологии"
    MEDICINE = "Медицина"
    CULTURE = "Культура"
    SPORT = "Спорт"
    EDUCATION = "Образование"
    SOCIETY = "Общество"
    LAW = "Право"
    ECOLOGY = "Экология"


class DedupMethod(Enum):
    """How an ingest-time duplicate decision was reached."""

    HASH = "hash"
    TEXT_SIMILARITY = "text_similarity"
    NONE = "none"


class SweepAction(Enum):
    REMOVED = "removed"
    ERROR = "error"
    DRY_RUN = "dry-run"


ARTICLES_COLLECTION = "news-normalized"
RAW_COLLECTION = "news-raw"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Core Dataclasses
# ============================================================================


@dataclass
class Entities:
    orgs: List[str] = field(default_factory=list)
    people: List[str] = field(default_factory=list)
    products: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, List[str]]:
        return {"orgs": list(self.orgs), "people": list(self.people), "products": list(self.products)}

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> Entities:
        data = data or {}
        return cls(
            orgs=list(data.get("orgs") or []),
            people=list(data.get("people") or []),
            products=list(data.get("products") or []),
        )


@dataclass
class NormalizedArticle:
    """An article after AI normalization, as held by the document store."""

    title: str
    summary: str = ""
    id: Optional[str] = None
    news_raw_id: Optional[str] = None
    source_id: Optional[str] = None
    external_id: Optional[str] = None
    source: str = ""
    url: Optional[str] = None
    title_original: Optional[str] = None
    summary_original: Optional[str] = None
    lang: Optional[str] = None
    theme: Optional[Theme] = None
    topics: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    entities: Entities = field(default_factory=Entities)
    duplicate_hint: Optional[str] = None
    published_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    score: Optional[int] = None
    duplicate_of: Optional[str] = None
    similarity_score: Optional[float] = None

    def to_document(self) -> IndexedDocument:
        """Project this article onto the search index shape."""
        return IndexedDocument(
            id=self.id,
            title=self.title,
            content=self.summary or "",
            description=self.summary,
            source=self.source,
            source_id=self.source_id,
            lang=self.lang,
            theme=self.theme.value if self.theme else None,
            topics=list(self.topics),
            tags=list(self.tags),
            created_at=self.created_at,
            url=self.url,
            summary_original=self.summary_original,
            title_original=self.title_original,
            score=self.score,
        )


@dataclass
class IndexedDocument:
    """
    Search engine projection of an article.

    ``content_hash`` and ``title_hash`` are filled by the gateway at index
    time and never recomputed from stored data afterwards.
    """

    title: str
    content: str = ""
    id: Optional[str] = None
    description: Optional[str] = None
    source: str = ""
    source_id: Optional[str] = None
    lang: Optional[str] = None
    theme: Optional[str] = None
    topics: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    url: Optional[str] = None
    summary_original: Optional[str] = None
    title_original: Optional[str] = None
    score: Optional[int] = None
    content_hash: Optional[str] = None
    title_hash: Optional[str] = None
    duplicate_of: Optional[str] = None
    similarity_score: Optional[float] = None


@dataclass
class SearchHit:
    """A ranked hit returned by the search index."""

    document: IndexedDocument
    score: float = 0.0


@dataclass
class DuplicationDecision:
    """Transient outcome of one ingest-time duplicate check."""

    is_duplicate: bool = False
    method: DedupMethod = DedupMethod.NONE
    similarity_score: Optional[float] = None
    original: Optional[IndexedDocument] = None
    candidates: List[IndexedDocument] = field(default_factory=list)


@dataclass
class ProcessResult:
    saved: bool
    reason: str
    original: Optional[IndexedDocument] = None
    article_id: Optional[str] = None


@dataclass
class SweepDetail:
    title: str
    method: str
    similarity: float
    action: SweepAction
    reason: str
    created_at: str = "unknown"
    original_title: Optional[str] = None
    original_created_at: Optional[str] = None
    collections: List[str] = field(default_factory=list)


@dataclass
class SweepReport:
    duplicates_found: int = 0
    duplicates_removed: int = 0
    errors: int = 0
    details: List[SweepDetail] = field(default_factory=list)


@dataclass
class FeedMetadata:
    """Channel-level metadata of an RSS feed."""

    title: Optional[str] = None
    description: Optional[str] = None
    link: Optional[str] = None
    feed_url: Optional[str] = None
    author: Optional[str] = None
    items: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "link": self.link,
            "feedUrl": self.feed_url,
            "author": self.author,
            "items": list(self.items),
        }

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> FeedMetadata:
        data = data or {}
        return cls(
            title=data.get("title"),
            description=data.get("description"),
            link=data.get("link"),
            feed_url=data.get("feedUrl") or data.get("feed_url"),
            author=data.get("author"),
            items=list(data.get("items") or []),
        )


@dataclass
class RawSource:
    """A registered RSS feed. ``link`` is unique across all sources."""

    link: str
    title: str
    id: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    language: str = "ru"
    public: bool = False
    active: bool = True
    owner: Optional[str] = None
    type: str = "rss"
    metadata: FeedMetadata = field(default_factory=FeedMetadata)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RawNewsItem:
    """An unprocessed RSS item awaiting normalization."""

    source_id: str
    source_url: str
    raw_data: Dict[str, Any]
    id: Optional[str] = None
    guid: Optional[str] = None
    title: Optional[str] = None
    link: Optional[str] = None
    pub_date: Optional[str] = None
    has_normalized: bool = False
    is_duplicate: bool = False
    duplicate_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class SourceDuplicationCheckResult:
    is_duplicate: bool
    confidence: float
    existing_source: Optional[RawSource] = None
    reason: str = ""


@dataclass
class SourceDuplicateMatch:
    source: RawSource
    confidence: float
    reason: str


@dataclass
class PotentialSourceDuplicates:
    source: RawSource
    duplicates: List[SourceDuplicateMatch] = field(default_factory=list)


@dataclass
class DomainDuplicateGroup:
    domain: str
    sources: List[RawSource]
    avg_confidence: float


@dataclass
class SourceDuplicationStats:
    total_sources: int = 0
    potential_duplicates: int = 0
    duplicate_groups: List[DomainDuplicateGroup] = field(default_factory=list)


# ============================================================================
# Collaborator Protocols
# ============================================================================


class SearchIndexProtocol(Protocol):
    """Full-text/semantic search index consumed by the engines."""

    async def ensure_index(self) -> None:
        """Create the index if it does not exist."""
        ...

    async def recreate_index(self) -> None:
        """Drop and recreate the index with the current mapping."""
        ...

    async def index_document(self, document: IndexedDocument) -> str:
        """Index a document (computing its hashes) and return its id."""
        ...

    async def find_by_hashes(self, content_hash: str, title_hash: str, *, limit: int = 10) -> List[SearchHit]:
        """Documents whose content hash or title hash matches exactly."""
        ...

    async def search(
        self,
        text: Optional[str] = None,
        *,
        filters: Optional[Mapping[str, Any]] = None,
        limit: int = 20,
    ) -> List[SearchHit]:
        """Boosted multi-field fuzzy text query with optional term filters."""
        ...

    async def more_like_this(
        self,
        title: str,
        content: str,
        *,
        field_boosts: Mapping[str, int],
        since: Optional[datetime] = None,
        min_score: Optional[float] = None,
        exclude_id: Optional[str] = None,
        min_term_freq: int = 1,
        max_query_terms: int = 25,
        minimum_should_match: str = "60%",
        limit: int = 10,
    ) -> List[SearchHit]:
        """Documents textually similar to the given seed text."""
        ...

    async def update_fields(self, document_id: str, patch: Mapping[str, Any]) -> None: ...

    async def delete_document(self, document_id: str) -> None: ...

    async def count_all(self) -> int: ...

    async def ping(self) -> bool: ...


class ArticleStoreProtocol(Protocol):
    """Document store of record for normalized articles."""

    async def create_article(self, article: NormalizedArticle) -> NormalizedArticle: ...

    async def get_article(self, article_id: str) -> Optional[NormalizedArticle]: ...

    async def list_articles(
        self,
        *,
        source_ids: Optional[Sequence[str]] = None,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
        oldest_first: bool = True,
        limit: Optional[int] = None,
    ) -> List[NormalizedArticle]: ...

    async def update_article(self, article_id: str, patch: Mapping[str, Any]) -> bool: ...

    async def delete_article(self, article_id: str) -> bool: ...

    async def count_articles(self, *, duplicates_only: bool = False) -> int: ...


class RawNewsStoreProtocol(Protocol):
    """Store of raw RSS items awaiting normalization."""

    async def upsert_raw(self, item: RawNewsItem) -> RawNewsItem: ...

    async def list_pending_raw(self, limit: Optional[int] = None) -> List[RawNewsItem]: ...

    async def find_raw_by_title(self, title: str) -> Optional[RawNewsItem]: ...

    async def update_raw(self, raw_id: str, patch: Mapping[str, Any]) -> bool: ...


class SourceStoreProtocol(Protocol):
    """Store of registered RSS sources."""

    async def create_source(self, source: RawSource) -> RawSource: ...

    async def get_source(self, source_id: str) -> Optional[RawSource]: ...

    async def find_sources_by_links(self, links: Sequence[str]) -> List[RawSource]: ...

    async def find_sources_by_domain(self, domain: str, *, exclude_id: Optional[str] = None) -> List[RawSource]: ...

    async def list_sources(self, *, public_only: bool = False) -> List[RawSource]: ...
