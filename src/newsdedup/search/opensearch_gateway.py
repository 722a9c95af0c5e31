"""
OpenSearch-backed search index gateway.

Implements SearchIndexProtocol over ``opensearchpy.AsyncOpenSearch``:
- Index mapping with a Russian analyzer and keyword hash fields
- Exact content/title hash lookups (bool/should term queries)
- Boosted multi-field fuzzy text search with term filters
- More-like-this queries with field boosts, date window and min_score
- Every client failure surfaces as SearchIndexError
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

import structlog
from opensearchpy import AsyncOpenSearch
from opensearchpy.exceptions import NotFoundError, OpenSearchException

from newsdedup.config.config import SearchConfig
from newsdedup.dedup.hashing import ContentHasher
from newsdedup.exceptions import DocumentNotFoundError, SearchIndexError
from newsdedup.protocols import IndexedDocument, SearchHit, utcnow

logger = structlog.get_logger(__name__)

TEXT_SEARCH_FIELDS = ["title^3", "content", "description", "topics^2", "tags^2"]

NEWS_INDEX_MAPPING: Dict[str, Any] = {
    "mappings": {
        "properties": {
            "title": {
                "type": "text",
                "analyzer": "russian_analyzer",
                "fields": {"keyword": {"type": "keyword"}},
            },
            "content": {"type": "text", "analyzer": "russian_analyzer"},
            "description": {"type": "text", "analyzer": "russian_analyzer"},
            "source": {"type": "keyword"},
            "source_id": {"type": "keyword"},
            "lang": {"type": "keyword"},
            "theme": {"type": "keyword"},
            "created_at": {"type": "date"},
            "content_hash": {"type": "keyword"},
            "title_hash": {"type": "keyword"},
            "url": {"type": "keyword"},
            "duplicate_of": {"type": "keyword"},
            "similarity_score": {"type": "float"},
            "score": {"type": "integer"},
            "topics": {
                "type": "text",
                "analyzer": "russian_analyzer",
                "fields": {"keyword": {"type": "keyword"}},
            },
            "tags": {
                "type": "text",
                "analyzer": "russian_analyzer",
                "fields": {"keyword": {"type": "keyword"}},
            },
        }
    },
    "settings": {
        "analysis": {
            "analyzer": {
                "russian_analyzer": {
                    "type": "custom",
                    "tokenizer": "standard",
                    "filter": ["lowercase", "russian_stop", "russian_stemmer"],
                }
            },
            "filter": {
                "russian_stop": {"type": "stop", "stopwords": "_russian_"},
                "russian_stemmer": {"type": "stemmer", "language": "russian"},
            },
        }
    },
}


def document_to_source(document: IndexedDocument) -> Dict[str, Any]:
    """Serialize a document into its ``_source`` body."""
    return {
        "title": document.title,
        "content": document.content,
        "description": document.description,
        "source": document.source,
        "source_id": document.source_id,
        "lang": document.lang,
        "theme": document.theme,
        "topics": list(document.topics),
        "tags": list(document.tags),
        "created_at": document.created_at.isoformat(),
        "url": document.url,
        "summary_original": document.summary_original,
        "title_original": document.title_original,
        "score": document.score,
        "content_hash": document.content_hash,
        "title_hash": document.title_hash,
        "duplicate_of": document.duplicate_of,
        "similarity_score": document.similarity_score,
    }


def _parse_timestamp(value: Optional[str]) -> datetime:
    if not value:
        return utcnow()
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def document_from_hit(hit: Mapping[str, Any]) -> IndexedDocument:
    """Rebuild a document from a raw search hit."""
    source = hit.get("_source") or {}
    created_at = source.get("created_at")
    return IndexedDocument(
        id=hit.get("_id"),
        title=source.get("title") or "",
        content=source.get("content") or "",
        description=source.get("description"),
        source=source.get("source") or "",
        source_id=source.get("source_id"),
        lang=source.get("lang"),
        theme=source.get("theme"),
        topics=list(source.get("topics") or []),
        tags=list(source.get("tags") or []),
        created_at=_parse_timestamp(created_at),
        url=source.get("url"),
        summary_original=source.get("summary_original"),
        title_original=source.get("title_original"),
        score=source.get("score"),
        content_hash=source.get("content_hash"),
        title_hash=source.get("title_hash"),
        duplicate_of=source.get("duplicate_of"),
        similarity_score=source.get("similarity_score"),
    )


def _hits(response: Mapping[str, Any]) -> List[SearchHit]:
    return [
        SearchHit(document=document_from_hit(hit), score=float(hit.get("_score") or 0.0))
        for hit in response.get("hits", {}).get("hits", [])
    ]


class OpenSearchGateway:
    """
    Search index gateway backed by an OpenSearch cluster.

    Args:
        config: Connection and index settings
        hasher: Fingerprinter used to derive content/title hashes at index time
        client: Pre-built client (tests inject a stub)
    """

    def __init__(
        self,
        config: SearchConfig,
        hasher: Optional[ContentHasher] = None,
        client: Optional[AsyncOpenSearch] = None,
    ) -> None:
        self.config = config
        self.index_name = config.index_name
        self.hasher = hasher or ContentHasher()

        if client is None:
            http_auth = (config.username, config.password) if config.username else None
            client = AsyncOpenSearch(
                hosts=config.hosts,
                http_auth=http_auth,
                verify_certs=config.verify_certs,
                ssl_show_warn=False,
                timeout=config.timeout,
            )
        self.client = client
        self._index_ready = False

    async def initialize(self) -> None:
        """Create the index if the cluster is reachable; otherwise retry on first write."""
        try:
            await self.ensure_index()
        except SearchIndexError as e:
            logger.warning("Search index unavailable at startup", index=self.index_name, error=str(e))

    async def ensure_index(self) -> None:
        try:
            if not await self.client.indices.exists(index=self.index_name):
                await self.client.indices.create(index=self.index_name, body=NEWS_INDEX_MAPPING)
                logger.info("Created search index", index=self.index_name)
        except OpenSearchException as e:
            raise SearchIndexError("ensure_index", e) from e
        self._index_ready = True

    async def recreate_index(self) -> None:
        try:
            if await self.client.indices.exists(index=self.index_name):
                logger.info("Deleting existing search index", index=self.index_name)
                await self.client.indices.delete(index=self.index_name)
        except OpenSearchException as e:
            raise SearchIndexError("recreate_index", e) from e
        self._index_ready = False
        await self.ensure_index()

    async def index_document(self, document: IndexedDocument) -> str:
        if not self._index_ready:
            await self.ensure_index()

        document.content_hash = self.hasher.content_hash(document.title, document.content)
        document.title_hash = self.hasher.title_hash(document.title)

        kwargs: Dict[str, Any] = {"index": self.index_name, "body": document_to_source(document)}
        if document.id:
            kwargs["id"] = document.id

        try:
            response = await self.client.index(**kwargs)
        except OpenSearchException as e:
            raise SearchIndexError("index_document", e) from e

        document_id = str(response["_id"])
        logger.debug("Indexed document", document_id=document_id, title=document.title[:80])
        return document_id

    async def find_by_hashes(self, content_hash: str, title_hash: str, *, limit: int = 10) -> List[SearchHit]:
        body = {
            "size": limit,
            "query": {
                "bool": {
                    "should": [
                        {"term": {"content_hash": content_hash}},
                        {"term": {"title_hash": title_hash}},
                    ],
                    "minimum_should_match": 1,
                }
            },
        }
        return await self._search(body, "find_by_hashes")

    async def search(
        self,
        text: Optional[str] = None,
        *,
        filters: Optional[Mapping[str, Any]] = None,
        limit: int = 20,
    ) -> List[SearchHit]:
        must: List[Dict[str, Any]] = []
        if text:
            must.append(
                {
                    "multi_match": {
                        "query": text,
                        "fields": TEXT_SEARCH_FIELDS,
                        "fuzziness": "AUTO",
                        "type": "best_fields",
                    }
                }
            )
        else:
            must.append({"match_all": {}})

        term_filters = [{"term": {key: value}} for key, value in (filters or {}).items()]
        body: Dict[str, Any] = {
            "size": limit,
            "query": {"bool": {"must": must, "filter": term_filters}},
        }
        if not text:
            body["sort"] = [{"created_at": {"order": "desc"}}]
        return await self._search(body, "search")

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
        fields = [name if boost == 1 else f"{name}^{boost}" for name, boost in field_boosts.items()]
        query: Dict[str, Any] = {
            "bool": {
                "must": [
                    {
                        "more_like_this": {
                            "fields": fields,
                            "like": [{"_index": self.index_name, "doc": {"title": title, "content": content}}],
                            "min_term_freq": min_term_freq,
                            "max_query_terms": max_query_terms,
                            "minimum_should_match": minimum_should_match,
                        }
                    }
                ],
                "filter": [],
            }
        }
        if since is not None:
            query["bool"]["filter"].append({"range": {"created_at": {"gte": since.isoformat()}}})
        if exclude_id:
            query["bool"]["must_not"] = [{"ids": {"values": [exclude_id]}}]

        body: Dict[str, Any] = {"size": limit, "query": query}
        if min_score is not None:
            body["min_score"] = min_score
        return await self._search(body, "more_like_this")

    async def update_fields(self, document_id: str, patch: Mapping[str, Any]) -> None:
        try:
            await self.client.update(index=self.index_name, id=document_id, body={"doc": dict(patch)})
        except NotFoundError as e:
            raise DocumentNotFoundError("update_fields", e) from e
        except OpenSearchException as e:
            raise SearchIndexError("update_fields", e) from e

    async def delete_document(self, document_id: str) -> None:
        try:
            await self.client.delete(index=self.index_name, id=document_id)
        except NotFoundError as e:
            raise DocumentNotFoundError("delete_document", e) from e
        except OpenSearchException as e:
            raise SearchIndexError("delete_document", e) from e

    async def count_all(self) -> int:
        try:
            response = await self.client.count(index=self.index_name)
        except OpenSearchException as e:
            raise SearchIndexError("count_all", e) from e
        return int(response.get("count", 0))

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except OpenSearchException:
            return False

    async def close(self) -> None:
        await self.client.close()

    async def _search(self, body: Dict[str, Any], operation: str) -> List[SearchHit]:
        try:
            response = await self.client.search(index=self.index_name, body=body)
        except OpenSearchException as e:
            raise SearchIndexError(operation, e) from e
        return _hits(response)
