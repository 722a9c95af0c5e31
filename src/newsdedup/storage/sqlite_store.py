"""
SQLite document store of record for articles, raw RSS items and sources.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence

import aiosqlite
import structlog
from sqlalchemy import create_engine

from newsdedup.config.config import SQLiteConfig
from newsdedup.exceptions import StoreError
from newsdedup.protocols import (
    Entities,
    FeedMetadata,
    NormalizedArticle,
    RawNewsItem,
    RawSource,
    Theme,
)

from .schema import metadata as db_metadata

logger = structlog.get_logger(__name__)

# Incremented whenever the schema in schema.py changes.
CURRENT_SCHEMA_VERSION = 1

ARTICLE_COLUMNS = (
    "id",
    "news_raw_id",
    "source_id",
    "external_id",
    "source",
    "url",
    "title",
    "title_original",
    "summary",
    "summary_original",
    "lang",
    "theme",
    "topics",
    "tags",
    "entities",
    "duplicate_hint",
    "published_at",
    "created_at",
    "score",
    "duplicate_of",
    "similarity_score",
)

RAW_MUTABLE_COLUMNS = {"has_normalized", "is_duplicate", "duplicate_reason", "raw_data", "title", "link", "pub_date"}


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _new_id() -> str:
    return uuid.uuid4().hex


def _theme(value: Optional[str]) -> Optional[Theme]:
    if not value:
        return None
    try:
        return Theme(value)
    except ValueError:
        logger.warning("Unknown theme in store", theme=value)
        return None


def _article_to_row(article: NormalizedArticle) -> Dict[str, Any]:
    return {
        "id": article.id,
        "news_raw_id": article.news_raw_id,
        "source_id": article.source_id,
        "external_id": article.external_id,
        "source": article.source,
        "url": article.url,
        "title": article.title,
        "title_original": article.title_original,
        "summary": article.summary or "",
        "summary_original": article.summary_original,
        "lang": article.lang,
        "theme": article.theme.value if article.theme else None,
        "topics": json.dumps(list(article.topics), ensure_ascii=False),
        "tags": json.dumps(list(article.tags), ensure_ascii=False),
        "entities": json.dumps(article.entities.to_dict(), ensure_ascii=False),
        "duplicate_hint": article.duplicate_hint,
        "published_at": _to_iso(article.published_at),
        "created_at": _to_iso(article.created_at),
        "score": article.score,
        "duplicate_of": article.duplicate_of,
        "similarity_score": article.similarity_score,
    }


def _row_to_article(row: Mapping[str, Any]) -> NormalizedArticle:
    return NormalizedArticle(
        id=row["id"],
        news_raw_id=row["news_raw_id"],
        source_id=row["source_id"],
        external_id=row["external_id"],
        source=row["source"],
        url=row["url"],
        title=row["title"],
        title_original=row["title_original"],
        summary=row["summary"] or "",
        summary_original=row["summary_original"],
        lang=row["lang"],
        theme=_theme(row["theme"]),
        topics=json.loads(row["topics"] or "[]"),
        tags=json.loads(row["tags"] or "[]"),
        entities=Entities.from_dict(json.loads(row["entities"] or "{}")),
        duplicate_hint=row["duplicate_hint"],
        published_at=_from_iso(row["published_at"]),
        created_at=_from_iso(row["created_at"]) or datetime.now(timezone.utc),
        score=row["score"],
        duplicate_of=row["duplicate_of"],
        similarity_score=row["similarity_score"],
    )


def _row_to_raw(row: Mapping[str, Any]) -> RawNewsItem:
    return RawNewsItem(
        id=row["id"],
        source_id=row["source_id"],
        source_url=row["source_url"],
        raw_data=json.loads(row["raw_data"] or "{}"),
        guid=row["guid"],
        title=row["title"],
        link=row["link"],
        pub_date=row["pub_date"],
        has_normalized=bool(row["has_normalized"]),
        is_duplicate=bool(row["is_duplicate"]),
        duplicate_reason=row["duplicate_reason"],
        created_at=_from_iso(row["created_at"]) or datetime.now(timezone.utc),
    )


def _row_to_source(row: Mapping[str, Any]) -> RawSource:
    return RawSource(
        id=row["id"],
        link=row["link"],
        title=row["title"],
        description=row["description"],
        category=row["category"],
        language=row["language"] or "ru",
        public=bool(row["public"]),
        active=bool(row["active"]),
        owner=row["owner"],
        type=row["type"],
        metadata=FeedMetadata.from_dict(json.loads(row["metadata"] or "{}")),
        created_at=_from_iso(row["created_at"]) or datetime.now(timezone.utc),
    )


def _serialize_article_patch(patch: Mapping[str, Any]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for key, value in patch.items():
        if key not in ARTICLE_COLUMNS or key == "id":
            raise StoreError(f"Unknown or immutable article field: {key}")
        if isinstance(value, datetime):
            value = _to_iso(value)
        elif isinstance(value, Theme):
            value = value.value
        elif isinstance(value, Entities):
            value = json.dumps(value.to_dict(), ensure_ascii=False)
        elif key in ("topics", "tags"):
            value = json.dumps(list(value or []), ensure_ascii=False)
        values[key] = value
    return values


class SQLiteStore:
    """
    Handles all interactions with the SQLite document store.

    Implements the article, raw news and source store protocols.
    """

    def __init__(self, config: SQLiteConfig):
        self.config = config
        self.db_path = Path(config.db_path)
        self._pool: asyncio.Queue[aiosqlite.Connection] = asyncio.Queue(maxsize=config.pool_size)
        self._engine = create_engine(f"sqlite:///{self.db_path}")
        self._initialized = False

    async def initialize(self) -> None:
        """Initializes the database, connection pool, and runs migrations."""
        if self._initialized:
            return
        for _ in range(self.config.pool_size):
            conn = await self._create_connection()
            await self._pool.put(conn)

        async with self.get_connection() as conn:
            await self._run_migrations(conn)
        self._initialized = True

    async def _create_connection(self) -> aiosqlite.Connection:
        conn = await aiosqlite.connect(self.db_path)
        if self.config.wal_mode:
            await conn.execute("PRAGMA journal_mode=WAL;")
        await conn.execute("PRAGMA busy_timeout = 5000;")
        conn.row_factory = aiosqlite.Row
        return conn

    @asynccontextmanager
    async def get_connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Gets a connection from the pool."""
        conn = await self._pool.get()
        try:
            yield conn
        finally:
            await self._pool.put(conn)

    async def _run_migrations(self, conn: aiosqlite.Connection) -> None:
        cursor = await conn.execute("PRAGMA user_version;")
        version_row = await cursor.fetchone()
        current_version = version_row[0] if version_row is not None else 0

        if current_version < CURRENT_SCHEMA_VERSION:
            logger.info("Migrating document store schema", from_version=current_version, to=CURRENT_SCHEMA_VERSION)
            db_metadata.create_all(self._engine)
            await conn.execute(f"PRAGMA user_version = {CURRENT_SCHEMA_VERSION};")
            await conn.commit()

    async def close(self) -> None:
        """Closes all connections in the pool."""
        while not self._pool.empty():
            conn = await self._pool.get()
            await conn.close()
        self._engine.dispose()
        self._initialized = False

    async def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[aiosqlite.Row]:
        async with self.get_connection() as conn:
            cursor = await conn.execute(sql, params)
            return list(await cursor.fetchall())

    async def _execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        async with self.get_connection() as conn:
            try:
                cursor = await conn.execute(sql, params)
                await conn.commit()
            except aiosqlite.Error as e:
                await conn.rollback()
                raise StoreError(str(e)) from e
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Normalized articles
    # ------------------------------------------------------------------

    async def create_article(self, article: NormalizedArticle) -> NormalizedArticle:
        article.id = article.id or _new_id()
        row = _article_to_row(article)
        placeholders = ", ".join("?" for _ in ARTICLE_COLUMNS)
        await self._execute(
            f"INSERT INTO news_normalized ({', '.join(ARTICLE_COLUMNS)}) VALUES ({placeholders})",
            [row[c] for c in ARTICLE_COLUMNS],
        )
        return article

    async def get_article(self, article_id: str) -> Optional[NormalizedArticle]:
        rows = await self._fetchall("SELECT * FROM news_normalized WHERE id = ?", (article_id,))
        return _row_to_article(rows[0]) if rows else None

    async def list_articles(
        self,
        *,
        source_ids: Optional[Sequence[str]] = None,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
        oldest_first: bool = True,
        limit: Optional[int] = None,
    ) -> List[NormalizedArticle]:
        clauses: List[str] = []
        params: List[Any] = []
        if source_ids is not None:
            if not source_ids:
                return []
            clauses.append(f"source_id IN ({', '.join('?' for _ in source_ids)})")
            params.extend(source_ids)
        if created_after is not None:
            clauses.append("created_at >= ?")
            params.append(_to_iso(created_after))
        if created_before is not None:
            clauses.append("created_at < ?")
            params.append(_to_iso(created_before))

        sql = "SELECT * FROM news_normalized"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        direction = "ASC" if oldest_first else "DESC"
        sql += f" ORDER BY created_at {direction}, rowid {direction}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        return [_row_to_article(row) for row in await self._fetchall(sql, params)]

    async def update_article(self, article_id: str, patch: Mapping[str, Any]) -> bool:
        values = _serialize_article_patch(patch)
        if not values:
            return False
        assignments = ", ".join(f"{key} = ?" for key in values)
        count = await self._execute(
            f"UPDATE news_normalized SET {assignments} WHERE id = ?", [*values.values(), article_id]
        )
        return count > 0

    async def delete_article(self, article_id: str) -> bool:
        return await self._execute("DELETE FROM news_normalized WHERE id = ?", (article_id,)) > 0

    async def count_articles(self, *, duplicates_only: bool = False) -> int:
        sql = "SELECT COUNT(*) FROM news_normalized"
        if duplicates_only:
            sql += " WHERE duplicate_of IS NOT NULL"
        rows = await self._fetchall(sql)
        return int(rows[0][0])

    # ------------------------------------------------------------------
    # Raw RSS items
    # ------------------------------------------------------------------

    async def upsert_raw(self, item: RawNewsItem) -> RawNewsItem:
        """Insert a raw item, or refresh the one with the same guid or link from the same source."""
        rows = await self._fetchall(
            "SELECT id FROM news_raw WHERE source_id = ? AND ((guid IS NOT NULL AND guid = ?) OR "
            "(link IS NOT NULL AND link = ?)) LIMIT 1",
            (item.source_id, item.guid, item.link),
        )
        raw_json = json.dumps(item.raw_data, ensure_ascii=False, default=str)
        title_folded = item.title.casefold() if item.title else None

        if rows:
            item.id = rows[0]["id"]
            await self._execute(
                "UPDATE news_raw SET source_url = ?, raw_data = ?, guid = ?, title = ?, title_folded = ?, "
                "link = ?, pub_date = ? WHERE id = ?",
                (item.source_url, raw_json, item.guid, item.title, title_folded, item.link, item.pub_date, item.id),
            )
            return item

        item.id = item.id or _new_id()
        await self._execute(
            "INSERT INTO news_raw (id, source_id, source_url, raw_data, guid, title, title_folded, link, "
            "pub_date, has_normalized, is_duplicate, duplicate_reason, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                item.id,
                item.source_id,
                item.source_url,
                raw_json,
                item.guid,
                item.title,
                title_folded,
                item.link,
                item.pub_date,
                int(item.has_normalized),
                int(item.is_duplicate),
                item.duplicate_reason,
                _to_iso(item.created_at),
            ),
        )
        return item

    async def get_raw(self, raw_id: str) -> Optional[RawNewsItem]:
        rows = await self._fetchall("SELECT * FROM news_raw WHERE id = ?", (raw_id,))
        return _row_to_raw(rows[0]) if rows else None

    async def list_pending_raw(self, limit: Optional[int] = None) -> List[RawNewsItem]:
        """Raw items never normalized and not known to be duplicates."""
        sql = "SELECT * FROM news_raw WHERE has_normalized = 0 AND is_duplicate = 0 ORDER BY created_at ASC"
        params: List[Any] = []
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [_row_to_raw(row) for row in await self._fetchall(sql, params)]

    async def find_raw_by_title(self, title: str) -> Optional[RawNewsItem]:
        """
        First raw item whose title contains ``title``, ignoring case.

        Falls back to the feed's own ``raw_data.title`` for items stored
        without a title column.
        """
        if not title:
            return None
        pattern = f"%{_escape_like(title.casefold())}%"
        rows = await self._fetchall(
            "SELECT * FROM news_raw WHERE title_folded LIKE ? ESCAPE '\\' ORDER BY created_at ASC LIMIT 1",
            (pattern,),
        )
        if not rows:
            # SQLite LIKE folds ASCII case only.
            rows = await self._fetchall(
                "SELECT * FROM news_raw WHERE json_extract(raw_data, '$.title') LIKE ? ESCAPE '\\' "
                "ORDER BY created_at ASC LIMIT 1",
                (f"%{_escape_like(title)}%",),
            )
        return _row_to_raw(rows[0]) if rows else None

    async def update_raw(self, raw_id: str, patch: Mapping[str, Any]) -> bool:
        values: Dict[str, Any] = {}
        for key, value in patch.items():
            if key not in RAW_MUTABLE_COLUMNS:
                raise StoreError(f"Unknown or immutable raw field: {key}")
            if key in ("has_normalized", "is_duplicate"):
                value = int(bool(value))
            elif key == "raw_data":
                value = json.dumps(value, ensure_ascii=False, default=str)
            values[key] = value
        if "title" in values:
            values["title_folded"] = values["title"].casefold() if values["title"] else None
        if not values:
            return False
        assignments = ", ".join(f"{key} = ?" for key in values)
        return await self._execute(f"UPDATE news_raw SET {assignments} WHERE id = ?", [*values.values(), raw_id]) > 0

    # ------------------------------------------------------------------
    # RSS sources
    # ------------------------------------------------------------------

    async def create_source(self, source: RawSource) -> RawSource:
        source.id = source.id or _new_id()
        await self._execute(
            "INSERT INTO sources (id, link, link_folded, title, description, category, language, public, "
            "active, owner, type, metadata, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                source.id,
                source.link,
                source.link.casefold(),
                source.title,
                source.description,
                source.category,
                source.language,
                int(source.public),
                int(source.active),
                source.owner,
                source.type,
                json.dumps(source.metadata.to_dict(), ensure_ascii=False, default=str),
                _to_iso(source.created_at),
            ),
        )
        return source

    async def get_source(self, source_id: str) -> Optional[RawSource]:
        rows = await self._fetchall("SELECT * FROM sources WHERE id = ?", (source_id,))
        return _row_to_source(rows[0]) if rows else None

    async def find_sources_by_links(self, links: Sequence[str]) -> List[RawSource]:
        unique_links = list(dict.fromkeys(link for link in links if link))
        if not unique_links:
            return []
        placeholders = ", ".join("?" for _ in unique_links)
        rows = await self._fetchall(
            f"SELECT * FROM sources WHERE link IN ({placeholders}) ORDER BY created_at ASC", unique_links
        )
        return [_row_to_source(row) for row in rows]

    async def find_sources_by_domain(self, domain: str, *, exclude_id: Optional[str] = None) -> List[RawSource]:
        """Sources whose link contains ``domain``, ignoring case."""
        if not domain:
            return []
        sql = "SELECT * FROM sources WHERE link_folded LIKE ? ESCAPE '\\'"
        params: List[Any] = [f"%{_escape_like(domain.casefold())}%"]
        if exclude_id is not None:
            sql += " AND id != ?"
            params.append(exclude_id)
        sql += " ORDER BY created_at ASC"
        return [_row_to_source(row) for row in await self._fetchall(sql, params)]

    async def list_sources(self, *, public_only: bool = False) -> List[RawSource]:
        sql = "SELECT * FROM sources"
        if public_only:
            sql += " WHERE public = 1"
        sql += " ORDER BY created_at ASC"
        return [_row_to_source(row) for row in await self._fetchall(sql)]
