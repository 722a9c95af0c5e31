"""
Test configuration for newsdedup.

Provides a temporary SQLite store, an in-memory search index and factories
for articles, raw items and sources.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncGenerator, Callable, Optional

import pytest
import pytest_asyncio
from hypothesis import HealthCheck, settings

from newsdedup.config import ArticleDedupConfig, HashingConfig, SQLiteConfig
from newsdedup.dedup import ArticleDeduplicationEngine
from newsdedup.protocols import FeedMetadata, NormalizedArticle, RawNewsItem, RawSource
from newsdedup.storage import SQLiteStore
from tests.helpers import FakeSearchIndex

# cleanup_tasks is autouse and function-scoped; property tests never touch it.
settings.register_profile("newsdedup", suppress_health_check=[HealthCheck.function_scoped_fixture], deadline=None)
settings.load_profile("newsdedup")


# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: Integration tests across modules")


@pytest_asyncio.fixture(autouse=True)
async def cleanup_tasks() -> AsyncGenerator[None, None]:
    """Cancel any task a test leaves behind."""
    tasks_before = asyncio.all_tasks()
    yield
    for task in asyncio.all_tasks() - tasks_before:
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


# ============================================================================
# Collaborators
# ============================================================================


@pytest.fixture
def sqlite_config(tmp_path: Path) -> SQLiteConfig:
    return SQLiteConfig(db_path=tmp_path / "news.db", pool_size=2)


@pytest_asyncio.fixture
async def store(sqlite_config: SQLiteConfig) -> AsyncGenerator[SQLiteStore, None]:
    sqlite_store = SQLiteStore(sqlite_config)
    await sqlite_store.initialize()
    yield sqlite_store
    await sqlite_store.close()


@pytest.fixture
def search_index() -> FakeSearchIndex:
    return FakeSearchIndex()


@pytest.fixture
def article_engine(store: SQLiteStore, search_index: FakeSearchIndex) -> ArticleDeduplicationEngine:
    return ArticleDeduplicationEngine(store, search_index, ArticleDedupConfig(), HashingConfig())


# ============================================================================
# Factories
# ============================================================================


@pytest.fixture
def now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


@pytest.fixture
def make_article(now: datetime) -> Callable[..., NormalizedArticle]:
    def _make(
        title: str,
        summary: str = "",
        *,
        age: timedelta = timedelta(0),
        source: str = "Test Source",
        **kwargs,
    ) -> NormalizedArticle:
        kwargs.setdefault("created_at", now - age)
        return NormalizedArticle(title=title, summary=summary, source=source, **kwargs)

    return _make


@pytest.fixture
def make_raw() -> Callable[..., RawNewsItem]:
    def _make(title: str, *, source_id: str = "src-1", guid: Optional[str] = None, **kwargs) -> RawNewsItem:
        return RawNewsItem(
            source_id=source_id,
            source_url="https://example.com/rss",
            raw_data={"title": title, "creator": "Example Wire"},
            guid=guid or title,
            title=title,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_source() -> Callable[..., RawSource]:
    def _make(
        link: str,
        title: str = "Example News",
        *,
        description: Optional[str] = None,
        site: Optional[str] = None,
        public: bool = True,
        **kwargs,
    ) -> RawSource:
        metadata = FeedMetadata(title=title, description=description, link=site, feed_url=link)
        return RawSource(
            link=link, title=title, description=description, public=public, metadata=metadata, **kwargs
        )

    return _make
