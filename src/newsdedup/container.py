"""
Dependency injection container wiring the store, search index and engines.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Dict, Generic, List, Optional, TypeVar
from uuid import uuid4

import structlog

from newsdedup.config import Config, find_config_file
from newsdedup.exceptions import SearchIndexError

if TYPE_CHECKING:
    from newsdedup.dedup import ArticleDeduplicationEngine, DuplicateSweepEngine, SourceDeduplicationEngine
    from newsdedup.ingest import AIIngestorClient, NormalizationJob
    from newsdedup.search import OpenSearchGateway
    from newsdedup.storage import SQLiteStore

T = TypeVar("T")


class LazyInstance(Generic[T]):
    """Lazy-loaded instance with lifecycle management."""

    def __init__(self, factory: Callable[..., T], *args: Any, **kwargs: Any) -> None:
        self._factory = factory
        self._args = args
        self._kwargs = kwargs
        self._instance: Optional[T] = None
        self._initialized = False

    async def get(self) -> T:
        """Get or create the instance."""
        if not self._initialized:
            self._instance = self._factory(*self._args, **self._kwargs)
            if callable(getattr(self._instance, "initialize", None)):
                try:
                    await self._instance.initialize()  # type: ignore
                except Exception:
                    # Release what the half-built instance holds before the next attempt.
                    await self.cleanup()
                    raise
            self._initialized = True
        assert self._instance is not None
        return self._instance

    async def cleanup(self) -> None:
        """Clean up the instance."""
        if self._instance is not None and callable(getattr(self._instance, "close", None)):
            await self._instance.close()  # type: ignore
        self._instance = None
        self._initialized = False


class DependencyContainer:
    """
    Owns the collaborator handles passed into every engine.

    Collaborators (store, search index, AI client) are created lazily and
    closed on shutdown; engines are built on first use around them.
    """

    def __init__(self, config_path: Optional[Path] = None, config: Optional[Config] = None) -> None:
        self.config_path = config_path
        self.config: Optional[Config] = config
        self.logger = structlog.get_logger(self.__class__.__name__)

        self._instances: Dict[str, LazyInstance[Any]] = {}
        self._engines: Dict[str, Any] = {}
        self._instances_lock = asyncio.Lock()
        self._shutdown_handlers: List[Callable[[], Any]] = []

        self.run_id = str(uuid4())
        self.is_running = False

    async def initialize(self) -> None:
        """Load configuration (unless given) and prepare lazy instances."""
        if self.config is None:
            self.load_config()
        self._create_instances()
        self.is_running = True

        self.logger.info(
            "Dependency container initialized",
            run_id=self.run_id,
            config_path=str(self.config_path) if self.config_path else "default",
        )

    def load_config(self) -> None:
        if self.config_path is None:
            self.config_path = find_config_file()
        if self.config_path and self.config_path.exists():
            self.config = Config.from_yaml(self.config_path)
        else:
            self.config = Config()

    def _create_instances(self) -> None:
        if self.config is None:
            raise RuntimeError("Configuration must be loaded before creating instances")

        # Import modules only when needed to avoid circular imports
        from newsdedup.dedup import ContentHasher
        from newsdedup.ingest import AIIngestorClient
        from newsdedup.search import OpenSearchGateway
        from newsdedup.storage import SQLiteStore

        hasher = ContentHasher(self.config.hashing.min_normalized_length)
        self._instances = {
            "store": LazyInstance(SQLiteStore, self.config.storage),
            "search": LazyInstance(OpenSearchGateway, self.config.search, hasher),
            "ingestor": LazyInstance(AIIngestorClient, self.config.ingestor),
        }
        self._engines.clear()

    async def _get(self, name: str) -> Any:
        async with self._instances_lock:
            return await self._instances[name].get()

    async def get_store(self) -> SQLiteStore:
        """Get the document store instance."""
        return await self._get("store")  # type: ignore[no-any-return]

    async def get_search(self) -> OpenSearchGateway:
        """Get the search index gateway instance."""
        return await self._get("search")  # type: ignore[no-any-return]

    async def get_ingestor(self) -> AIIngestorClient:
        return await self._get("ingestor")  # type: ignore[no-any-return]

    async def get_article_engine(self) -> ArticleDeduplicationEngine:
        if "article" not in self._engines:
            from newsdedup.dedup import ArticleDeduplicationEngine

            assert self.config is not None
            self._engines["article"] = ArticleDeduplicationEngine(
                await self.get_store(),
                await self.get_search(),
                self.config.article_dedup,
                self.config.hashing,
            )
        return self._engines["article"]  # type: ignore[no-any-return]

    async def get_sweep_engine(self) -> DuplicateSweepEngine:
        if "sweep" not in self._engines:
            from newsdedup.dedup import DuplicateSweepEngine

            assert self.config is not None
            store = await self.get_store()
            self._engines["sweep"] = DuplicateSweepEngine(
                store, store, await self.get_search(), await self.get_article_engine(), self.config.sweep
            )
        return self._engines["sweep"]  # type: ignore[no-any-return]

    async def get_source_engine(self) -> SourceDeduplicationEngine:
        if "source" not in self._engines:
            from newsdedup.dedup import SourceDeduplicationEngine

            assert self.config is not None
            self._engines["source"] = SourceDeduplicationEngine(await self.get_store(), self.config.source_dedup)
        return self._engines["source"]  # type: ignore[no-any-return]

    async def get_normalization_job(self) -> NormalizationJob:
        if "normalization" not in self._engines:
            from newsdedup.ingest import NormalizationJob

            self._engines["normalization"] = NormalizationJob(
                await self.get_store(), await self.get_article_engine(), await self.get_ingestor()
            )
        return self._engines["normalization"]  # type: ignore[no-any-return]

    async def get_health_status(self) -> Dict[str, Any]:
        """Reachability of the store and search index plus container state."""
        store_ok = True
        try:
            await (await self.get_store()).count_articles()
        except Exception as e:
            self.logger.warning("Store health check failed", error=str(e))
            store_ok = False

        try:
            search_ok = await (await self.get_search()).ping()
        except SearchIndexError as e:
            self.logger.warning("Search index health check failed", error=str(e))
            search_ok = False

        return {
            "run_id": self.run_id,
            "is_running": self.is_running,
            "config_loaded": self.config is not None,
            "store": store_ok,
            "search_index": search_ok,
        }

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator[DependencyContainer]:
        """Context manager for proper lifecycle management."""
        try:
            await self.initialize()
            yield self
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """Graceful shutdown of all managed instances."""
        if not self.is_running:
            return

        for handler in self._shutdown_handlers:
            try:
                if asyncio.iscoroutinefunction(handler):
                    await handler()
                else:
                    handler()
            except Exception as e:
                self.logger.error("Error in shutdown handler", error=str(e))

        for name, instance in self._instances.items():
            try:
                await instance.cleanup()
            except Exception as e:
                self.logger.error("Error cleaning up instance", instance=name, error=str(e))

        self._engines.clear()
        self.is_running = False
        self.logger.info("Dependency container shutdown complete", run_id=self.run_id)

    def add_shutdown_handler(self, handler: Callable[[], Any]) -> None:
        self._shutdown_handlers.append(handler)
