"""
Normalization pass over raw RSS items awaiting processing.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Protocol

import structlog

from newsdedup.dedup.article_dedup import ArticleDeduplicationEngine
from newsdedup.exceptions import IngestorError
from newsdedup.protocols import NormalizedArticle, RawNewsItem, RawNewsStoreProtocol, utcnow

from .ai_output import NormalizedItem, parse_ingestor_output

logger = structlog.get_logger(__name__)

UNKNOWN_SOURCE = "Unknown Source"


class NormalizerProtocol(Protocol):
    async def normalize(self, raw_data: Mapping[str, Any]) -> str: ...


def build_article(item: NormalizedItem, raw: RawNewsItem) -> NormalizedArticle:
    """Candidate article for ``raw`` from the agent's normalized item."""
    source = item.source or raw.raw_data.get("creator") or raw.raw_data.get("author") or UNKNOWN_SOURCE
    published_at = item.published_datetime()
    return NormalizedArticle(
        title=item.title_canonical,
        summary=item.summary_short,
        news_raw_id=raw.id,
        source_id=raw.source_id,
        external_id=item.external_id,
        source=str(source),
        url=item.url,
        title_original=item.title_canonical_original,
        summary_original=item.summary_short_original,
        lang=item.lang,
        theme=item.theme,
        topics=list(item.topics),
        tags=list(item.tags),
        entities=item.entities.to_entities(),
        duplicate_hint=item.duplicate_hint,
        published_at=published_at,
        created_at=published_at or utcnow(),
        score=item.score,
    )


class NormalizationJob:
    """
    Normalizes pending raw items and feeds them through deduplication.

    Raw items whose agent output cannot be parsed stay pending and are
    retried on the next run.
    """

    def __init__(
        self,
        raw_store: RawNewsStoreProtocol,
        article_engine: ArticleDeduplicationEngine,
        normalizer: NormalizerProtocol,
        batch_size: Optional[int] = None,
    ) -> None:
        self.raw_store = raw_store
        self.article_engine = article_engine
        self.normalizer = normalizer
        self.batch_size = batch_size

    async def run_once(self) -> Dict[str, int]:
        counts = {"pending": 0, "saved": 0, "rejected": 0, "skipped": 0, "failed": 0}
        pending = await self.raw_store.list_pending_raw(self.batch_size)
        counts["pending"] = len(pending)
        if not pending:
            return counts

        logger.info("Normalizing pending raw items", count=len(pending))
        for raw in pending:
            try:
                outcome = await self._process(raw)
            except Exception as e:
                logger.error("Failed to normalize raw item", raw_id=raw.id, title=raw.title, error=str(e))
                outcome = "failed"
            counts[outcome] += 1

        logger.info("Normalization pass completed", **counts)
        return counts

    async def _process(self, raw: RawNewsItem) -> str:
        reply = await self.normalizer.normalize(raw.raw_data)
        try:
            output = parse_ingestor_output(reply)
        except IngestorError as e:
            logger.warning("Skipping raw item with unparseable agent output", raw_id=raw.id, error=str(e))
            return "skipped"

        if output.issues:
            logger.warning("Agent reported issues", raw_id=raw.id, issues=output.issues)
        if not output.normalized:
            return "skipped"

        article = build_article(output.normalized[0], raw)
        result = await self.article_engine.process_article(article)
        if raw.id is None:
            return "saved" if result.saved else "rejected"

        if result.saved:
            await self.raw_store.update_raw(raw.id, {"has_normalized": True})
            return "saved"

        await self.raw_store.update_raw(
            raw.id, {"has_normalized": True, "is_duplicate": True, "duplicate_reason": result.reason}
        )
        return "rejected"
