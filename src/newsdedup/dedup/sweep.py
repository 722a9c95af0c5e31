"""
Retroactive duplicate sweep over the stored corpus.

Articles are scanned oldest-first so the earliest copy of a story is always
the one kept. Each article is checked against the already-accepted set by
title similarity, then by exact content hash, then by the semantic search
of ArticleDeduplicationEngine.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import structlog

from newsdedup.config.config import SweepConfig
from newsdedup.exceptions import DocumentNotFoundError, SearchIndexError
from newsdedup.observability.metrics import increment
from newsdedup.protocols import (
    ARTICLES_COLLECTION,
    RAW_COLLECTION,
    ArticleStoreProtocol,
    NormalizedArticle,
    RawNewsStoreProtocol,
    SearchIndexProtocol,
    SweepAction,
    SweepDetail,
    SweepReport,
)

from .article_dedup import ArticleDeduplicationEngine
from .hashing import ContentHasher
from .similarity import detailed_similarity, simple_similarity

logger = structlog.get_logger(__name__)

SIMPLE_TITLE_MATCH = "simple_title_match"
ADVANCED_TITLE_MATCH = "advanced_title_match"
EXACT_CONTENT_HASH = "exact_content_hash"


@dataclass
class _Match:
    original: NormalizedArticle
    method: str
    similarity: float


@dataclass
class _Candidate:
    article: NormalizedArticle
    match: _Match
    detail: SweepDetail


def _timestamp(article: Optional[NormalizedArticle]) -> str:
    if article is None or article.created_at is None:
        return "unknown"
    return article.created_at.isoformat()


class DuplicateSweepEngine:
    """
    Finds (and optionally removes) duplicates already present in the store.

    Sweeps must not overlap; callers are expected to schedule them serially.
    """

    def __init__(
        self,
        store: ArticleStoreProtocol,
        raw_store: RawNewsStoreProtocol,
        search_index: SearchIndexProtocol,
        article_engine: ArticleDeduplicationEngine,
        config: Optional[SweepConfig] = None,
    ) -> None:
        self.store = store
        self.raw_store = raw_store
        self.search_index = search_index
        self.article_engine = article_engine
        self.config = config or SweepConfig()
        self.hasher: ContentHasher = article_engine.hasher

    def _content_hash(self, article: NormalizedArticle) -> str:
        return self.hasher.hash(f"{article.title} {article.summary or ''}".lower().strip())

    def _match_title(self, article: NormalizedArticle, seen: Dict[str, NormalizedArticle]) -> Optional[_Match]:
        title = article.title.lower().strip()
        cfg = self.config
        for existing in seen.values():
            other = existing.title.lower().strip()
            detailed = detailed_similarity(title, other)
            simple = simple_similarity(title, other)

            simple_hit = simple > cfg.simple_title_threshold
            detailed_hit = detailed > cfg.detailed_title_threshold
            if not (simple_hit or detailed_hit):
                continue

            if simple_hit and (not detailed_hit or simple >= detailed):
                method = SIMPLE_TITLE_MATCH
            else:
                method = ADVANCED_TITLE_MATCH
            return _Match(existing, method, max(detailed, simple))
        return None

    def _match_hash(self, content_hash: str, seen: Dict[str, NormalizedArticle]) -> Optional[_Match]:
        existing = seen.get(content_hash)
        if existing is None:
            return None
        return _Match(existing, EXACT_CONTENT_HASH, 1.0)

    async def _match_semantic(
        self, article: NormalizedArticle, seen: Dict[str, NormalizedArticle]
    ) -> Optional[_Match]:
        try:
            decision = await self.article_engine.detect_duplicates(article, exclude_id=article.id)
        except SearchIndexError as e:
            # Accepted as unique so later copies still match it by title or hash.
            logger.warning("Semantic check failed, treating article as unique", title=article.title, error=str(e))
            increment("gateway_errors", operation="sweep_semantic")
            return None
        score = decision.similarity_score or 0.0
        if not decision.is_duplicate or decision.original is None or score <= self.config.semantic_threshold:
            return None

        # The reported original must be one of the articles accepted in this run.
        for existing in seen.values():
            if existing.title == decision.original.title:
                return _Match(existing, decision.method.value, score)
        logger.debug("Semantic match has no accepted original", title=article.title, original=decision.original.title)
        return None

    async def find_and_remove_duplicates(self, dry_run: bool = True) -> SweepReport:
        """
        Scan every stored article and report (or remove) the later copies.

        Args:
            dry_run: Only report; nothing is deleted or marked

        Returns:
            Report with one detail per duplicate or per failed article
        """
        report = SweepReport()
        articles = await self.store.list_articles(oldest_first=True)
        articles.sort(key=lambda a: a.created_at)
        logger.info("Starting duplicate sweep", articles=len(articles), dry_run=dry_run)

        seen: Dict[str, NormalizedArticle] = {}
        candidates: List[_Candidate] = []

        for index, article in enumerate(articles, start=1):
            try:
                content_hash = self._content_hash(article)
                match = self._match_title(article, seen) or self._match_hash(content_hash, seen)
                if match is None and seen:
                    match = await self._match_semantic(article, seen)

                if match is None:
                    seen[content_hash] = article
                    continue

                logger.info(
                    "Duplicate found",
                    position=index,
                    title=article.title,
                    original_title=match.original.title,
                    method=match.method,
                    similarity=round(match.similarity, 3),
                )
                detail = SweepDetail(
                    title=article.title,
                    original_title=match.original.title,
                    method=match.method,
                    similarity=match.similarity,
                    action=SweepAction.DRY_RUN if dry_run else SweepAction.REMOVED,
                    collections=[ARTICLES_COLLECTION],
                    created_at=_timestamp(article),
                    original_created_at=_timestamp(match.original),
                    reason=f'Duplicate of "{match.original.title}"',
                )
                report.duplicates_found += 1
                report.details.append(detail)
                candidates.append(_Candidate(article, match, detail))
            except Exception as e:
                logger.error("Failed to check article", title=article.title, error=str(e))
                report.errors += 1
                increment("sweep_candidates", action=SweepAction.ERROR.value)
                report.details.append(
                    SweepDetail(
                        title=article.title,
                        method="error",
                        similarity=0.0,
                        action=SweepAction.ERROR,
                        created_at=_timestamp(article),
                        reason=f"Processing error: {e}",
                    )
                )

        if dry_run:
            for _ in candidates:
                increment("sweep_candidates", action=SweepAction.DRY_RUN.value)
            logger.info("Dry run completed", duplicates_found=report.duplicates_found, errors=report.errors)
            return report

        for candidate in candidates:
            try:
                collections = await self._remove(candidate)
            except Exception as e:
                logger.error("Failed to remove duplicate", title=candidate.article.title, error=str(e))
                report.errors += 1
                candidate.detail.action = SweepAction.ERROR
                candidate.detail.reason = f"{candidate.detail.reason}; removal failed: {e}"
                increment("sweep_candidates", action=SweepAction.ERROR.value)
                continue

            candidate.detail.collections = collections
            report.duplicates_removed += 1
            increment("sweep_candidates", action=SweepAction.REMOVED.value)

        logger.info(
            "Sweep completed",
            duplicates_found=report.duplicates_found,
            duplicates_removed=report.duplicates_removed,
            errors=report.errors,
        )
        return report

    async def _remove(self, candidate: _Candidate) -> List[str]:
        article = candidate.article
        if article.id is None:
            raise ValueError("Stored article has no id")

        await self.store.delete_article(article.id)
        collections = [ARTICLES_COLLECTION]

        try:
            await self.search_index.delete_document(article.id)
        except DocumentNotFoundError:
            logger.debug("Duplicate was not indexed", article_id=article.id)
        except Exception as e:
            logger.warning("Failed to delete duplicate from search index", article_id=article.id, error=str(e))

        raw_id, marked = await self._mark_raw_duplicate(article, candidate.match)
        if marked:
            collections.append(RAW_COLLECTION)
            logger.debug("Marked raw item as duplicate", raw_id=raw_id)
        return collections

    async def _mark_raw_duplicate(self, article: NormalizedArticle, match: _Match) -> Tuple[Optional[str], bool]:
        raw = await self.raw_store.find_raw_by_title(article.title)
        if raw is None or raw.id is None:
            return None, False

        reason = f"Removed duplicate: {match.method}_similarity_{match.similarity:.2f}"
        try:
            updated = await self.raw_store.update_raw(
                raw.id, {"is_duplicate": True, "has_normalized": False, "duplicate_reason": reason}
            )
        except Exception as e:
            logger.warning("Failed to mark raw item as duplicate", raw_id=raw.id, error=str(e))
            return raw.id, False
        return raw.id, updated
