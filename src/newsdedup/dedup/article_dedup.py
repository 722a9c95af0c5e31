"""
Ingest-time article deduplication.

Decides whether a freshly normalized article duplicates something already
indexed, short-circuiting on the first definitive stage:
1. Content-sufficiency gate: title + content too short skips hashing
2. Hash stage: exact content/title hash lookup, verified by text similarity
3. Semantic stage: more-like-this over title^3/content within a time window,
   confirmed by detailed content similarity
4. No match

Duplicate-check failures degrade to "not a duplicate"; ``process_article``
never drops an article because the search index is unavailable.
"""

from __future__ import annotations

import time
from datetime import timedelta
from typing import Any, Dict, List, Optional

import structlog

from newsdedup.config.config import ArticleDedupConfig, HashingConfig
from newsdedup.exceptions import MissingTitleError
from newsdedup.observability.metrics import increment, observe
from newsdedup.protocols import (
    ArticleStoreProtocol,
    DedupMethod,
    DuplicationDecision,
    IndexedDocument,
    NormalizedArticle,
    ProcessResult,
    SearchHit,
    SearchIndexProtocol,
    utcnow,
)

from .hashing import ContentHasher
from .similarity import detailed_similarity, simple_similarity

logger = structlog.get_logger(__name__)


def _require_title(title: Optional[str]) -> str:
    if not title or not title.strip():
        raise MissingTitleError()
    return title


class ArticleDeduplicationEngine:
    """
    Duplicate decision state machine for single incoming articles.

    Args:
        store: Document store of record
        search_index: Search index used for hash and semantic lookups
        config: Stage thresholds and save policy
        hashing: Fingerprinting floors
    """

    def __init__(
        self,
        store: ArticleStoreProtocol,
        search_index: SearchIndexProtocol,
        config: Optional[ArticleDedupConfig] = None,
        hashing: Optional[HashingConfig] = None,
    ) -> None:
        self.store = store
        self.search_index = search_index
        self.config = config or ArticleDedupConfig()
        self.hashing = hashing or HashingConfig()
        self.hasher = ContentHasher(self.hashing.min_normalized_length)

        self.stats: Dict[str, int] = {
            "checked": 0,
            "hash_duplicates": 0,
            "semantic_duplicates": 0,
            "saved": 0,
            "rejected": 0,
            "fallback_saves": 0,
            "index_failures": 0,
        }

    # ------------------------------------------------------------------
    # Duplicate detection
    # ------------------------------------------------------------------

    async def check_for_duplicates(self, article: NormalizedArticle) -> DuplicationDecision:
        """
        Classify an article against the search index.

        Search index failures are logged and reported as "not a duplicate".

        Raises:
            MissingTitleError: If the article has no title
        """
        _require_title(article.title)
        try:
            return await self.detect_duplicates(article)
        except Exception as e:
            logger.error("Duplicate check failed, treating as unique", title=article.title, error=str(e))
            increment("gateway_errors", operation="check_for_duplicates")
            return DuplicationDecision()

    async def detect_duplicates(
        self, article: NormalizedArticle, *, exclude_id: Optional[str] = None
    ) -> DuplicationDecision:
        """
        Run the staged duplicate check, propagating collaborator failures.

        Args:
            article: Candidate article; ``summary`` is used as its content
            exclude_id: Document id never to be reported as a match (self-match)
        """
        title = _require_title(article.title)
        content = article.summary or ""
        start = time.perf_counter()
        self.stats["checked"] += 1

        try:
            combined = f"{title} {content}".strip()
            if len(combined) >= self.hashing.min_combined_length:
                decision = await self._hash_stage(title, content, exclude_id)
                if decision is not None:
                    self.stats["hash_duplicates"] += 1
                    increment("article_checks", method=decision.method.value)
                    return decision
            else:
                logger.debug("Content too short for hashing, skipping hash stage", length=len(combined))

            decision = await self._semantic_stage(title, content, exclude_id)
            if decision.is_duplicate:
                self.stats["semantic_duplicates"] += 1
            increment("article_checks", method=decision.method.value)
            return decision
        finally:
            observe("check_latency", time.perf_counter() - start, stage="total")

    async def _hash_stage(
        self, title: str, content: str, exclude_id: Optional[str]
    ) -> Optional[DuplicationDecision]:
        start = time.perf_counter()
        content_hash = self.hasher.content_hash(title, content)
        title_hash = self.hasher.title_hash(title)

        # One extra hit leaves room for the excluded document itself.
        limit = self.config.max_hash_candidates + (1 if exclude_id else 0)
        hits = await self.search_index.find_by_hashes(content_hash, title_hash, limit=limit)
        observe("check_latency", time.perf_counter() - start, stage="hash")
        hits = [hit for hit in hits if not exclude_id or hit.document.id != exclude_id]

        cfg = self.config
        candidate_text = f"{title} {content}"
        for hit in hits[: cfg.max_hash_candidates]:
            existing = hit.document
            title_hash_match = existing.title_hash is not None and existing.title_hash == title_hash
            simple = simple_similarity(title, existing.title)
            detailed = detailed_similarity(title, existing.title)
            combined = detailed_similarity(candidate_text, f"{existing.title} {existing.content}")

            if (
                title_hash_match
                or simple > cfg.hash_simple_title_threshold
                or detailed > cfg.hash_detailed_title_threshold
                or (combined > cfg.hash_combined_threshold and detailed > cfg.hash_combined_title_threshold)
            ):
                score = max(simple, detailed, combined)
                logger.info(
                    "Hash duplicate detected",
                    title=title,
                    original_id=existing.id,
                    original_title=existing.title,
                    title_hash_match=title_hash_match,
                    score=round(score, 3),
                )
                return DuplicationDecision(
                    is_duplicate=True,
                    method=DedupMethod.HASH,
                    similarity_score=score,
                    original=existing,
                )

        if hits:
            logger.debug("Hash hits found but none verified", title=title, hits=len(hits))
        return None

    async def _semantic_stage(self, title: str, content: str, exclude_id: Optional[str]) -> DuplicationDecision:
        start = time.perf_counter()
        hits = await self._more_like_this(title, content, exclude_id=exclude_id)
        observe("check_latency", time.perf_counter() - start, stage="semantic")

        if not hits:
            return DuplicationDecision()

        top = hits[0]
        rest = [hit.document for hit in hits[1:]]
        normalized_score = top.score / self.config.mlt_score_divisor

        if normalized_score > self.config.semantic_score_threshold:
            original = top.document
            content_similarity = detailed_similarity(
                f"{original.title} {original.content}", f"{title} {content}"
            )
            if content_similarity > self.config.semantic_content_threshold:
                logger.info(
                    "Semantic duplicate confirmed",
                    title=title,
                    original_id=original.id,
                    score=round(normalized_score, 3),
                    content_similarity=round(content_similarity, 3),
                )
                return DuplicationDecision(
                    is_duplicate=True,
                    method=DedupMethod.TEXT_SIMILARITY,
                    similarity_score=normalized_score,
                    original=original,
                    candidates=rest,
                )
            logger.debug(
                "High relevance but content differs, not a duplicate",
                title=title,
                score=round(normalized_score, 3),
                content_similarity=round(content_similarity, 3),
            )
        else:
            logger.debug("Moderate similarity, not a duplicate", title=title, score=round(normalized_score, 3))

        return DuplicationDecision(candidates=rest)

    async def _more_like_this(
        self, title: str, content: str, *, exclude_id: Optional[str] = None, limit: Optional[int] = None
    ) -> List[SearchHit]:
        cfg = self.config
        return await self.search_index.more_like_this(
            title,
            content,
            field_boosts={"title": cfg.mlt_title_boost, "content": cfg.mlt_content_boost},
            since=utcnow() - timedelta(days=cfg.mlt_window_days),
            min_score=cfg.mlt_min_score,
            exclude_id=exclude_id,
            min_term_freq=cfg.mlt_min_term_freq,
            max_query_terms=cfg.mlt_max_query_terms,
            minimum_should_match=cfg.mlt_minimum_should_match,
            limit=limit or cfg.mlt_max_hits,
        )

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    def _blocks_save(self, decision: DuplicationDecision) -> bool:
        if decision.method is DedupMethod.HASH and self.config.hash_match_blocks_save:
            return True
        return decision.similarity_score is not None and decision.similarity_score >= self.config.reject_min_score

    async def process_article(self, article: NormalizedArticle) -> ProcessResult:
        """
        Deduplicate and persist one normalized article.

        Duplicates scoring at least ``reject_min_score`` are rejected; weaker
        matches keep a ``duplicate_of`` back-reference. Anything saved goes to the
        store and is then indexed under the store's id; a failed index write
        leaves the article persisted for a later ``sync_existing``.
        """
        try:
            _require_title(article.title)
        except MissingTitleError as e:
            logger.warning("Article has no title, skipping deduplication", source=article.source)
            increment("articles_processed", outcome="invalid")
            return ProcessResult(saved=False, reason=str(e))

        logger.debug("Processing article", title=article.title, source=article.source)

        try:
            decision = await self.detect_duplicates(article)
        except Exception as e:
            logger.error("Duplicate check failed, falling back to store-only save", title=article.title, error=str(e))
            increment("gateway_errors", operation="process_article")
            return await self._fallback_save(article, e)

        if decision.is_duplicate:
            score = decision.similarity_score or 0.0
            if self._blocks_save(decision):
                self.stats["rejected"] += 1
                increment("articles_processed", outcome="rejected")
                logger.info(
                    "Duplicate rejected",
                    title=article.title,
                    method=decision.method.value,
                    score=round(score, 3),
                    original_id=decision.original.id if decision.original else None,
                )
                return ProcessResult(
                    saved=False,
                    reason=f"Confirmed duplicate ({decision.method.value}, score: {score:.2f})",
                    original=decision.original,
                )

            logger.warning("Low confidence duplicate match, saving anyway", title=article.title, score=round(score, 3))
            article.duplicate_of = decision.original.id if decision.original else None
            article.similarity_score = score

        try:
            saved = await self.store.create_article(article)
        except Exception as e:
            logger.error("Failed to save article", title=article.title, error=str(e))
            increment("articles_processed", outcome="failed")
            return ProcessResult(saved=False, reason=f"Save failed: {e}")

        self.stats["saved"] += 1
        increment("articles_processed", outcome="saved")

        try:
            await self.search_index.index_document(self._document_for(saved))
        except Exception as e:
            self.stats["index_failures"] += 1
            increment("gateway_errors", operation="index_document")
            logger.error("Indexing failed, article kept in store", article_id=saved.id, error=str(e))
            return ProcessResult(
                saved=True,
                reason=f"Saved to store, search indexing failed: {e}",
                article_id=saved.id,
            )

        if article.duplicate_of:
            reason = f"Saved with low-confidence duplicate reference (score: {article.similarity_score:.2f})"
        else:
            reason = "New article saved successfully"
        return ProcessResult(saved=True, reason=reason, original=decision.original, article_id=saved.id)

    async def _fallback_save(self, article: NormalizedArticle, error: Exception) -> ProcessResult:
        try:
            saved = await self.store.create_article(article)
        except Exception as fallback_error:
            logger.error("Fallback save also failed", title=article.title, error=str(fallback_error))
            increment("articles_processed", outcome="failed")
            return ProcessResult(saved=False, reason=f"Save failed: {fallback_error}")

        self.stats["fallback_saves"] += 1
        increment("articles_processed", outcome="fallback")
        return ProcessResult(
            saved=True,
            reason=f"Saved to store only (fallback, duplicate check failed: {error})",
            article_id=saved.id,
        )

    @staticmethod
    def _document_for(article: NormalizedArticle) -> IndexedDocument:
        document = article.to_document()
        document.duplicate_of = article.duplicate_of
        document.similarity_score = article.similarity_score
        return document

    # ------------------------------------------------------------------
    # Search and maintenance
    # ------------------------------------------------------------------

    async def search_similar(self, title: str, content: str = "", limit: int = 5) -> List[IndexedDocument]:
        """Documents similar to the given text, best first."""
        try:
            hits = await self._more_like_this(title, content)
        except Exception as e:
            logger.error("Similar search failed", title=title, error=str(e))
            increment("gateway_errors", operation="search_similar")
            return []
        return [hit.document for hit in hits[:limit]]

    async def sync_existing(self, limit: int = 1000) -> Dict[str, int]:
        """Re-index the most recent stored articles."""
        indexed = 0
        errors = 0
        articles = await self.store.list_articles(oldest_first=False, limit=limit)

        for article in articles:
            try:
                await self.search_index.index_document(self._document_for(article))
                indexed += 1
            except Exception as e:
                errors += 1
                logger.error("Failed to index article", article_id=article.id, error=str(e))

        logger.info("Sync completed", indexed=indexed, errors=errors)
        return {"indexed": indexed, "errors": errors}

    async def recreate_index_and_sync(self, limit: int = 1000) -> Dict[str, Any]:
        await self.search_index.recreate_index()
        result = await self.sync_existing(limit=limit)
        return {"recreated": True, **result}

    async def get_stats(self) -> Dict[str, Any]:
        total_indexed = await self.search_index.count_all()
        duplicates_flagged = await self.store.count_articles(duplicates_only=True)
        rate = duplicates_flagged / total_indexed * 100 if total_indexed else 0.0
        return {
            "total_indexed": total_indexed,
            "duplicates_flagged": duplicates_flagged,
            "deduplication_rate": f"{rate:.2f}%",
            "session": dict(self.stats),
            "hasher": self.hasher.get_stats(),
        }
