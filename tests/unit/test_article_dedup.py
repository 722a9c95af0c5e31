"""
Tests for ingest-time article deduplication.
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from newsdedup.config import ArticleDedupConfig, HashingConfig
from newsdedup.dedup import ArticleDeduplicationEngine
from newsdedup.exceptions import MissingTitleError, StoreError
from newsdedup.observability.metrics import METRICS
from newsdedup.protocols import DedupMethod, IndexedDocument, SearchHit, utcnow
from tests.helpers import metric_delta

TITLE = "Компания X запустила платформу Y"
CONTENT = "Компания X представила облачную платформу Y для приложений с ИИ. Решение упрощает интеграцию моделей."


@pytest.mark.unit
class TestCheckForDuplicates:
    @pytest.mark.asyncio
    async def test_identical_article_is_hash_duplicate(self, article_engine, make_article):
        first = await article_engine.process_article(make_article(TITLE, CONTENT))
        assert first.saved

        decision = await article_engine.check_for_duplicates(make_article(TITLE, CONTENT))

        assert decision.is_duplicate
        assert decision.method is DedupMethod.HASH
        assert decision.similarity_score == pytest.approx(1.0)
        assert decision.original is not None
        assert decision.original.id == first.article_id

    @pytest.mark.asyncio
    async def test_too_short_content_skips_hash_stage(self, article_engine, search_index, make_article):
        decision = await article_engine.check_for_duplicates(make_article("Abc", ""))

        assert not decision.is_duplicate
        assert decision.method is DedupMethod.NONE
        assert search_index.called("find_by_hashes") == []
        assert len(search_index.called("more_like_this")) == 1

    @pytest.mark.asyncio
    async def test_high_relevance_with_different_content_is_not_duplicate(
        self, article_engine, search_index, make_article
    ):
        other = IndexedDocument(
            id="other",
            title="Футбольный клуб выиграл кубок",
            content="Болельщики праздновали победу команды на центральной площади города",
        )
        search_index.scripted_mlt = [SearchHit(document=other, score=18.0)]

        decision = await article_engine.check_for_duplicates(make_article(TITLE, CONTENT))

        assert not decision.is_duplicate
        assert decision.method is DedupMethod.NONE
        assert decision.candidates == []

    @pytest.mark.asyncio
    async def test_high_relevance_with_similar_content_is_semantic_duplicate(
        self, article_engine, search_index, make_article
    ):
        original = IndexedDocument(id="orig", title=TITLE, content=CONTENT)
        search_index.scripted_mlt = [SearchHit(document=original, score=18.0)]

        decision = await article_engine.check_for_duplicates(make_article("Компания X выпустила платформу Y", CONTENT))

        assert decision.is_duplicate
        assert decision.method is DedupMethod.TEXT_SIMILARITY
        assert decision.similarity_score == pytest.approx(1.8)
        assert decision.original is original

    @pytest.mark.asyncio
    async def test_moderate_relevance_returns_remaining_hits_as_candidates(
        self, article_engine, search_index, make_article
    ):
        top = IndexedDocument(id="a", title=TITLE, content=CONTENT)
        second = IndexedDocument(id="b", title="Другая новость", content="Совсем другой текст")
        search_index.scripted_mlt = [SearchHit(document=top, score=12.0), SearchHit(document=second, score=5.0)]

        decision = await article_engine.check_for_duplicates(make_article(TITLE, CONTENT))

        assert not decision.is_duplicate
        assert [doc.id for doc in decision.candidates] == ["b"]

    @pytest.mark.asyncio
    async def test_unverified_hash_hit_falls_through_to_semantic_stage(self, article_engine, make_article):
        await article_engine.process_article(make_article("Alpha beta gamma", "delta epsilon zeta"))

        decision = await article_engine.check_for_duplicates(make_article("Alpha", "beta gamma delta epsilon zeta"))

        assert decision.is_duplicate
        assert decision.method is DedupMethod.TEXT_SIMILARITY

    @pytest.mark.asyncio
    async def test_excluded_document_does_not_use_up_hash_candidates(self, article_engine, search_index, make_article):
        # Same content hash, but titles too different to verify.
        for doc_id in ("self", "b", "c"):
            await search_index.index_document(
                IndexedDocument(id=doc_id, title="Alpha beta gamma", content="delta epsilon zeta")
            )
        await search_index.index_document(IndexedDocument(id="match", title="Alpha", content="beta gamma delta epsilon zeta"))

        decision = await article_engine.detect_duplicates(
            make_article("Alpha", "beta gamma delta epsilon zeta"), exclude_id="self"
        )

        (call,) = search_index.called("find_by_hashes")
        assert call["limit"] == 4
        assert decision.method is DedupMethod.HASH
        assert decision.original.id == "match"

    @pytest.mark.asyncio
    async def test_semantic_query_uses_boosts_window_and_floor(self, article_engine, search_index, make_article):
        await article_engine.check_for_duplicates(make_article(TITLE, CONTENT))

        (call,) = search_index.called("more_like_this")
        assert call["field_boosts"] == {"title": 3, "content": 1}
        assert call["min_score"] == 2.0
        assert utcnow() - timedelta(days=7, minutes=1) < call["since"] < utcnow() - timedelta(days=6, hours=23)

    @pytest.mark.asyncio
    async def test_articles_outside_window_are_not_semantic_matches(self, article_engine, search_index, make_article):
        old = IndexedDocument(id="old", title="Alpha", content="beta gamma delta epsilon zeta theta")
        old.created_at = utcnow() - timedelta(days=10)
        await search_index.index_document(old)

        decision = await article_engine.check_for_duplicates(make_article("Alpha beta", "gamma delta epsilon zeta"))

        assert not decision.is_duplicate

    @pytest.mark.asyncio
    async def test_index_failure_is_reported_as_unique(self, article_engine, search_index, make_article):
        search_index.fail_on = {"*"}

        with metric_delta(METRICS["gateway_errors"], operation="check_for_duplicates"):
            decision = await article_engine.check_for_duplicates(make_article(TITLE, CONTENT))

        assert not decision.is_duplicate
        assert decision.method is DedupMethod.NONE

    @pytest.mark.asyncio
    async def test_missing_title_fails_fast(self, article_engine, search_index, make_article):
        with pytest.raises(MissingTitleError):
            await article_engine.check_for_duplicates(make_article("   ", CONTENT))
        assert search_index.calls == []

    @pytest.mark.asyncio
    async def test_hash_decision_is_counted(self, article_engine, make_article):
        await article_engine.process_article(make_article(TITLE, CONTENT))

        with metric_delta(METRICS["article_checks"], method="hash"):
            await article_engine.check_for_duplicates(make_article(TITLE, CONTENT))


@pytest.mark.unit
class TestProcessArticle:
    @pytest.mark.asyncio
    async def test_new_article_is_saved_and_indexed_under_store_id(
        self, article_engine, store, search_index, make_article
    ):
        result = await article_engine.process_article(make_article(TITLE, CONTENT))

        assert result.saved
        assert result.reason == "New article saved successfully"
        stored = await store.get_article(result.article_id)
        assert stored is not None and stored.title == TITLE
        assert result.article_id in search_index.documents
        assert search_index.documents[result.article_id].content == CONTENT

    @pytest.mark.asyncio
    async def test_hash_duplicate_is_rejected_in_strict_mode(self, store, search_index, make_article):
        engine = ArticleDeduplicationEngine(
            store, search_index, ArticleDedupConfig(hash_match_blocks_save=True), HashingConfig()
        )
        first = await engine.process_article(make_article(TITLE, CONTENT))

        second = await engine.process_article(make_article(TITLE, CONTENT))

        assert not second.saved
        assert second.reason.startswith("Confirmed duplicate (hash")
        assert second.original is not None and second.original.id == first.article_id
        assert await store.count_articles() == 1

    @pytest.mark.asyncio
    async def test_semantic_duplicate_at_reject_score_is_rejected(self, article_engine, search_index, make_article):
        original = IndexedDocument(id="orig", title=TITLE, content=CONTENT)
        search_index.scripted_mlt = [SearchHit(document=original, score=15.5)]

        result = await article_engine.process_article(make_article("Компания X выпустила платформу Y", CONTENT))

        assert not result.saved
        assert "text_similarity" in result.reason

    @pytest.mark.asyncio
    async def test_hash_duplicate_is_saved_with_back_reference(
        self, article_engine, store, search_index, make_article
    ):
        first = await article_engine.process_article(make_article(TITLE, CONTENT))

        second = await article_engine.process_article(make_article(TITLE, CONTENT))

        assert second.saved
        assert "low-confidence" in second.reason
        stored = await store.get_article(second.article_id)
        assert stored.duplicate_of == first.article_id
        assert stored.similarity_score == pytest.approx(1.0)
        assert search_index.documents[second.article_id].duplicate_of == first.article_id

        stats = await article_engine.get_stats()
        assert stats["duplicates_flagged"] == 1
        assert stats["total_indexed"] == 2
        assert stats["deduplication_rate"] == "50.00%"

    @pytest.mark.asyncio
    async def test_missing_title_is_not_saved(self, article_engine, store, make_article):
        result = await article_engine.process_article(make_article("", CONTENT))

        assert not result.saved
        assert "no title" in result.reason
        assert await store.count_articles() == 0

    @pytest.mark.asyncio
    async def test_check_failure_falls_back_to_store_only(self, article_engine, store, search_index, make_article):
        search_index.fail_on = {"find_by_hashes", "more_like_this"}

        result = await article_engine.process_article(make_article(TITLE, CONTENT))

        assert result.saved
        assert "fallback" in result.reason
        assert await store.count_articles() == 1
        assert search_index.called("index_document") == []

    @pytest.mark.asyncio
    async def test_fallback_failure_reports_error(self, search_index, make_article):
        failing_store = AsyncMock()
        failing_store.create_article.side_effect = StoreError("disk full")
        search_index.fail_on = {"*"}
        engine = ArticleDeduplicationEngine(failing_store, search_index)

        result = await engine.process_article(make_article(TITLE, CONTENT))

        assert not result.saved
        assert "disk full" in result.reason

    @pytest.mark.asyncio
    async def test_index_failure_keeps_article_in_store(self, article_engine, store, search_index, make_article):
        search_index.fail_on = {"index_document"}

        result = await article_engine.process_article(make_article(TITLE, CONTENT))

        assert result.saved
        assert "indexing failed" in result.reason
        assert await store.get_article(result.article_id) is not None
        assert search_index.documents == {}


@pytest.mark.unit
class TestMaintenance:
    @pytest.mark.asyncio
    async def test_sync_existing_indexes_stored_articles(self, article_engine, store, search_index, make_article):
        ids = [(await store.create_article(make_article(f"Новость номер {i}", CONTENT))).id for i in range(3)]

        result = await article_engine.sync_existing()

        assert result == {"indexed": 3, "errors": 0}
        assert set(search_index.documents) == set(ids)
        assert all(doc.content_hash for doc in search_index.documents.values())

    @pytest.mark.asyncio
    async def test_sync_existing_counts_errors(self, article_engine, store, search_index, make_article):
        await store.create_article(make_article(TITLE, CONTENT))
        search_index.fail_on = {"index_document"}

        assert await article_engine.sync_existing() == {"indexed": 0, "errors": 1}

    @pytest.mark.asyncio
    async def test_recreate_index_and_sync(self, article_engine, store, search_index, make_article):
        await store.create_article(make_article(TITLE, CONTENT))
        await search_index.index_document(IndexedDocument(id="stale", title="Stale document title"))

        result = await article_engine.recreate_index_and_sync()

        assert result == {"recreated": True, "indexed": 1, "errors": 0}
        assert "stale" not in search_index.documents

    @pytest.mark.asyncio
    async def test_search_similar_limits_results(self, article_engine, search_index, make_article):
        search_index.scripted_mlt = [
            SearchHit(document=IndexedDocument(id=str(i), title=f"Doc {i}"), score=10.0 - i) for i in range(8)
        ]

        results = await article_engine.search_similar(TITLE, CONTENT, limit=5)

        assert [doc.id for doc in results] == ["0", "1", "2", "3", "4"]

    @pytest.mark.asyncio
    async def test_search_similar_degrades_to_empty(self, article_engine, search_index):
        search_index.fail_on = {"more_like_this"}
        assert await article_engine.search_similar(TITLE, CONTENT) == []
