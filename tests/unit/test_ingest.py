"""
Tests for the AI agent client and the normalization job.
"""

import json
from datetime import datetime, timezone

import httpx
import pytest

from newsdedup.config import ArticleDedupConfig, HashingConfig, IngestorConfig
from newsdedup.dedup import ArticleDeduplicationEngine
from newsdedup.exceptions import IngestorError
from newsdedup.ingest import AIIngestorClient, NormalizationJob, build_article, parse_ingestor_output
from newsdedup.protocols import Theme

ITEM = {
    "external_id": "ext-1",
    "source": "РИА Новости",
    "title_canonical": "Компания X запустила платформу Y",
    "summary_short": "Компания X представила облачную платформу Y для приложений с ИИ.",
    "lang": "ru",
    "published_at": "2025-09-17T08:05:00Z",
    "theme": "Технологии",
    "score": 84,
}


def _reply(**overrides):
    return json.dumps({"normalized": [{**ITEM, **overrides}], "issues": []}, ensure_ascii=False)


class ScriptedNormalizer:
    """Returns queued replies in order; exceptions in the queue are raised."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.requests = []

    async def normalize(self, raw_data):
        self.requests.append(raw_data)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return reply


def _agent(handler, **config):
    config.setdefault("endpoint", "https://agent.example.com/")
    config.setdefault("api_key", "secret")
    transport = httpx.MockTransport(handler)
    return AIIngestorClient(IngestorConfig(**config), client=httpx.AsyncClient(transport=transport))


@pytest.mark.unit
class TestAIIngestorClient:
    @pytest.mark.asyncio
    async def test_posts_chat_completion_and_returns_content(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"choices": [{"message": {"content": _reply()}}]})

        agent = _agent(handler)
        try:
            reply = await agent.normalize({"title": "Company X launches platform Y"})
        finally:
            await agent.close()

        assert parse_ingestor_output(reply).normalized[0].external_id == "ext-1"
        assert seen["url"] == "https://agent.example.com/api/v1/chat/completions"
        assert seen["auth"] == "Bearer secret"
        system, user = seen["body"]["messages"]
        assert system["role"] == "system"
        assert "title_canonical" in system["content"]
        assert user == {"role": "user", "content": 'data: {"title": "Company X launches platform Y"}'}
        assert seen["body"]["stream"] is False

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        agent = _agent(lambda request: httpx.Response(503, text="overloaded"))
        with pytest.raises(IngestorError, match="503"):
            await agent.normalize({})

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(IngestorError, match="connection refused"):
            await _agent(handler).normalize({})

    @pytest.mark.asyncio
    async def test_unexpected_response_shape(self):
        agent = _agent(lambda request: httpx.Response(200, json={"choices": []}))
        with pytest.raises(IngestorError, match="response shape"):
            await agent.normalize({})

    @pytest.mark.asyncio
    async def test_not_configured(self):
        agent = _agent(lambda request: httpx.Response(200), api_key=None)
        with pytest.raises(IngestorError, match="not configured"):
            await agent.normalize({})


@pytest.mark.unit
class TestBuildArticle:
    def test_maps_agent_fields(self, make_raw):
        raw = make_raw("Company X launches platform Y")
        raw.id = "raw-1"
        item = parse_ingestor_output(_reply()).normalized[0]

        article = build_article(item, raw)

        assert article.title == ITEM["title_canonical"]
        assert article.summary == ITEM["summary_short"]
        assert article.news_raw_id == "raw-1"
        assert article.source_id == "src-1"
        assert article.source == "РИА Новости"
        assert article.theme is Theme.TECHNOLOGY
        assert article.created_at == datetime(2025, 9, 17, 8, 5, tzinfo=timezone.utc)

    def test_source_falls_back_to_feed_creator(self, make_raw):
        item = parse_ingestor_output(_reply(source=None)).normalized[0]
        assert build_article(item, make_raw("Story")).source == "Example Wire"

    def test_unknown_source(self, make_raw):
        raw = make_raw("Story")
        raw.raw_data = {"title": "Story"}
        item = parse_ingestor_output(_reply(source="")).normalized[0]
        assert build_article(item, raw).source == "Unknown Source"

    def test_missing_publication_time_uses_now(self, make_raw):
        item = parse_ingestor_output(_reply(published_at=None)).normalized[0]
        before = datetime.now(timezone.utc)
        article = build_article(item, make_raw("Story"))
        assert article.published_at is None
        assert article.created_at >= before


@pytest.mark.unit
class TestNormalizationJob:
    @pytest.mark.asyncio
    async def test_saves_new_article_and_marks_raw(self, store, article_engine, search_index, make_raw):
        raw = await store.upsert_raw(make_raw("Company X launches platform Y"))
        job = NormalizationJob(store, article_engine, ScriptedNormalizer(_reply()))

        counts = await job.run_once()

        assert counts == {"pending": 1, "saved": 1, "rejected": 0, "skipped": 0, "failed": 0}
        (article,) = await store.list_articles()
        assert article.news_raw_id == raw.id
        assert article.id in search_index.documents
        assert (await store.get_raw(raw.id)).has_normalized
        assert await store.list_pending_raw() == []

    @pytest.mark.asyncio
    async def test_hash_duplicate_is_saved_with_back_reference(self, store, article_engine, make_raw):
        await store.upsert_raw(make_raw("Company X launches platform Y", guid="a"))
        await store.upsert_raw(make_raw("Company X has launched platform Y", guid="b"))
        job = NormalizationJob(store, article_engine, ScriptedNormalizer(_reply()))

        counts = await job.run_once()

        assert counts["saved"] == 2
        first, second = sorted(await store.list_articles(), key=lambda article: article.duplicate_of or "")
        assert first.duplicate_of is None
        assert second.duplicate_of == first.id

    @pytest.mark.asyncio
    async def test_duplicate_is_rejected_and_raw_flagged(self, store, search_index, make_raw):
        await store.upsert_raw(make_raw("Company X launches platform Y", guid="a"))
        second = await store.upsert_raw(make_raw("Company X has launched platform Y", guid="b"))
        engine = ArticleDeduplicationEngine(
            store, search_index, ArticleDedupConfig(hash_match_blocks_save=True), HashingConfig()
        )
        job = NormalizationJob(store, engine, ScriptedNormalizer(_reply()))

        counts = await job.run_once()

        assert counts["saved"] == 1
        assert counts["rejected"] == 1
        assert await store.count_articles() == 1
        flagged = await store.get_raw(second.id)
        assert flagged.has_normalized
        assert flagged.is_duplicate
        assert flagged.duplicate_reason.startswith("Confirmed duplicate")

    @pytest.mark.asyncio
    async def test_unparseable_output_leaves_raw_pending(self, store, article_engine, make_raw):
        raw = await store.upsert_raw(make_raw("Story"))
        job = NormalizationJob(store, article_engine, ScriptedNormalizer("I could not process this."))

        counts = await job.run_once()

        assert counts["skipped"] == 1
        assert [item.id for item in await store.list_pending_raw()] == [raw.id]

    @pytest.mark.asyncio
    async def test_empty_output_is_skipped(self, store, article_engine, make_raw):
        await store.upsert_raw(make_raw("Story"))
        reply = json.dumps({"normalized": [], "issues": ["no content"]})
        counts = await NormalizationJob(store, article_engine, ScriptedNormalizer(reply)).run_once()
        assert counts["skipped"] == 1

    @pytest.mark.asyncio
    async def test_agent_failure_is_counted_and_retried_later(self, store, article_engine, make_raw):
        await store.upsert_raw(make_raw("Story"))
        normalizer = ScriptedNormalizer(IngestorError("AI agent request failed: 503"))

        counts = await NormalizationJob(store, article_engine, normalizer).run_once()

        assert counts["failed"] == 1
        assert len(await store.list_pending_raw()) == 1

    @pytest.mark.asyncio
    async def test_batch_size(self, store, article_engine, make_raw):
        for i in range(3):
            await store.upsert_raw(make_raw(f"Story {i}"))
        normalizer = ScriptedNormalizer(*(_reply(title_canonical=f"Отдельная новость номер {i}") for i in range(2)))

        counts = await NormalizationJob(store, article_engine, normalizer, batch_size=2).run_once()

        assert counts["pending"] == 2
        assert len(normalizer.requests) == 2

    @pytest.mark.asyncio
    async def test_nothing_pending(self, store, article_engine):
        counts = await NormalizationJob(store, article_engine, ScriptedNormalizer(_reply())).run_once()
        assert counts["pending"] == 0
