"""测试文章全文抓取工作流."""

import json
from datetime import UTC, datetime

from feedpipe.fetcher.extractor import ExtractedArticle
from feedpipe.jobs.engine import JobOutcome, Orchestrator
from feedpipe.jobs.events import ARTICLE_PARSE
from feedpipe.models.article import Article
from feedpipe.models.states import FetchStatus, JobStatus
from feedpipe.notifications.hub import NotificationHub
from feedpipe.notifications.schemas import ARTICLE_PARSED
from tests.helpers import FakeUpstream, RecordingChannel

ARTICLE_URL = "https://example.com/posts/hello"
ARTICLE_HTML = "<html><body><article><p>Hello world</p></article></body></html>"


async def add_article(session_factory, feed_id: int, **fields) -> Article:
    values = {
        "guid": ARTICLE_URL,
        "url": ARTICLE_URL,
        "slug": "hello",
        "title": "Feed Title",
        "summary": "Feed summary",
        "author_name": "Feed Author",
        "published_at": datetime(2026, 1, 9, 8),
        "fetch_status": FetchStatus.SCHEDULED,
    }
    values.update(fields)
    async with session_factory() as session:
        article = Article(feed_id=feed_id, **values)
        session.add(article)
        await session.commit()
        await session.refresh(article)
        return article


async def parse(orchestrator: Orchestrator, feed_id: int, article_id: int) -> JobOutcome:
    [job_id] = await orchestrator.send(
        ARTICLE_PARSE, {"feedId": feed_id, "articleId": article_id}
    )
    return await orchestrator.run_until_complete(job_id)


async def reload(session_factory, article_id: int) -> Article:
    async with session_factory() as session:
        article = await session.get(Article, article_id)
        assert article is not None
        return article


class TestParseArticle:
    """测试正文写入."""

    async def test_overwrites_content_and_keeps_missing_fields(
        self, orchestrator, upstream: FakeUpstream, extractor, add_feed_row, session_factory
    ) -> None:
        """提取结果为空的字段保留原值，正文总是覆盖."""
        upstream.add(ARTICLE_URL, ARTICLE_HTML)
        extractor.extract.return_value = ExtractedArticle(
            title="Extracted Title",
            content="<p>Hello world</p>",
            byline="Jane Doe",
            length=11,
        )
        feed = await add_feed_row(url="https://example.com/feed.xml")
        article = await add_article(
            session_factory, feed.id, content="<p>teaser</p>", source_title="Feed Source"
        )

        outcome = await parse(orchestrator, feed.id, article.id)

        assert outcome.status == JobStatus.COMPLETED
        assert outcome.result == {
            "articleId": article.id,
            "feedId": feed.id,
            "status": "success",
            "title": "Extracted Title",
            "contentLength": 11,
        }
        extractor.extract.assert_awaited_once_with(ARTICLE_HTML, ARTICLE_URL)

        stored = await reload(session_factory, article.id)
        assert stored.content == "<p>Hello world</p>"
        assert stored.author_name == "Jane Doe"
        assert stored.summary == "Feed summary"
        assert stored.source_title == "Feed Source"
        assert stored.published_at == datetime(2026, 1, 9, 8)
        assert stored.fetch_status == FetchStatus.COMPLETE
        assert stored.scraped_at is not None

    async def test_extracted_metadata_overrides(
        self, orchestrator, upstream: FakeUpstream, extractor, add_feed_row, session_factory
    ) -> None:
        upstream.add(ARTICLE_URL, ARTICLE_HTML)
        extractor.extract.return_value = ExtractedArticle(
            content="<p>Hello world</p>",
            excerpt="Extracted excerpt",
            site_name="Example",
            published_time=datetime(2026, 1, 10, 9, tzinfo=UTC),
            length=11,
        )
        feed = await add_feed_row(url="https://example.com/feed.xml")
        article = await add_article(session_factory, feed.id)

        outcome = await parse(orchestrator, feed.id, article.id)

        assert outcome.result["title"] == "Feed Title"
        stored = await reload(session_factory, article.id)
        assert stored.summary == "Extracted excerpt"
        assert stored.source_title == "Example"
        assert stored.author_name == "Feed Author"
        assert stored.published_at == datetime(2026, 1, 10, 9)

    async def test_notifies_subscribers(
        self,
        orchestrator,
        upstream: FakeUpstream,
        extractor,
        add_feed_row,
        subscribe_user,
        session_factory,
        hub: NotificationHub,
    ) -> None:
        upstream.add(ARTICLE_URL, ARTICLE_HTML)
        extractor.extract.return_value = ExtractedArticle(content="<p>Hi</p>", length=2)
        feed = await add_feed_row(url="https://example.com/feed.xml")
        article = await add_article(session_factory, feed.id)
        await subscribe_user("alice", feed.id)
        channel = RecordingChannel()
        await hub.add_connection("alice", channel)

        await parse(orchestrator, feed.id, article.id)

        event, data = channel.events[0]
        assert event == ARTICLE_PARSED
        assert json.loads(data) == {
            "articleId": article.id,
            "feedId": feed.id,
            "title": "Feed Title",
            "contentLength": 2,
        }

    async def test_unscheduled_article_is_scheduled_first(
        self, orchestrator, upstream: FakeUpstream, extractor, add_feed_row, session_factory
    ) -> None:
        """手动触发时未调度的文章先进入 scheduled."""
        upstream.add(ARTICLE_URL, ARTICLE_HTML)
        extractor.extract.return_value = ExtractedArticle(content="<p>Hi</p>", length=2)
        feed = await add_feed_row(url="https://example.com/feed.xml")
        article = await add_article(session_factory, feed.id, fetch_status=FetchStatus.NONE)

        outcome = await parse(orchestrator, feed.id, article.id)

        assert outcome.status == JobStatus.COMPLETED
        assert (await reload(session_factory, article.id)).fetch_status == FetchStatus.COMPLETE


class TestParseFailures:
    """测试失败处理."""

    async def test_extraction_failure_marks_failed(
        self, orchestrator, upstream: FakeUpstream, add_feed_row, session_factory, sleeps
    ) -> None:
        """无法提取正文不重试，状态置为 failed."""
        upstream.add(ARTICLE_URL, ARTICLE_HTML)
        feed = await add_feed_row(url="https://example.com/feed.xml")
        article = await add_article(session_factory, feed.id)

        outcome = await parse(orchestrator, feed.id, article.id)

        assert outcome.status == JobStatus.FAILED
        assert sleeps == []
        stored = await reload(session_factory, article.id)
        assert stored.fetch_status == FetchStatus.FAILED
        assert stored.content is None

    async def test_http_error_marks_failed(
        self, orchestrator, upstream: FakeUpstream, extractor, add_feed_row, session_factory
    ) -> None:
        upstream.add(ARTICLE_URL, status_code=404)
        feed = await add_feed_row(url="https://example.com/feed.xml")
        article = await add_article(session_factory, feed.id)

        outcome = await parse(orchestrator, feed.id, article.id)

        assert outcome.status == JobStatus.FAILED
        extractor.extract.assert_not_awaited()
        assert (await reload(session_factory, article.id)).fetch_status == FetchStatus.FAILED

    async def test_article_without_url(
        self, orchestrator, upstream: FakeUpstream, add_feed_row, session_factory
    ) -> None:
        feed = await add_feed_row(url="https://example.com/feed.xml")
        article = await add_article(session_factory, feed.id, url=None)

        outcome = await parse(orchestrator, feed.id, article.id)

        assert outcome.status == JobStatus.FAILED
        assert upstream.requests == []
        assert (await reload(session_factory, article.id)).fetch_status == FetchStatus.FAILED

    async def test_missing_article(self, orchestrator, add_feed_row) -> None:
        feed = await add_feed_row(url="https://example.com/feed.xml")

        outcome = await parse(orchestrator, feed.id, 999)

        assert outcome.status == JobStatus.FAILED
        assert outcome.error == "文章 999 不存在"


class TestDefinition:
    """测试任务定义."""

    async def test_concurrency_key_per_feed(self, orchestrator) -> None:
        """同一 Feed 的文章共用一个并发键."""
        job_ids = await orchestrator.send(
            ARTICLE_PARSE,
            [
                {"feedId": 1, "articleId": 10},
                {"feedId": 1, "articleId": 11},
                {"feedId": 2, "articleId": 12},
            ],
        )

        keys = [(await orchestrator.get_run(job_id)).concurrency_key for job_id in job_ids]

        assert keys == ["parse-article:1", "parse-article:1", "parse-article:2"]
        assert orchestrator.get_definition("parse-article").concurrency.limit == 1
