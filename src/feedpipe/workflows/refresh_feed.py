"""Feed 刷新工作流.

条件请求抓取 Feed → 解析 → 更新元数据 → 插入新文章（按 guid 去重）→
为最新的若干篇文章触发全文抓取 → 通知订阅者。
"""

import json
import logging
from datetime import datetime
from typing import Any

from sqlalchemy.dialects.sqlite import insert
from sqlmodel import select

from feedpipe.config import Settings
from feedpipe.fetcher.feed_parser import ParsedFeed, parse_feed_async
from feedpipe.fetcher.http import FEED_ACCEPT, FetchResult
from feedpipe.jobs.engine import Concurrency, JobContext, JobDefinition
from feedpipe.jobs.errors import NonRetriableError, ResourceNotFoundError
from feedpipe.jobs.events import ARTICLE_PARSE, FEED_PARSE_REQUESTED
from feedpipe.models.article import Article
from feedpipe.models.feed import Feed
from feedpipe.models.states import FETCH_TRANSITIONS, FetchStatus, check_transition
from feedpipe.notifications.schemas import FEED_PARSED, FeedParsed
from feedpipe.utils.dates import utc_now
from feedpipe.utils.slug import generate_unique_article_slug, generate_unique_slug
from feedpipe.workflows.common import notify_subscribers
from feedpipe.workflows.services import PipelineServices

logger = logging.getLogger(__name__)

FUNCTION_ID = "refresh-feed"
UNTITLED = "Untitled"


async def _load_active_feed(services: PipelineServices, feed_id: int) -> dict[str, Any]:
    async with services.session_factory() as session:
        feed = await session.get(Feed, feed_id)
        if feed is None:
            msg = f"Feed {feed_id} 不存在"
            raise ResourceNotFoundError(msg)
        if not feed.is_active:
            msg = f"Feed {feed_id} 已停用"
            raise NonRetriableError(msg)
        return {
            "id": feed.id,
            "url": feed.url,
            "title": feed.title,
            "etag": feed.etag,
            "last_modified": feed.last_modified_header,
        }


async def _fetch_feed(services: PipelineServices, feed: dict[str, Any]) -> FetchResult:
    return await services.fetcher.fetch(
        feed["url"],
        timeout=services.settings.feed_fetch_timeout_seconds,
        etag=feed["etag"],
        last_modified=feed["last_modified"],
        accept=FEED_ACCEPT,
    )


async def _touch_last_fetched(services: PipelineServices, feed_id: int) -> None:
    async with services.session_factory() as session:
        feed = await session.get(Feed, feed_id)
        if feed is None:
            return
        feed.last_fetched_at = utc_now()
        await session.commit()


async def _update_feed_metadata(
    services: PipelineServices,
    feed_id: int,
    parsed: ParsedFeed,
    fetched: FetchResult,
) -> str | None:
    """更新 Feed 元数据与缓存校验字段，返回 Feed 标题."""
    async with services.session_factory() as session:
        feed = await session.get(Feed, feed_id)
        if feed is None:
            msg = f"Feed {feed_id} 不存在"
            raise ResourceNotFoundError(msg)

        feed.slug = await generate_unique_slug(
            session, parsed.title, feed.url, exclude_feed_id=feed_id
        )
        feed.type = parsed.type
        feed.title = parsed.title
        feed.description = parsed.description
        feed.link = parsed.link
        feed.language = parsed.language
        feed.author_name = parsed.author
        feed.image_url = parsed.image_url
        feed.image_title = parsed.image_title
        feed.copyright = parsed.copyright
        feed.generator = parsed.generator
        feed.last_build_date = parsed.last_build_date
        feed.ttl = parsed.ttl
        feed.etag = fetched.etag
        feed.last_modified_header = fetched.last_modified

        now = utc_now()
        feed.last_fetched_at = now
        feed.last_success_at = now
        feed.fetch_error_count = 0
        feed.fetch_error_message = None
        feed.updated_at = now
        await session.commit()
        return feed.title


async def _insert_articles(
    services: PipelineServices, feed_id: int, parsed: ParsedFeed
) -> list[dict[str, Any]]:
    """插入新文章，已存在的 guid 跳过；返回新插入文章的 ID 与发布时间（按插入顺序）."""
    inserted: list[dict[str, Any]] = []
    async with services.session_factory() as session:
        result = await session.execute(select(Article.guid).where(Article.feed_id == feed_id))
        known = set(result.scalars().all())

        for entry in parsed.items:
            if entry.guid in known:
                continue
            known.add(entry.guid)

            slug = await generate_unique_article_slug(session, feed_id, entry.title, entry.link)
            stmt = (
                insert(Article)
                .values(
                    feed_id=feed_id,
                    guid=entry.guid,
                    guid_is_permalink=entry.guid_is_permalink,
                    url=entry.link,
                    slug=slug,
                    title=entry.title or UNTITLED,
                    content=entry.content,
                    summary=entry.summary,
                    author_name=entry.author,
                    published_at=entry.published_at,
                    categories=(
                        json.dumps(entry.categories, ensure_ascii=False)
                        if entry.categories
                        else None
                    ),
                    fetch_status=FetchStatus.NONE,
                    created_at=utc_now(),
                )
                .on_conflict_do_nothing()
                .returning(Article.id)
            )
            article_id = (await session.execute(stmt)).scalar_one_or_none()
            if article_id is not None:
                inserted.append({"id": article_id, "published_at": entry.published_at})

        await session.commit()

    logger.info(f"Feed {feed_id}: {len(parsed.items)} 个条目，新增 {len(inserted)} 篇文章")
    return inserted


def select_for_fanout(articles: list[dict[str, Any]], limit: int) -> list[int]:
    """按发布时间倒序挑选文章，无发布时间的排在最后，同序时保持插入顺序."""
    dated = [article for article in articles if article.get("published_at")]
    undated = [article for article in articles if not article.get("published_at")]
    dated.sort(key=lambda article: _as_datetime(article["published_at"]), reverse=True)
    return [article["id"] for article in [*dated, *undated][:limit]]


def _as_datetime(value: datetime | str) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


async def _schedule_articles(services: PipelineServices, article_ids: list[int]) -> list[int]:
    scheduled = []
    async with services.session_factory() as session:
        for article_id in article_ids:
            article = await session.get(Article, article_id)
            if article is None:
                continue
            article.fetch_status = check_transition(
                FETCH_TRANSITIONS,
                article.fetch_status,
                FetchStatus.SCHEDULED,
                f"文章 {article_id}",
            )
            scheduled.append(article_id)
        await session.commit()
    return scheduled


async def refresh_feed(ctx: JobContext) -> dict[str, Any]:
    """刷新单个 Feed."""
    services: PipelineServices = ctx.services
    feed_id = ctx.data["feedId"]

    feed = await ctx.step("validate-feed", _load_active_feed, services, feed_id)
    fetched = FetchResult.model_validate(
        await ctx.step("fetch-feed", _fetch_feed, services, feed)
    )

    if fetched.not_modified:
        await ctx.step("update-last-fetched", _touch_last_fetched, services, feed_id)
        logger.info(f"Feed {feed_id} 未修改")
        return {
            "feedId": feed_id,
            "status": "not-modified",
            "feedTitle": feed["title"],
            "totalItems": 0,
            "newArticles": 0,
        }

    parsed = ParsedFeed.model_validate(
        await ctx.step("parse-feed", parse_feed_async, fetched.text or "")
    )
    feed_title = await ctx.step(
        "update-feed-metadata", _update_feed_metadata, services, feed_id, parsed, fetched
    )
    inserted = await ctx.step("insert-articles", _insert_articles, services, feed_id, parsed)

    selected = select_for_fanout(inserted, services.settings.article_fanout_limit)
    if selected:
        scheduled = await ctx.step("schedule-articles", _schedule_articles, services, selected)
        await ctx.send_event(
            "fan-out-parse-articles",
            ARTICLE_PARSE,
            [{"feedId": feed_id, "articleId": article_id} for article_id in scheduled],
        )

    new_articles = len(inserted)
    if new_articles > 0:
        await ctx.step(
            "notify-subscribers",
            notify_subscribers,
            services,
            feed_id,
            FEED_PARSED,
            FeedParsed(
                feed_id=feed_id,
                feed_title=feed_title,
                new_articles=new_articles,
                total_items=len(parsed.items),
            ),
        )

    return {
        "feedId": feed_id,
        "status": "success",
        "feedTitle": feed_title,
        "totalItems": len(parsed.items),
        "newArticles": new_articles,
    }


async def record_fetch_failure(ctx: JobContext, error: BaseException) -> None:
    """最终失败时记录错误次数与信息."""
    services: PipelineServices = ctx.services
    feed_id = ctx.data["feedId"]
    async with services.session_factory() as session:
        feed = await session.get(Feed, feed_id)
        if feed is None:
            return
        feed.fetch_error_count += 1
        feed.fetch_error_message = str(error)
        feed.last_fetched_at = utc_now()
        await session.commit()
    logger.warning(f"Feed {feed_id} 刷新失败 (累计 {feed.fetch_error_count} 次): {error}")


def create_definition(settings: Settings) -> JobDefinition:
    """Feed 刷新任务定义."""
    return JobDefinition(
        id=FUNCTION_ID,
        event=FEED_PARSE_REQUESTED,
        handler=refresh_feed,
        retries=settings.job_max_retries,
        concurrency=Concurrency(limit=settings.feed_refresh_concurrency),
        on_failure=record_fetch_failure,
    )
