"""按 URL 添加订阅工作流.

URL 本身是 Feed 时直接创建；否则在页面中发现候选 Feed：
只有一个可用时自动创建，多个时交给用户选择，没有则失败。
"""

import json
import logging
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from feedpipe.config import Settings
from feedpipe.fetcher.discovery import discover_feed_urls
from feedpipe.fetcher.feed_parser import parse_feed_async
from feedpipe.fetcher.http import FEED_ACCEPT, FetchResult
from feedpipe.jobs.engine import Concurrency, JobContext, JobDefinition
from feedpipe.jobs.errors import FeedParseError, HttpStatusError, NonRetriableError
from feedpipe.jobs.events import FEED_ADD_REQUESTED, FEED_PARSE_REQUESTED
from feedpipe.models.feed import Feed
from feedpipe.models.pending_feed import PendingFeedRequest
from feedpipe.models.states import (
    PENDING_TRANSITIONS,
    PendingStatus,
    check_transition,
    is_terminal_pending,
)
from feedpipe.notifications.schemas import (
    FEED_ADD_AMBIGUOUS,
    FEED_ADD_FAILED,
    FEED_ADDED,
    FeedAddAmbiguous,
    FeedAddFailed,
    FeedAdded,
)
from feedpipe.utils.dates import utc_now
from feedpipe.utils.slug import generate_unique_slug
from feedpipe.workflows.common import subscribe
from feedpipe.workflows.services import PipelineServices

logger = logging.getLogger(__name__)

FUNCTION_ID = "add-feed"

NO_FEEDS_FOUND = "该地址不是有效的 RSS/Atom Feed，页面中也没有发现 Feed 链接"
NO_VALID_FEEDS = "页面中发现了 Feed 链接，但都不是有效的 RSS/Atom Feed"


async def _find_feed(services: PipelineServices, url: str) -> int | None:
    async with services.session_factory() as session:
        result = await session.execute(select(Feed.id).where(Feed.url == url))
        return result.scalar_one_or_none()


async def _fetch(
    services: PipelineServices, url: str, timeout: float, **kwargs: Any
) -> FetchResult:
    return await services.fetcher.fetch(url, timeout=timeout, accept=FEED_ACCEPT, **kwargs)


async def _validate(text: str | None) -> dict[str, Any]:
    """尝试按 Feed 解析，返回 Feed 元数据（不含条目）或失败原因."""
    try:
        parsed = await parse_feed_async(text or "")
    except FeedParseError as e:
        return {"valid": False, "error": str(e)}
    return {"valid": True, "feed": parsed.model_dump(exclude={"items"})}


async def _validate_candidate(services: PipelineServices, url: str) -> dict[str, Any] | None:
    """抓取并校验候选 Feed，非 2xx 或无法解析时返回 None；限流与超时仍向上抛出."""
    result = await _fetch(
        services,
        url,
        services.settings.discovery_fetch_timeout_seconds,
        allow_error_status=True,
    )
    if not result.ok:
        logger.info(f"候选 Feed 不可用 (HTTP {result.status_code}): {url}")
        return None
    validation = await _validate(result.text)
    if not validation["valid"]:
        logger.info(f"候选 Feed 无法解析: {url}")
        return None
    return {"url": url, "feed": validation["feed"]}


async def _create_feed(services: PipelineServices, url: str, metadata: dict[str, Any]) -> int:
    """创建 Feed；URL 已存在时返回已有 Feed."""
    async with services.session_factory() as session:
        feed = Feed(
            url=url,
            type=metadata.get("type") or "rss",
            slug=await generate_unique_slug(session, metadata.get("title"), url),
            title=metadata.get("title"),
            description=metadata.get("description"),
            link=metadata.get("link"),
            language=metadata.get("language"),
            author_name=metadata.get("author"),
            image_url=metadata.get("image_url"),
            image_title=metadata.get("image_title"),
            copyright=metadata.get("copyright"),
            generator=metadata.get("generator"),
            ttl=metadata.get("ttl"),
        )
        session.add(feed)
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            result = await session.execute(select(Feed.id).where(Feed.url == url))
            existing = result.scalar_one_or_none()
            if existing is None:
                raise
            logger.info(f"Feed 已存在: {url}")
            return existing
        if feed.id is None:
            msg = f"创建 Feed 后未获得主键: {url}"
            raise RuntimeError(msg)
        logger.info(f"创建 Feed {feed.id}: {url}")
        return feed.id


async def _complete_pending(
    services: PipelineServices, pending_id: int, user_id: str, feed_id: int
) -> None:
    """订阅 Feed 并删除添加请求."""
    async with services.session_factory() as session:
        await subscribe(session, user_id, feed_id)
        pending = await session.get(PendingFeedRequest, pending_id)
        if pending is not None:
            check_transition(
                PENDING_TRANSITIONS,
                pending.status,
                PendingStatus.COMPLETED,
                f"添加请求 {pending_id}",
            )
            await session.delete(pending)
        await session.commit()


async def _mark_pending(
    services: PipelineServices,
    pending_id: int,
    status: PendingStatus,
    *,
    error: str | None = None,
    candidates: list[str] | None = None,
) -> None:
    async with services.session_factory() as session:
        pending = await session.get(PendingFeedRequest, pending_id)
        if pending is None:
            logger.warning(f"添加请求 {pending_id} 不存在")
            return
        pending.status = check_transition(
            PENDING_TRANSITIONS, pending.status, status, f"添加请求 {pending_id}"
        )
        if error is not None:
            pending.error_message = error
        if candidates is not None:
            pending.candidate_urls = json.dumps(candidates, ensure_ascii=False)
        pending.updated_at = utc_now()
        await session.commit()


async def _finish_with_feed(
    ctx: JobContext,
    feed_id: int,
    feed_url: str,
    *,
    created: bool,
) -> None:
    """订阅、通知请求者；新建的 Feed 触发首次刷新."""
    services: PipelineServices = ctx.services
    user_id = ctx.data["requestedBy"]
    pending_id = ctx.data["pendingId"]

    await ctx.step(
        "complete-pending", _complete_pending, services, pending_id, user_id, feed_id
    )
    await ctx.step(
        "notify-requester",
        services.hub.notify_user,
        user_id,
        FEED_ADDED,
        FeedAdded(feed_id=feed_id, feed_url=feed_url, pending_id=pending_id),
    )
    if created:
        await ctx.send_event("trigger-feed-parse", FEED_PARSE_REQUESTED, {"feedId": feed_id})


async def _fail(ctx: JobContext, error: str) -> None:
    services: PipelineServices = ctx.services
    pending_id = ctx.data["pendingId"]

    await ctx.step(
        "mark-failed", _mark_pending, services, pending_id, PendingStatus.FAILED, error=error
    )
    await ctx.step(
        "notify-requester",
        services.hub.notify_user,
        ctx.data["requestedBy"],
        FEED_ADD_FAILED,
        FeedAddFailed(error=error, original_url=ctx.data["feedUrl"], pending_id=pending_id),
    )
    raise NonRetriableError(error)


async def add_feed(ctx: JobContext) -> dict[str, Any]:
    """处理一次添加订阅请求."""
    services: PipelineServices = ctx.services
    feed_url = ctx.data["feedUrl"]
    pending_id = ctx.data["pendingId"]

    existing_id = await ctx.step("check-existing-feed", _find_feed, services, feed_url)
    if existing_id is not None:
        await _finish_with_feed(ctx, existing_id, feed_url, created=False)
        return {"feedId": existing_id, "alreadyExisted": True}

    fetched = FetchResult.model_validate(
        await ctx.step(
            "fetch-url", _fetch, services, feed_url, services.settings.feed_fetch_timeout_seconds
        )
    )

    validation = await ctx.step("validate-feed", _validate, fetched.text)
    if validation["valid"]:
        feed_id = await ctx.step(
            "create-feed", _create_feed, services, feed_url, validation["feed"]
        )
        await _finish_with_feed(ctx, feed_id, feed_url, created=True)
        return {"feedId": feed_id, "created": True}

    candidates = await ctx.step(
        "discover-feeds", discover_feed_urls, fetched.text or "", fetched.url
    )
    logger.info(f"在 {feed_url} 中发现 {len(candidates)} 个候选 Feed")
    if not candidates:
        await _fail(ctx, NO_FEEDS_FOUND)

    valid = []
    for candidate in candidates:
        checked = await ctx.step(
            "validate-discovered-feed", _validate_candidate, services, candidate
        )
        if checked is not None:
            valid.append(checked)

    if not valid:
        await _fail(ctx, NO_VALID_FEEDS)

    if len(valid) == 1:
        discovered_url = valid[0]["url"]
        existing_id = await ctx.step("check-existing-feed", _find_feed, services, discovered_url)
        if existing_id is not None:
            await _finish_with_feed(ctx, existing_id, discovered_url, created=False)
            return {"feedId": existing_id, "alreadyExisted": True}

        feed_id = await ctx.step(
            "create-feed", _create_feed, services, discovered_url, valid[0]["feed"]
        )
        await _finish_with_feed(ctx, feed_id, discovered_url, created=True)
        return {"feedId": feed_id, "created": True, "discovered": True}

    candidate_urls = [item["url"] for item in valid]
    await ctx.step(
        "mark-ambiguous",
        _mark_pending,
        services,
        pending_id,
        PendingStatus.AMBIGUOUS,
        candidates=candidate_urls,
    )
    await ctx.step(
        "notify-requester",
        services.hub.notify_user,
        ctx.data["requestedBy"],
        FEED_ADD_AMBIGUOUS,
        FeedAddAmbiguous(
            candidate_urls=candidate_urls, original_url=feed_url, pending_id=pending_id
        ),
    )
    return {"ambiguous": True, "candidateUrls": candidate_urls}


async def mark_request_failed(ctx: JobContext, error: BaseException) -> None:
    """最终失败时，若请求尚未处于终态则标记失败并通知请求者."""
    services: PipelineServices = ctx.services
    pending_id = ctx.data["pendingId"]

    async with services.session_factory() as session:
        pending = await session.get(PendingFeedRequest, pending_id)
        if pending is None or is_terminal_pending(pending.status):
            return

    message = str(error)
    if isinstance(error, HttpStatusError):
        message = f"无法访问该地址: {error}"
    await _mark_pending(services, pending_id, PendingStatus.FAILED, error=message)
    await services.hub.notify_user(
        ctx.data["requestedBy"],
        FEED_ADD_FAILED,
        FeedAddFailed(error=message, original_url=ctx.data["feedUrl"], pending_id=pending_id),
    )
    logger.warning(f"添加请求 {pending_id} 失败: {message}")


def create_definition(settings: Settings) -> JobDefinition:
    """添加订阅任务定义，全局串行."""
    return JobDefinition(
        id=FUNCTION_ID,
        event=FEED_ADD_REQUESTED,
        handler=add_feed,
        retries=settings.job_max_retries,
        concurrency=Concurrency(limit=1),
        on_failure=mark_request_failed,
    )
