"""定时巡检：为到期的 Feed 触发刷新."""

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlmodel import select

from feedpipe.config import Settings
from feedpipe.jobs.engine import JobContext, JobDefinition
from feedpipe.jobs.events import FEED_PARSE_REQUESTED
from feedpipe.models.feed import Feed
from feedpipe.utils.dates import utc_now
from feedpipe.workflows.services import PipelineServices

logger = logging.getLogger(__name__)

FUNCTION_ID = "schedule-feed-updates"


def is_due(feed: Feed, now: datetime, default_ttl_minutes: int) -> bool:
    """从未抓取过，或距上次抓取已超过 ttl（缺省时使用默认值）分钟."""
    if feed.last_fetched_at is None:
        return True
    ttl = feed.ttl or default_ttl_minutes
    return feed.last_fetched_at + timedelta(minutes=ttl) <= now


async def _due_feed_ids(services: PipelineServices) -> list[int]:
    now = utc_now()
    async with services.session_factory() as session:
        stmt = select(Feed).where(Feed.is_active == True).order_by(Feed.id)  # noqa: E712
        result = await session.execute(stmt)
        feeds = result.scalars().all()
    return [
        feed.id
        for feed in feeds
        if feed.id is not None and is_due(feed, now, services.settings.default_ttl_minutes)
    ]


async def schedule_feed_updates(ctx: JobContext) -> dict[str, Any]:
    """查询到期的 Feed 并逐个触发刷新，本身不抓取."""
    services: PipelineServices = ctx.services

    feed_ids = await ctx.step("query-active-feeds", _due_feed_ids, services)
    if feed_ids:
        await ctx.send_event(
            "schedule-parse-feed",
            FEED_PARSE_REQUESTED,
            [{"feedId": feed_id} for feed_id in feed_ids],
        )
    logger.info(f"定时巡检: {len(feed_ids)} 个 Feed 需要刷新")
    return {"scheduledFeeds": len(feed_ids), "feedIds": feed_ids}


def create_definition(settings: Settings) -> JobDefinition:
    """定时巡检任务定义，仅由定时器触发."""
    return JobDefinition(
        id=FUNCTION_ID,
        handler=schedule_feed_updates,
        retries=settings.job_max_retries,
    )
