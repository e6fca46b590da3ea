"""工作流共用的存储与推送操作."""

import logging
from typing import Any

from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from feedpipe.models.subscription import Subscription
from feedpipe.notifications.schemas import PushPayload
from feedpipe.workflows.services import PipelineServices

logger = logging.getLogger(__name__)


async def subscribe(session: AsyncSession, user_id: str, feed_id: int) -> None:
    """订阅 Feed，已订阅时不做任何事（不提交）."""
    stmt = (
        insert(Subscription)
        .values(user_id=user_id, feed_id=feed_id)
        .on_conflict_do_nothing(index_elements=["user_id", "feed_id"])
    )
    await session.execute(stmt)


async def subscriber_ids(services: PipelineServices, feed_id: int) -> list[str]:
    """订阅该 Feed 的用户."""
    async with services.session_factory() as session:
        stmt = select(Subscription.user_id).where(Subscription.feed_id == feed_id)
        result = await session.execute(stmt)
        return list(result.scalars().all())


async def notify_subscribers(
    services: PipelineServices,
    feed_id: int,
    event: str,
    payload: PushPayload,
) -> dict[str, Any]:
    """推送给 Feed 的所有订阅者，返回送达统计."""
    user_ids = await subscriber_ids(services, feed_id)
    report = await services.hub.notify_users(user_ids, event, payload)
    return {"attempted": report.attempted, "delivered": report.delivered}
