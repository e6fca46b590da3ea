"""Feed 订阅 API."""

import logging
from datetime import datetime
from urllib.parse import urlsplit

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from feedpipe.api.deps import get_orchestrator
from feedpipe.auth import get_current_user_id
from feedpipe.jobs.engine import Orchestrator
from feedpipe.jobs.events import FEED_ADD_REQUESTED, FEED_PARSE_REQUESTED
from feedpipe.models.database import get_session
from feedpipe.models.feed import Feed
from feedpipe.models.pending_feed import PendingFeedRequest
from feedpipe.models.subscription import Subscription
from feedpipe.utils.dates import utc_now

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/feeds", tags=["feeds"])


class AddFeedRequest(BaseModel):
    """添加订阅请求."""

    url: str


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@router.post("", status_code=status.HTTP_202_ACCEPTED)
async def add_feed(
    request: AddFeedRequest,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict:
    """按 URL 添加订阅，处理过程异步进行，结果通过推送通知."""
    url = request.url.strip()
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise HTTPException(status_code=400, detail="请输入有效的 http(s) 地址")

    pending = PendingFeedRequest(user_id=user_id, original_url=url)
    session.add(pending)
    await session.commit()
    await session.refresh(pending)

    job_ids = await orchestrator.send(
        FEED_ADD_REQUESTED,
        {"feedUrl": url, "requestedBy": user_id, "pendingId": pending.id},
    )
    logger.info(f"用户 {user_id} 请求添加订阅: {url} (请求 {pending.id})")
    return {"pendingId": pending.id, "jobIds": job_ids}


@router.get("")
async def list_feeds(
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> dict:
    """获取当前用户的订阅列表."""
    stmt = (
        select(Feed, Subscription)
        .join(Subscription, Subscription.feed_id == Feed.id)  # type: ignore[arg-type]
        .where(Subscription.user_id == user_id)
        .order_by(Subscription.category.asc().nulls_last(), Feed.title.asc())  # type: ignore[union-attr]
    )
    result = await session.execute(stmt)
    rows = result.all()

    return {
        "total": len(rows),
        "items": [
            {
                "id": feed.id,
                "url": feed.url,
                "slug": feed.slug,
                "type": feed.type,
                "title": feed.title,
                "link": feed.link,
                "imageUrl": feed.image_url,
                "category": subscription.category,
                "lastFetchedAt": _isoformat(feed.last_fetched_at),
                "fetchErrorCount": feed.fetch_error_count,
                "fetchErrorMessage": feed.fetch_error_message,
            }
            for feed, subscription in rows
        ],
    }


@router.get("/pending/{pending_id}")
async def get_pending(
    pending_id: int,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> dict:
    """查询添加订阅请求的状态；请求成功后会被删除."""
    pending = await session.get(PendingFeedRequest, pending_id)
    if not pending or pending.user_id != user_id:
        raise HTTPException(status_code=404, detail="添加请求不存在或已完成")

    return {
        "id": pending.id,
        "originalUrl": pending.original_url,
        "status": pending.status,
        "candidateUrls": pending.candidates,
        "errorMessage": pending.error_message,
        "createdAt": _isoformat(pending.created_at),
    }


async def _get_subscription(
    session: AsyncSession, user_id: str, feed_id: int
) -> Subscription | None:
    stmt = select(Subscription).where(
        Subscription.user_id == user_id, Subscription.feed_id == feed_id
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


@router.patch("/{feed_id}/category")
async def set_category(
    feed_id: int,
    category: str | None = Query(None, max_length=100, description="分类，为空则清除"),
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> dict:
    """设置订阅分类."""
    subscription = await _get_subscription(session, user_id, feed_id)
    if not subscription:
        raise HTTPException(status_code=404, detail="未订阅该 Feed")

    subscription.category = category.strip() if category and category.strip() else None
    subscription.updated_at = utc_now()
    await session.commit()

    return {"feedId": feed_id, "category": subscription.category}


@router.post("/{feed_id}/refresh", status_code=status.HTTP_202_ACCEPTED)
async def refresh_feed(
    feed_id: int,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict:
    """立即刷新 Feed."""
    feed = await session.get(Feed, feed_id)
    if not feed:
        raise HTTPException(status_code=404, detail="Feed 不存在")

    job_ids = await orchestrator.send(FEED_PARSE_REQUESTED, {"feedId": feed_id})
    logger.info(f"用户 {user_id} 手动刷新 Feed {feed_id}")
    return {"feedId": feed_id, "jobIds": job_ids}
