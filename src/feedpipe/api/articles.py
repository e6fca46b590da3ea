"""文章 API."""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from feedpipe.auth import get_current_user_id
from feedpipe.models.article import Article
from feedpipe.models.database import get_session
from feedpipe.models.subscription import UserArticleState
from feedpipe.utils.dates import utc_now

router = APIRouter(prefix="/api/articles", tags=["articles"])


class ArticleStateUpdate(BaseModel):
    """文章状态更新，未提供的字段保持不变."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    is_read: bool | None = None
    is_bookmarked: bool | None = None
    is_favorited: bool | None = None


@router.put("/{article_id}/state")
async def update_state(
    article_id: int,
    request: ArticleStateUpdate,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> dict:
    """更新当前用户对文章的已读/书签/收藏状态，首次更新时创建记录."""
    article = await session.get(Article, article_id)
    if not article:
        raise HTTPException(status_code=404, detail="文章不存在")

    state = await session.get(UserArticleState, (user_id, article_id))
    if state is None:
        state = UserArticleState(user_id=user_id, article_id=article_id)
        session.add(state)

    if request.is_read is not None:
        if request.is_read and not state.is_read:
            state.read_at = utc_now()
        elif not request.is_read:
            state.read_at = None
        state.is_read = request.is_read
    if request.is_bookmarked is not None:
        state.is_bookmarked = request.is_bookmarked
    if request.is_favorited is not None:
        state.is_favorited = request.is_favorited

    state.updated_at = utc_now()
    await session.commit()

    return {
        "articleId": article_id,
        "isRead": state.is_read,
        "isBookmarked": state.is_bookmarked,
        "isFavorited": state.is_favorited,
        "readAt": state.read_at.isoformat() if state.read_at else None,
    }
