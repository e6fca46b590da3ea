"""订阅关系与用户文章状态模型."""

from datetime import datetime

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from feedpipe.utils.dates import utc_now


class Subscription(SQLModel, table=True):
    """用户订阅的 Feed."""

    __tablename__ = "subscriptions"  # type: ignore[assignment]
    __table_args__ = (
        UniqueConstraint("user_id", "feed_id", name="uq_subscriptions_user_feed"),
    )

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    feed_id: int = Field(foreign_key="feeds.id", index=True)
    category: str | None = Field(default=None, description="用户自定义分类")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class UserArticleState(SQLModel, table=True):
    """用户对文章的已读/书签/收藏状态，首次交互时创建."""

    __tablename__ = "user_article"  # type: ignore[assignment]

    user_id: str = Field(primary_key=True)
    article_id: int = Field(foreign_key="articles.id", primary_key=True)
    is_read: bool = Field(default=False)
    is_bookmarked: bool = Field(default=False)
    is_favorited: bool = Field(default=False)
    read_at: datetime | None = Field(default=None)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
