"""Article 文章模型."""

from datetime import datetime

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from feedpipe.models.states import FetchStatus
from feedpipe.utils.dates import utc_now


class Article(SQLModel, table=True):
    """Feed 中的一条文章，以 (feed_id, guid) 去重."""

    __tablename__ = "articles"  # type: ignore[assignment]
    __table_args__ = (
        UniqueConstraint("feed_id", "guid", name="uq_articles_feed_guid"),
        UniqueConstraint("feed_id", "slug", name="uq_articles_feed_slug"),
    )

    id: int | None = Field(default=None, primary_key=True)
    feed_id: int = Field(foreign_key="feeds.id", index=True, description="关联 Feed")

    # 身份标识
    guid: str = Field(description="去重键: guid → link → title → unknown")
    guid_is_permalink: bool = Field(default=False)
    url: str | None = Field(default=None, index=True, description="原文链接")
    slug: str = Field(description="Feed 内唯一的 slug")

    # 内容
    title: str = Field(description="标题")
    content: str | None = Field(default=None, description="HTML 内容")
    summary: str | None = Field(default=None, description="摘要")
    author_name: str | None = Field(default=None, description="作者")
    published_at: datetime | None = Field(default=None, description="发布时间")
    categories: str | None = Field(default=None, description="分类 (JSON 数组)")
    source_title: str | None = Field(default=None, description="站点名称")

    fetch_status: str = Field(
        default=FetchStatus.NONE,
        description="全文抓取状态: none|scheduled|complete|failed",
    )

    created_at: datetime = Field(default_factory=utc_now)
    scraped_at: datetime | None = Field(default=None, description="全文抓取时间")
