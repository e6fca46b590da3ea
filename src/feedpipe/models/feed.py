"""Feed 订阅源模型."""

from datetime import datetime

from sqlmodel import Field, SQLModel

from feedpipe.utils.dates import utc_now


class Feed(SQLModel, table=True):
    """RSS/Atom 订阅源，同一 URL 只存一份，由所有订阅者共享."""

    __tablename__ = "feeds"  # type: ignore[assignment]

    id: int | None = Field(default=None, primary_key=True)
    url: str = Field(unique=True, index=True, description="Feed URL")
    type: str = Field(default="rss", description="Feed 类型: rss|atom")
    slug: str | None = Field(default=None, unique=True, description="URL slug")

    # 描述信息
    title: str | None = Field(default=None, description="Feed 标题")
    description: str | None = Field(default=None, description="描述")
    link: str | None = Field(default=None, description="网站链接")
    language: str | None = Field(default=None, description="语言")
    author_name: str | None = Field(default=None, description="作者")
    image_url: str | None = Field(default=None, description="图片 URL")
    image_title: str | None = Field(default=None, description="图片标题")
    copyright: str | None = Field(default=None, description="版权声明")
    generator: str | None = Field(default=None, description="生成器")
    last_build_date: datetime | None = Field(default=None)
    ttl: int | None = Field(default=None, description="刷新间隔（分钟）")

    # HTTP 缓存校验
    etag: str | None = Field(default=None)
    last_modified_header: str | None = Field(default=None)

    # 运行状态
    last_fetched_at: datetime | None = Field(default=None, index=True)
    last_success_at: datetime | None = Field(default=None)
    fetch_error_count: int = Field(default=0)
    fetch_error_message: str | None = Field(default=None)
    is_active: bool = Field(default=True, index=True)

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
