"""触发事件及其载荷结构."""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

FEED_PARSE_REQUESTED = "feed.parse.requested"
FEED_ADD_REQUESTED = "feed.add.requested"
ARTICLE_PARSE = "article.parse"
CRON = "cron"


class EventPayload(BaseModel):
    """事件载荷基类，对外使用 camelCase 字段名."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )


class FeedParseRequested(EventPayload):
    """刷新指定 Feed."""

    feed_id: int


class FeedAddRequested(EventPayload):
    """按 URL 添加订阅."""

    feed_url: str
    requested_by: str
    pending_id: int


class ArticleParseRequested(EventPayload):
    """抓取文章全文."""

    feed_id: int
    article_id: int


class CronTick(EventPayload):
    """定时触发，无载荷."""


EVENT_SCHEMAS: dict[str, type[EventPayload]] = {
    FEED_PARSE_REQUESTED: FeedParseRequested,
    FEED_ADD_REQUESTED: FeedAddRequested,
    ARTICLE_PARSE: ArticleParseRequested,
    CRON: CronTick,
}
