"""推送事件及其载荷结构."""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

FEED_PARSED = "feed.parsed"
ARTICLE_PARSED = "article.parsed"
FEED_ADDED = "feed.added"
FEED_ADD_AMBIGUOUS = "feed.add.ambiguous"
FEED_ADD_FAILED = "feed.add.failed"

# EventSource 客户端保留的事件名
RESERVED_EVENT_NAMES = frozenset({"error", "message", "open", "close"})


class PushPayload(BaseModel):
    """推送载荷基类，序列化为 camelCase JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FeedParsed(PushPayload):
    """Feed 刷新完成且有新文章."""

    feed_id: int
    feed_title: str | None = None
    new_articles: int
    total_items: int


class ArticleParsed(PushPayload):
    """文章全文抓取完成."""

    article_id: int
    feed_id: int
    title: str | None = None
    content_length: int


class FeedAdded(PushPayload):
    """订阅添加成功."""

    feed_id: int
    feed_url: str
    pending_id: int


class FeedAddAmbiguous(PushPayload):
    """页面中发现多个可用 Feed，需要用户选择."""

    candidate_urls: list[str]
    original_url: str
    pending_id: int


class FeedAddFailed(PushPayload):
    """订阅添加失败."""

    error: str
    original_url: str
    pending_id: int


PUSH_SCHEMAS: dict[str, type[PushPayload]] = {
    FEED_PARSED: FeedParsed,
    ARTICLE_PARSED: ArticleParsed,
    FEED_ADDED: FeedAdded,
    FEED_ADD_AMBIGUOUS: FeedAddAmbiguous,
    FEED_ADD_FAILED: FeedAddFailed,
}
