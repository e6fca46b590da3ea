"""RSS/Atom 解析."""

import asyncio
import io
import logging
from datetime import datetime
from typing import Any

import feedparser
from pydantic import BaseModel, Field

from feedpipe.jobs.errors import FeedParseError
from feedpipe.utils.dates import from_struct_time
from feedpipe.utils.html_parser import html_to_text

logger = logging.getLogger(__name__)

# 已解码的文本统一按 UTF-8 重新编码，覆盖 XML 声明中的编码
_UTF8_HEADERS = {"content-type": "application/xml; charset=utf-8"}


class ParsedEntry(BaseModel):
    """Feed 条目."""

    guid: str
    guid_is_permalink: bool = False
    link: str | None = None
    title: str | None = None
    content: str | None = None
    summary: str | None = None
    author: str | None = None
    published_at: datetime | None = None
    categories: list[str] = Field(default_factory=list)


class ParsedFeed(BaseModel):
    """解析后的 Feed."""

    type: str = "rss"  # rss | atom
    title: str | None = None
    description: str | None = None
    link: str | None = None
    language: str | None = None
    author: str | None = None
    image_url: str | None = None
    image_title: str | None = None
    copyright: str | None = None
    generator: str | None = None
    ttl: int | None = None
    last_build_date: datetime | None = None
    items: list[ParsedEntry] = Field(default_factory=list)


def _text(value: Any) -> str | None:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return None


def _parse_ttl(value: Any) -> int | None:
    try:
        ttl = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return ttl if ttl > 0 else None


def _entry_content(entry: Any) -> str | None:
    """content:encoded / Atom content 优先，其次 description."""
    contents = entry.get("content") or []
    for item in contents:
        value = _text(item.get("value"))
        if value:
            return value
    return _text(entry.get("summary"))


def _parse_entry(entry: Any) -> ParsedEntry:
    link = _text(entry.get("link"))
    title = _text(entry.get("title"))
    guid_value = _text(entry.get("id"))
    content = _entry_content(entry)

    raw_summary = _text(entry.get("summary")) or content
    summary = html_to_text(raw_summary) if raw_summary else None

    published = from_struct_time(
        entry.get("published_parsed") or entry.get("updated_parsed")
    )

    return ParsedEntry(
        # 去重键回退顺序: guid → link → title → unknown
        guid=guid_value or link or title or "unknown",
        guid_is_permalink=bool(guid_value and guid_value == link),
        link=link,
        title=title,
        content=content,
        summary=summary or None,
        author=_text(entry.get("author")),
        published_at=published,
        categories=[
            term for tag in entry.get("tags") or [] if (term := _text(tag.get("term")))
        ],
    )


def parse_feed(text: str | bytes) -> ParsedFeed:
    """解析 RSS/Atom 文档.

    Raises:
        FeedParseError: 内容不是可识别的 RSS/Atom
    """
    # 必须传入流：字符串参数会被 feedparser 当作 URL 或本地路径读取
    if isinstance(text, str):
        result = feedparser.parse(
            io.BytesIO(text.encode("utf-8")), response_headers=_UTF8_HEADERS
        )
    else:
        result = feedparser.parse(io.BytesIO(text))
    version = result.get("version") or ""

    if not version:
        reason = result.get("bozo_exception") or "未识别的 RSS/Atom 格式"
        msg = f"Feed 解析失败: {reason}"
        raise FeedParseError(msg)

    if result.get("bozo"):
        logger.info(f"Feed 存在解析警告但仍可使用: {result.get('bozo_exception')}")

    channel = result.feed
    image = channel.get("image") or {}

    return ParsedFeed(
        type="atom" if version.startswith("atom") else "rss",
        title=_text(channel.get("title")),
        description=_text(channel.get("subtitle")),
        link=_text(channel.get("link")),
        language=_text(channel.get("language")),
        author=_text(channel.get("author")),
        image_url=_text(image.get("href")) or _text(image.get("url")),
        image_title=_text(image.get("title")),
        copyright=_text(channel.get("rights")),
        generator=_text(channel.get("generator")),
        ttl=_parse_ttl(channel.get("ttl")),
        last_build_date=from_struct_time(channel.get("updated_parsed")),
        items=[_parse_entry(entry) for entry in result.entries],
    )


async def parse_feed_async(text: str | bytes) -> ParsedFeed:
    """在线程池中解析，避免阻塞事件循环."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, parse_feed, text)
