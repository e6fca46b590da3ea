"""URL slug 生成.

规则:
- 小写、去首尾空白，连续的非 ``[a-z0-9]`` 字符替换为单个 ``-``，去掉首尾 ``-``；
- 最长 100 个字符；
- 冲突时依次尝试 ``-1``、``-2``……，并截短基础部分为后缀腾出空间。
"""

import re
from collections.abc import Callable, Iterator
from urllib.parse import urlsplit

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from feedpipe.models.article import Article
from feedpipe.models.feed import Feed

MAX_SLUG_LENGTH = 100

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_EXTENSION = re.compile(r"\.[^.]*$")


def slugify(text: str | None) -> str:
    """将任意文本转换为 slug，可能返回空串."""
    if not text:
        return ""
    slug = _NON_ALNUM.sub("-", text.lower().strip()).strip("-")
    return slug[:MAX_SLUG_LENGTH]


def domain_slug(url: str) -> str:
    """从 URL 域名生成 slug，无法解析时返回空串."""
    try:
        hostname = urlsplit(url).hostname
    except ValueError:
        return ""
    if not hostname:
        return ""
    hostname = re.sub(r"^www\.", "", hostname)
    return hostname.replace(".", "-")[:MAX_SLUG_LENGTH]


def path_slug(url: str | None) -> str:
    """从 URL 最后一个路径段生成 slug（去掉扩展名）."""
    if not url:
        return ""
    try:
        parts = urlsplit(url)
    except ValueError:
        return ""
    if not parts.scheme or not parts.netloc:
        return ""
    segments = [segment for segment in parts.path.split("/") if segment]
    if not segments:
        return ""
    return slugify(_EXTENSION.sub("", segments[-1].lower()))


def slug_candidates(base: str) -> Iterator[str]:
    """按顺序产生候选 slug: base, base-1, base-2, ..."""
    yield base
    suffix = 0
    while True:
        suffix += 1
        suffix_str = f"-{suffix}"
        yield base[: MAX_SLUG_LENGTH - len(suffix_str)] + suffix_str


def feed_base_slug(title: str | None, feed_url: str) -> str:
    """Feed 的基础 slug：标题 → 域名 → ``feed``."""
    return slugify(title) or domain_slug(feed_url) or "feed"


def article_base_slug(title: str | None, article_url: str | None) -> str:
    """文章的基础 slug：标题 → URL 最后一段 → ``article``."""
    return slugify(title) or path_slug(article_url) or "article"


def unique_slug(base: str, exists: Callable[[str], bool]) -> str:
    """返回第一个 ``exists`` 判定为未占用的候选 slug."""
    for candidate in slug_candidates(base):
        if not exists(candidate):
            return candidate
    msg = "slug 候选序列不会耗尽"
    raise AssertionError(msg)


def _candidate_prefix(base: str) -> str:
    # 所有候选都以该前缀开头（后缀最长按 10 位数字计）
    return base[: MAX_SLUG_LENGTH - 11]


async def generate_unique_slug(
    session: AsyncSession,
    title: str | None,
    feed_url: str,
    exclude_feed_id: int | None = None,
) -> str:
    """生成全局唯一的 Feed slug.

    Args:
        session: 数据库会话
        title: Feed 标题
        feed_url: Feed URL，标题为空时使用其域名
        exclude_feed_id: 重新生成时排除 Feed 自身当前的 slug
    """
    base = feed_base_slug(title, feed_url)
    stmt = select(Feed.slug).where(
        Feed.slug.startswith(_candidate_prefix(base))  # type: ignore[union-attr]
    )
    if exclude_feed_id is not None:
        stmt = stmt.where(Feed.id != exclude_feed_id)
    result = await session.execute(stmt)
    taken = set(result.scalars().all())
    return unique_slug(base, taken.__contains__)


async def generate_unique_article_slug(
    session: AsyncSession,
    feed_id: int,
    title: str | None,
    article_url: str | None,
) -> str:
    """生成 Feed 内唯一的文章 slug."""
    base = article_base_slug(title, article_url)
    stmt = select(Article.slug).where(
        Article.feed_id == feed_id,
        Article.slug.startswith(_candidate_prefix(base)),  # type: ignore[union-attr]
    )
    result = await session.execute(stmt)
    taken = set(result.scalars().all())
    return unique_slug(base, taken.__contains__)
