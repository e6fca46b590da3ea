"""正文提取器：主内容提取、HTML 净化与相对链接改写."""

import asyncio
import re
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from urllib.parse import urljoin

from bs4 import BeautifulSoup
from pydantic import BaseModel
from readability import Document
from readability.readability import Unparseable
from trafilatura import extract, extract_metadata
from trafilatura.settings import use_config

from feedpipe.fetcher.discovery import resolve_url
from feedpipe.utils.dates import parse_datetime
from feedpipe.utils.html_parser import html_to_text

# 整个移除的标签
UNSAFE_TAGS = (
    "script",
    "style",
    "noscript",
    "object",
    "embed",
    "applet",
    "form",
    "input",
    "button",
    "textarea",
    "select",
    "base",
    "meta",
    "frame",
    "frameset",
)
UNSAFE_SCHEMES = ("javascript:", "vbscript:")
URL_ATTRS = ("href", "src", "action", "formaction", "poster", "xlink:href")

# 需要改写为绝对地址的标签与属性
REWRITE_TAGS = ("img", "a", "link", "source", "video", "audio", "iframe")
REWRITE_ATTRS = ("src", "href", "poster")

_CONTROL_CHARS = re.compile(r"[\x00-\x20]+")


class ExtractedArticle(BaseModel):
    """正文提取结果."""

    title: str | None = None
    content: str  # 净化并改写链接后的 HTML
    excerpt: str | None = None
    byline: str | None = None
    site_name: str | None = None
    published_time: datetime | None = None
    length: int = 0  # 纯文本字符数


def sanitize_html(html: str) -> str:
    """移除不安全的标签、事件处理属性和脚本协议链接."""
    soup = BeautifulSoup(html, "html.parser")

    for element in soup(list(UNSAFE_TAGS)):
        element.decompose()

    for tag in soup.find_all(True):
        for attr in list(tag.attrs):
            name = attr.lower()
            if name.startswith("on") or name == "srcdoc":
                del tag.attrs[attr]
                continue
            if name in URL_ATTRS:
                value = _CONTROL_CHARS.sub("", str(tag.attrs[attr])).lower()
                if value.startswith(UNSAFE_SCHEMES):
                    del tag.attrs[attr]

    return str(soup)


def _absolutize(value: str, base_url: str) -> str:
    stripped = value.strip()
    if not stripped or stripped.startswith("#") or stripped.lower().startswith("data:"):
        return value
    return urljoin(base_url, stripped)


def _split_srcset(value: str) -> list[str]:
    """按逗号拆分 srcset，data URL 中的逗号不拆."""
    candidates: list[str] = []
    for part in value.split(","):
        if candidates:
            previous = candidates[-1].strip()
            if previous.lower().startswith("data:") and " " not in previous:
                candidates[-1] = f"{candidates[-1]},{part}"
                continue
        candidates.append(part)
    return [candidate.strip() for candidate in candidates if candidate.strip()]


def absolutize_srcset(value: str, base_url: str) -> str:
    """改写 srcset 中每个候选的 URL，保留描述符."""
    rewritten = []
    for candidate in _split_srcset(value):
        url, _, descriptor = candidate.partition(" ")
        url = _absolutize(url, base_url)
        descriptor = descriptor.strip()
        rewritten.append(f"{url} {descriptor}" if descriptor else url)
    return ", ".join(rewritten)


def absolutize_urls(html: str, base_url: str) -> str:
    """将资源与链接的相对地址改写为绝对地址（跳过 #锚点 和 data: URL）."""
    soup = BeautifulSoup(html, "html.parser")

    for tag in soup.find_all(list(REWRITE_TAGS)):
        for attr in REWRITE_ATTRS:
            value = tag.get(attr)
            if isinstance(value, str):
                tag[attr] = _absolutize(value, base_url)
        srcset = tag.get("srcset")
        if isinstance(srcset, str):
            tag["srcset"] = absolutize_srcset(srcset, base_url)

    return str(soup)


def find_canonical_url(html: str, page_url: str) -> str:
    """页面声明的 canonical 地址，没有则返回页面地址."""
    soup = BeautifulSoup(html, "lxml")
    for link in soup.find_all("link", href=True):
        rel = [value.lower() for value in link.get("rel") or []]
        if "canonical" in rel:
            canonical = resolve_url(link["href"], page_url)
            if canonical:
                return canonical
    return page_url


class ArticleExtractor:
    """使用 trafilatura 提取正文，失败时回退到 readability."""

    def __init__(self) -> None:
        self._executor = ThreadPoolExecutor(max_workers=4)
        # 配置 trafilatura
        self._config = use_config()
        # 线程池中不能使用基于 signal 的超时
        self._config.set("DEFAULT", "EXTRACTION_TIMEOUT", "0")

    def close(self) -> None:
        """关闭线程池."""
        self._executor.shutdown(wait=False)

    async def extract(self, html: str, url: str) -> ExtractedArticle | None:
        """
        提取文章正文与元数据.

        trafilatura 是同步库，这里用线程池包装成异步。

        Args:
            html: 页面 HTML
            url: 页面最终地址

        Returns:
            提取结果，无法提取正文时返回 None
        """
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor,
            self._extract_sync,
            html,
            url,
        )

    def _extract_sync(self, html: str, url: str) -> ExtractedArticle | None:
        """同步提取."""
        if not html or not html.strip():
            return None

        base_url = find_canonical_url(html, url)

        content_html = extract(
            html,
            url=base_url,
            include_comments=False,
            include_tables=True,
            include_images=True,
            include_links=True,
            output_format="html",
            favor_precision=False,
            config=self._config,
        )
        fallback_title = None
        if not content_html:
            content_html, fallback_title = self._readability_fallback(html)
        if not content_html:
            return None

        content_html = absolutize_urls(sanitize_html(content_html), base_url)
        text = html_to_text(content_html)
        if not text:
            return None

        metadata = extract_metadata(html, default_url=base_url)

        def meta(name: str) -> str | None:
            value = getattr(metadata, name, None) if metadata else None
            if isinstance(value, str) and value.strip():
                return value.strip()
            return None

        return ExtractedArticle(
            title=meta("title") or fallback_title,
            content=content_html,
            excerpt=meta("description"),
            byline=meta("author"),
            site_name=meta("sitename"),
            published_time=parse_datetime(meta("date")),
            length=len(text),
        )

    def _readability_fallback(self, html: str) -> tuple[str | None, str | None]:
        """readability 提取正文 HTML 与标题."""
        try:
            document = Document(html)
            summary = document.summary(html_partial=True)
            title = document.short_title()
        except Unparseable:
            return None, None
        if not summary or not html_to_text(summary):
            return None, None
        return summary, title or None
