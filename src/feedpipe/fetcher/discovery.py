"""从 HTML 页面中发现 Feed 链接."""

from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup

# <link rel="alternate"> 认可的类型
FEED_LINK_TYPES = frozenset(
    {
        "application/rss+xml",
        "application/atom+xml",
        "application/xml",
        "text/xml",
    }
)

# <a href> 以这些后缀结尾时视为 Feed（区分大小写）
FEED_ANCHOR_SUFFIXES = (".rss", ".xml")


def resolve_url(href: str, base_url: str) -> str | None:
    """将 href 解析为绝对 http(s) URL，失败返回 None."""
    href = href.strip()
    if not href:
        return None
    try:
        absolute = urljoin(base_url, href)
        parts = urlsplit(absolute)
    except ValueError:
        return None
    if parts.scheme not in ("http", "https") or not parts.netloc:
        return None
    return absolute


def discover_feed_urls(html: str, page_url: str) -> list[str]:
    """
    扫描 HTML 中的候选 Feed URL.

    1. ``<link rel="alternate">`` 且 type 为 RSS/Atom/XML；
    2. ``<a href>`` 路径以 ``.rss`` 或 ``.xml`` 结尾。

    Args:
        html: 页面 HTML
        page_url: 页面地址，用于解析相对链接

    Returns:
        去重后的绝对 URL 列表，保持首次出现顺序
    """
    if not html:
        return []

    soup = BeautifulSoup(html, "lxml")
    candidates: dict[str, None] = {}

    for link in soup.find_all("link", href=True):
        rel = [value.lower() for value in link.get("rel") or []]
        if "alternate" not in rel:
            continue
        link_type = (link.get("type") or "").strip().lower()
        if link_type not in FEED_LINK_TYPES:
            continue
        absolute = resolve_url(link["href"], page_url)
        if absolute:
            candidates.setdefault(absolute)

    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href.endswith(FEED_ANCHOR_SUFFIXES):
            continue
        absolute = resolve_url(href, page_url)
        if absolute:
            candidates.setdefault(absolute)

    return list(candidates)
