"""出站抓取、Feed 解析、Feed 发现与正文提取."""

from feedpipe.fetcher.discovery import discover_feed_urls
from feedpipe.fetcher.extractor import ArticleExtractor, ExtractedArticle
from feedpipe.fetcher.feed_parser import ParsedEntry, ParsedFeed, parse_feed, parse_feed_async
from feedpipe.fetcher.http import FetchResult, HttpFetcher

__all__ = [
    "ArticleExtractor",
    "ExtractedArticle",
    "FetchResult",
    "HttpFetcher",
    "ParsedEntry",
    "ParsedFeed",
    "discover_feed_urls",
    "parse_feed",
    "parse_feed_async",
]
