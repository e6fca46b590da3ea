"""测试用的样例数据与替身."""

from collections.abc import Callable
from dataclasses import dataclass, field

import httpx

RSS_FEED = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Test Blog</title>
    <link>https://example.com/</link>
    <description>A blog for tests</description>
    <language>en</language>
    <ttl>30</ttl>
    <item>
      <title>Older Post</title>
      <link>https://example.com/posts/older</link>
      <guid>https://example.com/posts/older</guid>
      <pubDate>Fri, 09 Jan 2026 08:00:00 GMT</pubDate>
      <description>Older summary</description>
    </item>
    <item>
      <title>Newer Post</title>
      <link>https://example.com/posts/newer</link>
      <guid>https://example.com/posts/newer</guid>
      <pubDate>Sat, 10 Jan 2026 08:00:00 GMT</pubDate>
      <description>Newer summary</description>
    </item>
  </channel>
</rss>
"""

ATOM_FEED = """<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Atom Example</title>
  <link href="https://atom.example.org/"/>
  <id>urn:uuid:60a76c80-d399-11d9-b93C-0003939e0af6</id>
  <updated>2026-01-10T18:30:02Z</updated>
  <entry>
    <title>Atom Entry</title>
    <link href="https://atom.example.org/2026/01/10/entry.html"/>
    <id>urn:uuid:1225c695-cfb8-4ebb-aaaa-80da344efa6a</id>
    <updated>2026-01-10T18:30:02Z</updated>
    <summary>Some text.</summary>
  </entry>
</feed>
"""

HTML_PAGE = """<!DOCTYPE html>
<html>
<head><title>Just a page</title></head>
<body><p>Nothing to see here.</p></body>
</html>
"""


@dataclass
class FakeUpstream:
    """按 URL 返回预设响应的上游服务，支持 ETag 条件请求."""

    routes: dict[str, Callable[[httpx.Request], httpx.Response]] = field(default_factory=dict)
    requests: list[httpx.Request] = field(default_factory=list)

    def add(
        self,
        url: str,
        text: str = "",
        status_code: int = 200,
        headers: dict[str, str] | None = None,
    ) -> None:
        """注册固定响应；带 ETag 时，If-None-Match 命中返回 304."""
        response_headers = dict(headers or {})

        def respond(request: httpx.Request) -> httpx.Response:
            etag = response_headers.get("ETag")
            if etag and request.headers.get("If-None-Match") == etag:
                return httpx.Response(304, headers=response_headers)
            return httpx.Response(status_code, text=text, headers=response_headers)

        self.routes[url] = respond

    def add_handler(self, url: str, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        """注册自定义处理函数."""
        self.routes[url] = handler

    def calls(self, url: str) -> list[httpx.Request]:
        """某个 URL 收到的请求."""
        return [request for request in self.requests if str(request.url) == url]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get(str(request.url))
        if handler is None:
            return httpx.Response(404, text="not found")
        return handler(request)


class RecordingChannel:
    """记录推送内容的 SSE 通道替身."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.events: list[tuple[str, str]] = []
        self.pings = 0
        self.closed = False

    async def send(self, event: str, data: str) -> None:
        if self.fail:
            msg = "connection reset"
            raise ConnectionError(msg)
        self.events.append((event, data))

    async def ping(self) -> None:
        self.pings += 1

    def close(self) -> None:
        self.closed = True

    def names(self) -> list[str]:
        return [event for event, _ in self.events]

