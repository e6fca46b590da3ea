"""出站 HTTP 抓取：超时、条件请求与限流信号."""

import logging
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime

import httpx
from pydantic import BaseModel

from feedpipe.jobs.errors import HttpStatusError, RateLimitedError, TransientFetchError

logger = logging.getLogger(__name__)

FEED_ACCEPT = "application/rss+xml, application/atom+xml, application/xml, text/xml, */*"
HTML_ACCEPT = "text/html,application/xhtml+xml"


class FetchResult(BaseModel):
    """抓取结果，可直接作为步骤结果持久化."""

    url: str
    status_code: int
    text: str | None = None
    etag: str | None = None
    last_modified: str | None = None
    content_type: str | None = None

    @property
    def not_modified(self) -> bool:
        """上游返回 304."""
        return self.status_code == 304

    @property
    def ok(self) -> bool:
        """2xx 响应."""
        return 200 <= self.status_code < 300


def parse_retry_after(value: str | None) -> float | None:
    """解析 Retry-After 头：秒数或 HTTP 日期."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(int(value)))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max(0.0, (when - datetime.now(UTC)).total_seconds())


class HttpFetcher:
    """基于 httpx 的异步抓取器.

    - 每次请求都带超时，超时与连接错误抛出 ``TransientFetchError``（可重试）；
    - 429 且带 Retry-After 时抛出 ``RateLimitedError``；
    - 304 原样返回，由调用方短路处理；
    - 其他非 2xx 抛出 ``HttpStatusError``（不可重试），
      除非 ``allow_error_status=True``。
    """

    def __init__(
        self,
        user_agent: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            headers={"User-Agent": user_agent},
            follow_redirects=True,
            transport=transport,
        )

    async def close(self) -> None:
        """关闭客户端."""
        await self._client.aclose()

    async def fetch(
        self,
        url: str,
        *,
        timeout: float,
        etag: str | None = None,
        last_modified: str | None = None,
        accept: str | None = None,
        allow_error_status: bool = False,
    ) -> FetchResult:
        """抓取 URL.

        Args:
            url: 目标地址
            timeout: 超时秒数
            etag: 上次响应的 ETag，作为 If-None-Match 发送
            last_modified: 上次响应的 Last-Modified，作为 If-Modified-Since 发送
            accept: Accept 请求头
            allow_error_status: 为 True 时非 2xx 不抛异常，直接返回结果
        """
        headers: dict[str, str] = {}
        if etag:
            headers["If-None-Match"] = etag
        if last_modified:
            headers["If-Modified-Since"] = last_modified
        if accept:
            headers["Accept"] = accept

        try:
            response = await self._client.get(url, headers=headers, timeout=timeout)
        except httpx.TimeoutException as e:
            raise TransientFetchError(url, f"{timeout:g} 秒超时") from e
        except httpx.TransportError as e:
            raise TransientFetchError(url, str(e) or type(e).__name__) from e

        if response.status_code == 429:
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            if retry_after is not None:
                logger.warning(f"被限流: {url}，{retry_after:g} 秒后重试")
                raise RateLimitedError(url, retry_after)

        if response.status_code == 304:
            logger.debug(f"未修改: {url}")
            return FetchResult(
                url=str(response.url),
                status_code=304,
                etag=etag,
                last_modified=last_modified,
            )

        if not response.is_success and not allow_error_status:
            raise HttpStatusError(url, response.status_code, response.reason_phrase)

        return FetchResult(
            url=str(response.url),
            status_code=response.status_code,
            text=response.text,
            etag=response.headers.get("ETag"),
            last_modified=response.headers.get("Last-Modified"),
            content_type=response.headers.get("Content-Type"),
        )
