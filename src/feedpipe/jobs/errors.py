"""流水线异常体系.

任务编排器只关心两类失败：

- ``RetriableError``：网络/传输故障、上游限流，任务会按策略重试；
- ``NonRetriableError``：资源缺失、内容无法解析等，任务立即终止。

未归类的异常按可重试处理。
"""


class PipelineError(Exception):
    """流水线基础异常."""


class RetriableError(PipelineError):
    """可重试错误."""


class TransientFetchError(RetriableError):
    """网络超时或连接失败."""

    def __init__(self, url: str, reason: str) -> None:
        self.url = url
        self.reason = reason
        super().__init__(f"请求 {url} 失败: {reason}")


class RateLimitedError(RetriableError):
    """上游返回 429 并给出 Retry-After."""

    def __init__(self, url: str, retry_after: float) -> None:
        self.url = url
        self.retry_after = retry_after
        super().__init__(f"请求 {url} 被限流，{retry_after:g} 秒后重试")


class NonRetriableError(PipelineError):
    """不可重试错误，任务立即失败."""


class ResourceNotFoundError(NonRetriableError):
    """数据库中找不到目标资源."""


class HttpStatusError(NonRetriableError):
    """上游返回非 2xx 状态码."""

    def __init__(self, url: str, status_code: int, reason: str = "") -> None:
        self.url = url
        self.status_code = status_code
        message = f"HTTP {status_code}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class FeedParseError(NonRetriableError):
    """RSS/Atom 解析失败."""


class ExtractionError(NonRetriableError):
    """无法从页面中提取正文."""
