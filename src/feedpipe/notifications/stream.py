"""SSE 通道：异步队列 + text/event-stream 编码."""

import asyncio
from collections.abc import AsyncIterator


class StreamClosedError(Exception):
    """向已关闭的通道写入."""



def format_event(event: str, data: str) -> str:
    """编码一条 SSE 消息，多行数据拆成多个 data 字段."""
    lines = [f"event: {event}"]
    lines.extend(f"data: {line}" for line in data.split("\n"))
    return "\n".join(lines) + "\n\n"


class EventStream:
    """单个客户端的 SSE 通道.

    写入端由推送中心调用，读取端 ``events()`` 交给 ``StreamingResponse``。
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        """通道是否已关闭."""
        return self._closed

    async def send(self, event: str, data: str) -> None:
        """写入一条事件."""
        if self._closed:
            msg = "SSE 通道已关闭"
            raise StreamClosedError(msg)
        await self._queue.put(format_event(event, data))

    async def ping(self) -> None:
        """写入注释行，保持连接并让客户端尽快收到首包."""
        if self._closed:
            msg = "SSE 通道已关闭"
            raise StreamClosedError(msg)
        await self._queue.put(": ping\n\n")

    def close(self) -> None:
        """关闭通道，读取端在发送完已排队的消息后结束."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)  # 结束标记

    async def events(self, ping_interval: float | None = None) -> AsyncIterator[str]:
        """依次产出编码后的 SSE 文本，空闲超过 ping_interval 秒时产出心跳."""
        while True:
            try:
                item = await asyncio.wait_for(self._queue.get(), timeout=ping_interval)
            except TimeoutError:
                yield ": ping\n\n"
                continue
            if item is None:
                return
            yield item
