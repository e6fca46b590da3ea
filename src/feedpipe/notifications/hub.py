"""按用户维护 SSE 连接的推送中心.

每个用户最多一个连接，新连接会替换并关闭旧连接。
推送是尽力而为的：用户不在线时消息直接丢弃，不做补发。
"""

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from feedpipe.notifications.schemas import PUSH_SCHEMAS, RESERVED_EVENT_NAMES, PushPayload
from feedpipe.notifications.stream import EventStream
from feedpipe.utils.dates import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryReport:
    """批量推送结果."""

    attempted: int
    delivered: int


@dataclass
class _Connection:
    channel: EventStream
    connected_at: datetime


class NotificationHub:
    """推送中心，由应用生命周期创建和关闭."""

    def __init__(self, schemas: Mapping[str, type[PushPayload]] = PUSH_SCHEMAS) -> None:
        reserved = RESERVED_EVENT_NAMES.intersection(schemas)
        if reserved:
            msg = f"事件名与 SSE 保留名冲突: {', '.join(sorted(reserved))}"
            raise ValueError(msg)
        self._schemas = dict(schemas)
        self._connections: dict[str, _Connection] = {}

    @property
    def connection_count(self) -> int:
        """当前连接数."""
        return len(self._connections)

    def is_connected(self, user_id: str) -> bool:
        """用户是否在线."""
        return user_id in self._connections

    def connected_users(self) -> list[str]:
        """在线用户列表."""
        return list(self._connections)

    async def add_connection(self, user_id: str, channel: EventStream) -> None:
        """注册用户连接，替换并关闭旧连接，随后发送首个心跳."""
        self.remove_connection(user_id)
        self._connections[user_id] = _Connection(channel=channel, connected_at=utc_now())
        logger.info(f"[SSE] 用户 {user_id} 已连接，当前连接数: {self.connection_count}")

        try:
            await channel.ping()
        except Exception as e:
            logger.warning(f"[SSE] 用户 {user_id} 首个心跳发送失败: {e}")
            self.remove_connection(user_id, channel)

    def remove_connection(self, user_id: str, channel: EventStream | None = None) -> None:
        """
        移除用户连接.

        传入 channel 时，仅当它仍是该用户当前的连接才移除，
        避免旧连接断开时误删新连接。
        """
        connection = self._connections.get(user_id)
        if connection is None:
            return
        if channel is not None and connection.channel is not channel:
            return
        del self._connections[user_id]
        connection.channel.close()
        logger.info(f"[SSE] 用户 {user_id} 已断开，当前连接数: {self.connection_count}")

    def _encode(self, event: str, payload: Mapping[str, Any] | PushPayload) -> str | None:
        schema = self._schemas.get(event)
        if schema is None:
            logger.warning(f"[SSE] 未知事件: {event}")
            return None
        try:
            if isinstance(payload, PushPayload):
                model = schema.model_validate(payload.model_dump())
            else:
                model = schema.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"[SSE] 事件 {event} 载荷无效: {e}")
            return None
        return model.model_dump_json(by_alias=True)

    async def _deliver(self, user_id: str, event: str, data: str) -> bool:
        connection = self._connections.get(user_id)
        if connection is None:
            logger.debug(f"[SSE] 用户 {user_id} 不在线，跳过 {event}")
            return False
        try:
            await connection.channel.send(event, data)
        except Exception as e:
            logger.warning(f"[SSE] 向用户 {user_id} 推送 {event} 失败: {e}")
            self.remove_connection(user_id, connection.channel)
            return False
        logger.debug(f"[SSE] 已向用户 {user_id} 推送 {event}")
        return True

    async def notify_user(
        self, user_id: str, event: str, payload: Mapping[str, Any] | PushPayload
    ) -> bool:
        """向单个用户推送事件，返回是否送达，不抛异常."""
        data = self._encode(event, payload)
        if data is None:
            return False
        return await self._deliver(user_id, event, data)

    async def notify_users(
        self,
        user_ids: Iterable[str],
        event: str,
        payload: Mapping[str, Any] | PushPayload,
    ) -> DeliveryReport:
        """向多个用户推送同一事件，单个失败不影响其他用户."""
        targets = list(dict.fromkeys(user_ids))
        data = self._encode(event, payload)
        if data is None:
            return DeliveryReport(attempted=len(targets), delivered=0)

        delivered = 0
        for user_id in targets:
            if await self._deliver(user_id, event, data):
                delivered += 1
        logger.info(f"[SSE] {event} 送达 {delivered}/{len(targets)} 个订阅者")
        return DeliveryReport(attempted=len(targets), delivered=delivered)

    async def broadcast(self, event: str, payload: Mapping[str, Any] | PushPayload) -> int:
        """向所有在线用户推送，返回送达数量."""
        data = self._encode(event, payload)
        if data is None:
            return 0
        total = self.connection_count
        sent = 0
        for user_id in list(self._connections):
            if await self._deliver(user_id, event, data):
                sent += 1
        logger.info(f"[SSE] 广播 {event} 到 {sent}/{total} 个用户")
        return sent

    def shutdown(self) -> None:
        """关闭所有连接."""
        for user_id in list(self._connections):
            self.remove_connection(user_id)
        logger.info("[SSE] 推送中心已关闭")
