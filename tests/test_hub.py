"""测试推送中心与 SSE 通道."""

import json

import pytest

from feedpipe.notifications.hub import DeliveryReport, NotificationHub
from feedpipe.notifications.schemas import (
    ARTICLE_PARSED,
    FEED_PARSED,
    FeedParsed,
    PushPayload,
)
from feedpipe.notifications.stream import EventStream, StreamClosedError, format_event
from tests.helpers import RecordingChannel

FEED_PARSED_PAYLOAD = {"feedId": 1, "feedTitle": "Blog", "newArticles": 2, "totalItems": 5}


class TestConstruction:
    """测试事件表校验."""

    @pytest.mark.parametrize("name", ["error", "message", "open", "close"])
    def test_rejects_reserved_event_names(self, name: str) -> None:
        with pytest.raises(ValueError, match=name):
            NotificationHub({name: PushPayload})


class TestConnections:
    """测试连接管理."""

    async def test_add_connection_sends_ping(self, hub: NotificationHub) -> None:
        channel = RecordingChannel()

        await hub.add_connection("alice", channel)

        assert channel.pings == 1
        assert hub.is_connected("alice")
        assert hub.connection_count == 1
        assert hub.connected_users() == ["alice"]

    async def test_new_connection_supersedes_old(self, hub: NotificationHub) -> None:
        """同一用户的新连接替换并关闭旧连接."""
        old, new = RecordingChannel(), RecordingChannel()

        await hub.add_connection("alice", old)
        await hub.add_connection("alice", new)

        assert old.closed
        assert hub.connection_count == 1
        assert await hub.notify_user("alice", FEED_PARSED, FEED_PARSED_PAYLOAD)
        assert old.events == []
        assert new.names() == [FEED_PARSED]

    async def test_remove_stale_channel_keeps_current(self, hub: NotificationHub) -> None:
        """旧连接断开时不会移除新连接."""
        old, new = RecordingChannel(), RecordingChannel()
        await hub.add_connection("alice", old)
        await hub.add_connection("alice", new)

        hub.remove_connection("alice", old)

        assert hub.is_connected("alice")
        hub.remove_connection("alice", new)
        assert not hub.is_connected("alice")
        assert new.closed

    async def test_shutdown_closes_all(self, hub: NotificationHub) -> None:
        channels = [RecordingChannel() for _ in range(3)]
        for index, channel in enumerate(channels):
            await hub.add_connection(f"user-{index}", channel)

        hub.shutdown()

        assert hub.connection_count == 0
        assert all(channel.closed for channel in channels)


class TestNotifyUser:
    """测试单用户推送."""

    async def test_delivers_camel_case_json(self, hub: NotificationHub) -> None:
        channel = RecordingChannel()
        await hub.add_connection("alice", channel)

        delivered = await hub.notify_user(
            "alice",
            FEED_PARSED,
            FeedParsed(feed_id=1, feed_title="Blog", new_articles=2, total_items=5),
        )

        assert delivered is True
        event, data = channel.events[0]
        assert event == FEED_PARSED
        assert json.loads(data) == FEED_PARSED_PAYLOAD

    async def test_offline_user(self, hub: NotificationHub) -> None:
        assert await hub.notify_user("nobody", FEED_PARSED, FEED_PARSED_PAYLOAD) is False

    async def test_unknown_event(self, hub: NotificationHub) -> None:
        channel = RecordingChannel()
        await hub.add_connection("alice", channel)

        assert await hub.notify_user("alice", "feed.deleted", {"feedId": 1}) is False
        assert channel.events == []

    async def test_invalid_payload(self, hub: NotificationHub) -> None:
        channel = RecordingChannel()
        await hub.add_connection("alice", channel)

        assert await hub.notify_user("alice", ARTICLE_PARSED, {"articleId": "x"}) is False
        assert channel.events == []

    async def test_send_failure_removes_connection(self, hub: NotificationHub) -> None:
        """写入失败时移除连接并返回 False，不抛异常."""
        channel = RecordingChannel(fail=True)
        await hub.add_connection("alice", channel)

        assert await hub.notify_user("alice", FEED_PARSED, FEED_PARSED_PAYLOAD) is False
        assert not hub.is_connected("alice")


class TestFanOut:
    """测试批量推送与广播."""

    async def test_notify_users_report(self, hub: NotificationHub) -> None:
        """部分用户离线或写入失败不影响其他用户."""
        good, broken = RecordingChannel(), RecordingChannel(fail=True)
        await hub.add_connection("alice", good)
        await hub.add_connection("bob", broken)

        report = await hub.notify_users(
            ["alice", "bob", "carol", "alice"], FEED_PARSED, FEED_PARSED_PAYLOAD
        )

        assert report == DeliveryReport(attempted=3, delivered=1)
        assert good.names() == [FEED_PARSED]
        assert not hub.is_connected("bob")

    async def test_broadcast_counts_delivered(self, hub: NotificationHub) -> None:
        channels = [RecordingChannel(), RecordingChannel(), RecordingChannel(fail=True)]
        for index, channel in enumerate(channels):
            await hub.add_connection(f"user-{index}", channel)

        sent = await hub.broadcast(FEED_PARSED, FEED_PARSED_PAYLOAD)

        assert sent == 2
        assert hub.connection_count == 2

    async def test_broadcast_invalid_payload(self, hub: NotificationHub) -> None:
        await hub.add_connection("alice", RecordingChannel())

        assert await hub.broadcast(FEED_PARSED, {"feedId": 1}) == 0


class TestEventStream:
    """测试 SSE 编码."""

    def test_format_event(self) -> None:
        assert format_event("feed.parsed", '{"a":1}') == 'event: feed.parsed\ndata: {"a":1}\n\n'
        assert format_event("x", "a\nb") == "event: x\ndata: a\ndata: b\n\n"

    async def test_events_until_closed(self) -> None:
        stream = EventStream()
        await stream.ping()
        await stream.send("feed.parsed", "{}")
        stream.close()

        chunks = [chunk async for chunk in stream.events()]

        assert chunks == [": ping\n\n", "event: feed.parsed\ndata: {}\n\n"]

    async def test_heartbeat_when_idle(self) -> None:
        stream = EventStream()
        events = stream.events(ping_interval=0.01)

        assert await anext(events) == ": ping\n\n"
        stream.close()
        await events.aclose()

    async def test_send_after_close(self) -> None:
        stream = EventStream()
        stream.close()

        with pytest.raises(StreamClosedError):
            await stream.send("feed.parsed", "{}")
