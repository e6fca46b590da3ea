"""实时推送：按用户维护 SSE 连接并推送任务完成事件."""

from feedpipe.notifications.hub import DeliveryReport, NotificationHub
from feedpipe.notifications.stream import EventStream

__all__ = ["DeliveryReport", "EventStream", "NotificationHub"]
