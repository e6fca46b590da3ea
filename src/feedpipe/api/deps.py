"""路由依赖：从应用状态获取生命周期内创建的服务."""

from fastapi import Request

from feedpipe.jobs.engine import Orchestrator
from feedpipe.notifications.hub import NotificationHub


def get_orchestrator(request: Request) -> Orchestrator:
    """任务编排器."""
    return request.app.state.orchestrator


def get_hub(request: Request) -> NotificationHub:
    """推送中心."""
    return request.app.state.hub
