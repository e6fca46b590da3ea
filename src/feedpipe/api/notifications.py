"""实时推送 API（Server-Sent Events）."""

from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from feedpipe.api.deps import get_hub
from feedpipe.auth import get_current_user_id
from feedpipe.config import Settings, get_settings
from feedpipe.notifications.hub import NotificationHub
from feedpipe.notifications.stream import EventStream

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


@router.get("")
async def stream_notifications(
    user_id: str = Depends(get_current_user_id),
    hub: NotificationHub = Depends(get_hub),
    settings: Settings = Depends(get_settings),
) -> StreamingResponse:
    """当前用户的推送流，新连接会替换旧连接."""
    channel = EventStream()
    await hub.add_connection(user_id, channel)

    async def event_source() -> AsyncIterator[str]:
        try:
            async for chunk in channel.events(settings.sse_ping_interval_seconds):
                yield chunk
        finally:
            hub.remove_connection(user_id, channel)

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
