"""当前用户识别."""

from fastapi import Depends, Header, HTTPException

from feedpipe.config import Settings, get_settings


async def get_current_user_id(
    x_user_id: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> str:
    """从 X-User-Id 请求头读取用户 ID，开发模式下缺省为固定用户."""
    if x_user_id and x_user_id.strip():
        return x_user_id.strip()
    if settings.dev_mode:
        return settings.dev_user_id
    raise HTTPException(status_code=401, detail="未登录")
