"""添加订阅请求模型."""

import json
from datetime import datetime

from sqlmodel import Field, SQLModel

from feedpipe.models.states import PendingStatus
from feedpipe.utils.dates import utc_now


class PendingFeedRequest(SQLModel, table=True):
    """按 URL 添加订阅的异步请求.

    成功后删除；失败或存在多个候选时保留终态记录。
    """

    __tablename__ = "pending_feeds"  # type: ignore[assignment]

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    original_url: str
    status: str = Field(
        default=PendingStatus.PENDING,
        index=True,
        description="pending|completed|failed|ambiguous",
    )
    candidate_urls: str | None = Field(default=None, description="候选 URL (JSON 数组)")
    error_message: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def candidates(self) -> list[str]:
        """候选 Feed URL 列表."""
        if not self.candidate_urls:
            return []
        return list(json.loads(self.candidate_urls))
