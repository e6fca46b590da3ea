"""任务运行记录与步骤结果账本."""

from datetime import datetime

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from feedpipe.models.states import JobStatus
from feedpipe.utils.dates import utc_now


class JobRun(SQLModel, table=True):
    """一次任务执行（包含所有重试）."""

    __tablename__ = "job_runs"  # type: ignore[assignment]

    id: str = Field(primary_key=True, description="任务实例 ID")
    function: str = Field(index=True, description="任务定义 ID")
    event: str = Field(description="触发事件")
    payload: str = Field(default="{}", description="输入 (JSON)")
    concurrency_key: str | None = Field(default=None)
    status: str = Field(default=JobStatus.QUEUED, index=True)
    attempt: int = Field(default=0, description="已失败次数")
    max_retries: int = Field(default=3)
    result: str | None = Field(default=None, description="结果 (JSON)")
    error: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    finished_at: datetime | None = Field(default=None)


class JobStep(SQLModel, table=True):
    """已完成步骤的结果，按 (job_id, name) 唯一."""

    __tablename__ = "job_steps"  # type: ignore[assignment]
    __table_args__ = (UniqueConstraint("job_id", "name", name="uq_job_steps_name"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(foreign_key="job_runs.id", index=True)
    name: str
    result: str = Field(default="null", description="步骤结果 (JSON)")
    created_at: datetime = Field(default_factory=utc_now)
