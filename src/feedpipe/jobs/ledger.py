"""步骤结果账本，按 (job_id, step_name) 持久化."""

import json
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from feedpipe.models.job import JobStep


class StepLedger:
    """已完成步骤的结果存储，进程重启后可继续执行而不是重来."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def load(self, job_id: str) -> dict[str, Any]:
        """读取任务所有已完成步骤的结果."""
        async with self._session_factory() as session:
            stmt = select(JobStep).where(JobStep.job_id == job_id).order_by(JobStep.id)
            result = await session.execute(stmt)
            return {step.name: json.loads(step.result) for step in result.scalars()}

    async def record(self, job_id: str, name: str, result: Any) -> None:
        """记录步骤结果，result 必须可 JSON 序列化."""
        async with self._session_factory() as session:
            session.add(
                JobStep(
                    job_id=job_id,
                    name=name,
                    result=json.dumps(result, ensure_ascii=False),
                )
            )
            await session.commit()
