"""任务状态 API."""

import json

from fastapi import APIRouter, Depends, HTTPException

from feedpipe.api.deps import get_orchestrator
from feedpipe.jobs.engine import Orchestrator

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


@router.get("/{job_id}")
async def get_job(
    job_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict:
    """查询任务状态、结果与已完成的步骤."""
    run = await orchestrator.get_run(job_id)
    if not run:
        raise HTTPException(status_code=404, detail="任务不存在")

    steps = await orchestrator.ledger.load(job_id)

    return {
        "id": run.id,
        "function": run.function,
        "event": run.event,
        "status": run.status,
        "attempt": run.attempt,
        "result": json.loads(run.result) if run.result else None,
        "error": run.error,
        "steps": list(steps),
        "createdAt": run.created_at.isoformat(),
        "finishedAt": run.finished_at.isoformat() if run.finished_at else None,
    }
