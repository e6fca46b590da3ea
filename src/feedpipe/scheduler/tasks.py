"""定时任务定义."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from feedpipe.config import Settings
from feedpipe.jobs.engine import Orchestrator
from feedpipe.workflows.schedule import FUNCTION_ID as SWEEP_FUNCTION_ID

logger = logging.getLogger(__name__)

_scheduler: AsyncIOScheduler | None = None


async def sweep_task(orchestrator: Orchestrator) -> None:
    """定时巡检：只负责投递任务，抓取由 worker 执行."""
    try:
        job_id = await orchestrator.invoke(SWEEP_FUNCTION_ID)
    except Exception as e:
        logger.exception(f"定时巡检投递失败: {e}")
        return
    logger.info(f"定时巡检已投递: {job_id}")


def create_scheduler(settings: Settings, orchestrator: Orchestrator) -> AsyncIOScheduler:
    """创建并启动定时任务调度器."""
    global _scheduler

    _scheduler = AsyncIOScheduler()

    if settings.sweep_enabled:
        _scheduler.add_job(
            sweep_task,
            CronTrigger.from_crontab(settings.sweep_cron),
            args=[orchestrator],
            id="feed_sweep_task",
            name="Feed 定时巡检",
            replace_existing=True,
        )

    _scheduler.start()
    logger.info(
        f"定时任务调度器已启动，巡检: "
        f"{settings.sweep_cron if settings.sweep_enabled else '已禁用'}"
    )

    return _scheduler


async def shutdown_scheduler() -> None:
    """关闭定时任务调度器."""
    global _scheduler
    if _scheduler:
        _scheduler.shutdown(wait=False)
        logger.info("定时任务调度器已关闭")
        _scheduler = None
