"""测试定时巡检."""

import json
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

from sqlmodel import select

from feedpipe.jobs.engine import Orchestrator
from feedpipe.models.feed import Feed
from feedpipe.models.job import JobRun
from feedpipe.models.states import JobStatus
from feedpipe.scheduler.tasks import create_scheduler, shutdown_scheduler, sweep_task
from feedpipe.utils.dates import utc_now
from feedpipe.workflows.refresh_feed import FUNCTION_ID as REFRESH_FEED
from feedpipe.workflows.schedule import FUNCTION_ID as SWEEP, is_due

NOW = datetime(2026, 1, 10, 12, 0, 0)


class TestIsDue:
    """测试到期判断."""

    def test_never_fetched(self) -> None:
        assert is_due(Feed(url="https://a.example/rss"), NOW, 60)

    def test_uses_feed_ttl(self) -> None:
        feed = Feed(
            url="https://a.example/rss", ttl=30, last_fetched_at=NOW - timedelta(minutes=29)
        )
        assert not is_due(feed, NOW, 60)

        feed.last_fetched_at = NOW - timedelta(minutes=30)
        assert is_due(feed, NOW, 60)

    def test_falls_back_to_default_ttl(self) -> None:
        feed = Feed(url="https://a.example/rss", last_fetched_at=NOW - timedelta(minutes=45))

        assert not is_due(feed, NOW, 60)
        assert is_due(feed, NOW, 45)


class TestSweep:
    """测试巡检任务."""

    async def test_schedules_due_active_feeds(
        self, orchestrator: Orchestrator, add_feed_row, session_factory
    ) -> None:
        """只为启用且到期的 Feed 触发刷新."""
        recent = utc_now() - timedelta(minutes=5)
        never = await add_feed_row(url="https://a.example/rss")
        stale = await add_feed_row(
            url="https://b.example/rss", ttl=1, last_fetched_at=recent
        )
        await add_feed_row(url="https://c.example/rss", last_fetched_at=recent)
        await add_feed_row(url="https://d.example/rss", is_active=False)

        job_id = await orchestrator.invoke(SWEEP)
        outcome = await orchestrator.run_until_complete(job_id)

        assert outcome.status == JobStatus.COMPLETED
        assert outcome.result == {"scheduledFeeds": 2, "feedIds": [never.id, stale.id]}
        async with session_factory() as session:
            result = await session.execute(select(JobRun).where(JobRun.function == REFRESH_FEED))
            payloads = [json.loads(run.payload) for run in result.scalars().all()]
        assert payloads == [{"feedId": never.id}, {"feedId": stale.id}]

    async def test_nothing_due(self, orchestrator: Orchestrator, add_feed_row) -> None:
        await add_feed_row(url="https://a.example/rss", last_fetched_at=utc_now())

        outcome = await orchestrator.run_until_complete(await orchestrator.invoke(SWEEP))

        assert outcome.result == {"scheduledFeeds": 0, "feedIds": []}
        assert "schedule-parse-feed" not in await orchestrator.ledger.load(outcome.job_id)


class TestScheduler:
    """测试定时器注册."""

    async def test_sweep_task_invokes_sweep(self) -> None:
        orchestrator = MagicMock(spec=Orchestrator)
        orchestrator.invoke = AsyncMock(return_value="job-1")

        await sweep_task(orchestrator)

        orchestrator.invoke.assert_awaited_once_with(SWEEP)

    async def test_sweep_task_logs_errors(self) -> None:
        """投递失败只记录日志，不影响调度器."""
        orchestrator = MagicMock(spec=Orchestrator)
        orchestrator.invoke = AsyncMock(side_effect=RuntimeError("db down"))

        await sweep_task(orchestrator)

    async def test_create_scheduler(self, settings, orchestrator: Orchestrator) -> None:
        settings.sweep_enabled = True
        settings.sweep_cron = "*/30 * * * *"

        scheduler = create_scheduler(settings, orchestrator)
        try:
            job = scheduler.get_job("feed_sweep_task")
            assert job is not None
            assert job.args == (orchestrator,)
        finally:
            await shutdown_scheduler()

    async def test_sweep_disabled(self, settings, orchestrator: Orchestrator) -> None:
        scheduler = create_scheduler(settings, orchestrator)
        try:
            assert scheduler.get_jobs() == []
        finally:
            await shutdown_scheduler()
