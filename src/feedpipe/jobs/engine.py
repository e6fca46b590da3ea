"""持久化的多步骤任务编排器.

- 任务由若干命名步骤组成，步骤结果写入账本，重试时直接回放已完成的步骤；
- 抛出 ``NonRetriableError`` 立即失败，其他异常按重试策略重新执行整个任务；
- ``RateLimitedError`` 的 ``retry_after`` 优先于指数退避；
- 同一并发键下的任务数量受限，超出的任务排队而不是占用 worker。
"""

import asyncio
import inspect
import json
import logging
from collections import Counter, deque
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from pydantic_core import to_jsonable_python
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from feedpipe.jobs.errors import NonRetriableError, RateLimitedError
from feedpipe.jobs.events import CRON, EVENT_SCHEMAS
from feedpipe.jobs.ledger import StepLedger
from feedpipe.models.job import JobRun
from feedpipe.models.states import JOB_TRANSITIONS, JobStatus, check_transition
from feedpipe.utils.dates import utc_now

logger = logging.getLogger(__name__)

Handler = Callable[["JobContext"], Awaitable[Any]]
FailureHandler = Callable[["JobContext", BaseException], Awaitable[None]]


@dataclass(frozen=True)
class Concurrency:
    """并发限制，key 为空时所有实例共用一个通道."""

    limit: int
    key: Callable[[dict[str, Any]], Any] | None = None


@dataclass
class JobDefinition:
    """任务定义."""

    id: str
    handler: Handler
    event: str | None = None
    retries: int = 3
    concurrency: Concurrency | None = None
    on_failure: FailureHandler | None = None


@dataclass
class JobOutcome:
    """单次执行的结果."""

    job_id: str
    status: JobStatus
    result: Any = None
    error: str | None = None
    retry_delay: float | None = None


class JobContext:
    """传给任务处理函数的上下文."""

    def __init__(
        self,
        orchestrator: "Orchestrator",
        run: JobRun,
        completed: dict[str, Any],
        services: Any,
    ) -> None:
        self.job_id = run.id
        self.function = run.function
        self.event = run.event
        self.data: dict[str, Any] = json.loads(run.payload)
        self.attempt = run.attempt
        self.services = services
        self._orchestrator = orchestrator
        self._completed = completed
        self._name_counts: Counter[str] = Counter()

    def _step_key(self, name: str) -> str:
        # 同名步骤依次记为 name, name:1, name:2 ...
        index = self._name_counts[name]
        self._name_counts[name] += 1
        return name if index == 0 else f"{name}:{index}"

    async def step(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """
        执行一个命名步骤.

        已有结果时直接回放，不再执行 fn；否则执行并记录结果。
        返回值统一为 JSON 兼容结构，首次执行与回放得到相同的数据。
        """
        key = self._step_key(name)
        if key in self._completed:
            logger.debug(f"[{self.function}:{self.job_id}] 回放步骤 {key}")
            return self._completed[key]

        result = fn(*args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        result = to_jsonable_python(result)

        await self._orchestrator.ledger.record(self.job_id, key, result)
        self._completed[key] = result
        logger.debug(f"[{self.function}:{self.job_id}] 完成步骤 {key}")
        return result

    async def send_event(
        self,
        name: str,
        event: str,
        payloads: dict[str, Any] | Sequence[dict[str, Any]],
    ) -> list[str]:
        """以步骤形式触发后续任务，不等待其完成，回放时不会重复触发."""

        async def _send() -> list[str]:
            return await self._orchestrator.send(event, payloads)

        return await self.step(name, _send)


class ConcurrencyGate:
    """按并发键计数的闸门，超出限制的任务按 FIFO 暂存."""

    def __init__(self) -> None:
        self._active: Counter[str] = Counter()
        self._waiting: dict[str, deque[str]] = {}

    def active(self, key: str) -> int:
        """当前占用数."""
        return self._active[key]

    def try_acquire(self, key: str, limit: int) -> bool:
        """尝试占用一个名额."""
        if self._active[key] >= limit:
            return False
        self._active[key] += 1
        return True

    def park(self, key: str, job_id: str) -> None:
        """暂存等待中的任务."""
        self._waiting.setdefault(key, deque()).append(job_id)

    def release(self, key: str) -> str | None:
        """释放名额，返回下一个等待中的任务."""
        self._active[key] -= 1
        if self._active[key] <= 0:
            del self._active[key]
        waiting = self._waiting.get(key)
        if not waiting:
            return None
        job_id = waiting.popleft()
        if not waiting:
            del self._waiting[key]
        return job_id


class Orchestrator:
    """任务编排器：单进程 worker 池从队列中拉取任务执行."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        services: Any = None,
        *,
        retry_base_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self.services = services
        self.ledger = StepLedger(session_factory)
        self._retry_base_delay = retry_base_delay
        self._sleep = sleep
        self._definitions: dict[str, JobDefinition] = {}
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._gate = ConcurrencyGate()
        self._workers: list[asyncio.Task[None]] = []
        self._timers: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # 注册与触发
    # ------------------------------------------------------------------

    def register(self, *definitions: JobDefinition) -> None:
        """注册任务定义."""
        for definition in definitions:
            if definition.id in self._definitions:
                msg = f"任务定义重复: {definition.id}"
                raise ValueError(msg)
            self._definitions[definition.id] = definition

    def get_definition(self, function_id: str) -> JobDefinition:
        """按 ID 获取任务定义."""
        try:
            return self._definitions[function_id]
        except KeyError:
            msg = f"未注册的任务: {function_id}"
            raise KeyError(msg) from None

    async def send(
        self,
        event: str,
        payloads: dict[str, Any] | Sequence[dict[str, Any]],
    ) -> list[str]:
        """
        发送事件，为每个订阅该事件的任务定义创建任务实例.

        Raises:
            ValueError: 未知事件或载荷校验失败
        """
        schema = EVENT_SCHEMAS.get(event)
        if schema is None:
            msg = f"未知事件: {event}"
            raise ValueError(msg)

        items = [payloads] if isinstance(payloads, dict) else list(payloads)
        validated = [schema.model_validate(item).model_dump(by_alias=True) for item in items]

        definitions = [d for d in self._definitions.values() if d.event == event]
        if not definitions:
            logger.warning(f"事件 {event} 没有订阅的任务")

        job_ids = []
        for data in validated:
            for definition in definitions:
                job_ids.append(await self._create_run(definition, event, data))
        return job_ids

    async def invoke(self, function_id: str, payload: dict[str, Any] | None = None) -> str:
        """直接触发指定任务（用于定时任务）."""
        definition = self.get_definition(function_id)
        event = definition.event or CRON
        schema = EVENT_SCHEMAS[event]
        data = schema.model_validate(payload or {}).model_dump(by_alias=True)
        return await self._create_run(definition, event, data)

    def _concurrency_key(self, definition: JobDefinition, data: dict[str, Any]) -> str | None:
        if definition.concurrency is None:
            return None
        if definition.concurrency.key is None:
            return definition.id
        return f"{definition.id}:{definition.concurrency.key(data)}"

    async def _create_run(
        self, definition: JobDefinition, event: str, data: dict[str, Any]
    ) -> str:
        run = JobRun(
            id=uuid4().hex,
            function=definition.id,
            event=event,
            payload=json.dumps(data, ensure_ascii=False),
            concurrency_key=self._concurrency_key(definition, data),
            max_retries=definition.retries,
        )
        async with self._session_factory() as session:
            session.add(run)
            await session.commit()

        self._queue.put_nowait(run.id)
        logger.info(f"任务入队: {definition.id} ({run.id}) {data}")
        return run.id

    # ------------------------------------------------------------------
    # 运行记录
    # ------------------------------------------------------------------

    async def get_run(self, job_id: str) -> JobRun | None:
        """读取任务运行记录."""
        async with self._session_factory() as session:
            return await session.get(JobRun, job_id)

    async def _update_run(
        self, job_id: str, status: JobStatus | None = None, **fields: Any
    ) -> JobRun:
        async with self._session_factory() as session:
            run = await session.get(JobRun, job_id)
            if run is None:
                msg = f"任务不存在: {job_id}"
                raise KeyError(msg)
            if status is not None:
                run.status = check_transition(
                    JOB_TRANSITIONS, run.status, status, f"任务 {job_id}"
                )
            for name, value in fields.items():
                setattr(run, name, value)
            run.updated_at = utc_now()
            await session.commit()
            return run

    # ------------------------------------------------------------------
    # 执行
    # ------------------------------------------------------------------

    async def execute(self, job_id: str) -> JobOutcome:
        """执行一次任务（一次尝试），返回结果；不处理并发限制与重试等待."""
        run = await self.get_run(job_id)
        if run is None:
            msg = f"任务不存在: {job_id}"
            raise KeyError(msg)

        if run.status == JobStatus.COMPLETED:
            return JobOutcome(job_id, JobStatus.COMPLETED, result=_loads(run.result))
        if run.status == JobStatus.FAILED:
            return JobOutcome(job_id, JobStatus.FAILED, error=run.error)

        definition = self.get_definition(run.function)
        run = await self._update_run(job_id, JobStatus.RUNNING)
        completed = await self.ledger.load(job_id)
        ctx = JobContext(self, run, completed, self.services)

        logger.info(f"开始执行任务 {run.function} ({job_id})，第 {run.attempt + 1} 次尝试")
        try:
            result = await definition.handler(ctx)
        except NonRetriableError as e:
            logger.warning(f"任务 {run.function} ({job_id}) 不可重试错误: {e}")
            return await self._fail(run, definition, ctx, e)
        except Exception as e:
            return await self._retry_or_fail(run, definition, ctx, e)

        result = to_jsonable_python(result)
        await self._update_run(
            job_id,
            JobStatus.COMPLETED,
            result=json.dumps(result, ensure_ascii=False),
            error=None,
            finished_at=utc_now(),
        )
        logger.info(f"任务完成 {run.function} ({job_id}): {result}")
        return JobOutcome(job_id, JobStatus.COMPLETED, result=result)

    async def _retry_or_fail(
        self,
        run: JobRun,
        definition: JobDefinition,
        ctx: JobContext,
        error: Exception,
    ) -> JobOutcome:
        attempt = run.attempt + 1
        if attempt > run.max_retries:
            logger.warning(
                f"任务 {run.function} ({run.id}) 重试 {run.max_retries} 次后仍失败: {error}"
            )
            await self._update_run(run.id, attempt=attempt)
            return await self._fail(run, definition, ctx, error)

        if isinstance(error, RateLimitedError):
            delay = error.retry_after
        else:
            delay = self._retry_base_delay * 2 ** (attempt - 1)

        await self._update_run(run.id, JobStatus.RETRYING, attempt=attempt, error=str(error))
        logger.warning(
            f"任务 {run.function} ({run.id}) 失败，{delay:g} 秒后重试 "
            f"({attempt}/{run.max_retries}): {error}"
        )
        return JobOutcome(run.id, JobStatus.RETRYING, error=str(error), retry_delay=delay)

    async def _fail(
        self,
        run: JobRun,
        definition: JobDefinition,
        ctx: JobContext,
        error: BaseException,
    ) -> JobOutcome:
        await self._update_run(
            run.id, JobStatus.FAILED, error=str(error), finished_at=utc_now()
        )
        if definition.on_failure is not None:
            try:
                await definition.on_failure(ctx, error)
            except Exception:
                logger.exception(f"任务 {run.function} ({run.id}) 失败回调出错")
        return JobOutcome(run.id, JobStatus.FAILED, error=str(error))

    async def run_until_complete(self, job_id: str) -> JobOutcome:
        """在当前协程中执行任务直到完成或最终失败（含重试等待）."""
        while True:
            outcome = await self.execute(job_id)
            if outcome.status != JobStatus.RETRYING:
                return outcome
            await self._sleep(outcome.retry_delay or 0)
            await self._update_run(job_id, JobStatus.QUEUED)

    async def drain(self) -> list[JobOutcome]:
        """依次执行队列中所有任务（包括执行过程中新触发的任务）."""
        outcomes = []
        while not self._queue.empty():
            job_id = self._queue.get_nowait()
            self._queue.task_done()
            outcomes.append(await self.run_until_complete(job_id))
        return outcomes

    # ------------------------------------------------------------------
    # worker 池
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        """worker 池是否已启动."""
        return bool(self._workers)

    def start(self, workers: int = 4) -> None:
        """启动 worker 池."""
        if self._workers:
            logger.warning("任务编排器已在运行")
            return
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"feedpipe-worker-{index}")
            for index in range(workers)
        ]
        logger.info(f"任务编排器已启动，worker 数量: {workers}")

    async def stop(self) -> None:
        """停止 worker 池和所有等待中的重试."""
        tasks = [*self._workers, *self._timers]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._timers.clear()
        logger.info("任务编排器已停止")

    async def recover(self) -> int:
        """重新入队未完成的任务（服务重启后恢复）."""
        async with self._session_factory() as session:
            stmt = (
                select(JobRun)
                .where(
                    JobRun.status.in_(  # type: ignore[attr-defined]
                        [JobStatus.QUEUED, JobStatus.RUNNING, JobStatus.RETRYING]
                    )
                )
                .order_by(JobRun.created_at)
            )
            result = await session.execute(stmt)
            runs = list(result.scalars().all())
            for run in runs:
                run.status = JobStatus.QUEUED
            await session.commit()

        for run in runs:
            self._queue.put_nowait(run.id)
        if runs:
            logger.info(f"已恢复 {len(runs)} 个未完成的任务")
        return len(runs)

    async def _worker(self, index: int) -> None:
        while True:
            job_id = await self._queue.get()
            try:
                await self._dispatch(job_id)
            except Exception:
                logger.exception(f"worker {index} 处理任务 {job_id} 出错")
            finally:
                self._queue.task_done()

    async def _dispatch(self, job_id: str) -> None:
        run = await self.get_run(job_id)
        if run is None or run.status != JobStatus.QUEUED:
            return

        definition = self.get_definition(run.function)
        key = run.concurrency_key
        if key is not None and definition.concurrency is not None:
            if not self._gate.try_acquire(key, definition.concurrency.limit):
                self._gate.park(key, job_id)
                logger.debug(f"任务 {job_id} 等待并发名额 {key}")
                return
        else:
            key = None

        try:
            outcome = await self.execute(job_id)
        finally:
            if key is not None:
                next_job_id = self._gate.release(key)
                if next_job_id is not None:
                    self._queue.put_nowait(next_job_id)

        if outcome.status == JobStatus.RETRYING:
            self._schedule_retry(job_id, outcome.retry_delay or 0)

    def _schedule_retry(self, job_id: str, delay: float) -> None:
        async def _later() -> None:
            await self._sleep(delay)
            await self._update_run(job_id, JobStatus.QUEUED)
            self._queue.put_nowait(job_id)

        task = asyncio.create_task(_later())
        self._timers.add(task)
        task.add_done_callback(self._timers.discard)


def _loads(value: str | None) -> Any:
    return json.loads(value) if value else None
