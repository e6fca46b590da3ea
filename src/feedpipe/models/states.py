"""状态机定义.

文章全文抓取状态与添加订阅请求状态都是封闭集合，只允许表中列出的转换。
非法转换会记录日志并抛出 ``IllegalTransitionError``，不会静默覆盖。
"""

import logging
from enum import StrEnum
from typing import TypeVar

from feedpipe.jobs.errors import NonRetriableError

logger = logging.getLogger(__name__)

S = TypeVar("S", bound=StrEnum)


class IllegalTransitionError(NonRetriableError):
    """非法状态转换."""


class FetchStatus(StrEnum):
    """文章全文抓取状态."""

    NONE = "none"
    SCHEDULED = "scheduled"
    COMPLETE = "complete"
    FAILED = "failed"


class PendingStatus(StrEnum):
    """添加订阅请求状态."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    AMBIGUOUS = "ambiguous"


class JobStatus(StrEnum):
    """任务运行状态."""

    QUEUED = "queued"
    RUNNING = "running"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"


FETCH_TRANSITIONS: dict[FetchStatus, frozenset[FetchStatus]] = {
    FetchStatus.NONE: frozenset({FetchStatus.SCHEDULED}),
    FetchStatus.SCHEDULED: frozenset({FetchStatus.COMPLETE, FetchStatus.FAILED}),
    # 允许重新抓取
    FetchStatus.COMPLETE: frozenset({FetchStatus.SCHEDULED}),
    FetchStatus.FAILED: frozenset({FetchStatus.SCHEDULED}),
}

PENDING_TRANSITIONS: dict[PendingStatus, frozenset[PendingStatus]] = {
    PendingStatus.PENDING: frozenset(
        {PendingStatus.COMPLETED, PendingStatus.FAILED, PendingStatus.AMBIGUOUS}
    ),
    PendingStatus.COMPLETED: frozenset(),
    PendingStatus.FAILED: frozenset(),
    PendingStatus.AMBIGUOUS: frozenset(),
}

JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING}),
    # running -> queued 仅用于进程重启后的恢复
    JobStatus.RUNNING: frozenset(
        {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.RETRYING, JobStatus.QUEUED}
    ),
    JobStatus.RETRYING: frozenset({JobStatus.QUEUED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


def check_transition(
    table: dict[S, frozenset[S]], current: S | str, target: S, subject: str
) -> S:
    """校验状态转换是否合法，返回目标状态."""
    state = type(target)(current)
    if target not in table[state]:
        msg = f"{subject}: 非法状态转换 {state.value} -> {target.value}"
        logger.error(msg)
        raise IllegalTransitionError(msg)
    return target


def is_terminal_pending(status: PendingStatus | str) -> bool:
    """添加订阅请求是否已处于终态."""
    return not PENDING_TRANSITIONS[PendingStatus(status)]
