"""数据模型."""

from feedpipe.models.article import Article
from feedpipe.models.database import get_session, init_db
from feedpipe.models.feed import Feed
from feedpipe.models.job import JobRun, JobStep
from feedpipe.models.pending_feed import PendingFeedRequest
from feedpipe.models.states import FetchStatus, JobStatus, PendingStatus
from feedpipe.models.subscription import Subscription, UserArticleState

__all__ = [
    "Article",
    "Feed",
    "FetchStatus",
    "JobRun",
    "JobStatus",
    "JobStep",
    "PendingFeedRequest",
    "PendingStatus",
    "Subscription",
    "UserArticleState",
    "get_session",
    "init_db",
]
