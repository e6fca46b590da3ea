"""工作流依赖的服务集合."""

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from feedpipe.config import Settings
from feedpipe.fetcher.extractor import ArticleExtractor
from feedpipe.fetcher.http import HttpFetcher
from feedpipe.notifications.hub import NotificationHub


@dataclass
class PipelineServices:
    """由应用生命周期组装，通过任务上下文传给各步骤."""

    session_factory: async_sessionmaker[AsyncSession]
    fetcher: HttpFetcher
    extractor: ArticleExtractor
    hub: NotificationHub
    settings: Settings
