"""测试配置和 fixtures."""

from collections.abc import AsyncGenerator, Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from feedpipe.config import Settings
from feedpipe.fetcher.extractor import ArticleExtractor
from feedpipe.fetcher.http import HttpFetcher
from feedpipe.jobs.engine import Orchestrator
from feedpipe.models.database import create_session_factory, create_tables
from feedpipe.models.feed import Feed
from feedpipe.models.subscription import Subscription
from feedpipe.notifications.hub import NotificationHub
from feedpipe.workflows import PipelineServices, build_definitions
from tests.helpers import FakeUpstream


@pytest.fixture
def settings(tmp_path) -> Settings:
    """测试配置."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'feedpipe-test.db'}",
        retry_base_delay_seconds=1.0,
        sweep_enabled=False,
    )


@pytest.fixture
async def session_factory(
    settings: Settings,
) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """每个测试独立的数据库."""
    engine, factory = create_session_factory(settings.database_url)
    await create_tables(engine)
    yield factory
    await engine.dispose()


@pytest.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """测试会话."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def upstream() -> FakeUpstream:
    """模拟上游站点."""
    return FakeUpstream()


@pytest.fixture
async def fetcher(upstream: FakeUpstream) -> AsyncGenerator[HttpFetcher, None]:
    """使用 MockTransport 的抓取器."""
    fetcher = HttpFetcher("feedpipe-test", transport=httpx.MockTransport(upstream))
    yield fetcher
    await fetcher.close()


@pytest.fixture
def extractor() -> MagicMock:
    """正文提取器替身，默认返回 None."""
    mock = MagicMock(spec=ArticleExtractor)
    mock.extract = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def hub() -> NotificationHub:
    """推送中心."""
    return NotificationHub()


@pytest.fixture
def services(session_factory, fetcher, extractor, hub, settings) -> PipelineServices:
    """工作流服务集合."""
    return PipelineServices(
        session_factory=session_factory,
        fetcher=fetcher,
        extractor=extractor,
        hub=hub,
        settings=settings,
    )


@pytest.fixture
def sleeps() -> list[float]:
    """记录重试等待时间."""
    return []


@pytest.fixture
def orchestrator(session_factory, services, settings, sleeps) -> Orchestrator:
    """注册了全部工作流的编排器，重试等待不实际休眠."""

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    orchestrator = Orchestrator(
        session_factory,
        services,
        retry_base_delay=settings.retry_base_delay_seconds,
        sleep=fake_sleep,
    )
    orchestrator.register(*build_definitions(settings))
    return orchestrator


@pytest.fixture
def add_feed_row(session_factory) -> Callable[..., Any]:
    """创建 Feed 记录."""

    async def _add(**fields: Any) -> Feed:
        async with session_factory() as session:
            feed = Feed(**fields)
            session.add(feed)
            await session.commit()
            await session.refresh(feed)
            return feed

    return _add


@pytest.fixture
def subscribe_user(session_factory) -> Callable[..., Any]:
    """为用户订阅 Feed."""

    async def _subscribe(user_id: str, feed_id: int) -> None:
        async with session_factory() as session:
            session.add(Subscription(user_id=user_id, feed_id=feed_id))
            await session.commit()

    return _subscribe
