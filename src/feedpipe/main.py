"""feedpipe 主应用入口."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from feedpipe.api import articles, feeds, jobs, notifications
from feedpipe.config import get_settings
from feedpipe.fetcher.extractor import ArticleExtractor
from feedpipe.fetcher.http import HttpFetcher
from feedpipe.jobs.engine import Orchestrator
from feedpipe.models.database import close_db, init_db
from feedpipe.notifications.hub import NotificationHub
from feedpipe.scheduler.tasks import create_scheduler, shutdown_scheduler
from feedpipe.workflows import PipelineServices, build_definitions

# 配置日志
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """应用生命周期管理."""
    app_settings = get_settings()

    # 启动时初始化
    logger.info("正在初始化数据库...")
    session_factory = await init_db(app_settings.database_url)

    fetcher = HttpFetcher(app_settings.user_agent)
    extractor = ArticleExtractor()
    hub = NotificationHub()
    services = PipelineServices(
        session_factory=session_factory,
        fetcher=fetcher,
        extractor=extractor,
        hub=hub,
        settings=app_settings,
    )

    orchestrator = Orchestrator(
        session_factory,
        services,
        retry_base_delay=app_settings.retry_base_delay_seconds,
    )
    orchestrator.register(*build_definitions(app_settings))

    app.state.hub = hub
    app.state.orchestrator = orchestrator

    # 恢复重启前未完成的任务
    logger.info("正在恢复未完成的任务...")
    await orchestrator.recover()
    orchestrator.start(app_settings.job_workers)

    logger.info("正在启动定时任务...")
    create_scheduler(app_settings, orchestrator)

    logger.info("feedpipe 启动完成！")
    yield

    # 关闭时清理
    logger.info("正在关闭...")
    await shutdown_scheduler()
    await orchestrator.stop()
    hub.shutdown()
    extractor.close()
    await fetcher.close()
    await close_db()
    logger.info("feedpipe 已关闭")


app = FastAPI(
    title="feedpipe",
    description="RSS/Atom 订阅摄取服务 - 定时刷新、全文抓取与实时推送",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS 配置
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 注册路由
app.include_router(feeds.router)
app.include_router(articles.router)
app.include_router(notifications.router)
app.include_router(jobs.router)


@app.get("/health")
async def health() -> dict:
    """健康检查."""
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "feedpipe.main:app",
        host="0.0.0.0",
        port=8000,
    )
