"""应用配置管理."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """应用配置（环境变量）."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="FEEDPIPE_",
        extra="ignore",
    )

    # 数据库
    database_url: str = "sqlite+aiosqlite:///./feedpipe.db"

    # 出站抓取配置
    user_agent: str = "feedpipe/0.1 (+https://github.com/feedpipe/feedpipe)"
    feed_fetch_timeout_seconds: float = 30.0
    article_fetch_timeout_seconds: float = 20.0
    discovery_fetch_timeout_seconds: float = 10.0

    # 任务编排配置
    job_workers: int = 4
    job_max_retries: int = 3
    retry_base_delay_seconds: float = 1.0
    feed_refresh_concurrency: int = 2
    article_fanout_limit: int = 20

    # 定时刷新配置
    default_ttl_minutes: int = 60
    sweep_enabled: bool = True
    sweep_cron: str = "0 0 * * *"

    # 身份与推送
    dev_mode: bool = True
    dev_user_id: str = "test"
    sse_ping_interval_seconds: float = 15.0


@lru_cache
def get_settings() -> Settings:
    """获取应用配置（带缓存）."""
    return Settings()
