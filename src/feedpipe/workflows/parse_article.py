"""文章全文抓取工作流."""

import logging
from typing import Any

from feedpipe.config import Settings
from feedpipe.fetcher.extractor import ExtractedArticle
from feedpipe.fetcher.http import HTML_ACCEPT
from feedpipe.jobs.engine import Concurrency, JobContext, JobDefinition
from feedpipe.jobs.errors import ExtractionError, NonRetriableError, ResourceNotFoundError
from feedpipe.jobs.events import ARTICLE_PARSE
from feedpipe.models.article import Article
from feedpipe.models.states import FETCH_TRANSITIONS, FetchStatus, check_transition
from feedpipe.notifications.schemas import ARTICLE_PARSED, ArticleParsed
from feedpipe.utils.dates import to_naive_utc, utc_now
from feedpipe.workflows.common import notify_subscribers
from feedpipe.workflows.services import PipelineServices

logger = logging.getLogger(__name__)

FUNCTION_ID = "parse-article"


async def _load_article(services: PipelineServices, article_id: int) -> dict[str, Any]:
    async with services.session_factory() as session:
        article = await session.get(Article, article_id)
        if article is None:
            msg = f"文章 {article_id} 不存在"
            raise ResourceNotFoundError(msg)
        if not article.url:
            msg = f"文章 {article_id} 没有可抓取的 URL"
            raise NonRetriableError(msg)

        if article.fetch_status != FetchStatus.SCHEDULED:
            article.fetch_status = check_transition(
                FETCH_TRANSITIONS,
                article.fetch_status,
                FetchStatus.SCHEDULED,
                f"文章 {article_id}",
            )
            await session.commit()

        return {"id": article.id, "url": article.url, "title": article.title}


async def _fetch_html(services: PipelineServices, url: str) -> dict[str, Any]:
    result = await services.fetcher.fetch(
        url,
        timeout=services.settings.article_fetch_timeout_seconds,
        accept=HTML_ACCEPT,
    )
    return {"url": result.url, "html": result.text or ""}


async def _extract(services: PipelineServices, html: str, url: str) -> ExtractedArticle:
    extracted = await services.extractor.extract(html, url)
    if extracted is None:
        msg = f"无法提取正文: {url}"
        raise ExtractionError(msg)
    return extracted


async def _store_content(
    services: PipelineServices, article_id: int, extracted: ExtractedArticle
) -> None:
    """写入正文；提取结果中为空的字段保留原值."""
    async with services.session_factory() as session:
        article = await session.get(Article, article_id)
        if article is None:
            msg = f"文章 {article_id} 不存在"
            raise ResourceNotFoundError(msg)

        article.content = extracted.content
        if extracted.excerpt is not None:
            article.summary = extracted.excerpt
        if extracted.byline is not None:
            article.author_name = extracted.byline
        if extracted.site_name is not None:
            article.source_title = extracted.site_name
        if extracted.published_time is not None:
            article.published_at = to_naive_utc(extracted.published_time)

        article.fetch_status = check_transition(
            FETCH_TRANSITIONS,
            article.fetch_status,
            FetchStatus.COMPLETE,
            f"文章 {article_id}",
        )
        article.scraped_at = utc_now()
        await session.commit()


async def parse_article(ctx: JobContext) -> dict[str, Any]:
    """抓取并提取单篇文章全文."""
    services: PipelineServices = ctx.services
    feed_id = ctx.data["feedId"]
    article_id = ctx.data["articleId"]

    article = await ctx.step("fetch-article", _load_article, services, article_id)
    page = await ctx.step("fetch-article-html", _fetch_html, services, article["url"])
    extracted = ExtractedArticle.model_validate(
        await ctx.step("parse-article-content", _extract, services, page["html"], page["url"])
    )
    await ctx.step("update-article-content", _store_content, services, article_id, extracted)

    title = extracted.title or article["title"]
    await ctx.step(
        "notify-subscribers",
        notify_subscribers,
        services,
        feed_id,
        ARTICLE_PARSED,
        ArticleParsed(
            article_id=article_id,
            feed_id=feed_id,
            title=title,
            content_length=extracted.length,
        ),
    )

    return {
        "articleId": article_id,
        "feedId": feed_id,
        "status": "success",
        "title": title,
        "contentLength": extracted.length,
    }


async def mark_article_failed(ctx: JobContext, error: BaseException) -> None:
    """最终失败时将抓取状态置为 failed."""
    services: PipelineServices = ctx.services
    article_id = ctx.data["articleId"]
    async with services.session_factory() as session:
        article = await session.get(Article, article_id)
        if article is None:
            return
        if article.fetch_status != FetchStatus.SCHEDULED:
            logger.warning(
                f"文章 {article_id} 抓取失败，当前状态 {article.fetch_status}，不修改: {error}"
            )
            return
        article.fetch_status = check_transition(
            FETCH_TRANSITIONS,
            article.fetch_status,
            FetchStatus.FAILED,
            f"文章 {article_id}",
        )
        await session.commit()
    logger.warning(f"文章 {article_id} 抓取失败: {error}")


def create_definition(settings: Settings) -> JobDefinition:
    """文章全文抓取任务定义，同一 Feed 的文章串行抓取."""
    return JobDefinition(
        id=FUNCTION_ID,
        event=ARTICLE_PARSE,
        handler=parse_article,
        retries=settings.job_max_retries,
        concurrency=Concurrency(limit=1, key=lambda data: data["feedId"]),
        on_failure=mark_article_failed,
    )
