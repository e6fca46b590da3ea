"""Feed 摄取工作流."""

from feedpipe.config import Settings
from feedpipe.jobs.engine import JobDefinition
from feedpipe.workflows import add_feed, parse_article, refresh_feed, schedule
from feedpipe.workflows.services import PipelineServices


def build_definitions(settings: Settings) -> list[JobDefinition]:
    """所有工作流的任务定义."""
    return [
        refresh_feed.create_definition(settings),
        parse_article.create_definition(settings),
        add_feed.create_definition(settings),
        schedule.create_definition(settings),
    ]


__all__ = ["PipelineServices", "build_definitions"]
