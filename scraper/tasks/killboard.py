"""Killboard: per server, record deaths from the latest-deaths page."""

import logging

from common.schemas import ServerRef
from scraper.extractor import extract_deaths, site_timezone
from scraper.tasks.base import TaskContext, TaskResult, run_units

logger = logging.getLogger(__name__)


class KillboardTask:
    name = "killboard"

    def __init__(self, ctx: TaskContext, timeout: float = 15.0) -> None:
        self.ctx = ctx
        self.timeout = timeout

    async def execute(self) -> TaskResult:
        settings = self.ctx.settings
        site_tz = site_timezone(settings.SITE_TIMEZONE)
        result = TaskResult()
        new_deaths = 0

        async with self.ctx.store.transaction():
            servers = await self.ctx.store.list_servers()

        async def scrape(server: ServerRef) -> None:
            nonlocal new_deaths
            html = await self.ctx.site.post(
                settings.DEATHS_PATH,
                {settings.FORM_SERVER_FIELD: server.name},
                timeout=self.timeout,
            )
            deaths = extract_deaths(html, site_tz)
            summary = await self.ctx.engine.ingest_deaths(server, deaths)
            new_deaths += len(summary.recorded)
            if summary.failed:
                result.warnings.append(f"{summary.failed} deaths not stored on {server.name}")
            logger.info(
                "Scraped %d deaths from %s (%d new)", summary.seen, server.name, len(summary.recorded)
            )

        await run_units(result, servers, lambda s: f"killboard for {s.name}", scrape)
        result.details["new_deaths"] = new_deaths
        return result
