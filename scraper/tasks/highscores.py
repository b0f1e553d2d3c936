"""
Highscores: per server, sample the top ranked pages and derive hunting state.

Only the first ``HIGHSCORE_PAGES`` pages are sampled, so players ranked below
that cut can never be marked hunting. Paging stops at the first empty page.
"""

import logging

from common.exceptions import FetchError
from common.schemas import HighscoreEntry, ServerRef
from scraper.extractor import extract_highscores
from scraper.tasks.base import TaskContext, TaskResult, run_units

logger = logging.getLogger(__name__)


class HighscoresTask:
    name = "highscores"

    def __init__(self, ctx: TaskContext, timeout: float = 30.0) -> None:
        self.ctx = ctx
        self.timeout = timeout

    async def scrape_pages(self, server_name: str) -> list[HighscoreEntry]:
        """
        Collect entries from pages 1..HIGHSCORE_PAGES.

        A failing first page fails the server; a later failing page ends the
        walk and keeps what was collected so far.
        """
        settings = self.ctx.settings
        entries: list[HighscoreEntry] = []

        for page in range(1, settings.HIGHSCORE_PAGES + 1):
            try:
                html = await self.ctx.site.post(
                    settings.HIGHSCORES_PATH,
                    {settings.FORM_SERVER_FIELD: server_name, settings.FORM_PAGE_FIELD: page},
                    timeout=self.timeout,
                )
            except FetchError as e:
                if page == 1:
                    raise
                logger.error("Failed to scrape highscores page %d for %s: %s", page, server_name, e)
                break

            page_entries = extract_highscores(html, strict_levels=settings.STRICT_LEVEL_PARSING)
            if not page_entries:
                break
            entries.extend(page_entries)

        return entries

    async def execute(self) -> TaskResult:
        result = TaskResult()
        totals = {"players": 0, "opened": 0, "extended": 0, "closed": 0, "anomalies": 0}

        async with self.ctx.store.transaction():
            servers = await self.ctx.store.list_servers()

        async def scrape(server: ServerRef) -> None:
            entries = await self.scrape_pages(server.name)
            summary = await self.ctx.engine.ingest_highscores(server, entries)
            for key in totals:
                totals[key] += getattr(summary, key)
            if summary.anomalies:
                result.warnings.append(f"{summary.anomalies} experience decreases on {server.name}")
            if summary.failed:
                result.warnings.append(f"{summary.failed} samples not stored on {server.name}")
            logger.info("Scraped %d highscore entries from %s", len(entries), server.name)

        await run_units(result, servers, lambda s: f"highscores for {s.name}", scrape)
        result.details.update(totals)
        return result
