"""Playtime: per guild player, fold the history site's online log into the hour/weekday histogram."""

import logging
from urllib.parse import quote

from common.exceptions import PageNotFound
from common.schemas import PlayerRef
from scraper.extractor import extract_playtime, site_timezone
from scraper.tasks.base import TaskContext, TaskResult, run_units

logger = logging.getLogger(__name__)


class PlaytimeTask:
    name = "playtime"

    def __init__(self, ctx: TaskContext, timeout: float = 30.0) -> None:
        self.ctx = ctx
        self.timeout = timeout

    async def execute(self) -> TaskResult:
        settings = self.ctx.settings
        site_tz = site_timezone(settings.SITE_TIMEZONE)
        result = TaskResult()
        buckets_total = 0

        async with self.ctx.store.transaction():
            players = await self.ctx.store.list_guild_players(settings.PLAYTIME_PLAYER_LIMIT)

        logger.info("Scraping playtime for %d players...", len(players))

        async def scrape(player: PlayerRef) -> None:
            nonlocal buckets_total
            path = settings.CHARACTER_HISTORY_PATH.format(name=quote(player.name))
            try:
                html = await self.ctx.history.get(path, timeout=self.timeout)
            except PageNotFound:
                logger.debug("Player %s not found on history site", player.name)
                return

            buckets = extract_playtime(html, site_tz)
            if not buckets:
                logger.debug("No playtime history found for %s", player.name)
                return

            buckets_total += await self.ctx.engine.ingest_playtime(player, buckets)
            logger.info("Scraped playtime patterns for %s: %d entries", player.name, len(buckets))

        await run_units(result, players, lambda p: f"playtime for {p.name}", scrape)
        result.details["buckets"] = buckets_total
        return result
