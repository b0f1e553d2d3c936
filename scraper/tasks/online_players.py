"""Online players: per server, replace the online set with the world page's listing."""

import logging

from common.schemas import ServerRef
from scraper.extractor import extract_online_players
from scraper.tasks.base import TaskContext, TaskResult, run_units

logger = logging.getLogger(__name__)


class OnlinePlayersTask:
    name = "online_players"

    def __init__(self, ctx: TaskContext, timeout: float = 15.0) -> None:
        self.ctx = ctx
        self.timeout = timeout

    async def execute(self) -> TaskResult:
        settings = self.ctx.settings
        result = TaskResult()
        online_total = 0

        async with self.ctx.store.transaction():
            servers = await self.ctx.store.list_servers()

        async def scrape(server: ServerRef) -> None:
            nonlocal online_total
            html = await self.ctx.site.get(
                settings.WORLDS_PATH,
                params={settings.WORLD_QUERY_PARAM: server.name},
                timeout=self.timeout,
            )
            players = extract_online_players(html, strict_levels=settings.STRICT_LEVEL_PARSING)
            count = await self.ctx.engine.apply_online_listing(server, players)
            online_total += count
            logger.info("Found %d online players on %s", count, server.name)

        await run_units(result, servers, lambda s: f"online players for {s.name}", scrape)
        result.details["online"] = online_total
        return result
