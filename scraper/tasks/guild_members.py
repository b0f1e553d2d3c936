"""
Guild members: per configured guild, capture the roster and attach members.

The guild page is reached through the guilds list: POST the server selection,
find the link whose text is the guild's name, then follow it.
"""

import logging
from typing import Optional
from urllib.parse import urljoin

from common.schemas import GuildRef
from scraper.extractor import extract_guild_members, find_guild_link
from scraper.tasks.base import TaskContext, TaskResult, run_units

logger = logging.getLogger(__name__)


class GuildMembersTask:
    name = "guild_members"

    def __init__(self, ctx: TaskContext, timeout: float = 30.0) -> None:
        self.ctx = ctx
        self.timeout = timeout

    async def execute(self) -> TaskResult:
        settings = self.ctx.settings
        site = self.ctx.site
        result = TaskResult()
        members_total = 0

        async with self.ctx.store.transaction():
            guilds = await self.ctx.store.list_guilds()

        if not guilds:
            result.warnings.append("No guilds configured for scraping")
            return result

        logger.info("Scraping %d guilds...", len(guilds))
        guilds_url = urljoin(site.base_url, settings.GUILDS_PATH)

        async def scrape(guild: GuildRef) -> Optional[str]:
            nonlocal members_total
            listing = await site.post(
                settings.GUILDS_PATH,
                {settings.FORM_SERVER_FIELD: guild.server_name},
                timeout=self.timeout,
            )
            href = find_guild_link(listing, guild.name)
            if href is None:
                return f"Guild {guild.name} not found on server {guild.server_name}"

            page = await site.get(urljoin(guilds_url, href), timeout=self.timeout)
            members = extract_guild_members(page)
            count = await self.ctx.engine.ingest_guild_roster(guild, members)
            members_total += count
            logger.info("Scraped %d members from guild %s", count, guild.name)
            return None

        await run_units(result, guilds, lambda g: f"guild {g.name}", scrape)
        result.details["members"] = members_total
        return result
