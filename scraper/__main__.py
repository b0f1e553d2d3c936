"""
Scraper Entry Point

Allows execution via: python -m scraper (or the ``guild-scraper`` script)

Startup order: logging, settings, database. A database that cannot be opened
is fatal and the process exits before anything is scheduled. Servers and
tracked guilds are then seeded, the tasks registered and the scheduler started.

Usage:
    # Scheduled mode (default)
    python -m scraper

    # Run every task once and exit
    RUN_ONCE=true python -m scraper
"""

import asyncio
import logging
import os
import sys
from pathlib import Path

from common.config import Settings, get_settings
from common.events import build_event_publisher
from common.exceptions import ConfigurationError
from common.logging import setup_logging
from common.lookup import load_guild_config
from common.store import Store
from scraper.fetcher import Fetcher
from scraper.registry import build_task_specs
from scraper.run_log import RunLogger
from scraper.scheduler import Scheduler
from scraper.state_engine import StateEngine
from scraper.tasks import TaskContext

logger = logging.getLogger(__name__)


async def seed_catalog(store: Store, settings: Settings) -> None:
    """
    Upsert configured servers and tracked guilds.

    Servers come from SERVERS plus any server named in the guilds CSV. A
    missing CSV is not fatal: guild tasks then have nothing to do.
    """
    guild_entries = []
    if settings.GUILDS_CSV and Path(settings.GUILDS_CSV).is_file():
        try:
            guild_entries = load_guild_config(settings.GUILDS_CSV)
        except (IOError, ValueError) as e:
            raise ConfigurationError(str(e)) from e
    else:
        logger.warning("No guilds CSV at %s, no guilds will be tracked", settings.GUILDS_CSV)

    server_names = list(dict.fromkeys(settings.server_names + [entry.server for entry in guild_entries]))
    if not server_names:
        logger.warning("No servers configured (SERVERS is empty)")

    async with store.transaction():
        server_ids = {name: await store.upsert_server(name) for name in server_names}
        for entry in guild_entries:
            await store.upsert_guild(entry.guild, server_ids[entry.server], entry.is_ally)

    logger.info(
        "Seeded catalog",
        extra={"servers": len(server_names), "guilds": len(guild_entries)},
    )


async def main() -> None:
    """Main entry point for the scraper."""
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
    run_once = os.getenv("RUN_ONCE", "false").lower() in ("true", "1", "yes")

    logger.info(
        "Starting %s", settings.APP_NAME,
        extra={"version": settings.APP_VERSION, "environment": settings.ENVIRONMENT, "run_once": run_once},
    )

    try:
        store = await Store.open(settings.SQLITE_PATH)
    except Exception as e:
        logger.error("Database unavailable, aborting", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)

    events = build_event_publisher(settings)
    site = Fetcher.from_settings(settings, settings.SITE_BASE_URL)
    history = Fetcher.from_settings(settings, settings.HISTORY_BASE_URL)

    try:
        await events.check()
        await seed_catalog(store, settings)

        ctx = TaskContext(
            settings=settings,
            store=store,
            site=site,
            history=history,
            engine=StateEngine(store, events),
            events=events,
        )
        scheduler = Scheduler(RunLogger(store, events))
        for spec in build_task_specs(ctx):
            scheduler.register(spec)

        if run_once:
            logger.info("Running in RUN_ONCE mode")
            statuses = await scheduler.run_once()
            logger.info("RUN_ONCE complete", extra={"statuses": {k: v.value if v else None for k, v in statuses.items()}})
            return

        logger.info("Running in scheduled mode")
        scheduler.setup_signal_handlers()
        scheduler.start()
        await scheduler.wait_for_shutdown()

    except ConfigurationError as e:
        logger.error("Invalid configuration", extra={"error": str(e)})
        sys.exit(1)

    finally:
        await site.aclose()
        await history.aclose()
        await events.close()
        await store.close()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
