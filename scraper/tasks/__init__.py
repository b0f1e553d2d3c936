"""
Scraping tasks.

The set is closed: each task is a class with a ``name`` and an ``execute()``
coroutine returning a ``TaskResult``.
"""

from scraper.tasks.base import ScrapeTask, TaskContext, TaskResult, run_units
from scraper.tasks.guild_members import GuildMembersTask
from scraper.tasks.highscores import HighscoresTask
from scraper.tasks.killboard import KillboardTask
from scraper.tasks.online_players import OnlinePlayersTask
from scraper.tasks.playtime import PlaytimeTask

__all__ = [
    "GuildMembersTask",
    "HighscoresTask",
    "KillboardTask",
    "OnlinePlayersTask",
    "PlaytimeTask",
    "ScrapeTask",
    "TaskContext",
    "TaskResult",
    "run_units",
]
