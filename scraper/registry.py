"""
Task registry: wires each scraping task to its cadence, request timeout,
retry policy and first-run stagger.
"""

from common.config import Settings
from common.exceptions import ConfigurationError
from scraper.retry import RetryPolicy
from scraper.scheduler import TaskSpec
from scraper.tasks import (
    GuildMembersTask,
    HighscoresTask,
    KillboardTask,
    OnlinePlayersTask,
    PlaytimeTask,
    TaskContext,
)

# name -> (task class, interval setting, request timeout s, first-run delay s)
TASKS = {
    "guild_members": (GuildMembersTask, "GUILD_MEMBERS_INTERVAL", 30.0, 2.0),
    "online_players": (OnlinePlayersTask, "ONLINE_PLAYERS_INTERVAL", 15.0, 5.0),
    "killboard": (KillboardTask, "KILLBOARD_INTERVAL", 15.0, 8.0),
    "highscores": (HighscoresTask, "HIGHSCORES_INTERVAL", 30.0, 11.0),
    "playtime": (PlaytimeTask, "PLAYTIME_INTERVAL", 30.0, None),
}


def retry_policy(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        attempts=settings.RETRY_ATTEMPTS,
        base_delay=settings.RETRY_BASE_DELAY,
        max_delay=settings.RETRY_MAX_DELAY,
    )


def build_task_specs(ctx: TaskContext) -> list[TaskSpec]:
    settings = ctx.settings
    disabled = settings.disabled_tasks
    unknown = disabled - TASKS.keys()
    if unknown:
        raise ConfigurationError(f"Unknown tasks in DISABLED_TASKS: {', '.join(sorted(unknown))}")

    policy = retry_policy(settings)
    specs = []
    for name, (task_cls, interval_setting, timeout, initial_delay) in TASKS.items():
        specs.append(
            TaskSpec(
                task=task_cls(ctx, timeout=timeout),
                interval=getattr(settings, interval_setting),
                retry=policy,
                enabled=name not in disabled,
                initial_delay=initial_delay,
            )
        )
    return specs
