"""
Task capability interface and shared execution context.

A scraping task is anything with a ``name`` and an ``execute()`` coroutine
returning a ``TaskResult``. Tasks raise only when the whole execution failed
(e.g. the work list could not be read); per-unit failures (one server, one
guild, one player) are counted on the result and never abort the siblings.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Optional, Protocol, TypeVar

from common.config import Settings
from common.schemas import RunStatus, utc_now
from common.store import Store
from scraper.fetcher import Fetcher
from scraper.state_engine import StateEngine

logger = logging.getLogger(__name__)

U = TypeVar("U")


@dataclass
class TaskContext:
    """Services built once at startup and handed to every task."""

    settings: Settings
    store: Store
    site: Fetcher
    history: Fetcher
    engine: StateEngine
    events: Any
    clock: Callable[[], datetime] = utc_now


@dataclass
class TaskResult:
    units_ok: int = 0
    units_failed: int = 0
    warnings: list[str] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def status(self) -> RunStatus:
        if self.units_failed or self.warnings:
            return RunStatus.WARNING
        return RunStatus.SUCCESS

    def summary(self) -> str:
        parts = [f"{self.units_ok} ok"]
        if self.units_failed:
            parts.append(f"{self.units_failed} failed")
        parts.extend(f"{key}={value}" for key, value in self.details.items())
        parts.extend(self.warnings)
        return ", ".join(parts)


class ScrapeTask(Protocol):
    name: str

    async def execute(self) -> TaskResult: ...


async def run_units(
    result: TaskResult,
    units: Iterable[U],
    label: Callable[[U], str],
    work: Callable[[U], Awaitable[Optional[str]]],
) -> None:
    """
    Run ``work`` for each unit, isolating failures.

    ``work`` may return a warning string (e.g. a configured guild missing on
    the site); that unit then counts as skipped rather than ok.

    Raises:
        Exception: The last unit's error when every unit failed, so the
            retry policy treats the execution as failed
    """
    total = 0
    last_error: Optional[Exception] = None

    for unit in units:
        total += 1
        try:
            warning = await work(unit)
        except Exception as e:
            result.units_failed += 1
            last_error = e
            logger.error("Failed to scrape %s: %s", label(unit), e)
            continue

        if warning:
            result.warnings.append(warning)
            logger.warning(warning)
        else:
            result.units_ok += 1

    if last_error is not None and result.units_failed == total:
        raise last_error
