"""
Scrape Scheduler - Interval and On-Demand Execution

Runs every registered scraping task on its own cadence using APScheduler.

Features:
- Interval scheduling per task, with a staggered first run
- Single flight: a tick that finds the previous run of the same task still
  in progress is skipped and counted, never queued
- Every execution wrapped in the retry policy, timed and written to the run log
- RUN_ONCE mode: run each enabled task once and return
- Graceful stop: no new ticks, in-flight runs are awaited

Usage:
    scheduler = Scheduler(run_logger)
    scheduler.register(TaskSpec(task=OnlinePlayersTask(ctx), interval=30))
    scheduler.start()
    await scheduler.wait_for_shutdown()
"""

import asyncio
import logging
import signal
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from apscheduler.events import EVENT_JOB_MISSED, JobExecutionEvent
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from common.schemas import RunStatus, utc_now
from scraper.retry import RetryPolicy
from scraper.run_log import RunLogger, StepTimer
from scraper.tasks.base import ScrapeTask, TaskResult

logger = logging.getLogger(__name__)


@dataclass
class TaskSpec:
    """A task plus how it is scheduled."""

    task: ScrapeTask
    interval: float
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    enabled: bool = True
    # Seconds after start() of the first run; None waits one full interval.
    initial_delay: Optional[float] = None

    @property
    def name(self) -> str:
        return self.task.name


@dataclass
class TaskState:
    running: bool = False
    runs: int = 0
    skipped_runs: int = 0
    last_run: Optional[datetime] = None
    last_status: Optional[RunStatus] = None
    last_message: Optional[str] = None


class Scheduler:
    """
    Scheduler for the periodic scraping tasks.

    Handles:
    - APScheduler setup and management
    - Per-task single-flight guard and skip accounting
    - Retry, timing and run-log recording around each execution
    - Signal handling for graceful shutdown
    """

    def __init__(
        self,
        run_logger: RunLogger,
        *,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """
        Args:
            run_logger: Sink for one run-log entry per execution
            clock: Returns the current aware UTC time
            sleep: Awaitable sleep used between retry attempts
        """
        self.run_logger = run_logger
        self.clock = clock
        self.sleep = sleep
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.shutdown_event = asyncio.Event()

        self._specs: dict[str, TaskSpec] = {}
        self._states: dict[str, TaskState] = {}
        self._inflight: set[asyncio.Task] = set()
        self._accepting = False

    def register(self, spec: TaskSpec) -> None:
        if spec.name in self._specs:
            raise ValueError(f"Task already registered: {spec.name}")
        self._specs[spec.name] = spec
        self._states[spec.name] = TaskState()
        logger.info(
            "Registered task %s", spec.name,
            extra={"interval": spec.interval, "enabled": spec.enabled},
        )

    @property
    def task_names(self) -> list[str]:
        return list(self._specs)

    # --- execution ------------------------------------------------------------------

    async def run_task(self, name: str) -> Optional[TaskResult]:
        """
        Execute one task now, unless its previous run is still in flight.

        Never raises for task failures; the outcome goes to the run log.

        Returns:
            The task result, or None when the run was skipped or failed
        """
        spec = self._specs[name]
        state = self._states[name]

        # Test-and-set with no await in between.
        if state.running:
            state.skipped_runs += 1
            logger.warning(
                "Task %s still running, skipping this tick", name,
                extra={"task": name, "skipped_runs": state.skipped_runs},
            )
            return None
        state.running = True

        try:
            return await self._execute(spec, state)
        finally:
            state.running = False

    async def _execute(self, spec: TaskSpec, state: TaskState) -> Optional[TaskResult]:
        timer = StepTimer()
        state.runs += 1
        state.last_run = self.clock()

        outcome = await spec.retry.run(spec.task.execute, name=spec.name, sleep=self.sleep)

        if outcome.succeeded:
            result = outcome.value
            status = result.status
            message = result.summary()
        else:
            result = None
            status = RunStatus.ERROR
            message = str(outcome.error) or type(outcome.error).__name__

        state.last_status = status
        state.last_message = message

        try:
            await self.run_logger.log(spec.name, status, message, timer.elapsed_ms())
        except Exception as e:
            logger.error("Failed to record run of %s: %s", spec.name, e)

        return result

    def _spawn(self, name: str) -> None:
        if not self._accepting:
            return
        task = asyncio.get_running_loop().create_task(self.run_task(name), name=f"scrape:{name}")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _tick(self, name: str) -> None:
        # The run is detached from the APScheduler job so the single-flight
        # guard, not max_instances, decides whether an overlapping tick runs.
        self._spawn(name)

    def _on_missed(self, event: JobExecutionEvent) -> None:
        logger.warning("Missed scheduled run of %s", event.job_id)

    # --- lifecycle ------------------------------------------------------------------

    def start(self) -> None:
        """Start ticking every enabled task. Must be called from a running event loop."""
        self.scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self.scheduler.add_listener(self._on_missed, EVENT_JOB_MISSED)
        now = datetime.now(timezone.utc)

        for spec in self._specs.values():
            if not spec.enabled:
                logger.info("Task %s is disabled", spec.name)
                continue

            job_kwargs: dict[str, Any] = {}
            if spec.initial_delay is not None:
                job_kwargs["next_run_time"] = now + timedelta(seconds=spec.initial_delay)

            self.scheduler.add_job(
                self._tick,
                trigger=IntervalTrigger(seconds=spec.interval, timezone=timezone.utc),
                args=[spec.name],
                id=spec.name,
                name=f"Scrape {spec.name}",
                max_instances=1,
                coalesce=True,
                replace_existing=True,
                **job_kwargs,
            )

        self._accepting = True
        self.scheduler.start()
        logger.info("Scheduler started")

        for job in self.scheduler.get_jobs():
            next_run = getattr(job, "next_run_time", None)
            logger.info(
                "Scheduled %s", job.id,
                extra={"next_run": str(next_run) if next_run is not None else None},
            )

    async def stop(self) -> None:
        """Stop issuing ticks, then wait for every in-flight run to finish."""
        self._accepting = False

        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)

        pending = list(self._inflight)
        if pending:
            logger.info("Waiting for %d in-flight tasks to finish", len(pending))
            await asyncio.gather(*pending, return_exceptions=True)

        logger.info("Scheduler shutdown complete")

    async def run_once(self) -> dict[str, Optional[RunStatus]]:
        """Run each enabled task once, in stagger order, and report final statuses."""
        ordered = sorted(
            (spec for spec in self._specs.values() if spec.enabled),
            key=lambda s: float("inf") if s.initial_delay is None else s.initial_delay,
        )
        for spec in ordered:
            await self.run_task(spec.name)
        return {spec.name: self._states[spec.name].last_status for spec in ordered}

    def status(self) -> dict[str, dict[str, Any]]:
        """Per-task snapshot: whether it is running, counters and the last outcome."""
        snapshot: dict[str, dict[str, Any]] = {}
        for name, spec in self._specs.items():
            state = self._states[name]
            job = self.scheduler.get_job(name) if self.scheduler is not None else None
            next_run = getattr(job, "next_run_time", None) if job is not None else None
            snapshot[name] = {
                "enabled": spec.enabled,
                "interval": spec.interval,
                "running": state.running,
                "runs": state.runs,
                "skipped_runs": state.skipped_runs,
                "last_run": state.last_run.isoformat() if state.last_run else None,
                "last_status": state.last_status.value if state.last_status else None,
                "last_message": state.last_message,
                "next_run": next_run.isoformat() if next_run is not None else None,
            }
        return snapshot

    def setup_signal_handlers(self) -> None:
        """Setup handlers for graceful shutdown on SIGINT/SIGTERM."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum: int) -> None:
            logger.info(f"Received signal {signum}, initiating graceful shutdown")
            self.shutdown_event.set()

        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, signal_handler, signum)
            except NotImplementedError:
                signal.signal(signum, lambda s, _frame: loop.call_soon_threadsafe(signal_handler, s))

    async def wait_for_shutdown(self) -> None:
        """Block until a shutdown signal arrives, then stop gracefully."""
        logger.info("Waiting for jobs...")
        await self.shutdown_event.wait()
        logger.info("Shutting down scheduler")
        await self.stop()
