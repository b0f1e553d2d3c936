"""
Run Log - Execution-Health Records

One entry per task execution: {task_name, status, message, execution_time_ms,
timestamp}. Entries are persisted to ``scraper_logs``, mirrored to the process
log at the matching level and published on the "runs" event stream.

Writing the run log must never take a task down with it; failures here are
logged and swallowed.
"""

import logging
import time

from common.schemas import RunLogEntry, RunStatus
from common.store import Store

logger = logging.getLogger(__name__)

_LEVELS = {
    RunStatus.SUCCESS: logging.INFO,
    RunStatus.WARNING: logging.WARNING,
    RunStatus.ERROR: logging.ERROR,
}


class StepTimer:
    def __init__(self) -> None:
        self.started = time.perf_counter()

    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.started) * 1000)


class RunLogger:
    def __init__(self, store: Store, events) -> None:
        self.store = store
        self.events = events

    async def log(self, task_name: str, status: RunStatus, message: str, execution_time_ms: int) -> RunLogEntry:
        entry = RunLogEntry(
            task_name=task_name,
            status=status,
            message=message,
            execution_time_ms=execution_time_ms,
        )

        logger.log(
            _LEVELS[status],
            "[%s] %s (%dms)", task_name, message or status.value, execution_time_ms,
            extra={"task": task_name, "status": status.value},
        )

        try:
            async with self.store.transaction():
                await self.store.insert_run_log(entry)
        except Exception as e:
            logger.error("Failed to write run log to database: %s", e)

        await self.events.emit("runs", "run_logged", entry.model_dump(mode="json"))
        return entry
