import asyncio

import pytest

from common.schemas import RunStatus
from scraper.retry import RetryPolicy
from scraper.run_log import RunLogger
from scraper.scheduler import Scheduler, TaskSpec
from scraper.tasks.base import TaskResult
from tests.support import RecordingEvents, SleepRecorder, open_store


class RecordingRunLogger:
    def __init__(self):
        self.entries = []

    async def log(self, task_name, status, message, execution_time_ms):
        self.entries.append((task_name, status, message))


class GatedTask:
    """Blocks inside execute() until released."""

    def __init__(self, name="gated"):
        self.name = name
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.finished = 0

    async def execute(self):
        self.started.set()
        await self.release.wait()
        self.finished += 1
        return TaskResult(units_ok=1)


class StaticTask:
    def __init__(self, name, result=None, error=None, calls=None):
        self.name = name
        self.result = result or TaskResult(units_ok=1)
        self.error = error
        self.calls = calls if calls is not None else []

    async def execute(self):
        self.calls.append(self.name)
        if self.error:
            raise self.error
        return self.result


def test_overlapping_tick_is_skipped_not_queued():
    async def scenario():
        run_log = RecordingRunLogger()
        scheduler = Scheduler(run_log)
        task = GatedTask()
        scheduler.register(TaskSpec(task=task, interval=30))

        first = asyncio.create_task(scheduler.run_task("gated"))
        await task.started.wait()
        skipped = await scheduler.run_task("gated")
        skipped_again = await scheduler.run_task("gated")
        running_status = scheduler.status()["gated"]

        task.release.set()
        result = await first
        return skipped, skipped_again, running_status, result, scheduler.status()["gated"], task, run_log

    skipped, skipped_again, running_status, result, status, task, run_log = asyncio.run(scenario())

    assert skipped is None and skipped_again is None
    assert running_status["running"] is True
    assert result.units_ok == 1
    assert task.finished == 1
    assert status["running"] is False
    assert status["runs"] == 1
    assert status["skipped_runs"] == 2
    assert status["last_status"] == "success"
    assert len(run_log.entries) == 1


def test_failing_task_is_retried_then_logged_as_error():
    async def scenario():
        run_log = RecordingRunLogger()
        sleep = SleepRecorder()
        scheduler = Scheduler(run_log, sleep=sleep)
        calls = []
        task = StaticTask("killboard", error=RuntimeError("site down"), calls=calls)
        scheduler.register(TaskSpec(task=task, interval=30, retry=RetryPolicy(attempts=3)))
        result = await scheduler.run_task("killboard")
        return result, calls, sleep, run_log, scheduler.status()["killboard"]

    result, calls, sleep, run_log, status = asyncio.run(scenario())

    assert result is None
    assert len(calls) == 3
    assert sleep.calls == [1.0, 2.0]
    assert run_log.entries == [("killboard", RunStatus.ERROR, "site down")]
    assert status["last_status"] == "error"
    assert status["running"] is False


def test_partial_failures_are_logged_as_warning():
    async def scenario():
        run_log = RecordingRunLogger()
        scheduler = Scheduler(run_log)
        result = TaskResult(units_ok=2, units_failed=1, details={"online": 12})
        scheduler.register(TaskSpec(task=StaticTask("online_players", result=result), interval=30))
        await scheduler.run_task("online_players")
        return run_log.entries

    entries = asyncio.run(scenario())

    assert entries == [("online_players", RunStatus.WARNING, "2 ok, 1 failed, online=12")]


def test_run_log_is_persisted(db_path):
    async def scenario():
        store, _ = await open_store(db_path)
        events = RecordingEvents()
        try:
            scheduler = Scheduler(RunLogger(store, events))
            scheduler.register(TaskSpec(task=StaticTask("highscores"), interval=60))
            await scheduler.run_task("highscores")
            async with store.conn.execute("SELECT task_name, status, message FROM scraper_logs") as cursor:
                rows = [tuple(r) for r in await cursor.fetchall()]
            return rows, events
        finally:
            await store.close()

    rows, events = asyncio.run(scenario())

    assert rows == [("highscores", "success", "1 ok")]
    logged = events.of_type("run_logged")
    assert len(logged) == 1
    assert logged[0]["task_name"] == "highscores"
    assert logged[0]["status"] == "success"


def test_duplicate_registration_is_rejected():
    scheduler = Scheduler(RecordingRunLogger())
    scheduler.register(TaskSpec(task=StaticTask("playtime"), interval=60))
    with pytest.raises(ValueError):
        scheduler.register(TaskSpec(task=StaticTask("playtime"), interval=60))


def test_run_once_follows_stagger_and_skips_disabled():
    async def scenario():
        calls = []
        scheduler = Scheduler(RecordingRunLogger())
        scheduler.register(TaskSpec(task=StaticTask("playtime", calls=calls), interval=60))
        scheduler.register(TaskSpec(task=StaticTask("highscores", calls=calls), interval=60, initial_delay=11))
        scheduler.register(TaskSpec(task=StaticTask("guild_members", calls=calls), interval=60, initial_delay=2))
        scheduler.register(
            TaskSpec(task=StaticTask("killboard", calls=calls), interval=60, initial_delay=8, enabled=False)
        )
        statuses = await scheduler.run_once()
        return calls, statuses

    calls, statuses = asyncio.run(scenario())

    assert calls == ["guild_members", "highscores", "playtime"]
    assert statuses == {
        "guild_members": RunStatus.SUCCESS,
        "highscores": RunStatus.SUCCESS,
        "playtime": RunStatus.SUCCESS,
    }


def test_stop_waits_for_in_flight_runs():
    async def scenario():
        scheduler = Scheduler(RecordingRunLogger())
        task = GatedTask()
        scheduler.register(TaskSpec(task=task, interval=3600, initial_delay=0))
        scheduler.start()

        await asyncio.wait_for(task.started.wait(), timeout=5)
        next_run = scheduler.status()["gated"]["next_run"]

        stopping = asyncio.create_task(scheduler.stop())
        await asyncio.sleep(0.05)
        blocked = not stopping.done()

        task.release.set()
        await asyncio.wait_for(stopping, timeout=5)
        return blocked, task.finished, next_run, scheduler.status()["gated"]

    blocked, finished, next_run, status = asyncio.run(scenario())

    assert blocked is True
    assert finished == 1
    assert next_run is not None
    assert status["running"] is False
    assert status["last_status"] == "success"


def test_no_runs_start_after_stop():
    async def scenario():
        calls = []
        scheduler = Scheduler(RecordingRunLogger())
        scheduler.register(TaskSpec(task=StaticTask("online_players", calls=calls), interval=3600, initial_delay=0.2))
        scheduler.start()
        await scheduler.stop()
        await asyncio.sleep(0.4)
        return calls

    assert asyncio.run(scenario()) == []
