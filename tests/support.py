"""Fakes and page builders shared by the test modules."""

from datetime import datetime, timedelta, timezone
from html import escape
from typing import Any, Iterable, Sequence

from common.store import Store


class RecordingEvents:
    """Event publisher that keeps everything it is asked to emit."""

    def __init__(self) -> None:
        self.emitted: list[tuple[str, str, dict[str, Any]]] = []
        self.closed = False

    async def emit(self, stream: str, event_type: str, data: dict[str, Any]) -> None:
        self.emitted.append((stream, event_type, data))

    async def close(self) -> None:
        self.closed = True

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [data for _, kind, data in self.emitted if kind == event_type]


class FakeClock:
    def __init__(self, start: datetime = datetime(2026, 1, 27, 12, 0, tzinfo=timezone.utc)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


async def open_store(path: str, servers: Iterable[str] = ("Auroria",)) -> tuple[Store, dict[str, int]]:
    store = await Store.open(path)
    async with store.transaction():
        ids = {name: await store.upsert_server(name) for name in servers}
    return store, ids


def table(header: Sequence[str], rows: Iterable[Sequence[str]]) -> str:
    """One site-style table: a header row followed by data rows."""
    lines = ["<table>", "<tr>" + "".join(f"<td>{escape(h)}</td>" for h in header) + "</tr>"]
    for row in rows:
        lines.append("<tr>" + "".join(f"<td>{escape(str(c))}</td>" for c in row) + "</tr>")
    lines.append("</table>")
    return "\n".join(lines)


def page(*parts: str) -> str:
    return "<html><body>" + "\n".join(parts) + "</body></html>"


def online_page(rows: Iterable[Sequence[str]]) -> str:
    return page(table(["Name", "Level", "Vocation"], rows))


def highscores_page(rows: Iterable[Sequence[str]]) -> str:
    return page(table(["Rank", "Name", "Level", "Points"], rows))


def deaths_page(rows: Iterable[Sequence[str]]) -> str:
    return page(table(["Victim", "Killer", "Time"], rows))


def guild_page(rows: Iterable[Sequence[str]]) -> str:
    return page(table(["Name", "Vocation"], rows))


def history_page(times: Iterable[str], heading: str = "Online Time History") -> str:
    body = table(["Date", "Duration"], [(t, "1h") for t in times])
    return page(f"<div class='box'><h3>{escape(heading)}</h3>{body}</div>")
