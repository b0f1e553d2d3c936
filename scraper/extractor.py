"""
HTML Extractor - Site Tables to Typed Records

Turns the target site's HTML tables into pydantic records. The markup is not
ours and shifts without notice, so extraction is row tolerant: a row that
cannot be parsed is logged and skipped, and the rest of the page is still
returned.

Conventions shared by every table on the site:
- the first row of each table is its header and is never data
- rows with fewer cells than a record needs are layout rows and are ignored
  silently

Normalization:
- names drop any parenthesized suffix: "Aeon (Guild Leader)" -> "Aeon"
- levels are digits-only and default to 1 when no digits are present
- experience is digits-only into an exact int, 0 when unparsable
- base vocations map to their promoted label: "Knight" -> "Elite Knight"
"""

import logging
import re
from collections import Counter
from datetime import datetime, timezone, tzinfo
from typing import Callable, Iterator, Optional, TypeVar
from zoneinfo import ZoneInfo

from bs4 import BeautifulSoup, Tag

from common.exceptions import RowParseError
from common.schemas import (
    DeathRecord,
    GuildMember,
    HighscoreEntry,
    OnlinePlayer,
    PlaytimeBucket,
    Vocation,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TITLE_RE = re.compile(r"\s*\([^)]*\)")
_NON_DIGITS_RE = re.compile(r"[^0-9]")
_SITE_TIME_RE = re.compile(
    r"([A-Za-z]{3})[A-Za-z]*\s+(\d{1,2})\s+(\d{4}),\s+(\d{1,2}):(\d{2}):(\d{2})(?:\s+([A-Za-z]{2,5}))?"
)

_MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}

# TODO: confirm with the site whether "Knight" rows are unpromoted characters;
# today both tiers collapse into the promoted label.
_VOCATIONS = {
    "knight": Vocation.ELITE_KNIGHT,
    "elite knight": Vocation.ELITE_KNIGHT,
    "sorcerer": Vocation.MASTER_SORCERER,
    "master sorcerer": Vocation.MASTER_SORCERER,
    "druid": Vocation.ELDER_DRUID,
    "elder druid": Vocation.ELDER_DRUID,
    "paladin": Vocation.ROYAL_PALADIN,
    "royal paladin": Vocation.ROYAL_PALADIN,
}

PLAYTIME_HEADINGS = ("Online Time History", "Histórico")


# --- field parsers ----------------------------------------------------------


def parse_player_name(text: str) -> str:
    """Strip titles in parentheses: "Aeon (Guild Leader)" -> "Aeon"."""
    return _TITLE_RE.sub("", text).strip()


def parse_vocation(text: str) -> Vocation:
    return _VOCATIONS.get(" ".join(text.split()).lower(), Vocation.NONE)


def parse_level(text: str, strict: bool = False) -> int:
    """
    Digits-only level parse.

    Args:
        text: Raw cell text, e.g. "1,024"
        strict: Raise RowParseError instead of defaulting to 1 when no digits

    Returns:
        Parsed level, or 1 when the text holds no digits
    """
    digits = _NON_DIGITS_RE.sub("", text)
    if not digits:
        if strict:
            raise RowParseError(f"Unparsable level: {text!r}")
        return 1
    return int(digits)


def parse_experience(text: str) -> int:
    """Digits-only experience parse into an exact int; 0 when unparsable."""
    digits = _NON_DIGITS_RE.sub("", text)
    return int(digits) if digits else 0


def parse_site_time(text: str, site_tz: tzinfo = timezone.utc) -> Optional[datetime]:
    """
    Parse a timestamp as printed by the site.

    Accepts ISO-8601 and the "Jan 27 2026, 14:30:00 CET" format. Naive values
    and CET/CEST suffixes are read in the site's timezone; UTC/GMT suffixes in
    UTC.

    Returns:
        Timezone-aware datetime, or None when the text is not a timestamp
    """
    text = text.strip()
    if not text:
        return None

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        parsed = None

    if parsed is not None:
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=site_tz)

    match = _SITE_TIME_RE.search(text)
    if not match:
        return None

    month_name, day, year, hours, minutes, seconds, zone = match.groups()
    month = _MONTHS.get(month_name.lower())
    if month is None:
        return None

    tz = timezone.utc if zone and zone.upper() in ("UTC", "GMT") else site_tz
    try:
        return datetime(int(year), month, int(day), int(hours), int(minutes), int(seconds), tzinfo=tz)
    except ValueError:
        return None


# --- table walking ----------------------------------------------------------


def _cell_text(cell: Tag) -> str:
    return cell.get_text(" ", strip=True)


def _table_rows(root: Tag) -> Iterator[tuple[int, list[str]]]:
    """Yield (row_number, cell_texts) for every data row below ``root``."""
    for table in root.find_all("table"):
        rows = [tr for tr in table.find_all("tr") if tr.find_parent("table") is table]
        for number, tr in enumerate(rows[1:], 1):
            cells = [_cell_text(td) for td in tr.find_all("td") if td.find_parent("tr") is tr]
            yield number, cells


def _parse_rows(
    root: Tag,
    min_cells: int,
    parse_row: Callable[[list[str]], Optional[T]],
    kind: str,
) -> list[T]:
    records: list[T] = []
    skipped = 0

    for number, cells in _table_rows(root):
        if len(cells) < min_cells:
            continue
        try:
            record = parse_row(cells)
        except Exception as e:
            skipped += 1
            logger.warning(
                "Skipping malformed %s row", kind, extra={"row_number": number, "error": str(e)}
            )
            continue
        if record is not None:
            records.append(record)

    if skipped:
        logger.info("Parsed %d %s rows, skipped %d", len(records), kind, skipped)
    return records


def _soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "html.parser")


# --- page extractors --------------------------------------------------------


def extract_online_players(html: str, strict_levels: bool = False) -> list[OnlinePlayer]:
    """World page: name | level | vocation."""

    def parse_row(cells: list[str]) -> OnlinePlayer:
        return OnlinePlayer(
            name=parse_player_name(cells[0]),
            level=parse_level(cells[1], strict=strict_levels),
            vocation=parse_vocation(cells[2]),
        )

    return _parse_rows(_soup(html), 3, parse_row, "online player")


def extract_highscores(html: str, strict_levels: bool = False) -> list[HighscoreEntry]:
    """Highscores page: rank | name | level | experience."""

    def parse_row(cells: list[str]) -> HighscoreEntry:
        rank_digits = _NON_DIGITS_RE.sub("", cells[0])
        return HighscoreEntry(
            rank=int(rank_digits) if rank_digits else None,
            name=parse_player_name(cells[1]),
            level=parse_level(cells[2], strict=strict_levels),
            experience=parse_experience(cells[3]),
        )

    return _parse_rows(_soup(html), 4, parse_row, "highscore")


def extract_deaths(html: str, site_tz: tzinfo = timezone.utc) -> list[DeathRecord]:
    """Latest deaths page: victim | killer | time. An empty killer cell means environment."""

    def parse_row(cells: list[str]) -> DeathRecord:
        death_time = parse_site_time(cells[2], site_tz)
        if death_time is None:
            raise RowParseError(f"Unparsable death time: {cells[2]!r}")
        return DeathRecord(
            victim_name=parse_player_name(cells[0]),
            killer_name=cells[1] or None,
            death_time=death_time,
        )

    return _parse_rows(_soup(html), 3, parse_row, "death")


def find_guild_link(html: str, guild_name: str) -> Optional[str]:
    """Return the href of the first link whose text is exactly the guild name."""
    for anchor in _soup(html).find_all("a"):
        if anchor.get_text(strip=True) == guild_name and anchor.get("href"):
            return anchor["href"]
    return None


def extract_guild_members(html: str) -> list[GuildMember]:
    """Guild page: name | vocation."""

    def parse_row(cells: list[str]) -> Optional[GuildMember]:
        name = parse_player_name(cells[0])
        if not name:
            return None
        return GuildMember(name=name, vocation=parse_vocation(cells[1]))

    return _parse_rows(_soup(html), 2, parse_row, "guild member")


def extract_playtime(html: str, site_tz: tzinfo = timezone.utc) -> list[PlaytimeBucket]:
    """
    Character history page: bucket the online-time history by hour and weekday.

    Timestamps are bucketed in the site's local time; weekdays count from
    Sunday=0. Returns an empty list when the page has no history section.
    """
    soup = _soup(html)

    section = None
    for heading in soup.find_all("h3"):
        text = heading.get_text(" ", strip=True)
        if any(marker in text for marker in PLAYTIME_HEADINGS):
            section = heading.parent
            break

    if section is None:
        return []

    def parse_row(cells: list[str]) -> tuple[int, int]:
        seen_at = parse_site_time(cells[0], site_tz)
        if seen_at is None:
            raise RowParseError(f"Unparsable history time: {cells[0]!r}")
        local = seen_at.astimezone(site_tz)
        return local.hour, (local.weekday() + 1) % 7

    counts = Counter(_parse_rows(section, 2, parse_row, "playtime"))
    return [
        PlaytimeBucket(hour_of_day=hour, day_of_week=day, frequency=frequency)
        for (hour, day), frequency in sorted(counts.items())
    ]


def site_timezone(name: str) -> tzinfo:
    return ZoneInfo(name)
