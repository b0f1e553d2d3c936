"""
CSV Lookup Utilities

Loads the tracked-guild configuration from a CSV file.
"""

import csv
import logging
from pathlib import Path
from typing import Iterable

from pydantic import ValidationError

from common.schemas import GuildConfigEntry

logger = logging.getLogger(__name__)

REQUIRED_HEADERS = ("server", "guild", "is_ally")
_TRUTHY = {"1", "true", "yes", "y", "ally"}


def _cell(row: dict, key: str) -> str:
    return (row.get(key) or "").strip()


def _parse_rows(rows: Iterable[dict], path: str) -> list[GuildConfigEntry]:
    # Keyed by (server, guild) so a later row wins but keeps the first position.
    entries: dict[tuple[str, str], GuildConfigEntry] = {}

    for line_no, row in enumerate(rows, 2):
        try:
            entry = GuildConfigEntry(
                server=_cell(row, "server"),
                guild=_cell(row, "guild"),
                is_ally=_cell(row, "is_ally").lower() in _TRUTHY,
            )
        except ValidationError:
            logger.warning(
                "Skipping guild row with blank server or guild",
                extra={"file_path": path, "line": line_no},
            )
            continue
        entries[(entry.server, entry.guild)] = entry

    return list(entries.values())


def load_guild_config(path: str) -> list[GuildConfigEntry]:
    """
    Load tracked guilds from a CSV file.

    Reads CSV with header 'server,guild,is_ally'. Rows with a blank server or
    guild are skipped with a warning; a later row for the same (server, guild)
    overrides an earlier one.

    Raises:
        FileNotFoundError: If CSV file doesn't exist
        IOError: If CSV file can't be read
        ValueError: If the header is missing a required column
    """
    csv_path = Path(path)
    if not csv_path.is_file():
        logger.error("Guilds CSV not found", extra={"file_path": path})
        raise FileNotFoundError(f"Guilds CSV not found: {path}")

    try:
        with csv_path.open("r", encoding="utf-8", newline="") as f:
            reader = csv.DictReader(f)
            missing = [h for h in REQUIRED_HEADERS if h not in (reader.fieldnames or ())]
            if missing:
                raise ValueError(f"Guilds CSV {path} is missing columns: {', '.join(missing)}")
            return _parse_rows(reader, path)
    except csv.Error as e:
        raise ValueError(f"Malformed guilds CSV {path}: {e}") from e
