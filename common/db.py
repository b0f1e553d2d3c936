"""
Database utilities for SQLite operations.

Provides connection management and schema initialization for the scraper.
Natural keys are enforced with UNIQUE constraints; they are the idempotency
boundary for every upsert the persistence gateway performs.
"""

import logging
from pathlib import Path

import aiosqlite

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS servers (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    type TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS guilds (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    server_id INTEGER NOT NULL REFERENCES servers(id),
    is_ally INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (name, server_id)
);

CREATE TABLE IF NOT EXISTS players (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    vocation TEXT NOT NULL DEFAULT 'None',
    level INTEGER NOT NULL DEFAULT 1,
    guild_id INTEGER REFERENCES guilds(id),
    server_id INTEGER NOT NULL REFERENCES servers(id),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (name, server_id)
);

CREATE TABLE IF NOT EXISTS player_status (
    player_id INTEGER PRIMARY KEY REFERENCES players(id),
    is_online INTEGER NOT NULL DEFAULT 0,
    is_hunting INTEGER NOT NULL DEFAULT 0,
    last_seen TEXT
);

-- experience is decimal text: values routinely exceed 2^53
CREATE TABLE IF NOT EXISTS xp_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    player_id INTEGER NOT NULL REFERENCES players(id),
    level INTEGER NOT NULL,
    experience TEXT NOT NULL,
    snapshot_time TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_xp_snapshots_player ON xp_snapshots (player_id, id);

CREATE TABLE IF NOT EXISTS hunting_sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    player_id INTEGER NOT NULL REFERENCES players(id),
    start_time TEXT NOT NULL,
    end_time TEXT,
    xp_gained TEXT NOT NULL DEFAULT '0',
    is_active INTEGER NOT NULL DEFAULT 1
);
-- at most one active session per player
CREATE UNIQUE INDEX IF NOT EXISTS idx_hunting_sessions_active
    ON hunting_sessions (player_id) WHERE is_active = 1;

CREATE TABLE IF NOT EXISTS deaths (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    victim_name TEXT NOT NULL,
    victim_id INTEGER REFERENCES players(id),
    killer_name TEXT,
    death_time TEXT NOT NULL,
    server_id INTEGER NOT NULL REFERENCES servers(id),
    is_ally_death INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    UNIQUE (victim_name, death_time, server_id)
);

CREATE TABLE IF NOT EXISTS guild_member_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    guild_id INTEGER NOT NULL REFERENCES guilds(id),
    player_name TEXT NOT NULL,
    vocation TEXT NOT NULL,
    snapshot_time TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS playtime_patterns (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    player_id INTEGER NOT NULL REFERENCES players(id),
    hour_of_day INTEGER NOT NULL CHECK (hour_of_day BETWEEN 0 AND 23),
    day_of_week INTEGER NOT NULL CHECK (day_of_week BETWEEN 0 AND 6),
    frequency INTEGER NOT NULL DEFAULT 0,
    last_updated TEXT NOT NULL,
    UNIQUE (player_id, hour_of_day, day_of_week)
);

CREATE TABLE IF NOT EXISTS scraper_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_name TEXT NOT NULL,
    status TEXT NOT NULL,
    message TEXT,
    execution_time_ms INTEGER,
    created_at TEXT NOT NULL
);
"""


async def get_conn(path: str) -> aiosqlite.Connection:
    """
    Open the SQLite database with a dict-friendly row factory.

    Args:
        path: Filesystem path of the database (``:memory:`` allowed)

    Returns:
        aiosqlite connection with row_factory set to aiosqlite.Row

    Raises:
        sqlite3.Error: If connection fails
    """
    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)

    conn = await aiosqlite.connect(path)
    conn.row_factory = aiosqlite.Row
    await conn.execute("PRAGMA foreign_keys = ON")
    if path != ":memory:":
        await conn.execute("PRAGMA journal_mode = WAL")
    return conn


async def init_schema(conn: aiosqlite.Connection) -> None:
    """
    Create every table and index if it doesn't exist.

    Raises:
        sqlite3.Error: If schema creation fails
    """
    await conn.executescript(SCHEMA)
    await conn.commit()
    logger.info("DB schema ready")


async def check_db_connectivity(conn: aiosqlite.Connection) -> None:
    async with conn.execute("SELECT 1") as cursor:
        await cursor.fetchone()
