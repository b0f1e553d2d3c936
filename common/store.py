"""
Persistence Gateway - Idempotent Writes Keyed by Natural Keys

Executes the reads and writes the state engine asks for. It owns no derivation
logic: deciding whether a session opens, extends or closes happens in
``scraper.state_engine``; this module only runs the resulting statements.

All access goes through ``transaction()``. The scraper shares one SQLite
connection between concurrently scheduled tasks, so each multi-statement unit
holds the connection for its duration and commits (or rolls back) as a whole.

Usage:
    store = await Store.open(settings.SQLITE_PATH)
    async with store.transaction():
        player_id = await store.upsert_player("Aeon", server_id, level=812)
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Iterable, Optional

import aiosqlite

from common.db import check_db_connectivity, get_conn, init_schema
from common.schemas import (
    GuildMember,
    GuildRef,
    HuntingSession,
    OnlineStatus,
    PlayerRef,
    PlaytimeBucket,
    RunLogEntry,
    ServerRef,
    Snapshot,
    Vocation,
    utc_now,
)

logger = logging.getLogger(__name__)

_UNSET = object()


def _ts(value: datetime) -> str:
    return value.isoformat()


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class Store:
    """Async SQLite gateway used by every scraping task."""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self.conn = conn
        self._lock = asyncio.Lock()

    @classmethod
    async def open(cls, path: str) -> "Store":
        """Connect, verify the connection and make sure the schema exists."""
        conn = await get_conn(path)
        await check_db_connectivity(conn)
        await init_schema(conn)
        return cls(conn)

    async def close(self) -> None:
        await self.conn.close()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["Store"]:
        """Run a unit of work exclusively, committing on success."""
        async with self._lock:
            try:
                yield self
            except BaseException:
                await self.conn.rollback()
                raise
            else:
                await self.conn.commit()

    async def _fetchone(self, sql: str, params: Iterable = ()) -> Optional[aiosqlite.Row]:
        async with self.conn.execute(sql, tuple(params)) as cursor:
            return await cursor.fetchone()

    async def _fetchall(self, sql: str, params: Iterable = ()) -> list[aiosqlite.Row]:
        async with self.conn.execute(sql, tuple(params)) as cursor:
            return list(await cursor.fetchall())

    # --- servers and guilds ---------------------------------------------------

    async def upsert_server(self, name: str, server_type: Optional[str] = None) -> int:
        await self.conn.execute(
            """
            INSERT INTO servers (name, type, created_at) VALUES (?, ?, ?)
            ON CONFLICT (name) DO UPDATE SET type = COALESCE(excluded.type, servers.type)
            """,
            (name, server_type, _ts(utc_now())),
        )
        row = await self._fetchone("SELECT id FROM servers WHERE name = ?", (name,))
        return row["id"]

    async def list_servers(self) -> list[ServerRef]:
        rows = await self._fetchall("SELECT id, name FROM servers ORDER BY name")
        return [ServerRef(id=r["id"], name=r["name"]) for r in rows]

    async def upsert_guild(self, name: str, server_id: int, is_ally: bool) -> int:
        now = _ts(utc_now())
        await self.conn.execute(
            """
            INSERT INTO guilds (name, server_id, is_ally, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (name, server_id) DO UPDATE SET
                is_ally = excluded.is_ally,
                updated_at = excluded.updated_at
            """,
            (name, server_id, int(is_ally), now, now),
        )
        row = await self._fetchone(
            "SELECT id FROM guilds WHERE name = ? AND server_id = ?", (name, server_id)
        )
        return row["id"]

    async def list_guilds(self) -> list[GuildRef]:
        rows = await self._fetchall(
            """
            SELECT g.id, g.name, g.server_id, s.name AS server_name, g.is_ally
            FROM guilds g
            INNER JOIN servers s ON g.server_id = s.id
            ORDER BY s.name, g.name
            """
        )
        return [
            GuildRef(
                id=r["id"],
                name=r["name"],
                server_id=r["server_id"],
                server_name=r["server_name"],
                is_ally=bool(r["is_ally"]),
            )
            for r in rows
        ]

    # --- players ----------------------------------------------------------------

    async def upsert_player(
        self,
        name: str,
        server_id: int,
        *,
        level: Optional[int] = None,
        vocation: Optional[Vocation] = None,
        guild_id=_UNSET,
    ) -> int:
        """
        Insert or update a player by its natural key (name, server_id).

        Only the fields that are passed are overwritten on conflict; the rest
        keep their stored values (or the defaults on first insert).

        Returns:
            The player's id
        """
        now = _ts(utc_now())
        updates = ["updated_at = excluded.updated_at"]
        if level is not None:
            updates.append("level = excluded.level")
        if vocation is not None:
            updates.append("vocation = excluded.vocation")
        if guild_id is not _UNSET:
            updates.append("guild_id = excluded.guild_id")

        await self.conn.execute(
            f"""
            INSERT INTO players (name, vocation, level, guild_id, server_id, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (name, server_id) DO UPDATE SET {", ".join(updates)}
            """,
            (
                name,
                (vocation or Vocation.NONE).value,
                level if level is not None else 1,
                None if guild_id is _UNSET else guild_id,
                server_id,
                now,
                now,
            ),
        )
        row = await self._fetchone(
            "SELECT id FROM players WHERE name = ? AND server_id = ?", (name, server_id)
        )
        return row["id"]

    async def find_player_id(self, name: str, server_id: int) -> Optional[int]:
        row = await self._fetchone(
            "SELECT id FROM players WHERE name = ? AND server_id = ?", (name, server_id)
        )
        return row["id"] if row else None

    async def guild_ally_flag(self, name: str, server_id: int) -> bool:
        """Ally flag of the player's current guild; False when guildless or unknown."""
        row = await self._fetchone(
            """
            SELECT g.is_ally
            FROM players p
            INNER JOIN guilds g ON p.guild_id = g.id
            WHERE p.name = ? AND p.server_id = ?
            """,
            (name, server_id),
        )
        return bool(row["is_ally"]) if row else False

    async def list_guild_players(self, limit: int) -> list[PlayerRef]:
        rows = await self._fetchall(
            """
            SELECT DISTINCT p.id, p.name
            FROM players p
            INNER JOIN guilds g ON p.guild_id = g.id
            ORDER BY p.name
            LIMIT ?
            """,
            (limit,),
        )
        return [PlayerRef(id=r["id"], name=r["name"]) for r in rows]

    # --- online status ----------------------------------------------------------

    async def reset_online(self, server_id: int) -> int:
        """Flag every online player of a server offline. Returns affected rows."""
        cursor = await self.conn.execute(
            """
            UPDATE player_status SET is_online = 0
            WHERE is_online = 1
              AND player_id IN (SELECT id FROM players WHERE server_id = ?)
            """,
            (server_id,),
        )
        return cursor.rowcount

    async def mark_online(self, player_id: int, seen_at: datetime) -> None:
        await self.conn.execute(
            """
            INSERT INTO player_status (player_id, is_online, last_seen) VALUES (?, 1, ?)
            ON CONFLICT (player_id) DO UPDATE SET is_online = 1, last_seen = excluded.last_seen
            """,
            (player_id, _ts(seen_at)),
        )

    async def set_hunting(self, player_id: int, is_hunting: bool) -> None:
        await self.conn.execute(
            """
            INSERT INTO player_status (player_id, is_hunting) VALUES (?, ?)
            ON CONFLICT (player_id) DO UPDATE SET is_hunting = excluded.is_hunting
            """,
            (player_id, int(is_hunting)),
        )

    async def get_status(self, player_id: int) -> Optional[OnlineStatus]:
        row = await self._fetchone(
            "SELECT player_id, is_online, is_hunting, last_seen FROM player_status WHERE player_id = ?",
            (player_id,),
        )
        if row is None:
            return None
        return OnlineStatus(
            player_id=row["player_id"],
            is_online=bool(row["is_online"]),
            is_hunting=bool(row["is_hunting"]),
            last_seen=_parse_ts(row["last_seen"]),
        )

    # --- snapshots and sessions -------------------------------------------------

    async def latest_snapshot(self, player_id: int) -> Optional[Snapshot]:
        row = await self._fetchone(
            """
            SELECT player_id, level, experience, snapshot_time
            FROM xp_snapshots
            WHERE player_id = ?
            ORDER BY id DESC
            LIMIT 1
            """,
            (player_id,),
        )
        if row is None:
            return None
        return Snapshot(
            player_id=row["player_id"],
            level=row["level"],
            experience=int(row["experience"]),
            captured_at=_parse_ts(row["snapshot_time"]),
        )

    async def insert_snapshot(self, snapshot: Snapshot) -> None:
        await self.conn.execute(
            "INSERT INTO xp_snapshots (player_id, level, experience, snapshot_time) VALUES (?, ?, ?, ?)",
            (snapshot.player_id, snapshot.level, str(snapshot.experience), _ts(snapshot.captured_at)),
        )

    async def active_session(self, player_id: int) -> Optional[HuntingSession]:
        row = await self._fetchone(
            "SELECT * FROM hunting_sessions WHERE player_id = ? AND is_active = 1",
            (player_id,),
        )
        return self._session_from_row(row) if row else None

    async def list_sessions(self, player_id: int) -> list[HuntingSession]:
        rows = await self._fetchall(
            "SELECT * FROM hunting_sessions WHERE player_id = ? ORDER BY id", (player_id,)
        )
        return [self._session_from_row(r) for r in rows]

    async def open_session(self, player_id: int, start_time: datetime, xp_gained: int) -> int:
        cursor = await self.conn.execute(
            "INSERT INTO hunting_sessions (player_id, start_time, xp_gained, is_active) VALUES (?, ?, ?, 1)",
            (player_id, _ts(start_time), str(xp_gained)),
        )
        return cursor.lastrowid

    async def update_session_xp(self, session_id: int, xp_gained: int) -> None:
        await self.conn.execute(
            "UPDATE hunting_sessions SET xp_gained = ? WHERE id = ?",
            (str(xp_gained), session_id),
        )

    async def close_session(self, session_id: int, end_time: datetime) -> None:
        await self.conn.execute(
            "UPDATE hunting_sessions SET is_active = 0, end_time = ? WHERE id = ?",
            (_ts(end_time), session_id),
        )

    @staticmethod
    def _session_from_row(row: aiosqlite.Row) -> HuntingSession:
        return HuntingSession(
            id=row["id"],
            player_id=row["player_id"],
            start_time=_parse_ts(row["start_time"]),
            end_time=_parse_ts(row["end_time"]),
            xp_gained=int(row["xp_gained"]),
            is_active=bool(row["is_active"]),
        )

    # --- deaths -----------------------------------------------------------------

    async def insert_death(
        self,
        *,
        victim_name: str,
        victim_id: Optional[int],
        killer_name: Optional[str],
        death_time: datetime,
        server_id: int,
        is_ally_death: bool,
    ) -> bool:
        """Insert a death unless (victim_name, death_time, server_id) exists. Returns True if inserted."""
        cursor = await self.conn.execute(
            """
            INSERT INTO deaths (victim_name, victim_id, killer_name, death_time, server_id, is_ally_death, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (victim_name, death_time, server_id) DO NOTHING
            """,
            (victim_name, victim_id, killer_name, _ts(death_time), server_id, int(is_ally_death), _ts(utc_now())),
        )
        return cursor.rowcount == 1

    async def death_exists(self, victim_name: str, death_time: datetime, server_id: int) -> bool:
        row = await self._fetchone(
            "SELECT 1 FROM deaths WHERE victim_name = ? AND death_time = ? AND server_id = ?",
            (victim_name, _ts(death_time), server_id),
        )
        return row is not None

    # --- guild rosters and playtime -------------------------------------------

    async def insert_roster_snapshot(
        self, guild_id: int, members: Iterable[GuildMember], snapshot_time: datetime
    ) -> int:
        rows = [(guild_id, m.name, m.vocation.value, _ts(snapshot_time)) for m in members]
        await self.conn.executemany(
            "INSERT INTO guild_member_snapshots (guild_id, player_name, vocation, snapshot_time) VALUES (?, ?, ?, ?)",
            rows,
        )
        return len(rows)

    async def detach_former_members(self, guild_id: int, member_names: Iterable[str]) -> int:
        """Clear guild membership for players no longer on the guild's roster."""
        names = list(member_names)
        placeholders = ", ".join("?" for _ in names)
        cursor = await self.conn.execute(
            f"UPDATE players SET guild_id = NULL, updated_at = ? WHERE guild_id = ? AND name NOT IN ({placeholders})",
            (_ts(utc_now()), guild_id, *names),
        )
        return cursor.rowcount

    async def add_playtime(self, player_id: int, bucket: PlaytimeBucket, updated_at: datetime) -> None:
        await self.conn.execute(
            """
            INSERT INTO playtime_patterns (player_id, hour_of_day, day_of_week, frequency, last_updated)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (player_id, hour_of_day, day_of_week) DO UPDATE SET
                frequency = playtime_patterns.frequency + excluded.frequency,
                last_updated = excluded.last_updated
            """,
            (player_id, bucket.hour_of_day, bucket.day_of_week, bucket.frequency, _ts(updated_at)),
        )

    async def playtime(self, player_id: int) -> dict[tuple[int, int], int]:
        rows = await self._fetchall(
            "SELECT hour_of_day, day_of_week, frequency FROM playtime_patterns WHERE player_id = ?",
            (player_id,),
        )
        return {(r["hour_of_day"], r["day_of_week"]): r["frequency"] for r in rows}

    # --- run log ----------------------------------------------------------------

    async def insert_run_log(self, entry: RunLogEntry) -> None:
        await self.conn.execute(
            "INSERT INTO scraper_logs (task_name, status, message, execution_time_ms, created_at) VALUES (?, ?, ?, ?, ?)",
            (entry.task_name, entry.status.value, entry.message, entry.execution_time_ms, _ts(entry.timestamp)),
        )
