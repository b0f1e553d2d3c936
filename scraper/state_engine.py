"""
State Engine - Snapshots to Session-Level Facts

Converts point-in-time samples from the site into long-lived derived state:

- hunting sessions, from the experience delta between a player's two latest
  snapshots
- online status, from each sampling cycle's online listing
- death records, deduplicated and classified ally/enemy at ingestion time
- guild roster snapshots and playtime histograms

This is the only writer of hunting-session and online-status transitions.
Decisions are made here; the persistence gateway just executes them.

Session rules for one player, prior and current experience known:

    delta > 0   hunting; extend the active session by delta, or open one
    delta == 0  not hunting; close the active session if any
    delta < 0   same as delta == 0, plus a warning. Never subtract.

Experience is handled as Python ints end to end.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Iterable, Optional

from common.schemas import (
    DeathRecord,
    GuildMember,
    GuildRef,
    HighscoreEntry,
    OnlinePlayer,
    PlayerRef,
    PlaytimeBucket,
    ServerRef,
    Snapshot,
    utc_now,
)
from common.store import Store

logger = logging.getLogger(__name__)


class SessionAction(str, Enum):
    NONE = "none"
    OPEN = "open"
    EXTEND = "extend"
    CLOSE = "close"


@dataclass(frozen=True)
class Transition:
    """What one new sample means for a player's hunting state."""

    action: SessionAction
    delta: int = 0
    is_hunting: Optional[bool] = None  # None: leave the flag untouched
    anomalous: bool = False


def decide_transition(prior_xp: Optional[int], current_xp: int, has_active_session: bool) -> Transition:
    """
    Decide the session transition for a new experience sample.

    Args:
        prior_xp: Experience of the previous snapshot, None if there is none
        current_xp: Experience of the snapshot just taken
        has_active_session: Whether the player has an active session

    Returns:
        Transition to apply
    """
    if prior_xp is None:
        return Transition(SessionAction.NONE)

    delta = current_xp - prior_xp

    if delta > 0:
        action = SessionAction.EXTEND if has_active_session else SessionAction.OPEN
        return Transition(action, delta=delta, is_hunting=True)

    action = SessionAction.CLOSE if has_active_session else SessionAction.NONE
    return Transition(action, delta=delta, is_hunting=False, anomalous=delta < 0)


@dataclass
class HighscoreSummary:
    players: int = 0
    opened: int = 0
    extended: int = 0
    closed: int = 0
    anomalies: int = 0
    failed: int = 0


@dataclass
class DeathSummary:
    seen: int = 0
    recorded: list[DeathRecord] = field(default_factory=list)
    failed: int = 0


class StateEngine:
    """Derives and commits state from extracted records."""

    def __init__(self, store: Store, events, clock: Callable[[], datetime] = utc_now) -> None:
        """
        Args:
            store: Persistence gateway
            events: Event publisher (``emit(stream, type, data)``)
            clock: Returns the current aware UTC time
        """
        self.store = store
        self.events = events
        self.clock = clock

    # --- hunting ----------------------------------------------------------------

    async def record_sample(
        self, player_id: int, level: int, experience: int, now: datetime
    ) -> tuple[Transition, Optional[Snapshot]]:
        """
        Append a snapshot and apply the resulting session transition.

        Must run inside ``store.transaction()``.

        Returns:
            (transition applied, prior snapshot or None)
        """
        prior = await self.store.latest_snapshot(player_id)
        await self.store.insert_snapshot(
            Snapshot(player_id=player_id, level=level, experience=experience, captured_at=now)
        )

        active = await self.store.active_session(player_id)
        transition = decide_transition(
            prior.experience if prior else None, experience, active is not None
        )

        if transition.action is SessionAction.OPEN:
            await self.store.open_session(player_id, now, transition.delta)
        elif transition.action is SessionAction.EXTEND:
            await self.store.update_session_xp(active.id, active.xp_gained + transition.delta)
        elif transition.action is SessionAction.CLOSE:
            await self.store.close_session(active.id, now)

        if transition.is_hunting is not None:
            await self.store.set_hunting(player_id, transition.is_hunting)

        return transition, prior

    async def ingest_highscores(self, server: ServerRef, entries: Iterable[HighscoreEntry]) -> HighscoreSummary:
        """Upsert ranked players, snapshot them and update their hunting sessions."""
        now = self.clock()
        summary = HighscoreSummary()
        seen: set[str] = set()

        for entry in entries:
            # Ranks can shift between page fetches; one snapshot per player per cycle.
            if entry.name in seen:
                continue
            seen.add(entry.name)
            summary.players += 1
            try:
                async with self.store.transaction():
                    player_id = await self.store.upsert_player(entry.name, server.id, level=entry.level)
                    transition, prior = await self.record_sample(player_id, entry.level, entry.experience, now)
            except Exception as e:
                summary.failed += 1
                logger.error(
                    "Failed to record highscore sample",
                    extra={"server": server.name, "player": entry.name, "error": str(e)},
                )
                continue

            if transition.anomalous:
                summary.anomalies += 1
                logger.warning(
                    "Experience decreased for %s on %s (%s -> %s); treating as idle",
                    entry.name, server.name, prior.experience, entry.experience,
                )

            if transition.action is SessionAction.OPEN:
                summary.opened += 1
            elif transition.action is SessionAction.EXTEND:
                summary.extended += 1
            elif transition.action is SessionAction.CLOSE:
                summary.closed += 1

            if transition.delta > 0 and prior is not None:
                seconds = int((now - prior.captured_at).total_seconds())
                if seconds > 0:
                    logger.debug(
                        "%s: +%d XP (%d XP/min)", entry.name, transition.delta, transition.delta * 60 // seconds
                    )

            if transition.action in (SessionAction.OPEN, SessionAction.CLOSE):
                await self.events.emit(
                    "hunting",
                    "hunting_started" if transition.action is SessionAction.OPEN else "hunting_ended",
                    {
                        "player_id": player_id,
                        "player": entry.name,
                        "server": server.name,
                        "delta": str(transition.delta),
                        "at": now.isoformat(),
                    },
                )

        return summary

    # --- online status ------------------------------------------------------------

    async def apply_online_listing(self, server: ServerRef, players: Iterable[OnlinePlayer]) -> int:
        """
        Replace the server's online set with the freshly parsed listing.

        Everyone flagged online for the server is reset first; everyone in the
        listing is then upserted and flagged online with last_seen=now. Both
        steps commit together, so readers never observe the intermediate
        all-offline state.

        Returns:
            Number of players flagged online
        """
        now = self.clock()
        count = 0

        async with self.store.transaction():
            went_offline = await self.store.reset_online(server.id)
            for player in players:
                player_id = await self.store.upsert_player(
                    player.name, server.id, level=player.level, vocation=player.vocation
                )
                await self.store.mark_online(player_id, now)
                count += 1

        logger.debug("Online sweep on %s: reset %d, online %d", server.name, went_offline, count)
        return count

    # --- deaths -------------------------------------------------------------------

    async def ingest_deaths(self, server: ServerRef, deaths: Iterable[DeathRecord]) -> DeathSummary:
        """
        Record deaths not yet stored for this server.

        Ally classification uses the victim's guild as stored right now; it is
        written once and never revisited.
        """
        summary = DeathSummary()

        for death in deaths:
            summary.seen += 1
            try:
                async with self.store.transaction():
                    if await self.store.death_exists(death.victim_name, death.death_time, server.id):
                        continue
                    victim_id = await self.store.find_player_id(death.victim_name, server.id)
                    is_ally = await self.store.guild_ally_flag(death.victim_name, server.id)
                    inserted = await self.store.insert_death(
                        victim_name=death.victim_name,
                        victim_id=victim_id,
                        killer_name=death.killer_name,
                        death_time=death.death_time,
                        server_id=server.id,
                        is_ally_death=is_ally,
                    )
            except Exception as e:
                summary.failed += 1
                logger.error(
                    "Failed to record death",
                    extra={"server": server.name, "victim": death.victim_name, "error": str(e)},
                )
                continue

            if not inserted:
                continue

            summary.recorded.append(death)
            logger.info(
                "New death recorded: %s killed by %s", death.victim_name, death.killer_name or "environment"
            )
            await self.events.emit(
                "deaths",
                "death_recorded",
                {
                    "victim": death.victim_name,
                    "victim_id": victim_id,
                    "killer": death.killer_name,
                    "death_time": death.death_time.isoformat(),
                    "server": server.name,
                    "is_ally_death": is_ally,
                },
            )

        return summary

    # --- rosters and playtime -----------------------------------------------------

    async def ingest_guild_roster(self, guild: GuildRef, members: list[GuildMember]) -> int:
        """
        Store a roster snapshot and attach every member to the guild.

        Players still linked to the guild but missing from the roster have
        left it and are detached. An empty roster detaches nobody.
        """
        now = self.clock()

        async with self.store.transaction():
            await self.store.insert_roster_snapshot(guild.id, members, now)
            for member in members:
                await self.store.upsert_player(
                    member.name, guild.server_id, vocation=member.vocation, guild_id=guild.id
                )

            if members:
                departed = await self.store.detach_former_members(guild.id, [m.name for m in members])
                if departed:
                    logger.info("Players left guild", extra={"guild": guild.name, "departed": departed})

        return len(members)

    async def ingest_playtime(self, player: PlayerRef, buckets: list[PlaytimeBucket]) -> int:
        """Add bucket frequencies to the player's histogram. Buckets are never reset."""
        now = self.clock()

        async with self.store.transaction():
            for bucket in buckets:
                await self.store.add_playtime(player.id, bucket, now)

        return len(buckets)
