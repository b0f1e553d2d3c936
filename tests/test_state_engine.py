import asyncio
from datetime import datetime, timezone

import pytest

from common.schemas import (
    DeathRecord,
    GuildMember,
    HighscoreEntry,
    OnlinePlayer,
    PlayerRef,
    PlaytimeBucket,
    ServerRef,
    Vocation,
)
from scraper.state_engine import SessionAction, StateEngine, decide_transition
from tests.support import FakeClock, RecordingEvents, open_store


def _entry(name, experience, level=100):
    return HighscoreEntry(rank=1, name=name, level=level, experience=experience)


@pytest.mark.parametrize(
    "prior, current, active, action, hunting, anomalous",
    [
        (None, 1000, False, SessionAction.NONE, None, False),
        (1000, 1500, False, SessionAction.OPEN, True, False),
        (1000, 1500, True, SessionAction.EXTEND, True, False),
        (1500, 1500, True, SessionAction.CLOSE, False, False),
        (1500, 1500, False, SessionAction.NONE, False, False),
        (1500, 1400, True, SessionAction.CLOSE, False, True),
        (1500, 1400, False, SessionAction.NONE, False, True),
    ],
)
def test_decide_transition(prior, current, active, action, hunting, anomalous):
    transition = decide_transition(prior, current, active)
    assert transition.action is action
    assert transition.is_hunting is hunting
    assert transition.anomalous is anomalous


def test_hunting_session_lifecycle(db_path):
    async def scenario():
        store, ids = await open_store(db_path)
        server = ServerRef(id=ids["Auroria"], name="Auroria")
        clock = FakeClock()
        events = RecordingEvents()
        engine = StateEngine(store, events, clock=clock)
        try:
            first = await engine.ingest_highscores(server, [_entry("Aeon", 1000)])
            assert (first.players, first.opened) == (1, 0)

            start = clock.advance(60)
            opened = await engine.ingest_highscores(server, [_entry("Aeon", 1500)])
            clock.advance(60)
            extended = await engine.ingest_highscores(server, [_entry("Aeon", 2000)])
            end = clock.advance(60)
            closed = await engine.ingest_highscores(server, [_entry("Aeon", 2000)])
            clock.advance(60)
            idle = await engine.ingest_highscores(server, [_entry("Aeon", 2000)])

            async with store.transaction():
                player_id = await store.find_player_id("Aeon", server.id)
                sessions = await store.list_sessions(player_id)
                status = await store.get_status(player_id)
            return opened, extended, closed, idle, sessions, status, start, end, events
        finally:
            await store.close()

    opened, extended, closed, idle, sessions, status, start, end, events = asyncio.run(scenario())

    assert opened.opened == 1
    assert extended.extended == 1
    assert closed.closed == 1
    assert (idle.opened, idle.extended, idle.closed) == (0, 0, 0)

    assert len(sessions) == 1
    session = sessions[0]
    assert session.xp_gained == 1000
    assert session.start_time == start
    assert session.end_time == end
    assert session.is_active is False
    assert status.is_hunting is False

    assert [e["player"] for e in events.of_type("hunting_started")] == ["Aeon"]
    assert [e["player"] for e in events.of_type("hunting_ended")] == ["Aeon"]
    assert events.of_type("hunting_started")[0]["delta"] == "500"


def test_new_session_opens_after_close(db_path):
    async def scenario():
        store, ids = await open_store(db_path)
        server = ServerRef(id=ids["Auroria"], name="Auroria")
        clock = FakeClock()
        engine = StateEngine(store, RecordingEvents(), clock=clock)
        try:
            for experience in (100, 200, 200, 300):
                clock.advance(60)
                await engine.ingest_highscores(server, [_entry("Aeon", experience)])
            async with store.transaction():
                player_id = await store.find_player_id("Aeon", server.id)
                return await store.list_sessions(player_id), await store.active_session(player_id)
        finally:
            await store.close()

    sessions, active = asyncio.run(scenario())

    assert [(s.is_active, s.xp_gained) for s in sessions] == [(False, 100), (True, 100)]
    assert active.id == sessions[1].id


def test_experience_decrease_is_anomaly_not_negative_session(db_path):
    async def scenario():
        store, ids = await open_store(db_path)
        server = ServerRef(id=ids["Auroria"], name="Auroria")
        clock = FakeClock()
        engine = StateEngine(store, RecordingEvents(), clock=clock)
        try:
            await engine.ingest_highscores(server, [_entry("Aeon", 5000)])
            clock.advance(60)
            summary = await engine.ingest_highscores(server, [_entry("Aeon", 4000)])
            async with store.transaction():
                player_id = await store.find_player_id("Aeon", server.id)
                return summary, await store.list_sessions(player_id), await store.latest_snapshot(player_id)
        finally:
            await store.close()

    summary, sessions, latest = asyncio.run(scenario())

    assert summary.anomalies == 1
    assert sessions == []
    assert latest.experience == 4000


def test_big_experience_values_round_trip_exactly(db_path):
    huge = 123456789012345678901

    async def scenario():
        store, ids = await open_store(db_path)
        server = ServerRef(id=ids["Auroria"], name="Auroria")
        clock = FakeClock()
        engine = StateEngine(store, RecordingEvents(), clock=clock)
        try:
            await engine.ingest_highscores(server, [_entry("Aeon", huge)])
            clock.advance(60)
            await engine.ingest_highscores(server, [_entry("Aeon", huge + 7)])
            async with store.transaction():
                player_id = await store.find_player_id("Aeon", server.id)
                return await store.latest_snapshot(player_id), await store.active_session(player_id)
        finally:
            await store.close()

    latest, active = asyncio.run(scenario())

    assert latest.experience == huge + 7
    assert active.xp_gained == 7


def test_one_snapshot_per_player_per_cycle(db_path):
    async def scenario():
        store, ids = await open_store(db_path)
        server = ServerRef(id=ids["Auroria"], name="Auroria")
        engine = StateEngine(store, RecordingEvents(), clock=FakeClock())
        try:
            summary = await engine.ingest_highscores(server, [_entry("Aeon", 100), _entry("Aeon", 100)])
            async with store.conn.execute("SELECT COUNT(*) FROM xp_snapshots") as cursor:
                (count,) = await cursor.fetchone()
            return summary, count
        finally:
            await store.close()

    summary, count = asyncio.run(scenario())

    assert summary.players == 1
    assert count == 1


def test_online_sweep_replaces_online_set(db_path):
    async def scenario():
        store, ids = await open_store(db_path, servers=("Auroria", "Belaria"))
        auroria = ServerRef(id=ids["Auroria"], name="Auroria")
        belaria = ServerRef(id=ids["Belaria"], name="Belaria")
        clock = FakeClock()
        engine = StateEngine(store, RecordingEvents(), clock=clock)
        try:
            await engine.apply_online_listing(belaria, [OnlinePlayer(name="Other", level=10)])
            await engine.apply_online_listing(
                auroria,
                [OnlinePlayer(name="Aeon", level=10), OnlinePlayer(name="Bel", level=20)],
            )
            seen_at = clock.advance(30)
            count = await engine.apply_online_listing(
                auroria,
                [
                    OnlinePlayer(name="Bel", level=21, vocation=Vocation.ELDER_DRUID),
                    OnlinePlayer(name="Cid", level=30),
                ],
            )

            statuses = {}
            async with store.transaction():
                for name, server in (("Aeon", auroria), ("Bel", auroria), ("Cid", auroria), ("Other", belaria)):
                    statuses[name] = await store.get_status(await store.find_player_id(name, server.id))
                async with store.conn.execute(
                    "SELECT level, vocation FROM players WHERE name = 'Bel'"
                ) as cursor:
                    bel = await cursor.fetchone()
            return count, statuses, bel, seen_at
        finally:
            await store.close()

    count, statuses, bel, seen_at = asyncio.run(scenario())

    assert count == 2
    assert statuses["Aeon"].is_online is False
    assert statuses["Bel"].is_online is True
    assert statuses["Bel"].last_seen == seen_at
    assert statuses["Cid"].is_online is True
    assert statuses["Other"].is_online is True
    assert (bel["level"], bel["vocation"]) == (21, "Elder Druid")


def test_deaths_are_deduplicated_and_classified(db_path):
    when = datetime(2026, 1, 27, 13, 30, tzinfo=timezone.utc)

    async def scenario():
        store, ids = await open_store(db_path)
        server = ServerRef(id=ids["Auroria"], name="Auroria")
        events = RecordingEvents()
        engine = StateEngine(store, events, clock=FakeClock())
        try:
            async with store.transaction():
                ally_guild = await store.upsert_guild("Red Rose", server.id, is_ally=True)
                enemy_guild = await store.upsert_guild("Black Thorn", server.id, is_ally=False)
                await store.upsert_player("Aeon", server.id, guild_id=ally_guild)
                await store.upsert_player("Bel", server.id, guild_id=enemy_guild)

            deaths = [
                DeathRecord(victim_name="Aeon", killer_name="Dragon Lord", death_time=when),
                DeathRecord(victim_name="Bel", killer_name="Aeon", death_time=when),
                DeathRecord(victim_name="Stranger", killer_name=None, death_time=when),
            ]
            first = await engine.ingest_deaths(server, deaths)
            second = await engine.ingest_deaths(server, deaths)

            async with store.conn.execute(
                "SELECT victim_name, victim_id, is_ally_death FROM deaths ORDER BY victim_name"
            ) as cursor:
                rows = [tuple(r) for r in await cursor.fetchall()]
            return first, second, rows, events
        finally:
            await store.close()

    first, second, rows, events = asyncio.run(scenario())

    assert len(first.recorded) == 3
    assert second.recorded == []
    assert second.seen == 3
    assert [(name, ally) for name, _, ally in rows] == [("Aeon", 1), ("Bel", 0), ("Stranger", 0)]
    assert rows[2][1] is None
    assert len(events.of_type("death_recorded")) == 3


def test_guild_roster_attaches_members(db_path):
    async def scenario():
        store, ids = await open_store(db_path)
        engine = StateEngine(store, RecordingEvents(), clock=FakeClock())
        try:
            async with store.transaction():
                await store.upsert_guild("Red Rose", ids["Auroria"], is_ally=True)
                guild = (await store.list_guilds())[0]
                # Level set elsewhere must survive the roster upsert.
                await store.upsert_player("Aeon", ids["Auroria"], level=500)

            count = await engine.ingest_guild_roster(
                guild,
                [
                    GuildMember(name="Aeon", vocation=Vocation.ELITE_KNIGHT),
                    GuildMember(name="Bel", vocation=Vocation.ELDER_DRUID),
                ],
            )
            async with store.transaction():
                players = await store.list_guild_players(limit=10)
                ally = await store.guild_ally_flag("Aeon", ids["Auroria"])
            async with store.conn.execute("SELECT level FROM players WHERE name = 'Aeon'") as cursor:
                (level,) = await cursor.fetchone()
            return count, players, ally, level
        finally:
            await store.close()

    count, players, ally, level = asyncio.run(scenario())

    assert count == 2
    assert [p.name for p in players] == ["Aeon", "Bel"]
    assert ally is True
    assert level == 500


def test_guild_roster_detaches_players_who_left(db_path):
    when = datetime(2026, 1, 27, 13, 30, tzinfo=timezone.utc)

    async def scenario():
        store, ids = await open_store(db_path)
        server = ServerRef(id=ids["Auroria"], name="Auroria")
        engine = StateEngine(store, RecordingEvents(), clock=FakeClock())
        try:
            async with store.transaction():
                await store.upsert_guild("Red Rose", server.id, is_ally=True)
                guild = (await store.list_guilds())[0]

            aeon = GuildMember(name="Aeon", vocation=Vocation.ELITE_KNIGHT)
            bel = GuildMember(name="Bel", vocation=Vocation.ELDER_DRUID)
            await engine.ingest_guild_roster(guild, [aeon, bel])
            await engine.ingest_guild_roster(guild, [bel])
            # A roster page that parsed to nothing keeps the remaining members.
            await engine.ingest_guild_roster(guild, [])

            async with store.transaction():
                players = await store.list_guild_players(limit=10)
            await engine.ingest_deaths(
                server, [DeathRecord(victim_name="Aeon", killer_name="Dragon Lord", death_time=when)]
            )
            async with store.conn.execute("SELECT is_ally_death FROM deaths WHERE victim_name = 'Aeon'") as cursor:
                rows = [tuple(r) for r in await cursor.fetchall()]
            return players, rows
        finally:
            await store.close()

    players, rows = asyncio.run(scenario())

    assert [p.name for p in players] == ["Bel"]
    assert rows == [(0,)]


def test_playtime_frequencies_accumulate(db_path):
    async def scenario():
        store, ids = await open_store(db_path)
        engine = StateEngine(store, RecordingEvents(), clock=FakeClock())
        try:
            async with store.transaction():
                player = PlayerRef(id=await store.upsert_player("Aeon", ids["Auroria"]), name="Aeon")
            buckets = [
                PlaytimeBucket(hour_of_day=21, day_of_week=0, frequency=2),
                PlaytimeBucket(hour_of_day=8, day_of_week=1, frequency=1),
            ]
            await engine.ingest_playtime(player, buckets)
            await engine.ingest_playtime(player, buckets[:1])
            async with store.transaction():
                return await store.playtime(player.id)
        finally:
            await store.close()

    assert asyncio.run(scenario()) == {(21, 0): 4, (8, 1): 1}


def test_active_session_uniqueness_is_enforced_by_schema(db_path):
    import sqlite3

    async def scenario():
        store, ids = await open_store(db_path)
        try:
            async with store.transaction():
                player_id = await store.upsert_player("Aeon", ids["Auroria"])
                await store.open_session(player_id, datetime(2026, 1, 1, tzinfo=timezone.utc), 10)
            with pytest.raises(sqlite3.IntegrityError):
                async with store.transaction():
                    await store.open_session(player_id, datetime(2026, 1, 2, tzinfo=timezone.utc), 10)
            async with store.transaction():
                return await store.list_sessions(player_id)
        finally:
            await store.close()

    assert len(asyncio.run(scenario())) == 1
