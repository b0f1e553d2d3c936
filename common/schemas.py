"""
Pydantic Schemas - Data Validation Models

Defines the pydantic schemas used throughout the pipeline:
- Records extracted from the target site's HTML tables
- Derived entities read back from storage (snapshots, hunting sessions)
- Run-log entries and Redis Pub/Sub event payloads

Usage:
    from common.schemas import HighscoreEntry

    entry = HighscoreEntry(rank=1, name="Aeon", level=812, experience=12345678901)

Experience values are plain Python ints: unbounded, exact, never floats.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Vocation(str, Enum):
    ELITE_KNIGHT = "Elite Knight"
    MASTER_SORCERER = "Master Sorcerer"
    ELDER_DRUID = "Elder Druid"
    ROYAL_PALADIN = "Royal Paladin"
    NONE = "None"


class RunStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    WARNING = "warning"


# --- Extracted records ------------------------------------------------------


class OnlinePlayer(BaseModel):
    """One row of a world's online listing."""

    name: str = Field(..., min_length=1)
    level: int = Field(..., ge=1)
    vocation: Vocation = Vocation.NONE


class HighscoreEntry(BaseModel):
    """One ranked row of the experience highscores."""

    rank: Optional[int] = None
    name: str = Field(..., min_length=1)
    level: int = Field(..., ge=1)
    experience: int = Field(..., ge=0)


class DeathRecord(BaseModel):
    """One row of the latest-deaths board. ``killer_name`` is None for environment deaths."""

    victim_name: str = Field(..., min_length=1)
    killer_name: Optional[str] = None
    death_time: datetime

    @field_validator("killer_name")
    @classmethod
    def blank_killer_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v

    @field_validator("death_time")
    @classmethod
    def require_aware(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("death_time must be timezone-aware")
        return v.astimezone(timezone.utc)


class GuildMember(BaseModel):
    name: str = Field(..., min_length=1)
    vocation: Vocation = Vocation.NONE


class PlaytimeBucket(BaseModel):
    """Histogram bucket: how often a player was seen at this hour on this weekday (Sunday=0)."""

    hour_of_day: int = Field(..., ge=0, le=23)
    day_of_week: int = Field(..., ge=0, le=6)
    frequency: int = Field(..., ge=1)


class GuildConfigEntry(BaseModel):
    """A tracked guild as configured in the guilds CSV."""

    server: str = Field(..., min_length=1)
    guild: str = Field(..., min_length=1)
    is_ally: bool = False


# --- Stored entities --------------------------------------------------------


class ServerRef(BaseModel):
    id: int
    name: str


class GuildRef(BaseModel):
    id: int
    name: str
    server_id: int
    server_name: str
    is_ally: bool


class PlayerRef(BaseModel):
    id: int
    name: str


class Snapshot(BaseModel):
    player_id: int
    level: int
    experience: int
    captured_at: datetime


class HuntingSession(BaseModel):
    id: int
    player_id: int
    start_time: datetime
    end_time: Optional[datetime] = None
    xp_gained: int = 0
    is_active: bool = True


class OnlineStatus(BaseModel):
    player_id: int
    is_online: bool = False
    is_hunting: bool = False
    last_seen: Optional[datetime] = None


# --- Run log and events -----------------------------------------------------


class RunLogEntry(BaseModel):
    """Execution-health record written once per task execution."""

    task_name: str
    status: RunStatus
    message: str = ""
    execution_time_ms: int = Field(default=0, ge=0)
    timestamp: datetime = Field(default_factory=utc_now)


class RedisEvent(BaseModel):
    """Redis Pub/Sub event payload.

    Standard format:
    {
        "type": "run_logged" | "death_recorded" | "hunting_started" | "hunting_ended",
        "data": {...},
        "ts": "2026-01-27T13:30:02+00:00"
    }
    """

    type: str = Field(..., description="Event type")
    data: dict[str, Any] = Field(default_factory=dict)
    ts: datetime = Field(default_factory=utc_now, description="Timestamp")
