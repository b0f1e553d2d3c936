"""
Configuration Utility - Environment Variables Management

Centralized configuration loading from .env files using pydantic-settings.
Type-safe access to all environment variables with validation.

Usage:
    from common.config import get_settings

    settings = get_settings()
    base_url = settings.SITE_BASE_URL
    pages = settings.HIGHSCORE_PAGES

The entry point builds the settings once and hands them to every task through
the task context; library code never reaches for a module-level instance.
"""

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Target site
    SITE_BASE_URL: str = Field(default="https://rubinot.com")
    HISTORY_BASE_URL: str = Field(default="https://rubinothings.com")
    SITE_TIMEZONE: str = Field(default="Europe/Berlin")

    WORLDS_PATH: str = Field(default="/?subtopic=worlds")
    GUILDS_PATH: str = Field(default="/?subtopic=guilds")
    HIGHSCORES_PATH: str = Field(default="/?subtopic=highscores")
    DEATHS_PATH: str = Field(default="/?subtopic=latestdeaths")
    CHARACTER_HISTORY_PATH: str = Field(default="/character/{name}")

    # Form payload field names
    FORM_SERVER_FIELD: str = Field(default="server")
    FORM_PAGE_FIELD: str = Field(default="page")
    WORLD_QUERY_PARAM: str = Field(default="world")

    # HTTP Configuration
    HTTP_TIMEOUT: float = Field(default=30.0, gt=0)
    HTTP_MAX_REDIRECTS: int = Field(default=5, ge=0)
    HTTP_DELAY_MIN_MS: int = Field(default=500, ge=0)
    HTTP_DELAY_MAX_MS: int = Field(default=3000, ge=0)
    USER_AGENT: str = Field(
        default=(
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
        )
    )

    # Scheduler Configuration (seconds)
    ONLINE_PLAYERS_INTERVAL: int = Field(default=30, gt=0)
    KILLBOARD_INTERVAL: int = Field(default=30, gt=0)
    HIGHSCORES_INTERVAL: int = Field(default=60, gt=0)
    GUILD_MEMBERS_INTERVAL: int = Field(default=12 * 60 * 60, gt=0)
    PLAYTIME_INTERVAL: int = Field(default=12 * 60 * 60, gt=0)
    DISABLED_TASKS: str = Field(default="")

    # Retry Configuration
    RETRY_ATTEMPTS: int = Field(default=3, ge=1)
    RETRY_BASE_DELAY: float = Field(default=1.0, ge=0)
    RETRY_MAX_DELAY: float = Field(default=30.0, ge=0)

    # Scraping depth and parsing
    HIGHSCORE_PAGES: int = Field(default=15, ge=1)
    PLAYTIME_PLAYER_LIMIT: int = Field(default=100, ge=1)
    STRICT_LEVEL_PARSING: bool = Field(default=False)

    # Seed data
    SERVERS: str = Field(default="")
    GUILDS_CSV: str = Field(default="/data/guilds.csv")

    # Database Configuration
    SQLITE_PATH: str = Field(default="/app/data/db/guild_monitor.db")

    # Redis Configuration
    EVENTS_ENABLED: bool = Field(default=False)
    REDIS_URL: str = Field(default="redis://redis:6379/0")
    REDIS_MAX_CONNECTIONS: int = Field(default=10)
    REDIS_SOCKET_TIMEOUT: float = Field(default=1.0, gt=0)
    # Seconds events are dropped after a failed publish before Redis is pinged again
    REDIS_RECHECK_INTERVAL: float = Field(default=30.0, ge=0)
    REDIS_CHANNEL_RUNS: str = Field(default="scraper.runs")
    REDIS_CHANNEL_DEATHS: str = Field(default="scraper.deaths")
    REDIS_CHANNEL_HUNTING: str = Field(default="scraper.hunting")

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="text")

    # Application Metadata
    ENVIRONMENT: str = Field(default="production")
    APP_NAME: str = Field(default="guild-monitor-scraper")
    APP_VERSION: str = Field(default="0.1.0")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True

    @field_validator("HTTP_DELAY_MAX_MS")
    @classmethod
    def validate_delay_range(cls, v: int, info) -> int:
        """Upper delay bound must not be below the lower bound."""
        low = info.data.get("HTTP_DELAY_MIN_MS", 0)
        if v < low:
            raise ValueError("HTTP_DELAY_MAX_MS must be >= HTTP_DELAY_MIN_MS")
        return v

    @property
    def server_names(self) -> list[str]:
        return [name.strip() for name in self.SERVERS.split(",") if name.strip()]

    @property
    def disabled_tasks(self) -> set[str]:
        return {name.strip() for name in self.DISABLED_TASKS.split(",") if name.strip()}


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Singleton Settings instance
    """
    return Settings()
