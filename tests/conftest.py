import pytest

from common.config import Settings


@pytest.fixture()
def db_path(tmp_path):
    return str(tmp_path / "db" / "guild_monitor.db")


@pytest.fixture()
def settings(tmp_path, db_path):
    return Settings(
        _env_file=None,
        SITE_BASE_URL="https://game.example.com",
        HISTORY_BASE_URL="https://history.example.com",
        SERVERS="Auroria",
        GUILDS_CSV=str(tmp_path / "guilds.csv"),
        SQLITE_PATH=db_path,
        HTTP_DELAY_MIN_MS=0,
        HTTP_DELAY_MAX_MS=0,
        HIGHSCORE_PAGES=3,
        RETRY_BASE_DELAY=0,
    )
