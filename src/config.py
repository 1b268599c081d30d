import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# .env is loaded from the working directory the service is started from
env_path = Path.cwd() / ".env"
load_dotenv(env_path)


@dataclass
class Config:
    api_host: str
    api_port: int
    db_path: str
    # Work mode assigned to freshly registered shops
    default_work_mode: bool
    # How many days ahead a booking may be made (0 = unlimited)
    booking_horizon_days: int
    notifications_page_limit: int
    messages_page_limit: int
    # SQLite contention handling
    sqlite_busy_timeout_ms: int
    sqlite_write_retries: int
    sqlite_retry_base_delay_sec: float


def clean_env(value: str | None) -> str:
    if value is None:
        return ""
    return value.strip().strip('"').strip("'")


def parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse a boolean env value."""
    if value is None:
        return default
    value = clean_env(value).lower()
    if value in {"1", "true", "yes", "y", "on"}:
        return True
    if value in {"0", "false", "no", "n", "off"}:
        return False
    return default


def parse_int(value: str | None, default: int | None = None) -> int | None:
    """Parse an int env value, falling back to default on blanks."""
    value = clean_env(value)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def parse_float(value: str | None, default: float) -> float:
    value = clean_env(value)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def load_config() -> Config:
    """Build config from the current process environment."""
    return Config(
        api_host=clean_env(os.getenv("API_HOST")) or "0.0.0.0",
        api_port=parse_int(os.getenv("API_PORT"), 8080),
        db_path=clean_env(os.getenv("DB_PATH")) or str(Path.cwd() / "shopbook.db"),
        default_work_mode=parse_bool(os.getenv("DEFAULT_WORK_MODE"), True),
        booking_horizon_days=max(0, parse_int(os.getenv("BOOKING_HORIZON_DAYS"), 90)),
        notifications_page_limit=max(1, parse_int(os.getenv("NOTIFICATIONS_PAGE_LIMIT"), 100)),
        messages_page_limit=max(1, parse_int(os.getenv("MESSAGES_PAGE_LIMIT"), 200)),
        sqlite_busy_timeout_ms=max(0, parse_int(os.getenv("SQLITE_BUSY_TIMEOUT_MS"), 5000)),
        sqlite_write_retries=max(0, parse_int(os.getenv("SQLITE_WRITE_RETRIES"), 3)),
        sqlite_retry_base_delay_sec=parse_float(os.getenv("SQLITE_RETRY_BASE_DELAY_SEC"), 0.05),
    )


CFG = load_config()
