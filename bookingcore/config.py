import os

from dotenv import load_dotenv

load_dotenv()


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        return int(raw)
    except ValueError:
        return int(default)


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "1" if default else "0").strip().lower()
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return bool(default)


class Settings:
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./bookingcore.db")
    DB_AUTO_CREATE_ALL = _get_bool("DB_AUTO_CREATE_ALL", False)
    SQLITE_BUSY_TIMEOUT_MS = _get_int("SQLITE_BUSY_TIMEOUT_MS", 30000)
    REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379/0").strip()
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper()

    DEFAULT_ACCOUNT_TIMEZONE = os.getenv("DEFAULT_ACCOUNT_TIMEZONE", "Europe/Vienna").strip()
    SLOT_GRANULARITY_MINUTES = _get_int("SLOT_GRANULARITY_MINUTES", 5)
    BOOKABLE_STEP_MINUTES = _get_int("BOOKABLE_STEP_MINUTES", 30)
    MAX_AVAILABILITY_RANGE_DAYS = _get_int("MAX_AVAILABILITY_RANGE_DAYS", 62)

    EVENT_BUS_ENABLED = _get_bool("EVENT_BUS_ENABLED", True)
    EVENT_BUS_STREAM = os.getenv("EVENT_BUS_STREAM", "bookingcore.events").strip()
    OUTBOX_MAX_RETRIES = _get_int("OUTBOX_MAX_RETRIES", 8)

    SECURITY_HEADERS_ENABLED = _get_bool("SECURITY_HEADERS_ENABLED", True)


settings = Settings()
