import os
from datetime import timedelta
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()


class ReminderSettings(BaseModel):
    """Windows and thresholds used by the reminder evaluator."""
    due_soon_window: timedelta = timedelta(hours=24)
    same_day_exclusion: bool = True
    imminent_windows: list[int] = [30, 10]  # minutes before due
    imminent_band_minutes: int = 5  # should match the polling cadence
    recurring_hour: int = 19  # 7 PM local
    poll_interval_seconds: int = 60
    dispatch_timeout_seconds: float = 10.0
    loop_enabled: bool = True


class Settings(BaseModel):
    anthropic_api_key: Optional[str] = None
    anthropic_model: str = "claude-sonnet-4-5"
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    cron_secret: Optional[str] = None
    cors_origins: list[str] = ["http://localhost:3000"]
    log_format: str = "dev"
    log_level: str = "INFO"
    reminders: ReminderSettings = ReminderSettings()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}")


def _env_list(name: str, default: list[str]) -> list[str]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return [item.strip() for item in value.split(",") if item.strip()]


def _env_secret(name: str) -> Optional[str]:
    # Treat placeholder values from .env.example as unset
    value = os.getenv(name)
    if not value or value.startswith("your-"):
        return None
    return value


def get_reminder_settings() -> ReminderSettings:
    windows = _env_list("REMINDER_IMMINENT_WINDOWS", ["30", "10"])
    try:
        imminent_windows = sorted({int(w) for w in windows}, reverse=True)
    except ValueError:
        raise ValueError(f"REMINDER_IMMINENT_WINDOWS must be comma-separated integers, got {windows!r}")

    recurring_hour = _env_int("REMINDER_RECURRING_HOUR", 19)
    if not 0 <= recurring_hour <= 23:
        raise ValueError(f"REMINDER_RECURRING_HOUR must be between 0 and 23, got {recurring_hour}")

    return ReminderSettings(
        due_soon_window=timedelta(hours=_env_float("REMINDER_WINDOW_HOURS", 24)),
        same_day_exclusion=_env_bool("REMINDER_SAME_DAY_EXCLUSION", True),
        imminent_windows=imminent_windows,
        imminent_band_minutes=_env_int("REMINDER_IMMINENT_BAND_MINUTES", 5),
        recurring_hour=recurring_hour,
        poll_interval_seconds=_env_int("REMINDER_POLL_SECONDS", 60),
        dispatch_timeout_seconds=_env_float("REMINDER_DISPATCH_TIMEOUT", 10.0),
        loop_enabled=_env_bool("REMINDER_LOOP_ENABLED", True),
    )


def get_settings() -> Settings:
    """Build settings from the environment (and .env, if present)."""
    return Settings(
        anthropic_api_key=_env_secret("ANTHROPIC_API_KEY"),
        anthropic_model=os.getenv("ANTHROPIC_MODEL", "claude-sonnet-4-5"),
        telegram_bot_token=_env_secret("TELEGRAM_BOT_TOKEN"),
        telegram_chat_id=_env_secret("TELEGRAM_CHAT_ID"),
        cron_secret=_env_secret("CRON_SECRET"),
        cors_origins=_env_list("CORS_ORIGINS", ["http://localhost:3000"]),
        log_format=os.getenv("LOG_FORMAT", "dev"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        reminders=get_reminder_settings(),
    )
