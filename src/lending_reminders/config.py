from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _as_csv_tuple(value: str | None) -> tuple[str, ...]:
    if value is None:
        return ()
    items = [item.strip() for item in value.split(",")]
    return tuple(item for item in items if item)


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


@dataclass(frozen=True)
class Settings:
    app_name: str = "Lending Reminders"
    api_prefix: str = "/api/v1"
    log_level: str = "INFO"
    reminder_store_backend: str = "inmemory"
    database_url: str = ""
    # Outbound channel providers.
    channel_sender_type: str = "stub"
    channel_api_base_url: str = ""
    channel_api_key: str = ""
    channel_timeout_seconds: int = 10
    channels_enabled: bool = True
    stub_failing_channels: tuple[str, ...] = ()
    # Scheduling and dispatch.
    send_tolerance_minutes: int = 60
    contact_window_timezone_mode: str = "utc"
    dispatch_lease_ttl_seconds: int = 300
    run_limit_max: int = 500


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("LENDING_REMINDERS_APP_NAME", "Lending Reminders"),
        api_prefix=os.getenv("LENDING_REMINDERS_API_PREFIX", "/api/v1"),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        reminder_store_backend=_normalize_mode(
            os.getenv("REMINDER_STORE_BACKEND"),
            default="inmemory",
            allowed={"inmemory", "postgres"},
        ),
        database_url=os.getenv("DATABASE_URL", ""),
        channel_sender_type=_normalize_mode(
            os.getenv("CHANNEL_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        channel_api_base_url=os.getenv("CHANNEL_API_BASE_URL", ""),
        channel_api_key=os.getenv("CHANNEL_API_KEY", ""),
        channel_timeout_seconds=_as_int(os.getenv("CHANNEL_TIMEOUT_SECONDS"), 10),
        channels_enabled=_as_bool(os.getenv("CHANNELS_ENABLED"), True),
        stub_failing_channels=_as_csv_tuple(os.getenv("STUB_FAILING_CHANNELS")),
        send_tolerance_minutes=_as_int(os.getenv("REMINDER_SEND_TOLERANCE_MINUTES"), 60),
        contact_window_timezone_mode=_normalize_mode(
            os.getenv("CONTACT_WINDOW_TIMEZONE_MODE"),
            default="utc",
            allowed={"utc", "local"},
        ),
        dispatch_lease_ttl_seconds=_as_int(os.getenv("DISPATCH_LEASE_TTL_SECONDS"), 300),
        run_limit_max=_as_int(os.getenv("REMINDER_RUN_LIMIT_MAX"), 500),
    )
