"""Environment-backed application settings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path


_ENV_PREFIX = "ALLOTMENT_"


def _env_str(name: str, default: str) -> str:
    return os.getenv(f"{_ENV_PREFIX}{name}", default)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(f"{_ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{_ENV_PREFIX}{name} must be an integer") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(f"{_ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{_ENV_PREFIX}{name} must be a number") from exc


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(f"{_ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    app_name: str
    app_version: str
    log_level: str
    database_path: Path

    # Warning thresholds and method tuning
    low_remaining_ratio: float
    dynamic_multiplier_min: float
    dynamic_multiplier_max: float
    demand_lookback_days: int

    # Concurrency
    lock_acquire_timeout_seconds: float
    conflict_max_transfer_retries: int

    # Release sweep
    release_sweep_enabled: bool
    release_sweep_interval_seconds: float

    # Seed values for the first GlobalDefaults record
    default_total_inventory: int
    default_allocation_method: str
    default_overbooking_allowed: bool
    default_overbooking_limit: int
    default_release_window_hours: int
    default_auto_release: bool
    default_block_period_days: int
    default_currency: str
    default_timezone: str
    default_check_in_hour: int


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings once per process; tests derive variants with ``replace``."""
    return Settings(
        app_name=_env_str("APP_NAME", "Channel Allotment Engine"),
        app_version=_env_str("APP_VERSION", "1.0.0"),
        log_level=_env_str("LOG_LEVEL", "INFO"),
        database_path=Path(_env_str("DATABASE_PATH", "data/allotments.db")),
        low_remaining_ratio=_env_float("LOW_REMAINING_RATIO", 0.2),
        dynamic_multiplier_min=_env_float("DYNAMIC_MULTIPLIER_MIN", 0.5),
        dynamic_multiplier_max=_env_float("DYNAMIC_MULTIPLIER_MAX", 1.5),
        demand_lookback_days=_env_int("DEMAND_LOOKBACK_DAYS", 14),
        lock_acquire_timeout_seconds=_env_float("LOCK_ACQUIRE_TIMEOUT_SECONDS", 5.0),
        conflict_max_transfer_retries=_env_int("CONFLICT_MAX_TRANSFER_RETRIES", 3),
        release_sweep_enabled=_env_bool("RELEASE_SWEEP_ENABLED", False),
        release_sweep_interval_seconds=_env_float("RELEASE_SWEEP_INTERVAL_SECONDS", 300.0),
        default_total_inventory=_env_int("DEFAULT_TOTAL_INVENTORY", 10),
        default_allocation_method=_env_str("DEFAULT_ALLOCATION_METHOD", "PERCENTAGE"),
        default_overbooking_allowed=_env_bool("DEFAULT_OVERBOOKING_ALLOWED", False),
        default_overbooking_limit=_env_int("DEFAULT_OVERBOOKING_LIMIT", 0),
        default_release_window_hours=_env_int("DEFAULT_RELEASE_WINDOW_HOURS", 24),
        default_auto_release=_env_bool("DEFAULT_AUTO_RELEASE", True),
        default_block_period_days=_env_int("DEFAULT_BLOCK_PERIOD_DAYS", 0),
        default_currency=_env_str("DEFAULT_CURRENCY", "INR"),
        default_timezone=_env_str("DEFAULT_TIMEZONE", "Asia/Kolkata"),
        default_check_in_hour=_env_int("DEFAULT_CHECK_IN_HOUR", 14),
    )
