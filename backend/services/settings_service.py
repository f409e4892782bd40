"""Tenant-wide allotment defaults: read, validate and save."""

from __future__ import annotations

from dataclasses import replace
from threading import RLock
from typing import Optional

from backend.domain.constraints import validate_global_defaults
from backend.domain.errors import AllotmentValidationError, StaleVersionError
from backend.domain.models import AllocationMethod, GlobalDefaults
from backend.repository.data_repository import DataRepository
from backend.utils.config import Settings, get_settings
from backend.utils.logger import format_fields, get_logger


logger = get_logger(__name__)


def defaults_from_settings(settings: Settings) -> GlobalDefaults:
    """Seed record used until an operator saves the first settings."""
    try:
        method = AllocationMethod(settings.default_allocation_method.upper())
    except ValueError as exc:
        raise AllotmentValidationError(
            f"unknown default allocation method {settings.default_allocation_method!r}"
        ) from exc
    return GlobalDefaults(
        total_inventory=settings.default_total_inventory,
        default_allocation_method=method,
        overbooking_allowed=settings.default_overbooking_allowed,
        overbooking_limit=settings.default_overbooking_limit,
        release_window=settings.default_release_window_hours,
        auto_release=settings.default_auto_release,
        block_period=settings.default_block_period_days,
        currency=settings.default_currency,
        timezone=settings.default_timezone,
        check_in_hour=settings.default_check_in_hour,
        version=1,
    )


class SettingsService:
    """Versioned access to the single GlobalDefaults record."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._lock = RLock()

    def seed_if_missing(self) -> GlobalDefaults:
        with self._lock:
            existing = self._repository.get_global_defaults()
            if existing is not None:
                return existing
            seeded = defaults_from_settings(self._settings)
            validate_global_defaults(seeded)
            self._repository.save_global_defaults(seeded, expected_version=None)
            logger.info("Global defaults seeded | %s", format_fields(**seeded.to_dict()))
            return self._repository.get_global_defaults() or seeded

    def get_settings(self) -> GlobalDefaults:
        """Return the stored record, falling back to the environment seed."""
        stored = self._repository.get_global_defaults()
        if stored is not None:
            return stored
        return defaults_from_settings(self._settings)

    def save_settings(
        self,
        defaults: GlobalDefaults,
        expected_version: Optional[int] = None,
    ) -> GlobalDefaults:
        """Validate and persist ``defaults``; the stored version is bumped by one.

        ``expected_version`` defaults to ``defaults.version`` so a record read
        earlier cannot silently overwrite a newer one.
        """
        validate_global_defaults(defaults)
        with self._lock:
            current = self._repository.get_global_defaults()
            if current is None:
                saved = replace(defaults, version=1)
                self._repository.save_global_defaults(saved, expected_version=None)
                logger.info("Global defaults created | %s", format_fields(version=1))
                return saved

            expected = defaults.version if expected_version is None else expected_version
            if expected != current.version:
                raise StaleVersionError(
                    expected_version=expected,
                    current_version=current.version,
                )
            saved = replace(defaults, version=current.version + 1)
            if not self._repository.save_global_defaults(saved, expected_version=current.version):
                latest = self._repository.get_global_defaults()
                raise StaleVersionError(
                    expected_version=expected,
                    current_version=latest.version if latest else 0,
                )
            logger.info(
                "Global defaults saved | %s",
                format_fields(
                    version=saved.version,
                    total_inventory=saved.total_inventory,
                    overbooking_allowed=saved.overbooking_allowed,
                    overbooking_limit=saved.overbooking_limit,
                    release_window=saved.release_window,
                ),
            )
            return saved
