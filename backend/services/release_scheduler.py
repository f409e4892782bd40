"""Automatic release of held inventory ahead of check-in."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from threading import Event, Thread
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from backend.domain.errors import AllotmentError
from backend.domain.models import AllotmentEvent, DailyAllotment, EventType, GlobalDefaults
from backend.repository.data_repository import DataRepository
from backend.services.conflict_resolver import ConflictResolver
from backend.services.settings_service import SettingsService
from backend.utils.config import Settings, get_settings
from backend.utils.logger import format_fields, get_logger


logger = get_logger(__name__)


def check_in_at(day: date, defaults: GlobalDefaults) -> datetime:
    """Check-in moment for ``day`` in the tenant timezone."""
    return datetime.combine(day, time(hour=defaults.check_in_hour), tzinfo=ZoneInfo(defaults.timezone))


def _needs_release(daily: DailyAllotment) -> bool:
    return any(entry.held > 0 and entry.released_at is None for entry in daily.channels)


class ReleaseScheduler:
    """Releases held channel units once check-in falls inside the release window.

    A released channel carries a ``released_at`` marker, so running the sweep
    again over the same dates changes nothing.
    """

    def __init__(
        self,
        repository: DataRepository,
        resolver: ConflictResolver,
        settings_service: SettingsService,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository
        self._resolver = resolver
        self._settings_service = settings_service
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def candidate_keys(self, now: datetime, defaults: GlobalDefaults) -> list[tuple[str, date]]:
        window = timedelta(hours=defaults.release_window)
        local_today = now.astimezone(ZoneInfo(defaults.timezone)).date()
        keys = self._repository.list_daily_keys_between(
            local_today - timedelta(days=1),
            (now + window).astimezone(ZoneInfo(defaults.timezone)).date(),
        )
        return [
            (room_type_id, day)
            for room_type_id, day in keys
            if now - timedelta(days=1) <= check_in_at(day, defaults) <= now + window
        ]

    def sweep(self, now: Optional[datetime] = None) -> list[AllotmentEvent]:
        now = now or self._clock()
        defaults = self._settings_service.get_settings()
        if not defaults.auto_release:
            logger.debug("Release sweep skipped | %s", format_fields(auto_release=False))
            return []

        events: list[AllotmentEvent] = []
        for room_type_id, day in self.candidate_keys(now, defaults):
            snapshot = self._repository.get_daily_allotment(room_type_id, day)
            if snapshot is None or not _needs_release(snapshot):
                continue
            try:
                events.extend(self._release(room_type_id, day, now))
            except AllotmentError as exc:
                logger.warning(
                    "Release failed | %s",
                    format_fields(
                        room_type_id=room_type_id,
                        date=day.isoformat(),
                        error=exc,
                    ),
                )

        logger.info(
            "Release sweep completed | %s",
            format_fields(now=now.isoformat(), released_channels=len(events)),
        )
        return events

    def _release(self, room_type_id: str, day: date, now: datetime) -> list[AllotmentEvent]:
        released: list[AllotmentEvent] = []

        def mutate(current, allotment, defaults):
            return self._resolver.engine.release_held(current, allotment, defaults, now)

        def describe(before, after):
            for entry in before.channels:
                if entry.held <= 0 or entry.released_at is not None:
                    continue
                moved = entry.allocated - after.channel(entry.channel_name).allocated
                # a DIRECT hold stays on DIRECT, so its released units are the freed hold
                units = moved if moved > 0 else min(entry.held, entry.free)
                released.append(
                    AllotmentEvent(
                        event_type=EventType.RELEASED,
                        room_type_id=room_type_id,
                        date=day,
                        channel_name=entry.channel_name,
                        amount=units,
                        detail=f"released {units} held units",
                        created_at=now,
                    )
                )
            return list(released)

        self._resolver.commit(room_type_id, day, mutate, describe)
        return released


class ReleaseSweepRunner:
    """Runs ``ReleaseScheduler.sweep`` on a daemon thread until stopped."""

    def __init__(self, scheduler: ReleaseScheduler, interval_seconds: float) -> None:
        self._scheduler = scheduler
        self._interval_seconds = interval_seconds
        self._stop_event = Event()
        self._thread: Optional[Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = Thread(target=self._run, name="release-sweep", daemon=True)
        self._thread.start()
        logger.info(
            "Release sweep runner started | %s",
            format_fields(interval_seconds=self._interval_seconds),
        )

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Release sweep runner stopped")

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self._scheduler.sweep()
            except (AllotmentError, RuntimeError):
                logger.exception("Release sweep crashed")
            self._stop_event.wait(self._interval_seconds)
