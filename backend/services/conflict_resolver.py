"""Optimistic concurrency layer over the allocation engine.

Every read hands out the record's ``version``; every mutator takes the version
the caller read and fails with ``StaleVersionError`` once the stored record has
moved on. Writes for one (room type, date) key are serialized by a per-key
lock, and the repository write is itself a compare-and-swap, so a second
process sharing the database is rejected the same way.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime, timezone
from typing import Callable, Mapping, Optional

from backend.domain.errors import (
    AllotmentError,
    AllotmentNotFoundError,
    StaleVersionError,
)
from backend.domain.models import (
    AllocationMethod,
    AllotmentEvent,
    DailyAllotment,
    EventType,
    GlobalDefaults,
    RoomTypeAllotment,
)
from backend.repository.data_repository import DataRepository
from backend.services.allocation_engine import AllocationEngine
from backend.services.concurrency import KeyedLockRegistry, OperationContext
from backend.services.demand_signal import DemandSignalProvider
from backend.services.settings_service import SettingsService
from backend.utils.config import Settings, get_settings
from backend.utils.logger import format_fields, get_logger


logger = get_logger(__name__)

Mutation = Callable[[DailyAllotment, RoomTypeAllotment, GlobalDefaults], DailyAllotment]
EventBuilder = Callable[[DailyAllotment, DailyAllotment], list[AllotmentEvent]]


def _warning_events(before: DailyAllotment, after: DailyAllotment, now: datetime) -> list[AllotmentEvent]:
    previous = set(before.warnings)
    return [
        AllotmentEvent(
            event_type=EventType.WARNING,
            room_type_id=after.room_type_id,
            date=after.date,
            detail=warning,
            created_at=now,
        )
        for warning in after.warnings
        if warning not in previous
    ]


class ConflictResolver:
    """Version-checked, per-date serialized entry point for allocation changes."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        engine: Optional[AllocationEngine] = None,
        locks: Optional[KeyedLockRegistry] = None,
        settings_service: Optional[SettingsService] = None,
        demand_signal: Optional[DemandSignalProvider] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._engine = engine or AllocationEngine(self._settings)
        self._locks = locks or KeyedLockRegistry(self._settings.lock_acquire_timeout_seconds)
        self._settings_service = settings_service or SettingsService(
            repository=self._repository,
            settings=self._settings,
        )
        self._demand_signal = demand_signal
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def engine(self) -> AllocationEngine:
        return self._engine

    @property
    def locks(self) -> KeyedLockRegistry:
        return self._locks

    def now(self) -> datetime:
        return self._clock()

    def load_allotment(self, room_type_id: str) -> RoomTypeAllotment:
        allotment = self._repository.get_room_type_allotment(room_type_id)
        if allotment is None:
            raise AllotmentNotFoundError(f"room type {room_type_id} has no allotment")
        return allotment

    def demand_multipliers(
        self,
        allotment: RoomTypeAllotment,
        day: date,
        method: Optional[AllocationMethod] = None,
    ) -> Optional[dict[str, float]]:
        if (method or allotment.allocation_method) is not AllocationMethod.DYNAMIC:
            return None
        if self._demand_signal is None:
            return None
        return self._demand_signal.multipliers(allotment.room_type_id, day, allotment.channels)

    def _ensure_daily(
        self,
        allotment: RoomTypeAllotment,
        day: date,
        defaults: GlobalDefaults,
    ) -> DailyAllotment:
        existing = self._repository.get_daily_allotment(allotment.room_type_id, day)
        if existing is not None:
            return existing

        daily, resolved = self._engine.materialize(
            allotment,
            day,
            defaults,
            demand_multipliers=self.demand_multipliers(allotment, day),
        )
        daily = replace(daily, version=1, updated_at=self.now())
        if not self._repository.insert_daily_allotment(daily):
            # Another writer materialized the same date first.
            stored = self._repository.get_daily_allotment(allotment.room_type_id, day)
            if stored is None:
                raise AllotmentError(f"failed to materialize {allotment.room_type_id} {day}")
            return stored

        logger.info(
            "Daily allotment materialized | %s",
            format_fields(
                room_type_id=allotment.room_type_id,
                date=day.isoformat(),
                method=resolved.method.value,
                targets=resolved.targets,
            ),
        )
        self._repository.save_events(
            AllotmentEvent(
                event_type=EventType.WARNING,
                room_type_id=allotment.room_type_id,
                date=day,
                detail=warning,
                created_at=self.now(),
            )
            for warning in resolved.warnings
        )
        return daily

    def read(self, room_type_id: str, day: date) -> DailyAllotment:
        """Return the record for ``day`` with its version, creating it if absent."""
        allotment = self.load_allotment(room_type_id)
        defaults = self._settings_service.get_settings()
        return self._ensure_daily(allotment, day, defaults)

    def commit(
        self,
        room_type_id: str,
        day: date,
        mutate: Mutation,
        describe: EventBuilder,
        expected_version: Optional[int] = None,
        context: Optional[OperationContext] = None,
    ) -> DailyAllotment:
        """Apply ``mutate`` under the key lock; ``None`` skips the version check."""
        with self._locks.hold((room_type_id, day), context):
            allotment = self.load_allotment(room_type_id)
            defaults = self._settings_service.get_settings()
            current = self._ensure_daily(allotment, day, defaults)
            if expected_version is not None and expected_version != current.version:
                raise StaleVersionError(
                    expected_version=expected_version,
                    current_version=current.version,
                )

            proposed = mutate(current, allotment, defaults)
            committed = replace(
                proposed,
                version=current.version + 1,
                updated_at=self.now(),
            )
            if not self._repository.save_daily_allotment(committed, current.version):
                latest = self._repository.get_daily_allotment(room_type_id, day)
                raise StaleVersionError(
                    expected_version=current.version,
                    current_version=latest.version if latest else current.version,
                )

            events = describe(current, committed) + _warning_events(current, committed, self.now())
            self._repository.save_events(events)
            logger.info(
                "Allotment committed | %s",
                format_fields(
                    room_type_id=room_type_id,
                    date=day.isoformat(),
                    version=committed.version,
                    allocated=committed.allocation_vector(),
                    warnings=len(committed.warnings),
                ),
            )
            return committed

    def _event(
        self,
        event_type: EventType,
        daily: DailyAllotment,
        channel_name: Optional[str],
        amount: int,
        detail: str,
    ) -> AllotmentEvent:
        return AllotmentEvent(
            event_type=event_type,
            room_type_id=daily.room_type_id,
            date=daily.date,
            channel_name=channel_name,
            amount=amount,
            detail=detail,
            created_at=self.now(),
        )

    def set_allocation(
        self,
        room_type_id: str,
        day: date,
        channel_name: str,
        amount: int,
        expected_version: int,
        context: Optional[OperationContext] = None,
    ) -> DailyAllotment:
        def mutate(current, allotment, defaults):
            return self._engine.set_allocation(current, allotment, defaults, channel_name, amount)

        def describe(before, after):
            previous = before.channel(channel_name).allocated
            return [
                self._event(
                    EventType.ALLOCATION_SET,
                    after,
                    channel_name,
                    amount,
                    f"allocated {previous} -> {amount}",
                )
            ]

        return self.commit(room_type_id, day, mutate, describe, expected_version, context)

    def transfer(
        self,
        room_type_id: str,
        day: date,
        from_channel: str,
        to_channel: str,
        amount: int,
        expected_version: int,
        context: Optional[OperationContext] = None,
        retry_on_stale: bool = True,
    ) -> DailyAllotment:
        """Move units between channels; a stale read may be retried as a delta."""

        def mutate(current, allotment, defaults):
            return self._engine.transfer(
                current, allotment, defaults, from_channel, to_channel, amount
            )

        def describe(before, after):
            return [
                self._event(
                    EventType.TRANSFER,
                    after,
                    from_channel,
                    amount,
                    f"{from_channel} -> {to_channel}",
                )
            ]

        version = expected_version
        attempts = 0
        while True:
            try:
                return self.commit(room_type_id, day, mutate, describe, version, context)
            except StaleVersionError as exc:
                if not retry_on_stale or attempts >= self._settings.conflict_max_transfer_retries:
                    raise
                attempts += 1
                logger.info(
                    "Transfer retried against fresh state | %s",
                    format_fields(
                        room_type_id=room_type_id,
                        date=day.isoformat(),
                        stale_version=exc.expected_version,
                        current_version=exc.current_version,
                        attempt=attempts,
                    ),
                )
                version = exc.current_version

    def bulk_apply(
        self,
        room_type_id: str,
        day: date,
        vector: Mapping[str, int],
        expected_version: Optional[int],
        context: Optional[OperationContext] = None,
        event_type: EventType = EventType.BULK_APPLY,
        detail: str = "",
    ) -> DailyAllotment:
        snapshot = dict(vector)

        def mutate(current, allotment, defaults):
            return self._engine.bulk_apply(current, allotment, defaults, snapshot)

        def describe(before, after):
            return [
                self._event(
                    event_type,
                    after,
                    None,
                    after.total_allocated,
                    detail or f"vector {after.allocation_vector()}",
                )
            ]

        return self.commit(room_type_id, day, mutate, describe, expected_version, context)

    def copy_forward(
        self,
        room_type_id: str,
        from_date: date,
        to_date: date,
        expected_version: int,
        context: Optional[OperationContext] = None,
    ) -> DailyAllotment:
        """Copy the source date's allocation vector onto ``to_date``.

        ``expected_version`` is the destination's version; the source is read as
        a snapshot and is not locked.
        """
        source = self.read(room_type_id, from_date)
        return self.bulk_apply(
            room_type_id,
            to_date,
            source.allocation_vector(),
            expected_version,
            context,
            event_type=EventType.COPY_FORWARD,
            detail=f"copied from {from_date.isoformat()}",
        )

    def cross_date_transfer(
        self,
        room_type_id: str,
        from_date: date,
        from_channel: str,
        to_date: date,
        to_channel: str,
        amount: int,
        from_version: int,
        to_version: int,
        context: Optional[OperationContext] = None,
    ) -> tuple[DailyAllotment, DailyAllotment]:
        """Drag units from one date/channel onto another date/channel.

        The two dates are committed one after the other; if the destination
        rejects the units they are put back on the source.
        """
        if from_date == to_date:
            updated = self.transfer(
                room_type_id,
                from_date,
                from_channel,
                to_channel,
                amount,
                from_version,
                context,
                retry_on_stale=False,
            )
            return updated, updated

        held_cleared = {"units": 0}

        def withdraw(current, allotment, defaults):
            return self._engine.withdraw(current, allotment, defaults, from_channel, amount)

        def deposit(current, allotment, defaults):
            return self._engine.deposit(current, allotment, defaults, to_channel, amount)

        def restore(current, allotment, defaults):
            return self._engine.deposit(
                current, allotment, defaults, from_channel, amount, held=held_cleared["units"]
            )

        def describe_out(before, after):
            held_cleared["units"] = (
                before.channel(from_channel).held - after.channel(from_channel).held
            )
            return [
                self._event(
                    EventType.TRANSFER,
                    after,
                    from_channel,
                    -amount,
                    f"moved to {to_channel} on {to_date.isoformat()}",
                )
            ]

        def describe_in(before, after):
            return [
                self._event(
                    EventType.TRANSFER,
                    after,
                    to_channel,
                    amount,
                    f"moved from {from_channel} on {from_date.isoformat()}",
                )
            ]

        source = self.commit(room_type_id, from_date, withdraw, describe_out, from_version, context)
        try:
            destination = self.commit(
                room_type_id, to_date, deposit, describe_in, to_version, context
            )
        except AllotmentError:
            fields = format_fields(
                room_type_id=room_type_id,
                from_date=from_date.isoformat(),
                to_date=to_date.isoformat(),
                amount=amount,
            )
            logger.warning("Cross-date transfer rolled back | %s", fields)
            try:
                self.commit(
                    room_type_id,
                    from_date,
                    restore,
                    lambda before, after: [],
                    None,
                )
            except AllotmentError:
                logger.exception("Cross-date transfer compensation failed | %s", fields)
            raise
        return source, destination

    def set_hold(
        self,
        room_type_id: str,
        day: date,
        channel_name: str,
        held: int,
        expected_version: Optional[int] = None,
        context: Optional[OperationContext] = None,
    ) -> DailyAllotment:
        def mutate(current, allotment, defaults):
            return self._engine.set_hold(current, allotment, defaults, channel_name, held)

        return self.commit(
            room_type_id, day, mutate, lambda before, after: [], expected_version, context
        )

    def record_booking(
        self,
        room_type_id: str,
        day: date,
        channel_name: str,
        rooms: int,
        expected_version: Optional[int] = None,
        context: Optional[OperationContext] = None,
    ) -> DailyAllotment:
        def mutate(current, allotment, defaults):
            return self._engine.record_booking(current, allotment, defaults, channel_name, rooms)

        def describe(before, after):
            return [
                self._event(EventType.BOOKING_RECORDED, after, channel_name, rooms, "")
            ]

        return self.commit(room_type_id, day, mutate, describe, expected_version, context)

    def cancel_booking(
        self,
        room_type_id: str,
        day: date,
        channel_name: str,
        rooms: int,
        expected_version: Optional[int] = None,
        context: Optional[OperationContext] = None,
    ) -> DailyAllotment:
        def mutate(current, allotment, defaults):
            return self._engine.cancel_booking(current, allotment, defaults, channel_name, rooms)

        def describe(before, after):
            return [
                self._event(EventType.BOOKING_CANCELLED, after, channel_name, rooms, "")
            ]

        return self.commit(room_type_id, day, mutate, describe, expected_version, context)
