"""Inbound facade for room type allotments.

Reads materialize missing dates lazily; every write to a daily record goes
through the conflict resolver so it is version-checked and serialized per
(room type, date) key.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from threading import RLock
from typing import Callable, Optional, Sequence

from backend.domain.constraints import validate_channels
from backend.domain.errors import (
    AllotmentError,
    AllotmentNotFoundError,
    AllotmentValidationError,
)
from backend.domain.models import (
    AllocationMethod,
    AllotmentEvent,
    Channel,
    ChannelType,
    DailyAllotment,
    EventType,
    GlobalDefaults,
    RoomTypeAllotment,
)
from backend.repository.data_repository import DataRepository
from backend.services.allocation_methods import priority_order
from backend.services.conflict_resolver import ConflictResolver
from backend.services.settings_service import SettingsService
from backend.utils.config import Settings, get_settings
from backend.utils.logger import format_fields, get_logger


logger = get_logger(__name__)

DEMO_ROOM_TYPE_ID = "DLX"


def iter_dates(start_date: date, end_date: date) -> list[date]:
    if end_date < start_date:
        raise AllotmentValidationError("end_date must be on or after start_date")
    return [start_date + timedelta(days=offset) for offset in range((end_date - start_date).days + 1)]


def pick_recipient(channels: Sequence[Channel], excluded: str) -> Optional[str]:
    """DIRECT first, otherwise the highest-priority remaining active channel."""
    candidates = [c for c in channels if c.name != excluded and c.is_active]
    for channel in candidates:
        if channel.type is ChannelType.DIRECT:
            return channel.name
    ordered = priority_order(candidates)
    return ordered[0].name if ordered else None


class AllotmentService:
    """Room type configuration, range reads, method application and bookings."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        resolver: Optional[ConflictResolver] = None,
        settings_service: Optional[SettingsService] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._settings_service = settings_service or SettingsService(
            repository=self._repository,
            settings=self._settings,
        )
        self._resolver = resolver or ConflictResolver(
            repository=self._repository,
            settings_service=self._settings_service,
            settings=self._settings,
        )
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._config_lock = RLock()

    @property
    def resolver(self) -> ConflictResolver:
        return self._resolver

    # ---- Settings ----------------------------------------------------------

    def get_settings(self) -> GlobalDefaults:
        return self._settings_service.get_settings()

    def save_settings(
        self,
        defaults: GlobalDefaults,
        expected_version: Optional[int] = None,
    ) -> GlobalDefaults:
        return self._settings_service.save_settings(defaults, expected_version)

    # ---- Reads -------------------------------------------------------------

    def get_allotment(
        self,
        room_type_id: str,
        start_date: date,
        end_date: date,
    ) -> RoomTypeAllotment:
        """Return the aggregate with one daily record per date in the range."""
        days = iter_dates(start_date, end_date)
        allotment = self._resolver.load_allotment(room_type_id)
        daily = {day: self._resolver.read(room_type_id, day) for day in days}
        return replace(allotment, daily_allotments=daily)

    def get_daily_allotment(self, room_type_id: str, day: date) -> DailyAllotment:
        """Read-only lookup; never materializes."""
        daily = self._repository.get_daily_allotment(room_type_id, day)
        if daily is None:
            raise AllotmentNotFoundError(
                f"no allotment for room type {room_type_id} on {day.isoformat()}"
            )
        return daily

    def list_events(
        self,
        room_type_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[AllotmentEvent]:
        if limit <= 0:
            raise AllotmentValidationError("limit must be > 0")
        return self._repository.list_events(room_type_id, event_type, limit)

    # ---- Channel configuration --------------------------------------------

    def create_room_type_allotment(
        self,
        room_type_id: str,
        name: str,
        channels: Sequence[Channel],
        allocation_method: Optional[AllocationMethod] = None,
        total_inventory: Optional[int] = None,
        overbooking_allowed: Optional[bool] = None,
        overbooking_limit: Optional[int] = None,
    ) -> RoomTypeAllotment:
        if not room_type_id.strip():
            raise AllotmentValidationError("room_type_id must not be empty")
        if total_inventory is not None and total_inventory < 0:
            raise AllotmentValidationError("total_inventory must be >= 0")
        if overbooking_limit is not None and not 0 <= overbooking_limit <= 50:
            raise AllotmentValidationError("overbooking_limit must be between 0 and 50")

        method = allocation_method or self.get_settings().default_allocation_method
        validate_channels(channels, method)
        with self._config_lock:
            if self._repository.get_room_type_allotment(room_type_id) is not None:
                raise AllotmentValidationError(f"room type {room_type_id} already exists")
            allotment = RoomTypeAllotment(
                room_type_id=room_type_id,
                name=name,
                channels=tuple(channels),
                allocation_method=method,
                total_inventory=total_inventory,
                overbooking_allowed=overbooking_allowed,
                overbooking_limit=overbooking_limit,
                last_updated=self._clock(),
            )
            self._repository.upsert_room_type_allotment(allotment)

        logger.info(
            "Room type allotment created | %s",
            format_fields(
                room_type_id=room_type_id,
                method=method.value,
                channels=[channel.name for channel in channels],
            ),
        )
        return allotment

    def update_channels(
        self,
        room_type_id: str,
        channels: Sequence[Channel],
        allocation_method: Optional[AllocationMethod] = None,
    ) -> RoomTypeAllotment:
        """Replace the channel configuration; removals must use ``delete_channel``.

        Baselines only affect dates materialized afterwards. New channels get a
        zero entry on every date that already has a record.
        """
        with self._config_lock:
            current = self._resolver.load_allotment(room_type_id)
            method = allocation_method or current.allocation_method
            validate_channels(channels, method)

            names = {channel.name for channel in channels}
            missing = [c.name for c in current.channels if c.name not in names]
            if missing:
                raise AllotmentValidationError(
                    f"channels {', '.join(missing)} must be deleted with delete_channel"
                )
            existing = {c.name for c in current.channels}
            added = [c.name for c in channels if c.name not in existing]

            updated = replace(
                current,
                channels=tuple(channels),
                allocation_method=method,
                last_updated=self._clock(),
            )
            self._repository.upsert_room_type_allotment(updated)

            if added:
                for daily in self._materialized(room_type_id):
                    self._resolver.commit(
                        room_type_id,
                        daily.date,
                        lambda cur, allotment, defaults: self._resolver.engine.attach_channels(
                            cur, allotment, defaults, added
                        ),
                        lambda before, after: [],
                    )

        logger.info(
            "Channels updated | %s",
            format_fields(room_type_id=room_type_id, method=method.value, added=added),
        )
        return updated

    def delete_channel(self, room_type_id: str, channel_name: str) -> RoomTypeAllotment:
        """Zero the channel on every materialized date, redistribute, then drop it."""
        with self._config_lock:
            current = self._resolver.load_allotment(room_type_id)
            current.channel(channel_name)
            records = self._materialized(room_type_id)
            booked_dates = [
                daily.date.isoformat()
                for daily in records
                if daily.has_channel(channel_name) and daily.channel(channel_name).booked > 0
            ]
            if booked_dates:
                raise AllotmentValidationError(
                    f"channel {channel_name} has bookings on {', '.join(booked_dates)}"
                )

            remaining = tuple(c for c in current.channels if c.name != channel_name)
            recipient = pick_recipient(current.channels, channel_name)
            updated = replace(current, channels=remaining, last_updated=self._clock())
            self._repository.upsert_room_type_allotment(updated)

            for daily in records:
                moved = daily.channel(channel_name).allocated if daily.has_channel(channel_name) else 0

                def describe(before, after, moved=moved):
                    return [
                        AllotmentEvent(
                            event_type=EventType.CHANNEL_DELETED,
                            room_type_id=room_type_id,
                            date=after.date,
                            channel_name=channel_name,
                            amount=moved,
                            detail=f"redistributed to {recipient or 'unallocated pool'}",
                            created_at=self._clock(),
                        )
                    ]

                self._resolver.commit(
                    room_type_id,
                    daily.date,
                    lambda cur, allotment, defaults: self._resolver.engine.detach_channel(
                        cur, allotment, defaults, channel_name, recipient
                    ),
                    describe,
                )

        logger.info(
            "Channel deleted | %s",
            format_fields(
                room_type_id=room_type_id,
                channel=channel_name,
                recipient=recipient,
                dates=len(records),
            ),
        )
        return updated

    def _materialized(self, room_type_id: str) -> list[DailyAllotment]:
        return self._repository.list_daily_allotments(room_type_id, date.min, date.max)

    # ---- Allocation methods -----------------------------------------------

    def apply_allocation_method(
        self,
        room_type_id: str,
        start_date: date,
        end_date: date,
        method: Optional[AllocationMethod] = None,
    ) -> list[DailyAllotment]:
        """Recompute and apply method targets to every date in the range.

        Manual edits made since the last application are overwritten. Targets
        are not capped: a vector over the capacity ceiling is rejected by the
        overbooking policy with ``CapacityExceededError``. A method passed
        explicitly becomes the room type's method for later dates once every
        date in the range has been applied.
        """
        days = iter_dates(start_date, end_date)
        allotment = self._resolver.load_allotment(room_type_id)
        switch_method = method is not None and method is not allotment.allocation_method
        if switch_method:
            validate_channels(allotment.channels, method)
            allotment = replace(allotment, allocation_method=method)

        applied: list[DailyAllotment] = []
        for day in days:
            current = self._resolver.read(room_type_id, day)
            resolved = self._resolver.engine.resolve_vector(
                allotment,
                current.total_inventory,
                self.get_settings(),
                demand_multipliers=self._resolver.demand_multipliers(allotment, day),
                cap_to_ceiling=False,
            )
            applied.append(
                self._resolver.bulk_apply(
                    room_type_id,
                    day,
                    resolved.targets,
                    expected_version=None,
                    detail=f"applied {resolved.method.value}",
                )
            )
            self._repository.save_events(
                AllotmentEvent(
                    event_type=EventType.WARNING,
                    room_type_id=room_type_id,
                    date=day,
                    detail=warning,
                    created_at=self._clock(),
                )
                for warning in resolved.warnings
            )

        if switch_method:
            with self._config_lock:
                allotment = replace(allotment, last_updated=self._clock())
                self._repository.upsert_room_type_allotment(allotment)

        logger.info(
            "Allocation method applied | %s",
            format_fields(
                room_type_id=room_type_id,
                method=allotment.allocation_method.value,
                start=start_date.isoformat(),
                end=end_date.isoformat(),
            ),
        )
        return applied

    # ---- Bookings ----------------------------------------------------------

    def _check_restrictions(self, channel: Channel, check_in: date, check_out: date) -> None:
        nights = (check_out - check_in).days
        restrictions = channel.restrictions
        errors: list[str] = []
        if not channel.is_active:
            errors.append(f"channel {channel.name} is inactive")
        if restrictions.stop_sell:
            errors.append(f"channel {channel.name} is on stop-sell")
        if restrictions.closed_to_arrival:
            errors.append(f"channel {channel.name} is closed to arrival")
        if restrictions.closed_to_departure:
            errors.append(f"channel {channel.name} is closed to departure")
        if nights < restrictions.min_stay:
            errors.append(f"stay of {nights} nights is below min_stay {restrictions.min_stay}")
        if restrictions.max_stay and nights > restrictions.max_stay:
            errors.append(f"stay of {nights} nights exceeds max_stay {restrictions.max_stay}")
        if errors:
            raise AllotmentValidationError("; ".join(errors))

    def record_booking(
        self,
        room_type_id: str,
        channel_name: str,
        check_in: date,
        check_out: date,
        rooms: int,
    ) -> list[DailyAllotment]:
        """Book ``rooms`` on every night of the stay, or on none of them."""
        if check_out <= check_in:
            raise AllotmentValidationError("check_out must be after check_in")
        allotment = self._resolver.load_allotment(room_type_id)
        self._check_restrictions(allotment.channel(channel_name), check_in, check_out)

        nights = iter_dates(check_in, check_out - timedelta(days=1))
        booked: list[DailyAllotment] = []
        try:
            for night in nights:
                booked.append(
                    self._resolver.record_booking(room_type_id, night, channel_name, rooms)
                )
        except AllotmentError:
            for daily in booked:
                self._resolver.cancel_booking(room_type_id, daily.date, channel_name, rooms)
            logger.warning(
                "Booking rolled back | %s",
                format_fields(
                    room_type_id=room_type_id,
                    channel=channel_name,
                    check_in=check_in.isoformat(),
                    nights_rolled_back=len(booked),
                ),
            )
            raise

        booked_at = self._clock()
        for night in nights:
            self._repository.record_booking_history(
                room_type_id, channel_name, night, rooms, booked_at=booked_at
            )
        return booked

    def cancel_booking(
        self,
        room_type_id: str,
        channel_name: str,
        check_in: date,
        check_out: date,
        rooms: int,
    ) -> list[DailyAllotment]:
        if check_out <= check_in:
            raise AllotmentValidationError("check_out must be after check_in")
        self._resolver.load_allotment(room_type_id).channel(channel_name)

        nights = iter_dates(check_in, check_out - timedelta(days=1))
        cancelled: list[DailyAllotment] = []
        try:
            for night in nights:
                cancelled.append(
                    self._resolver.cancel_booking(room_type_id, night, channel_name, rooms)
                )
        except AllotmentError:
            for daily in cancelled:
                self._resolver.record_booking(room_type_id, daily.date, channel_name, rooms)
            raise

        # negative rows keep cancelled stays out of booking velocity
        cancelled_at = self._clock()
        for night in nights:
            self._repository.record_booking_history(
                room_type_id, channel_name, night, -rooms, booked_at=cancelled_at
            )
        return cancelled

    # ---- Demo data ---------------------------------------------------------

    def seed_demo_allotment_if_empty(self) -> Optional[RoomTypeAllotment]:
        if self._repository.list_room_type_ids():
            return None
        allotment = self.create_room_type_allotment(
            room_type_id=DEMO_ROOM_TYPE_ID,
            name="Deluxe Room",
            channels=[
                Channel(name="DIRECT", type=ChannelType.DIRECT, allocation=60, priority=1, rate=5200.0),
                Channel(
                    name="BOOKING_COM",
                    type=ChannelType.BOOKING_COM,
                    allocation=40,
                    priority=2,
                    commission=15.0,
                    rate=5600.0,
                ),
            ],
            allocation_method=AllocationMethod.PERCENTAGE,
        )
        logger.info("Demo allotment seeded | %s", format_fields(room_type_id=DEMO_ROOM_TYPE_ID))
        return allotment
