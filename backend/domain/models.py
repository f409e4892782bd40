"""Domain models for channel inventory allotment."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from backend.domain.errors import AllotmentNotFoundError


class ChannelType(str, Enum):
    DIRECT = "DIRECT"
    BOOKING_COM = "BOOKING_COM"
    EXPEDIA = "EXPEDIA"
    AIRBNB = "AIRBNB"
    AGODA = "AGODA"
    HOTELS_COM = "HOTELS_COM"


class AllocationMethod(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED = "FIXED"
    PRIORITY = "PRIORITY"
    DYNAMIC = "DYNAMIC"


class EventType(str, Enum):
    ALLOCATION_SET = "allocation_set"
    TRANSFER = "transfer"
    BULK_APPLY = "bulk_apply"
    COPY_FORWARD = "copy_forward"
    RELEASED = "released"
    BOOKING_RECORDED = "booking_recorded"
    BOOKING_CANCELLED = "booking_cancelled"
    CHANNEL_DELETED = "channel_deleted"
    WARNING = "warning"


@dataclass(frozen=True)
class ChannelRestrictions:
    min_stay: int = 1
    max_stay: int = 0  # 0 = unlimited
    closed_to_arrival: bool = False
    closed_to_departure: bool = False
    stop_sell: bool = False


@dataclass(frozen=True)
class Channel:
    """Sales channel configuration attached to a room type allotment."""

    name: str
    type: ChannelType
    allocation: int
    priority: int
    commission: float = 0.0
    restrictions: ChannelRestrictions = field(default_factory=ChannelRestrictions)
    overbooking_permitted: bool = False
    rate: float = 0.0
    is_active: bool = True


@dataclass(frozen=True)
class ChannelAllotment:
    """One channel's share of a single day's inventory."""

    channel_name: str
    allocated: int
    booked: int = 0
    held: int = 0
    released_at: Optional[datetime] = None

    @property
    def remaining(self) -> int:
        return self.allocated - self.booked

    @property
    def free(self) -> int:
        """Allocated units not backing a live booking."""
        return max(0, self.allocated - self.booked)

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel_name": self.channel_name,
            "allocated": self.allocated,
            "booked": self.booked,
            "remaining": self.remaining,
            "held": self.held,
            "released_at": self.released_at.isoformat() if self.released_at else None,
        }


@dataclass(frozen=True)
class DailyAllotment:
    """Allocation state for one room type on one calendar date."""

    room_type_id: str
    date: date
    total_inventory: int
    channels: tuple[ChannelAllotment, ...]
    warnings: tuple[str, ...] = ()
    occupancy_rate: float = 0.0
    revenue: float = 0.0
    version: int = 1
    updated_at: Optional[datetime] = None

    def channel(self, channel_name: str) -> ChannelAllotment:
        for entry in self.channels:
            if entry.channel_name == channel_name:
                return entry
        raise AllotmentNotFoundError(
            f"channel {channel_name} is not allocated on {self.date.isoformat()}"
        )

    def has_channel(self, channel_name: str) -> bool:
        return any(entry.channel_name == channel_name for entry in self.channels)

    def with_channel(self, updated: ChannelAllotment) -> DailyAllotment:
        channels = tuple(
            updated if entry.channel_name == updated.channel_name else entry
            for entry in self.channels
        )
        return replace(self, channels=channels)

    def allocation_vector(self) -> dict[str, int]:
        return {entry.channel_name: entry.allocated for entry in self.channels}

    @property
    def total_allocated(self) -> int:
        return sum(entry.allocated for entry in self.channels)

    @property
    def total_booked(self) -> int:
        return sum(entry.booked for entry in self.channels)

    def to_dict(self) -> dict[str, Any]:
        return {
            "room_type_id": self.room_type_id,
            "date": self.date.isoformat(),
            "total_inventory": self.total_inventory,
            "channels": [entry.to_dict() for entry in self.channels],
            "occupancy_rate": self.occupancy_rate,
            "revenue": self.revenue,
            "warnings": list(self.warnings),
            "version": self.version,
        }


@dataclass(frozen=True)
class GlobalDefaults:
    """Tenant-wide configuration used when materializing daily allotments."""

    total_inventory: int
    default_allocation_method: AllocationMethod
    overbooking_allowed: bool
    overbooking_limit: int
    release_window: int
    auto_release: bool
    block_period: int = 0
    currency: str = "INR"
    timezone: str = "UTC"
    check_in_hour: int = 14
    version: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_inventory": self.total_inventory,
            "default_allocation_method": self.default_allocation_method.value,
            "overbooking_allowed": self.overbooking_allowed,
            "overbooking_limit": self.overbooking_limit,
            "release_window": self.release_window,
            "auto_release": self.auto_release,
            "block_period": self.block_period,
            "currency": self.currency,
            "timezone": self.timezone,
            "check_in_hour": self.check_in_hour,
            "version": self.version,
        }


@dataclass(frozen=True)
class RoomTypeAllotment:
    """Aggregate root: channel configuration plus materialized daily state."""

    room_type_id: str
    name: str
    channels: tuple[Channel, ...]
    allocation_method: AllocationMethod
    daily_allotments: dict[date, DailyAllotment] = field(default_factory=dict)
    total_inventory: Optional[int] = None
    overbooking_allowed: Optional[bool] = None
    overbooking_limit: Optional[int] = None
    last_updated: Optional[datetime] = None

    def channel(self, channel_name: str) -> Channel:
        for channel in self.channels:
            if channel.name == channel_name:
                return channel
        raise AllotmentNotFoundError(
            f"channel {channel_name} is not configured for room type {self.room_type_id}"
        )

    def effective_defaults(self, defaults: GlobalDefaults) -> GlobalDefaults:
        """Overlay per-allotment overrides on top of the global record."""
        return replace(
            defaults,
            total_inventory=(
                self.total_inventory
                if self.total_inventory is not None
                else defaults.total_inventory
            ),
            overbooking_allowed=(
                self.overbooking_allowed
                if self.overbooking_allowed is not None
                else defaults.overbooking_allowed
            ),
            overbooking_limit=(
                self.overbooking_limit
                if self.overbooking_limit is not None
                else defaults.overbooking_limit
            ),
        )


@dataclass(frozen=True)
class AllotmentEvent:
    """Outbound record consumed by the notification subsystem."""

    event_type: EventType
    room_type_id: str
    date: date
    channel_name: Optional[str] = None
    amount: int = 0
    detail: str = ""
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "room_type_id": self.room_type_id,
            "date": self.date.isoformat(),
            "channel_name": self.channel_name,
            "amount": self.amount,
            "detail": self.detail,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass(frozen=True)
class ResolvedAllocation:
    """Advisory per-channel targets produced by an allocation method."""

    method: AllocationMethod
    targets: dict[str, int]
    warnings: list[str]

    @property
    def total(self) -> int:
        return sum(self.targets.values())


@dataclass(frozen=True)
class AdmissionDecision:
    ok: bool
    reason: str
    ceiling: int
    proposed_total: int

    @property
    def shortfall(self) -> int:
        return max(0, self.proposed_total - self.ceiling)
