"""Domain-level validation rules for allotment configuration and state."""

from __future__ import annotations

from typing import Iterable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from backend.domain.errors import AllotmentValidationError
from backend.domain.models import (
    AllocationMethod,
    Channel,
    DailyAllotment,
    GlobalDefaults,
)


TOTAL_INVENTORY_RANGE = (1, 1000)
OVERBOOKING_LIMIT_RANGE = (0, 50)
RELEASE_WINDOW_RANGE = (1, 168)


def validate_global_defaults(defaults: GlobalDefaults) -> None:
    errors = collect_global_defaults_errors(defaults)
    if errors:
        raise AllotmentValidationError("; ".join(errors))


def collect_global_defaults_errors(defaults: GlobalDefaults) -> list[str]:
    errors: list[str] = []
    low, high = TOTAL_INVENTORY_RANGE
    if not low <= defaults.total_inventory <= high:
        errors.append(f"total_inventory must be between {low} and {high}")
    low, high = OVERBOOKING_LIMIT_RANGE
    if not low <= defaults.overbooking_limit <= high:
        errors.append(f"overbooking_limit must be between {low} and {high}")
    low, high = RELEASE_WINDOW_RANGE
    if not low <= defaults.release_window <= high:
        errors.append(f"release_window must be between {low} and {high} hours")
    if defaults.block_period < 0:
        errors.append("block_period must be >= 0")
    if not isinstance(defaults.default_allocation_method, AllocationMethod):
        errors.append("default_allocation_method is not a known allocation method")
    if len(defaults.currency) != 3 or not defaults.currency.isalpha():
        errors.append("currency must be a 3-letter code")
    if not 0 <= defaults.check_in_hour <= 23:
        errors.append("check_in_hour must be between 0 and 23")
    try:
        ZoneInfo(defaults.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        errors.append(f"timezone {defaults.timezone!r} is not a known IANA zone")
    return errors


def validate_channel(channel: Channel, method: AllocationMethod) -> None:
    if not channel.name.strip():
        raise AllotmentValidationError("channel name must be non-empty")
    if channel.allocation < 0:
        raise AllotmentValidationError(f"channel {channel.name} allocation must be >= 0")
    if method is AllocationMethod.PERCENTAGE and channel.allocation > 100:
        raise AllotmentValidationError(
            f"channel {channel.name} percentage allocation must be <= 100"
        )
    if not 0.0 <= channel.commission <= 100.0:
        raise AllotmentValidationError(f"channel {channel.name} commission must be 0-100")
    if channel.rate < 0.0:
        raise AllotmentValidationError(f"channel {channel.name} rate must be >= 0")
    restrictions = channel.restrictions
    if restrictions.min_stay < 1:
        raise AllotmentValidationError(f"channel {channel.name} min_stay must be >= 1")
    if restrictions.max_stay and restrictions.max_stay < restrictions.min_stay:
        raise AllotmentValidationError(
            f"channel {channel.name} max_stay must be 0 or >= min_stay"
        )


def validate_channels(channels: Iterable[Channel], method: AllocationMethod) -> None:
    seen: set[str] = set()
    for channel in channels:
        validate_channel(channel, method)
        if channel.name in seen:
            raise AllotmentValidationError(f"duplicate channel name {channel.name}")
        seen.add(channel.name)


def validate_allocation_vector(
    daily: DailyAllotment,
    vector: dict[str, int],
) -> None:
    for channel_name, amount in vector.items():
        if not daily.has_channel(channel_name):
            raise AllotmentValidationError(
                f"channel {channel_name} is not part of the {daily.date.isoformat()} allotment"
            )
        if amount < 0:
            raise AllotmentValidationError(f"allocation for {channel_name} must be >= 0")


def capacity_ceiling(total_inventory: int, defaults: GlobalDefaults) -> int:
    """Maximum ``sum(allocated)`` admitted for the given physical inventory."""
    if not defaults.overbooking_allowed:
        return total_inventory
    return (total_inventory * (100 + defaults.overbooking_limit)) // 100


def find_negative_counts(daily: DailyAllotment) -> list[str]:
    """Return channel names carrying a negative allocated, booked or held count."""
    return [
        entry.channel_name
        for entry in daily.channels
        if entry.allocated < 0 or entry.booked < 0 or entry.held < 0
    ]
