"""Allocation engine: all-or-nothing mutations of a single daily allotment.

Every operation receives the current ``DailyAllotment`` snapshot and returns a
new one; nothing is mutated in place, so a raised error leaves no partial
state behind. Version bumps and persistence belong to the conflict resolver,
which calls into this module while holding the per-date lock.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime
from typing import Mapping, Optional, Sequence

from backend.domain.constraints import (
    capacity_ceiling,
    find_negative_counts,
    validate_allocation_vector,
)
from backend.domain.errors import (
    AllotmentValidationError,
    CapacityExceededError,
    InsufficientAllocationError,
)
from backend.domain.models import (
    AllocationMethod,
    Channel,
    ChannelAllotment,
    ChannelType,
    DailyAllotment,
    GlobalDefaults,
    ResolvedAllocation,
    RoomTypeAllotment,
)
from backend.services.allocation_methods import resolve_allocation, resolve_priority
from backend.services.overbooking_policy import admit
from backend.utils.config import Settings, get_settings
from backend.utils.logger import format_fields, get_logger


logger = get_logger(__name__)


def _clamp_held(entry: ChannelAllotment) -> ChannelAllotment:
    held = min(entry.held, entry.free)
    if held == entry.held:
        return entry
    return replace(entry, held=held)


def evaluate_warnings(
    daily: DailyAllotment,
    channels: Sequence[Channel],
    defaults: GlobalDefaults,
    low_remaining_ratio: float = 0.2,
) -> DailyAllotment:
    """Recompute warnings and derived figures for ``daily``."""
    config = {channel.name: channel for channel in channels}
    warnings: list[str] = []

    for entry in daily.channels:
        channel = config.get(entry.channel_name)
        if entry.allocated > 0 and entry.remaining < entry.allocated * low_remaining_ratio:
            warnings.append(
                f"low remaining: {entry.channel_name} has {entry.remaining} "
                f"of {entry.allocated} units left"
            )
        permitted = channel.overbooking_permitted if channel is not None else False
        if entry.booked > entry.allocated and not permitted:
            warnings.append(
                f"booked exceeds allocated: {entry.channel_name} has {entry.booked} "
                f"booked against {entry.allocated} allocated"
            )
        if (
            channel is not None
            and channel.is_active
            and entry.allocated == 0
            and daily.total_inventory > 0
        ):
            warnings.append(f"starved: {entry.channel_name} has no allocation")

    ceiling = capacity_ceiling(daily.total_inventory, defaults)
    total_allocated = daily.total_allocated
    if total_allocated > ceiling:
        warnings.append(
            f"capacity exceeded: {total_allocated} allocated against ceiling {ceiling}"
        )
    elif total_allocated > daily.total_inventory:
        warnings.append(
            f"overbooking in use: {total_allocated} allocated against "
            f"{daily.total_inventory} rooms"
        )

    if daily.total_inventory > 0:
        occupancy_rate = round(daily.total_booked / daily.total_inventory * 100.0, 2)
    else:
        occupancy_rate = 0.0
    revenue = round(
        sum(
            entry.booked * config[entry.channel_name].rate
            for entry in daily.channels
            if entry.channel_name in config
        ),
        2,
    )
    return replace(
        daily,
        warnings=tuple(warnings),
        occupancy_rate=occupancy_rate,
        revenue=revenue,
    )


class AllocationEngine:
    """Applies allocation changes to one daily allotment at a time."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()

    def _finalize(
        self,
        current: DailyAllotment,
        proposed: DailyAllotment,
        allotment: RoomTypeAllotment,
        defaults: GlobalDefaults,
    ) -> DailyAllotment:
        defaults = allotment.effective_defaults(defaults)
        negative = find_negative_counts(proposed)
        if negative:
            raise AllotmentValidationError(
                f"negative counts for channels: {', '.join(negative)}"
            )

        decision = admit(current, proposed.allocation_vector(), defaults)
        if not decision.ok and decision.proposed_total > current.total_allocated:
            raise CapacityExceededError(
                ceiling=decision.ceiling,
                proposed_total=decision.proposed_total,
                reason=decision.reason,
            )

        return evaluate_warnings(
            proposed,
            allotment.channels,
            defaults,
            low_remaining_ratio=self._settings.low_remaining_ratio,
        )

    def materialize(
        self,
        allotment: RoomTypeAllotment,
        day: date,
        defaults: GlobalDefaults,
        demand_multipliers: Optional[Mapping[str, float]] = None,
    ) -> tuple[DailyAllotment, ResolvedAllocation]:
        """Build the first record for a date from defaults and channel baselines."""
        effective = allotment.effective_defaults(defaults)
        total_inventory = effective.total_inventory
        resolved = self.resolve_vector(
            allotment,
            total_inventory,
            defaults,
            demand_multipliers=demand_multipliers,
        )

        daily = DailyAllotment(
            room_type_id=allotment.room_type_id,
            date=day,
            total_inventory=total_inventory,
            channels=tuple(
                ChannelAllotment(
                    channel_name=channel.name,
                    allocated=resolved.targets[channel.name],
                )
                for channel in allotment.channels
            ),
        )
        daily = evaluate_warnings(
            daily,
            allotment.channels,
            effective,
            low_remaining_ratio=self._settings.low_remaining_ratio,
        )
        return daily, resolved

    def set_allocation(
        self,
        daily: DailyAllotment,
        allotment: RoomTypeAllotment,
        defaults: GlobalDefaults,
        channel_name: str,
        amount: int,
    ) -> DailyAllotment:
        if amount < 0:
            raise AllotmentValidationError("allocation amount must be >= 0")
        entry = daily.channel(channel_name)
        updated = _clamp_held(replace(entry, allocated=amount))
        result = self._finalize(daily, daily.with_channel(updated), allotment, defaults)
        if updated.booked > amount:
            logger.warning(
                "Allocation below booked count | %s",
                format_fields(
                    room_type_id=daily.room_type_id,
                    date=daily.date.isoformat(),
                    channel=channel_name,
                    allocated=amount,
                    booked=updated.booked,
                ),
            )
        return result

    def transfer(
        self,
        daily: DailyAllotment,
        allotment: RoomTypeAllotment,
        defaults: GlobalDefaults,
        from_channel: str,
        to_channel: str,
        amount: int,
    ) -> DailyAllotment:
        """Move free units between two channels; ``sum(allocated)`` is unchanged."""
        if amount <= 0:
            raise AllotmentValidationError("transfer amount must be > 0")
        if from_channel == to_channel:
            raise AllotmentValidationError("transfer source and destination must differ")

        source = daily.channel(from_channel)
        destination = daily.channel(to_channel)
        if amount > source.free:
            raise InsufficientAllocationError(
                channel_name=from_channel,
                available=source.free,
                requested=amount,
            )

        source = _clamp_held(replace(source, allocated=source.allocated - amount))
        destination = replace(destination, allocated=destination.allocated + amount)
        proposed = daily.with_channel(source).with_channel(destination)
        return self._finalize(daily, proposed, allotment, defaults)

    def bulk_apply(
        self,
        daily: DailyAllotment,
        allotment: RoomTypeAllotment,
        defaults: GlobalDefaults,
        vector: Mapping[str, int],
    ) -> DailyAllotment:
        """Replace every channel's allocation; channels missing from ``vector`` get 0."""
        validate_allocation_vector(daily, dict(vector))
        channels = tuple(
            _clamp_held(replace(entry, allocated=int(vector.get(entry.channel_name, 0))))
            for entry in daily.channels
        )
        return self._finalize(daily, replace(daily, channels=channels), allotment, defaults)

    def copy_forward(
        self,
        source: DailyAllotment,
        destination: DailyAllotment,
        allotment: RoomTypeAllotment,
        defaults: GlobalDefaults,
    ) -> DailyAllotment:
        """Apply the source date's allocation vector to the destination date."""
        return self.bulk_apply(destination, allotment, defaults, source.allocation_vector())

    def withdraw(
        self,
        daily: DailyAllotment,
        allotment: RoomTypeAllotment,
        defaults: GlobalDefaults,
        channel_name: str,
        amount: int,
    ) -> DailyAllotment:
        """Take free units out of a channel and return them to the unallocated pool."""
        if amount <= 0:
            raise AllotmentValidationError("withdraw amount must be > 0")
        entry = daily.channel(channel_name)
        if amount > entry.free:
            raise InsufficientAllocationError(
                channel_name=channel_name,
                available=entry.free,
                requested=amount,
            )
        updated = _clamp_held(replace(entry, allocated=entry.allocated - amount))
        return self._finalize(daily, daily.with_channel(updated), allotment, defaults)

    def deposit(
        self,
        daily: DailyAllotment,
        allotment: RoomTypeAllotment,
        defaults: GlobalDefaults,
        channel_name: str,
        amount: int,
        held: int = 0,
    ) -> DailyAllotment:
        """Add units to a channel from the unallocated pool, subject to admission.

        ``held`` units are put back on hold, up to the channel's free units.
        """
        if amount <= 0:
            raise AllotmentValidationError("deposit amount must be > 0")
        if held < 0:
            raise AllotmentValidationError("held must be >= 0")
        entry = daily.channel(channel_name)
        updated = _clamp_held(
            replace(entry, allocated=entry.allocated + amount, held=entry.held + held)
        )
        return self._finalize(daily, daily.with_channel(updated), allotment, defaults)

    def set_hold(
        self,
        daily: DailyAllotment,
        allotment: RoomTypeAllotment,
        defaults: GlobalDefaults,
        channel_name: str,
        held: int,
    ) -> DailyAllotment:
        """Mark ``held`` free units as held for unconfirmed bookings."""
        if held < 0:
            raise AllotmentValidationError("held units must be >= 0")
        entry = daily.channel(channel_name)
        if held > entry.free:
            raise InsufficientAllocationError(
                channel_name=channel_name,
                available=entry.free,
                requested=held,
            )
        updated = replace(entry, held=held, released_at=None)
        return self._finalize(daily, daily.with_channel(updated), allotment, defaults)

    def attach_channels(
        self,
        daily: DailyAllotment,
        allotment: RoomTypeAllotment,
        defaults: GlobalDefaults,
        channel_names: Sequence[str],
    ) -> DailyAllotment:
        """Add zero-allocated entries for channels configured after materialization."""
        added = tuple(
            ChannelAllotment(channel_name=name, allocated=0)
            for name in channel_names
            if not daily.has_channel(name)
        )
        return self._finalize(
            daily, replace(daily, channels=daily.channels + added), allotment, defaults
        )

    def detach_channel(
        self,
        daily: DailyAllotment,
        allotment: RoomTypeAllotment,
        defaults: GlobalDefaults,
        channel_name: str,
        recipient: Optional[str],
    ) -> DailyAllotment:
        """Zero a channel, hand its units to ``recipient`` and drop its entry."""
        if not daily.has_channel(channel_name):
            return self._finalize(daily, daily, allotment, defaults)
        entry = daily.channel(channel_name)
        if entry.booked > 0:
            raise AllotmentValidationError(
                f"channel {channel_name} has {entry.booked} booked units "
                f"on {daily.date.isoformat()}"
            )
        proposed = replace(
            daily,
            channels=tuple(e for e in daily.channels if e.channel_name != channel_name),
        )
        if recipient is not None and entry.allocated > 0 and proposed.has_channel(recipient):
            target = proposed.channel(recipient)
            proposed = proposed.with_channel(
                replace(target, allocated=target.allocated + entry.allocated)
            )
        return self._finalize(daily, proposed, allotment, defaults)

    def release_held(
        self,
        daily: DailyAllotment,
        allotment: RoomTypeAllotment,
        defaults: GlobalDefaults,
        released_at: datetime,
    ) -> DailyAllotment:
        """Release held units on every channel that has not been released yet.

        Released units move to the DIRECT channel, or back to the unallocated
        pool when there is no DIRECT channel. Units held on DIRECT itself stay
        allocated to DIRECT and only lose the hold.
        """
        direct_name = next(
            (
                channel.name
                for channel in allotment.channels
                if channel.type is ChannelType.DIRECT and daily.has_channel(channel.name)
            ),
            None,
        )
        proposed = daily
        for entry in daily.channels:
            if entry.held <= 0 or entry.released_at is not None:
                continue
            current = proposed.channel(entry.channel_name)
            moved = 0 if entry.channel_name == direct_name else min(current.held, current.free)
            proposed = proposed.with_channel(
                replace(
                    current,
                    allocated=current.allocated - moved,
                    held=0,
                    released_at=released_at,
                )
            )
            if direct_name is not None and moved > 0:
                direct = proposed.channel(direct_name)
                proposed = proposed.with_channel(
                    replace(direct, allocated=direct.allocated + moved)
                )
        return self._finalize(daily, proposed, allotment, defaults)

    def record_booking(
        self,
        daily: DailyAllotment,
        allotment: RoomTypeAllotment,
        defaults: GlobalDefaults,
        channel_name: str,
        rooms: int,
    ) -> DailyAllotment:
        if rooms <= 0:
            raise AllotmentValidationError("rooms must be > 0")
        entry = daily.channel(channel_name)
        channel = allotment.channel(channel_name)
        if rooms > entry.free and not channel.overbooking_permitted:
            raise InsufficientAllocationError(
                channel_name=channel_name,
                available=entry.free,
                requested=rooms,
            )
        updated = replace(
            entry,
            booked=entry.booked + rooms,
            held=max(0, entry.held - rooms),
        )
        return self._finalize(daily, daily.with_channel(_clamp_held(updated)), allotment, defaults)

    def cancel_booking(
        self,
        daily: DailyAllotment,
        allotment: RoomTypeAllotment,
        defaults: GlobalDefaults,
        channel_name: str,
        rooms: int,
    ) -> DailyAllotment:
        if rooms <= 0:
            raise AllotmentValidationError("rooms must be > 0")
        entry = daily.channel(channel_name)
        if rooms > entry.booked:
            raise AllotmentValidationError(
                f"cannot cancel {rooms} rooms; channel {channel_name} has {entry.booked} booked"
            )
        updated = replace(entry, booked=entry.booked - rooms)
        return self._finalize(daily, daily.with_channel(updated), allotment, defaults)

    def resolve_vector(
        self,
        allotment: RoomTypeAllotment,
        total_inventory: int,
        defaults: GlobalDefaults,
        method: Optional[AllocationMethod] = None,
        demand_multipliers: Optional[Mapping[str, float]] = None,
        cap_to_ceiling: bool = True,
    ) -> ResolvedAllocation:
        """Resolve targets for ``method`` (default: the allotment's own method).

        With ``cap_to_ceiling`` targets above the capacity ceiling are cut back
        in priority order; otherwise they are returned as resolved and
        admission is left to the overbooking policy.
        """
        resolved = resolve_allocation(
            method or allotment.allocation_method,
            total_inventory,
            allotment.channels,
            demand_multipliers=demand_multipliers,
            multiplier_bounds=(
                self._settings.dynamic_multiplier_min,
                self._settings.dynamic_multiplier_max,
            ),
        )
        ceiling = capacity_ceiling(total_inventory, allotment.effective_defaults(defaults))
        if not cap_to_ceiling or resolved.total <= ceiling:
            return resolved
        baselines = [
            replace(channel, allocation=resolved.targets[channel.name])
            for channel in allotment.channels
        ]
        capped = resolve_priority(ceiling, baselines)
        return ResolvedAllocation(
            method=resolved.method,
            targets=capped.targets,
            warnings=resolved.warnings + [f"baseline capped to ceiling {ceiling} in priority order"],
        )
