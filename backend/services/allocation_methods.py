"""Allocation method resolver: per-channel targets for a day's inventory."""

from __future__ import annotations

from fractions import Fraction
from typing import Callable, Mapping, Optional, Sequence

from backend.domain.errors import AllotmentValidationError
from backend.domain.models import AllocationMethod, Channel, ResolvedAllocation
from backend.utils.logger import format_fields, get_logger


logger = get_logger(__name__)

DEFAULT_MULTIPLIER_BOUNDS = (0.5, 1.5)


def priority_order(channels: Sequence[Channel]) -> list[Channel]:
    """Ascending priority; equal priorities keep insertion order."""
    indexed = list(enumerate(channels))
    indexed.sort(key=lambda pair: (pair[1].priority, pair[0]))
    return [channel for _, channel in indexed]


def _zero_targets(channels: Sequence[Channel]) -> dict[str, int]:
    return {channel.name: 0 for channel in channels}


def _active(channels: Sequence[Channel]) -> list[Channel]:
    return [channel for channel in channels if channel.is_active]


def _largest_remainder(
    shares: Mapping[str, Fraction],
    capacity: int,
    tie_order: Sequence[str],
) -> dict[str, int]:
    """Floor each share, then hand out leftover units by largest fraction."""
    floors = {name: int(share) for name, share in shares.items()}
    leftover = capacity - sum(floors.values())
    if leftover <= 0:
        return floors
    rank = {name: index for index, name in enumerate(tie_order)}
    by_remainder = sorted(
        shares,
        key=lambda name: (-(shares[name] - floors[name]), rank.get(name, len(rank))),
    )
    for name in by_remainder[:leftover]:
        floors[name] += 1
    return floors


def resolve_percentage(total_inventory: int, channels: Sequence[Channel]) -> ResolvedAllocation:
    targets = _zero_targets(channels)
    warnings: list[str] = []
    active = _active(channels)
    percent_sum = sum(channel.allocation for channel in active)

    if not active or percent_sum == 0:
        warnings.append("percentage allocation: no active channel carries a percentage")
        return ResolvedAllocation(AllocationMethod.PERCENTAGE, targets, warnings)

    if percent_sum != 100:
        warnings.append(
            f"percentage allocation: channel percentages sum to {percent_sum}, "
            "scaled proportionally to 100"
        )

    for channel in active:
        targets[channel.name] = (total_inventory * channel.allocation) // percent_sum

    residual = total_inventory - sum(targets.values())
    if residual > 0:
        first = priority_order(active)[0]
        targets[first.name] += residual

    return ResolvedAllocation(AllocationMethod.PERCENTAGE, targets, warnings)


def resolve_fixed(total_inventory: int, channels: Sequence[Channel]) -> ResolvedAllocation:
    targets = _zero_targets(channels)
    warnings: list[str] = []
    for channel in _active(channels):
        targets[channel.name] = channel.allocation

    configured = sum(targets.values())
    if configured > total_inventory:
        warnings.append(
            f"capacity exceeded: fixed allocations total {configured} "
            f"against inventory {total_inventory}"
        )
    return ResolvedAllocation(AllocationMethod.FIXED, targets, warnings)


def resolve_priority(total_inventory: int, channels: Sequence[Channel]) -> ResolvedAllocation:
    targets = _zero_targets(channels)
    warnings: list[str] = []
    remaining_capacity = total_inventory

    for channel in priority_order(_active(channels)):
        granted = min(channel.allocation, remaining_capacity)
        targets[channel.name] = granted
        remaining_capacity -= granted
        if granted == 0 and channel.allocation > 0:
            warnings.append(f"starved: channel {channel.name} received no inventory")

    return ResolvedAllocation(AllocationMethod.PRIORITY, targets, warnings)


def clamp_multiplier(value: float, bounds: tuple[float, float] = DEFAULT_MULTIPLIER_BOUNDS) -> float:
    low, high = bounds
    return min(high, max(low, value))


def resolve_dynamic(
    total_inventory: int,
    channels: Sequence[Channel],
    demand_multipliers: Optional[Mapping[str, float]] = None,
    multiplier_bounds: tuple[float, float] = DEFAULT_MULTIPLIER_BOUNDS,
) -> ResolvedAllocation:
    """PRIORITY targets scaled by a clamped demand multiplier per channel."""
    base = resolve_priority(total_inventory, channels)
    warnings = list(base.warnings)
    multipliers = demand_multipliers or {}

    shares: dict[str, Fraction] = {}
    for channel in channels:
        raw = float(multipliers.get(channel.name, 1.0))
        clamped = clamp_multiplier(raw, multiplier_bounds)
        if clamped != raw:
            warnings.append(
                f"demand multiplier for {channel.name} clamped from {raw:.2f} to {clamped:.2f}"
            )
        shares[channel.name] = Fraction(base.targets[channel.name]) * Fraction(clamped)

    targets = {name: int(share) for name, share in shares.items()}
    scaled_total = sum(targets.values())
    if scaled_total > total_inventory:
        exact_total = sum(shares.values())
        normalized = {
            name: share * total_inventory / exact_total
            for name, share in shares.items()
        }
        tie_order = [channel.name for channel in priority_order(channels)]
        targets = _largest_remainder(normalized, total_inventory, tie_order)
        warnings.append(
            f"dynamic allocation re-normalized from {scaled_total} to {total_inventory}"
        )

    return ResolvedAllocation(AllocationMethod.DYNAMIC, targets, warnings)


_RESOLVERS: dict[AllocationMethod, Callable[[int, Sequence[Channel]], ResolvedAllocation]] = {
    AllocationMethod.PERCENTAGE: resolve_percentage,
    AllocationMethod.FIXED: resolve_fixed,
    AllocationMethod.PRIORITY: resolve_priority,
}


def resolve_allocation(
    method: AllocationMethod,
    total_inventory: int,
    channels: Sequence[Channel],
    demand_multipliers: Optional[Mapping[str, float]] = None,
    multiplier_bounds: tuple[float, float] = DEFAULT_MULTIPLIER_BOUNDS,
) -> ResolvedAllocation:
    """Compute the advisory target vector for ``method``.

    The result is not applied here; the allocation engine re-validates it
    against the current booked counts when it is committed.
    """
    if total_inventory < 0:
        raise AllotmentValidationError("total_inventory must be >= 0")

    if method is AllocationMethod.DYNAMIC:
        result = resolve_dynamic(
            total_inventory,
            channels,
            demand_multipliers=demand_multipliers,
            multiplier_bounds=multiplier_bounds,
        )
    else:
        resolver = _RESOLVERS.get(method)
        if resolver is None:
            raise AllotmentValidationError(f"unsupported allocation method {method}")
        result = resolver(total_inventory, channels)

    logger.debug(
        "Allocation resolved | %s",
        format_fields(
            method=method.value,
            total_inventory=total_inventory,
            targets=result.targets,
            warnings=len(result.warnings),
        ),
    )
    return result
