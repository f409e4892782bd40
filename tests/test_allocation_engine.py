from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime, timezone

import pytest

from backend.domain.errors import (
    AllotmentNotFoundError,
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
    RoomTypeAllotment,
)
from backend.services.allocation_engine import AllocationEngine, evaluate_warnings
from backend.utils.config import get_settings


TARGET_DATE = date(2026, 3, 1)


def _defaults(**overrides) -> GlobalDefaults:
    values = {
        "total_inventory": 10,
        "default_allocation_method": AllocationMethod.PERCENTAGE,
        "overbooking_allowed": False,
        "overbooking_limit": 0,
        "release_window": 24,
        "auto_release": True,
    }
    values.update(overrides)
    return GlobalDefaults(**values)


def _allotment(method: AllocationMethod = AllocationMethod.PERCENTAGE, **overrides) -> RoomTypeAllotment:
    channels = overrides.pop(
        "channels",
        (
            Channel("DIRECT", ChannelType.DIRECT, allocation=60, priority=1, rate=100.0),
            Channel("BOOKING_COM", ChannelType.BOOKING_COM, allocation=40, priority=2, rate=120.0),
        ),
    )
    return RoomTypeAllotment(
        room_type_id="DLX",
        name="Deluxe",
        channels=tuple(channels),
        allocation_method=method,
        **overrides,
    )


def _daily(direct: int, booking_com: int, booked_booking_com: int = 0, **overrides) -> DailyAllotment:
    values = {
        "room_type_id": "DLX",
        "date": TARGET_DATE,
        "total_inventory": 10,
        "channels": (
            ChannelAllotment("DIRECT", allocated=direct),
            ChannelAllotment("BOOKING_COM", allocated=booking_com, booked=booked_booking_com),
        ),
    }
    values.update(overrides)
    return DailyAllotment(**values)


def _engine() -> AllocationEngine:
    return AllocationEngine(get_settings())


def _assert_invariants(daily: DailyAllotment, ceiling: int) -> None:
    assert daily.total_allocated <= ceiling
    for entry in daily.channels:
        assert entry.remaining == entry.allocated - entry.booked
        assert entry.allocated >= 0 and entry.booked >= 0 and entry.held >= 0


# --- Materialization ---

def test_materialize_percentage_baseline():
    daily, resolved = _engine().materialize(_allotment(), TARGET_DATE, _defaults())

    assert daily.allocation_vector() == {"DIRECT": 6, "BOOKING_COM": 4}
    assert daily.version == 1
    assert resolved.method is AllocationMethod.PERCENTAGE


def test_materialize_uses_room_type_inventory_override():
    daily, _ = _engine().materialize(_allotment(total_inventory=20), TARGET_DATE, _defaults())

    assert daily.total_inventory == 20
    assert daily.allocation_vector() == {"DIRECT": 12, "BOOKING_COM": 8}


def test_materialize_caps_fixed_baseline_to_ceiling_in_priority_order():
    allotment = _allotment(
        AllocationMethod.FIXED,
        channels=(
            Channel("DIRECT", ChannelType.DIRECT, allocation=7, priority=1),
            Channel("BOOKING_COM", ChannelType.BOOKING_COM, allocation=5, priority=2),
        ),
    )

    daily, resolved = _engine().materialize(allotment, TARGET_DATE, _defaults())

    assert daily.allocation_vector() == {"DIRECT": 7, "BOOKING_COM": 3}
    assert any("capped to ceiling 10" in warning for warning in resolved.warnings)


def test_uncapped_fixed_vector_is_left_to_admission():
    allotment = _allotment(
        AllocationMethod.FIXED,
        channels=(
            Channel("DIRECT", ChannelType.DIRECT, allocation=6, priority=1),
            Channel("BOOKING_COM", ChannelType.BOOKING_COM, allocation=5, priority=2),
        ),
    )
    engine = _engine()

    resolved = engine.resolve_vector(allotment, 10, _defaults(), cap_to_ceiling=False)

    assert resolved.targets == {"DIRECT": 6, "BOOKING_COM": 5}
    with pytest.raises(CapacityExceededError) as exc_info:
        engine.bulk_apply(_daily(6, 4), allotment, _defaults(), resolved.targets)
    assert exc_info.value.shortfall == 1


# --- set_allocation ---

def test_set_allocation_within_capacity():
    updated = _engine().set_allocation(_daily(5, 4), _allotment(), _defaults(), "DIRECT", 6)

    assert updated.channel("DIRECT").allocated == 6
    _assert_invariants(updated, 10)


def test_set_allocation_over_capacity_reports_shortfall():
    with pytest.raises(CapacityExceededError) as exc_info:
        _engine().set_allocation(_daily(6, 4), _allotment(), _defaults(), "DIRECT", 8)

    assert exc_info.value.shortfall == 2
    assert exc_info.value.ceiling == 10


def test_set_allocation_below_booked_keeps_warning():
    updated = _engine().set_allocation(_daily(6, 4, 3), _allotment(), _defaults(), "BOOKING_COM", 2)

    assert updated.channel("BOOKING_COM").remaining == -1
    assert any(warning.startswith("booked exceeds allocated") for warning in updated.warnings)


def test_set_allocation_rejects_negative_and_unknown_channel():
    engine = _engine()
    with pytest.raises(AllotmentValidationError):
        engine.set_allocation(_daily(6, 4), _allotment(), _defaults(), "DIRECT", -1)
    with pytest.raises(AllotmentNotFoundError):
        engine.set_allocation(_daily(6, 4), _allotment(), _defaults(), "EXPEDIA", 1)


def test_reducing_an_over_ceiling_record_is_admitted():
    over = _daily(7, 5)

    updated = _engine().set_allocation(over, _allotment(), _defaults(), "BOOKING_COM", 4)

    assert updated.total_allocated == 11
    assert any(warning.startswith("capacity exceeded") for warning in updated.warnings)


# --- transfer ---

def test_transfer_moves_free_units():
    updated = _engine().transfer(
        _daily(6, 4, 1), _allotment(), _defaults(), "BOOKING_COM", "DIRECT", 2
    )

    assert updated.channel("BOOKING_COM").allocated == 2
    assert updated.channel("DIRECT").allocated == 8
    assert updated.total_allocated == 10


def test_transfer_more_than_free_units_fails():
    with pytest.raises(InsufficientAllocationError) as exc_info:
        _engine().transfer(_daily(6, 4, 1), _allotment(), _defaults(), "BOOKING_COM", "DIRECT", 4)

    assert exc_info.value.available == 3
    assert exc_info.value.shortfall == 1


def test_transfer_conserves_total_for_every_amount():
    engine = _engine()
    original = _daily(6, 4, 1)
    for amount in range(1, 4):
        updated = engine.transfer(original, _allotment(), _defaults(), "BOOKING_COM", "DIRECT", amount)
        assert updated.total_allocated == original.total_allocated
        _assert_invariants(updated, 10)


def test_transfer_to_same_channel_or_zero_amount_is_invalid():
    engine = _engine()
    with pytest.raises(AllotmentValidationError):
        engine.transfer(_daily(6, 4), _allotment(), _defaults(), "DIRECT", "DIRECT", 1)
    with pytest.raises(AllotmentValidationError):
        engine.transfer(_daily(6, 4), _allotment(), _defaults(), "DIRECT", "BOOKING_COM", 0)


def test_transfer_reduces_held_units_that_are_no_longer_free():
    daily = _daily(6, 4).with_channel(ChannelAllotment("BOOKING_COM", allocated=4, held=3))

    updated = _engine().transfer(daily, _allotment(), _defaults(), "BOOKING_COM", "DIRECT", 2)

    assert updated.channel("BOOKING_COM").held == 2


# --- bulk_apply ---

def test_bulk_apply_over_inventory_rejected_without_overbooking():
    with pytest.raises(CapacityExceededError) as exc_info:
        _engine().bulk_apply(
            _daily(6, 4), _allotment(), _defaults(), {"DIRECT": 6, "BOOKING_COM": 5}
        )

    assert exc_info.value.proposed_total == 11
    assert exc_info.value.shortfall == 1


def test_bulk_apply_within_overbooking_ceiling_admitted():
    defaults = _defaults(overbooking_allowed=True, overbooking_limit=20)

    updated = _engine().bulk_apply(
        _daily(6, 4), _allotment(), defaults, {"DIRECT": 6, "BOOKING_COM": 5}
    )

    assert updated.total_allocated == 11
    assert any(warning.startswith("overbooking in use") for warning in updated.warnings)
    _assert_invariants(updated, 12)


def test_bulk_apply_uses_room_type_overbooking_override():
    allotment = _allotment(overbooking_allowed=True, overbooking_limit=20)

    updated = _engine().bulk_apply(
        _daily(6, 4), allotment, _defaults(), {"DIRECT": 6, "BOOKING_COM": 6}
    )

    assert updated.total_allocated == 12


def test_bulk_apply_zeroes_missing_channels():
    updated = _engine().bulk_apply(_daily(6, 4), _allotment(), _defaults(), {"DIRECT": 9})

    assert updated.allocation_vector() == {"DIRECT": 9, "BOOKING_COM": 0}


def test_copy_forward_keeps_destination_bookings():
    source = _daily(7, 3)
    destination = _daily(6, 4, 2, date=date(2026, 3, 2))

    updated = _engine().copy_forward(source, destination, _allotment(), _defaults())

    assert updated.allocation_vector() == {"DIRECT": 7, "BOOKING_COM": 3}
    assert updated.channel("BOOKING_COM").booked == 2
    assert updated.date == date(2026, 3, 2)


# --- bookings and holds ---

def test_record_booking_consumes_held_units_first():
    daily = _daily(6, 4).with_channel(ChannelAllotment("BOOKING_COM", allocated=4, held=2))

    updated = _engine().record_booking(daily, _allotment(), _defaults(), "BOOKING_COM", 1)

    entry = updated.channel("BOOKING_COM")
    assert entry.booked == 1
    assert entry.held == 1
    assert updated.revenue == 120.0
    assert updated.occupancy_rate == 10.0


def test_record_booking_without_free_units_fails():
    with pytest.raises(InsufficientAllocationError):
        _engine().record_booking(_daily(6, 4, 4), _allotment(), _defaults(), "BOOKING_COM", 1)


def test_record_booking_on_overbooking_channel_is_allowed():
    allotment = _allotment(
        channels=(
            Channel("DIRECT", ChannelType.DIRECT, allocation=60, priority=1),
            Channel(
                "BOOKING_COM",
                ChannelType.BOOKING_COM,
                allocation=40,
                priority=2,
                overbooking_permitted=True,
            ),
        )
    )

    updated = _engine().record_booking(_daily(6, 4, 4), allotment, _defaults(), "BOOKING_COM", 1)

    assert updated.channel("BOOKING_COM").booked == 5
    assert not any(warning.startswith("booked exceeds") for warning in updated.warnings)


def test_cancel_booking_cannot_go_below_zero():
    engine = _engine()
    updated = engine.cancel_booking(_daily(6, 4, 2), _allotment(), _defaults(), "BOOKING_COM", 2)

    assert updated.channel("BOOKING_COM").booked == 0
    with pytest.raises(AllotmentValidationError):
        engine.cancel_booking(updated, _allotment(), _defaults(), "BOOKING_COM", 1)


def test_set_hold_requires_free_units_and_clears_release_marker():
    engine = _engine()
    released = _daily(6, 4).with_channel(
        ChannelAllotment(
            "BOOKING_COM",
            allocated=4,
            released_at=datetime(2026, 2, 28, tzinfo=timezone.utc),
        )
    )

    updated = engine.set_hold(released, _allotment(), _defaults(), "BOOKING_COM", 3)

    assert updated.channel("BOOKING_COM").held == 3
    assert updated.channel("BOOKING_COM").released_at is None
    with pytest.raises(InsufficientAllocationError):
        engine.set_hold(updated, _allotment(), _defaults(), "BOOKING_COM", 5)


def test_release_held_moves_units_to_direct():
    daily = _daily(6, 4).with_channel(ChannelAllotment("BOOKING_COM", allocated=4, held=2))
    now = datetime(2026, 2, 28, 12, tzinfo=timezone.utc)

    updated = _engine().release_held(daily, _allotment(), _defaults(), now)

    assert updated.allocation_vector() == {"DIRECT": 8, "BOOKING_COM": 2}
    assert updated.channel("BOOKING_COM").held == 0
    assert updated.channel("BOOKING_COM").released_at == now


def test_release_held_on_direct_keeps_units_on_direct():
    daily = _daily(6, 4).with_channel(ChannelAllotment("DIRECT", allocated=6, held=2))
    now = datetime(2026, 2, 28, 12, tzinfo=timezone.utc)

    updated = _engine().release_held(daily, _allotment(), _defaults(), now)

    assert updated.allocation_vector() == {"DIRECT": 6, "BOOKING_COM": 4}
    assert updated.channel("DIRECT").held == 0
    assert updated.channel("DIRECT").released_at == now


def test_release_held_without_direct_returns_units_to_pool():
    allotment = _allotment(
        channels=(
            Channel("EXPEDIA", ChannelType.EXPEDIA, allocation=60, priority=1),
            Channel("BOOKING_COM", ChannelType.BOOKING_COM, allocation=40, priority=2),
        )
    )
    daily = DailyAllotment(
        room_type_id="DLX",
        date=TARGET_DATE,
        total_inventory=10,
        channels=(
            ChannelAllotment("EXPEDIA", allocated=6),
            ChannelAllotment("BOOKING_COM", allocated=4, held=2),
        ),
    )

    updated = _engine().release_held(daily, allotment, _defaults(), datetime.now(timezone.utc))

    assert updated.allocation_vector() == {"EXPEDIA": 6, "BOOKING_COM": 2}


# --- channel entries ---

def test_attach_and_detach_channel_entries():
    engine = _engine()
    allotment = _allotment(
        channels=_allotment().channels
        + (Channel("AGODA", ChannelType.AGODA, allocation=0, priority=3),)
    )

    attached = engine.attach_channels(_daily(6, 4), allotment, _defaults(), ["AGODA"])
    assert attached.allocation_vector() == {"DIRECT": 6, "BOOKING_COM": 4, "AGODA": 0}

    detached = engine.detach_channel(attached, _allotment(), _defaults(), "BOOKING_COM", "DIRECT")
    assert detached.allocation_vector() == {"DIRECT": 10, "AGODA": 0}


def test_detach_channel_with_bookings_is_rejected():
    with pytest.raises(AllotmentValidationError):
        _engine().detach_channel(_daily(6, 4, 1), _allotment(), _defaults(), "BOOKING_COM", "DIRECT")


# --- warnings ---

def test_evaluate_warnings_flags_low_remaining_and_starved_channels():
    daily = _daily(10, 0).with_channel(ChannelAllotment("DIRECT", allocated=10, booked=9))

    evaluated = evaluate_warnings(daily, _allotment().channels, _defaults())

    assert "low remaining: DIRECT has 1 of 10 units left" in evaluated.warnings
    assert "starved: BOOKING_COM has no allocation" in evaluated.warnings
    assert evaluated.occupancy_rate == 90.0
    assert evaluated.revenue == 900.0


def test_evaluate_warnings_zero_inventory_has_zero_occupancy():
    daily = replace(_daily(0, 0), total_inventory=0)

    evaluated = evaluate_warnings(daily, _allotment().channels, _defaults())

    assert evaluated.occupancy_rate == 0.0
    assert evaluated.warnings == ()
