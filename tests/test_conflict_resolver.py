from __future__ import annotations

import threading
import time
from dataclasses import replace
from datetime import date

import pytest

from backend.domain.errors import (
    AllotmentNotFoundError,
    CapacityExceededError,
    OperationCancelledError,
    StaleVersionError,
)
from backend.domain.models import (
    AllocationMethod,
    Channel,
    ChannelType,
    EventType,
    RoomTypeAllotment,
)
from backend.repository.data_repository import DataRepository
from backend.services.concurrency import KeyedLockRegistry, OperationContext
from backend.services.conflict_resolver import ConflictResolver
from backend.services.settings_service import SettingsService
from backend.utils.config import get_settings


TARGET_DATE = date(2026, 3, 1)
NEXT_DATE = date(2026, 3, 2)


def _build_test_settings(tmp_path, filename: str):
    base = get_settings()
    return replace(
        base,
        database_path=tmp_path / filename,
        default_total_inventory=10,
        default_overbooking_allowed=False,
        lock_acquire_timeout_seconds=2.0,
        conflict_max_transfer_retries=3,
    )


def _build_resolver(tmp_path, filename: str = "resolver.db") -> tuple[ConflictResolver, DataRepository]:
    settings = _build_test_settings(tmp_path, filename)
    repository = DataRepository(settings)
    repository.initialize_database()
    settings_service = SettingsService(repository=repository, settings=settings)
    settings_service.seed_if_missing()
    repository.upsert_room_type_allotment(
        RoomTypeAllotment(
            room_type_id="DLX",
            name="Deluxe",
            channels=(
                Channel("DIRECT", ChannelType.DIRECT, allocation=60, priority=1),
                Channel("BOOKING_COM", ChannelType.BOOKING_COM, allocation=40, priority=2),
            ),
            allocation_method=AllocationMethod.PERCENTAGE,
        )
    )
    resolver = ConflictResolver(
        repository=repository,
        locks=KeyedLockRegistry(settings.lock_acquire_timeout_seconds),
        settings_service=settings_service,
        settings=settings,
    )
    return resolver, repository


def test_read_materializes_once_with_version_one(tmp_path):
    resolver, repository = _build_resolver(tmp_path)

    first = resolver.read("DLX", TARGET_DATE)
    second = resolver.read("DLX", TARGET_DATE)

    assert first.version == 1
    assert first.allocation_vector() == {"DIRECT": 6, "BOOKING_COM": 4}
    assert second.version == 1
    assert repository.list_daily_keys_between(TARGET_DATE, TARGET_DATE) == [("DLX", TARGET_DATE)]


def test_read_unknown_room_type_raises(tmp_path):
    resolver, _ = _build_resolver(tmp_path)

    with pytest.raises(AllotmentNotFoundError):
        resolver.read("SUITE", TARGET_DATE)


def test_second_commit_with_same_read_version_is_stale(tmp_path):
    resolver, repository = _build_resolver(tmp_path)
    read = resolver.read("DLX", TARGET_DATE)

    updated = resolver.set_allocation("DLX", TARGET_DATE, "DIRECT", 5, read.version)
    assert updated.version == 2

    with pytest.raises(StaleVersionError) as exc_info:
        resolver.set_allocation("DLX", TARGET_DATE, "BOOKING_COM", 5, read.version)

    assert exc_info.value.current_version == 2
    stored = repository.get_daily_allotment("DLX", TARGET_DATE)
    assert stored.allocation_vector() == {"DIRECT": 5, "BOOKING_COM": 4}


def test_concurrent_commits_on_same_version_admit_exactly_one(tmp_path):
    resolver, _ = _build_resolver(tmp_path)
    read = resolver.read("DLX", TARGET_DATE)
    barrier = threading.Barrier(2)
    outcomes: list[str] = []
    outcomes_lock = threading.Lock()

    def worker(amount: int) -> None:
        barrier.wait()
        try:
            resolver.bulk_apply("DLX", TARGET_DATE, {"DIRECT": amount, "BOOKING_COM": 10 - amount}, read.version)
            result = "ok"
        except StaleVersionError:
            result = "stale"
        with outcomes_lock:
            outcomes.append(result)

    threads = [threading.Thread(target=worker, args=(amount,)) for amount in (3, 7)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert sorted(outcomes) == ["ok", "stale"]
    assert resolver.read("DLX", TARGET_DATE).version == 2


def test_different_dates_do_not_conflict(tmp_path):
    resolver, _ = _build_resolver(tmp_path)
    first = resolver.read("DLX", TARGET_DATE)
    second = resolver.read("DLX", NEXT_DATE)

    resolver.set_allocation("DLX", TARGET_DATE, "DIRECT", 5, first.version)
    updated = resolver.set_allocation("DLX", NEXT_DATE, "DIRECT", 4, second.version)

    assert updated.version == 2


def test_transfer_retries_against_fresh_state(tmp_path):
    resolver, _ = _build_resolver(tmp_path)
    read = resolver.read("DLX", TARGET_DATE)
    resolver.record_booking("DLX", TARGET_DATE, "BOOKING_COM", 1)

    updated = resolver.transfer("DLX", TARGET_DATE, "BOOKING_COM", "DIRECT", 2, read.version)

    assert updated.version == 3
    assert updated.allocation_vector() == {"DIRECT": 8, "BOOKING_COM": 2}


def test_transfer_without_retry_reports_stale(tmp_path):
    resolver, _ = _build_resolver(tmp_path)
    read = resolver.read("DLX", TARGET_DATE)
    resolver.record_booking("DLX", TARGET_DATE, "BOOKING_COM", 1)

    with pytest.raises(StaleVersionError):
        resolver.transfer(
            "DLX", TARGET_DATE, "BOOKING_COM", "DIRECT", 2, read.version, retry_on_stale=False
        )


def test_cancelled_context_applies_nothing(tmp_path):
    resolver, repository = _build_resolver(tmp_path)
    read = resolver.read("DLX", TARGET_DATE)
    context = OperationContext()
    context.cancel()

    with pytest.raises(OperationCancelledError):
        resolver.set_allocation("DLX", TARGET_DATE, "DIRECT", 2, read.version, context)

    assert repository.get_daily_allotment("DLX", TARGET_DATE).version == 1


def test_lock_wait_respects_context_deadline(tmp_path):
    resolver, repository = _build_resolver(tmp_path)
    read = resolver.read("DLX", TARGET_DATE)

    with resolver.locks.hold(("DLX", TARGET_DATE)):
        with pytest.raises(OperationCancelledError):
            resolver.set_allocation(
                "DLX",
                TARGET_DATE,
                "DIRECT",
                2,
                read.version,
                OperationContext.with_timeout(0.05),
            )

    assert repository.get_daily_allotment("DLX", TARGET_DATE).version == 1


def test_cancellation_while_waiting_for_lock_applies_nothing(tmp_path):
    resolver, repository = _build_resolver(tmp_path)
    read = resolver.read("DLX", TARGET_DATE)
    key = ("DLX", TARGET_DATE)
    context = OperationContext()
    errors: list[Exception] = []

    def worker():
        try:
            resolver.set_allocation("DLX", TARGET_DATE, "DIRECT", 2, read.version, context)
        except OperationCancelledError as exc:
            errors.append(exc)

    with resolver.locks.hold(key):
        thread = threading.Thread(target=worker)
        thread.start()
        deadline = time.monotonic() + 5
        while resolver.locks.users(key) < 2 and time.monotonic() < deadline:
            time.sleep(0.005)
        assert resolver.locks.users(key) == 2
        context.cancel()
    thread.join(timeout=5)

    assert len(errors) == 1
    assert "after acquiring lock" in str(errors[0])
    assert repository.get_daily_allotment("DLX", TARGET_DATE).version == 1


def test_idle_key_locks_are_evicted():
    locks = KeyedLockRegistry(acquire_timeout_seconds=1.0)

    with locks.hold(("DLX", TARGET_DATE)):
        assert len(locks) == 1
        assert locks.users(("DLX", TARGET_DATE)) == 1

    assert len(locks) == 0
    with locks.hold(("DLX", NEXT_DATE)):
        with pytest.raises(OperationCancelledError):
            with locks.hold(("DLX", NEXT_DATE), OperationContext.with_timeout(0.05)):
                pass
        assert locks.users(("DLX", NEXT_DATE)) == 1
    assert len(locks) == 0


def test_copy_forward_applies_source_vector(tmp_path):
    resolver, _ = _build_resolver(tmp_path)
    source = resolver.read("DLX", TARGET_DATE)
    resolver.bulk_apply("DLX", TARGET_DATE, {"DIRECT": 8, "BOOKING_COM": 2}, source.version)
    destination = resolver.read("DLX", NEXT_DATE)

    copied = resolver.copy_forward("DLX", TARGET_DATE, NEXT_DATE, destination.version)

    assert copied.allocation_vector() == {"DIRECT": 8, "BOOKING_COM": 2}
    assert copied.version == 2


def test_cross_date_transfer_moves_units_between_dates(tmp_path):
    resolver, _ = _build_resolver(tmp_path)
    source = resolver.read("DLX", TARGET_DATE)
    destination = resolver.read("DLX", NEXT_DATE)
    destination = resolver.set_allocation("DLX", NEXT_DATE, "DIRECT", 4, destination.version)

    moved_from, moved_to = resolver.cross_date_transfer(
        "DLX",
        TARGET_DATE,
        "BOOKING_COM",
        NEXT_DATE,
        "DIRECT",
        2,
        source.version,
        destination.version,
    )

    assert moved_from.channel("BOOKING_COM").allocated == 2
    assert moved_to.channel("DIRECT").allocated == 6


def test_cross_date_transfer_restores_source_when_destination_rejects(tmp_path):
    resolver, repository = _build_resolver(tmp_path)
    source = resolver.read("DLX", TARGET_DATE)
    destination = resolver.read("DLX", NEXT_DATE)

    with pytest.raises(CapacityExceededError):
        resolver.cross_date_transfer(
            "DLX",
            TARGET_DATE,
            "BOOKING_COM",
            NEXT_DATE,
            "DIRECT",
            2,
            source.version,
            destination.version,
        )

    restored = repository.get_daily_allotment("DLX", TARGET_DATE)
    assert restored.allocation_vector() == {"DIRECT": 6, "BOOKING_COM": 4}
    assert repository.get_daily_allotment("DLX", NEXT_DATE).version == 1


def test_cross_date_rollback_puts_cleared_holds_back(tmp_path):
    resolver, repository = _build_resolver(tmp_path)
    resolver.read("DLX", TARGET_DATE)
    source = resolver.set_hold("DLX", TARGET_DATE, "BOOKING_COM", 3)
    destination = resolver.read("DLX", NEXT_DATE)

    with pytest.raises(CapacityExceededError):
        resolver.cross_date_transfer(
            "DLX",
            TARGET_DATE,
            "BOOKING_COM",
            NEXT_DATE,
            "DIRECT",
            2,
            source.version,
            destination.version,
        )

    restored = repository.get_daily_allotment("DLX", TARGET_DATE)
    assert restored.channel("BOOKING_COM").allocated == 4
    assert restored.channel("BOOKING_COM").held == 3


def test_failed_rollback_keeps_original_error(tmp_path, monkeypatch):
    resolver, repository = _build_resolver(tmp_path)
    source = resolver.read("DLX", TARGET_DATE)
    destination = resolver.read("DLX", NEXT_DATE)
    engine = resolver.engine
    deposit = engine.deposit

    def deposit_failing_on_source(daily, allotment, defaults, channel_name, amount, held=0):
        if channel_name == "BOOKING_COM":
            raise OperationCancelledError("rollback interrupted")
        return deposit(daily, allotment, defaults, channel_name, amount, held=held)

    monkeypatch.setattr(engine, "deposit", deposit_failing_on_source)

    with pytest.raises(CapacityExceededError):
        resolver.cross_date_transfer(
            "DLX",
            TARGET_DATE,
            "BOOKING_COM",
            NEXT_DATE,
            "DIRECT",
            2,
            source.version,
            destination.version,
        )

    assert repository.get_daily_allotment("DLX", TARGET_DATE).allocation_vector() == {
        "DIRECT": 6,
        "BOOKING_COM": 2,
    }


def test_commits_record_events(tmp_path):
    resolver, repository = _build_resolver(tmp_path)
    read = resolver.read("DLX", TARGET_DATE)

    resolver.transfer("DLX", TARGET_DATE, "BOOKING_COM", "DIRECT", 1, read.version)

    events = repository.list_events(room_type_id="DLX", event_type=EventType.TRANSFER)
    assert len(events) == 1
    assert events[0].channel_name == "BOOKING_COM"
    assert events[0].amount == 1
