from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.testclient import TestClient

from backend.controllers.allotment_controller import router as allotment_router
from backend.repository.data_repository import DataRepository
from backend.services.allotment_service import AllotmentService
from backend.services.release_scheduler import ReleaseScheduler
from backend.services.settings_service import SettingsService
from backend.utils.config import get_settings


def _build_test_settings(tmp_path, filename: str):
    base = get_settings()
    return replace(
        base,
        database_path=tmp_path / filename,
        default_total_inventory=10,
        default_overbooking_allowed=False,
        default_overbooking_limit=0,
    )


def _build_test_app(tmp_path) -> tuple[FastAPI, DataRepository]:
    settings = _build_test_settings(tmp_path, "allotment_api.db")
    repository = DataRepository(settings)
    repository.initialize_database()
    settings_service = SettingsService(repository=repository, settings=settings)
    settings_service.seed_if_missing()
    allotment_service = AllotmentService(
        repository=repository,
        settings_service=settings_service,
        settings=settings,
    )
    release_scheduler = ReleaseScheduler(
        repository=repository,
        resolver=allotment_service.resolver,
        settings_service=settings_service,
        settings=settings,
    )

    app = FastAPI()
    app.include_router(allotment_router)
    app.state.repository = repository
    app.state.allotment_service = allotment_service
    app.state.release_scheduler = release_scheduler
    return app, repository


def _create_deluxe(client: TestClient) -> None:
    response = client.post(
        "/allotments",
        json={
            "room_type_id": "DLX",
            "name": "Deluxe",
            "allocation_method": "PERCENTAGE",
            "channels": [
                {"name": "DIRECT", "type": "DIRECT", "allocation": 60, "priority": 1, "rate": 100.0},
                {
                    "name": "BOOKING_COM",
                    "type": "BOOKING_COM",
                    "allocation": 40,
                    "priority": 2,
                    "commission": 15.0,
                    "rate": 120.0,
                },
            ],
        },
    )
    assert response.status_code == 201, response.text


def test_allotment_end_to_end_flow(tmp_path):
    app, repository = _build_test_app(tmp_path)
    client = TestClient(app)
    _create_deluxe(client)

    # Range read materializes each date from the percentage baseline.
    range_response = client.get(
        "/allotments/DLX",
        params={"start_date": "2026-03-01", "end_date": "2026-03-03"},
    )
    assert range_response.status_code == 200, range_response.text
    days = range_response.json()["daily_allotments"]
    assert [day["date"] for day in days] == ["2026-03-01", "2026-03-02", "2026-03-03"]
    first = days[0]
    allocated = {entry["channel_name"]: entry["allocated"] for entry in first["channels"]}
    assert allocated == {"DIRECT": 6, "BOOKING_COM": 4}
    assert first["version"] == 1

    booking_response = client.post(
        "/allotments/DLX/bookings",
        json={
            "channel_name": "BOOKING_COM",
            "check_in": "2026-03-01",
            "check_out": "2026-03-02",
            "rooms": 1,
        },
    )
    assert booking_response.status_code == 201, booking_response.text
    booked_version = booking_response.json()[0]["version"]

    transfer_response = client.post(
        "/allotments/DLX/days/2026-03-01/transfer",
        json={
            "from_channel": "BOOKING_COM",
            "to_channel": "DIRECT",
            "amount": 2,
            "expected_version": booked_version,
        },
    )
    assert transfer_response.status_code == 200, transfer_response.text
    transferred = transfer_response.json()
    allocated = {entry["channel_name"]: entry["allocated"] for entry in transferred["channels"]}
    assert allocated == {"DIRECT": 8, "BOOKING_COM": 2}

    insufficient = client.post(
        "/allotments/DLX/days/2026-03-01/transfer",
        json={
            "from_channel": "BOOKING_COM",
            "to_channel": "DIRECT",
            "amount": 4,
            "expected_version": transferred["version"],
        },
    )
    assert insufficient.status_code == 409
    assert insufficient.json()["detail"]["shortfall"] == 3

    events = client.get("/events", params={"room_type_id": "DLX", "event_type": "transfer"})
    assert events.status_code == 200
    assert len(events.json()) == 1
    assert repository.count_events() >= 2


def test_stale_version_is_rejected_with_current_version(tmp_path):
    app, _ = _build_test_app(tmp_path)
    client = TestClient(app)
    _create_deluxe(client)
    client.get("/allotments/DLX", params={"start_date": "2026-03-01", "end_date": "2026-03-01"})

    first = client.post(
        "/allotments/DLX/days/2026-03-01/allocation",
        json={"channel_name": "DIRECT", "amount": 5, "expected_version": 1},
    )
    second = client.post(
        "/allotments/DLX/days/2026-03-01/allocation",
        json={"channel_name": "BOOKING_COM", "amount": 3, "expected_version": 1},
    )

    assert first.status_code == 200
    assert second.status_code == 409
    assert second.json()["detail"]["current_version"] == 2


def test_bulk_apply_respects_overbooking_settings(tmp_path):
    app, _ = _build_test_app(tmp_path)
    client = TestClient(app)
    _create_deluxe(client)
    client.get("/allotments/DLX", params={"start_date": "2026-03-01", "end_date": "2026-03-01"})

    rejected = client.post(
        "/allotments/DLX/days/2026-03-01/bulk",
        json={"allocations": {"DIRECT": 6, "BOOKING_COM": 5}, "expected_version": 1},
    )
    assert rejected.status_code == 409
    assert rejected.json()["detail"]["shortfall"] == 1

    current = client.get("/settings").json()
    current.update(overbooking_allowed=True, overbooking_limit=20)
    saved = client.put("/settings", json=current)
    assert saved.status_code == 200, saved.text
    assert saved.json()["version"] == 2

    admitted = client.post(
        "/allotments/DLX/days/2026-03-01/bulk",
        json={"allocations": {"DIRECT": 6, "BOOKING_COM": 5}, "expected_version": 1},
    )
    assert admitted.status_code == 200, admitted.text
    assert admitted.json()["version"] == 2


def test_invalid_settings_are_rejected(tmp_path):
    app, _ = _build_test_app(tmp_path)
    client = TestClient(app)

    current = client.get("/settings").json()
    current["timezone"] = "Nowhere/Special"
    response = client.put("/settings", json=current)

    assert response.status_code == 400
    assert "timezone" in response.json()["detail"]["message"]

    current["timezone"] = "UTC"
    current["overbooking_limit"] = 80
    assert client.put("/settings", json=current).status_code == 422


def test_daily_read_does_not_materialize(tmp_path):
    app, _ = _build_test_app(tmp_path)
    client = TestClient(app)
    _create_deluxe(client)

    response = client.get("/allotments/DLX/days/2026-04-01")

    assert response.status_code == 404


def test_delete_channel_redistributes_to_direct(tmp_path):
    app, _ = _build_test_app(tmp_path)
    client = TestClient(app)
    _create_deluxe(client)
    client.get("/allotments/DLX", params={"start_date": "2026-03-01", "end_date": "2026-03-01"})

    response = client.delete("/allotments/DLX/channels/BOOKING_COM")
    assert response.status_code == 200, response.text
    assert [channel["name"] for channel in response.json()["channels"]] == ["DIRECT"]

    daily = client.get("/allotments/DLX/days/2026-03-01").json()
    allocated = {entry["channel_name"]: entry["allocated"] for entry in daily["channels"]}
    assert allocated == {"DIRECT": 10}


def test_apply_method_and_booking_restrictions(tmp_path):
    app, _ = _build_test_app(tmp_path)
    client = TestClient(app)
    _create_deluxe(client)

    over_capacity = client.post(
        "/allotments/DLX/apply-method",
        json={"start_date": "2026-03-01", "end_date": "2026-03-02", "method": "FIXED"},
    )
    assert over_capacity.status_code == 409, over_capacity.text
    assert over_capacity.json()["detail"]["shortfall"] == 90
    unchanged = client.get(
        "/allotments/DLX", params={"start_date": "2026-03-01", "end_date": "2026-03-01"}
    ).json()
    assert unchanged["allocation_method"] == "PERCENTAGE"
    allocated = {
        entry["channel_name"]: entry["allocated"]
        for entry in unchanged["daily_allotments"][0]["channels"]
    }
    assert allocated == {"DIRECT": 6, "BOOKING_COM": 4}

    update = client.put(
        "/allotments/DLX/channels",
        json={
            "channels": [
                {"name": "DIRECT", "type": "DIRECT", "allocation": 6, "priority": 1},
                {
                    "name": "BOOKING_COM",
                    "type": "BOOKING_COM",
                    "allocation": 3,
                    "priority": 2,
                    "restrictions": {"min_stay": 2},
                },
            ]
        },
    )
    assert update.status_code == 200, update.text

    applied = client.post(
        "/allotments/DLX/apply-method",
        json={"start_date": "2026-03-01", "end_date": "2026-03-02", "method": "FIXED"},
    )
    assert applied.status_code == 200, applied.text
    allocated = {entry["channel_name"]: entry["allocated"] for entry in applied.json()[0]["channels"]}
    assert allocated == {"DIRECT": 6, "BOOKING_COM": 3}

    too_short = client.post(
        "/allotments/DLX/bookings",
        json={"channel_name": "BOOKING_COM", "check_in": "2026-03-01", "check_out": "2026-03-02"},
    )
    assert too_short.status_code == 400
    assert "min_stay" in too_short.json()["detail"]["message"]


def test_cancelled_stay_nets_out_of_booking_history(tmp_path):
    app, repository = _build_test_app(tmp_path)
    client = TestClient(app)
    _create_deluxe(client)
    stay = {"channel_name": "DIRECT", "check_in": "2026-03-01", "check_out": "2026-03-03", "rooms": 2}

    assert client.post("/allotments/DLX/bookings", json=stay).status_code == 201
    cancelled = client.post("/allotments/DLX/bookings/cancel", json=stay)
    assert cancelled.status_code == 200, cancelled.text

    history = repository.get_booking_history("DLX", datetime(2000, 1, 1, tzinfo=timezone.utc))
    assert sorted(record.rooms for record in history) == [-2, -2, 2, 2]
    assert sum(record.rooms for record in history) == 0


def test_release_sweep_endpoint_runs(tmp_path):
    app, _ = _build_test_app(tmp_path)
    client = TestClient(app)

    response = client.post("/release-sweep")

    assert response.status_code == 200
    assert response.json() == {"released": []}
