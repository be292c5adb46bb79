"""
Integration tests for the REST API endpoints.

The routes run against the per-test SQLite database through dependency
overrides; notifications go to a recording notifier instead of Redis.
Background tasks finish before the transport returns the response, so the
recorded notifications can be asserted right after each call.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from journeys.domain.enums import ActorRole, JourneyStatus, MessageType
from journeys.infrastructure.models import DriverRequestModel, PassengerRequestModel
from tests.conftest import status_of


# ── Fixture ───────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def client(session_factory, notifier):
    """AsyncClient backed by the test database and a recording notifier."""
    with (
        patch("journeys.workers.timeouts.start_timeout_loop", new_callable=AsyncMock),
        patch("journeys.workers.timeouts.stop_timeout_loop", new_callable=AsyncMock),
    ):
        from journeys.api.app import create_app
        from journeys.api.dependencies import get_notifier, get_session_factory
        from journeys.api.middleware import limiter

        limiter.reset()
        app = create_app()
        app.dependency_overrides[get_session_factory] = lambda: session_factory
        app.dependency_overrides[get_notifier] = lambda: notifier

        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac


def _passenger_body(user_id: int, vehicle_type_id: int, **overrides) -> dict:
    body = {
        "user_id": user_id,
        "batch_id": "batch-api",
        "vehicle_type_id": vehicle_type_id,
        "origin_lat": 19.0896,
        "origin_lng": 72.8656,
        "destination_lat": 19.1176,
        "destination_lng": 72.8490,
        "origin_place": "Cargo terminal",
        "destination_place": "Bandra",
        "shipping_date": "2026-11-02",
    }
    body.update(overrides)
    return body


async def _create_matched(client, seeder, drivers: int = 1):
    vehicle_type_id = await seeder.vehicle_type()
    driver_users = [(await seeder.driver(vehicle_type_id))[0] for _ in range(drivers)]
    passenger = await seeder.user(name="Shipper")
    resp = await client.post(
        "/api/v1/passenger-requests", json=_passenger_body(passenger.id, vehicle_type_id)
    )
    assert resp.status_code == 202
    return passenger, driver_users, resp.json()


# ── Tests ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    resp = await client.get("/api/v1/admin/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_create_passenger_request_returns_202(client: AsyncClient, seeder, notifier):
    _, drivers, data = await _create_matched(client, seeder)

    assert data["created"] is True
    [request] = data["requests"]
    assert request["status"] == JourneyStatus.REQUESTED
    assert request["shipping_date"] == "2026-11-02"
    [match] = data["matches"]
    assert match["matched"] is True
    assert match["decisions"][0]["driver_user_id"] == drivers[0].id
    assert [(party, phone) for party, phone, _ in notifier.sent] == [
        ("driver", drivers[0].phone_number)
    ]
    assert notifier.message_types() == [MessageType.DRIVER_FOUND_SHIPPER_REQUEST.value]


@pytest.mark.asyncio
async def test_get_passenger_request_not_found(client: AsyncClient):
    resp = await client.get("/api/v1/passenger-requests/9999")
    assert resp.status_code == 404
    assert resp.json() == {"status": "fail", "detail": "Passenger request not found"}


@pytest.mark.asyncio
async def test_invalid_body_is_rejected(client: AsyncClient):
    resp = await client.post(
        "/api/v1/passenger-requests",
        json=_passenger_body(1, 1, number_of_vehicles=0),
    )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_full_batch_is_a_client_error(client: AsyncClient, seeder):
    vehicle_type_id = await seeder.vehicle_type()
    passenger = await seeder.user()
    body = _passenger_body(passenger.id, vehicle_type_id)

    first = await client.post("/api/v1/passenger-requests", json=body)
    second = await client.post("/api/v1/passenger-requests", json=body)

    assert first.status_code == 202
    assert first.json()["matches"][0]["matched"] is False
    assert second.status_code == 400
    assert second.json()["status"] == "fail"


@pytest.mark.asyncio
async def test_journey_happy_path(client: AsyncClient, seeder, notifier, session_factory):
    passenger, drivers, data = await _create_matched(client, seeder)
    driver = drivers[0]
    request_id = data["requests"][0]["id"]
    decision_id = data["matches"][0]["decisions"][0]["journey_decision_id"]

    resp = await client.post(
        f"/api/v1/journey-decisions/{decision_id}/accept",
        json={"driver_user_id": driver.id, "shipping_cost_by_driver": 1800},
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == JourneyStatus.ACCEPTED_BY_DRIVER

    resp = await client.post(
        f"/api/v1/passenger-requests/{request_id}/accept-offer",
        json={"user_id": passenger.id, "journey_decision_id": decision_id},
    )
    assert resp.status_code == 200

    resp = await client.post(
        f"/api/v1/journey-decisions/{decision_id}/start",
        json={"driver_user_id": driver.id},
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["journey_id"] is not None

    resp = await client.post(
        f"/api/v1/journey-decisions/{decision_id}/complete",
        json={"actor_user_id": driver.id, "actor_role": "driver"},
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == JourneyStatus.JOURNEY_COMPLETED

    resp = await client.post(
        f"/api/v1/passenger-requests/{request_id}/completion-seen",
        json={"user_id": passenger.id, "journey_decision_id": decision_id, "rating": 5},
    )
    assert resp.status_code == 200
    assert resp.json()["data"] == {"rating_created": True}

    resp = await client.get(f"/api/v1/passenger-requests/{request_id}")
    assert resp.json()["status"] == JourneyStatus.JOURNEY_COMPLETED
    assert resp.json()["is_completion_seen"] is True
    assert notifier.message_types("passenger") == [
        MessageType.DRIVER_ACCEPTED_SHIPPER_REQUEST.value,
        MessageType.JOURNEY_STARTED.value,
        MessageType.JOURNEY_COMPLETED.value,
    ]
    assert notifier.message_types("driver") == [
        MessageType.DRIVER_FOUND_SHIPPER_REQUEST.value,
        MessageType.PASSENGER_ACCEPTED_OFFER.value,
    ]


@pytest.mark.asyncio
async def test_driver_accepting_twice_conflicts(client: AsyncClient, seeder):
    _, drivers, data = await _create_matched(client, seeder)
    decision_id = data["matches"][0]["decisions"][0]["journey_decision_id"]
    url = f"/api/v1/journey-decisions/{decision_id}/accept"

    await client.post(url, json={"driver_user_id": drivers[0].id})
    resp = await client.post(url, json={"driver_user_id": drivers[0].id})

    assert resp.status_code == 409
    assert resp.json()["status"] == "fail"


@pytest.mark.asyncio
async def test_cancel_is_idempotent_and_audited(client: AsyncClient, seeder, notifier):
    passenger, _, data = await _create_matched(client, seeder, drivers=2)
    url = f"/api/v1/passenger-requests/{data['requests'][0]['id']}/cancel"
    body = {"actor_user_id": passenger.id, "reason_type_id": 4}

    first = await client.post(url, json=body)
    second = await client.post(url, json=body)

    assert first.status_code == 200
    assert first.json()["rows_changed"] == 5
    assert second.status_code == 200
    assert second.json()["rows_changed"] == 0
    assert notifier.message_types().count(MessageType.PASSENGER_CANCELLED_REQUEST.value) == 2
    assert notifier.message_types("admin") == [MessageType.CANCELLED_JOURNEY.value]

    resp = await client.get("/api/v1/admin/canceled-journeys")
    assert resp.status_code == 200
    [record] = resp.json()
    assert record["context_type"] == "PassengerRequest"
    assert record["cancellation_status"] == JourneyStatus.CANCELLED_BY_PASSENGER
    assert record["canceled_by_role"] == "passenger"


@pytest.mark.asyncio
async def test_cancel_by_stranger_is_forbidden(client: AsyncClient, seeder):
    _, _, data = await _create_matched(client, seeder)
    stranger = await seeder.user(name="Stranger")

    resp = await client.post(
        f"/api/v1/passenger-requests/{data['requests'][0]['id']}/cancel",
        json={"actor_user_id": stranger.id},
    )

    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_reject_offer_requeues(client: AsyncClient, seeder, session_factory):
    passenger, _, data = await _create_matched(client, seeder)
    request_id = data["requests"][0]["id"]
    decision_id = data["matches"][0]["decisions"][0]["journey_decision_id"]

    resp = await client.post(
        f"/api/v1/passenger-requests/{request_id}/reject-offer",
        json={"user_id": passenger.id, "journey_decision_id": decision_id},
    )

    assert resp.status_code == 200
    assert resp.json()["data"] == {"requeued": True}
    assert await status_of(session_factory, PassengerRequestModel, request_id) == (
        JourneyStatus.WAITING
    )


@pytest.mark.asyncio
async def test_no_answer_endpoint(client: AsyncClient, seeder, notifier):
    _, _, data = await _create_matched(client, seeder)
    decision_id = data["matches"][0]["decisions"][0]["journey_decision_id"]

    resp = await client.post(f"/api/v1/journey-decisions/{decision_id}/no-answer")

    assert resp.status_code == 200
    assert resp.json()["status"] == JourneyStatus.NO_ANSWER_FROM_DRIVER
    assert resp.json()["data"]["requeued"] is True
    assert MessageType.REQUEST_OTHER_DRIVER.value in notifier.message_types("passenger")


@pytest.mark.asyncio
async def test_driver_request_lifecycle(client: AsyncClient, seeder, session_factory):
    vehicle_type_id = await seeder.vehicle_type()
    driver, _ = await seeder.driver(vehicle_type_id, with_request=False)
    body = {"user_id": driver.id, "origin_lat": 19.07, "origin_lng": 72.87}

    first = await client.post("/api/v1/driver-requests", json=body)
    second = await client.post("/api/v1/driver-requests", json=body)

    assert first.status_code == 202
    assert first.json()["created"] is True
    driver_request_id = first.json()["requests"][0]["id"]
    assert second.json()["created"] is False
    assert second.json()["requests"][0]["id"] == driver_request_id

    resp = await client.get(f"/api/v1/driver-requests/{driver_request_id}")
    assert resp.json()["status"] == JourneyStatus.WAITING
    assert resp.json()["cancellation_seen"] == "UNSET"

    resp = await client.post(
        "/api/v1/driver-requests/cancel",
        json={"owner_user_id": driver.id, "actor_user_id": driver.id},
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == JourneyStatus.REJECTED_BY_DRIVER
    assert await status_of(session_factory, DriverRequestModel, driver_request_id) == (
        JourneyStatus.REJECTED_BY_DRIVER
    )

    resp = await client.post(
        f"/api/v1/driver-requests/{driver_request_id}/negative-status-seen",
        json={"user_id": driver.id},
    )
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_driver_without_vehicle_is_forbidden(client: AsyncClient, seeder):
    vehicle_type_id = await seeder.vehicle_type()
    driver, _ = await seeder.driver(vehicle_type_id, with_request=False, with_vehicle=False)

    resp = await client.post(
        "/api/v1/driver-requests",
        json={"user_id": driver.id, "origin_lat": 19.07, "origin_lng": 72.87},
    )

    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_admin_status_endpoints(client: AsyncClient, seeder):
    _, _, data = await _create_matched(client, seeder)
    decision = data["matches"][0]["decisions"][0]

    resp = await client.post(
        "/api/v1/admin/status",
        json={
            "target_status": int(JourneyStatus.ACCEPTED_BY_DRIVER),
            "journey_decision_id": decision["journey_decision_id"],
            "driver_request_id": decision["driver_request_id"],
        },
    )
    assert resp.status_code == 200
    assert resp.json()["affected"] == {"journey_decision": 1, "driver_request": 1}
    assert resp.json()["partial"] is False

    resp = await client.post(
        "/api/v1/admin/negative-status",
        json={
            "target_status": int(JourneyStatus.JOURNEY_COMPLETED),
            "driver_request_id": decision["driver_request_id"],
        },
    )
    assert resp.status_code == 400

    resp = await client.post(
        "/api/v1/admin/status", json={"target_status": 99, "driver_request_id": 1}
    )
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Unknown journey status: 99"


@pytest.mark.asyncio
async def test_delete_requires_admin(client: AsyncClient, seeder, session_factory):
    vehicle_type_id = await seeder.vehicle_type()
    passenger = await seeder.user()
    request_id = await seeder.passenger_request(passenger.id, vehicle_type_id)
    url = f"/api/v1/passenger-requests/{request_id}"

    resp = await client.request(
        "DELETE", url, json={"actor_user_id": passenger.id, "actor_role": "passenger"}
    )
    assert resp.status_code == 403

    admin = await seeder.user(ActorRole.ADMIN, name="Ops")
    resp = await client.request(
        "DELETE", url, json={"actor_user_id": admin.id, "actor_role": "admin"}
    )
    assert resp.status_code == 204

    resp = await client.get(url)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_failed_notification_does_not_fail_request(
    client: AsyncClient, seeder, notifier, session_factory
):
    vehicle_type_id = await seeder.vehicle_type()
    driver, _ = await seeder.driver(vehicle_type_id)
    passenger = await seeder.user()
    notifier.fail_for = driver.phone_number

    resp = await client.post(
        "/api/v1/passenger-requests", json=_passenger_body(passenger.id, vehicle_type_id)
    )

    assert resp.status_code == 202
    assert notifier.sent == []
    request_id = resp.json()["requests"][0]["id"]
    assert await status_of(session_factory, PassengerRequestModel, request_id) == (
        JourneyStatus.REQUESTED
    )
