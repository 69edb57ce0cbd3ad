from datetime import timedelta

import pytest
from httpx import ASGITransport, AsyncClient

from booking.api.app import app, issue_token
from booking.app.domain.actors import Actor, Role
from booking.app.services import client_services
from booking.app.services.shared_services import local_today

ADMIN_HEADERS = {"Authorization": f"Bearer {issue_token(Actor(id='admin-1', role=Role.ADMIN))}"}


def _auth(client_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_token(Actor(id=client_id))}"}


def _day(offset: int = 1) -> str:
    return (local_today() + timedelta(days=offset)).isoformat()


@pytest.fixture
async def client(db, dispatcher):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


async def _create(client: AsyncClient, slot: str = "10:00", phone: str = "+7 999 123-45-67", day: str | None = None):
    return await client.post(
        "/api/bookings",
        json={
            "booking_date": day or _day(),
            "booking_time": slot,
            "client_name": "Анна",
            "client_phone": phone,
            "client_email": "anna@example.com",
        },
    )


async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


async def test_available_slots_endpoint(client):
    resp = await client.get("/api/slots/available", params={"date": _day()})
    assert resp.status_code == 200
    assert resp.json() == {"date": _day(), "slots": [f"{h:02d}:00" for h in range(9, 18)]}

    resp = await client.get("/api/slots/available", params={"date": "tomorrow"})
    assert resp.status_code == 400
    assert resp.json()["detail"]["error"] == "invalid_date"

    resp = await client.get("/api/slots/available", params={"date": _day(31)})
    assert resp.status_code == 400
    assert resp.json()["detail"]["error"] == "date_out_of_range"


async def test_create_booking_endpoint(client):
    resp = await _create(client)
    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "pending_payment"
    assert body["booking_time"] == "10:00"

    resp = await _create(client, phone="+7 900 000-00-01")
    assert resp.status_code == 409
    assert resp.json()["detail"]["error"] == "slot_unavailable"

    resp = await client.post("/api/bookings", json={"booking_date": _day(), "booking_time": "11:00"})
    assert resp.status_code == 400
    assert resp.json()["detail"]["error"] == "invalid_client_name"


async def test_booking_access_control(client):
    booking = (await _create(client)).json()
    url = f"/api/bookings/{booking['id']}"

    assert (await client.get(url)).status_code == 401
    assert (await client.get(url, headers={"Authorization": "Basic abc"})).status_code == 401
    assert (await client.get(url, headers={"Authorization": "Bearer not-a-jwt"})).json()["detail"] == "invalid_token"
    assert (await client.get(url, headers=_auth(booking["client_id"]))).status_code == 200
    assert (await client.get(url, headers=_auth("someone-else"))).status_code == 403
    assert (await client.get(url, headers=ADMIN_HEADERS)).status_code == 200

    resp = await client.get("/api/bookings/999", headers=ADMIN_HEADERS)
    assert resp.status_code == 404
    assert resp.json()["detail"]["error"] == "not_found"


async def test_expired_token_is_rejected(client):
    expired = issue_token(Actor(id="c1"), ttl_seconds=-10)
    resp = await client.get("/api/bookings/1", headers={"Authorization": f"Bearer {expired}"})
    assert resp.status_code == 401
    assert resp.json()["detail"] == "token_expired"


async def test_payment_reschedule_cancel_flow(client):
    booking = (await _create(client)).json()
    headers = _auth(booking["client_id"])
    base = f"/api/bookings/{booking['id']}"

    resp = await client.post(f"{base}/payment", json={}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["success"] is True
    assert resp.json()["booking"]["status"] == "confirmed"
    assert resp.json()["payment_id"].startswith("pay_")

    resp = await client.post(f"{base}/payment", json={}, headers=headers)
    assert resp.status_code == 409
    assert resp.json()["detail"]["error"] == "invalid_state"

    resp = await client.put(
        f"{base}/reschedule", json={"new_date": _day(2), "new_time": "15:00", "reason": "Работа"}, headers=headers
    )
    assert resp.status_code == 200
    assert (resp.json()["booking_date"], resp.json()["booking_time"]) == (_day(2), "15:00")

    history = (await client.get(f"{base}/reschedule-history", headers=headers)).json()
    assert len(history) == 1
    assert (history[0]["old_time"], history[0]["new_time"], history[0]["reason"]) == ("10:00", "15:00", "Работа")

    resp = await client.post(f"{base}/cancel", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"

    upcoming = await client.get("/api/bookings/upcoming", params={"phone": "+7 999 123-45-67"})
    assert upcoming.status_code == 200
    assert upcoming.json() == []


async def test_admin_routes_require_admin(client):
    booking = (await _create(client)).json()
    headers = _auth(booking["client_id"])

    resp = await client.get("/api/admin/bookings", headers=headers)
    assert resp.status_code == 403
    assert resp.json()["detail"]["error"] == "forbidden"
    assert (await client.get("/api/admin/settings")).status_code == 401

    resp = await client.get("/api/admin/bookings", params={"status": "pending_payment"}, headers=ADMIN_HEADERS)
    assert resp.status_code == 200
    assert [b["id"] for b in resp.json()] == [booking["id"]]


async def test_admin_blocking_and_settings(client):
    resp = await client.patch("/api/admin/settings", json={"session_duration": 5}, headers=ADMIN_HEADERS)
    assert resp.status_code == 400
    assert resp.json()["detail"]["error"] == "invalid_session_duration"

    resp = await client.patch(
        "/api/admin/settings", json={"work_start": "10:00", "work_end": "13:00"}, headers=ADMIN_HEADERS
    )
    assert resp.status_code == 200
    assert resp.json() == {"work_start": "10:00", "work_end": "13:00", "session_duration": 60}

    day = _day(3)
    resp = await client.post(
        "/api/admin/blocked-slots", json={"slot_date": day, "block_entire_day": True}, headers=ADMIN_HEADERS
    )
    assert resp.status_code == 201
    blocked = resp.json()["blocked"]
    assert [b["slot_time"] for b in blocked] == ["10:00", "11:00", "12:00"]

    resp = await client.get("/api/blocked-days", params={"start_date": _day(0), "end_date": _day(30)})
    assert resp.json() == {"blocked_days": [day]}

    resp = await client.delete(f"/api/admin/blocked-slots/{blocked[0]['id']}", headers=ADMIN_HEADERS)
    assert resp.json() == {"success": True, "deleted": True}
    resp = await client.delete(f"/api/admin/blocked-slots/{blocked[0]['id']}", headers=ADMIN_HEADERS)
    assert resp.json() == {"success": True, "deleted": False}

    resp = await client.get("/api/slots/available", params={"date": day})
    assert resp.json()["slots"] == ["10:00"]


async def test_admin_complete_and_delete(client):
    booking = (await _create(client)).json()
    base = f"/api/admin/bookings/{booking['id']}"

    resp = await client.post(f"{base}/complete", headers=ADMIN_HEADERS)
    assert resp.status_code == 409

    await client.post(f"/api/bookings/{booking['id']}/payment", headers=ADMIN_HEADERS)
    resp = await client.post(f"{base}/complete", headers=ADMIN_HEADERS)
    assert resp.status_code == 200
    assert resp.json()["status"] == "completed"

    resp = await client.delete(base, headers=ADMIN_HEADERS)
    assert resp.status_code == 200
    assert resp.json()["booking"]["id"] == booking["id"]
    assert (await client.delete(base, headers=ADMIN_HEADERS)).status_code == 404


async def test_unexpected_errors_become_internal_error(client, monkeypatch):
    async def broken(*_args, **_kwargs):
        raise RuntimeError("database exploded")

    monkeypatch.setattr(client_services, "get_available_slots", broken)
    resp = await client.get("/api/slots/available", params={"date": _day()})
    assert resp.status_code == 500
    detail = resp.json()["detail"]
    assert detail["error"] == "internal_error"
    assert detail["operation"] == "slots_failed"
    assert "exploded" not in detail["message"]
