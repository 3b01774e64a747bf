from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from bookingcore.api import get_db, router
from bookingcore.db import Base
from bookingcore.schedule import default_weekly_schedule, serialize_weekly_schedule


def make_client(tmp_path):
    db_path = tmp_path / "test_bookingcore.db"
    database_url = f"sqlite:///{db_path}"
    engine = create_engine(
        database_url,
        connect_args={"check_same_thread": False},
    )
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)

    app = FastAPI()
    app.include_router(router)

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app)


def make_account(client, name="Praxis Wien"):
    created = client.post("/api/accounts", json={"name": name})
    assert created.status_code == 201
    headers = {"X-Account-Id": str(created.json()["id"]), "X-Actor-Email": "staff@example.com"}
    saved = client.put(
        "/api/availability/schedule",
        json=serialize_weekly_schedule(default_weekly_schedule()),
        headers=headers,
    )
    assert saved.status_code == 200
    return headers


BOOKING = {
    "customer_name": "Anna Huber",
    "customer_phone": "+43 660 1234567",
    "start": "2030-01-07T10:00:00",
    "duration_minutes": 30,
}


def test_account_header_is_required_and_checked(tmp_path):
    client = make_client(tmp_path)

    assert client.get("/api/accounts/me").status_code == 400
    assert client.get("/api/accounts/me", headers={"X-Account-Id": "abc"}).status_code == 400
    assert client.get("/api/accounts/me", headers={"X-Account-Id": "999"}).status_code == 404

    headers = make_account(client)
    me = client.get("/api/accounts/me", headers=headers)
    assert me.status_code == 200
    assert me.json()["timezone"] == "Europe/Vienna"

    bad_tz = client.patch("/api/accounts/me", json={"timezone": "Atlantis/Lost"}, headers=headers)
    assert bad_tz.status_code == 400


def test_free_slots_and_booking_flow(tmp_path):
    client = make_client(tmp_path)
    headers = make_account(client)

    booked = client.post("/api/appointments", json=BOOKING, headers=headers)
    assert booked.status_code == 201
    body = booked.json()
    assert body["status"] == "booked"

    slots = client.get(
        "/api/availability/slots",
        params={"start": "2030-01-07", "end": "2030-01-07", "duration": 30},
        headers=headers,
    )
    assert slots.status_code == 200
    windows = [(s["start"], s["end"]) for s in slots.json()["slots"]]
    assert windows[:2] == [
        ("2030-01-07T08:00:00Z", "2030-01-07T09:00:00Z"),
        ("2030-01-07T09:30:00Z", "2030-01-07T11:00:00Z"),
    ]
    assert "2030-01-07T09:00:00Z" not in slots.json()["bookable_starts"]

    clash = client.post("/api/appointments", json=BOOKING, headers=headers)
    assert clash.status_code == 409

    closed = client.post("/api/appointments", json={**BOOKING, "start": "2030-01-07T20:00:00"}, headers=headers)
    assert closed.status_code == 400


def test_review_queue_approve_and_reject(tmp_path):
    client = make_client(tmp_path)
    headers = make_account(client)
    policy = client.put("/api/review-policy", json={"appointment_review_mode": "always"}, headers=headers)
    assert policy.status_code == 200
    assert policy.json() == {"appointment_review_mode": "always", "message_review_mode": "never"}

    first = client.post("/api/appointments", json=BOOKING, headers=headers).json()
    second = client.post(
        "/api/appointments", json={**BOOKING, "start": "2030-01-07T11:00:00"}, headers=headers
    ).json()
    assert first["status"] == "pending"

    stats = client.get("/api/review/stats", headers=headers).json()
    assert stats == {"pending_appointments": 2, "pending_messages": 0}

    approved = client.post(f"/api/review/approve/{first['id']}", headers=headers)
    assert approved.status_code == 200
    assert approved.json()["status"] == "confirmed"
    assert client.post(f"/api/review/approve/{first['id']}", headers=headers).status_code == 200

    rejected = client.post(f"/api/review/reject/{second['id']}", json={"reason": "Doppelt"}, headers=headers)
    assert rejected.status_code == 200
    assert rejected.json()["notes"].endswith("[REJECTED: Doppelt]")

    pending = client.get("/api/review/pending-appointments", headers=headers).json()
    assert pending == []

    history = client.get(f"/api/appointments/{first['id']}/history", headers=headers).json()
    assert [h["to_status"] for h in history] == ["pending", "confirmed"]
    assert history[1]["actor"] == "staff@example.com"


def test_transitions_map_errors_to_status_codes(tmp_path):
    client = make_client(tmp_path)
    headers = make_account(client)
    appointment = client.post("/api/appointments", json=BOOKING, headers=headers).json()

    invalid = client.post(
        f"/api/appointments/{appointment['id']}/transition", json={"status": "noshow"}, headers=headers
    )
    assert invalid.status_code == 409
    assert "booked -> noshow" in invalid.json()["detail"]

    unknown = client.post(
        f"/api/appointments/{appointment['id']}/transition", json={"status": "archived"}, headers=headers
    )
    assert unknown.status_code == 400

    cancelled = client.delete(f"/api/appointments/{appointment['id']}", headers=headers)
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"
    assert client.get(f"/api/appointments/{appointment['id']}", headers=headers).json()["status"] == "cancelled"

    other = make_account(client, name="Praxis Graz")
    assert client.get(f"/api/appointments/{appointment['id']}", headers=other).status_code == 404
    assert client.get("/api/appointments", headers=other).json() == []


def test_schedule_and_blackout_endpoints(tmp_path):
    client = make_client(tmp_path)
    headers = make_account(client)

    schedule = client.get("/api/availability/schedule", headers=headers).json()
    assert schedule["monday"]["dayOfWeek"] == 1

    broken = client.put(
        "/api/availability/schedule",
        json={"monday": {"isAvailable": True, "timeSlots": []}},
        headers=headers,
    )
    assert broken.status_code == 400

    added = client.post("/api/availability/blackouts", json={"day": "2030-01-07"}, headers=headers)
    assert added.status_code == 201
    assert client.post("/api/availability/blackouts", json={"day": "2030-01-07"}, headers=headers).status_code == 400

    slots = client.get(
        "/api/availability/slots",
        params={"start": "2030-01-07", "end": "2030-01-07", "duration": 30},
        headers=headers,
    )
    assert slots.json()["slots"] == []

    replaced = client.put(
        "/api/availability/blackouts",
        json=[{"day": "2030-12-24", "reason": "Heiligabend", "is_recurring": True}],
        headers=headers,
    )
    assert replaced.status_code == 200
    rows = client.get("/api/availability/blackouts", headers=headers).json()
    assert [r["day"] for r in rows] == ["2030-12-24"]

    removed = client.delete(f"/api/availability/blackouts/{rows[0]['id']}", headers=headers)
    assert removed.status_code == 204
    assert client.delete(f"/api/availability/blackouts/{rows[0]['id']}", headers=headers).status_code == 404


def test_message_review_endpoints(tmp_path):
    client = make_client(tmp_path)
    headers = make_account(client)
    client.put("/api/review-policy", json={"message_review_mode": "always"}, headers=headers)

    draft = client.post(
        "/api/messages", json={"conversation_key": "chat-1", "content": "Hallo!"}, headers=headers
    )
    assert draft.status_code == 201
    assert draft.json()["status"] == "draft"
    message_id = draft.json()["id"]

    queue = client.get("/api/messages/review", headers=headers).json()
    assert [m["id"] for m in queue] == [message_id]

    early = client.post(f"/api/messages/{message_id}/sent", headers=headers)
    assert early.status_code == 409

    edited = client.post(f"/api/messages/{message_id}/send", json={"content": "Grüß Gott!"}, headers=headers)
    assert edited.json()["is_custom_reply"] is True
    assert edited.json()["status"] == "approved"

    sent = client.post(f"/api/messages/{message_id}/sent", headers=headers)
    assert sent.json()["status"] == "sent"
    assert client.post(f"/api/messages/{message_id}/approve", headers=headers).json()["status"] == "sent"


def test_service_endpoints(tmp_path):
    client = make_client(tmp_path)
    headers = make_account(client)

    created = client.post(
        "/api/services", json={"name": "Beratung", "duration_minutes": 60, "price": "75.00"}, headers=headers
    )
    assert created.status_code == 201
    service_id = created.json()["id"]

    assert client.patch(f"/api/services/{service_id}", json={}, headers=headers).status_code == 400
    patched = client.patch(f"/api/services/{service_id}", json={"duration_minutes": 45}, headers=headers)
    assert patched.json()["duration_minutes"] == 45

    booked = client.post(
        "/api/appointments",
        json={**BOOKING, "duration_minutes": None, "service_id": service_id},
        headers=headers,
    )
    assert booked.status_code == 201
    assert booked.json()["duration_minutes"] == 45

    removed = client.delete(f"/api/services/{service_id}", headers=headers)
    assert removed.json()["is_active"] is False
    assert client.get("/api/services", headers=headers).json() == []
    assert len(client.get("/api/services", params={"active_only": "false"}, headers=headers).json()) == 1


def test_patch_appointment_edits_and_reschedules(tmp_path):
    client = make_client(tmp_path)
    headers = make_account(client)
    appointment = client.post("/api/appointments", json=BOOKING, headers=headers).json()
    client.post("/api/appointments", json={**BOOKING, "start": "2030-01-07T11:00:00"}, headers=headers)

    assert client.patch(f"/api/appointments/{appointment['id']}", json={}, headers=headers).status_code == 400

    edited = client.patch(
        f"/api/appointments/{appointment['id']}",
        json={"customer_phone": "+43 660 7654321", "start": "2030-01-07T10:30:00"},
        headers=headers,
    )
    assert edited.status_code == 200
    assert edited.json()["customer_phone"] == "+43 660 7654321"
    assert edited.json()["start_at"] == "2030-01-07T09:30:00"

    clash = client.patch(
        f"/api/appointments/{appointment['id']}", json={"start": "2030-01-07T11:00:00"}, headers=headers
    )
    assert clash.status_code == 409

    history = client.get(f"/api/appointments/{appointment['id']}/history", headers=headers).json()
    assert history[-1]["note"] == "rescheduled from 2030-01-07T09:00:00Z"

    other = make_account(client, name="Praxis Graz")
    assert (
        client.patch(f"/api/appointments/{appointment['id']}", json={"notes": "x"}, headers=other).status_code
        == 404
    )
