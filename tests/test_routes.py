"""API tests con httpx sobre la app FastAPI (base de datos SQLite de prueba)"""
from datetime import timedelta

from httpx import ASGITransport, AsyncClient
import pytest
import pytest_asyncio

from main import app
from shared.auth.jwt_handler import create_access_token
from shared.database.connection import get_db
from services.notifications.services.push_service import get_notifier


def auth(identity):
    token = create_access_token({"sub": identity["user_id"], "role": identity["role"]}, timedelta(hours=1))
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def client(db, notifier):
    """Cliente async con la sesión de prueba inyectada"""
    async def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notifier] = lambda: notifier

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


async def create_event(client, admin, **extra):
    body = {"code": "BK-01", "name": "Konseling BK", "capacity": "10"}
    body.update(extra)
    response = await client.post("/api/v1/events", json=body, headers=auth(admin))
    assert response.status_code == 201, response.text
    return response.json()


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_requires_bearer_token(client):
    response = await client.get("/api/v1/queue/my")
    assert response.status_code in (401, 403)


@pytest.mark.asyncio
async def test_invalid_token_is_rejected(client):
    response = await client.get("/api/v1/queue/my", headers={"Authorization": "Bearer basura"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_student_cannot_create_events(client, make_student):
    student = await make_student()
    response = await client.post("/api/v1/events", json={"code": "X", "name": "X"}, headers=auth(student))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_create_event_validation_message(client, admin):
    response = await client.post(
        "/api/v1/events",
        json={"code": "BK-01", "name": "Konseling", "capacity": "sepuluh"},
        headers=auth(admin),
    )
    assert response.status_code == 400
    assert response.json() == {"message": "Input 'capacity' harus berupa angka valid."}


@pytest.mark.asyncio
async def test_join_and_duplicate_join(client, admin, make_student):
    event = await create_event(client, admin)
    student = await make_student()

    response = await client.post("/api/v1/queue/join", json={"eventIdKegiatan": event["id"]}, headers=auth(student))
    assert response.status_code == 201
    body = response.json()
    assert body["message"] == "Berhasil! Nomor antrean Anda #1."
    assert body["data"]["status"] == "WAITING"

    response = await client.post(f"/api/v1/queue/join/{event['id']}", headers=auth(student))
    assert response.status_code == 400
    assert response.json()["message"] == "Anda sudah memiliki antrean aktif."


@pytest.mark.asyncio
async def test_join_without_event_id(client, make_student):
    student = await make_student()
    response = await client.post("/api/v1/queue/join", json={}, headers=auth(student))
    assert response.status_code == 400
    assert response.json()["message"] == "ID Layanan tidak valid."


@pytest.mark.asyncio
async def test_unknown_ticket_returns_404(client, make_student):
    student = await make_student()
    response = await client.get("/api/v1/queue/00000000-0000-0000-0000-000000000000", headers=auth(student))
    assert response.status_code == 404
    assert response.json() == {"message": "Antrean tidak ditemukan"}


@pytest.mark.asyncio
async def test_full_service_flow(client, admin, make_student, notifier):
    event = await create_event(client, admin)
    student = await make_student()

    joined = (await client.post(f"/api/v1/queue/join/{event['id']}", headers=auth(student))).json()["data"]

    response = await client.put(f"/api/v1/events/{event['id']}/lock", json={"locked": True}, headers=auth(admin))
    assert response.json()["message"] == "Layanan DIKUNCI."

    response = await client.post("/api/v1/queue/admin/call-next", json={"event_id": event["id"]}, headers=auth(admin))
    assert response.status_code == 200
    assert response.json()["message"] == "Memanggil #1. Batas hadir 5 menit."
    assert notifier.user_messages[0]["title"] == "Giliran Anda!"

    response = await client.post(
        "/api/v1/queue/validate-qr",
        json={"event_id": event["id"], "qr_token": joined["access_token"]},
        headers=auth(admin),
    )
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "SERVING"

    response = await client.put("/api/v1/queue/admin/finish", json={"queue_id": joined["id"]}, headers=auth(admin))
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "DONE"

    response = await client.get(f"/api/v1/queue/event/{event['id']}/dashboard", headers=auth(admin))
    summary = response.json()["summary"]
    assert summary["done"] == 1
    assert summary["total"] == 1

    response = await client.get("/api/v1/queue/my", headers=auth(student))
    assert [item["status"] for item in response.json()["history"]] == ["DONE"]


@pytest.mark.asyncio
async def test_ticket_qr_image(client, admin, make_student):
    event = await create_event(client, admin)
    student = await make_student()
    joined = (await client.post(f"/api/v1/queue/join/{event['id']}", headers=auth(student))).json()["data"]

    response = await client.get(f"/api/v1/queue/{joined['id']}/qr", headers=auth(student))

    assert response.status_code == 200
    assert response.headers["content-type"] == "image/png"
    assert response.content.startswith(b"\x89PNG")


@pytest.mark.asyncio
async def test_closing_notifies_school_topic(client, admin, notifier):
    event = await create_event(client, admin)

    response = await client.put(f"/api/v1/events/{event['id']}", json={"stage": "CLOSING"}, headers=auth(admin))

    assert response.status_code == 200
    assert response.json()["event"]["dynamic_status"] == "CLOSING"
    assert notifier.topic_messages[0]["topic"] == f"school_{admin['school_id']}"


@pytest.mark.asyncio
async def test_reset_counter_and_bulk_cancel(client, admin, make_student):
    event = await create_event(client, admin)
    student = await make_student()
    await client.post(f"/api/v1/queue/join/{event['id']}", headers=auth(student))

    response = await client.post(
        "/api/v1/queue/admin/cancel-user-all", json={"user_id": student["user_id"]}, headers=auth(admin)
    )
    assert response.json() == {"message": "Berhasil membatalkan 1 antrian aktif.", "cancelled": 1}

    response = await client.post(
        "/api/v1/queue/admin/reset-counter", json={"event_id": event["id"], "new_avg_time": 3}, headers=auth(admin)
    )
    assert response.status_code == 200
    assert response.json()["current_batch"] == 2


@pytest.mark.asyncio
async def test_check_event_and_list(client, admin, make_student):
    event = await create_event(client, admin, code="BK-CEK")
    student = await make_student()
    await client.post(f"/api/v1/queue/join/{event['id']}", headers=auth(student))

    response = await client.get("/api/v1/queue/check-event/BK-CEK", headers=auth(student))
    assert response.json()["total_waiting"] == 1

    response = await client.get("/api/v1/queue/list", params={"event": event["id"]}, headers=auth(admin))
    assert response.json()["total"] == 1

    response = await client.get("/api/v1/queue/list", params={"event": event["id"]}, headers=auth(student))
    assert response.status_code == 403
