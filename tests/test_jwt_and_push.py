"""Tokens firmados (sesión y ticket) y envío de push"""
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from jose import JWTError

from shared.auth.jwt_handler import (
    create_access_token, create_ticket_token, verify_ticket_token, verify_token
)
from services.notifications.services.push_service import PushService, CeleryNotifier


# ============ JWT ============

@pytest.mark.asyncio
async def test_access_token_round_trip():
    token = create_access_token({"sub": "abc", "role": "USER"})
    payload = await verify_token(token)
    assert payload["sub"] == "abc"
    assert payload["type"] == "access"


@pytest.mark.asyncio
async def test_ticket_token_is_not_a_session_token():
    token, _ = create_ticket_token("q-1", "e-1")
    assert await verify_token(token) is None


def test_ticket_token_expires_after_ttl():
    issued = datetime.now(timezone.utc)
    token, expires_at = create_ticket_token("q-1", "e-1", now=issued)

    assert expires_at == issued + timedelta(minutes=5)
    payload = verify_ticket_token(token)
    assert payload["qid"] == "q-1"
    assert payload["eid"] == "e-1"


def test_expired_ticket_token_is_rejected():
    token, _ = create_ticket_token("q-1", "e-1", now=datetime.now(timezone.utc) - timedelta(minutes=10))
    with pytest.raises(JWTError):
        verify_ticket_token(token)


def test_session_token_is_not_a_ticket():
    with pytest.raises(JWTError):
        verify_ticket_token(create_access_token({"sub": "abc"}))


# ============ PUSH ============

@pytest.fixture
def captured(monkeypatch):
    """Reemplaza httpx.AsyncClient por uno con MockTransport"""
    requests = []
    status = {"code": 200}
    real_client = httpx.AsyncClient

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status["code"], json={"success": 1})

    monkeypatch.setattr(
        httpx, "AsyncClient",
        lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs),
    )
    return requests, status


@pytest.mark.asyncio
async def test_send_to_token_posts_fcm_message(captured):
    requests, _ = captured
    service = PushService(gateway_url="https://push.test/send", server_key="server-key")

    ok = await service.send_to_token("device-1", "Giliran Anda!", "Nomor #1", {"queueId": 7, "skip": None})

    assert ok is True
    assert requests[0].headers["Authorization"] == "key=server-key"
    body = json.loads(requests[0].content)
    assert body == {
        "to": "device-1",
        "notification": {"title": "Giliran Anda!", "body": "Nomor #1"},
        "data": {"queueId": "7"},
    }


@pytest.mark.asyncio
async def test_send_to_topic(captured):
    requests, _ = captured
    service = PushService(gateway_url="https://push.test/send", server_key="server-key")

    assert await service.send_to_topic("school_1", "Update Layanan", "DITUTUP") is True
    assert json.loads(requests[0].content)["to"] == "/topics/school_1"


@pytest.mark.asyncio
async def test_gateway_error_returns_false(captured):
    _, status = captured
    status["code"] = 500
    service = PushService(gateway_url="https://push.test/send", server_key="server-key")

    assert await service.send_to_token("device-1", "t", "b") is False


@pytest.mark.asyncio
async def test_unconfigured_service_only_logs(captured):
    requests, _ = captured
    service = PushService(server_key="")

    assert await service.send_to_token("device-1", "t", "b") is False
    assert await service.send_to_token("", "t", "b") is False
    assert requests == []


def test_celery_notifier_never_raises(monkeypatch):
    from services.notifications.tasks import push_tasks

    class BrokenTask:
        def delay(self, **kwargs):
            raise ConnectionError("broker down")

    monkeypatch.setattr(push_tasks, "send_push_notification_task", BrokenTask())
    monkeypatch.setattr(push_tasks, "send_topic_notification_task", BrokenTask())

    notifier = CeleryNotifier()
    notifier.notify_user("device-1", "t", "b", {"a": 1})
    notifier.notify_user(None, "t", "b")
    notifier.notify_topic("school_1", "t", "b")
