import types
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from prometheus_client import CollectorRegistry

from mail_scheduler import api
from mail_scheduler.api import API_TOKEN_HEADER_NAME, create_app
from mail_scheduler.models import ScheduledMessage
from mail_scheduler.prometheus import SchedulerMetrics
from mail_scheduler.service import MailScheduler

API_TOKEN = "secret-token"


class DummyService:
    def __init__(self):
        self.calls = []
        self.metrics = types.SimpleNamespace(generate_latest=lambda: b"metrics-data")
        self.messages = []

    async def submit(self, to, subject, body, *, sender=None, scheduled_at=None):
        self.calls.append(("submit", to, subject, body, sender, scheduled_at))
        ts = scheduled_at.timestamp() if scheduled_at else 1_700_000_000.0
        message = ScheduledMessage(
            to=to, subject=subject, body=body, sender=sender or "anonymous", scheduled_ts=ts, created_ts=ts
        )
        self.messages.insert(0, message)
        return message

    async def list_messages(self, limit=None):
        self.calls.append(("list", limit))
        return self.messages[:limit] if limit else list(self.messages)

    async def stats(self):
        return {"messages": {"PENDING": len(self.messages)}, "jobs": {"waiting": 0}}

    def run_now(self):
        self.calls.append(("run_now",))

    async def refresh_gauges(self):
        self.calls.append(("refresh_gauges",))


@pytest.fixture(autouse=True)
def reset_service():
    original = api.service
    api.service = None
    try:
        yield
    finally:
        api.service = original


@pytest.fixture
def client_and_service():
    svc = DummyService()
    client = TestClient(create_app(svc, api_token=API_TOKEN))
    client.headers.update({API_TOKEN_HEADER_NAME: API_TOKEN})
    return client, svc


def test_returns_500_when_service_missing():
    app = create_app(DummyService(), api_token=API_TOKEN)
    api.service = None
    client = TestClient(app)
    response = client.post("/commands/run-now", headers={API_TOKEN_HEADER_NAME: API_TOKEN})
    assert response.status_code == 500
    assert response.json()["detail"] == "Service not initialized"


def test_rejects_missing_token():
    client = TestClient(create_app(DummyService(), api_token=API_TOKEN))
    for method, path in (("get", "/status"), ("get", "/api/emails"), ("post", "/commands/run-now"), ("get", "/metrics")):
        response = getattr(client, method)(path)
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid or missing API token"

    wrong = client.get("/status", headers={API_TOKEN_HEADER_NAME: "nope"})
    assert wrong.status_code == 401


def test_health_is_public():
    client = TestClient(create_app(DummyService(), api_token=API_TOKEN))
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_no_token_configured_allows_requests():
    client = TestClient(create_app(DummyService()))
    assert client.get("/status").status_code == 200


def test_schedule_email(client_and_service):
    client, svc = client_and_service
    response = client.post(
        "/api/emails",
        json={
            "to": "bob@example.com",
            "subject": "Hello",
            "body": "<p>Hi</p>",
            "sender": "alice",
            "scheduledAt": "2030-01-01T09:00:00Z",
        },
    )

    assert response.status_code == 201
    data = response.json()
    assert data["to"] == "bob@example.com"
    assert data["status"] == "PENDING"
    assert data["sender"] == "alice"
    assert data["scheduledAt"].startswith("2030-01-01T09:00:00")
    _, to, subject, body, sender, scheduled_at = svc.calls[0]
    assert (to, subject, body, sender) == ("bob@example.com", "Hello", "<p>Hi</p>", "alice")
    assert scheduled_at == datetime(2030, 1, 1, 9, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "payload",
    [
        {"subject": "Hello", "body": "<p>Hi</p>"},
        {"to": "bob@example.com", "body": "<p>Hi</p>"},
        {"to": "bob@example.com", "subject": "Hello"},
        {"to": "", "subject": "Hello", "body": "<p>Hi</p>"},
    ],
)
def test_schedule_email_missing_fields(client_and_service, payload):
    client, svc = client_and_service
    response = client.post("/api/emails", json=payload)
    assert response.status_code == 400
    assert response.json() == {"detail": "Missing required fields"}
    assert svc.calls == []


def test_list_emails(client_and_service):
    client, _svc = client_and_service
    for subject in ("first", "second"):
        client.post("/api/emails", json={"to": "bob@example.com", "subject": subject, "body": "x"})

    listed = client.get("/api/emails").json()
    assert [item["subject"] for item in listed] == ["second", "first"]
    assert listed[0]["sender"] == "anonymous"
    assert [item["subject"] for item in client.get("/api/emails", params={"limit": 1}).json()] == ["second"]


def test_commands_and_metrics(client_and_service):
    client, svc = client_and_service

    assert client.post("/commands/run-now").json() == {"ok": True}
    assert ("run_now",) in svc.calls

    status = client.get("/status").json()
    assert status["ok"] is True
    assert status["jobs"] == {"waiting": 0}

    response = client.get("/metrics")
    assert response.status_code == 200
    assert response.content == b"metrics-data"
    assert ("refresh_gauges",) in svc.calls


def test_round_trip_with_real_service(tmp_path):
    service = MailScheduler(db_path=str(tmp_path / "api.db"), metrics=SchedulerMetrics(CollectorRegistry()))

    @asynccontextmanager
    async def lifespan(app):
        await service.init()
        yield

    with TestClient(create_app(service, lifespan=lifespan)) as client:
        created = client.post("/api/emails", json={"to": "bob@example.com", "subject": "Hi", "body": "<p>Hi</p>"})
        assert created.status_code == 201
        listed = client.get("/api/emails").json()
        assert [item["id"] for item in listed] == [created.json()["id"]]
        assert listed[0]["sentAt"] is None
        assert client.get("/status").json()["messages"]["PENDING"] == 1
        assert b"msched_messages" in client.get("/metrics").content
