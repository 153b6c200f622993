import asyncio
import types

import pytest
from fastapi.testclient import TestClient

from birthday_mail_queue.api import API_TOKEN_HEADER_NAME, create_app
from birthday_mail_queue.core import EmailQueueProcessor
from birthday_mail_queue.models import ConfigurationError, QueueConfig
from birthday_mail_queue.persistence import QueueStore
from birthday_mail_queue.transport import SendResult


API_TOKEN = "secret-token"


class DummyProcessor:
    def __init__(self):
        self.calls = []
        self.metrics = types.SimpleNamespace(generate_latest=lambda: b"bmq_sent_total 1.0\n")
        self.report = {"processed": 1, "sent": 1, "retried": 0, "failed": 0, "rate_limited": False}

    async def start_processing(self):
        self.calls.append("start")

    async def stop_processing(self, wait=False):
        self.calls.append("stop")

    async def process_now(self):
        self.calls.append("process_now")
        return dict(self.report)

    async def cleanup_old_items(self, days_old=30):
        self.calls.append(("cleanup", days_old))
        return 4

    def update_config(self, partial):
        self.calls.append(("config", partial))
        if "batch_size" in partial and partial["batch_size"] < 0:
            raise ConfigurationError("batch_size must not be negative")
        return {**QueueConfig().model_dump(), **partial}


class EchoTransport:
    def __init__(self):
        self.calls = []

    async def send(self, recipient, subject, body):
        self.calls.append((recipient, subject))
        return SendResult.success()


@pytest.fixture
def client_and_processor():
    processor = DummyProcessor()
    client = TestClient(create_app(processor, api_token=API_TOKEN))
    client.headers.update({API_TOKEN_HEADER_NAME: API_TOKEN})
    return client, processor


@pytest.fixture
def live_client(tmp_path):
    processor = EmailQueueProcessor(
        QueueStore(str(tmp_path / "api.db")),
        EchoTransport(),
        config=QueueConfig(message_delay=0),
    )
    asyncio.run(processor.init())
    client = TestClient(create_app(processor, api_token=API_TOKEN))
    client.headers.update({API_TOKEN_HEADER_NAME: API_TOKEN})
    return client, processor


def test_requires_valid_token(client_and_processor):
    client, _ = client_and_processor
    client.headers.pop(API_TOKEN_HEADER_NAME)
    assert client.post("/commands/start").status_code == 401
    response = client.post("/commands/start", headers={API_TOKEN_HEADER_NAME: "wrong"})
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid or missing API token"


def test_no_token_configured_allows_requests():
    processor = DummyProcessor()
    client = TestClient(create_app(processor))
    assert client.post("/commands/stop").json() == {"ok": True}
    assert processor.calls == ["stop"]


def test_start_and_stop_commands(client_and_processor):
    client, processor = client_and_processor
    assert client.post("/commands/start").json() == {"ok": True}
    assert client.post("/commands/stop").json() == {"ok": True}
    assert processor.calls == ["start", "stop"]


def test_process_now_returns_cycle_report(client_and_processor):
    client, _ = client_and_processor
    body = client.post("/commands/process-now").json()
    assert body["ok"] is True
    assert body["report"]["sent"] == 1


def test_process_now_surfaces_cycle_error(client_and_processor):
    client, processor = client_and_processor
    processor.report["error"] = "database is locked"
    body = client.post("/commands/process-now").json()
    assert body["ok"] is False
    assert body["error"] == "database is locked"


def test_cleanup_uses_default_and_payload(client_and_processor):
    client, processor = client_and_processor
    assert client.post("/commands/cleanup", json={}).json() == {"ok": True, "removed": 4}
    client.post("/commands/cleanup", json={"days_old": 7})
    assert processor.calls == [("cleanup", 30), ("cleanup", 7)]
    assert client.post("/commands/cleanup", json={"days_old": -1}).status_code == 422


def test_config_update_forwards_only_given_fields(client_and_processor):
    client, processor = client_and_processor
    body = client.post("/config", json={"max_per_minute": 5}).json()
    assert body["ok"] is True
    assert body["config"]["max_per_minute"] == 5
    assert processor.calls == [("config", {"max_per_minute": 5})]


def test_config_rejects_unknown_and_invalid_fields(client_and_processor):
    client, _ = client_and_processor
    assert client.post("/config", json={"max_per_day": 5}).status_code == 422
    response = client.post("/config", json={"batch_size": -1})
    assert response.status_code == 400
    assert "batch_size" in response.json()["detail"]


def test_metrics_endpoint(client_and_processor):
    client, _ = client_and_processor
    response = client.get("/metrics")
    assert response.status_code == 200
    assert b"bmq_sent_total" in response.content


def test_enqueue_then_process_through_api(live_client):
    client, processor = live_client
    response = client.post(
        "/queue",
        json={
            "contact": {"id": 7, "name": "Anna", "email": "anna@example.com"},
            "subject": "Happy Birthday",
            "body": "Best wishes",
            "priority": 1,
        },
    )
    assert response.status_code == 200
    queue_id = response.json()["queue_id"]

    messages = client.get("/messages", params={"status": "pending"}).json()["messages"]
    assert [m["id"] for m in messages] == [queue_id]
    assert messages[0]["contact_id"] == "7"

    report = client.post("/commands/process-now").json()["report"]
    assert report["sent"] == 1
    assert processor.transport.calls == [("anna@example.com", "Happy Birthday")]

    stats = client.get("/stats").json()
    assert (stats["pending"], stats["sent"], stats["total"]) == (0, 1, 1)
    assert stats["rate_limits"]["minute"] == {"used": 1, "max": 10}
    assert stats["last_24h"] == {"sent": 1, "retry": 0, "failed": 0}

    entries = client.get("/send-log").json()["entries"]
    assert entries[0]["status"] == "sent"
    assert entries[0]["contact_name"] == "Anna"


def test_enqueue_without_email_is_rejected(live_client):
    client, processor = live_client
    response = client.post("/queue", json={"contact": {"name": "Anna"}, "subject": "s", "body": "b"})
    assert response.status_code == 400
    assert response.json()["detail"] == "No email address for contact"
    assert processor.transport.calls == []


def test_status_reports_idle_processor(live_client):
    client, _ = live_client
    body = client.get("/status").json()
    assert body["running"] is False
    assert body["state"] == "idle"
    assert body["config"]["max_per_hour"] == 100
    assert body["stats"]["total"] == 0


def test_live_config_update_changes_limiter(live_client):
    client, processor = live_client
    response = client.post("/config", json={"max_per_hour": 50, "retry_delays": [60]})
    assert response.status_code == 200
    assert processor.rate_limiter.max_per_hour == 50
    assert processor.config.retry_delays == (60,)


def test_server_lifespan_initialises_and_starts(tmp_path):
    from birthday_mail_queue.server import build_app

    settings = {
        "db_path": str(tmp_path / "server.db"),
        "api_token": None,
        "start_active": True,
        "queue": {"processing_interval": 3600, "cleanup_interval": 3600},
    }
    app = build_app(settings)
    with TestClient(app) as client:
        body = client.get("/status").json()
        assert body["running"] is True
        assert body["stats"]["total"] == 0
    assert app.state.processor.running is False
