"""Tests for main FastAPI application."""

import logging
import time

import pytest
from fastapi.testclient import TestClient

from mosaic.core.events import EventHandlerStatus
from mosaic.main import app

HEADERS = {"X-API-Key": "test_api_key"}


@pytest.fixture
def client(monkeypatch, tmp_path):
    """Client with the full lifespan: event system, bundled plugins and broadcaster."""
    monkeypatch.setenv("API_KEY", "test_api_key")
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("MOSAIC_EVENTS_MAX_RETRIES", "0")
    monkeypatch.setenv("MOSAIC_EVENTS_ENABLE_METRICS", "false")
    with TestClient(app) as test_client:
        yield test_client

    # Drop the handlers the lifespan installed on the root logger
    root = logging.getLogger()
    for handler in root.handlers:
        handler.close()
    root.handlers = []


@pytest.fixture
def event_system(client):
    return client.app.state.event_system


def wait_for(predicate, timeout=2.0):
    """Poll while the app's event loop keeps processing in its own thread."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def failing_handler(event):
    raise RuntimeError("handler exploded")


def test_requires_api_key(client):
    response = client.get("/health")
    assert response.status_code in (401, 403)

    response = client.get("/health", headers={"X-API-Key": "wrong"})
    assert response.status_code == 403


def test_api_key_is_case_insensitive(client):
    response = client.get("/health", headers={"X-API-Key": "TEST_API_KEY"})
    assert response.status_code == 200


def test_health(client):
    response = client.get("/health", headers=HEADERS)

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["processing"] is True
    assert "activity_log" in data["plugins"]


def test_startup_hook_publishes_event(client, event_system):
    assert len(event_system.get_history("system.started")) == 1


def test_publish_event(client, event_system):
    received = []
    event_system.subscribe("order.placed", received.append)

    response = client.post(
        "/api/events",
        json={"type": "order.placed", "payload": {"total": 5}, "priority": "high", "tags": ["api"]},
        headers=HEADERS,
    )

    assert response.status_code == 200
    event_id = response.json()["event_id"]
    assert wait_for(lambda: len(received) == 1)
    assert received[0].id == event_id
    assert received[0].payload == {"total": 5}
    assert received[0].tags == ["api"]


def test_publish_validation_error(client):
    response = client.post("/api/events", json={"type": "", "priority": "urgent"}, headers=HEADERS)

    assert response.status_code == 422
    assert "detail" in response.json()


def test_publish_batch(client, event_system):
    response = client.post(
        "/api/events/batch",
        json={"events": [{"type": "batch.a"}, {"type": "batch.b"}], "priority": "low"},
        headers=HEADERS,
    )

    assert response.status_code == 200
    assert len(response.json()["event_ids"]) == 2
    assert [e.type for e in event_system.get_history("batch.a")] == ["batch.a"]


def test_emit_event(client, event_system):
    event_system.subscribe("greeting", lambda event: f"hello {event.payload['name']}")

    response = client.post(
        "/api/events/emit",
        json={"type": "greeting", "payload": {"name": "ada"}},
        headers=HEADERS,
    )

    assert response.status_code == 200
    results = response.json()["results"]
    user_results = [r for r in results if r["result"] == "hello ada"]
    assert len(user_results) == 1
    assert user_results[0]["status"] == EventHandlerStatus.COMPLETED.value


def test_history_and_stats(client, event_system):
    for n in range(3):
        client.post("/api/events", json={"type": "history.test", "payload": {"n": n}}, headers=HEADERS)

    response = client.get(
        "/api/events/history", params={"event_type": "history.test", "limit": 2}, headers=HEADERS
    )
    assert response.status_code == 200
    assert [e["payload"]["n"] for e in response.json()] == [1, 2]

    response = client.get("/api/events/history", params={"limit": -1}, headers=HEADERS)
    assert response.status_code == 422

    assert wait_for(
        lambda: event_system.get_stats("history.test").total_events == 3
    )
    response = client.get("/api/events/stats", params={"event_type": "history.test"}, headers=HEADERS)
    assert response.json()["successful_events"] == 3


def test_metrics(client):
    response = client.get("/api/events/metrics", headers=HEADERS)

    assert response.status_code == 200
    data = response.json()
    assert data["total_events_published"] >= 1
    assert data["active_subscriptions"] >= 2


def test_subscriptions(client):
    response = client.get("/api/events/subscriptions", headers=HEADERS)

    assert response.status_code == 200
    assert any(s["event_type"] == "*" for s in response.json())


def test_dead_letter_retry_and_clear(client, event_system):
    event_system.subscribe("risky", failing_handler)

    response = client.post("/api/events/emit", json={"type": "risky"}, headers=HEADERS)
    assert any(r["status"] == "failed" for r in response.json()["results"])

    response = client.get("/api/events/dead-letter", headers=HEADERS)
    [dead_letter] = response.json()
    assert dead_letter["original_event"]["type"] == "risky"
    assert dead_letter["last_error"] == "handler exploded"
    event_id = dead_letter["original_event"]["id"]

    response = client.post(
        "/api/events/dead-letter/retry", json={"event_ids": ["unknown"]}, headers=HEADERS
    )
    assert response.status_code == 404

    response = client.post(
        "/api/events/dead-letter/retry", json={"event_ids": [event_id]}, headers=HEADERS
    )
    assert response.status_code == 200
    assert response.json()["event_ids"] == [event_id]

    # The handler still fails, so the retried event lands back in the queue
    assert wait_for(lambda: len(event_system.get_dead_letter_queue()) == 1)

    response = client.delete("/api/events/dead-letter", headers=HEADERS)
    assert response.json()["cleared"] == 1
    assert event_system.get_dead_letter_queue() == []


def test_pause_and_resume(client, event_system):
    received = []
    event_system.subscribe("paused.event", received.append)

    response = client.post("/api/events/pause", headers=HEADERS)
    assert response.json()["status"] == "paused"

    client.post("/api/events", json={"type": "paused.event"}, headers=HEADERS)
    time.sleep(0.05)
    assert received == []

    response = client.post("/api/events/resume", headers=HEADERS)
    assert response.json()["status"] == "processing"
    assert wait_for(lambda: len(received) == 1)


def test_websocket_stream(client):
    with client.websocket_connect("/ws/events") as websocket:
        welcome = websocket.receive_json()
        assert welcome["type"] == "connected"

        websocket.send_text("ping")
        message = websocket.receive_json()
        while message["type"] != "pong":
            message = websocket.receive_json()

        client.post("/api/events", json={"type": "streamed.event"}, headers=HEADERS)
        message = websocket.receive_json()
        while message.get("event", {}).get("type") != "streamed.event":
            message = websocket.receive_json()
        assert message["type"] == "event"
