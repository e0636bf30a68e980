from __future__ import annotations

import threading
import time

import pytest
from fastapi.testclient import TestClient

from backq import __version__
from backq.adapters import SqliteAdapter
from backq.main import app
from backq.messages import ProcessMessage, decode_message

from conftest import RecordingAdapter


@pytest.fixture()
def client(sqlite_settings):
    with TestClient(app) as test_client:
        yield test_client


def test_root_lists_endpoints(client) -> None:
    response = client.get("/")

    assert response.status_code == 200
    body = response.json()
    assert body["service"] == "backq"
    assert body["broker"] == "sqlite"
    assert "enqueue" in body["endpoints"]


def test_health_reports_reachable_broker(client) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "version": __version__, "broker": "sqlite"}


def test_health_fails_when_broker_is_down(client, monkeypatch, sqlite_settings) -> None:
    monkeypatch.setattr(sqlite_settings, "broker", "beanstalk")
    monkeypatch.setattr(sqlite_settings, "beanstalk_port", 1)

    response = client.get("/health")

    assert response.status_code == 503


def test_enqueue_publishes_message(client, sqlite_settings) -> None:
    response = client.post(
        "/jobs",
        json={
            "queue": "process",
            "message": {"kind": "process", "commandline": ["echo", "api"], "timeout": 5},
            "priority": 10,
        },
    )

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "queued"
    assert body["queue"] == "process"

    reader = SqliteAdapter(sqlite_settings.sqlite_path, timeout=0)
    reader.connect()
    reader.bind_read("process")
    pick = reader.pick_task()
    reader.disconnect()
    assert str(pick.job_id) == body["job_id"]
    assert decode_message(pick.payload) == ProcessMessage(commandline=["echo", "api"], timeout=5)


def test_enqueue_rejects_unknown_message_kind(client) -> None:
    response = client.post("/jobs", json={"queue": "process", "message": {"kind": "email"}})

    assert response.status_code == 422


def test_queue_stats_counts_watchers(client, sqlite_settings) -> None:
    worker = SqliteAdapter(sqlite_settings.sqlite_path, timeout=0)
    worker.connect()
    worker.bind_read("process")
    try:
        response = client.get("/queues/process")
    finally:
        worker.disconnect()

    assert response.status_code == 200
    assert response.json() == {"queue": "process", "workers": 1}


@pytest.fixture()
def hanging_broker(monkeypatch, sqlite_settings):
    """Adapter whose connect blocks like a broker address that never answers."""
    released = threading.Event()

    class HangingAdapter(RecordingAdapter):
        def connect(self, endpoint=None, timeout=None, persistent=False) -> bool:
            released.wait(10)
            return False

    monkeypatch.setattr("backq.main.build_adapter", lambda settings: HangingAdapter())
    monkeypatch.setattr(
        "backq.publishers.base.build_adapter",
        lambda settings, logger=None: HangingAdapter(),
    )
    monkeypatch.setattr(sqlite_settings, "broker_timeout", 0.1)
    yield
    released.set()


@pytest.mark.parametrize(
    ("method", "path", "body"),
    [
        ("get", "/health", None),
        ("get", "/queues/process", None),
        ("post", "/jobs", {"queue": "process", "message": {"kind": "process", "commandline": "true"}}),
    ],
)
def test_unresponsive_broker_fails_fast(client, hanging_broker, method, path, body) -> None:
    started = time.monotonic()

    response = client.request(method, path, json=body)

    assert response.status_code == 503
    assert time.monotonic() - started < 5
