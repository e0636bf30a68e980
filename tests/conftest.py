"""Shared test fixtures."""

from __future__ import annotations

from collections import deque
from typing import Optional

import pytest

from backq.adapters.base import JobId, Pick, PickError, QueueAdapter
from backq.config import settings
from backq.messages import Message
from backq.publishers import Publisher


class RecordingAdapter(QueueAdapter):
    """In-memory adapter replaying scripted picks and recording every call."""

    name = "recording"

    def __init__(self, picks=(), connect_ok: bool = True, ack_ok: bool = True) -> None:
        self.picks = deque(picks)
        self.connect_ok = connect_ok
        self.ack_ok = ack_ok
        self.calls: list[tuple] = []
        self.put: list[tuple[str, dict]] = []
        self.connected = False
        self.when_drained = None

    def script(self, *picks: Pick) -> None:
        self.picks.extend(picks)

    def connect(self, endpoint=None, timeout=None, persistent=False) -> bool:
        self.calls.append(("connect", timeout))
        self.connected = self.connect_ok
        return self.connect_ok

    def bind_read(self, queue: str) -> bool:
        self.calls.append(("bind_read", queue))
        return True

    def bind_write(self, queue: str) -> bool:
        self.calls.append(("bind_write", queue))
        return True

    def pick_task(self) -> Pick:
        self.calls.append(("pick_task",))
        if self.picks:
            return self.picks.popleft()
        if self.when_drained is not None:
            self.when_drained()
        return Pick.failed(PickError.EMPTY)

    def put_task(self, payload: str, options: Optional[dict] = None) -> Optional[JobId]:
        self.put.append((payload, dict(options or {})))
        return len(self.put)

    def after_work_success(self, job_id: JobId) -> bool:
        self.calls.append(("success", job_id))
        return self.ack_ok

    def after_work_failed(self, job_id: JobId) -> bool:
        self.calls.append(("failed", job_id))
        return self.ack_ok

    def has_workers(self, queue: str) -> Optional[int]:
        return None

    def ping(self, reconnect: bool = True) -> Optional[bool]:
        self.calls.append(("ping", reconnect))
        return True

    def disconnect(self) -> bool:
        self.calls.append(("disconnect",))
        was_connected = self.connected
        self.connected = False
        return was_connected

    def acks(self) -> list[tuple]:
        return [call for call in self.calls if call[0] in ("success", "failed")]


class ScriptedPublisher(Publisher):
    """Publisher returning a fixed id and remembering what it published."""

    def __init__(self, result: Optional[str] = "id-123", start_ok: bool = True, error=None) -> None:
        self.result = result
        self.start_ok = start_ok
        self.error = error
        self.published: list[tuple[Message, dict]] = []
        self.started = 0
        self.finished = 0

    def start(self) -> bool:
        self.started += 1
        return self.start_ok

    def publish(self, message: Message, options: Optional[dict] = None) -> Optional[str]:
        self.published.append((message, dict(options or {})))
        if self.error is not None:
            raise self.error
        return self.result

    def finish(self) -> None:
        self.finished += 1


def job(job_id: JobId, payload: Optional[str]) -> Pick:
    return Pick(job_id=job_id, payload=payload)


def empty() -> Pick:
    return Pick.failed(PickError.EMPTY)


@pytest.fixture()
def adapter() -> RecordingAdapter:
    return RecordingAdapter()


@pytest.fixture()
def sqlite_settings(monkeypatch, tmp_path):
    """Point the global settings at a throwaway sqlite broker."""
    monkeypatch.setattr(settings, "broker", "sqlite")
    monkeypatch.setattr(settings, "data_dir", str(tmp_path))
    monkeypatch.setattr(settings, "work_timeout", 0)
    return settings
