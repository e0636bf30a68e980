from __future__ import annotations

import pytest

from backq.adapters import SqliteAdapter
from backq.messages import ProcessMessage, PublisherRef, decode_message
from backq.publishers import (
    ProcessPublisher,
    QueuePublisher,
    SerializedPublisher,
    resolve_publisher,
)

from conftest import RecordingAdapter, ScriptedPublisher


def test_publish_applies_setting_defaults_under_explicit_options(adapter) -> None:
    publisher = QueuePublisher("emails", adapter=adapter)
    assert publisher.start()

    job_id = publisher.publish(ProcessMessage(commandline="true"), {"priority": 3, "jobttr": None})

    assert job_id == "1"
    assert ("bind_write", "emails") in adapter.calls
    payload, options = adapter.put[0]
    assert options == {"priority": 3, "readywait": 0, "jobttr": 60}
    assert decode_message(payload) == ProcessMessage(commandline="true")


def test_start_failure_is_reported() -> None:
    publisher = QueuePublisher(adapter=RecordingAdapter(connect_ok=False))

    assert publisher.start() is False
    publisher.finish()


def test_finish_disconnects_once(adapter) -> None:
    publisher = ProcessPublisher(adapter=adapter)
    publisher.start()

    publisher.finish()
    publisher.finish()

    assert adapter.calls.count(("disconnect",)) == 1


def test_publisher_built_from_settings_writes_to_sqlite(sqlite_settings) -> None:
    publisher = SerializedPublisher()
    assert publisher.start()
    message = ProcessMessage(commandline=["echo", "queued"])

    job_id = publisher.publish(message)
    publisher.finish()

    reader = SqliteAdapter(sqlite_settings.sqlite_path, timeout=0)
    reader.connect()
    reader.bind_read("serialized")
    pick = reader.pick_task()
    reader.disconnect()
    assert str(pick.job_id) == job_id
    assert decode_message(pick.payload) == message


def test_resolve_publisher_passes_options(adapter) -> None:
    ref = PublisherRef(
        target="backq.publishers:QueuePublisher",
        options={"queue_name": "reports", "adapter": adapter},
    )

    publisher = resolve_publisher(ref)

    assert isinstance(publisher, QueuePublisher)
    assert publisher.queue_name == "reports"
    assert publisher.adapter is adapter


@pytest.mark.parametrize(
    ("target", "error"),
    [
        ("backq.publishers.QueuePublisher", ValueError),
        (":QueuePublisher", ValueError),
        ("backq.messages:ProcessMessage", ValueError),
        ("backq.publishers:NoSuchPublisher", AttributeError),
        ("backq.no_such_module:Publisher", ModuleNotFoundError),
    ],
)
def test_resolve_publisher_rejects_bad_targets(target, error) -> None:
    with pytest.raises(error):
        resolve_publisher(PublisherRef(target=target))


@pytest.mark.parametrize("target", ["os:system", "backq_extras.mail:Publisher", "backqevil:Publisher"])
def test_modules_outside_the_allow_list_are_never_imported(monkeypatch, target) -> None:
    imported = []
    monkeypatch.setattr("backq.publishers.base.importlib.import_module", imported.append)

    with pytest.raises(ValueError, match="publisher_modules"):
        resolve_publisher(PublisherRef(target=target))

    assert imported == []


def test_allow_list_accepts_configured_prefixes(monkeypatch, sqlite_settings) -> None:
    monkeypatch.setattr(sqlite_settings, "publisher_modules", ["backq", "conftest"])

    publisher = resolve_publisher(PublisherRef(target="conftest:ScriptedPublisher", options={"result": "x"}))

    assert isinstance(publisher, ScriptedPublisher)
    assert publisher.result == "x"
