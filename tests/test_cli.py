from __future__ import annotations

import pytest
from click.testing import CliRunner

from backq.adapters import SqliteAdapter
from backq.cli import cli
from backq.messages import (
    ProcessMessage,
    PublisherRef,
    SerializedMessage,
    decode_message,
)
from backq.publishers import SerializedPublisher


def _lease(settings, queue):
    reader = SqliteAdapter(settings.sqlite_path, timeout=0)
    reader.connect()
    reader.bind_read(queue)
    try:
        return reader.pick_task()
    finally:
        reader.disconnect()


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


def test_enqueue_builds_process_message(runner, sqlite_settings) -> None:
    result = runner.invoke(
        cli,
        [
            "enqueue",
            "--env", "A=1",
            "--env", "B=x=y",
            "--cwd", "/tmp",
            "--timeout", "5",
            "--priority", "7",
            "--",
            "ls", "-la",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "on 'process' -> ls -la" in result.output

    message = decode_message(_lease(sqlite_settings, "process").payload)
    assert message == ProcessMessage(
        commandline=["ls", "-la"],
        cwd="/tmp",
        env={"A": "1", "B": "x=y"},
        timeout=5,
    )


def test_enqueue_shell_joins_command(runner, sqlite_settings) -> None:
    result = runner.invoke(cli, ["enqueue", "--shell", "--queue", "nightly", "echo hi | wc -c"])

    assert result.exit_code == 0, result.output
    message = decode_message(_lease(sqlite_settings, "nightly").payload)
    assert message.commandline == "echo hi | wc -c"


def test_enqueue_relative_times_become_timestamps(runner, sqlite_settings) -> None:
    result = runner.invoke(cli, ["enqueue", "--deadline-in", "60", "--expires-in", "120", "true"])

    assert result.exit_code == 0, result.output
    message = decode_message(_lease(sqlite_settings, "process").payload)
    assert message.expires_at - message.deadline == pytest.approx(60, abs=1)
    assert message.ready_at is None


def test_enqueue_rejects_malformed_env(runner, sqlite_settings) -> None:
    result = runner.invoke(cli, ["enqueue", "--env", "NOVALUE", "true"])

    assert result.exit_code == 2
    assert "KEY=VALUE" in result.output


def test_enqueue_reports_unreachable_broker(runner, monkeypatch, sqlite_settings) -> None:
    monkeypatch.setattr(sqlite_settings, "broker", "beanstalk")
    monkeypatch.setattr(sqlite_settings, "beanstalk_port", 1)

    result = runner.invoke(cli, ["enqueue", "true"])

    assert result.exit_code == 1
    assert "could not connect" in result.output


def test_serialized_worker_forwards_to_nested_publisher(runner, sqlite_settings) -> None:
    nested = ProcessMessage(commandline=["echo", "forwarded"])
    publisher = SerializedPublisher()
    assert publisher.start()
    publisher.publish(
        SerializedMessage(
            publisher=PublisherRef(target="backq.publishers:ProcessPublisher"),
            message=nested,
        )
    )
    publisher.finish()

    result = runner.invoke(cli, ["worker", "serialized", "--restart-threshold", "1"])

    assert result.exit_code == 0, result.output
    assert "Worker stopped." in result.output
    assert _lease(sqlite_settings, "serialized").error is not None
    assert decode_message(_lease(sqlite_settings, "process").payload) == nested


def test_worker_exits_non_zero_without_broker(runner, monkeypatch, sqlite_settings) -> None:
    monkeypatch.setattr(sqlite_settings, "broker", "beanstalk")
    monkeypatch.setattr(sqlite_settings, "beanstalk_port", 1)

    result = runner.invoke(cli, ["worker", "process"])

    assert result.exit_code == 1
    assert "could not connect" in result.output
