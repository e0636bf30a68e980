from __future__ import annotations

import pytest
from pydantic import ValidationError

from backq.messages import (
    ProcessMessage,
    PublisherRef,
    SerializedMessage,
    decode_message,
    encode_message,
)


def test_nested_envelope_keeps_inner_variant() -> None:
    inner = ProcessMessage(commandline=["echo", "hi"], env={"A": "1"}, timeout=5)
    envelope = SerializedMessage(
        publisher=PublisherRef(target="backq.publishers:ProcessPublisher"),
        message=inner,
        publish_options={"priority": 10},
    )

    decoded = decode_message(encode_message(envelope))

    assert isinstance(decoded, SerializedMessage)
    assert isinstance(decoded.message, ProcessMessage)
    assert decoded.message == inner
    assert decoded.publisher.target == "backq.publishers:ProcessPublisher"
    assert decoded.publish_options == {"priority": 10}


@pytest.mark.parametrize(
    "payload",
    [None, "", b"", "{", "[]", '{"kind": "email"}', '{"kind": "process"}'],
)
def test_undecodable_payloads_return_none(payload) -> None:
    assert decode_message(payload) is None


def test_messages_are_immutable() -> None:
    message = ProcessMessage(commandline="true")

    with pytest.raises(ValidationError):
        message.commandline = "false"


def test_deadline_is_strictly_before_now() -> None:
    message = ProcessMessage(commandline="true", deadline=100.0)

    assert message.is_past_deadline(now=100.5)
    assert not message.is_past_deadline(now=100.0)
    assert not ProcessMessage(commandline="true").is_past_deadline()


def test_readiness_and_expiry() -> None:
    message = ProcessMessage(commandline="true", ready_at=50.0, expires_at=80.0)

    assert not message.is_ready(now=49.9)
    assert message.is_ready(now=50.0)
    assert not message.is_expired(now=80.0)
    assert message.is_expired(now=80.1)


def test_display_commandline_joins_argv() -> None:
    assert ProcessMessage(commandline=["ls", "-la"]).display_commandline() == "ls -la"
    assert ProcessMessage(commandline="ls -la | wc").display_commandline() == "ls -la | wc"
