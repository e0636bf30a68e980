"""Job payload models.

Every payload travelling through a queue is one of the message models below,
dumped to JSON with a ``kind`` discriminator so workers can tell variants
apart before deciding whether they support them.
"""

import time
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError


class Message(BaseModel):
    """Base class for immutable job payloads."""

    model_config = ConfigDict(frozen=True)


class ProcessMessage(Message):
    """Command to be executed as an asynchronous OS process.

    A string commandline runs through the shell; a list is executed
    directly as argv. All time fields are unix timestamps in seconds.
    """

    kind: Literal["process"] = "process"
    commandline: Union[str, list[str]]
    cwd: Optional[str] = None
    env: Optional[dict[str, str]] = None
    input: Optional[str] = None
    timeout: Optional[float] = None
    deadline: Optional[float] = None
    ready_at: Optional[float] = None
    expires_at: Optional[float] = None

    def is_past_deadline(self, now: Optional[float] = None) -> bool:
        if self.deadline is None:
            return False
        return self.deadline < (time.time() if now is None else now)

    def is_ready(self, now: Optional[float] = None) -> bool:
        if self.ready_at is None:
            return True
        return (time.time() if now is None else now) >= self.ready_at

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.expires_at is None:
            return False
        return (time.time() if now is None else now) > self.expires_at

    def display_commandline(self) -> str:
        if isinstance(self.commandline, str):
            return self.commandline
        return " ".join(self.commandline)


class PublisherRef(BaseModel):
    """Importable reference to a publisher class plus constructor options."""

    model_config = ConfigDict(frozen=True)

    target: str
    options: dict[str, Any] = Field(default_factory=dict)


class SerializedMessage(Message):
    """Envelope carrying another message and the publisher that sends it."""

    kind: Literal["serialized"] = "serialized"
    publisher: Optional[PublisherRef] = None
    message: Optional["AnyMessage"] = None
    publish_options: dict[str, Any] = Field(default_factory=dict)


AnyMessage = Annotated[
    Union[ProcessMessage, SerializedMessage],
    Field(discriminator="kind"),
]

SerializedMessage.model_rebuild()

_message_adapter = TypeAdapter(AnyMessage)


def encode_message(message: Message) -> str:
    """Serialize a message to its JSON payload."""
    return message.model_dump_json()


def decode_message(payload: Optional[Union[str, bytes]]) -> Optional[Message]:
    """Parse a payload into a message.

    Returns:
        The decoded message, or None for empty, malformed or unknown payloads
    """
    if not payload:
        return None
    try:
        return _message_adapter.validate_json(payload)
    except ValidationError:
        return None
