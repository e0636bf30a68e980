"""Queue adapter interface shared by every broker implementation."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

JobId = Union[int, str]

PARAM_PRIORITY = "priority"
PARAM_READYWAIT = "readywait"
PARAM_JOBTTR = "jobttr"

DEFAULT_PRIORITY = 1024
DEFAULT_READYWAIT = 0
DEFAULT_JOBTTR = 60


class PickError(str, Enum):
    """Why a lease attempt produced no job."""

    EMPTY = "empty"
    DEADLINE_SOON = "deadline_soon"  # a held job is near its TTR
    TRANSPORT = "transport"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class Pick:
    """Result of a single lease attempt."""

    job_id: Optional[JobId] = None
    payload: Optional[str] = None
    error: Optional[PickError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failed(cls, error: PickError) -> "Pick":
        return cls(error=error)


def put_params(options: Optional[dict]) -> tuple[int, int, int]:
    """Resolve (priority, readywait, jobttr) from publish options.

    Args:
        options: Mapping with optional 'priority', 'readywait', 'jobttr' keys

    Returns:
        Tuple with defaults applied for missing or None values
    """
    options = options or {}

    def pick(key: str, default: int) -> int:
        value = options.get(key)
        return default if value is None else int(value)

    return (
        pick(PARAM_PRIORITY, DEFAULT_PRIORITY),
        pick(PARAM_READYWAIT, DEFAULT_READYWAIT),
        pick(PARAM_JOBTTR, DEFAULT_JOBTTR),
    )


class QueueAdapter(ABC):
    """Capability interface over a job broker.

    None of the methods raise on transport problems: implementations catch
    broker and socket errors, log them and return the failure sentinel
    documented on each method, so callers never wrap adapter calls in
    try/except.
    """

    name = "abstract"

    @abstractmethod
    def connect(
        self,
        endpoint: Optional[object] = None,
        timeout: Optional[float] = None,
        persistent: bool = False,
    ) -> bool:
        """Open the broker connection.

        Args:
            endpoint: Broker address; adapter default when omitted
            timeout: Read timeout applied to pick_task (seconds)
            persistent: Keep one long-lived connection

        Returns:
            True when connected
        """

    @abstractmethod
    def bind_read(self, queue: str) -> bool:
        """Subscribe to a queue for leasing. Idempotent."""

    @abstractmethod
    def bind_write(self, queue: str) -> bool:
        """Select the queue put_task writes to. Idempotent."""

    @abstractmethod
    def pick_task(self) -> Pick:
        """Lease the next job, waiting up to the read timeout."""

    @abstractmethod
    def put_task(self, payload: str, options: Optional[dict] = None) -> Optional[JobId]:
        """Enqueue a payload; returns the job id or None."""

    @abstractmethod
    def after_work_success(self, job_id: JobId) -> bool:
        """Delete a processed job."""

    @abstractmethod
    def after_work_failed(self, job_id: JobId) -> bool:
        """Release a job back to the queue for another attempt."""

    @abstractmethod
    def has_workers(self, queue: str) -> Optional[int]:
        """Number of connections watching the queue, if the broker knows."""

    @abstractmethod
    def ping(self, reconnect: bool = True) -> Optional[bool]:
        """Check the connection, reconnecting at most once."""

    @abstractmethod
    def disconnect(self) -> bool:
        """Close the connection; False when it was not open."""
