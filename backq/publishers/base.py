import importlib
from abc import ABC, abstractmethod
from typing import Optional

import structlog

from backq.adapters import (
    PARAM_JOBTTR,
    PARAM_PRIORITY,
    PARAM_READYWAIT,
    QueueAdapter,
    build_adapter,
)
from backq.config import settings
from backq.log import component_logger
from backq.messages import Message, PublisherRef, encode_message

logger = structlog.get_logger()


class Publisher(ABC):
    """Publish contract consumed by workers that forward messages."""

    @abstractmethod
    def start(self) -> bool:
        """Prepare the publisher; False means publishing is impossible."""

    @abstractmethod
    def publish(self, message: Message, options: Optional[dict] = None) -> Optional[str]:
        """Send a message; returns an identifier or None on failure."""

    def finish(self) -> None:
        """Release resources acquired by start()."""


class QueuePublisher(Publisher):
    """Enqueues messages on a broker queue through an adapter."""

    queue_name = "default"

    def __init__(
        self,
        queue_name: Optional[str] = None,
        adapter: Optional[QueueAdapter] = None,
        logger=None,
    ) -> None:
        """Initialize the publisher.

        Args:
            queue_name: Queue to write to (class default when omitted)
            adapter: Broker adapter; built from settings when omitted
            logger: Optional structlog logger to bind to
        """
        if queue_name:
            self.queue_name = queue_name
        self.adapter = adapter or build_adapter(settings, logger=logger)
        self.logger = component_logger("publisher", logger).bind(queue=self.queue_name)
        self._started = False

    def start(self) -> bool:
        if self._started:
            return True
        if self.adapter.connect() and self.adapter.bind_write(self.queue_name):
            self._started = True
        else:
            self.logger.error("publisher_start_failed", adapter=self.adapter.name)
        return self._started

    def publish(self, message: Message, options: Optional[dict] = None) -> Optional[str]:
        params = {
            PARAM_PRIORITY: settings.default_priority,
            PARAM_READYWAIT: settings.default_readywait,
            PARAM_JOBTTR: settings.default_jobttr,
        }
        params.update({k: v for k, v in (options or {}).items() if v is not None})

        job_id = self.adapter.put_task(encode_message(message), params)
        if job_id is None:
            self.logger.error("publish_failed", kind=getattr(message, "kind", None))
            return None

        self.logger.info("job_published", job_id=job_id, kind=getattr(message, "kind", None))
        return str(job_id)

    def finish(self) -> None:
        if self._started:
            self.adapter.disconnect()
            self._started = False


class ProcessPublisher(QueuePublisher):
    """Publishes ProcessMessage jobs for the process supervisor."""

    queue_name = "process"


class SerializedPublisher(QueuePublisher):
    """Publishes SerializedMessage envelopes for the dispatch forwarder."""

    queue_name = "serialized"


def is_allowed_module(module_name: str, allowed_modules: list[str]) -> bool:
    """Check a dotted module name against allowed package prefixes."""
    return any(
        module_name == prefix or module_name.startswith(prefix + ".")
        for prefix in allowed_modules
    )


def resolve_publisher(ref: PublisherRef, allowed_modules: Optional[list[str]] = None) -> Publisher:
    """Instantiate the publisher a reference points to.

    The module is only imported when it lies under one of the allowed
    prefixes, since references arrive in queue payloads.

    Args:
        ref: Reference in 'package.module:ClassName' form
        allowed_modules: Module prefixes to accept (settings.publisher_modules by default)

    Returns:
        Publisher instance built with ref.options

    Raises:
        ValueError: If the target is malformed, outside the allowed modules,
            or not a Publisher
    """
    module_name, _, attr = ref.target.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Publisher target must look like 'module:Class', got {ref.target!r}")

    if allowed_modules is None:
        allowed_modules = settings.publisher_modules
    if not is_allowed_module(module_name, allowed_modules):
        raise ValueError(f"Publisher module {module_name!r} is not in publisher_modules")

    target = getattr(importlib.import_module(module_name), attr)
    if not (isinstance(target, type) and issubclass(target, Publisher)):
        raise ValueError(f"{ref.target} is not a Publisher")

    logger.debug("publisher_resolved", target=ref.target, source="publisher")
    return target(**ref.options)
