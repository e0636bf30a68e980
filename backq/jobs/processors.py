from typing import Optional

import structlog

from backq.adapters import QueueAdapter, build_adapter
from backq.config import Settings, settings as default_settings
from backq.jobs.process import ProcessSupervisor
from backq.jobs.queue import WorkerRuntime
from backq.jobs.serialized import DispatchForwarder

logger = structlog.get_logger()

WORKER_TYPES = {
    "process": ProcessSupervisor,
    "serialized": DispatchForwarder,
}


def build_worker(
    kind: str,
    queue_name: Optional[str] = None,
    adapter: Optional[QueueAdapter] = None,
    settings: Optional[Settings] = None,
    **overrides,
) -> WorkerRuntime:
    """Create a worker of the given kind configured from settings.

    This is the dispatcher that maps a worker kind to its implementation.

    Args:
        kind: 'process' or 'serialized'
        queue_name: Queue to lease from; kind default from settings when omitted
        adapter: Broker adapter; built from settings when omitted
        settings: Settings to read defaults from
        **overrides: Constructor arguments taking precedence over settings

    Returns:
        Worker ready to run()

    Raises:
        ValueError: If worker kind is unknown
    """
    settings = settings or default_settings

    if kind == "process":
        options = {
            "queue_name": queue_name or settings.process_queue,
            "default_timeout": settings.process_timeout,
            "reap_interval": settings.reap_interval,
            "shutdown_interval": settings.shutdown_interval,
            "shutdown_grace": settings.shutdown_grace,
        }
    elif kind == "serialized":
        options = {"queue_name": queue_name or settings.serialized_queue}
    else:
        raise ValueError(f"Unknown worker type: {kind}")

    options.update(
        work_timeout=settings.work_timeout,
        poll_interval=settings.poll_interval,
        restart_threshold=settings.restart_threshold,
    )
    options.update({k: v for k, v in overrides.items() if v is not None})

    logger.info("building_worker", kind=kind, queue=options["queue_name"], source="processor")

    return WORKER_TYPES[kind](adapter or build_adapter(settings), **options)
