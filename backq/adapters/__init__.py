"""Broker adapters."""

from typing import Optional

from backq.config import Settings, settings as default_settings

from .base import (
    DEFAULT_JOBTTR,
    DEFAULT_PRIORITY,
    DEFAULT_READYWAIT,
    PARAM_JOBTTR,
    PARAM_PRIORITY,
    PARAM_READYWAIT,
    Pick,
    PickError,
    QueueAdapter,
)
from .beanstalk import BeanstalkAdapter
from .sqlite import SqliteAdapter


def build_adapter(settings: Optional[Settings] = None, logger=None) -> QueueAdapter:
    """Create the adapter selected by settings.broker.

    Raises:
        ValueError: If the broker name is unknown
    """
    settings = settings or default_settings

    if settings.broker == BeanstalkAdapter.name:
        return BeanstalkAdapter(
            settings.beanstalk_address,
            timeout=settings.work_timeout,
            logger=logger,
        )
    elif settings.broker == SqliteAdapter.name:
        return SqliteAdapter(
            settings.sqlite_path,
            timeout=settings.work_timeout,
            logger=logger,
        )
    else:
        raise ValueError(f"Unknown broker: {settings.broker}")


__all__ = [
    "BeanstalkAdapter",
    "DEFAULT_JOBTTR",
    "DEFAULT_PRIORITY",
    "DEFAULT_READYWAIT",
    "PARAM_JOBTTR",
    "PARAM_PRIORITY",
    "PARAM_READYWAIT",
    "Pick",
    "PickError",
    "QueueAdapter",
    "SqliteAdapter",
    "build_adapter",
]
