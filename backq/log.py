"""structlog setup shared by the CLI and the HTTP API."""

import logging

import structlog


def configure_logging(level: str = "INFO") -> None:
    """Configure structured console logging.

    Args:
        level: Minimum level name (e.g. 'DEBUG', 'INFO')
    """
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
    )


def component_logger(source: str, logger=None):
    """Return the injected logger (or the global one) bound to a component name."""
    return (logger or structlog.get_logger()).bind(source=source)
