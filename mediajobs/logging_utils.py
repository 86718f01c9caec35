"""Structured logging setup shared by the broker and worker processes."""

import logging

import structlog


def configure_logging(level: str = "INFO") -> None:
    """Configure structlog for the current process.

    Args:
        level: Standard logging level name (e.g., 'INFO', 'DEBUG')
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


def strip_query(url: str) -> str:
    """Return ``url`` without its query string so tokens never reach logs."""
    return url.split("?", 1)[0]
