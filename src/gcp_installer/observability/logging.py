"""Structured logging configuration for the installer.

Configures structlog for JSON-formatted or console logging, correlated by
the project id of the active installation.

Usage::

    from gcp_installer.observability.logging import configure_logging, get_logger

    configure_logging()  # Call once at process startup
    logger = get_logger()
    logger.info("step_completed", step="Enabling APIs", percent=20)
"""

from __future__ import annotations

import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import IO, Iterator

import structlog

# Project id of the installation currently being driven.
installation_id_ctx: ContextVar[str | None] = ContextVar("installation_id", default=None)

_configured = False


def _add_installation_id(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict,
) -> dict:
    """Inject the current installation id from context into every log entry."""
    iid = installation_id_ctx.get()
    if iid is not None:
        event_dict["installation_id"] = iid
    return event_dict


def configure_logging(
    *,
    level: str | None = None,
    json_output: bool | None = None,
    stream: IO[str] | None = None,
) -> None:
    """Configure structlog and stdlib logging.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR).
            Defaults to LOG_LEVEL env var or INFO.
        json_output: If True, emit JSON lines. If False, emit
            human-readable console output. Defaults to LOG_FORMAT
            env var == "json".
        stream: Destination stream. Defaults to stderr so that command
            output on stdout stays machine-readable.
    """
    global _configured
    if _configured:
        return
    _configured = True

    level = level or os.environ.get("LOG_LEVEL", "INFO")
    if json_output is None:
        json_output = os.environ.get("LOG_FORMAT", "console") == "json"

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        _add_installation_id,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Records from plain stdlib loggers (logging.getLogger(__name__)) run the
    # shared chain before rendering; their ``extra`` fields join the event.
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[*shared_processors, structlog.stdlib.ExtraAdder()],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Quiet noisy libraries.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger bound to the given name."""
    return structlog.get_logger(name)


@contextmanager
def bind_installation(project_id: str) -> Iterator[None]:
    """Tag every log entry emitted inside the block with ``project_id``."""
    token = installation_id_ctx.set(project_id)
    try:
        yield
    finally:
        installation_id_ctx.reset(token)


def _reset_for_tests() -> None:
    global _configured
    _configured = False
    structlog.reset_defaults()
