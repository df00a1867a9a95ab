"""Structured logging configuration using structlog.

Human-readable colored output in development, JSON lines otherwise.
Plugin target tasks bind their instance/target ids as context variables,
so every line a run emits can be traced back to it.
"""

import logging
import sys
from contextlib import contextmanager
from typing import Iterator, Optional

import structlog

from app.config import get_settings

# Third-party loggers that log once per request; plugin ticks make them noisy
_QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore")


def setup_logging(level: Optional[str] = None, log_format: Optional[str] = None) -> None:
    """Configure structured logging for the entire application.

    Args:
        level: Overrides ``LOG_LEVEL``
        log_format: Overrides ``LOG_FORMAT`` ("json" or "text")
    """
    settings = get_settings()
    level = (level or settings.LOG_LEVEL).upper()
    log_format = log_format or settings.LOG_FORMAT

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.is_development or log_format == "text":
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # stdlib loggers (loader, store, API) render through the same pipeline
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level, logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


@contextmanager
def plugin_log_context(instance_id: str, target: int, template_id: str) -> Iterator[None]:
    """Bind run identifiers to every log line emitted inside the block.

    Context variables are per asyncio task, so concurrent targets never
    see each other's bindings.
    """
    with structlog.contextvars.bound_contextvars(
        instance_id=instance_id,
        target=target,
        template_id=template_id,
    ):
        yield
