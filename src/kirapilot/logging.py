"""structlog setup for the agent: console output in dev, JSON lines in prod."""

import logging
import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager

import structlog

# Per-request chatter from the HTTP stack drowns out chain logs below WARNING.
NOISY_LOGGERS = ("httpx", "httpcore")


def configure_logging(level: str, json_output: bool | None = None) -> None:
    """Route stdlib and structlog records through one stderr handler.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR).
        json_output: Force JSON output. If None, JSON only when APP_ENV=prod.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    if json_output is None:
        json_output = os.environ.get("APP_ENV", "dev") == "prod"

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(log_level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))


@contextmanager
def chain_context(chain_id: str, **kwargs: object) -> Iterator[None]:
    """Bind ``chain_id`` (plus extras) to every record emitted while one chain runs."""
    with structlog.contextvars.bound_contextvars(chain_id=chain_id, **kwargs):
        yield
