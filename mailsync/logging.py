"""Structured logging for the sync process.

structlog events are rendered through the stdlib root logger so that
library output (uvicorn, SQLAlchemy) ends up in the same stream.  Values
logged under credential-like keys are masked before rendering.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterable
from typing import Any

import structlog

SECRET_KEYS = frozenset({"password", "passphrase", "secret", "key_material"})

# Libraries that log every statement or request at DEBUG/INFO
NOISY_LOGGERS = ("aiosqlite", "sqlalchemy.engine", "uvicorn.access")


def redact_secrets(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    for name in SECRET_KEYS.intersection(event_dict):
        event_dict[name] = "***"
    return event_dict


def setup_logging(
    *,
    json: bool = True,
    level: str = "INFO",
    quiet: Iterable[str] = NOISY_LOGGERS,
) -> None:
    """Configure structlog and the stdlib root logger.

    Parameters
    ----------
    json:
        Emit one JSON object per line (service mode).  ``False`` selects
        structlog's console renderer for interactive CLI use.
    level:
        Root log level name, case-insensitive.
    quiet:
        Logger names capped at WARNING regardless of *level*.
    """
    pre_chain: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer()
    )
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level.upper())
    for name in quiet:
        logging.getLogger(name).setLevel(logging.WARNING)
