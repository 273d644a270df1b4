"""
Structured logging configuration using structlog.

Money and terms are Decimals throughout the engine; they are rendered as
plain strings so JSON logs carry "-50.00" rather than a repr.
"""

import logging
import sys
from decimal import Decimal
from typing import Any, Optional

import structlog
from structlog.typing import EventDict, Processor

SERVICE_NAME = "stakeledger"

# Chatty third-party loggers kept at WARNING unless the engine runs at DEBUG
NOISY_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "uvicorn.access")


def render_decimals(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Render Decimal values (amounts, percentages, markups) as strings."""
    for key, value in event_dict.items():
        if isinstance(value, Decimal):
            event_dict[key] = str(value)
    return event_dict


def setup_logging(log_level: str = "INFO") -> None:
    """Configure structured logging for the engine and its API."""

    level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )
    if level > logging.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        render_decimals,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    # Development: colored console output
    # Production: JSON output
    if sys.stderr.isatty():
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True)
        ]
    else:
        processors = shared_processors + [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer()
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: Optional[str] = None) -> structlog.BoundLogger:
    """Get a logger bound to the service and, optionally, a module name."""
    logger = structlog.get_logger().bind(service=SERVICE_NAME)
    if name:
        logger = logger.bind(module=name)
    return logger


class LoggerMixin:
    """Gives engine components a `self.log` bound to their component name."""

    @property
    def log(self) -> structlog.BoundLogger:
        if not hasattr(self, "_logger"):
            self._logger = structlog.get_logger().bind(
                service=SERVICE_NAME,
                component=self.__class__.__name__,
            )
        return self._logger


def log_context(**kwargs: Any) -> structlog.contextvars.bound_contextvars:
    """
    Bind keys such as session_id, stake_id or event_id to every log line
    in scope. Keys passed as None are left unbound.
    """
    return structlog.contextvars.bound_contextvars(
        **{key: value for key, value in kwargs.items() if value is not None}
    )
