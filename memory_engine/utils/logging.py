"""
Structured logging setup.

structlog renders through the stdlib logging handlers: a colored
console in development, one JSON object per line elsewhere.
"""

import logging
import sys
from typing import Any, Literal

import structlog
from structlog.types import Processor

# Libraries that log at INFO on every request or call
QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "openai", "numpy")


def setup_logging(
    log_level: str = "INFO",
    environment: Literal["development", "staging", "production"] = "development",
) -> None:
    """
    Configure structlog and stdlib logging.

    Args:
        log_level: Minimum level name, e.g. "DEBUG"
        environment: Selects console (development) or JSON rendering
    """
    numeric_level = logging.getLevelName(log_level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    renderer: list[Processor]
    if environment == "development":
        renderer = [
            structlog.dev.ConsoleRenderer(
                colors=sys.stdout.isatty(),
                exception_formatter=structlog.dev.plain_traceback,
            )
        ]
    else:
        renderer = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=[*shared_processors, *renderer],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


class LogContext:
    """
    Bind key/values to every log line emitted inside the block.

    Example:
        with LogContext(job="prune"):
            logger.info("entry_purged", memory_id=memory_id)  # carries job="prune"
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = kwargs

    def __enter__(self) -> "LogContext":
        structlog.contextvars.bind_contextvars(**self.context)
        return self

    def __exit__(self, *args: Any) -> None:
        structlog.contextvars.unbind_contextvars(*self.context)
