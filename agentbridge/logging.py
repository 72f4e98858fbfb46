import logging
import sys

import structlog

_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

shared_processors = [
    structlog.contextvars.merge_contextvars,
    structlog.processors.add_log_level,
    structlog.processors.TimeStamper(fmt="%H:%M:%S"),
]

console_renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())


def configure_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """Route every bridge logger through structlog on stderr.

    Agent stderr is relayed through these loggers too, so chat-scoped lines
    carry ``chat_id`` via bound loggers rather than ad hoc prefixes.
    """
    level = level.upper()
    if level not in _LEVELS:
        raise ValueError(f"Unsupported log level: {level}. Must be one of: {', '.join(_LEVELS)}")
    renderer = structlog.processors.JSONRenderer() if json_logs else console_renderer
    structlog.configure(
        processors=[*shared_processors, renderer],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level)),
        logger_factory=structlog.WriteLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )
    for name in ("httpx", "asyncio", "watchfiles"):
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None):
    return structlog.get_logger(name or "agentbridge")


formatter = {
    "()": structlog.stdlib.ProcessorFormatter,
    "processor": console_renderer,
    "foreign_pre_chain": shared_processors,
}

UVICORN_LOG_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {"default": formatter, "access": formatter},
    "handlers": {
        "default": {"formatter": "default", "class": "logging.StreamHandler", "stream": "ext://sys.stderr"},
        "access": {"formatter": "access", "class": "logging.StreamHandler", "stream": "ext://sys.stderr"},
    },
    "loggers": {
        "uvicorn": {"handlers": ["default"], "level": "INFO", "propagate": False},
        "uvicorn.error": {"level": "INFO"},
        # SSE viewers keep connections open; access lines for /events are noise
        "uvicorn.access": {"handlers": ["access"], "level": "WARNING", "propagate": False},
    },
}
