# logsetup.py
import logging
import sys

import structlog

from config import LOG_JSON, LOG_LEVEL

NOISY_LOGGERS = ("httpx", "httpcore", "asyncio", "uvicorn.access")


def setup_logging(level: str = LOG_LEVEL, json_logs: bool = LOG_JSON):
    """Route stdlib logging and structlog to stdout at `level`.

    Safe to call more than once; the server calls it from its lifespan hook.
    """
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    logging.basicConfig(level=lvl, format="%(message)s", stream=sys.stdout, force=True)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(lvl),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return structlog.get_logger()
