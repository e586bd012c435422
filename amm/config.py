"""Environment settings and logging setup."""

import logging
import os
import sys

import structlog


STATE_PATH = os.environ.get("AMM_STATE", "./amm_state.json")
OPERATOR = os.environ.get("AMM_OPERATOR", "operator")
ADMIN_KEY = os.environ.get("AMM_ADMIN_KEY", "")
RATE_LIMIT_PER_MIN = int(os.environ.get("RATE_LIMIT_PER_MIN", "60"))
SOLVER_MAX_ITERATIONS = int(os.environ.get("AMM_SOLVER_MAX_ITERATIONS", "256"))
LOG_LEVEL = os.environ.get("AMM_LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.environ.get("AMM_LOG_FORMAT", "console")


def configure_logging(level: str = LOG_LEVEL, fmt: str = LOG_FORMAT) -> None:
    """Configure structlog. Call once at application entry.

    Output goes to stderr so the CLI's stdout stays one JSON line.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
