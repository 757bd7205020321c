import logging
import sys
from typing import Optional

import structlog

from app.core.settings import settings

# Stdlib loggers of the store stack. The pool reports failed resets and
# invalidated connections here; they never go below WARNING.
STORE_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "pymysql")


def resolve_level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def setup_logging(level: Optional[str] = None, json_output: Optional[bool] = None) -> None:
    """
    Configure structlog for the writer's own events, and route the store
    stack's stdlib records through the same renderer. Call once at startup.

    Defaults come from settings: LOG_LEVEL, and JSON lines when ENV is
    production, coloured console output otherwise.
    """
    log_level = resolve_level(level or settings.LOG_LEVEL)
    if json_output is None:
        json_output = settings.ENV == "production"

    timestamped = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            *timestamped,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(sys.stdout),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=[*timestamped, structlog.stdlib.add_logger_name],
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )
    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(log_level)

    for name in STORE_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))
