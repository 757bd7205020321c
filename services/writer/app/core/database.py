from typing import Any, Union

import structlog
from shared.models.metric import Base  # noqa: F401 (re-exported for consumers)
from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import URL, make_url

logger = structlog.get_logger()


def mask_url(url: Union[str, URL]) -> str:
    """Render a URL for logs with the password hidden."""
    return make_url(url).render_as_string(hide_password=True)


def build_engine(url: Union[str, URL], **overrides: Any) -> Engine:
    """
    Engine for one write target.

    A target only ever checks out a single connection and holds it, so the
    pool stays small. pool_pre_ping and pool_recycle only apply when that
    connection is rebuilt; the held one is pinged by ConnectionManager.connect()
    at the start of every batch.
    """
    options: dict[str, Any] = {
        "echo": False,  # SQL logging is too noisy at writer throughput
        "pool_pre_ping": True,
        "pool_recycle": 3600,
    }
    if make_url(url).get_backend_name() != "sqlite":
        options["pool_size"] = 1
        options["max_overflow"] = 0
    options.update(overrides)
    return create_engine(url, **options)


def create_schema(engine: Engine) -> None:
    """Create the identifier and data tables if missing. Development helper."""
    Base.metadata.create_all(engine)
    logger.info("db_tables_ready", url=mask_url(engine.url))
