import sys
from typing import TextIO

import structlog
from app.core.database import build_engine, create_schema
from app.core.logging import setup_logging
from app.core.prometheus import start_prometheus_server
from app.core.settings import settings
from app.registry import WriterRegistry
from pydantic import ValidationError
from shared.schemas import WriteRequest

logger = structlog.get_logger()


def provision_schema() -> None:
    for target in settings.TARGETS:
        url = target.db_url
        if target.DATABASE and url.get_backend_name() != "sqlite":
            url = url.set(database=target.DATABASE)
        engine = build_engine(url)
        try:
            create_schema(engine)
        finally:
            engine.dispose()


def run(registry: WriterRegistry, stream: TextIO) -> int:
    """
    Feed JSON lines of {"batch": {...}, "rates": [...]} to every target.
    Returns the number of lines that did not fully succeed.
    """
    failures = 0
    for lineno, line in enumerate(stream, start=1):
        line = line.strip()
        if not line:
            continue

        try:
            request = WriteRequest.model_validate_json(line)
        except ValidationError as e:
            logger.error("invalid_write_request", line=lineno, errors=e.errors())
            failures += 1
            continue

        if not registry.write(request.batch, request.rates):
            failures += 1
    return failures


def main() -> int:
    setup_logging()
    logger.info("writer_starting", env=settings.ENV, targets=len(settings.TARGETS))

    if settings.CREATE_SCHEMA:
        provision_schema()

    # Scrape endpoint up before the first batch so we have observability
    # from the very first write.
    if settings.PROMETHEUS_PORT:
        start_prometheus_server(port=settings.PROMETHEUS_PORT)

    registry = WriterRegistry.from_settings(settings.TARGETS)
    try:
        failures = run(registry, sys.stdin)
    finally:
        registry.close()

    logger.info("writer_stopped", failures=failures)
    return 1 if failures else 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        logger.info("writer_interrupted")
