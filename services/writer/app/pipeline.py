import time
from dataclasses import dataclass, field
from datetime import datetime as dt
from typing import Optional, Sequence, Tuple

import structlog
from shared.schemas import MetricIdentity, ValueBatch, normalize_rate

from app.connection import ConnectionManager
from app.core.exceptions import (
    BindError,
    StoreConnectionError,
    TimeConversionError,
    WriteError,
)
from app.core.prometheus import tracker
from app.core.settings import TargetSettings
from app.resolver import IdentifierResolver

logger = structlog.get_logger()


def to_calendar_time(timestamp: float) -> dt:
    """
    Epoch seconds → naive local calendar time, truncated to the second.

    Raises TimeConversionError for values the platform cannot represent
    (NaN, infinities, years outside the C library's range).
    """
    try:
        return dt.fromtimestamp(int(timestamp))
    except (OverflowError, OSError, ValueError) as e:
        raise TimeConversionError(f"cannot convert to local time: {e}", timestamp) from e


@dataclass(frozen=True)
class WriteResult:
    written: int
    skipped: Tuple[str, ...] = field(default_factory=tuple)


class WritePipeline:
    """
    Writes batches to one target.

    The connection lock is held for the whole batch: the connection and its
    statements are not safe to use from two threads at once. Throughput
    comes from configuring more targets, not from parallelism within one.

    Failure policy per batch:
      - connecting or converting the timestamp fails → nothing is written
      - resolving one source's identifier fails      → that source is skipped,
                                                        unless the connection
                                                        was lost doing so
      - inserting a data row fails                    → the remaining sources
                                                        are not attempted
    """

    def __init__(
        self,
        connection: ConnectionManager,
        resolver: Optional[IdentifierResolver] = None,
    ):
        self._connection = connection
        self._resolver = resolver if resolver is not None else IdentifierResolver(connection)

    @classmethod
    def from_settings(cls, target: TargetSettings) -> "WritePipeline":
        return cls(
            ConnectionManager(target.name, target.db_url, database=target.DATABASE)
        )

    @property
    def name(self) -> str:
        return self._connection.name

    @property
    def connection(self) -> ConnectionManager:
        return self._connection

    @property
    def resolver(self) -> IdentifierResolver:
        return self._resolver

    def write(self, batch: ValueBatch, rates: Sequence[Optional[float]]) -> WriteResult:
        """
        Write one row per data source. Returns how many rows were written and
        which sources were skipped; raises the error that ended the batch.
        """
        if len(rates) != len(batch.sources):
            raise BindError(
                f"{self.name}: got {len(rates)} rates for "
                f"{len(batch.sources)} data sources"
            )

        start = time.time()
        written = 0
        skipped = []

        with self._connection.lock:
            try:
                self._connection.connect()
                timestamp = to_calendar_time(batch.timestamp)

                for index, source in enumerate(batch.sources):
                    identity = batch.identity(index)
                    try:
                        identifier_id = self._resolver.resolve(identity)
                    except WriteError as e:
                        # Only a live connection can skip a source and carry on.
                        if isinstance(e, StoreConnectionError) or not self._connection.is_connected:
                            raise
                        logger.warning(
                            "identifier_resolution_failed",
                            target=self.name,
                            identifier=str(identity),
                            error=str(e),
                            error_type=type(e).__name__,
                        )
                        skipped.append(source.name)
                        continue

                    self._insert_data(identity, identifier_id, timestamp, rates[index])
                    written += 1

            except WriteError as e:
                tracker.record_failure(self.name, rows=written)
                logger.error(
                    "batch_write_failed",
                    target=self.name,
                    host=batch.host,
                    plugin=batch.plugin,
                    plugin_instance=batch.plugin_instance,
                    type=batch.type,
                    type_instance=batch.type_instance,
                    timestamp=batch.timestamp,
                    written=written,
                    remaining=len(batch.sources) - written - len(skipped),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise

        latency_ms = (time.time() - start) * 1000
        tracker.record_success(self.name, written, len(skipped), latency_ms)
        logger.debug(
            "batch_written",
            target=self.name,
            host=batch.host,
            plugin=batch.plugin,
            type=batch.type,
            written=written,
            skipped=skipped,
            latency_ms=round(latency_ms, 2),
        )
        return WriteResult(written=written, skipped=tuple(skipped))

    def _insert_data(
        self,
        identity: MetricIdentity,
        identifier_id: int,
        timestamp: dt,
        rate: Optional[float],
    ) -> None:
        self._connection.execute(
            self._connection.statements.data_insert,
            {
                "identifier_id": identifier_id,
                "timestamp": timestamp,
                "value": normalize_rate(rate),
            },
            identity,
        )

    def close(self) -> None:
        self._connection.close()
