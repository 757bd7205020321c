import threading
from contextlib import contextmanager
from typing import Any, Iterator, List, NamedTuple, Optional, Union

import structlog
from shared.models.metric import DataPoint, Identifier
from shared.schemas import MetricIdentity
from sqlalchemy import (
    Connection,
    CursorResult,
    Engine,
    Executable,
    Row,
    bindparam,
    insert,
    select,
)
from sqlalchemy.engine import URL
from sqlalchemy.exc import DBAPIError, SQLAlchemyError, StatementError

from app.core.database import build_engine, mask_url
from app.core.exceptions import BindError, ExecutionError, StoreConnectionError

logger = structlog.get_logger()

_identifier = Identifier.__table__
_data = DataPoint.__table__

_IDENTIFIER_KEY_COLUMNS = (
    "host",
    "plugin",
    "plugin_instance",
    "type",
    "type_instance",
    "data_source_name",
)

# ── Statements ────────────────────────────────────────────────────────────────
# Inserts take their VALUES from the parameter dict at execute time, so the
# parameter names are the column names.

DATA_INSERT = insert(_data)

IDENTIFIER_SELECT = select(_identifier.c.id).where(
    *(_identifier.c[name] == bindparam(name) for name in _IDENTIFIER_KEY_COLUMNS)
)

IDENTIFIER_INSERT = insert(_identifier)

# Prepared in this order; (name, statement, insert column keys)
_STATEMENTS = (
    ("data_insert", DATA_INSERT, ["identifier_id", "timestamp", "value"]),
    ("identifier_select", IDENTIFIER_SELECT, None),
    (
        "identifier_insert",
        IDENTIFIER_INSERT,
        [*_IDENTIFIER_KEY_COLUMNS, "data_source_type"],
    ),
)


class PreparedStatements(NamedTuple):
    data_insert: Executable
    identifier_select: Executable
    identifier_insert: Executable


class ConnectionManager:
    """
    Owns the single store connection of one write target.

    States are Disconnected and Connected. connect() is all-or-nothing:
    it opens the connection, selects the database and prepares the three
    statements, and any failure along the way tears everything down again.
    Callers therefore either see all three statements or none.

    There is no background reconnect. A lost connection is dropped by
    the failing execute(), or found dead by the ping in the next connect()
    call, and that call builds a fresh one before the batch starts.

    `lock` is reentrant: the write pipeline holds it for a whole batch
    while the resolver re-acquires it around its select-or-insert.
    """

    def __init__(
        self,
        name: str,
        url: Union[str, URL, None] = None,
        database: Optional[str] = None,
        engine: Optional[Engine] = None,
        **engine_options: Any,
    ):
        if url is None and engine is None:
            raise ValueError("either url or engine is required")

        self.name = name
        self.lock = threading.RLock()

        self._url = url if url is not None else engine.url
        self._database = database
        self._engine = engine
        self._owns_engine = engine is None
        self._engine_options = engine_options

        self._conn: Optional[Connection] = None
        self._statements: Optional[PreparedStatements] = None

    # ── State ─────────────────────────────────────────────────────────────────

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    @property
    def statements(self) -> PreparedStatements:
        if self._statements is None:
            raise StoreConnectionError(f"{self.name}: not connected")
        return self._statements

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def connect(self) -> None:
        """
        Connect and prepare. When already connected, the held connection is
        pinged first and rebuilt if the server has dropped it.
        """
        with self.lock:
            if self._conn is not None:
                if self._is_alive():
                    return
                logger.warning("store_connection_stale", target=self.name)
                self.disconnect()

            step = "connect"
            try:
                if self._engine is None:
                    self._engine = build_engine(self._url, **self._engine_options)

                # Every statement commits on its own; there is nothing to roll back.
                self._conn = self._engine.connect().execution_options(
                    isolation_level="AUTOCOMMIT"
                )

                if self._database:
                    step = "select_database"
                    self._select_database()

                prepared = []
                for name, statement, column_keys in _STATEMENTS:
                    step = f"prepare {name}"
                    statement.compile(dialect=self._conn.dialect, column_keys=column_keys)
                    prepared.append(statement)
                    logger.debug("statement_prepared", target=self.name, statement=name)

            except SQLAlchemyError as e:
                logger.error(
                    "store_connect_failed",
                    target=self.name,
                    url=mask_url(self._url),
                    database=self._database,
                    step=step,
                    error=str(e),
                )
                self.disconnect()
                raise StoreConnectionError(f"{self.name}: {step} failed: {e}") from e

            self._statements = PreparedStatements(*prepared)
            logger.info(
                "store_connected",
                target=self.name,
                url=mask_url(self._url),
                database=self._database,
            )

    def _is_alive(self) -> bool:
        # Same round trip pool_pre_ping uses on checkout. The held connection
        # is never checked back in, so the pool never gets to ping it.
        if self._conn.invalidated:
            return False
        dialect = self._conn.dialect
        try:
            dialect.do_ping(self._conn.connection.dbapi_connection)
        except (dialect.loaded_dbapi.Error, SQLAlchemyError) as e:
            logger.debug("store_ping_failed", target=self.name, error=str(e))
            return False
        return True

    def _select_database(self) -> None:
        quoted = self._conn.dialect.identifier_preparer.quote_identifier(self._database)
        self._conn.exec_driver_sql(f"USE {quoted}")

    def disconnect(self) -> None:
        """Drop statements, then the connection. Safe to call repeatedly."""
        with self.lock:
            self._statements = None
            if self._conn is None:
                return

            conn, self._conn = self._conn, None
            try:
                conn.close()
            except SQLAlchemyError as e:
                # The connection is unusable either way; we only lose the log line.
                logger.warning("store_close_failed", target=self.name, error=str(e))
            logger.info("store_disconnected", target=self.name)

    def close(self) -> None:
        """Disconnect and release the engine's pool if this manager built it."""
        with self.lock:
            self.disconnect()
            if self._engine is not None and self._owns_engine:
                self._engine.dispose()
                self._engine = None

    # ── Execution ─────────────────────────────────────────────────────────────

    def execute(
        self,
        statement: Executable,
        params: dict,
        identity: Optional[MetricIdentity] = None,
    ) -> CursorResult:
        with self.lock, self._translate_errors(identity):
            return self._connection().execute(statement, params)

    def fetch_all(
        self,
        statement: Executable,
        params: dict,
        identity: Optional[MetricIdentity] = None,
    ) -> List[Row]:
        """Execute and fully materialize the result set."""
        with self.lock, self._translate_errors(identity):
            return self._connection().execute(statement, params).all()

    def _connection(self) -> Connection:
        if self._conn is None:
            raise StoreConnectionError(f"{self.name}: not connected")
        return self._conn

    @contextmanager
    def _translate_errors(self, identity: Optional[MetricIdentity]) -> Iterator[None]:
        try:
            yield
        except DBAPIError as e:
            if e.connection_invalidated:
                logger.warning("store_connection_lost", target=self.name, error=str(e))
                self.disconnect()
            raise ExecutionError(
                f"{self.name}: statement execution failed: {e.orig}", identity
            ) from e
        except StatementError as e:
            raise BindError(
                f"{self.name}: binding parameters failed: {e.orig}", identity
            ) from e
        except SQLAlchemyError as e:
            raise ExecutionError(
                f"{self.name}: statement execution failed: {e}", identity
            ) from e
