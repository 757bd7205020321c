from datetime import datetime as dt
from unittest.mock import MagicMock, patch

import pytest
from conftest import make_identity
from sqlalchemy.exc import CompileError, DBAPIError

from app import connection as connection_module
from app.connection import ConnectionManager
from app.core.exceptions import BindError, ExecutionError, StoreConnectionError


def test_connect_prepares_all_three_statements(connection):
    assert not connection.is_connected
    with pytest.raises(StoreConnectionError):
        connection.statements

    connection.connect()

    assert connection.is_connected
    statements = connection.statements
    assert statements.data_insert is connection_module.DATA_INSERT
    assert statements.identifier_select is connection_module.IDENTIFIER_SELECT
    assert statements.identifier_insert is connection_module.IDENTIFIER_INSERT


def test_connect_and_disconnect_are_idempotent(connection):
    connection.connect()
    first = connection._conn
    connection.connect()
    assert connection._conn is first

    connection.disconnect()
    connection.disconnect()
    assert not connection.is_connected
    with pytest.raises(StoreConnectionError):
        connection.statements


def test_reconnect_after_disconnect(connection):
    connection.connect()
    connection.disconnect()

    connection.connect()

    assert connection.is_connected
    assert len(connection.statements) == 3


def test_unreachable_store_leaves_nothing_behind(tmp_path):
    manager = ConnectionManager(
        "writer/missing/0", f"sqlite:///{tmp_path / 'no' / 'such' / 'dir.db'}"
    )

    with pytest.raises(StoreConnectionError, match="connect failed"):
        manager.connect()

    assert not manager.is_connected
    with pytest.raises(StoreConnectionError):
        manager.statements
    manager.close()


def test_select_database_failure_disconnects(engine):
    # SQLite has no USE statement, so selecting a database always fails here.
    manager = ConnectionManager("writer/test/0", engine=engine, database="collectd")

    with pytest.raises(StoreConnectionError, match="select_database failed"):
        manager.connect()

    assert not manager.is_connected


def test_prepare_failure_closes_everything(connection):
    broken = MagicMock()
    broken.compile.side_effect = CompileError("cannot compile")
    statements = (
        connection_module._STATEMENTS[0],
        connection_module._STATEMENTS[1],
        ("identifier_insert", broken, None),
    )

    with patch.object(connection_module, "_STATEMENTS", statements):
        with pytest.raises(StoreConnectionError, match="prepare identifier_insert"):
            connection.connect()

    assert not connection.is_connected
    with pytest.raises(StoreConnectionError):
        connection.statements

    # Nothing sticky: the next attempt succeeds.
    connection.connect()
    assert connection.is_connected


def test_execute_while_disconnected_raises(connection):
    with pytest.raises(StoreConnectionError):
        connection.execute(connection_module.DATA_INSERT, {})


def test_driver_error_becomes_execution_error(connection):
    connection.connect()

    with pytest.raises(ExecutionError) as excinfo:
        # identifier_id is NOT NULL
        connection.execute(
            connection.statements.data_insert,
            {"identifier_id": None, "timestamp": dt(2024, 1, 1), "value": 1.0},
        )

    assert isinstance(excinfo.value.__cause__, DBAPIError)
    # An ordinary statement failure keeps the connection.
    assert connection.is_connected


def test_rejected_parameter_becomes_bind_error(connection):
    connection.connect()
    identity = make_identity()

    with pytest.raises(BindError) as excinfo:
        connection.execute(
            connection.statements.data_insert,
            {"identifier_id": 1, "timestamp": "yesterday", "value": 1.0},
            identity,
        )

    assert excinfo.value.identity == identity


def test_lost_connection_is_dropped(connection):
    connection.connect()
    lost = DBAPIError(
        "INSERT INTO data", {}, Exception("server has gone away"), connection_invalidated=True
    )

    with patch.object(connection._conn, "execute", side_effect=lost):
        with pytest.raises(ExecutionError, match="server has gone away"):
            connection.execute(connection.statements.data_insert, {})

    assert not connection.is_connected
    connection.connect()
    assert connection.is_connected


def test_close_disposes_own_engine(tmp_path):
    manager = ConnectionManager("writer/own/0", f"sqlite:///{tmp_path / 'own.db'}")
    manager.connect()
    engine = manager._engine

    with patch.object(engine, "dispose", wraps=engine.dispose) as dispose:
        manager.close()

    dispose.assert_called_once()
    assert not manager.is_connected
    assert manager._engine is None


def test_close_leaves_borrowed_engine_alone(engine):
    manager = ConnectionManager("writer/test/0", engine=engine)
    manager.connect()

    with patch.object(engine, "dispose") as dispose:
        manager.close()

    dispose.assert_not_called()


def test_requires_url_or_engine():
    with pytest.raises(ValueError):
        ConnectionManager("writer/none/0")
