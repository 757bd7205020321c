from typing import List

import pytest
from shared.schemas import DataSource, DataSourceType, MetricIdentity, ValueBatch
from sqlalchemy import event, func, select

from app.connection import ConnectionManager
from app.core.database import build_engine, create_schema
from app.pipeline import WritePipeline

TIMESTAMP = 1_700_000_000.0


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite: every checkout is its own connection, like a real server."""
    engine = build_engine(
        f"sqlite:///{tmp_path / 'writer.db'}",
        connect_args={"check_same_thread": False},
    )
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def executed(engine) -> List[str]:
    """SQL text of every statement the engine sends, in order."""
    seen: List[str] = []

    def _record(conn, cursor, statement, parameters, context, executemany):
        seen.append(statement)

    event.listen(engine, "before_cursor_execute", _record)
    yield seen
    event.remove(engine, "before_cursor_execute", _record)


@pytest.fixture
def connection(engine):
    manager = ConnectionManager("writer/test/0", engine=engine)
    yield manager
    manager.close()


@pytest.fixture
def pipeline(connection):
    return WritePipeline(connection)


def make_identity(**overrides) -> MetricIdentity:
    fields = {
        "host": "host1",
        "plugin": "cpu",
        "plugin_instance": "0",
        "type": "cpu",
        "type_instance": "idle",
        "data_source_name": "value",
        "data_source_type": DataSourceType.GAUGE,
    }
    fields.update(overrides)
    return MetricIdentity(**fields)


def make_batch(*names: str, timestamp: float = TIMESTAMP, **overrides) -> ValueBatch:
    fields = {
        "host": "host1",
        "plugin": "interface",
        "plugin_instance": "eth0",
        "type": "if_octets",
        "type_instance": "",
        "timestamp": timestamp,
        "sources": [
            DataSource(name=name, type=DataSourceType.DERIVE, value=100.0)
            for name in (names or ("rx", "tx"))
        ],
    }
    fields.update(overrides)
    return ValueBatch(**fields)


def count_rows(engine, model) -> int:
    with engine.connect() as conn:
        return conn.execute(select(func.count()).select_from(model.__table__)).scalar_one()


def identifier_selects(statements: List[str]) -> List[str]:
    return [s for s in statements if s.startswith("SELECT identifier.id")]


def identifier_inserts(statements: List[str]) -> List[str]:
    return [s for s in statements if s.upper().startswith("INSERT INTO IDENTIFIER")]


def data_inserts(statements: List[str]) -> List[str]:
    return [s for s in statements if s.upper().startswith("INSERT INTO DATA")]
