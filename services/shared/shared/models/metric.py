from sqlalchemy import (
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase

# Width of every identity column. Values longer than this are rejected by the
# schemas before they ever reach the store.
MAX_NAME_LEN = 63


class Base(DeclarativeBase):
    """
    SQLAlchemy declarative base.
    Owned here so every service that talks to the DB imports from one place.
    Never re-declare Base in a service; always import this one.
    """

    pass


class Identifier(Base):
    """
    One row per metric time series.

    Rows are created once, on first occurrence, and never updated or deleted
    by the writer. The writer caches id lookups for the lifetime of the
    process, so deleting rows out from under a running writer is unsupported.

    Columns:
        host .. data_source_name: the identity, unique as a 6-tuple
        data_source_type: GAUGE | COUNTER | DERIVE | ABSOLUTE,
            descriptive only, not part of the key
    """

    __tablename__ = "identifier"

    id = Column(Integer, primary_key=True, autoincrement=True)
    host = Column(String(MAX_NAME_LEN), nullable=False)
    plugin = Column(String(MAX_NAME_LEN), nullable=False)
    plugin_instance = Column(String(MAX_NAME_LEN), nullable=False, default="")
    type = Column(String(MAX_NAME_LEN), nullable=False)
    type_instance = Column(String(MAX_NAME_LEN), nullable=False, default="")
    data_source_name = Column(String(MAX_NAME_LEN), nullable=False)
    data_source_type = Column(String(MAX_NAME_LEN), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "host",
            "plugin",
            "plugin_instance",
            "type",
            "type_instance",
            "data_source_name",
            name="uq_identifier",
        ),
    )


class DataPoint(Base):
    """
    Append-only sample table: one row per data source per batch.

    The table has no primary key of its own; the mapper-level key below only
    exists so the ORM can map the class. Timestamps are naive local time at
    second granularity.
    """

    __tablename__ = "data"

    identifier_id = Column(Integer, ForeignKey("identifier.id"), nullable=False)
    timestamp = Column(DateTime(timezone=False), nullable=False)
    value = Column(Float, nullable=True)

    __table_args__ = (
        Index("idx_data_identifier_time", "identifier_id", "timestamp"),
    )
    __mapper_args__ = {"primary_key": [identifier_id, timestamp]}
