import math
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from shared.models.metric import MAX_NAME_LEN

# Joins identity fields into cache keys. Rejected inside every field below.
KEY_SEPARATOR = "/"


def _check_separator(value: str) -> str:
    if KEY_SEPARATOR in value:
        raise ValueError(f"must not contain {KEY_SEPARATOR!r}")
    return value


class DataSourceType(str, Enum):
    GAUGE = "GAUGE"
    COUNTER = "COUNTER"
    DERIVE = "DERIVE"
    ABSOLUTE = "ABSOLUTE"


class MetricIdentity(BaseModel):
    """
    The seven fields naming one time series plus its measurement kind.

    Overlong values are rejected, never truncated: a silently shortened
    field could collide with a different series in the identifier table.
    """

    host: str = Field(..., min_length=1, max_length=MAX_NAME_LEN)
    plugin: str = Field(..., min_length=1, max_length=MAX_NAME_LEN)
    plugin_instance: str = Field(default="", max_length=MAX_NAME_LEN)
    type: str = Field(..., min_length=1, max_length=MAX_NAME_LEN)
    type_instance: str = Field(default="", max_length=MAX_NAME_LEN)
    data_source_name: str = Field(..., min_length=1, max_length=MAX_NAME_LEN)
    data_source_type: DataSourceType

    model_config = ConfigDict(frozen=True)

    @field_validator(
        "host",
        "plugin",
        "plugin_instance",
        "type",
        "type_instance",
        "data_source_name",
    )
    @classmethod
    def no_separator(cls, value: str) -> str:
        return _check_separator(value)

    def cache_key(self) -> str:
        """Deterministic key over all seven fields."""
        return KEY_SEPARATOR.join(
            (
                self.host,
                self.plugin,
                self.plugin_instance,
                self.type,
                self.type_instance,
                self.data_source_name,
                self.data_source_type.value,
            )
        )

    def lookup_params(self) -> dict:
        """Bind parameters for the identifier select (the unique 6-tuple)."""
        return {
            "host": self.host,
            "plugin": self.plugin,
            "plugin_instance": self.plugin_instance,
            "type": self.type,
            "type_instance": self.type_instance,
            "data_source_name": self.data_source_name,
        }

    def insert_params(self) -> dict:
        return {**self.lookup_params(), "data_source_type": self.data_source_type.value}

    def __str__(self) -> str:
        return self.cache_key()


class DataSource(BaseModel):
    """One named value inside a batch, e.g. `rx` / `tx` of an if_octets sample."""

    name: str = Field(..., min_length=1, max_length=MAX_NAME_LEN)
    type: DataSourceType = DataSourceType.GAUGE
    value: Optional[float] = None

    @field_validator("name")
    @classmethod
    def no_separator(cls, value: str) -> str:
        return _check_separator(value)


class ValueBatch(BaseModel):
    """
    One timestamped group of samples sharing host/plugin/type.

    `timestamp` is seconds since the epoch; it is stored at second
    granularity in local calendar time.
    """

    host: str = Field(..., min_length=1, max_length=MAX_NAME_LEN)
    plugin: str = Field(..., min_length=1, max_length=MAX_NAME_LEN)
    plugin_instance: str = Field(default="", max_length=MAX_NAME_LEN)
    type: str = Field(..., min_length=1, max_length=MAX_NAME_LEN)
    type_instance: str = Field(default="", max_length=MAX_NAME_LEN)
    timestamp: float
    sources: List[DataSource] = Field(..., min_length=1)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "host": "host1",
                "plugin": "interface",
                "plugin_instance": "eth0",
                "type": "if_octets",
                "timestamp": 1_700_000_000.0,
                "sources": [
                    {"name": "rx", "type": "DERIVE", "value": 123456},
                    {"name": "tx", "type": "DERIVE", "value": 654321},
                ],
            }
        },
    )

    @field_validator("host", "plugin", "plugin_instance", "type", "type_instance")
    @classmethod
    def no_separator(cls, value: str) -> str:
        return _check_separator(value)

    def identity(self, index: int) -> MetricIdentity:
        source = self.sources[index]
        return MetricIdentity(
            host=self.host,
            plugin=self.plugin,
            plugin_instance=self.plugin_instance,
            type=self.type,
            type_instance=self.type_instance,
            data_source_name=source.name,
            data_source_type=source.type,
        )


class WriteRequest(BaseModel):
    """
    A batch plus the per-source rates computed upstream.
    One JSON line of the writer's stdin protocol.
    """

    batch: ValueBatch
    rates: List[Optional[float]]

    @model_validator(mode="after")
    def _rates_match_sources(self) -> "WriteRequest":
        if len(self.rates) != len(self.batch.sources):
            raise ValueError(
                f"got {len(self.rates)} rates for {len(self.batch.sources)} data sources"
            )
        return self


def normalize_rate(rate: Optional[float]) -> Optional[float]:
    """NaN means "unknown" upstream; the data table stores that as NULL."""
    if rate is None or math.isnan(rate):
        return None
    return float(rate)
