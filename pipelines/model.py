"""Canonical data model for market identities, cached metrics and deals."""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

LOOKBACK_PERIODS: tuple[int, ...] = (1, 3, 5, 10)

SeriesMap = dict[str, dict[int, Optional[float]]]


class MetricKind(str, Enum):
    SERIES = "series"
    SNAPSHOT = "snapshot"
    LIST = "list"


class MetricUnit(str, Enum):
    CURRENCY = "currency"
    PERCENT = "percent"
    COUNT = "count"
    RATIO = "ratio"
    INDEX = "index"
    TEXT = "text"
    NONE = "none"


class ApiModel(BaseModel):
    """Base model serialized with camelCase keys for the HTTP layer."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class Metric(ApiModel):
    """Entry of the fixed metric reference catalog."""

    model_config = ConfigDict(frozen=True)

    key: str = Field(..., description="Stable metric key (e.g. 'population').")
    label: str = Field(..., description="Human-readable label suitable for display.")
    category: str = Field(
        ..., description="Grouping used by the UI (e.g. 'demographics', 'multifamily')."
    )
    unit: MetricUnit = Field(..., description="Measurement unit of stored values.")
    kind: MetricKind = Field(..., description="Value shape: series, snapshot or list.")
    description: Optional[str] = None


class MarketIdentity(ApiModel):
    """A canonical metropolitan/micropolitan statistical area."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Stable identifier for the market.")
    name: str = Field(..., description="Preferred display name among known spellings.")
    canonical_key: str = Field(
        ..., description="Normalized key used to deduplicate differently formatted names."
    )
    cbsa_code: Optional[str] = Field(
        default=None, description="Census CBSA code, null until resolved."
    )
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SnapshotValue(ApiModel):
    value_numeric: Optional[float] = None
    value_text: Optional[str] = None
    unit: Optional[str] = None


class DealInput(ApiModel):
    """Location-bearing fields of a tracker deal as handed over by the upload parser."""

    name: str
    market_name: Optional[str] = Field(
        default=None, description="Free-text MSA name typed into the tracker."
    )
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None


class DealRecord(DealInput):
    id: str
    market_id: Optional[str] = Field(
        default=None, description="Market identity resolved when the deal was ingested."
    )
    created_at: Optional[datetime] = None


class MarketSummary(ApiModel):
    name: str
    postal_code_count: int = 0
    deal_count: int = 0


class MarketGroup(ApiModel):
    """Deals grouped under one canonical market key for display."""

    key: str
    name: str
    deals: list[DealRecord] = Field(default_factory=list)
    postal_codes: list[str] = Field(default_factory=list)
    postal_code_count: Optional[int] = None


class MarketIntel(ApiModel):
    """Everything the market detail view needs for one market."""

    identity: MarketIdentity
    series: SeriesMap = Field(default_factory=dict)
    snapshot: dict[str, SnapshotValue] = Field(default_factory=dict)
    lists: dict[str, list[str]] = Field(default_factory=dict, alias="list")
    metric_catalog: dict[str, Metric] = Field(default_factory=dict)
    postal_codes: list[str] = Field(default_factory=list)
    warning: Optional[str] = None


class CensusSeries(ApiModel):
    msa_name: str
    cbsa_code: str
    latest_year: int
    series: SeriesMap

    @property
    def observed_as_of(self) -> date:
        return date(self.latest_year, 12, 31)


class RefreshResult(ApiModel):
    success: bool = True
    market: str
    cbsa_code: str
    records_written: int = 0


__all__ = [
    "LOOKBACK_PERIODS",
    "SeriesMap",
    "MetricKind",
    "MetricUnit",
    "Metric",
    "MarketIdentity",
    "SnapshotValue",
    "DealInput",
    "DealRecord",
    "MarketSummary",
    "MarketGroup",
    "MarketIntel",
    "CensusSeries",
    "RefreshResult",
]
