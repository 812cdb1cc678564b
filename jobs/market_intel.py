"""Market intel orchestration: lazy and forced refresh, reads, and reconciliation.

The DuckDB store is the only cache. A market detail read refreshes from the
Census API only when the market has no cached series rows; a forced refresh
always re-fetches. Listing every market also deletes markets that no deal
references any more (see ``reconcile_markets``).
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import Any, Awaitable, Callable, Sequence, TypeVar

import duckdb

from jobs.config import Settings, load_settings
from pipelines.catalog import get_metric
from pipelines.errors import CensusAPIError, ConfigurationError, ResolutionError, ValidationError
from pipelines.model import (
    MarketGroup,
    MarketIdentity,
    MarketIntel,
    MarketSummary,
    MetricKind,
    RefreshResult,
)
from pipelines.normalize import canonical_key, group_deals_by_market
from pipelines.sources.acs import ACS_SOURCE, fetch_census_series
from pipelines.sources.cbsa import resolve_cbsa_code
from storage.db import (
    connect,
    count_series_values,
    delete_unreferenced_markets,
    fetch_deal_counts,
    fetch_deals,
    fetch_lists,
    fetch_market_by_id,
    fetch_markets,
    fetch_metric_catalog,
    fetch_postal_code_counts,
    fetch_postal_codes,
    fetch_series,
    fetch_snapshots,
    set_market_code,
    upsert_list_value,
    upsert_market,
    upsert_series_values,
    upsert_snapshot_value,
)

logger = logging.getLogger(__name__)

MISSING_KEY_MESSAGE = "CENSUS_API_KEY is not configured."
UNRESOLVED_MESSAGE = "Unable to resolve CBSA code for the selected MSA."
MANUAL_SOURCE = "manual"

T = TypeVar("T")


class SingleFlight:
    """Join concurrent calls for the same key onto one in-flight task."""

    def __init__(self) -> None:
        self._inflight: dict[str, asyncio.Task[Any]] = {}

    async def do(self, key: str, factory: Callable[[], Awaitable[T]]) -> T:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._inflight[key] = task
            task.add_done_callback(lambda done, key=key: self._forget(key, done))
        else:
            logger.info("Joining in-flight refresh for %s.", key)
        # shield: an abandoned caller must not cancel the refresh others are awaiting
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task[Any]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    def __contains__(self, key: str) -> bool:
        return key in self._inflight


_refreshes = SingleFlight()


def _require_name(name: str | None) -> str:
    cleaned = (name or "").strip()
    if not canonical_key(cleaned):
        raise ValidationError("MSA name is required.")
    return cleaned


async def _resolve_and_fetch(
    conn: duckdb.DuckDBPyConnection, market: MarketIdentity, settings: Settings
) -> RefreshResult:
    api_key = settings.census_api_key
    if not api_key:
        raise ConfigurationError(MISSING_KEY_MESSAGE)

    cbsa_code = market.cbsa_code
    if not cbsa_code:
        cbsa_code = await resolve_cbsa_code(
            market.name, api_key, settings.latest_year, **settings.request_options
        )
        if not cbsa_code:
            raise ResolutionError(UNRESOLVED_MESSAGE)
        set_market_code(conn, market.id, cbsa_code)
        # another writer may have stored a code first; the stored one wins
        stored = fetch_market_by_id(conn, market.id)
        if stored is not None and stored.cbsa_code:
            cbsa_code = stored.cbsa_code

    census = await fetch_census_series(
        market.name, cbsa_code, api_key, settings.latest_year, **settings.request_options
    )
    written = upsert_series_values(
        conn,
        market.id,
        census.series,
        source=ACS_SOURCE,
        observed_as_of=census.observed_as_of,
    )
    logger.info("Persisted %s series values for %s (cbsa=%s).", written, market.name, cbsa_code)
    return RefreshResult(market=market.name, cbsa_code=cbsa_code, records_written=written)


async def _refresh_detached(market: MarketIdentity, settings: Settings) -> RefreshResult:
    # may outlive the caller that started it
    conn = connect()
    try:
        return await _resolve_and_fetch(conn, market, settings)
    finally:
        conn.close()


async def _refresh(market: MarketIdentity, settings: Settings) -> RefreshResult:
    return await _refreshes.do(market.id, lambda: _refresh_detached(market, settings))


async def refresh_market(
    conn: duckdb.DuckDBPyConnection, name: str | None, settings: Settings | None = None
) -> RefreshResult:
    """Forced refresh: resolve the CBSA code if absent and always re-fetch.

    Every failure is raised to the caller (``ConfigurationError``,
    ``ResolutionError``, ``CensusAPIError`` or the storage error).
    """

    settings = settings or load_settings()
    msa_name = _require_name(name)
    if not settings.has_census_key:
        raise ConfigurationError(MISSING_KEY_MESSAGE)
    market = upsert_market(conn, msa_name)
    logger.info("Forced refresh requested for %s.", market.name)
    return await _refresh(market, settings)


async def _read_cached(conn: duckdb.DuckDBPyConnection, market_id: str) -> list[Any]:
    readers: Sequence[tuple[Callable[..., Any], tuple[Any, ...]]] = (
        (fetch_series, (market_id,)),
        (fetch_snapshots, (market_id,)),
        (fetch_lists, (market_id,)),
        (fetch_metric_catalog, ()),
        (fetch_postal_codes, (market_id,)),
    )
    cursors = [conn.cursor() for _ in readers]

    def run(cursor: duckdb.DuckDBPyConnection, reader: Callable[..., Any], args: tuple[Any, ...]) -> Any:
        try:
            return reader(cursor, *args)
        finally:
            cursor.close()

    return await asyncio.gather(
        *(
            asyncio.to_thread(run, cursor, reader, args)
            for cursor, (reader, args) in zip(cursors, readers, strict=True)
        )
    )


async def get_market_intel(
    conn: duckdb.DuckDBPyConnection, name: str | None, settings: Settings | None = None
) -> MarketIntel:
    """Return cached metrics for a market, lazily filling an empty cache.

    Resolution and Census failures during the lazy refresh are returned as
    ``warning`` next to whatever is cached; storage errors propagate.
    """

    settings = settings or load_settings()
    market = upsert_market(conn, _require_name(name))
    warning = None if settings.has_census_key else MISSING_KEY_MESSAGE

    if settings.has_census_key and count_series_values(conn, market.id) == 0:
        try:
            await _refresh(market, settings)
        except (ResolutionError, CensusAPIError) as exc:
            logger.warning("Lazy refresh for %s failed: %s", market.name, exc)
            warning = str(exc)
        market = fetch_market_by_id(conn, market.id) or market

    series, snapshot, lists, catalog, postal_codes = await _read_cached(conn, market.id)
    return MarketIntel(
        identity=market,
        series=series,
        snapshot=snapshot,
        lists=lists,
        metric_catalog=catalog,
        postal_codes=postal_codes,
        warning=warning,
    )


def reconcile_markets(conn: duckdb.DuckDBPyConnection) -> list[MarketIdentity]:
    """Delete markets no deal references, cascading to their metrics and postal codes."""

    removed = delete_unreferenced_markets(conn)
    if removed:
        logger.warning(
            "Removed %s market(s) no longer referenced by any deal: %s",
            len(removed),
            ", ".join(market.name for market in removed),
        )
    return removed


def list_markets(conn: duckdb.DuckDBPyConnection) -> list[MarketSummary]:
    """List every market referenced by a deal.

    This is a read with a write side effect: ``reconcile_markets`` runs first
    on every call, so markets whose last deal was removed disappear here.
    """

    reconcile_markets(conn)
    postal_counts = fetch_postal_code_counts(conn)
    deal_counts = fetch_deal_counts(conn)
    return [
        MarketSummary(
            name=market.name,
            postal_code_count=postal_counts.get(market.id, 0),
            deal_count=deal_counts.get(market.id, 0),
        )
        for market in fetch_markets(conn)
    ]


def get_market_groups(conn: duckdb.DuckDBPyConnection) -> list[MarketGroup]:
    """Deals grouped by canonical market key, merged with the cached market list."""

    return group_deals_by_market(list_markets(conn), fetch_deals(conn))


def record_metric_value(
    conn: duckdb.DuckDBPyConnection,
    name: str | None,
    metric_key: str,
    *,
    value_numeric: float | None = None,
    value_text: str | None = None,
    items: Sequence[str] | None = None,
    source: str | None = None,
    observed_as_of: date | None = None,
) -> MarketIdentity:
    """Store a manually sourced snapshot or list value for a market."""

    metric = get_metric(metric_key)
    if metric is None:
        raise ValidationError(f"Unknown metric '{metric_key}'.")
    if metric.kind is MetricKind.SERIES:
        raise ValidationError(f"Metric '{metric_key}' is a series refreshed from the Census API.")

    market = upsert_market(conn, _require_name(name))
    if metric.kind is MetricKind.SNAPSHOT:
        if value_numeric is None and not value_text:
            raise ValidationError(f"Metric '{metric_key}' needs a numeric or text value.")
        upsert_snapshot_value(
            conn,
            market.id,
            metric_key,
            value_numeric=value_numeric,
            value_text=value_text,
            unit=metric.unit.value,
            source=source or MANUAL_SOURCE,
            observed_as_of=observed_as_of,
        )
    else:
        if items is None:
            raise ValidationError(f"Metric '{metric_key}' needs a list of items.")
        upsert_list_value(
            conn,
            market.id,
            metric_key,
            [item.strip() for item in items if item and item.strip()],
            source=source or MANUAL_SOURCE,
            observed_as_of=observed_as_of,
        )
    return market


__all__ = [
    "SingleFlight",
    "refresh_market",
    "get_market_intel",
    "reconcile_markets",
    "list_markets",
    "get_market_groups",
    "record_metric_value",
    "MISSING_KEY_MESSAGE",
    "UNRESOLVED_MESSAGE",
]
