import asyncio

import httpx
import pytest

import jobs.deals as deals_job
from jobs.config import Settings
from jobs.deals import ingest_deals, remove_deal
from jobs.market_intel import (
    MISSING_KEY_MESSAGE,
    UNRESOLVED_MESSAGE,
    get_market_groups,
    get_market_intel,
    list_markets,
    record_metric_value,
    refresh_market,
)
from pipelines.errors import CensusAPIError, ConfigurationError, ResolutionError, ValidationError
from pipelines.model import DealInput
from storage.db import (
    connect,
    count_series_values,
    delete_unreferenced_markets,
    fetch_market_by_id,
    fetch_market_by_name,
    fetch_markets,
)

AUSTIN = "Austin-Round Rock-Georgetown, TX"
SERIES_ROWS = 13 * 4


def test_without_credential_returns_empty_cache_and_warning(conn, fake_census):
    intel = asyncio.run(get_market_intel(conn, AUSTIN, Settings()))

    assert intel.identity.name == AUSTIN
    assert intel.series == {}
    assert intel.snapshot == {}
    assert intel.lists == {}
    assert intel.warning == MISSING_KEY_MESSAGE
    assert len(intel.metric_catalog) == 39
    assert fake_census.calls == []


def test_lazy_refresh_populates_cache_once(conn, fake_census, settings):
    first = asyncio.run(get_market_intel(conn, AUSTIN, settings))
    calls_after_first = len(fake_census.calls)

    second = asyncio.run(get_market_intel(conn, "Austin-Round Rock-Georgetown Metro Area, Texas", settings))

    assert first.warning is None
    assert first.identity.cbsa_code == "12420"
    assert first.series["population"][1] == 22000.0
    assert calls_after_first == 1 + 5 * 2
    assert len(fake_census.calls) == calls_after_first
    assert second.identity.id == first.identity.id
    assert second.series == first.series
    assert count_series_values(conn, first.identity.id) == SERIES_ROWS


def test_lazy_refresh_unresolved_market_is_a_warning(conn, fake_census, settings):
    intel = asyncio.run(get_market_intel(conn, "Nowhere, ZZ", settings))

    assert intel.warning == UNRESOLVED_MESSAGE
    assert intel.series == {}
    assert intel.identity.cbsa_code is None


def test_lazy_refresh_external_failure_is_a_warning(conn, fake_census, settings):
    fake_census.error = httpx.ConnectError("unreachable")

    intel = asyncio.run(get_market_intel(conn, AUSTIN, settings))

    assert intel.warning == "Unable to resolve MSA code from Census."
    assert intel.series == {}


def test_lazy_refresh_retries_on_next_request(conn, fake_census, settings):
    fake_census.fail_with_status(500)
    failed = asyncio.run(get_market_intel(conn, AUSTIN, settings))
    fake_census.error = None

    recovered = asyncio.run(get_market_intel(conn, AUSTIN, settings))

    assert failed.warning is not None
    assert recovered.warning is None
    assert recovered.series["population"][10] == 12000.0


def test_forced_refresh_always_refetches(conn, fake_census, settings):
    asyncio.run(get_market_intel(conn, AUSTIN, settings))
    before = len(fake_census.calls)

    result = asyncio.run(refresh_market(conn, AUSTIN, settings))

    assert result.success is True
    assert result.cbsa_code == "12420"
    assert result.records_written == SERIES_ROWS
    # code already stored, so only the ten value requests are repeated
    assert len(fake_census.calls) - before == 10
    assert fake_census.catalog_calls == 1
    assert count_series_values(conn, fetch_market_by_name(conn, AUSTIN).id) == SERIES_ROWS


def test_forced_refresh_failures_are_raised(conn, fake_census, settings):
    with pytest.raises(ConfigurationError, match="CENSUS_API_KEY"):
        asyncio.run(refresh_market(conn, AUSTIN, Settings()))

    with pytest.raises(ResolutionError, match="Unable to resolve CBSA code"):
        asyncio.run(refresh_market(conn, "Nowhere, ZZ", settings))

    with pytest.raises(ValidationError, match="MSA name is required"):
        asyncio.run(refresh_market(conn, "  ", settings))

    fake_census.fail_with_status(503)
    with pytest.raises(CensusAPIError):
        asyncio.run(refresh_market(conn, AUSTIN, settings))


def test_concurrent_refreshes_share_one_fetch(conn, fake_census, settings):
    async def refresh_twice():
        return await asyncio.gather(
            refresh_market(conn, AUSTIN, settings),
            refresh_market(conn, "Austin Round Rock Georgetown, Texas", settings),
        )

    first, second = asyncio.run(refresh_twice())

    assert first == second
    assert fake_census.catalog_calls == 1
    assert len(fake_census.calls) == 1 + 5 * 2


def test_abandoned_refresh_does_not_fail_joined_callers(conn, fake_census, settings):
    async def abandon_first_caller():
        owner_conn = connect()
        owner = asyncio.ensure_future(refresh_market(owner_conn, AUSTIN, settings))
        await asyncio.sleep(0)
        joiner = asyncio.ensure_future(refresh_market(conn, AUSTIN, settings))
        await asyncio.sleep(0)

        owner.cancel()
        owner_conn.close()
        with pytest.raises(asyncio.CancelledError):
            await owner
        return await joiner

    result = asyncio.run(abandon_first_caller())

    assert result.records_written == SERIES_ROWS
    assert fake_census.catalog_calls == 1
    assert count_series_values(conn, fetch_market_by_name(conn, AUSTIN).id) == SERIES_ROWS


def test_list_markets_removes_unreferenced_markets(conn, fake_census):
    deals = ingest_deals(
        conn,
        [
            DealInput(name="Oak Flats", market_name=AUSTIN, postal_code="78701"),
            DealInput(name="Cedar Row", market_name="Austin-Round Rock-Georgetown Metro Area, TX", postal_code="78702"),
            DealInput(name="Elm Court", city="Boise", state="ID", postal_code="83702"),
        ],
    )
    asyncio.run(get_market_intel(conn, "Phoenix, AZ", Settings()))
    assert len(fetch_markets(conn)) == 3

    markets = list_markets(conn)

    assert [(m.name, m.deal_count, m.postal_code_count) for m in markets] == [
        (AUSTIN, 2, 2),
        ("Boise, ID", 1, 1),
    ]
    assert fetch_market_by_name(conn, "Phoenix, AZ") is None

    boise = next(deal for deal in deals if deal.name == "Elm Court")
    assert remove_deal(conn, boise.id) is True
    assert [m.name for m in list_markets(conn)] == [AUSTIN]
    assert remove_deal(conn, boise.id) is False


def test_market_groups_follow_deals(conn):
    ingest_deals(
        conn,
        [
            DealInput(name="Oak Flats", market_name="Dallas-Fort Worth MSA, Texas", postal_code="75201"),
            DealInput(name="Cedar Row", market_name="Dallas-Fort Worth, TX", postal_code="76102"),
            DealInput(name="No Location", market_name="unknown"),
        ],
    )

    groups = get_market_groups(conn)

    assert [group.name for group in groups] == ["Dallas-Fort Worth, TX"]
    assert groups[0].postal_codes == ["75201", "76102"]
    assert groups[0].postal_code_count == 2
    assert len(groups[0].deals) == 2


def test_manual_snapshot_and_list_values(conn, fake_census):
    record_metric_value(conn, AUSTIN, "mf_avg_rent", value_numeric=1525.0)
    record_metric_value(conn, AUSTIN, "top_employers", items=["Dell", " Tesla ", ""])

    intel = asyncio.run(get_market_intel(conn, AUSTIN, Settings()))

    assert intel.snapshot["mf_avg_rent"].value_numeric == 1525.0
    assert intel.snapshot["mf_avg_rent"].unit == "currency"
    assert intel.lists["top_employers"] == ["Dell", "Tesla"]


@pytest.mark.parametrize(
    ("metric_key", "kwargs", "message"),
    [
        ("does_not_exist", {"value_numeric": 1.0}, "Unknown metric"),
        ("population", {"value_numeric": 1.0}, "series"),
        ("mf_avg_rent", {}, "numeric or text"),
        ("top_owners", {}, "list of items"),
    ],
)
def test_manual_values_are_validated(conn, metric_key, kwargs, message):
    with pytest.raises(ValidationError, match=message):
        record_metric_value(conn, AUSTIN, metric_key, **kwargs)


def test_deals_with_boilerplate_only_market_names_are_ingested(conn):
    records = ingest_deals(
        conn,
        [
            DealInput(name="Oak Flats", market_name="MSA", city="Austin", state="TX", postal_code="78701"),
            DealInput(name="Cedar Row", market_name="Metro Area"),
            DealInput(name="Elm Court", market_name="???", city="???", state="TX"),
        ],
    )

    assert fetch_market_by_id(conn, records[0].market_id).name == "Austin, TX"
    assert records[1].market_id is None
    assert records[2].market_id is None
    assert [market.name for market in fetch_markets(conn)] == ["Austin, TX"]


def test_reconcile_on_another_connection_keeps_markets_being_ingested(conn, monkeypatch):
    other = connect()
    insert_deals = deals_job.insert_deals

    def reconcile_then_insert(target, records):
        delete_unreferenced_markets(other)
        return insert_deals(target, records)

    monkeypatch.setattr(deals_job, "insert_deals", reconcile_then_insert)
    try:
        records = ingest_deals(conn, [DealInput(name="Oak Flats", market_name=AUSTIN, postal_code="78701")])
    finally:
        other.close()

    market = fetch_market_by_id(conn, records[0].market_id)
    assert market is not None
    assert market.name == AUSTIN
    assert [m.name for m in list_markets(conn)] == [AUSTIN]


def test_failed_ingest_stores_nothing(conn, monkeypatch):
    def fail(target, records):
        raise RuntimeError("disk full")

    monkeypatch.setattr(deals_job, "insert_deals", fail)

    with pytest.raises(RuntimeError):
        ingest_deals(conn, [DealInput(name="Oak Flats", market_name=AUSTIN, postal_code="78701")])

    assert fetch_markets(conn) == []
