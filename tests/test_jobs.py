import asyncio
import json

from jobs.__main__ import main
from jobs.deals import ingest_deals
from jobs.load_all import load_all_async
from pipelines.model import DealInput
from storage.db import count_series_values, fetch_market_by_name

AUSTIN = "Austin-Round Rock-Georgetown, TX"
SERIES_ROWS = 13 * 4


def _seed(conn):
    return ingest_deals(
        conn,
        [
            DealInput(name="Oak Flats", market_name=AUSTIN, postal_code="78701"),
            DealInput(name="Cedar Row", market_name=AUSTIN, postal_code="78702"),
            DealInput(name="Elm Court", city="Boise", state="ID", postal_code="83702"),
        ],
    )


def test_list_markets_command(conn, capsys, monkeypatch):
    _seed(conn)
    monkeypatch.setenv("LOG_LEVEL", "INFO")

    assert main(["--log-level", "WARNING", "list-markets"]) == 0

    lines = capsys.readouterr().out.splitlines()
    assert lines == [
        f"{AUSTIN}: deals=2 zips=2",
        "Boise, ID: deals=1 zips=1",
    ]


def test_refresh_command(conn, fake_census, capsys, monkeypatch):
    monkeypatch.setenv("CENSUS_API_KEY", "test-key")

    assert main(["refresh", AUSTIN]) == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload["success"] is True
    assert payload["cbsaCode"] == "12420"
    assert payload["recordsWritten"] == SERIES_ROWS
    assert count_series_values(conn, fetch_market_by_name(conn, AUSTIN).id) == SERIES_ROWS


def test_refresh_command_without_credential(conn, fake_census, capsys):
    assert main(["refresh", AUSTIN]) == 1

    assert capsys.readouterr().out.strip() == "error: CENSUS_API_KEY is not configured."
    assert fake_census.calls == []


def test_clear_code_command(conn, fake_census, capsys, monkeypatch):
    monkeypatch.setenv("CENSUS_API_KEY", "test-key")
    main(["refresh", AUSTIN])

    assert main(["clear-code", AUSTIN]) == 0
    assert fetch_market_by_name(conn, AUSTIN).cbsa_code is None
    assert main(["clear-code", "Nowhere, ZZ"]) == 1


def test_load_all_refreshes_referenced_markets_and_skips_failures(conn, fake_census, monkeypatch):
    _seed(conn)
    monkeypatch.setenv("CENSUS_API_KEY", "test-key")

    assert main(["load-all"]) == 0

    assert count_series_values(conn, fetch_market_by_name(conn, AUSTIN).id) == SERIES_ROWS
    # Boise is not in the statistical-area listing
    assert count_series_values(conn, fetch_market_by_name(conn, "Boise, ID").id) == 0


def test_load_all_without_credential(conn, fake_census):
    _seed(conn)

    assert main(["load-all"]) == 1
    assert fake_census.calls == []


def test_load_all_named_markets(conn, fake_census, settings):
    written = asyncio.run(load_all_async([AUSTIN, "Nowhere, ZZ"], settings))

    assert written == SERIES_ROWS
    assert fake_census.catalog_calls == 2
