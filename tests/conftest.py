import asyncio

import httpx
import pytest

import pipelines.sources.acs as acs
from jobs.config import Settings
from storage.db import connect

CATALOG_ROWS = [
    ["NAME", acs.MSA_GEOGRAPHY],
    ["Austin-Round Rock-Georgetown, TX Metro Area", "12420"],
    ["Dallas-Fort Worth-Arlington, TX Metro Area", "19100"],
    ["Nashville-Davidson--Murfreesboro--Franklin, TN Metro Area", "34980"],
    ["Phoenix-Mesa-Chandler, AZ Metro Area", "38060"],
]


def census_value(field: str, year: int) -> str:
    if field == "B01003_001E":
        return str(1000 * (year - 2000))
    if field == "B19013_001E":
        return str(50000 + 1000 * (year - 2012))
    if field == "B25077_001E":
        return "-666666666" if year == 2012 else str(200000 + 10000 * (year - 2012))
    if field == "B25003_003E":
        return str(400 * (year - 2000))
    if field == "B11001_001E":
        return str(500 * (year - 2000))
    if field == "B23025_004E":
        return str(600 * (year - 2000))
    if field == "DP04_0046PE":
        return "60.5"
    if field == "DP03_0009PE":
        return "4.2"
    if field == "DP04_0134PE":
        return "315" if year == 2022 else "30.1"
    return "0"


class FakeCensus:
    """Stands in for ``fetch_json`` and answers like the Census API."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict]] = []
        self.error: Exception | None = None

    async def __call__(self, url, *, params=None, **kwargs):
        params = dict(params or {})
        self.calls.append((url, params))
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error

        year_text, dataset = url[len(acs.ACS_BASE_URL) + 1 :].split("/", 1)
        year = int(year_text)
        geography = params["for"]
        if geography.endswith(":*"):
            return CATALOG_ROWS

        code = geography.rsplit(":", 1)[1]
        fields = params["get"].split(",")[1:]
        header = ["NAME", *fields, acs.MSA_GEOGRAPHY]
        row = [f"CBSA {code}", *(census_value(field, year) for field in fields), code]
        return [header, row]

    def fail_with_status(self, status_code: int) -> None:
        request = httpx.Request("GET", acs.ACS_BASE_URL)
        response = httpx.Response(status_code, request=request)
        self.error = httpx.HTTPStatusError("upstream failure", request=request, response=response)

    @property
    def catalog_calls(self) -> int:
        return sum(1 for _, params in self.calls if params.get("for", "").endswith(":*"))


@pytest.fixture()
def fake_census(monkeypatch):
    fake = FakeCensus()
    monkeypatch.setattr(acs, "fetch_json", fake)
    return fake


@pytest.fixture()
def db_path(monkeypatch, tmp_path):
    path = tmp_path / "market_intel.duckdb"
    monkeypatch.setenv("MARKET_INTEL_DB_PATH", str(path))
    monkeypatch.delenv("CENSUS_API_KEY", raising=False)
    monkeypatch.delenv("CENSUS_ACS_LATEST_YEAR", raising=False)
    return path


@pytest.fixture()
def conn(db_path):
    connection = connect()
    try:
        yield connection
    finally:
        connection.close()


@pytest.fixture()
def settings():
    return Settings(census_api_key="test-key", latest_year=2022)
