"""Census American Community Survey ingestor.

Retrieves ACS 5-year estimates for a CBSA across several vintages and derives
the lookback series (levels and growth rates) cached per market.
"""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Any, Mapping

import httpx

from pipelines.common import fetch_json
from pipelines.errors import CensusAPIError
from pipelines.model import LOOKBACK_PERIODS, CensusSeries, SeriesMap

logger = logging.getLogger(__name__)

ACS_BASE_URL = "https://api.census.gov/data"
ACS_TABLE_DATASET = "acs/acs5"
ACS_PROFILE_DATASET = "acs/acs5/profile"
MSA_GEOGRAPHY = "metropolitan statistical area/micropolitan statistical area"
ACS_SOURCE = "census_acs5"

# The ACS 5-year API has no vintages before this year.
MIN_SUPPORTED_YEAR = 2010

# Values at or below this are Census annotation sentinels (-666666666, -999999999, ...).
SENTINEL_THRESHOLD = -1_000_000

ACS_TABLE_FIELDS: Mapping[str, str] = {
    "population": "B01003_001E",
    "median_household_income": "B19013_001E",
    "median_home_price": "B25077_001E",
    "renter_households": "B25003_003E",
    "households": "B11001_001E",
    "employed": "B23025_004E",
}

ACS_PROFILE_FIELDS: Mapping[str, str] = {
    "home_ownership_rate": "DP04_0046PE",
    "unemployment_rate": "DP03_0009PE",
    "rent_to_income_ratio": "DP04_0134PE",
}

# Series metric -> raw field reported as a level for each period.
LEVEL_METRICS: Mapping[str, str] = {
    "population": "population",
    "median_household_income": "median_household_income",
    "home_ownership_rate": "home_ownership_rate",
    "median_home_price": "median_home_price",
    "renter_households": "renter_households",
    "unemployment_rate": "unemployment_rate",
    "rent_to_income_ratio": "rent_to_income_ratio",
}

# Series metric -> raw field whose change between the latest year and N years back is reported.
GROWTH_METRICS: Mapping[str, str] = {
    "population_growth": "population",
    "median_household_income_growth": "median_household_income",
    "median_home_price_growth": "median_home_price",
    "renter_households_growth": "renter_households",
    "household_formation_growth": "households",
    "avg_annual_job_growth": "employed",
}

CensusValues = dict[str, float | None]


def parse_numeric(value: Any) -> float | None:
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(numeric) or math.isinf(numeric):
        return None
    if numeric <= SENTINEL_THRESHOLD:
        return None
    return numeric


def compute_growth(current: float | None, past: float | None) -> float | None:
    if current is None or past is None or past == 0:
        return None
    return (current - past) / past * 100


def normalize_rent_to_income_ratio(value: float | None) -> float | None:
    """Bring the rent-to-income field onto one scale across ACS vintages."""

    if value is None or math.isnan(value) or math.isinf(value):
        return None
    if value <= 0:
        return None
    if value > 1000:
        return value / 1000
    if value > 100:
        return value / 100
    return value


def required_years(latest_year: int) -> list[int]:
    years = {latest_year, *(latest_year - period for period in LOOKBACK_PERIODS)}
    return sorted(year for year in years if year >= MIN_SUPPORTED_YEAR)


async def request_census(
    url: str,
    params: Mapping[str, Any],
    *,
    error_message: str,
    timeout: float | None = None,
    max_attempts: int = 1,
) -> Any:
    """Call the Census API, folding HTTP and decoding failures into ``CensusAPIError``."""

    try:
        return await fetch_json(url, params=params, timeout=timeout, max_attempts=max_attempts)
    except httpx.HTTPStatusError as exc:
        logger.warning("%s status=%s", error_message, exc.response.status_code)
        raise CensusAPIError(error_message) from exc
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("%s (%s)", error_message, exc)
        raise CensusAPIError(error_message) from exc


async def fetch_census_data(
    year: int,
    dataset: str,
    fields: Mapping[str, str],
    cbsa_code: str,
    api_key: str,
    *,
    timeout: float | None = None,
    max_attempts: int = 1,
) -> CensusValues:
    """Fetch one field group for a CBSA and vintage, keyed by our field names."""

    params = {
        "get": ",".join(["NAME", *fields.values()]),
        "for": f"{MSA_GEOGRAPHY}:{cbsa_code}",
        "key": api_key,
    }
    payload = await request_census(
        f"{ACS_BASE_URL}/{year}/{dataset}",
        params,
        error_message=f"Census API error ({dataset} {year}).",
        timeout=timeout,
        max_attempts=max_attempts,
    )

    if not isinstance(payload, list) or len(payload) < 2:
        raise CensusAPIError(f"Census API returned no data for {year}.")

    header_row, row = payload[0], payload[1]
    if not isinstance(header_row, list) or not isinstance(row, list):
        raise CensusAPIError(f"Census API returned no data for {year}.")

    results: CensusValues = {}
    for key, field in fields.items():
        try:
            idx = header_row.index(field)
        except ValueError:
            results[key] = None
            continue
        results[key] = parse_numeric(row[idx]) if idx < len(row) else None
    return results


async def fetch_acs_year(year: int, cbsa_code: str, api_key: str, **request_options: Any) -> CensusValues:
    table, profile = await asyncio.gather(
        fetch_census_data(year, ACS_TABLE_DATASET, ACS_TABLE_FIELDS, cbsa_code, api_key, **request_options),
        fetch_census_data(year, ACS_PROFILE_DATASET, ACS_PROFILE_FIELDS, cbsa_code, api_key, **request_options),
    )
    return {**table, **profile}


async def fetch_census_series(
    msa_name: str,
    cbsa_code: str,
    api_key: str,
    latest_year: int,
    *,
    timeout: float | None = None,
    max_attempts: int = 1,
) -> CensusSeries:
    """Fetch every vintage needed for the lookback periods and derive the series."""

    years = required_years(latest_year)
    if latest_year not in years:
        raise CensusAPIError(f"No Census data for {latest_year}.")

    logger.info("Fetching ACS vintages %s for %s (cbsa=%s).", years, msa_name, cbsa_code)
    fetched = await asyncio.gather(
        *(
            fetch_acs_year(year, cbsa_code, api_key, timeout=timeout, max_attempts=max_attempts)
            for year in years
        )
    )
    year_values: dict[int, CensusValues] = dict(zip(years, fetched, strict=True))

    def value_at(year: int, field: str) -> float | None:
        return year_values.get(year, {}).get(field)

    series: SeriesMap = {key: {} for key in (*LEVEL_METRICS, *GROWTH_METRICS)}
    for period in LOOKBACK_PERIODS:
        level_year = latest_year if period == 1 else latest_year - period
        for metric, field in LEVEL_METRICS.items():
            series[metric][period] = value_at(level_year, field)
        series["rent_to_income_ratio"][period] = normalize_rent_to_income_ratio(
            series["rent_to_income_ratio"][period]
        )
        for metric, field in GROWTH_METRICS.items():
            series[metric][period] = compute_growth(
                value_at(latest_year, field),
                value_at(latest_year - period, field),
            )

    return CensusSeries(
        msa_name=msa_name,
        cbsa_code=cbsa_code,
        latest_year=latest_year,
        series=series,
    )


__all__ = [
    "ACS_BASE_URL",
    "ACS_SOURCE",
    "ACS_TABLE_FIELDS",
    "ACS_PROFILE_FIELDS",
    "MIN_SUPPORTED_YEAR",
    "MSA_GEOGRAPHY",
    "parse_numeric",
    "compute_growth",
    "normalize_rent_to_income_ratio",
    "required_years",
    "request_census",
    "fetch_census_data",
    "fetch_acs_year",
    "fetch_census_series",
]
