from datetime import datetime

import pydantic
import pytest

from pipelines.catalog import METRIC_CATALOG
from pipelines.model import DealInput, MarketIdentity, MarketIntel, Metric


def test_market_intel_serializes_with_camel_case_keys():
    intel = MarketIntel(
        identity=MarketIdentity(
            id="m-1",
            name="Austin, TX",
            canonical_key="austin tx",
            cbsa_code="12420",
            created_at=datetime(2025, 1, 1),
        ),
        series={"population": {1: 22000.0, 3: None}},
        lists={"top_employers": ["Dell"]},
        metric_catalog={"population": METRIC_CATALOG["population"]},
        postal_codes=["78701"],
    )

    payload = intel.model_dump(mode="json", by_alias=True)

    assert payload["identity"]["cbsaCode"] == "12420"
    assert payload["identity"]["canonicalKey"] == "austin tx"
    assert payload["list"] == {"top_employers": ["Dell"]}
    assert payload["metricCatalog"]["population"]["unit"] == "count"
    assert payload["postalCodes"] == ["78701"]
    assert payload["warning"] is None


def test_deal_input_accepts_aliases_and_strips_whitespace():
    deal = DealInput.model_validate(
        {"name": " Oak Flats ", "marketName": " Austin, TX ", "postalCode": "78701"}
    )

    assert deal.name == "Oak Flats"
    assert deal.market_name == "Austin, TX"
    assert deal.postal_code == "78701"


def test_metric_requires_known_kind():
    with pytest.raises(pydantic.ValidationError):
        Metric(key="x", label="X", category="other", unit="count", kind="histogram")


def test_identity_is_immutable():
    identity = MarketIdentity(id="m-1", name="Austin, TX", canonical_key="austin tx")

    with pytest.raises(pydantic.ValidationError):
        identity.cbsa_code = "12420"
