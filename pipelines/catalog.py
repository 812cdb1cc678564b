"""Fixed reference catalog of market metrics.

The catalog is seeded into the store once and never edited by users. Only the
``series`` metrics in the demographics category are filled from the Census
API; the remaining entries are populated by manual snapshot/list entry.
"""

from __future__ import annotations

from typing import Mapping

from pipelines.model import Metric, MetricKind, MetricUnit

_S = MetricKind.SERIES
_P = MetricKind.SNAPSHOT
_L = MetricKind.LIST

# key -> (label, category, unit, kind)
_CATALOG_ROWS: tuple[tuple[str, str, str, MetricUnit, MetricKind], ...] = (
    ("population", "Population", "demographics", MetricUnit.COUNT, _S),
    ("population_growth", "Population growth", "demographics", MetricUnit.PERCENT, _S),
    ("median_household_income", "Median household income", "demographics", MetricUnit.CURRENCY, _S),
    ("median_household_income_growth", "Median household income growth", "demographics", MetricUnit.PERCENT, _S),
    ("home_ownership_rate", "Home ownership rate", "demographics", MetricUnit.PERCENT, _S),
    ("median_home_price", "Median home price", "demographics", MetricUnit.CURRENCY, _S),
    ("median_home_price_growth", "Median home price growth", "demographics", MetricUnit.PERCENT, _S),
    ("renter_households", "Renter households", "demographics", MetricUnit.COUNT, _S),
    ("renter_households_growth", "Renter households growth", "demographics", MetricUnit.PERCENT, _S),
    ("avg_annual_job_growth", "Avg. annual job growth", "demographics", MetricUnit.PERCENT, _S),
    ("household_formation_growth", "Household formation growth", "demographics", MetricUnit.PERCENT, _S),
    ("unemployment_rate", "Unemployment rate", "demographics", MetricUnit.PERCENT, _S),
    ("rent_to_income_ratio", "Rent-to-income ratio", "demographics", MetricUnit.RATIO, _S),
    ("top_employment_concentrations", "Top employment concentrations", "employment", MetricUnit.TEXT, _L),
    ("top_employers", "Top employers", "employment", MetricUnit.TEXT, _L),
    ("major_hiring_announcements", "Major hiring announcements", "employment", MetricUnit.TEXT, _L),
    ("linkedin_postings_ratio", "LinkedIn postings ratio", "employment", MetricUnit.RATIO, _P),
    ("linkedin_postings_trend_6m", "LinkedIn postings trend (6 months)", "employment", MetricUnit.PERCENT, _P),
    ("mf_stock_units", "Multifamily stock", "multifamily", MetricUnit.COUNT, _P),
    ("mf_avg_annual_deliveries_5y", "Avg. annual deliveries (5 years)", "multifamily", MetricUnit.COUNT, _P),
    ("mf_under_construction_permits", "Under construction / permits", "multifamily", MetricUnit.COUNT, _P),
    ("mf_pipeline_ratio", "Pipeline ratio", "multifamily", MetricUnit.PERCENT, _P),
    ("mf_avg_occupancy", "Avg. occupancy", "multifamily", MetricUnit.PERCENT, _S),
    ("mf_avg_rent", "Average rental rate", "multifamily", MetricUnit.CURRENCY, _P),
    ("mf_rent_growth", "Rent growth", "multifamily", MetricUnit.PERCENT, _S),
    ("mf_class_bc_share", "Class B/C share of stock", "multifamily", MetricUnit.PERCENT, _P),
    ("sales_volume", "Avg. annual sales volume", "sale", MetricUnit.CURRENCY, _S),
    ("avg_cap_rate", "Avg. cap rate", "sale", MetricUnit.PERCENT, _S),
    ("avg_price_per_unit", "Avg. price per unit", "sale", MetricUnit.CURRENCY, _S),
    ("replacement_cost", "Replacement cost", "sale", MetricUnit.CURRENCY, _P),
    ("top_owners", "Top owners", "other", MetricUnit.TEXT, _L),
    ("affordability_index", "Affordability index", "other", MetricUnit.INDEX, _P),
    ("tenant_protections", "Tenant protections", "other", MetricUnit.TEXT, _P),
    ("ai_disruption_composite", "AI disruption composite", "other", MetricUnit.TEXT, _P),
    ("home_to_rent_price_gap", "Home-to-rent price gap", "other", MetricUnit.RATIO, _P),
    ("property_tax_reassessment_trigger", "Property tax reassessment trigger", "other", MetricUnit.TEXT, _P),
    ("eviction_efficiency_score", "Eviction efficiency score", "other", MetricUnit.COUNT, _P),
    ("insurance_premium_velocity_3y", "Insurance premium velocity (3 years)", "other", MetricUnit.PERCENT, _P),
    ("climate_degradation_score", "Climate degradation score", "other", MetricUnit.INDEX, _P),
)

METRIC_CATALOG: Mapping[str, Metric] = {
    key: Metric(key=key, label=label, category=category, unit=unit, kind=kind)
    for key, label, category, unit, kind in _CATALOG_ROWS
}


def get_metric(key: str) -> Metric | None:
    return METRIC_CATALOG.get(key)


__all__ = ["METRIC_CATALOG", "get_metric"]
