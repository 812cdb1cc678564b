"""Market-name normalization.

Spreadsheet trackers carry free-text MSA names ("Dallas-Fort Worth-Arlington, TX",
"Dallas Fort Worth Metro Area", ...). Everything that needs to decide whether
two spellings refer to the same market goes through ``canonical_key``.
"""

from __future__ import annotations

import re
from typing import Iterable, Mapping, Protocol, Sequence

from pipelines.model import DealRecord, MarketGroup, MarketSummary

STATE_ABBREVIATIONS: Mapping[str, str] = {
    "alabama": "al",
    "alaska": "ak",
    "arizona": "az",
    "arkansas": "ar",
    "california": "ca",
    "colorado": "co",
    "connecticut": "ct",
    "delaware": "de",
    "florida": "fl",
    "georgia": "ga",
    "hawaii": "hi",
    "idaho": "id",
    "illinois": "il",
    "indiana": "in",
    "iowa": "ia",
    "kansas": "ks",
    "kentucky": "ky",
    "louisiana": "la",
    "maine": "me",
    "maryland": "md",
    "massachusetts": "ma",
    "michigan": "mi",
    "minnesota": "mn",
    "mississippi": "ms",
    "missouri": "mo",
    "montana": "mt",
    "nebraska": "ne",
    "nevada": "nv",
    "new hampshire": "nh",
    "new jersey": "nj",
    "new mexico": "nm",
    "new york": "ny",
    "north carolina": "nc",
    "north dakota": "nd",
    "ohio": "oh",
    "oklahoma": "ok",
    "oregon": "or",
    "pennsylvania": "pa",
    "rhode island": "ri",
    "south carolina": "sc",
    "south dakota": "sd",
    "tennessee": "tn",
    "texas": "tx",
    "utah": "ut",
    "vermont": "vt",
    "virginia": "va",
    "washington": "wa",
    "west virginia": "wv",
    "wisconsin": "wi",
    "wyoming": "wy",
    "district of columbia": "dc",
}

# Longest phrases first so "metro area" is not left behind as "area".
METRO_PHRASES: tuple[str, ...] = (
    "metropolitan statistical area",
    "micropolitan statistical area",
    "metropolitan area",
    "micropolitan area",
    "metro area",
    "micro area",
    "metro",
    "msa",
)

INVALID_LOCATION_VALUES = frozenset({"unknown", "na", "n/a", "none", "-"})

_METRO_PATTERN = re.compile(
    r"\b(?:" + "|".join(re.escape(phrase) for phrase in METRO_PHRASES) + r")\b",
    re.IGNORECASE,
)
_NON_KEY_CHARS = re.compile(r"[^a-z0-9,]+")
_NON_LETTERS = re.compile(r"[^a-z]+")
_WHITESPACE = re.compile(r"\s+")
_STATE_SUFFIX = re.compile(r"^[A-Za-z]{2}$")
_STATE_CODES = frozenset(STATE_ABBREVIATIONS.values())
_MAX_STATE_WORDS = max(len(name.split()) for name in STATE_ABBREVIATIONS)


class DealLocation(Protocol):
    market_name: str | None
    city: str | None
    state: str | None


def _collapse(value: str) -> str:
    return _WHITESPACE.sub(" ", value).strip()


def normalize_state_token(value: str) -> str:
    """Map a region qualifier ("Texas", "New York-New Jersey", "NY-NJ-PA") to state abbreviations.

    Full state names are matched greedily across tokens, longest first.
    """

    tokens = _collapse(_NON_LETTERS.sub(" ", value.lower())).split()
    abbreviated: list[str] = []
    i = 0
    while i < len(tokens):
        for width in range(min(_MAX_STATE_WORDS, len(tokens) - i), 0, -1):
            candidate = " ".join(tokens[i : i + width])
            if candidate in STATE_ABBREVIATIONS:
                abbreviated.append(STATE_ABBREVIATIONS[candidate])
                i += width
                break
        else:
            abbreviated.append(tokens[i])
            i += 1
    return " ".join(abbreviated)


def canonical_key(raw: str | None) -> str:
    """Return the comparable key for a free-text market name.

    ``"Nashville-Davidson--Murfreesboro, Tennessee"`` and
    ``"nashville-davidson-murfreesboro TN"`` both become
    ``"nashville davidson murfreesboro tn"``.
    """

    if not raw:
        return ""
    cleaned = _METRO_PATTERN.sub("", raw.strip().lower())
    cleaned = _collapse(_NON_KEY_CHARS.sub(" ", cleaned))
    if not cleaned:
        return ""
    parts = [part.strip() for part in cleaned.split(",") if part.strip()]
    if len(parts) > 1:
        state = normalize_state_token(parts[-1])
        place = " ".join(parts[:-1])
        return _collapse(f"{place} {state}")
    return _collapse(cleaned.replace(",", " "))


def place_key(key: str) -> str:
    """Strip trailing state abbreviations from a canonical key, keeping at least one token."""

    tokens = key.split()
    while len(tokens) > 1 and tokens[-1] in _STATE_CODES:
        tokens.pop()
    return " ".join(tokens)


def is_qualified_key(key: str) -> bool:
    return bool(key) and place_key(key) != key


def match_identity_key(key: str, known_keys: Iterable[str]) -> str | None:
    """Return the known key that ``key`` belongs to, or ``None``.

    An exact match wins. Otherwise a key merges with a known key sharing its
    place tokens when at least one of the two carries no state qualifier, so
    "dallas fort worth" and "dallas fort worth tx" are one market while
    "springfield il" and "springfield mo" stay apart. When several known keys
    qualify, the first in ``known_keys`` order wins.
    """

    if not key:
        return None
    known = [candidate for candidate in known_keys if candidate]
    if key in known:
        return key
    place = place_key(key)
    qualified = is_qualified_key(key)
    for candidate in known:
        if place_key(candidate) != place:
            continue
        if qualified and is_qualified_key(candidate):
            continue
        return candidate
    return None


def build_key_index(keys: Iterable[str]) -> dict[str, str]:
    """Map each key to the key of the group it joins.

    Unqualified keys join the first qualified key with the same place tokens;
    qualified keys always stand for themselves.
    """

    ordered = list(dict.fromkeys(key for key in keys if key))
    qualified_by_place: dict[str, str] = {}
    for key in ordered:
        if is_qualified_key(key):
            qualified_by_place.setdefault(place_key(key), key)
    return {
        key: key if is_qualified_key(key) else qualified_by_place.get(key, key)
        for key in ordered
    }


def has_metro_phrase(value: str) -> bool:
    return bool(_METRO_PATTERN.search(value))


def has_state_abbreviation(value: str) -> bool:
    parts = value.split(",")
    if len(parts) < 2:
        return False
    return bool(_STATE_SUFFIX.match(parts[-1].strip()))


def prefer_canonical_name(a: str, b: str) -> str:
    """Pick the nicer of two display names that share a canonical key.

    Order of preference: no metro boilerplate, a two-letter state suffix, the
    shorter string, then the lexicographically smaller one. The choice does
    not depend on argument order.
    """

    if not a:
        return b
    if not b:
        return a
    a_metro, b_metro = has_metro_phrase(a), has_metro_phrase(b)
    if a_metro != b_metro:
        return b if a_metro else a
    a_abbrev, b_abbrev = has_state_abbreviation(a), has_state_abbreviation(b)
    if a_abbrev != b_abbrev:
        return a if a_abbrev else b
    if len(a) != len(b):
        return a if len(a) < len(b) else b
    return min(a, b)


def is_valid_location_token(value: str | None) -> bool:
    if not value:
        return False
    cleaned = value.strip().lower()
    if not cleaned:
        return False
    return cleaned not in INVALID_LOCATION_VALUES


def resolve_deal_market_name(deal: DealLocation) -> str | None:
    """Display name a deal associates with: the MSA field, else "<city>, <state>".

    A field that normalizes to an empty key ("MSA", "Metro Area", "???") counts
    as missing.
    """

    if is_valid_location_token(deal.market_name) and canonical_key(deal.market_name):
        return deal.market_name.strip()
    if (
        is_valid_location_token(deal.city)
        and is_valid_location_token(deal.state)
        and canonical_key(deal.city)
    ):
        return f"{deal.city.strip()}, {deal.state.strip()}"
    return None


def resolve_deal_market_key(deal: DealLocation) -> str:
    name = resolve_deal_market_name(deal)
    return canonical_key(name) if name else ""


def group_deals_by_market(
    markets: Sequence[MarketSummary], deals: Iterable[DealRecord]
) -> list[MarketGroup]:
    """Merge cached markets with deal-derived groupings for display.

    Cached market names seed the groups; when nothing is cached the deals'
    own market names are used. Spellings are merged through
    ``build_key_index`` and groups that end up without deals are dropped.
    """

    deals = list(deals)
    deal_names = [resolve_deal_market_name(deal) for deal in deals]
    if markets:
        seeds = [(market.name, market.postal_code_count) for market in markets]
    else:
        seeds = [(name, None) for name in deal_names if name]

    index = build_key_index(
        [canonical_key(name) for name, _ in seeds]
        + [canonical_key(name) for name in deal_names if name]
    )

    names: dict[str, tuple[str, int | None]] = {}
    for name, postal_code_count in seeds:
        key = index.get(canonical_key(name))
        if not key:
            continue
        existing = names.get(key)
        if existing is None:
            names[key] = (name, postal_code_count)
            continue
        merged_count = max(existing[1] or 0, postal_code_count or 0) or None
        names[key] = (prefer_canonical_name(existing[0], name), merged_count)

    by_key: dict[str, list[DealRecord]] = {}
    for deal, name in zip(deals, deal_names):
        key = index.get(canonical_key(name)) if name else None
        if key:
            by_key.setdefault(key, []).append(deal)

    groups: list[MarketGroup] = []
    for key, (name, postal_code_count) in names.items():
        matched = by_key.get(key, [])
        if not matched:
            continue
        postal_codes = sorted({deal.postal_code for deal in matched if deal.postal_code})
        groups.append(
            MarketGroup(
                key=key,
                name=name,
                deals=matched,
                postal_codes=postal_codes,
                postal_code_count=postal_code_count,
            )
        )
    return sorted(groups, key=lambda group: group.name)


__all__ = [
    "STATE_ABBREVIATIONS",
    "METRO_PHRASES",
    "canonical_key",
    "normalize_state_token",
    "place_key",
    "is_qualified_key",
    "match_identity_key",
    "build_key_index",
    "has_metro_phrase",
    "has_state_abbreviation",
    "prefer_canonical_name",
    "is_valid_location_token",
    "resolve_deal_market_name",
    "resolve_deal_market_key",
    "group_deals_by_market",
]
