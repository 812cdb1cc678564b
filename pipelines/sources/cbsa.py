"""Resolve free-text market names to Census CBSA codes."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Sequence

from pipelines.normalize import canonical_key
from pipelines.sources.acs import ACS_BASE_URL, ACS_TABLE_DATASET, MSA_GEOGRAPHY, request_census

logger = logging.getLogger(__name__)


def match_cbsa_code(name: str, rows: Iterable[Sequence[Any]]) -> str | None:
    """Pick the CBSA code whose catalog name best matches ``name``.

    An exact canonical-key match wins outright. Otherwise every row whose key
    contains the target (or is contained by it) is scored by the length of the
    shorter of the two keys; the highest score wins, ties going to the shorter
    candidate key and then to the earlier row.
    """

    target = canonical_key(name)
    if not target:
        return None

    best_code: str | None = None
    best_rank: tuple[int, int] | None = None
    for row in rows:
        if not row:
            continue
        row_name, code = row[0], row[-1]
        if not row_name or not code:
            continue
        candidate = canonical_key(str(row_name))
        if not candidate:
            continue
        if candidate == target:
            return str(code)
        if target in candidate or candidate in target:
            rank = (min(len(candidate), len(target)), -len(candidate))
            if best_rank is None or rank > best_rank:
                best_rank = rank
                best_code = str(code)
    return best_code


async def resolve_cbsa_code(
    msa_name: str,
    api_key: str,
    year: int,
    *,
    timeout: float | None = None,
    max_attempts: int = 1,
) -> str | None:
    """Look ``msa_name`` up in the Census list of statistical areas for ``year``.

    ``None`` means no statistical area matched; callers treat that as a soft
    failure since tracker market names are free text.
    """

    params = {"get": "NAME", "for": f"{MSA_GEOGRAPHY}:*", "key": api_key}
    payload = await request_census(
        f"{ACS_BASE_URL}/{year}/{ACS_TABLE_DATASET}",
        params,
        error_message="Unable to resolve MSA code from Census.",
        timeout=timeout,
        max_attempts=max_attempts,
    )
    if not isinstance(payload, list) or len(payload) < 2:
        return None

    code = match_cbsa_code(msa_name, (row for row in payload[1:] if isinstance(row, list)))
    if code is None:
        logger.warning("No CBSA match for '%s' among %s statistical areas.", msa_name, len(payload) - 1)
    else:
        logger.info("Resolved '%s' to CBSA %s.", msa_name, code)
    return code


__all__ = ["match_cbsa_code", "resolve_cbsa_code"]
