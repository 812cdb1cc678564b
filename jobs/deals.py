"""Deal ingestion and removal.

Parsed tracker rows arrive as ``DealInput``; each deal is attached to the
market identity its location resolves to, and that market's postal codes are
recorded alongside.
"""

from __future__ import annotations

import logging
import uuid
from typing import Iterable

import duckdb

from pipelines.model import DealInput, DealRecord
from pipelines.normalize import resolve_deal_market_name
from storage.db import delete_deal, insert_deals, transaction, upsert_market, upsert_postal_codes

logger = logging.getLogger(__name__)

TRACKER_SOURCE = "tracker"


def ingest_deals(conn: duckdb.DuckDBPyConnection, deals: Iterable[DealInput]) -> list[DealRecord]:
    """Attach each deal to its market and store the batch.

    Markets, postal codes and deals are written in one transaction, so a
    concurrent ``reconcile_markets`` never sees a new market without its deals.
    """

    deals = list(deals)
    market_ids: dict[str, str] = {}
    postal_codes: dict[str, set[str]] = {}
    records: list[DealRecord] = []

    with transaction(conn):
        for deal in deals:
            market_name = resolve_deal_market_name(deal)
            market_id: str | None = None
            if market_name:
                market_id = market_ids.get(market_name)
                if market_id is None:
                    market_id = upsert_market(conn, market_name).id
                    market_ids[market_name] = market_id
                if deal.postal_code:
                    postal_codes.setdefault(market_id, set()).add(deal.postal_code)
            else:
                logger.info("Deal '%s' has no usable location; leaving it without a market.", deal.name)
            records.append(
                DealRecord(**deal.model_dump(), id=str(uuid.uuid4()), market_id=market_id)
            )

        for market_id, codes in postal_codes.items():
            upsert_postal_codes(conn, market_id, codes, source=TRACKER_SOURCE)
        insert_deals(conn, records)

    logger.info("Ingested %s deal(s) across %s market(s).", len(records), len(set(market_ids.values())))
    return records


def remove_deal(conn: duckdb.DuckDBPyConnection, deal_id: str) -> bool:
    removed = delete_deal(conn, deal_id)
    if removed:
        logger.info("Deleted deal %s.", deal_id)
    return removed


__all__ = ["ingest_deals", "remove_deal", "TRACKER_SOURCE"]
