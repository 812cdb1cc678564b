"""Batch job that force-refreshes Census metrics for every market referenced by a deal."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Iterable

from jobs.config import Settings, load_settings
from jobs.market_intel import refresh_market
from pipelines.errors import MarketIntelError
from storage.db import connect, fetch_markets

logger = logging.getLogger(__name__)


async def load_all_async(
    names: Iterable[str] | None = None, settings: Settings | None = None
) -> int:
    """Refresh the named markets (default: all referenced by deals); return rows written."""

    settings = settings or load_settings()
    total_written = 0
    conn = connect()
    try:
        if names is None:
            names = [market.name for market in fetch_markets(conn, referenced_only=True)]
        for name in names:
            logger.info("Refreshing Census metrics for %s...", name)
            try:
                result = await refresh_market(conn, name, settings)
            except MarketIntelError as exc:
                logger.warning("Skipping %s: %s", name, exc)
                continue
            total_written += result.records_written
        return total_written
    finally:
        conn.close()


def main(names: Iterable[str] | None = None) -> int:
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
    settings = load_settings()
    if not settings.has_census_key:
        logger.error("CENSUS_API_KEY is not configured; nothing to refresh.")
        return 1
    written = asyncio.run(load_all_async(names, settings))
    logger.info("Load-all job finished (records written=%s).", written)
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
