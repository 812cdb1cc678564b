"""Command-line entrypoint for market intel jobs."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os

from jobs.config import load_settings
from jobs.load_all import main as run_load_all
from jobs.market_intel import get_market_intel, list_markets, refresh_market
from pipelines.errors import MarketIntelError
from storage.db import clear_market_code, connect, fetch_market_by_name


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, default=str))


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="CRE market intel job runner")
    parser.add_argument(
        "--log-level",
        help="Override LOG_LEVEL for this invocation (e.g. DEBUG, INFO)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser(
        "list-markets",
        help="List markets referenced by deals (removes unreferenced markets first)",
    )

    intel_parser = subparsers.add_parser("intel", help="Show cached market intel for one market")
    intel_parser.add_argument("msa", help="Market name as typed in the tracker")

    refresh_parser = subparsers.add_parser("refresh", help="Force a Census refresh for one market")
    refresh_parser.add_argument("msa", help="Market name as typed in the tracker")

    load_parser = subparsers.add_parser(
        "load-all", help="Force a Census refresh for every market referenced by a deal"
    )
    load_parser.add_argument(
        "--markets",
        help="Comma-separated list of market names to refresh (defaults to all referenced)",
    )

    clear_parser = subparsers.add_parser(
        "clear-code", help="Forget a market's CBSA code so the next refresh resolves it again"
    )
    clear_parser.add_argument("msa", help="Market name as typed in the tracker")

    args = parser.parse_args(argv)
    if args.log_level:
        os.environ["LOG_LEVEL"] = args.log_level
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))

    if args.command == "load-all":
        names = [item.strip() for item in (args.markets or "").split(",") if item.strip()]
        return run_load_all(names or None)

    conn = connect()
    try:
        if args.command == "list-markets":
            for market in list_markets(conn):
                print(f"{market.name}: deals={market.deal_count} zips={market.postal_code_count}")
            return 0

        if args.command == "intel":
            try:
                intel = asyncio.run(get_market_intel(conn, args.msa, load_settings()))
            except MarketIntelError as exc:
                print(f"error: {exc}")
                return 1
            _print_json(intel.model_dump(mode="json", by_alias=True))
            return 0

        if args.command == "refresh":
            try:
                result = asyncio.run(refresh_market(conn, args.msa, load_settings()))
            except MarketIntelError as exc:
                print(f"error: {exc}")
                return 1
            _print_json(result.model_dump(mode="json", by_alias=True))
            return 0

        if args.command == "clear-code":
            market = fetch_market_by_name(conn, args.msa)
            if market is None:
                print(f"error: unknown market '{args.msa}'")
                return 1
            clear_market_code(conn, market.id)
            print(f"Cleared CBSA code for {market.name}.")
            return 0
    finally:
        conn.close()

    parser.error("Unknown command")
    return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
