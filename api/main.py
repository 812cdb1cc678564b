"""FastAPI service exposing market identities and cached market intel."""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from datetime import date
from typing import Any, Optional

import duckdb
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from jobs.config import load_settings
from jobs.deals import ingest_deals, remove_deal
from jobs.market_intel import (
    MISSING_KEY_MESSAGE,
    get_market_groups,
    get_market_intel,
    list_markets,
    record_metric_value,
    refresh_market,
)
from pipelines.errors import MarketIntelError
from pipelines.model import ApiModel, DealInput
from storage.db import connect, fetch_deals

load_dotenv()


@asynccontextmanager
async def lifespan(_: FastAPI):
    conn = connect()
    conn.close()
    yield


app = FastAPI(title="CRE Market Intel API", version="0.1.0", lifespan=lifespan)


def _configure_cors() -> None:
    raw_origins = os.getenv("API_CORS_ORIGINS", "*")
    origins = [origin.strip() for origin in raw_origins.split(",") if origin.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=True,
    )


_configure_cors()


@app.exception_handler(MarketIntelError)
async def _market_intel_error(_: Request, exc: MarketIntelError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc)})


@app.exception_handler(duckdb.Error)
async def _storage_error(_: Request, exc: duckdb.Error) -> JSONResponse:
    return JSONResponse(status_code=500, content={"error": str(exc)})


class RefreshRequest(ApiModel):
    msa: Optional[str] = None


class MetricValueRequest(ApiModel):
    msa: Optional[str] = None
    metric_key: str
    value_numeric: Optional[float] = None
    value_text: Optional[str] = None
    items: Optional[list[str]] = None
    source: Optional[str] = None
    observed_as_of: Optional[date] = None


def _dump(model: ApiModel) -> dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/market-intel")
async def get_market_intel_route(
    msa: str | None = Query(None, description="Market name; omit to list all markets"),
):
    """Without ``msa`` list markets (deleting unreferenced ones); with it return market intel."""

    settings = load_settings()
    conn = connect()
    try:
        if not msa:
            markets = list_markets(conn)
            return {
                "markets": [_dump(market) for market in markets],
                "warning": None if settings.has_census_key else MISSING_KEY_MESSAGE,
            }
        intel = await get_market_intel(conn, msa, settings)
        return _dump(intel)
    finally:
        conn.close()


@app.get("/market-intel/groups")
def get_market_groups_route():
    conn = connect()
    try:
        return {"groups": [_dump(group) for group in get_market_groups(conn)]}
    finally:
        conn.close()


@app.post("/market-intel/refresh")
async def refresh_market_route(body: RefreshRequest):
    conn = connect()
    try:
        result = await refresh_market(conn, body.msa, load_settings())
        return _dump(result)
    finally:
        conn.close()


@app.put("/market-intel/values")
def put_metric_value_route(body: MetricValueRequest):
    conn = connect()
    try:
        market = record_metric_value(
            conn,
            body.msa,
            body.metric_key,
            value_numeric=body.value_numeric,
            value_text=body.value_text,
            items=body.items,
            source=body.source,
            observed_as_of=body.observed_as_of,
        )
        return {"success": True, "market": market.name}
    finally:
        conn.close()


@app.get("/deals")
def get_deals_route():
    conn = connect()
    try:
        deals = fetch_deals(conn)
        return {"count": len(deals), "deals": [_dump(deal) for deal in deals]}
    finally:
        conn.close()


@app.post("/deals", status_code=201)
def post_deals_route(deals: list[DealInput]):
    conn = connect()
    try:
        records = ingest_deals(conn, deals)
        return {"added": len(records), "deals": [_dump(deal) for deal in records]}
    finally:
        conn.close()


@app.delete("/deals/{deal_id}", status_code=204)
def delete_deal_route(deal_id: str) -> Response:
    conn = connect()
    try:
        if not remove_deal(conn, deal_id):
            raise HTTPException(status_code=404, detail=f"Unknown deal '{deal_id}'")
        return Response(status_code=204)
    finally:
        conn.close()
