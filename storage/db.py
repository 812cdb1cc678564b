"""DuckDB persistence for market identities, cached metrics and deals.

Every write is an ``INSERT ... ON CONFLICT`` keyed by a natural key, so
replaying a payload or racing two writers for the same market converges on a
single row per key.
"""

from __future__ import annotations

import json
import os
import uuid
from contextlib import contextmanager
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Iterable, Iterator, Mapping, Sequence

import duckdb

from pipelines.catalog import METRIC_CATALOG
from pipelines.model import (
    DealRecord,
    MarketIdentity,
    Metric,
    SeriesMap,
    SnapshotValue,
)
from pipelines.errors import StorageError, ValidationError
from pipelines.normalize import (
    canonical_key,
    is_qualified_key,
    match_identity_key,
    place_key,
    prefer_canonical_name,
)

DB_ENV_VAR = "MARKET_INTEL_DB_PATH"
DEFAULT_DB_PATH = Path("data/market_intel.duckdb")

MARKETS_TABLE = "markets"
POSTAL_CODES_TABLE = "market_postal_codes"
METRICS_TABLE = "metrics"
SERIES_TABLE = "metric_series"
SNAPSHOT_TABLE = "metric_snapshot"
LIST_TABLE = "metric_list"
DEALS_TABLE = "deals"

# Tables whose rows belong to a market and go away with it.
MARKET_CHILD_TABLES = (SERIES_TABLE, SNAPSHOT_TABLE, LIST_TABLE, POSTAL_CODES_TABLE)

_MARKET_COLUMNS = "id, name, canonical_key, cbsa_code, created_at, updated_at"


def _ensure_parent_dir(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _utcnow() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


@contextmanager
def transaction(conn: duckdb.DuckDBPyConnection) -> Iterator[duckdb.DuckDBPyConnection]:
    """Run the enclosed statements as one transaction, rolling back on any error."""

    conn.begin()
    try:
        yield conn
    except Exception:
        conn.rollback()
        raise
    conn.commit()


def get_database_path(override: str | os.PathLike[str] | None = None) -> Path:
    """Resolve the DuckDB file path from an explicit override or environment variable."""

    if override is not None:
        return Path(override)
    env_value = os.getenv(DB_ENV_VAR)
    if env_value:
        return Path(env_value)
    return DEFAULT_DB_PATH


def connect(
    path: str | os.PathLike[str] | None = None,
    *,
    read_only: bool = False,
    ensure: bool = True,
) -> duckdb.DuckDBPyConnection:
    """Create a DuckDB connection, optionally ensuring schema and catalog availability."""

    db_path = get_database_path(path)
    if not read_only:
        _ensure_parent_dir(db_path)
    conn = duckdb.connect(str(db_path), read_only=read_only)
    if ensure and not read_only:
        ensure_schema(conn)
    return conn


def ensure_schema(conn: duckdb.DuckDBPyConnection) -> None:
    """Create the market intel tables if needed and seed the metric catalog."""

    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {MARKETS_TABLE} (
            canonical_key TEXT PRIMARY KEY,
            id TEXT NOT NULL,
            name TEXT NOT NULL,
            cbsa_code TEXT,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL
        )
        """
    )
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {POSTAL_CODES_TABLE} (
            market_id TEXT NOT NULL,
            postal_code TEXT NOT NULL,
            source TEXT,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL,
            PRIMARY KEY (market_id, postal_code)
        )
        """
    )
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {METRICS_TABLE} (
            key TEXT PRIMARY KEY,
            label TEXT NOT NULL,
            category TEXT NOT NULL,
            unit TEXT,
            description TEXT,
            kind TEXT NOT NULL CHECK (kind IN ('series', 'snapshot', 'list'))
        )
        """
    )
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {SERIES_TABLE} (
            market_id TEXT NOT NULL,
            metric_key TEXT NOT NULL,
            period_years INTEGER NOT NULL CHECK (period_years IN (1, 3, 5, 10)),
            value DOUBLE,
            source TEXT,
            observed_as_of DATE,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL,
            PRIMARY KEY (market_id, metric_key, period_years)
        )
        """
    )
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {SNAPSHOT_TABLE} (
            market_id TEXT NOT NULL,
            metric_key TEXT NOT NULL,
            value_numeric DOUBLE,
            value_text TEXT,
            unit TEXT,
            source TEXT,
            observed_as_of DATE,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL,
            PRIMARY KEY (market_id, metric_key)
        )
        """
    )
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {LIST_TABLE} (
            market_id TEXT NOT NULL,
            metric_key TEXT NOT NULL,
            items JSON NOT NULL,
            source TEXT,
            observed_as_of DATE,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL,
            PRIMARY KEY (market_id, metric_key)
        )
        """
    )
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {DEALS_TABLE} (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            market_name TEXT,
            city TEXT,
            state TEXT,
            postal_code TEXT,
            market_id TEXT,
            created_at TIMESTAMP NOT NULL
        )
        """
    )
    seed_metric_catalog(conn)


def seed_metric_catalog(
    conn: duckdb.DuckDBPyConnection, catalog: Mapping[str, Metric] = METRIC_CATALOG
) -> None:
    conn.executemany(
        f"""
        INSERT INTO {METRICS_TABLE} (key, label, category, unit, description, kind)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT (key) DO NOTHING
        """,
        [
            (m.key, m.label, m.category, m.unit.value, m.description, m.kind.value)
            for m in catalog.values()
        ],
    )


# --------------------------------------------------------------------------- markets


def _row_to_market(row: Sequence[object]) -> MarketIdentity:
    return MarketIdentity(
        id=row[0],
        name=row[1],
        canonical_key=row[2],
        cbsa_code=row[3],
        created_at=row[4],
        updated_at=row[5],
    )


def fetch_market_by_key(conn: duckdb.DuckDBPyConnection, key: str) -> MarketIdentity | None:
    row = conn.execute(
        f"SELECT {_MARKET_COLUMNS} FROM {MARKETS_TABLE} WHERE canonical_key = ?", [key]
    ).fetchone()
    return _row_to_market(row) if row else None


def _match_market(conn: duckdb.DuckDBPyConnection, key: str) -> MarketIdentity | None:
    """Find the identity ``key`` belongs to, falling back to place-token matches.

    Candidates are considered oldest first, so an unqualified spelling shared by
    several states joins the market that was created first.
    """

    exact = fetch_market_by_key(conn, key)
    if exact is not None:
        return exact
    place = place_key(key)
    rows = conn.execute(
        f"""
        SELECT {_MARKET_COLUMNS} FROM {MARKETS_TABLE}
        WHERE canonical_key = ? OR starts_with(canonical_key, ?)
        ORDER BY created_at, canonical_key
        """,
        [place, f"{place} "],
    ).fetchall()
    candidates = {market.canonical_key: market for market in map(_row_to_market, rows)}
    matched = match_identity_key(key, candidates)
    return candidates[matched] if matched else None


def fetch_market_by_name(conn: duckdb.DuckDBPyConnection, name: str) -> MarketIdentity | None:
    key = canonical_key(name)
    if not key:
        return None
    return _match_market(conn, key)


def fetch_market_by_id(conn: duckdb.DuckDBPyConnection, market_id: str) -> MarketIdentity | None:
    row = conn.execute(
        f"SELECT {_MARKET_COLUMNS} FROM {MARKETS_TABLE} WHERE id = ?", [market_id]
    ).fetchone()
    return _row_to_market(row) if row else None


def fetch_markets(
    conn: duckdb.DuckDBPyConnection, *, referenced_only: bool = False
) -> list[MarketIdentity]:
    sql = f"SELECT {_MARKET_COLUMNS} FROM {MARKETS_TABLE} m"
    if referenced_only:
        sql += f" WHERE EXISTS (SELECT 1 FROM {DEALS_TABLE} d WHERE d.market_id = m.id)"
    sql += " ORDER BY name"
    return [_row_to_market(row) for row in conn.execute(sql).fetchall()]


def upsert_market(conn: duckdb.DuckDBPyConnection, name: str) -> MarketIdentity:
    """Return the identity for ``name``, creating it the first time its key is seen.

    When the name matches an existing identity under another spelling, the
    stored display name becomes whichever of the two ``prefer_canonical_name``
    picks, and an unqualified key is replaced by the first qualified one seen.
    """

    display_name = name.strip()
    key = canonical_key(display_name)
    if not key:
        raise ValidationError(f"Market name {name!r} has no usable characters.")

    existing = _match_market(conn, key)
    if existing is None:
        now = _utcnow()
        conn.execute(
            f"""
            INSERT INTO {MARKETS_TABLE} (canonical_key, id, name, cbsa_code, created_at, updated_at)
            VALUES (?, ?, ?, NULL, ?, ?)
            ON CONFLICT (canonical_key) DO NOTHING
            """,
            [key, str(uuid.uuid4()), display_name, now, now],
        )
        existing = fetch_market_by_key(conn, key)
        if existing is None:
            raise StorageError(f"Market '{display_name}' was not stored.")

    preferred = prefer_canonical_name(existing.name, display_name)
    rekey = is_qualified_key(key) and not is_qualified_key(existing.canonical_key)
    if preferred == existing.name and not rekey:
        return existing

    if rekey:
        conn.execute(
            f"UPDATE {MARKETS_TABLE} SET canonical_key = ?, name = ?, updated_at = ? WHERE id = ?",
            [key, preferred, _utcnow(), existing.id],
        )
    else:
        conn.execute(
            f"UPDATE {MARKETS_TABLE} SET name = ?, updated_at = ? WHERE id = ?",
            [preferred, _utcnow(), existing.id],
        )
    market = fetch_market_by_id(conn, existing.id)
    if market is None:
        raise StorageError(f"Market '{display_name}' disappeared while being updated.")
    return market


def set_market_code(conn: duckdb.DuckDBPyConnection, market_id: str, cbsa_code: str) -> None:
    """Store the resolved CBSA code unless one is already set."""

    conn.execute(
        f"""
        UPDATE {MARKETS_TABLE}
        SET cbsa_code = ?, updated_at = ?
        WHERE id = ? AND cbsa_code IS NULL
        """,
        [cbsa_code, _utcnow(), market_id],
    )


def clear_market_code(conn: duckdb.DuckDBPyConnection, market_id: str) -> None:
    conn.execute(
        f"UPDATE {MARKETS_TABLE} SET cbsa_code = NULL, updated_at = ? WHERE id = ?",
        [_utcnow(), market_id],
    )


def upsert_postal_codes(
    conn: duckdb.DuckDBPyConnection,
    market_id: str,
    postal_codes: Iterable[str],
    *,
    source: str = "tracker",
) -> int:
    codes = sorted({code.strip() for code in postal_codes if code and code.strip()})
    if not codes:
        return 0
    now = _utcnow()
    conn.executemany(
        f"""
        INSERT INTO {POSTAL_CODES_TABLE} (market_id, postal_code, source, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT (market_id, postal_code) DO UPDATE SET
            source = excluded.source,
            updated_at = excluded.updated_at
        """,
        [(market_id, code, source, now, now) for code in codes],
    )
    return len(codes)


def delete_unreferenced_markets(conn: duckdb.DuckDBPyConnection) -> list[MarketIdentity]:
    """Delete every market no deal points at, along with its metrics and postal codes."""

    with transaction(conn):
        stale = [
            _row_to_market(row)
            for row in conn.execute(
                f"""
                SELECT {_MARKET_COLUMNS} FROM {MARKETS_TABLE} m
                WHERE NOT EXISTS (SELECT 1 FROM {DEALS_TABLE} d WHERE d.market_id = m.id)
                """
            ).fetchall()
        ]
        if stale:
            ids = [(market.id,) for market in stale]
            for table in MARKET_CHILD_TABLES:
                conn.executemany(f"DELETE FROM {table} WHERE market_id = ?", ids)
            conn.executemany(f"DELETE FROM {MARKETS_TABLE} WHERE id = ?", ids)
    return stale


# --------------------------------------------------------------------------- metrics


def upsert_series_values(
    conn: duckdb.DuckDBPyConnection,
    market_id: str,
    series: SeriesMap,
    *,
    source: str,
    observed_as_of: date,
) -> int:
    """Insert or update one row per (market, metric, period).

    Returns
    -------
    int
        Number of rows written.
    """

    now = _utcnow()
    rows = [
        (market_id, metric_key, int(period), value, source, observed_as_of, now, now)
        for metric_key, values in series.items()
        for period, value in values.items()
    ]
    if not rows:
        return 0

    conn.executemany(
        f"""
        INSERT INTO {SERIES_TABLE} (
            market_id,
            metric_key,
            period_years,
            value,
            source,
            observed_as_of,
            created_at,
            updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT (market_id, metric_key, period_years) DO UPDATE SET
            value = excluded.value,
            source = excluded.source,
            observed_as_of = excluded.observed_as_of,
            updated_at = excluded.updated_at
        """,
        rows,
    )
    return len(rows)


def upsert_snapshot_value(
    conn: duckdb.DuckDBPyConnection,
    market_id: str,
    metric_key: str,
    *,
    value_numeric: float | None = None,
    value_text: str | None = None,
    unit: str | None = None,
    source: str | None = None,
    observed_as_of: date | None = None,
) -> None:
    now = _utcnow()
    conn.execute(
        f"""
        INSERT INTO {SNAPSHOT_TABLE} (
            market_id, metric_key, value_numeric, value_text, unit,
            source, observed_as_of, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT (market_id, metric_key) DO UPDATE SET
            value_numeric = excluded.value_numeric,
            value_text = excluded.value_text,
            unit = excluded.unit,
            source = excluded.source,
            observed_as_of = excluded.observed_as_of,
            updated_at = excluded.updated_at
        """,
        [market_id, metric_key, value_numeric, value_text, unit, source, observed_as_of, now, now],
    )


def upsert_list_value(
    conn: duckdb.DuckDBPyConnection,
    market_id: str,
    metric_key: str,
    items: Sequence[str],
    *,
    source: str | None = None,
    observed_as_of: date | None = None,
) -> None:
    now = _utcnow()
    conn.execute(
        f"""
        INSERT INTO {LIST_TABLE} (
            market_id, metric_key, items, source, observed_as_of, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT (market_id, metric_key) DO UPDATE SET
            items = excluded.items,
            source = excluded.source,
            observed_as_of = excluded.observed_as_of,
            updated_at = excluded.updated_at
        """,
        [market_id, metric_key, json.dumps(list(items)), source, observed_as_of, now, now],
    )


def count_series_values(conn: duckdb.DuckDBPyConnection, market_id: str) -> int:
    row = conn.execute(
        f"SELECT COUNT(*) FROM {SERIES_TABLE} WHERE market_id = ?", [market_id]
    ).fetchone()
    return int(row[0]) if row else 0


def fetch_series(conn: duckdb.DuckDBPyConnection, market_id: str) -> SeriesMap:
    series: SeriesMap = {}
    cursor = conn.execute(
        f"""
        SELECT metric_key, period_years, value FROM {SERIES_TABLE}
        WHERE market_id = ?
        ORDER BY metric_key, period_years
        """,
        [market_id],
    )
    for metric_key, period, value in cursor.fetchall():
        series.setdefault(metric_key, {})[int(period)] = value
    return series


def fetch_snapshots(conn: duckdb.DuckDBPyConnection, market_id: str) -> dict[str, SnapshotValue]:
    cursor = conn.execute(
        f"""
        SELECT metric_key, value_numeric, value_text, unit FROM {SNAPSHOT_TABLE}
        WHERE market_id = ?
        """,
        [market_id],
    )
    return {
        row[0]: SnapshotValue(value_numeric=row[1], value_text=row[2], unit=row[3])
        for row in cursor.fetchall()
    }


def fetch_lists(conn: duckdb.DuckDBPyConnection, market_id: str) -> dict[str, list[str]]:
    cursor = conn.execute(
        f"SELECT metric_key, items FROM {LIST_TABLE} WHERE market_id = ?", [market_id]
    )
    lists: dict[str, list[str]] = {}
    for metric_key, payload in cursor.fetchall():
        items = json.loads(payload) if isinstance(payload, str) else payload
        lists[metric_key] = [str(item) for item in items] if isinstance(items, list) else []
    return lists


def fetch_metric_catalog(conn: duckdb.DuckDBPyConnection) -> dict[str, Metric]:
    cursor = conn.execute(
        f"SELECT key, label, category, unit, description, kind FROM {METRICS_TABLE} ORDER BY key"
    )
    return {
        row[0]: Metric(
            key=row[0],
            label=row[1],
            category=row[2],
            unit=row[3] or "none",
            description=row[4],
            kind=row[5],
        )
        for row in cursor.fetchall()
    }


def fetch_postal_codes(conn: duckdb.DuckDBPyConnection, market_id: str) -> list[str]:
    cursor = conn.execute(
        f"SELECT postal_code FROM {POSTAL_CODES_TABLE} WHERE market_id = ? ORDER BY postal_code",
        [market_id],
    )
    return [row[0] for row in cursor.fetchall() if row[0]]


def fetch_postal_code_counts(conn: duckdb.DuckDBPyConnection) -> dict[str, int]:
    cursor = conn.execute(
        f"SELECT market_id, COUNT(*) FROM {POSTAL_CODES_TABLE} GROUP BY market_id"
    )
    return {row[0]: int(row[1]) for row in cursor.fetchall()}


# --------------------------------------------------------------------------- deals


def _row_to_deal(row: Sequence[object]) -> DealRecord:
    return DealRecord(
        id=row[0],
        name=row[1],
        market_name=row[2],
        city=row[3],
        state=row[4],
        postal_code=row[5],
        market_id=row[6],
        created_at=row[7],
    )


def insert_deals(conn: duckdb.DuckDBPyConnection, deals: Iterable[DealRecord]) -> int:
    now = _utcnow()
    rows = [
        (
            deal.id,
            deal.name,
            deal.market_name,
            deal.city,
            deal.state,
            deal.postal_code,
            deal.market_id,
            deal.created_at or now,
        )
        for deal in deals
    ]
    if not rows:
        return 0
    conn.executemany(
        f"""
        INSERT INTO {DEALS_TABLE} (
            id, name, market_name, city, state, postal_code, market_id, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        rows,
    )
    return len(rows)


def fetch_deals(
    conn: duckdb.DuckDBPyConnection, *, market_id: str | None = None
) -> list[DealRecord]:
    sql = (
        "SELECT id, name, market_name, city, state, postal_code, market_id, created_at "
        f"FROM {DEALS_TABLE}"
    )
    params: list[object] = []
    if market_id is not None:
        sql += " WHERE market_id = ?"
        params.append(market_id)
    sql += " ORDER BY created_at, id"
    return [_row_to_deal(row) for row in conn.execute(sql, params).fetchall()]


def fetch_deal_counts(conn: duckdb.DuckDBPyConnection) -> dict[str, int]:
    cursor = conn.execute(
        f"""
        SELECT market_id, COUNT(*) FROM {DEALS_TABLE}
        WHERE market_id IS NOT NULL
        GROUP BY market_id
        """
    )
    return {row[0]: int(row[1]) for row in cursor.fetchall()}


def delete_deal(conn: duckdb.DuckDBPyConnection, deal_id: str) -> bool:
    exists = conn.execute(f"SELECT 1 FROM {DEALS_TABLE} WHERE id = ?", [deal_id]).fetchone()
    if not exists:
        return False
    conn.execute(f"DELETE FROM {DEALS_TABLE} WHERE id = ?", [deal_id])
    return True


__all__ = [
    "connect",
    "transaction",
    "ensure_schema",
    "seed_metric_catalog",
    "get_database_path",
    "fetch_market_by_key",
    "fetch_market_by_name",
    "fetch_market_by_id",
    "fetch_markets",
    "upsert_market",
    "set_market_code",
    "clear_market_code",
    "upsert_postal_codes",
    "delete_unreferenced_markets",
    "upsert_series_values",
    "upsert_snapshot_value",
    "upsert_list_value",
    "count_series_values",
    "fetch_series",
    "fetch_snapshots",
    "fetch_lists",
    "fetch_metric_catalog",
    "fetch_postal_codes",
    "fetch_postal_code_counts",
    "insert_deals",
    "fetch_deals",
    "fetch_deal_counts",
    "delete_deal",
    "MARKETS_TABLE",
    "SERIES_TABLE",
    "SNAPSHOT_TABLE",
    "LIST_TABLE",
]
