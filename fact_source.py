from __future__ import annotations

import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Optional

import pandas as pd
import psycopg
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

import settings
from report_filters import (
    ReportFilters,
    build_where,
    canonical_names_sql,
    checked_identifier,
    filter_mask,
)
from sales_metrics import (
    FACT_COLUMNS,
    canonical_product_names,
    group_average_costs,
    normalize_net,
    prepare_rows,
    product_fallback_costs,
)

logger = logging.getLogger("salesdash.fact_source")

# Dimension name accepted by distinct_values -> fact column.
DIMENSIONS = {
    "sales_rep": "sales_rep",
    "customer": "customer_name",
    "supplier": "supplier",
    "category": "category",
    "product_group": "product_group",
    "year": "year",
    "month": "month",
    "product": "product_name",
}

PREVIEW_LIMIT = 1000


class FactSourceError(RuntimeError):
    """The fact store could not answer: connectivity, timeout or bad query."""


def _adapt_params_for_postgres(sql: str, params: tuple) -> tuple[str, tuple]:
    out = []
    in_str = False
    for ch in sql:
        if ch == "'":
            in_str = not in_str
            out.append(ch)
            continue
        if ch == "?" and not in_str:
            out.append("%s")
        else:
            out.append(ch)
    return "".join(out), params


def _select_columns() -> str:
    return ", ".join(FACT_COLUMNS)


def _check_dimension(dimension: str) -> str:
    column = DIMENSIONS.get(dimension)
    if column is None:
        raise ValueError(f"unknown dimension {dimension!r}; expected one of: {', '.join(sorted(DIMENSIONS))}")
    return column


class SqlFactSource:
    """Read-only access to the sales detail table over sqlite or Postgres.

    Every value that can come from a request is bound through ``?`` placeholders.
    Queries that run longer than ``timeout_seconds`` are aborted and raised as
    FactSourceError.
    """

    def __init__(
        self,
        backend: str = "sqlite",
        db_path: Optional[Path] = None,
        database_url: str = "",
        table: str = "sales_detail",
        timeout_seconds: float = 60.0,
    ):
        self.backend = (backend or "sqlite").strip().lower()
        self.db_path = Path(db_path) if db_path else settings.DB_PATH
        self.database_url = database_url
        self.table = checked_identifier(table)
        self.timeout_seconds = float(timeout_seconds)
        self._pool: Optional[ConnectionPool] = None
        self._lock = threading.Lock()

    def _using_postgres(self) -> bool:
        return self.backend == "postgres"

    def _postgres_pool(self) -> ConnectionPool:
        with self._lock:
            if self._pool is None:
                if not self.database_url:
                    raise FactSourceError("DB_BACKEND=postgres but DATABASE_URL is empty")
                timeout_ms = int(self.timeout_seconds * 1000)
                self._pool = ConnectionPool(
                    self.database_url,
                    min_size=1,
                    max_size=4,
                    kwargs={"row_factory": dict_row, "options": f"-c statement_timeout={timeout_ms}"},
                    open=True,
                )
                logger.info("postgres pool opened for table %s", self.table)
            return self._pool

    def _sqlite_conn(self) -> sqlite3.Connection:
        if not self.db_path.exists():
            raise FactSourceError(f"sqlite database not found: {self.db_path}")
        # Read-only URI so the fact store is never written from here.
        conn = sqlite3.connect(f"file:{self.db_path.as_posix()}?mode=ro", uri=True, timeout=self.timeout_seconds)
        conn.row_factory = sqlite3.Row
        deadline = time.monotonic() + self.timeout_seconds
        conn.set_progress_handler(lambda: 1 if time.monotonic() > deadline else 0, 10_000)
        return conn

    def query(self, sql: str, params: tuple = ()) -> pd.DataFrame:
        try:
            if self._using_postgres():
                statement, bound = _adapt_params_for_postgres(sql, params)
                with self._postgres_pool().connection() as conn:
                    cur = conn.execute(statement, bound)
                    rows = cur.fetchall() or []
                    cols = [str(d[0]) for d in cur.description] if cur.description else []
                return pd.DataFrame(rows, columns=cols)
            conn = self._sqlite_conn()
            try:
                return pd.read_sql_query(sql, conn, params=params)
            finally:
                conn.close()
        except FactSourceError:
            raise
        except (sqlite3.Error, psycopg.Error, pd.errors.DatabaseError) as exc:
            logger.error("fact query failed on %s: %s", self.backend, exc)
            raise FactSourceError(str(exc)) from exc

    def load_rows(self, filters: ReportFilters) -> pd.DataFrame:
        where, params = build_where(filters, self.table)
        return self.query(f"SELECT {_select_columns()} FROM {self.table} WHERE {where}", params)

    def preview_rows(self, filters: ReportFilters, limit: int = PREVIEW_LIMIT) -> pd.DataFrame:
        where, params = build_where(filters, self.table)
        limit = max(1, min(int(limit), PREVIEW_LIMIT))
        return self.query(
            f"SELECT {_select_columns()} FROM {self.table} WHERE {where} ORDER BY date DESC LIMIT ?",
            params + (limit,),
        )

    def canonical_product_names(self) -> pd.Series:
        names = self.query(canonical_names_sql(self.table))
        if names.empty:
            return pd.Series(dtype=object, name="canonical_name")
        out = names.set_index("product_code")["product_name"]
        out.name = "canonical_name"
        return out

    def product_fallback_costs(self) -> pd.Series:
        costs = self.query(
            f"""
            SELECT product_code, MAX(COALESCE(cost, purchase_price, 0)) AS fallback_cost
            FROM {self.table}
            WHERE COALESCE(cost, purchase_price, 0) > 0
              AND product_code IS NOT NULL AND product_code <> ''
            GROUP BY product_code
            """
        )
        if costs.empty:
            return pd.Series(dtype=float, name="fallback_cost")
        out = costs.set_index("product_code")["fallback_cost"].astype(float)
        out.name = "fallback_cost"
        return out

    def group_average_costs(self) -> pd.DataFrame:
        """Weighted unit cost per (date, customer, product code) over the whole table."""
        returns = tuple(sorted(settings.RETURN_RECEIPT_TYPES))
        quantity = "COALESCE(quantity, 0)"
        if returns:
            marks = ", ".join(["?"] * len(returns))
            net_quantity = f"CASE WHEN receipt_type IN ({marks}) THEN -{quantity} ELSE {quantity} END"
        else:
            net_quantity = quantity
        return self.query(
            f"""
            SELECT
              date,
              customer_name,
              product_code,
              CASE WHEN SUM(net_quantity) > 0
                   THEN SUM(net_quantity * unit_cost) / SUM(net_quantity)
                   ELSE 0 END AS group_avg_cost
            FROM (
              SELECT
                date,
                customer_name,
                NULLIF(product_code, '') AS product_code,
                {net_quantity} AS net_quantity,
                COALESCE(cost, purchase_price, 0) AS unit_cost
              FROM {self.table}
            ) lines
            GROUP BY date, customer_name, product_code
            """,
            returns,
        )

    def distinct_values(self, dimension: str, filters: ReportFilters) -> list[Any]:
        column = _check_dimension(dimension)
        where, params = build_where(filters, self.table)
        if dimension == "product":
            sql = f"""
                SELECT DISTINCT cn.product_name AS dim_value
                FROM ({canonical_names_sql(self.table)}) cn
                WHERE cn.product_code IN (SELECT product_code FROM {self.table} WHERE {where})
                ORDER BY dim_value
            """
        else:
            sql = f"""
                SELECT DISTINCT {column} AS dim_value
                FROM {self.table}
                WHERE {where} AND {column} IS NOT NULL
                ORDER BY dim_value
            """
        return [v for v in self.query(sql, params)["dim_value"].tolist() if v is not None]

    def close(self) -> None:
        with self._lock:
            if self._pool is not None:
                self._pool.close()
                self._pool = None
                logger.info("postgres pool closed")


class FrameFactSource:
    """In-memory fact source with the same predicate semantics as SqlFactSource."""

    def __init__(self, rows: pd.DataFrame):
        self._rows = prepare_rows(rows)

    def _filtered(self, filters: ReportFilters) -> pd.DataFrame:
        mask = filter_mask(self._rows, filters, self.canonical_product_names())
        return self._rows[mask]

    def load_rows(self, filters: ReportFilters) -> pd.DataFrame:
        return self._filtered(filters).reset_index(drop=True)

    def preview_rows(self, filters: ReportFilters, limit: int = PREVIEW_LIMIT) -> pd.DataFrame:
        limit = max(1, min(int(limit), PREVIEW_LIMIT))
        rows = self._filtered(filters).sort_values("date", ascending=False, kind="stable")
        return rows.head(limit).reset_index(drop=True)

    def canonical_product_names(self) -> pd.Series:
        return canonical_product_names(self._rows)

    def product_fallback_costs(self) -> pd.Series:
        return product_fallback_costs(self._rows)

    def group_average_costs(self) -> pd.DataFrame:
        return group_average_costs(normalize_net(self._rows))

    def distinct_values(self, dimension: str, filters: ReportFilters) -> list[Any]:
        column = _check_dimension(dimension)
        rows = self._filtered(filters)
        if dimension == "product":
            values = rows["product_code"].dropna().map(self.canonical_product_names()).dropna()
        else:
            values = rows[column].dropna()
        return sorted(v.item() if hasattr(v, "item") else v for v in values.unique())

    def close(self) -> None:
        return None


_source: Optional[Any] = None
_source_lock = threading.Lock()


def get_fact_source():
    """Process-wide fact source, created on first use from settings."""
    global _source
    with _source_lock:
        if _source is None:
            _source = SqlFactSource(
                backend=settings.DB_BACKEND,
                db_path=settings.DB_PATH,
                database_url=settings.DATABASE_URL,
                table=settings.FACT_TABLE,
                timeout_seconds=settings.QUERY_TIMEOUT_SECONDS,
            )
            logger.info("fact source initialised (%s, table=%s)", settings.DB_BACKEND, settings.FACT_TABLE)
        return _source


def set_fact_source(source) -> None:
    global _source
    with _source_lock:
        _source = source


def close_fact_source() -> None:
    global _source
    with _source_lock:
        if _source is not None:
            _source.close()
            _source = None
