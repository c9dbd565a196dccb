from __future__ import annotations

import calendar
import re
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta
from typing import Any, Mapping, Optional

import pandas as pd

import settings

WHOLESALE_RECEIPT_TYPES = (21, 23)
MARKET_RECEIPT_TYPES = (101, 102)

CHANNEL_ALIASES = {
    "wholesale": "wholesale",
    "toptan": "wholesale",
    "market": "market",
    "retail": "market",
    "perakende": "market",
}
CHANNEL_RECEIPT_TYPES = {
    "wholesale": WHOLESALE_RECEIPT_TYPES,
    "market": MARKET_RECEIPT_TYPES,
}

PERIOD_ALIASES = {
    "this_month": "this_month",
    "bu_ay": "this_month",
    "last_month": "last_month",
    "gecen_ay": "last_month",
    "geçen_ay": "last_month",
    "this_year": "this_year",
    "bu_yil": "this_year",
    "bu_yıl": "this_year",
    "manual": "manual",
    "manuel": "manual",
}

TRANSACTION_KINDS = {"sale": "sale", "satis": "sale", "return": "return", "iade": "return"}

# Filterable text dimensions: ReportFilters field -> fact column.
TEXT_FILTER_COLUMNS = {
    "sales_rep": "sales_rep",
    "customer": "customer_name",
    "supplier": "supplier",
    "category": "category",
    "product_group": "product_group",
}

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class ReportFilters:
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    year: Optional[int] = None
    month: Optional[int] = None
    years: Optional[tuple[int, ...]] = None
    sales_rep: Optional[str] = None
    customer: Optional[str] = None
    supplier: Optional[str] = None
    category: Optional[str] = None
    product_group: Optional[str] = None
    product: Optional[str] = None
    channel: Optional[str] = None
    transaction_kind: Optional[str] = None
    commercial_only: bool = True

    def describe(self) -> dict:
        out = {}
        for key, value in asdict(self).items():
            if value is None:
                continue
            out[key] = value.isoformat() if isinstance(value, date) else value
        return out


def normalize_channel(channel: Optional[str]) -> Optional[str]:
    c = str(channel or "").strip().lower()
    return CHANNEL_ALIASES.get(c)


def channel_receipt_types(channel: Optional[str]) -> Optional[tuple[int, ...]]:
    ch = normalize_channel(channel)
    if ch is None:
        return None
    return CHANNEL_RECEIPT_TYPES[ch]


def normalize_transaction_kind(kind: Optional[str]) -> Optional[str]:
    return TRANSACTION_KINDS.get(str(kind or "").strip().lower())


def resolve_period(period: Optional[str], today: Optional[date] = None) -> Optional[tuple[date, date]]:
    p = PERIOD_ALIASES.get(str(period or "").strip().lower())
    # "manual" means the caller's explicit start/end dates apply.
    if p is None or p == "manual":
        return None
    today = today or settings.evaluation_today()
    if p == "this_month":
        last_day = calendar.monthrange(today.year, today.month)[1]
        return today.replace(day=1), today.replace(day=last_day)
    if p == "last_month":
        prev_end = today.replace(day=1) - timedelta(days=1)
        return prev_end.replace(day=1), prev_end
    return date(today.year, 1, 1), date(today.year, 12, 31)


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_date(name: str, value: Any) -> Optional[date]:
    text = _clean(value)
    if text is None:
        return None
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(text, "%Y-%m-%d").date()
    except ValueError:
        raise ValueError(f"{name} must be an ISO date (YYYY-MM-DD), got {text!r}") from None


def _parse_int(name: str, value: Any, low: int, high: int) -> Optional[int]:
    text = _clean(value)
    if text is None:
        return None
    try:
        number = int(text)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {text!r}") from None
    if not low <= number <= high:
        raise ValueError(f"{name} must be between {low} and {high}, got {number}")
    return number


def resolve_filters(params: Mapping[str, Any], today: Optional[date] = None) -> ReportFilters:
    """Turn raw request parameters into a ReportFilters value.

    A named period shortcut (``this_month``, ``last_month``, ``this_year``) wins
    over explicit start/end dates. Blank values are treated as unset.
    """
    start = _parse_date("start_date", params.get("start_date"))
    end = _parse_date("end_date", params.get("end_date"))
    shortcut = resolve_period(params.get("period"), today)
    if shortcut is not None:
        start, end = shortcut
    if start and end and start > end:
        start, end = end, start
    return ReportFilters(
        start_date=start,
        end_date=end,
        year=_parse_int("year", params.get("year"), 1900, 2999),
        month=_parse_int("month", params.get("month"), 1, 12),
        sales_rep=_clean(params.get("sales_rep")),
        customer=_clean(params.get("customer")),
        supplier=_clean(params.get("supplier")),
        category=_clean(params.get("category")),
        product_group=_clean(params.get("product_group")),
        product=_clean(params.get("product")),
        channel=normalize_channel(params.get("channel")),
        transaction_kind=normalize_transaction_kind(params.get("transaction_kind")),
    )


def checked_identifier(name: str) -> str:
    if not _IDENTIFIER_RE.match(name or ""):
        raise ValueError(f"invalid SQL identifier: {name!r}")
    return name


def canonical_names_sql(table: str) -> str:
    t = checked_identifier(table)
    return f"""
        SELECT product_code, product_name FROM (
            SELECT
              product_code,
              product_name,
              ROW_NUMBER() OVER (PARTITION BY product_code ORDER BY date DESC, product_name ASC) AS rn
            FROM {t}
            WHERE product_code IS NOT NULL AND product_code <> '' AND product_name IS NOT NULL
        ) latest
        WHERE rn = 1
    """


def _placeholders(values: tuple) -> str:
    return ", ".join(["?"] * len(values))


def build_where(filters: ReportFilters, table: str) -> tuple[str, tuple]:
    """Render filters as a SQL predicate with ``?`` placeholders.

    Returns ``("1=1", ())`` when nothing restricts the population.
    """
    clauses: list[str] = []
    params: list[Any] = []

    if filters.commercial_only:
        years = tuple(settings.REPORT_YEARS)
        if years:
            clauses.append(f"year IN ({_placeholders(years)})")
            params.extend(years)
        clauses.append("(product_name IS NULL OR product_name <> ?)")
        params.append(settings.SERVICE_PRODUCT_NAME)
        clauses.append("(supplier IS NULL OR supplier <> ?)")
        params.append(settings.INTERNAL_SUPPLIER)

    if filters.start_date:
        clauses.append("date >= ?")
        params.append(filters.start_date.isoformat())
    if filters.end_date:
        clauses.append("date <= ?")
        params.append(filters.end_date.isoformat())
    if filters.year is not None:
        clauses.append("year = ?")
        params.append(filters.year)
    if filters.years:
        clauses.append(f"year IN ({_placeholders(filters.years)})")
        params.extend(filters.years)
    if filters.month is not None:
        clauses.append("month = ?")
        params.append(filters.month)

    for field, column in TEXT_FILTER_COLUMNS.items():
        value = getattr(filters, field)
        if value is not None:
            clauses.append(f"{column} = ?")
            params.append(value)

    if filters.product is not None:
        clauses.append(
            f"product_code IN (SELECT product_code FROM ({canonical_names_sql(table)}) cn WHERE cn.product_name = ?)"
        )
        params.append(filters.product)

    codes = channel_receipt_types(filters.channel)
    if codes:
        clauses.append(f"receipt_type IN ({_placeholders(codes)})")
        params.extend(codes)

    kind = normalize_transaction_kind(filters.transaction_kind)
    returns = tuple(sorted(settings.RETURN_RECEIPT_TYPES))
    if kind and returns:
        op = "IN" if kind == "return" else "NOT IN"
        clauses.append(f"receipt_type {op} ({_placeholders(returns)})")
        params.extend(returns)

    if not clauses:
        return "1=1", ()
    return " AND ".join(clauses), tuple(params)


def filter_mask(rows: pd.DataFrame, filters: ReportFilters, canonical_names: Optional[pd.Series] = None) -> pd.Series:
    """Same predicate as build_where, evaluated on an in-memory fact frame."""
    mask = pd.Series(True, index=rows.index)
    if rows.empty:
        return mask
    dates = pd.to_datetime(rows["date"]).dt.date

    if filters.commercial_only:
        if settings.REPORT_YEARS:
            mask &= rows["year"].isin(list(settings.REPORT_YEARS))
        mask &= rows["product_name"].isna() | (rows["product_name"] != settings.SERVICE_PRODUCT_NAME)
        mask &= rows["supplier"].isna() | (rows["supplier"] != settings.INTERNAL_SUPPLIER)

    if filters.start_date:
        mask &= dates >= filters.start_date
    if filters.end_date:
        mask &= dates <= filters.end_date
    if filters.year is not None:
        mask &= rows["year"] == filters.year
    if filters.years:
        mask &= rows["year"].isin(list(filters.years))
    if filters.month is not None:
        mask &= rows["month"] == filters.month

    for field, column in TEXT_FILTER_COLUMNS.items():
        value = getattr(filters, field)
        if value is not None:
            mask &= rows[column] == value

    if filters.product is not None:
        names = canonical_names if canonical_names is not None else pd.Series(dtype=object)
        codes = set(names[names == filters.product].index)
        mask &= rows["product_code"].isin(codes)

    codes = channel_receipt_types(filters.channel)
    if codes:
        mask &= rows["receipt_type"].isin(codes)

    kind = normalize_transaction_kind(filters.transaction_kind)
    if kind:
        is_return = rows["receipt_type"].isin(list(settings.RETURN_RECEIPT_TYPES))
        mask &= is_return if kind == "return" else ~is_return
    return mask.fillna(False).astype(bool)
