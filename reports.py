from __future__ import annotations

import calendar
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import date
from typing import Any, Iterable, Optional

import pandas as pd

import settings
from report_filters import ReportFilters
from sales_metrics import (
    abc_classification,
    attach_canonical_names,
    cannibalization_candidates,
    category_matrix,
    churn_analysis,
    costed_rows,
    kpi_summary,
    monthly_quantity_comparison,
    monthly_trend,
    order_risk_scores,
    pct_delta,
    prepare_rows,
    price_series,
    profitability_rollup,
    retention_by_rep,
    split_by_membership,
)

logger = logging.getLogger("salesdash.reports")

# URL dimension -> rollup column.
PROFITABILITY_DIMENSIONS = {
    "product": "canonical_name",
    "sales-rep": "sales_rep",
    "customer": "customer_name",
    "category": "category",
    "product-group": "product_group",
}

FILTER_OPTION_KEYS = ("sales_rep", "customer", "supplier", "category", "product_group", "product")


def records(df: pd.DataFrame) -> list[dict]:
    if df is None or df.empty:
        return []
    out = df.copy()
    for col in out.columns:
        if pd.api.types.is_datetime64_any_dtype(out[col]):
            out[col] = out[col].dt.strftime("%Y-%m-%d")
    out = out.astype(object).where(out.notna(), None)
    rows = out.to_dict(orient="records")
    for row in rows:
        for key, value in row.items():
            if isinstance(value, date):
                row[key] = value.isoformat()
            elif hasattr(value, "item"):
                row[key] = value.item()
    return rows


def load_costed(source, filters: ReportFilters) -> pd.DataFrame:
    rows = source.load_rows(filters)
    return costed_rows(
        rows,
        source.product_fallback_costs(),
        source.canonical_product_names(),
        source.group_average_costs(),
    )


def _canonical_names(source, filters: ReportFilters, names: pd.Series) -> pd.Series:
    return attach_canonical_names(prepare_rows(source.load_rows(filters)), names)["canonical_name"]


def default_current_year() -> int:
    """Evaluation year, pulled back into the reporting window when it falls outside."""
    year = settings.evaluation_today().year
    window = tuple(settings.REPORT_YEARS)
    if window and year not in window:
        return max(window)
    return year


def filter_options(source, filters: ReportFilters, keys: Iterable[str] = FILTER_OPTION_KEYS) -> dict:
    """Dropdown values for each key, fetched concurrently under the same filters."""
    wanted = [k for k in keys if k in FILTER_OPTION_KEYS]
    if not wanted:
        return {}
    with ThreadPoolExecutor(max_workers=min(len(wanted), 6)) as pool:
        futures = {key: pool.submit(source.distinct_values, key, filters) for key in wanted}
        return {key: future.result() for key, future in futures.items()}


def rep_performance(source, filters: ReportFilters) -> dict:
    rows = load_costed(source, filters)
    return {"filters": filters.describe(), "kpis": kpi_summary(rows)}


def profitability(source, filters: ReportFilters, dimension: str) -> dict:
    column = PROFITABILITY_DIMENSIONS.get(dimension)
    if column is None:
        raise ValueError(
            f"unknown profitability dimension {dimension!r}; expected one of: {', '.join(PROFITABILITY_DIMENSIONS)}"
        )
    rows = load_costed(source, filters)
    table = profitability_rollup(rows, [column]).rename(columns={column: "name"})
    table = table.sort_values(["profit", "name"], ascending=[False, True], na_position="last")
    summary = kpi_summary(rows)
    return {
        "dimension": dimension,
        "filters": filters.describe(),
        "rows": records(table),
        "kpis": {
            "total_revenue": summary["total_revenue"],
            "total_profit": summary["total_profit"],
            "margin_pct": summary["margin_pct"],
            "item_count": int(len(table)),
        },
    }


def rep_comparison(source, filters: ReportFilters, rep_a: Optional[str], rep_b: Optional[str]) -> dict:
    def side(rep: Optional[str]) -> Optional[dict]:
        if not rep:
            return None
        return kpi_summary(load_costed(source, replace(filters, sales_rep=rep)))

    left, right = side(rep_a), side(rep_b)
    deltas = {}
    if left and right:
        for key in ("total_revenue", "total_profit", "customer_count", "total_quantity", "total_liters"):
            deltas[key] = pct_delta(float(left[key]), float(right[key]))
    return {"filters": filters.describe(), "left": left, "right": right, "left_vs_right": deltas}


def product_year_comparison(
    source,
    filters: ReportFilters,
    product: Optional[str],
    current_year: Optional[int] = None,
) -> dict:
    current = current_year or default_current_year()
    prior = current - 1
    if not product:
        return {"product": None, "prior_year": prior, "current_year": current, "rows": []}
    rows = load_costed(source, replace(filters, product=product, year=None, years=(prior, current)))
    months = monthly_quantity_comparison(rows, prior, current)
    for row in months:
        row["month_name"] = calendar.month_abbr[row["month"]]
    return {"product": product, "prior_year": prior, "current_year": current, "rows": months}


def trend(source, filters: ReportFilters) -> dict:
    rows = load_costed(source, filters)
    return {"filters": filters.describe(), "rows": records(monthly_trend(rows))}


def product_potential(source, filters: ReportFilters, customer: Optional[str]) -> dict:
    if not customer:
        return {"customer": None, "bought": [], "potential": []}
    names = source.canonical_product_names()
    universe = _canonical_names(source, replace(filters, customer=None), names)
    bought = _canonical_names(source, ReportFilters(customer=customer), names)
    owned, missing = split_by_membership(universe, bought)
    return {"customer": customer, "bought": owned, "potential": missing}


def customer_potential(source, filters: ReportFilters, product: Optional[str]) -> dict:
    if not product:
        return {"product": None, "buyers": [], "potential": []}
    universe = source.load_rows(replace(filters, product=None))
    buyers = source.load_rows(replace(filters, product=product))
    owned, missing = split_by_membership(universe["customer_name"], buyers["customer_name"])
    return {"product": product, "buyers": owned, "potential": missing}


def abc_report(source, filters: ReportFilters) -> dict:
    rows = load_costed(source, filters)
    table = abc_classification(rows)
    counts = table["band"].value_counts().to_dict() if not table.empty else {}
    return {
        "filters": filters.describe(),
        "rows": records(table),
        "band_counts": {band: int(counts.get(band, 0)) for band in ("A", "B", "C")},
        "grand_total": float(table["revenue"].sum()) if not table.empty else 0.0,
    }


def _periods(prior_year: Optional[int], current_year: Optional[int]) -> tuple[int, int]:
    current = current_year or default_current_year()
    prior = prior_year or current - 1
    return prior, current


def churn_report(source, filters: ReportFilters, prior_year: Optional[int] = None, current_year: Optional[int] = None) -> dict:
    prior, current = _periods(prior_year, current_year)
    rows = load_costed(source, replace(filters, year=None, years=(prior, current)))
    result = churn_analysis(rows, [prior], [current])
    result.update({"prior_year": prior, "current_year": current, "filters": filters.describe()})
    return result


def retention_report(
    source, filters: ReportFilters, prior_year: Optional[int] = None, current_year: Optional[int] = None
) -> dict:
    prior, current = _periods(prior_year, current_year)
    rows = load_costed(source, replace(filters, year=None, years=(prior, current)))
    return {
        "prior_year": prior,
        "current_year": current,
        "filters": filters.describe(),
        "rows": records(retention_by_rep(rows, [prior], [current])),
    }


def order_risk_report(source, filters: ReportFilters, today: Optional[date] = None) -> dict:
    today = today or settings.evaluation_today()
    rows = load_costed(source, filters)
    table = order_risk_scores(rows, today)
    counts = table["risk"].value_counts().to_dict() if not table.empty else {}
    return {
        "as_of": today.isoformat(),
        "filters": filters.describe(),
        "rows": records(table),
        "risk_counts": {k: int(v) for k, v in counts.items()},
    }


def price_elasticity_report(source, filters: ReportFilters, product: Optional[str]) -> dict:
    if not product:
        return {"product": None, "rows": []}
    rows = load_costed(source, replace(filters, product=product))
    return {"product": product, "filters": filters.describe(), "rows": records(price_series(rows))}


def category_matrix_report(source, filters: ReportFilters) -> dict:
    rows = load_costed(source, filters)
    return {"filters": filters.describe(), "matrix": category_matrix(rows)}


def cannibalization_report(source, filters: ReportFilters, product: Optional[str]) -> dict:
    if not product:
        return {"product": None, "candidates": []}
    rows = load_costed(source, replace(filters, product=None))
    return {
        "product": product,
        "filters": filters.describe(),
        "candidates": cannibalization_candidates(rows, product),
    }


def raw_data(source, filters: ReportFilters, limit: int = 1000) -> dict:
    rows = source.preview_rows(filters, limit)
    return {"filters": filters.describe(), "row_count": int(len(rows)), "rows": records(rows)}


def dimension_values(source, filters: ReportFilters, dimension: str) -> list[Any]:
    return source.distinct_values(dimension, filters)
