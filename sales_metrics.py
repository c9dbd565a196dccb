"""Pure pandas stages of the sales detail pipeline.

Order of application for a report:

    prepare_rows -> normalize_net -> attribute_costs -> attach_canonical_names
    -> one or more aggregation stages below

Every stage takes and returns DataFrames (or plain dicts) and never touches the
data source, so each can be tested on a handful of rows.
"""
from __future__ import annotations

from datetime import date
from typing import Iterable, Optional, Sequence

import pandas as pd

import settings

FACT_COLUMNS = [
    "date",
    "year",
    "month",
    "customer_name",
    "sales_rep",
    "supplier",
    "product_code",
    "product_name",
    "category",
    "product_group",
    "quantity",
    "volume_liters",
    "amount",
    "cost",
    "purchase_price",
    "receipt_type",
]
NUMERIC_COLUMNS = ["quantity", "volume_liters", "amount", "cost", "purchase_price"]
GROUP_KEY = ["date", "customer_name", "product_code"]
UNSPECIFIED = "UNSPECIFIED"

RISK_VERY_RISKY = "very_risky"
RISK_RISKY = "risky"
RISK_SAFE = "safe"


def pct_delta(curr: float, comp: float) -> Optional[float]:
    if abs(comp) < 1e-9:
        return None
    return (curr - comp) / comp


def margin_pct(profit: float, revenue: float) -> float:
    if revenue == 0:
        return 0.0
    return 100.0 * profit / revenue


def prepare_rows(rows: pd.DataFrame) -> pd.DataFrame:
    out = rows.copy()
    for col in FACT_COLUMNS:
        if col not in out.columns:
            out[col] = None
    out["date"] = pd.to_datetime(out["date"], errors="coerce").dt.normalize()
    for col in NUMERIC_COLUMNS:
        out[col] = pd.to_numeric(out[col], errors="coerce")
    out["receipt_type"] = pd.to_numeric(out["receipt_type"], errors="coerce").astype("Int64")
    out["year"] = pd.to_numeric(out["year"], errors="coerce").fillna(out["date"].dt.year).astype("Int64")
    out["month"] = pd.to_numeric(out["month"], errors="coerce").fillna(out["date"].dt.month).astype("Int64")
    # Empty product codes never identify a product.
    out["product_code"] = out["product_code"].where(out["product_code"].astype(str).str.strip() != "", None)
    return out


def unit_cost_or_purchase(rows: pd.DataFrame) -> pd.Series:
    return rows["cost"].where(rows["cost"].notna(), rows["purchase_price"]).fillna(0.0).astype(float)


def normalize_net(rows: pd.DataFrame, return_types: Optional[Iterable[int]] = None) -> pd.DataFrame:
    returns = list(settings.RETURN_RECEIPT_TYPES if return_types is None else return_types)
    out = rows.copy()
    is_return = out["receipt_type"].isin(returns).fillna(False).astype(bool)
    sign = is_return.map({True: -1.0, False: 1.0})
    out["net_quantity"] = out["quantity"].fillna(0.0).astype(float) * sign
    out["net_amount"] = out["amount"].fillna(0.0).astype(float) * sign
    out["net_volume"] = out["volume_liters"].fillna(0.0).astype(float) * sign
    return out


def group_average_costs(population: pd.DataFrame) -> pd.DataFrame:
    """Quantity-weighted average unit cost per (date, customer, product code).

    Groups whose net quantity is not positive get 0 so the product fallback
    applies to them.
    """
    if population.empty:
        return pd.DataFrame(columns=GROUP_KEY + ["group_avg_cost"])
    work = population[GROUP_KEY].copy()
    work["_q"] = population["net_quantity"]
    work["_qc"] = population["net_quantity"] * unit_cost_or_purchase(population)
    grouped = work.groupby(GROUP_KEY, dropna=False, as_index=False)[["_q", "_qc"]].sum()
    positive = grouped["_q"] > 0
    grouped["group_avg_cost"] = 0.0
    grouped.loc[positive, "group_avg_cost"] = grouped.loc[positive, "_qc"] / grouped.loc[positive, "_q"]
    return grouped[GROUP_KEY + ["group_avg_cost"]]


def product_fallback_costs(history: pd.DataFrame) -> pd.Series:
    """Highest valid cost or purchase price ever recorded per product code."""
    if history.empty:
        return pd.Series(dtype=float, name="fallback_cost")
    unit = unit_cost_or_purchase(history)
    valid = (unit > 0) & history["product_code"].notna()
    fallback = unit[valid].groupby(history.loc[valid, "product_code"]).max()
    fallback.name = "fallback_cost"
    return fallback.astype(float)


def _keyed_averages(averages: pd.DataFrame) -> pd.DataFrame:
    # Sources hand dates back as strings or date objects; rows carry timestamps.
    out = averages[GROUP_KEY + ["group_avg_cost"]].copy()
    out["date"] = pd.to_datetime(out["date"], errors="coerce").dt.normalize()
    out["product_code"] = out["product_code"].where(out["product_code"].astype(str).str.strip() != "", None)
    out["group_avg_cost"] = pd.to_numeric(out["group_avg_cost"], errors="coerce").fillna(0.0).astype(float)
    return out.drop_duplicates(GROUP_KEY, keep="first")


def attribute_costs(
    rows: pd.DataFrame,
    fallback_costs: pd.Series,
    group_costs: Optional[pd.DataFrame] = None,
) -> pd.DataFrame:
    """Attach true_unit_cost and profit to net-normalized rows.

    ``fallback_costs`` and ``group_costs`` should both come from the whole fact
    history so a row's cost never depends on the report's filters. Without
    ``group_costs`` the averages are computed over ``rows`` themselves.
    """
    out = rows.copy()
    if out.empty:
        out["true_unit_cost"] = pd.Series(dtype=float)
        out["profit"] = pd.Series(dtype=float)
        return out
    averages = _keyed_averages(group_average_costs(rows) if group_costs is None else group_costs)
    out["_row"] = range(len(out))
    merged = out[GROUP_KEY + ["_row"]].merge(averages, on=GROUP_KEY, how="left").set_index("_row")
    group_cost = merged["group_avg_cost"].reindex(out["_row"]).fillna(0.0).to_numpy()
    fallback = out["product_code"].map(fallback_costs).fillna(0.0).astype(float).to_numpy()
    out["true_unit_cost"] = [g if g != 0 else f for g, f in zip(group_cost, fallback)]
    out["profit"] = out["net_amount"] - out["net_quantity"] * out["true_unit_cost"]
    return out.drop(columns=["_row"])


def canonical_product_names(history: pd.DataFrame) -> pd.Series:
    """product_code -> display name on that code's most recent transaction date."""
    known = history[history["product_code"].notna() & history["product_name"].notna()]
    if known.empty:
        return pd.Series(dtype=object, name="canonical_name")
    latest = (
        known.assign(_date=pd.to_datetime(known["date"], errors="coerce"))
        .sort_values(["product_code", "_date", "product_name"], ascending=[True, False, True])
        .drop_duplicates("product_code", keep="first")
    )
    names = latest.set_index("product_code")["product_name"]
    names.name = "canonical_name"
    return names


def attach_canonical_names(rows: pd.DataFrame, names: pd.Series) -> pd.DataFrame:
    out = rows.copy()
    mapped = out["product_code"].map(names) if not out.empty else pd.Series(dtype=object)
    out["canonical_name"] = mapped.where(mapped.notna(), out["product_name"])
    return out


def costed_rows(
    rows: pd.DataFrame,
    fallback_costs: pd.Series,
    names: pd.Series,
    group_costs: Optional[pd.DataFrame] = None,
) -> pd.DataFrame:
    prepared = prepare_rows(rows)
    return attach_canonical_names(attribute_costs(normalize_net(prepared), fallback_costs, group_costs), names)


def kpi_summary(rows: pd.DataFrame) -> dict:
    revenue = float(rows["net_amount"].sum()) if not rows.empty else 0.0
    profit = float(rows["profit"].sum()) if not rows.empty else 0.0
    return {
        "total_revenue": revenue,
        "total_profit": profit,
        "margin_pct": margin_pct(profit, revenue),
        "customer_count": int(rows["customer_name"].dropna().nunique()) if not rows.empty else 0,
        "total_quantity": float(rows["net_quantity"].sum()) if not rows.empty else 0.0,
        "total_liters": float(rows["net_volume"].sum()) if not rows.empty else 0.0,
        "row_count": int(len(rows)),
    }


def profitability_rollup(rows: pd.DataFrame, by: Sequence[str]) -> pd.DataFrame:
    keys = list(by)
    columns = keys + ["revenue", "profit", "quantity", "liters", "customer_count", "margin_pct"]
    if rows.empty:
        return pd.DataFrame(columns=columns)
    grouped = rows.groupby(keys, dropna=False).agg(
        revenue=("net_amount", "sum"),
        profit=("profit", "sum"),
        quantity=("net_quantity", "sum"),
        liters=("net_volume", "sum"),
        customer_count=("customer_name", "nunique"),
    ).reset_index()
    grouped["margin_pct"] = [margin_pct(p, r) for p, r in zip(grouped["profit"], grouped["revenue"])]
    return grouped[columns]


def monthly_trend(rows: pd.DataFrame) -> pd.DataFrame:
    trend = profitability_rollup(rows, ["year", "month"])
    if trend.empty:
        trend["revenue_delta_pct"] = pd.Series(dtype=float)
        return trend
    trend = trend.sort_values(["year", "month"]).reset_index(drop=True)
    prev = trend["revenue"].shift(1)
    trend["revenue_delta_pct"] = [
        None if pd.isna(p) else pct_delta(float(c), float(p)) for c, p in zip(trend["revenue"], prev)
    ]
    return trend


def abc_classification(rows: pd.DataFrame, a_cutoff: float = 80.0, b_cutoff: float = 95.0) -> pd.DataFrame:
    columns = ["customer_name", "revenue", "share_pct", "cumulative_pct", "band"]
    if rows.empty:
        return pd.DataFrame(columns=columns)
    revenue = rows.groupby("customer_name")["net_amount"].sum().reset_index(name="revenue")
    revenue = revenue[revenue["revenue"] > 0]
    if revenue.empty:
        return pd.DataFrame(columns=columns)
    revenue = revenue.sort_values(["revenue", "customer_name"], ascending=[False, True]).reset_index(drop=True)
    grand_total = float(revenue["revenue"].sum())
    revenue["share_pct"] = revenue["revenue"] * 100.0 / grand_total
    revenue["cumulative_pct"] = revenue["revenue"].cumsum() * 100.0 / grand_total

    def band(cumulative: float) -> str:
        if cumulative <= a_cutoff:
            return "A"
        if cumulative <= b_cutoff:
            return "B"
        return "C"

    revenue["band"] = revenue["cumulative_pct"].map(band)
    return revenue[columns]


def _customers(rows: pd.DataFrame) -> set:
    return set(rows["customer_name"].dropna())


def churn_analysis(rows: pd.DataFrame, prior_years: Iterable[int], current_years: Iterable[int]) -> dict:
    prior_set, current_set = set(prior_years), set(current_years)
    if not prior_set or not current_set:
        raise ValueError("churn analysis needs both a prior and a current period")
    if prior_set & current_set:
        raise ValueError("prior and current periods must not overlap")
    prior = rows[rows["year"].isin(list(prior_set))] if not rows.empty else rows
    current = rows[rows["year"].isin(list(current_set))] if not rows.empty else rows
    prior_customers = _customers(prior)
    current_customers = _customers(current)
    churned = prior_customers - current_customers
    new = current_customers - prior_customers

    lost = (
        prior[prior["customer_name"].isin(churned)].groupby("customer_name")["net_amount"].sum()
        if churned
        else pd.Series(dtype=float)
    )
    churned_rows = sorted(
        ({"customer_name": name, "lost_revenue": float(lost.get(name, 0.0))} for name in churned),
        key=lambda r: (-r["lost_revenue"], r["customer_name"]),
    )
    gained = (
        current[current["customer_name"].isin(new)].groupby("customer_name")["net_amount"].sum()
        if new
        else pd.Series(dtype=float)
    )
    new_rows = sorted(
        ({"customer_name": name, "revenue": float(gained.get(name, 0.0))} for name in new),
        key=lambda r: (-r["revenue"], r["customer_name"]),
    )
    return {
        "churned": churned_rows,
        "new": new_rows,
        "prior_customer_count": len(prior_customers),
        "current_customer_count": len(current_customers),
        "retained_count": len(prior_customers & current_customers),
        "lost_revenue": float(sum(r["lost_revenue"] for r in churned_rows)),
    }


def retention_rate(prior_customers: set, current_customers: set) -> float:
    if not prior_customers:
        return 0.0
    return 100.0 * len(prior_customers & current_customers) / len(prior_customers)


def retention_by_rep(rows: pd.DataFrame, prior_years: Iterable[int], current_years: Iterable[int]) -> pd.DataFrame:
    columns = ["sales_rep", "prior_customers", "current_customers", "retained_customers", "retention_pct"]
    prior_list, current_list = list(prior_years), list(current_years)
    if set(prior_list) & set(current_list):
        raise ValueError("prior and current periods must not overlap")
    scoped = rows[rows["sales_rep"].notna()] if not rows.empty else rows
    if scoped.empty:
        return pd.DataFrame(columns=columns)
    out = []
    for rep, rep_rows in scoped.groupby("sales_rep"):
        prior = _customers(rep_rows[rep_rows["year"].isin(prior_list)])
        current = _customers(rep_rows[rep_rows["year"].isin(current_list)])
        if not prior and not current:
            continue
        out.append(
            {
                "sales_rep": rep,
                "prior_customers": len(prior),
                "current_customers": len(current),
                "retained_customers": len(prior & current),
                "retention_pct": retention_rate(prior, current),
            }
        )
    if not out:
        return pd.DataFrame(columns=columns)
    return pd.DataFrame(out, columns=columns).sort_values(
        ["retention_pct", "sales_rep"], ascending=[False, True]
    ).reset_index(drop=True)


def order_risk_scores(
    rows: pd.DataFrame,
    today: date,
    very_risky_factor: float = 2.0,
    risky_factor: float = 1.5,
    default_gap_days: float = 365.0,
) -> pd.DataFrame:
    columns = [
        "customer_name",
        "order_count",
        "first_order",
        "last_order",
        "avg_gap_days",
        "days_since_last_order",
        "risk",
    ]
    if rows.empty:
        return pd.DataFrame(columns=columns)
    orders = rows[["customer_name", "date"]].dropna().drop_duplicates()
    out = []
    for customer, group in orders.groupby("customer_name"):
        dates = sorted(d.date() for d in group["date"])
        if len(dates) < 2:
            continue
        gaps = [(b - a).days for a, b in zip(dates, dates[1:])]
        avg_gap = sum(gaps) / len(gaps) if gaps else None
        base = avg_gap if avg_gap else default_gap_days
        days_since = (today - dates[-1]).days
        if days_since > very_risky_factor * base:
            risk = RISK_VERY_RISKY
        elif days_since > risky_factor * base:
            risk = RISK_RISKY
        else:
            risk = RISK_SAFE
        out.append(
            {
                "customer_name": customer,
                "order_count": len(dates),
                "first_order": dates[0],
                "last_order": dates[-1],
                "avg_gap_days": float(base),
                "days_since_last_order": days_since,
                "risk": risk,
            }
        )
    if not out:
        return pd.DataFrame(columns=columns)
    scored = pd.DataFrame(out, columns=columns)
    scored["_ratio"] = scored["days_since_last_order"] / scored["avg_gap_days"]
    return scored.sort_values(["_ratio", "customer_name"], ascending=[False, True]).drop(columns="_ratio").reset_index(drop=True)


def split_by_membership(universe: Iterable, members: Iterable) -> tuple[list, list]:
    """Partition universe into (in members, not in members), both sorted."""
    member_set = set(members)
    everything = sorted(set(v for v in universe if v is not None and not pd.isna(v)))
    return [v for v in everything if v in member_set], [v for v in everything if v not in member_set]


def price_series(rows: pd.DataFrame) -> pd.DataFrame:
    columns = ["year", "month", "avg_unit_price", "quantity", "revenue", "price_change_pct", "quantity_change_pct", "elasticity"]
    if rows.empty:
        return pd.DataFrame(columns=columns)
    totals = rows.groupby(["year", "month"]).agg(quantity=("net_quantity", "sum"), revenue=("net_amount", "sum"))
    # Zero or negative lines are left out of the price average, not counted as 0.
    priced = rows[(rows["net_quantity"] > 0) & (rows["net_amount"] > 0)]
    if priced.empty:
        totals["avg_unit_price"] = float("nan")
    else:
        prices = (priced["net_amount"] / priced["net_quantity"]).groupby([priced["year"], priced["month"]]).mean()
        totals["avg_unit_price"] = prices.reindex(totals.index)
    series = totals.reset_index().sort_values(["year", "month"]).reset_index(drop=True)
    price_change: list[Optional[float]] = [None]
    quantity_change: list[Optional[float]] = [None]
    elasticity: list[Optional[float]] = [None]
    for i in range(1, len(series)):
        prev_p, cur_p = series.loc[i - 1, "avg_unit_price"], series.loc[i, "avg_unit_price"]
        dp = None if pd.isna(prev_p) or pd.isna(cur_p) else pct_delta(float(cur_p), float(prev_p))
        dq = pct_delta(float(series.loc[i, "quantity"]), float(series.loc[i - 1, "quantity"]))
        price_change.append(dp)
        quantity_change.append(dq)
        elasticity.append(dq / dp if dp and dq is not None else None)
    series["price_change_pct"] = price_change
    series["quantity_change_pct"] = quantity_change
    series["elasticity"] = elasticity
    return series[columns]


def monthly_quantity_comparison(rows: pd.DataFrame, prior_year: int, current_year: int) -> list[dict]:
    by_month = (
        rows[rows["year"].isin([prior_year, current_year])].groupby(["year", "month"])["net_quantity"].sum()
        if not rows.empty
        else pd.Series(dtype=float)
    )
    out = []
    for month in range(1, 13):
        prior = float(by_month.get((prior_year, month), 0.0))
        current = float(by_month.get((current_year, month), 0.0))
        out.append(
            {
                "month": month,
                "prior_quantity": prior,
                "current_quantity": current,
                "delta_pct": pct_delta(current, prior),
            }
        )
    return out


def category_matrix(rows: pd.DataFrame) -> dict:
    if rows.empty:
        return {}
    work = rows.assign(
        category=rows["category"].fillna(UNSPECIFIED),
        product_group=rows["product_group"].fillna(UNSPECIFIED),
    )
    work = work[work["year"].notna() & work["month"].notna()]
    if work.empty:
        return {}
    rollup = profitability_rollup(work, ["category", "product_group", "year", "month"])
    rollup = rollup.sort_values(["category", "product_group", "year", "month"])
    matrix: dict = {}
    for (category, group), cells in rollup.groupby(["category", "product_group"], sort=True):
        matrix.setdefault(category, {})[group] = [
            {
                "year": int(r.year),
                "month": int(r.month),
                "revenue": float(r.revenue),
                "profit": float(r.profit),
                "margin_pct": float(r.margin_pct),
            }
            for r in cells.itertuples(index=False)
        ]
    return matrix


def cannibalization_candidates(
    rows: pd.DataFrame,
    focus_product: str,
    threshold: float = -0.5,
    min_months: int = 3,
) -> list[dict]:
    """Products of the focus product's group whose monthly quantity moves against it."""
    focus_rows = rows[rows["canonical_name"] == focus_product]
    if focus_rows.empty:
        return []
    groups = set(focus_rows["product_group"].dropna())
    peers = rows[rows["product_group"].isin(groups)]
    monthly = (
        peers.groupby(["canonical_name", "year", "month"])["net_quantity"].sum().unstack(level=0).sort_index().fillna(0.0)
    )
    changes = monthly.diff().iloc[1:]
    if focus_product not in changes.columns:
        return []
    focus = changes[focus_product]
    out = []
    for product in changes.columns:
        if product == focus_product:
            continue
        pair = pd.concat([focus, changes[product]], axis=1).dropna()
        if len(pair) < min_months:
            continue
        corr = pair.iloc[:, 0].corr(pair.iloc[:, 1])
        if pd.isna(corr):
            continue
        out.append(
            {
                "product_name": product,
                "shared_months": int(len(pair)),
                "correlation": float(corr),
                "suspected": bool(corr <= threshold),
            }
        )
    return sorted(out, key=lambda r: (r["correlation"], r["product_name"]))
