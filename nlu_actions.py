"""Actions behind the natural-language query bridge.

An external parser turns free text into ``{intent, slots}``. This module
normalizes the slots and answers each supported intent from the fact source
with a summary value and a sentence a person can read.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

import pandas as pd

from report_filters import (
    MARKET_RECEIPT_TYPES,
    WHOLESALE_RECEIPT_TYPES,
    ReportFilters,
    normalize_channel,
)
from sales_metrics import normalize_net, prepare_rows

logger = logging.getLogger("salesdash.nlu_actions")

PRODUCT_GROUPS = ("WHISKY", "VODKA", "GIN", "RAKI", "LIKOR")
PRODUCT_GROUP_HINTS = (
    ("VISKI", "WHISKY"),
    ("WHIS", "WHISKY"),
    ("VOD", "VODKA"),
    ("VOTKA", "VODKA"),
    ("GIN", "GIN"),
    ("CIN", "GIN"),
    ("RAK", "RAKI"),
    ("LIK", "LIKOR"),
)
TOP_PRODUCTS_LIMIT = 5

INTENT_ALIASES = {
    "rapor.satis_hacmi_litre": "sales_volume_liters",
    "rapor.satis_tutar_ciro": "revenue_total",
    "rapor.aylik_kirilim_litre": "monthly_breakdown",
    "rapor.kanal_dagilimi_litre": "channel_distribution",
    "rapor.karsilastir_yil_litre": "year_over_year",
    "rapor.top_urun_litre": "top_products",
    "yardim.ne_yapabilir": "help",
}

EXAMPLE_COMMANDS = [
    "2024 market raki liters",
    "2025 wholesale whisky revenue",
    "2024 vodka market monthly liters",
    "2024 raki channel distribution liters",
    "market whisky 2024 vs 2025 liters",
    "2024 top selling whisky products in market by liters",
]


class IntentError(ValueError):
    code = "intent-error"


class YearRequiredError(IntentError):
    code = "year-required"


class UnknownIntentError(IntentError):
    code = "unknown-intent"


@dataclass(frozen=True)
class IntentQuery:
    year: int
    channel: Optional[str]
    product_group: Optional[str]

    def filters(self, **overrides: Any) -> ReportFilters:
        values = {
            "year": self.year,
            "channel": self.channel,
            "product_group": self.product_group,
            "commercial_only": False,
        }
        values.update(overrides)
        return ReportFilters(**values)

    @property
    def channel_label(self) -> str:
        return f"the {self.channel} channel" if self.channel else "all channels"

    @property
    def product_label(self) -> str:
        return self.product_group or "all products"


def normalize_year(value: Any) -> Optional[int]:
    m = re.search(r"(19|20)\d{2}", str(value or ""))
    return int(m.group(0)) if m else None


def normalize_product_group(value: Any) -> Optional[str]:
    token = str(value or "").strip().upper()
    if not token:
        return None
    if token in PRODUCT_GROUPS:
        return token
    for hint, group in PRODUCT_GROUP_HINTS:
        if hint in token:
            return group
    return None


def _slot(slots: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        if slots.get(name) not in (None, ""):
            return slots[name]
    return None


def normalize_slots(slots: Optional[Mapping[str, Any]]) -> IntentQuery:
    slots = slots or {}
    year = normalize_year(_slot(slots, "year", "yil", "YIL"))
    if year is None:
        raise YearRequiredError("year required")
    return IntentQuery(
        year=year,
        channel=normalize_channel(_slot(slots, "channel", "kanal", "KANAL")),
        product_group=normalize_product_group(_slot(slots, "product_group", "urun", "URUN")),
    )


def _net_rows(source, filters: ReportFilters) -> pd.DataFrame:
    return normalize_net(prepare_rows(source.load_rows(filters)))


def _fmt(value: float) -> str:
    return f"{value:,.0f}"


def sales_volume_liters(source, q: IntentQuery) -> dict:
    liters = float(_net_rows(source, q.filters())["net_volume"].sum())
    return {
        "value": liters,
        "sentence": f"In {q.year}, {q.channel_label} sold {_fmt(liters)} liters of {q.product_label}.",
    }


def revenue_total(source, q: IntentQuery) -> dict:
    revenue = float(_net_rows(source, q.filters())["net_amount"].sum())
    return {
        "value": revenue,
        "sentence": f"In {q.year}, {q.channel_label} made {_fmt(revenue)} TL revenue on {q.product_label}.",
    }


def monthly_breakdown(source, q: IntentQuery) -> dict:
    rows = _net_rows(source, q.filters())
    by_month = rows.groupby("month")["net_volume"].sum() if not rows.empty else pd.Series(dtype=float)
    months = [{"month": m, "liters": float(by_month.get(m, 0.0))} for m in range(1, 13)]
    total = sum(m["liters"] for m in months)
    if total:
        peak = max(months, key=lambda m: m["liters"])
        sentence = (
            f"In {q.year}, {q.channel_label} sold {_fmt(total)} liters of {q.product_label}; "
            f"the strongest month was {peak['month']} with {_fmt(peak['liters'])} liters."
        )
    else:
        sentence = f"No {q.product_label} volume was sold in {q.year} through {q.channel_label}."
    return {"value": months, "sentence": sentence}


def _channel_bucket(receipt_type: Any) -> str:
    if pd.isna(receipt_type):
        return "other"
    if receipt_type in WHOLESALE_RECEIPT_TYPES:
        return "wholesale"
    if receipt_type in MARKET_RECEIPT_TYPES:
        return "market"
    return "other"


def channel_distribution(source, q: IntentQuery) -> dict:
    rows = _net_rows(source, q.filters(channel=None))
    totals = {"wholesale": 0.0, "market": 0.0, "other": 0.0}
    if not rows.empty:
        buckets = rows["receipt_type"].map(_channel_bucket)
        for bucket, liters in rows["net_volume"].groupby(buckets).sum().items():
            totals[bucket] = float(liters)
    total = sum(totals.values())
    parts = ", ".join(
        f"{name} {_fmt(liters)} liters ({(100.0 * liters / total) if total else 0.0:.1f}%)"
        for name, liters in totals.items()
    )
    return {
        "value": [{"channel": name, "liters": liters} for name, liters in totals.items()],
        "sentence": f"In {q.year}, {q.product_label} volume split as: {parts}.",
    }


def year_over_year(source, q: IntentQuery) -> dict:
    prior = q.year - 1
    rows = _net_rows(source, q.filters(year=None, years=(prior, q.year)))
    by_year = rows.groupby("year")["net_volume"].sum() if not rows.empty else pd.Series(dtype=float)
    prior_liters = float(by_year.get(prior, 0.0))
    current_liters = float(by_year.get(q.year, 0.0))
    if abs(prior_liters) < 1e-9:
        change = "with no prior-year volume to compare against"
    else:
        change = f"a {(current_liters - prior_liters) / prior_liters:+.1%} change"
    return {
        "value": [{"year": prior, "liters": prior_liters}, {"year": q.year, "liters": current_liters}],
        "sentence": (
            f"{q.product_label} in {q.channel_label}: {_fmt(prior_liters)} liters in {prior} "
            f"vs {_fmt(current_liters)} liters in {q.year}, {change}."
        ),
    }


def top_products(source, q: IntentQuery) -> dict:
    rows = _net_rows(source, q.filters())
    if rows.empty:
        return {"value": [], "sentence": f"No {q.product_label} sales found in {q.year} for {q.channel_label}."}
    top = (
        rows.groupby("product_name")["net_volume"].sum()
        .reset_index(name="liters")
        .sort_values(["liters", "product_name"], ascending=[False, True])
        .head(TOP_PRODUCTS_LIMIT)
    )
    value = [{"product_name": r.product_name, "liters": float(r.liters)} for r in top.itertuples(index=False)]
    leader = value[0]
    return {
        "value": value,
        "sentence": (
            f"Top {q.product_label} product in {q.year} for {q.channel_label} was "
            f"{leader['product_name']} with {_fmt(leader['liters'])} liters."
        ),
    }


INTENT_HANDLERS: dict[str, Callable[[Any, IntentQuery], dict]] = {
    "sales_volume_liters": sales_volume_liters,
    "revenue_total": revenue_total,
    "monthly_breakdown": monthly_breakdown,
    "channel_distribution": channel_distribution,
    "year_over_year": year_over_year,
    "top_products": top_products,
}


def run_intent(source, intent: Optional[str], slots: Optional[Mapping[str, Any]] = None) -> dict:
    name = INTENT_ALIASES.get(str(intent or "").strip(), str(intent or "").strip())
    if name == "help":
        return {"ok": True, "intent": name, "commands": list(EXAMPLE_COMMANDS)}
    handler = INTENT_HANDLERS.get(name)
    if handler is None:
        raise UnknownIntentError(f"unknown intent: {intent}")
    query = normalize_slots(slots)
    logger.info("nlu intent=%s year=%s channel=%s group=%s", name, query.year, query.channel, query.product_group)
    result = handler(source, query)
    return {
        "ok": True,
        "intent": name,
        "year": query.year,
        "channel": query.channel,
        "product_group": query.product_group or "ALL",
        **result,
    }
