from __future__ import annotations

from datetime import date

import pandas as pd
import pytest

import reports
import settings
from conftest import make_row
from fact_source import FrameFactSource
from report_filters import ReportFilters


def test_rep_performance_kpis(frame_source):
    kpis = reports.rep_performance(frame_source, ReportFilters())["kpis"]
    assert kpis["total_revenue"] == pytest.approx(1120.0)
    assert kpis["total_profit"] == pytest.approx(613.0)
    assert kpis["customer_count"] == 5
    assert kpis["row_count"] == 10


def test_sql_and_frame_reports_match(sql_source, frame_source):
    for fn in (reports.rep_performance, reports.abc_report, reports.trend):
        assert fn(sql_source, ReportFilters()) == fn(frame_source, ReportFilters())


def test_product_profitability_uses_canonical_names(frame_source):
    result = reports.profitability(frame_source, ReportFilters(), "product")
    rows = {r["name"]: r for r in result["rows"]}
    assert [r["name"] for r in result["rows"]] == ["Raki 70cl Gold", "Whisky 12", "Vodka 1L"]
    assert rows["Raki 70cl Gold"]["revenue"] == pytest.approx(500.0)
    assert rows["Raki 70cl Gold"]["profit"] == pytest.approx(293.0)
    assert rows["Vodka 1L"]["margin_pct"] == pytest.approx(100.0)
    assert result["kpis"]["item_count"] == 3


def test_profitability_unknown_dimension(frame_source):
    with pytest.raises(ValueError):
        reports.profitability(frame_source, ReportFilters(), "planet")


def test_rep_comparison(frame_source):
    result = reports.rep_comparison(frame_source, ReportFilters(), "Ali", "Veli")
    assert result["left"]["total_revenue"] == pytest.approx(600.0)
    assert result["right"]["total_revenue"] == pytest.approx(480.0)
    assert result["left_vs_right"]["total_revenue"] == pytest.approx(0.25)
    assert reports.rep_comparison(frame_source, ReportFilters(), "Ali", None)["right"] is None


def test_product_year_comparison(frame_source):
    result = reports.product_year_comparison(frame_source, ReportFilters(), "Raki 70cl Gold")
    assert (result["prior_year"], result["current_year"]) == (2024, 2025)
    feb = result["rows"][1]
    assert feb["month_name"] == "Feb"
    assert feb["prior_quantity"] == 0.0
    assert feb["current_quantity"] == 8.0
    assert result["rows"][0]["prior_quantity"] == 20.0


def test_trend_rows_are_json_safe(frame_source):
    rows = reports.trend(frame_source, ReportFilters())["rows"]
    assert rows[0]["year"] == 2024 and rows[0]["month"] == 1
    assert rows[0]["revenue_delta_pct"] is None
    assert all(isinstance(r["revenue"], float) for r in rows)


def test_product_potential(frame_source):
    result = reports.product_potential(frame_source, ReportFilters(), "Delta")
    assert result["bought"] == ["Vodka 1L"]
    assert result["potential"] == ["Raki 70cl Gold", "Whisky 12"]


def test_customer_potential(frame_source):
    result = reports.customer_potential(frame_source, ReportFilters(), "Whisky 12")
    assert result["buyers"] == ["Beta", "Gamma"]
    assert result["potential"] == ["Acme", "Delta", "Epsilon"]


def test_potential_without_subject(frame_source):
    assert reports.product_potential(frame_source, ReportFilters(), None)["potential"] == []
    assert reports.customer_potential(frame_source, ReportFilters(), "")["potential"] == []


def test_abc_report(frame_source):
    result = reports.abc_report(frame_source, ReportFilters())
    assert [(r["customer_name"], r["band"]) for r in result["rows"]] == [
        ("Acme", "A"),
        ("Gamma", "A"),
        ("Beta", "B"),
        ("Delta", "C"),
        ("Epsilon", "C"),
    ]
    assert result["band_counts"] == {"A": 2, "B": 1, "C": 2}
    assert result["grand_total"] == pytest.approx(1120.0)


def test_churn_report_defaults_to_evaluation_years(frame_source):
    result = reports.churn_report(frame_source, ReportFilters())
    assert (result["prior_year"], result["current_year"]) == (2024, 2025)
    assert result["churned"] == [
        {"customer_name": "Beta", "lost_revenue": 200.0},
        {"customer_name": "Delta", "lost_revenue": 80.0},
    ]
    assert result["new"] == [{"customer_name": "Epsilon", "revenue": 40.0}]
    assert result["retained_count"] == 2
    assert result["lost_revenue"] == pytest.approx(280.0)


def test_churn_report_rejects_same_year(frame_source):
    with pytest.raises(ValueError):
        reports.churn_report(frame_source, ReportFilters(), 2025, 2025)


def test_retention_report(frame_source):
    rows = {r["sales_rep"]: r for r in reports.retention_report(frame_source, ReportFilters())["rows"]}
    assert rows["Ali"]["retention_pct"] == pytest.approx(50.0)
    assert rows["Veli"]["retention_pct"] == pytest.approx(50.0)
    assert rows["Kaan"]["retention_pct"] == 0.0


def test_order_risk_report(frame_source):
    result = reports.order_risk_report(frame_source, ReportFilters())
    assert result["as_of"] == "2025-06-30"
    names = [r["customer_name"] for r in result["rows"]]
    assert names == ["Beta", "Acme", "Gamma"]
    beta = result["rows"][0]
    assert beta["risk"] == "very_risky"
    assert beta["avg_gap_days"] == 20.0
    assert beta["last_order"] == "2024-03-25"
    assert result["risk_counts"] == {"very_risky": 1, "safe": 2}


def test_order_risk_report_explicit_today(frame_source):
    result = reports.order_risk_report(frame_source, ReportFilters(), today=date(2025, 3, 1))
    assert result["as_of"] == "2025-03-01"


def test_price_elasticity_report(frame_source):
    rows = reports.price_elasticity_report(frame_source, ReportFilters(), "Raki 70cl Gold")["rows"]
    assert [(r["year"], r["month"]) for r in rows] == [(2024, 1), (2024, 3), (2025, 2)]
    assert [r["avg_unit_price"] for r in rows] == pytest.approx([10.0, 20.0, 25.0])
    assert rows[1]["elasticity"] == pytest.approx(-0.75)


def test_category_matrix_report(frame_source):
    matrix = reports.category_matrix_report(frame_source, ReportFilters())["matrix"]
    assert set(matrix["SPIRITS"]) == {"RAKI", "VODKA", "WHISKY"}
    assert sum(cell["revenue"] for cell in matrix["SPIRITS"]["WHISKY"]) == pytest.approx(500.0)


def test_cannibalization_report_without_product(frame_source):
    assert reports.cannibalization_report(frame_source, ReportFilters(), None)["candidates"] == []


def test_raw_data_preview(frame_source):
    result = reports.raw_data(frame_source, ReportFilters(channel="market"), limit=2)
    assert result["row_count"] == 2
    assert [r["date"] for r in result["rows"]] == ["2025-05-01", "2025-03-01"]


def test_filter_options(frame_source):
    options = reports.filter_options(frame_source, ReportFilters(), ["sales_rep", "product", "bogus"])
    assert options == {"sales_rep": ["Ali", "Kaan", "Veli"], "product": ["Raki 70cl Gold", "Vodka 1L", "Whisky 12"]}


def test_group_cost_ignores_report_filters():
    # Sale and return share a (date, customer, product) group; history carries cost 12.
    rows = pd.DataFrame(
        [
            make_row("2024-05-01", "Acme", "P9", "Gin 70cl", 10, 200, cost=5),
            make_row("2024-05-01", "Acme", "P9", "Gin 70cl", 10, 200, receipt_type=23),
            make_row("2024-07-01", "Beta", "P9", "Gin 70cl", 1, 20, cost=12),
        ]
    )
    source = FrameFactSource(rows)
    costs = []
    for filters in (ReportFilters(year=2024), ReportFilters(transaction_kind="sale")):
        costed = reports.load_costed(source, filters)
        sale = costed[(costed["customer_name"] == "Acme") & (costed["receipt_type"] == 21)]
        costs.append(float(sale["true_unit_cost"].iloc[0]))
    assert costs == [12.0, 12.0]


def test_sql_and_frame_costs_match_under_kind_filter(sql_source, frame_source):
    filters = ReportFilters(transaction_kind="sale")
    assert reports.rep_performance(sql_source, filters) == reports.rep_performance(frame_source, filters)


def test_default_current_year_clamps_to_report_window(monkeypatch):
    monkeypatch.setattr(settings, "EVALUATION_DATE", "2026-03-01")
    assert reports.default_current_year() == 2025
    monkeypatch.setattr(settings, "EVALUATION_DATE", "2024-11-30")
    assert reports.default_current_year() == 2024
    monkeypatch.setattr(settings, "REPORT_YEARS", ())
    monkeypatch.setattr(settings, "EVALUATION_DATE", "2026-03-01")
    assert reports.default_current_year() == 2026


@pytest.mark.parametrize("evaluation_date", ["2026-03-01", ""])
def test_year_defaults_stay_inside_report_window(monkeypatch, frame_source, evaluation_date):
    monkeypatch.setattr(settings, "EVALUATION_DATE", evaluation_date)
    monkeypatch.setattr(settings, "REPORT_YEARS", (2024, 2025))
    churn = reports.churn_report(frame_source, ReportFilters())
    assert (churn["prior_year"], churn["current_year"]) == (2024, 2025)
    assert [r["customer_name"] for r in churn["churned"]] == ["Beta", "Delta"]
    retention = reports.retention_report(frame_source, ReportFilters())
    assert retention["current_year"] == 2025
    comparison = reports.product_year_comparison(frame_source, ReportFilters(), "Raki 70cl Gold")
    assert comparison["rows"][1]["current_quantity"] == 8.0


def test_product_potential_skips_cost_attribution(monkeypatch, frame_source):
    def fail(*args, **kwargs):
        raise AssertionError("product potential only needs names")

    monkeypatch.setattr(reports, "costed_rows", fail)
    result = reports.product_potential(frame_source, ReportFilters(), "Beta")
    assert result["bought"] == ["Raki 70cl Gold", "Whisky 12"]
    assert result["potential"] == ["Vodka 1L"]
