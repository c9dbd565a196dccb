from __future__ import annotations

from datetime import date

import pandas as pd
import pytest

import fact_source
import sales_metrics as sm
from fact_source import FactSourceError, SqlFactSource, _adapt_params_for_postgres
from report_filters import ReportFilters

FILTER_CASES = [
    ReportFilters(),
    ReportFilters(commercial_only=False),
    ReportFilters(channel="market"),
    ReportFilters(transaction_kind="return"),
    ReportFilters(product="Raki 70cl Gold"),
    ReportFilters(customer="Acme", year=2025),
    ReportFilters(start_date=date(2024, 3, 1), end_date=date(2024, 6, 30)),
    ReportFilters(years=(2024,), sales_rep="Veli"),
]


def _sorted(df: pd.DataFrame) -> pd.DataFrame:
    return df.sort_values(["date", "customer_name", "product_code", "amount"]).reset_index(drop=True)


@pytest.mark.parametrize("filters", FILTER_CASES)
def test_sqlite_and_frame_sources_agree(sql_source, frame_source, filters):
    from_sql = sql_source.load_rows(filters)
    from_frame = frame_source.load_rows(filters)
    assert len(from_sql) == len(from_frame)
    assert _sorted(from_sql)["amount"].tolist() == _sorted(from_frame)["amount"].tolist()


def test_canonical_names_and_fallback_costs(sql_source, frame_source):
    names = sql_source.canonical_product_names()
    assert names.to_dict() == frame_source.canonical_product_names().to_dict()
    assert names["P1"] == "Raki 70cl Gold"
    costs = sql_source.product_fallback_costs()
    assert costs.to_dict() == {"P1": 9.0, "P3": 60.0}
    assert costs.to_dict() == frame_source.product_fallback_costs().to_dict()


@pytest.mark.parametrize("dimension", ["sales_rep", "customer", "product_group", "year", "product"])
def test_distinct_values_agree(sql_source, frame_source, dimension):
    filters = ReportFilters()
    assert sql_source.distinct_values(dimension, filters) == frame_source.distinct_values(dimension, filters)


def test_distinct_values_respect_filters(sql_source):
    assert sql_source.distinct_values("customer", ReportFilters(channel="market")) == ["Delta", "Epsilon", "Gamma"]
    assert sql_source.distinct_values("product", ReportFilters(customer="Delta")) == ["Vodka 1L"]
    assert sql_source.distinct_values("year", ReportFilters()) == [2024, 2025]


def test_unknown_dimension_rejected(sql_source):
    with pytest.raises(ValueError):
        sql_source.distinct_values("colour", ReportFilters())


def test_preview_is_newest_first_and_capped(sql_source, frame_source):
    preview = sql_source.preview_rows(ReportFilters(commercial_only=False), limit=3)
    assert preview["date"].tolist() == ["2025-05-01", "2025-03-01", "2025-02-15"]
    framed = frame_source.preview_rows(ReportFilters(commercial_only=False), limit=5000)
    assert len(framed) == 13


def test_missing_database_is_a_source_error(tmp_path):
    source = SqlFactSource(backend="sqlite", db_path=tmp_path / "absent.db")
    with pytest.raises(FactSourceError):
        source.load_rows(ReportFilters())


def test_source_never_writes(sql_source):
    with pytest.raises(FactSourceError):
        sql_source.query("DELETE FROM sales_detail")
    assert len(sql_source.load_rows(ReportFilters(commercial_only=False))) == 13


def test_long_query_is_aborted(sqlite_path):
    source = SqlFactSource(backend="sqlite", db_path=sqlite_path, timeout_seconds=0.05)
    slow = (
        "WITH RECURSIVE c(x) AS (SELECT 1 UNION ALL SELECT x + 1 FROM c WHERE x < 50000000) "
        "SELECT count(*) AS n FROM c"
    )
    with pytest.raises(FactSourceError):
        source.query(slow)


def test_postgres_without_url_is_a_source_error():
    source = SqlFactSource(backend="postgres", database_url="")
    with pytest.raises(FactSourceError):
        source.load_rows(ReportFilters())


def test_postgres_placeholders_skip_string_literals():
    sql, params = _adapt_params_for_postgres("SELECT '?' AS q FROM t WHERE a = ? AND b IN (?, ?)", (1, 2, 3))
    assert sql == "SELECT '?' AS q FROM t WHERE a = %s AND b IN (%s, %s)"
    assert params == (1, 2, 3)


def test_bad_table_name_rejected():
    with pytest.raises(ValueError):
        SqlFactSource(table="sales_detail--")


def test_process_wide_source_can_be_swapped(frame_source):
    fact_source.set_fact_source(frame_source)
    assert fact_source.get_fact_source() is frame_source
    fact_source.close_fact_source()
    fact_source.set_fact_source(None)


def test_group_average_costs_agree(sql_source, frame_source):
    def keyed(source):
        averages = sm._keyed_averages(source.group_average_costs())
        return {
            (row.date, row.customer_name, row.product_code): row.group_avg_cost
            for row in averages.itertuples(index=False)
        }

    from_sql = keyed(sql_source)
    assert from_sql == keyed(frame_source)
    # Whole-table population: the out-of-window 2023 line has its own group.
    assert from_sql[(pd.Timestamp("2023-12-20"), "Acme", "P1")] == pytest.approx(9.0)
    assert from_sql[(pd.Timestamp("2024-01-10"), "Acme", "P1")] == pytest.approx(6.0)
    assert from_sql[(pd.Timestamp("2025-02-15"), "Acme", "P1")] == 0.0
