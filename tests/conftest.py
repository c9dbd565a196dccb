from __future__ import annotations

import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Optional

import pandas as pd
import pytest

import fact_source
import settings
from fact_source import FrameFactSource, SqlFactSource

SCHEMA_SQL = Path(__file__).resolve().parents[1] / "backend" / "sql" / "sales_detail.sql"


def make_row(
    day: str,
    customer: Optional[str],
    product_code: Optional[str],
    product_name: Optional[str],
    quantity: float,
    amount: float,
    cost: Optional[float] = None,
    purchase_price: Optional[float] = None,
    receipt_type: int = 21,
    sales_rep: Optional[str] = "Ali",
    supplier: Optional[str] = "Anadolu Dagitim",
    category: Optional[str] = "SPIRITS",
    product_group: Optional[str] = "RAKI",
    volume_liters: Optional[float] = None,
) -> dict:
    d = datetime.strptime(day, "%Y-%m-%d").date()
    return {
        "date": day,
        "year": d.year,
        "month": d.month,
        "customer_name": customer,
        "sales_rep": sales_rep,
        "supplier": supplier,
        "product_code": product_code,
        "product_name": product_name,
        "category": category,
        "product_group": product_group,
        "quantity": quantity,
        "volume_liters": quantity if volume_liters is None else volume_liters,
        "amount": amount,
        "cost": cost,
        "purchase_price": purchase_price,
        "receipt_type": receipt_type,
    }


def sample_rows() -> pd.DataFrame:
    rows = [
        # Same (date, customer, product) group: weighted cost (10*5 + 10*7) / 20 = 6.
        make_row("2024-01-10", "Acme", "P1", "Raki 70cl", 10, 120, cost=5),
        make_row("2024-01-10", "Acme", "P1", "Raki 70cl", 10, 80, purchase_price=7),
        # No cost in its group: falls back to the product's highest cost (9, from 2023).
        make_row("2024-03-05", "Beta", "P1", "Raki 70cl", 5, 100),
        make_row("2024-03-25", "Beta", "P3", "Whisky 12", 1, 100, cost=60, product_group="WHISKY"),
        make_row("2024-04-01", "Delta", "P2", "Vodka 1L", 4, 80, receipt_type=101, sales_rep="Veli", product_group="VODKA"),
        make_row("2024-06-01", "Gamma", "P3", "Whisky 12", 1, 100, cost=60, receipt_type=101, sales_rep="Veli", product_group="WHISKY"),
        make_row("2025-02-01", "Acme", "P1", "Raki 70cl Gold", 10, 250, cost=6),
        make_row("2025-02-15", "Acme", "P1", "Raki 70cl Gold", 2, 50, cost=6, receipt_type=23),
        make_row("2025-03-01", "Gamma", "P3", "Whisky 12", 3, 300, cost=60, receipt_type=101, sales_rep="Veli", product_group="WHISKY"),
        make_row("2025-05-01", "Epsilon", "P2", "Vodka 1L", 2, 40, receipt_type=101, sales_rep="Kaan", product_group="VODKA"),
        # Standing exclusions: service line, internal supplier, out-of-window year.
        make_row("2024-02-01", "Acme", "SVC", "HİZMET", 1, 500, volume_liters=0),
        make_row("2024-02-02", "Acme", "P1", "Raki 70cl", 1, 999, supplier="GENEL HARCAMA"),
        make_row("2023-12-20", "Acme", "P1", "Raki 70cl", 1, 1000, cost=9),
    ]
    return pd.DataFrame(rows)


@pytest.fixture(autouse=True)
def report_settings(monkeypatch):
    monkeypatch.setattr(settings, "REPORT_YEARS", (2024, 2025))
    monkeypatch.setattr(settings, "SERVICE_PRODUCT_NAME", "HİZMET")
    monkeypatch.setattr(settings, "INTERNAL_SUPPLIER", "GENEL HARCAMA")
    monkeypatch.setattr(settings, "RETURN_RECEIPT_TYPES", frozenset({23, 102}))
    monkeypatch.setattr(settings, "EVALUATION_DATE", "2025-06-30")
    yield
    fact_source.set_fact_source(None)


@pytest.fixture
def fact_rows() -> pd.DataFrame:
    return sample_rows()


@pytest.fixture
def frame_source(fact_rows) -> FrameFactSource:
    return FrameFactSource(fact_rows)


@pytest.fixture
def sqlite_path(tmp_path, fact_rows) -> Path:
    path = tmp_path / "sales_detail.db"
    conn = sqlite3.connect(path)
    try:
        conn.executescript(SCHEMA_SQL.read_text(encoding="utf-8"))
        fact_rows.to_sql("sales_detail", conn, if_exists="append", index=False)
        conn.commit()
    finally:
        conn.close()
    return path


@pytest.fixture
def sql_source(sqlite_path) -> SqlFactSource:
    source = SqlFactSource(backend="sqlite", db_path=sqlite_path, table="sales_detail", timeout_seconds=5)
    yield source
    source.close()
