from __future__ import annotations

import os
from datetime import date, datetime
from pathlib import Path
from typing import Optional

ENV_PATH = Path(__file__).resolve().parent / ".env"


def load_local_env(path: Path = ENV_PATH) -> None:
    if not path.exists():
        return
    for raw in path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key:
            continue
        value = value.strip().strip("\"").strip("'")
        os.environ.setdefault(key, value)


def _int_list(raw: str) -> tuple[int, ...]:
    return tuple(int(v.strip()) for v in raw.split(",") if v.strip())


def configure() -> None:
    """Read every setting from the environment.

    Runs at import; call again after loading another env file.
    """
    global DB_BACKEND, DB_PATH, DATABASE_URL, FACT_TABLE, QUERY_TIMEOUT_SECONDS
    global REPORT_YEARS, SERVICE_PRODUCT_NAME, INTERNAL_SUPPLIER, RETURN_RECEIPT_TYPES
    global EVALUATION_DATE, LOG_LEVEL

    DB_BACKEND = os.getenv("DB_BACKEND", "sqlite").strip().lower()
    DB_PATH = Path(os.getenv("DB_PATH", "data/sales_detail.db"))
    DATABASE_URL = os.getenv("DATABASE_URL", "").strip()
    FACT_TABLE = os.getenv("FACT_TABLE", "sales_detail").strip()
    QUERY_TIMEOUT_SECONDS = float(os.getenv("QUERY_TIMEOUT_SECONDS", "60"))

    REPORT_YEARS = _int_list(os.getenv("REPORT_YEARS", "2024,2025"))
    SERVICE_PRODUCT_NAME = os.getenv("SERVICE_PRODUCT_NAME", "HİZMET")
    INTERNAL_SUPPLIER = os.getenv("INTERNAL_SUPPLIER", "GENEL HARCAMA")
    RETURN_RECEIPT_TYPES = frozenset(_int_list(os.getenv("RETURN_RECEIPT_TYPES", "23,102")))

    EVALUATION_DATE = os.getenv("EVALUATION_DATE", "").strip()
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper()


load_local_env()
configure()


def evaluation_today(pinned: Optional[str] = None) -> date:
    # EVALUATION_DATE pins "today" for reproducible reports; otherwise wall clock.
    value = (pinned if pinned is not None else EVALUATION_DATE).strip()
    if value:
        return datetime.strptime(value, "%Y-%m-%d").date()
    return date.today()
