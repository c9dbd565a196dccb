from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

import reports
import settings
from fact_source import FactSourceError, close_fact_source, get_fact_source
from nlu_actions import IntentError, run_intent
from report_filters import ReportFilters, resolve_filters

logger = logging.getLogger("salesdash.api_server")


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    close_fact_source()


app = FastAPI(title="Sales Detail Reports API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def report_filters(
    start_date: Optional[str] = Query(default=None),
    end_date: Optional[str] = Query(default=None),
    period: Optional[str] = Query(default=None),
    year: Optional[str] = Query(default=None),
    month: Optional[str] = Query(default=None),
    sales_rep: Optional[str] = Query(default=None),
    customer: Optional[str] = Query(default=None),
    supplier: Optional[str] = Query(default=None),
    category: Optional[str] = Query(default=None),
    product_group: Optional[str] = Query(default=None),
    product: Optional[str] = Query(default=None),
    channel: Optional[str] = Query(default=None),
    transaction_kind: Optional[str] = Query(default=None),
) -> ReportFilters:
    try:
        return resolve_filters(
            {
                "start_date": start_date,
                "end_date": end_date,
                "period": period,
                "year": year,
                "month": month,
                "sales_rep": sales_rep,
                "customer": customer,
                "supplier": supplier,
                "category": category,
                "product_group": product_group,
                "product": product,
                "channel": channel,
                "transaction_kind": transaction_kind,
            }
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _run_report(report: str, fn: Callable[..., Any], filters: ReportFilters, *args: Any, **kwargs: Any) -> Any:
    try:
        return fn(get_fact_source(), filters, *args, **kwargs)
    except FactSourceError as exc:
        logger.error("report %s failed filters=%s: %s", report, filters.describe(), exc)
        raise HTTPException(status_code=500, detail="report-failed") from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _safe_call(key: str, errors: dict, fn: Callable[..., Any], *args: Any, fallback: Any = None, **kwargs: Any) -> Any:
    try:
        return fn(*args, **kwargs)
    except FactSourceError as exc:
        logger.error("dashboard section %s failed: %s", key, exc)
        errors[key] = "report-failed"
        return fallback
    except ValueError as exc:
        errors[key] = str(exc)
        return fallback


def build_dashboard(source, filters: ReportFilters, prior_year: Optional[int] = None, current_year: Optional[int] = None) -> dict:
    errors: dict[str, str] = {}
    payload = {
        "filters": filters.describe(),
        "options": _safe_call("options", errors, reports.filter_options, source, filters, fallback={}),
        "kpis": _safe_call("kpis", errors, reports.rep_performance, source, filters, fallback=None),
        "trend": _safe_call("trend", errors, reports.trend, source, filters, fallback={"rows": []}),
        "profitability": {
            dim: _safe_call(f"profitability.{dim}", errors, reports.profitability, source, filters, dim, fallback={"rows": []})
            for dim in ("product", "sales-rep", "customer")
        },
        "abc": _safe_call("abc", errors, reports.abc_report, source, filters, fallback={"rows": []}),
        "churn": _safe_call(
            "churn", errors, reports.churn_report, source, filters, prior_year, current_year,
            fallback={"churned": [], "new": []},
        ),
        "order_risk": _safe_call("order_risk", errors, reports.order_risk_report, source, filters, fallback={"rows": []}),
    }
    payload["errors"] = errors
    return payload


@app.get("/dashboard")
def dashboard(
    filters: ReportFilters = Depends(report_filters),
    prior_year: Optional[int] = Query(default=None),
    current_year: Optional[int] = Query(default=None),
) -> dict:
    return build_dashboard(get_fact_source(), filters, prior_year, current_year)


@app.get("/api/health")
def health() -> dict:
    return {"ok": True, "ts": datetime.now().isoformat(timespec="seconds"), "backend": settings.DB_BACKEND}


@app.get("/api/filters/options")
def filters_options(
    keys: Optional[str] = Query(default=None),
    filters: ReportFilters = Depends(report_filters),
) -> dict:
    wanted = [k.strip() for k in keys.split(",") if k.strip()] if keys else list(reports.FILTER_OPTION_KEYS)
    return _run_report("filter-options", reports.filter_options, filters, wanted)


@app.get("/api/filters/{dimension}")
def filter_values(dimension: str, filters: ReportFilters = Depends(report_filters)) -> dict:
    return {"dimension": dimension, "values": _run_report("filter-values", reports.dimension_values, filters, dimension)}


@app.get("/api/reports/rep-performance")
def rep_performance(filters: ReportFilters = Depends(report_filters)) -> dict:
    return _run_report("rep-performance", reports.rep_performance, filters)


@app.get("/api/reports/profitability/{dimension}")
def profitability(dimension: str, filters: ReportFilters = Depends(report_filters)) -> dict:
    return _run_report(f"profitability/{dimension}", reports.profitability, filters, dimension)


@app.get("/api/reports/rep-comparison")
def rep_comparison(
    rep_a: Optional[str] = Query(default=None),
    rep_b: Optional[str] = Query(default=None),
    filters: ReportFilters = Depends(report_filters),
) -> dict:
    return _run_report("rep-comparison", reports.rep_comparison, filters, rep_a, rep_b)


@app.get("/api/reports/product-comparison")
def product_comparison(
    current_year: Optional[int] = Query(default=None),
    filters: ReportFilters = Depends(report_filters),
) -> dict:
    return _run_report("product-comparison", reports.product_year_comparison, filters, filters.product, current_year)


@app.get("/api/reports/monthly-trend")
def monthly_trend(filters: ReportFilters = Depends(report_filters)) -> dict:
    return _run_report("monthly-trend", reports.trend, filters)


@app.get("/api/reports/product-potential")
def product_potential(filters: ReportFilters = Depends(report_filters)) -> dict:
    return _run_report("product-potential", reports.product_potential, filters, filters.customer)


@app.get("/api/reports/customer-potential")
def customer_potential(filters: ReportFilters = Depends(report_filters)) -> dict:
    return _run_report("customer-potential", reports.customer_potential, filters, filters.product)


@app.get("/api/reports/abc")
def abc(filters: ReportFilters = Depends(report_filters)) -> dict:
    return _run_report("abc", reports.abc_report, filters)


@app.get("/api/reports/churn")
def churn(
    prior_year: Optional[int] = Query(default=None),
    current_year: Optional[int] = Query(default=None),
    filters: ReportFilters = Depends(report_filters),
) -> dict:
    return _run_report("churn", reports.churn_report, filters, prior_year, current_year)


@app.get("/api/reports/retention")
def retention(
    prior_year: Optional[int] = Query(default=None),
    current_year: Optional[int] = Query(default=None),
    filters: ReportFilters = Depends(report_filters),
) -> dict:
    return _run_report("retention", reports.retention_report, filters, prior_year, current_year)


@app.get("/api/reports/order-risk")
def order_risk(filters: ReportFilters = Depends(report_filters)) -> dict:
    return _run_report("order-risk", reports.order_risk_report, filters)


@app.get("/api/reports/price-elasticity")
def price_elasticity(filters: ReportFilters = Depends(report_filters)) -> dict:
    return _run_report("price-elasticity", reports.price_elasticity_report, filters, filters.product)


@app.get("/api/reports/category-matrix")
def category_matrix(filters: ReportFilters = Depends(report_filters)) -> dict:
    return _run_report("category-matrix", reports.category_matrix_report, filters)


@app.get("/api/reports/cannibalization")
def cannibalization(filters: ReportFilters = Depends(report_filters)) -> dict:
    return _run_report("cannibalization", reports.cannibalization_report, filters, filters.product)


@app.get("/api/reports/raw-data")
def raw_data(
    limit: int = Query(default=1000, ge=1, le=1000),
    filters: ReportFilters = Depends(report_filters),
) -> dict:
    return _run_report("raw-data", reports.raw_data, filters, limit)


def nlu_payload(intent: Optional[str], slots: Optional[dict]) -> dict:
    if not intent:
        raise HTTPException(status_code=400, detail="intent required")
    try:
        return run_intent(get_fact_source(), intent, slots or {})
    except IntentError as exc:
        raise HTTPException(status_code=400, detail={"ok": False, "error": exc.code, "message": str(exc)}) from exc
    except FactSourceError as exc:
        logger.error("nlu action %s failed slots=%s: %s", intent, slots, exc)
        raise HTTPException(status_code=500, detail={"ok": False, "error": "action-failed"}) from exc


@app.post("/api/nlu/action")
def nlu_action(intent: Optional[str] = Body(default=None), slots: Optional[dict] = Body(default=None)) -> dict:
    return nlu_payload(intent, slots)


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run("api_server:app", host="127.0.0.1", port=8000, reload=True)
