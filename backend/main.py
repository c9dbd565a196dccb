from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Any, Callable, Optional

import jwt
from fastapi import Body, Depends, FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))
BACKEND_ENV = Path(__file__).resolve().parent / ".env"

import settings  # noqa: E402


def load_backend_env(path: Path = BACKEND_ENV) -> None:
    # Values already in the process environment or the root .env are kept.
    settings.load_local_env(path)
    settings.configure()


# Before the project imports below so they see the backend's settings.
load_backend_env()

import reports  # noqa: E402
from api_server import build_dashboard, lifespan, nlu_payload, report_filters  # noqa: E402
from fact_source import FactSourceError, get_fact_source  # noqa: E402
from report_filters import ReportFilters  # noqa: E402

logger = logging.getLogger("salesdash.backend")

JWKS_CACHE_SECONDS = int(os.getenv("JWKS_CACHE_SECONDS", "3600"))
# Claim lookups tried in order; first non-empty value wins.
ROLE_CLAIM_PATHS = (
    ("public_metadata", "role"),
    ("public_metadata", "Role"),
    ("role",),
    ("org_role",),
)


def _parse_cors_origins(raw: str) -> list[str]:
    value = (raw or "*").strip()
    if value == "*":
        return ["*"]
    return [v.strip() for v in value.split(",") if v.strip()]


app = FastAPI(title="Sales Detail Reports Backend", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=_parse_cors_origins(os.getenv("BACKEND_CORS_ORIGINS", "*")),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
bearer_scheme = HTTPBearer(auto_error=True)
_jwk_clients: dict[str, jwt.PyJWKClient] = {}


def _signing_key(issuer: str, token: str) -> Any:
    client = _jwk_clients.get(issuer)
    if client is None:
        client = jwt.PyJWKClient(
            f"{issuer.rstrip('/')}/.well-known/jwks.json",
            cache_jwk_set=True,
            lifespan=JWKS_CACHE_SECONDS,
            timeout=10,
        )
        _jwk_clients[issuer] = client
    return client.get_signing_key_from_jwt(token).key


def _claim(claims: dict[str, Any], path: tuple[str, ...]) -> Any:
    value: Any = claims
    for part in path:
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _extract_role(claims: dict[str, Any]) -> str:
    role = next((r for r in (_claim(claims, p) for p in ROLE_CLAIM_PATHS) if r), None)
    # Organization roles arrive as "org:admin".
    norm = str(role or "viewer").strip().lower().split(":")[-1]
    return "admin" if norm == "admin" else "viewer"


def verify_clerk_token(credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme)) -> dict[str, Any]:
    issuer = os.getenv("CLERK_ISSUER", "").strip()
    audience = os.getenv("CLERK_AUDIENCE", "").strip()
    if not issuer:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="CLERK_ISSUER is not configured")
    token = credentials.credentials
    try:
        claims = jwt.decode(
            token,
            key=_signing_key(issuer, token),
            algorithms=["RS256"],
            issuer=issuer,
            audience=audience or None,
            options={"verify_aud": bool(audience)},
        )
    except jwt.PyJWTError as exc:
        logger.info("rejected bearer token: %s", exc)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"Unauthorized: {exc}") from exc
    return {"user_id": claims.get("sub"), "role": _extract_role(claims), "claims": claims}


def require_role(role: str) -> Callable[..., dict[str, Any]]:
    def check(auth: dict[str, Any] = Depends(verify_clerk_token)) -> dict[str, Any]:
        if auth.get("role") != role:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"{role} role required")
        return auth

    return check


@app.get("/health")
def health() -> dict[str, bool]:
    return {"ok": True}


@app.get("/dashboard")
def dashboard(
    filters: ReportFilters = Depends(report_filters),
    prior_year: Optional[int] = Query(default=None),
    current_year: Optional[int] = Query(default=None),
    auth: dict[str, Any] = Depends(verify_clerk_token),
) -> dict[str, Any]:
    payload = build_dashboard(get_fact_source(), filters, prior_year, current_year)
    payload["auth"] = {"user_id": auth.get("user_id"), "role": auth.get("role", "viewer")}
    return payload


@app.get("/raw-data")
def raw_data(
    filters: ReportFilters = Depends(report_filters),
    limit: int = Query(default=1000, ge=1, le=1000),
    auth: dict[str, Any] = Depends(require_role("admin")),
) -> dict[str, Any]:
    try:
        return reports.raw_data(get_fact_source(), filters, limit)
    except FactSourceError as exc:
        logger.error("raw data preview failed for %s: %s", auth.get("user_id"), exc)
        raise HTTPException(status_code=500, detail="report-failed") from exc


@app.post("/nlu/action")
def nlu_action(
    intent: Optional[str] = Body(default=None),
    slots: Optional[dict[str, Any]] = Body(default=None),
    auth: dict[str, Any] = Depends(verify_clerk_token),
) -> dict[str, Any]:
    return nlu_payload(intent, slots)


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
    )
