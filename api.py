# MiastoAlert API v1.0.0
# FastAPI. City-scoped transient reports, confirmations, moderation. Clients poll.

import json
import os
import time
from collections import defaultdict, deque
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, Field
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

import identity
import lifecycle
import moderation
from db import storage_healthcheck
from errors import MiastoAlertError, StoreFailure
from identity import Caller
from lifecycle import log

app = FastAPI(title="MiastoAlert", version="1.0.0")

MIASTOALERT_ENV = os.environ.get("MIASTOALERT_ENV", "dev").lower()
CORS_ORIGIN = os.environ.get("MIASTOALERT_CORS_ORIGIN", "http://localhost:5173")

# Report creation throttle, per caller, rolling window
REPORT_RATE_LIMIT = int(os.environ.get("MIASTOALERT_REPORT_RATE_LIMIT", "10"))
REPORT_RATE_WINDOW_SEC = int(os.environ.get("MIASTOALERT_REPORT_RATE_WINDOW_SEC", "60"))
_RATE_BUCKETS = defaultdict(deque)

SWEEP_ENABLED = os.environ.get("MIASTOALERT_SWEEP_ENABLED", "true").lower() in ("1", "true", "yes")


def _bearer_token(authorization: str | None) -> str | None:
    if authorization and authorization.startswith("Bearer "):
        return authorization[7:].strip() or None
    return None


def _prune_rate_buckets(now: float):
    """Drop timestamps outside the window and buckets left empty."""
    cutoff = now - REPORT_RATE_WINDOW_SEC
    for key in list(_RATE_BUCKETS):
        bucket = _RATE_BUCKETS[key]
        while bucket and bucket[0] <= cutoff:
            bucket.popleft()
        if not bucket:
            del _RATE_BUCKETS[key]


def _error_response(status_code: int, code: str, message: str, **extra) -> JSONResponse:
    error = {"code": code, "message": message}
    error.update(extra)
    return JSONResponse(status_code=status_code, content={"ok": False, "error": error})


# ── Middleware ────────────────────────────────────────────────────────


class RequestLogMiddleware(BaseHTTPMiddleware):
    """Emit structured access logs for observability."""

    async def dispatch(self, request: Request, call_next):
        started = time.time()
        response = await call_next(request)
        duration_ms = round((time.time() - started) * 1000, 2)
        entry = {
            "event": "api_request",
            "path": request.url.path,
            "method": request.method,
            "status": response.status_code,
            "duration_ms": duration_ms,
            "client_ip": request.client.host if request.client else "unknown",
        }
        log.info(json.dumps(entry, sort_keys=True))
        return response


class ReportRateLimitMiddleware(BaseHTTPMiddleware):
    """Cap report submissions per caller (user id, else client IP) per rolling window."""

    async def dispatch(self, request: Request, call_next):
        if request.method != "POST" or request.url.path != "/api/reports":
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        token = _bearer_token(request.headers.get("Authorization"))
        caller = None
        if token:
            try:
                caller = await run_in_threadpool(identity.resolve_caller, token)
            except MiastoAlertError as e:
                # The endpoint re-resolves and reports the failure
                log.warning("RATE LIMIT caller lookup failed: %s", e)
        key = f"user:{caller.id}" if caller else f"ip:{client_ip}"

        now = time.time()
        _prune_rate_buckets(now)
        bucket = _RATE_BUCKETS[key]
        if len(bucket) >= REPORT_RATE_LIMIT:
            return _error_response(
                429, "rate_limited", "Too many reports, try again in a moment."
            )

        bucket.append(now)
        return await call_next(request)


app.add_middleware(ReportRateLimitMiddleware)
app.add_middleware(RequestLogMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in CORS_ORIGIN.split(",") if o.strip()],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Exception handlers ────────────────────────────────────────────────


@app.exception_handler(MiastoAlertError)
async def engine_error_handler(request: Request, exc: MiastoAlertError):
    if isinstance(exc, StoreFailure):
        log.error("STORE FAILURE path=%s err=%s", request.url.path, exc.message)
        return _error_response(exc.status_code, exc.code, "Server error")
    return _error_response(exc.status_code, exc.code, exc.message)


@app.exception_handler(HTTPException)
async def http_exception_handler(_: Request, exc: HTTPException):
    return _error_response(exc.status_code, "http_error", str(exc.detail))


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(_: Request, exc: RequestValidationError):
    return _error_response(
        422, "validation_error", "Request validation failed", details=exc.errors(),
    )


# ── Dependencies ──────────────────────────────────────────────────────


def optional_caller(authorization: str | None = Header(default=None)) -> Caller | None:
    return identity.resolve_caller(_bearer_token(authorization))


def current_caller(authorization: str | None = Header(default=None)) -> Caller:
    return identity.require_caller(_bearer_token(authorization))


# ── Request models ────────────────────────────────────────────────────


class AnonymousIn(BaseModel):
    city: str = Field(min_length=1, max_length=identity.MAX_CITY_LENGTH)


class LoginIn(BaseModel):
    email: str = Field(min_length=1, max_length=254)
    password: str = Field(min_length=1, max_length=256)


class CityIn(BaseModel):
    city: str = Field(min_length=1, max_length=identity.MAX_CITY_LENGTH)


class ReportIn(BaseModel):
    # Checked by lifecycle.validate_report_input
    type: str | None = None
    location: str | None = Field(default=None, validation_alias=AliasChoices("location", "street"))
    bus_number: str | None = Field(default=None, validation_alias=AliasChoices("bus_number", "busNumber"))
    direction: str | None = None
    lat: Any = None
    lng: Any = None


class RoleIn(BaseModel):
    role: str


class BanIn(BaseModel):
    banned: bool


# ── Auth endpoints ────────────────────────────────────────────────────


def _public_user(user: dict) -> dict:
    return {k: user.get(k) for k in ("id", "role", "city", "rating", "banned")}


@app.post("/api/auth/anonymous")
def api_auth_anonymous(body: AnonymousIn):
    """Create an anonymous user bound to the chosen city."""
    token, user = identity.register_anonymous(body.city)
    return {"ok": True, "token": token, "user": _public_user(user)}


@app.post("/api/auth/login")
def api_auth_login(body: LoginIn):
    """Owner login with email and password."""
    token, user = identity.login(body.email, body.password)
    return {"ok": True, "token": token, "user": _public_user(user)}


@app.get("/api/auth/me")
def api_auth_me(caller: Caller = Depends(current_caller)):
    user = identity.UserStore.get_user(caller.id)
    if user is None:
        raise HTTPException(status_code=404, detail="User does not exist.")
    return {"ok": True, "user": _public_user(user)}


@app.post("/api/auth/city")
def api_auth_city(body: CityIn, caller: Caller = Depends(current_caller)):
    """Pick a city again after a moderator reset."""
    user = identity.select_city(caller, body.city)
    return {"ok": True, "user": _public_user(user)}


# ── Report endpoints ──────────────────────────────────────────────────


@app.post("/api/reports", status_code=201)
def api_create_report(body: ReportIn, caller: Caller = Depends(current_caller)):
    report = lifecycle.create_report(caller, body.model_dump())
    return {"ok": True, "report": report.to_dict()}


@app.get("/api/reports")
def api_list_reports(
    city: str | None = None,
    sinceMinutes: str | None = None,
    caller: Caller | None = Depends(optional_caller),
):
    """Active reports for a city. The window is 30 or 60 minutes."""
    target_city = city or (caller.city if caller and caller.has_city else None)
    if not target_city:
        raise HTTPException(status_code=400, detail="City is required.")
    window = lifecycle.clamp_window(sinceMinutes)
    reports = lifecycle.list_reports(target_city, window)
    return {
        "ok": True,
        "city": target_city,
        "since_minutes": window,
        "reports": [r.to_dict() for r in reports],
    }


@app.post("/api/reports/{report_id}/confirm")
def api_confirm_report(report_id: str, caller: Caller = Depends(current_caller)):
    lifecycle.confirm_report(caller, report_id)
    return {"ok": True, "message": "Report confirmed."}


# ── Admin endpoints ───────────────────────────────────────────────────


@app.get("/api/admin/overview")
def api_admin_overview(caller: Caller = Depends(current_caller)):
    return {"ok": True, **moderation.overview(caller)}


@app.post("/api/admin/users/{user_id}/role")
def api_admin_set_role(user_id: str, body: RoleIn, caller: Caller = Depends(current_caller)):
    user = moderation.set_role(caller, user_id, body.role)
    return {"ok": True, "user": _public_user(user)}


@app.post("/api/admin/users/{user_id}/ban")
def api_admin_set_banned(user_id: str, body: BanIn, caller: Caller = Depends(current_caller)):
    user = moderation.set_banned(caller, user_id, body.banned)
    return {"ok": True, "user": _public_user(user)}


@app.post("/api/admin/users/{user_id}/reset-city")
def api_admin_reset_city(user_id: str, caller: Caller = Depends(current_caller)):
    user = moderation.reset_city(caller, user_id)
    return {"ok": True, "user": _public_user(user)}


@app.delete("/api/admin/reports/{report_id}")
def api_admin_delete_report(report_id: str, caller: Caller = Depends(current_caller)):
    result = moderation.delete_report(caller, report_id)
    return {"ok": True, **result}


# ── Lifecycle ─────────────────────────────────────────────────────────


@app.on_event("startup")
def on_startup():
    identity.bootstrap_owner()
    if SWEEP_ENABLED:
        lifecycle.start_sweep_monitor()
    log.info("API STARTED env=%s", MIASTOALERT_ENV)


# ── Health ────────────────────────────────────────────────────────────


@app.get("/healthz")
def healthz():
    return {"ok": True, "status": "healthy", "env": MIASTOALERT_ENV}


@app.get("/readyz")
def readyz():
    storage = storage_healthcheck()
    if not storage.get("ok"):
        raise HTTPException(
            status_code=503, detail=f"Storage not ready: {storage.get('error', 'unknown')}"
        )
    return {"ok": True, "status": "ready", "storage": storage}


@app.get("/")
def root():
    return {"name": "MiastoAlert", "status": "running"}


if __name__ == "__main__":
    import uvicorn

    log.info("API STARTING on port 5000")
    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "5000")))
