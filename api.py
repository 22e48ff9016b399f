# Nyaya API v1.0.0
# FastAPI. Pools, proposals, weighted votes, cases, audit trail, billing.
# Caller identity is the X-User-Id header; nothing more.

import json
import os
import time
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.middleware.base import BaseHTTPMiddleware

from audit import get_audit_log
from billing import get_billing_engine
from cases import get_case_tracker
from db import get_database
from errors import GovernanceError, NotFound, PermissionDenied, Unauthenticated
from ledger import get_vote_ledger
from pools import ADMIN_ROLES, UserRole, get_pool_directory
from proposals import get_proposal_lifecycle
from reputation import get_reputation_engine
from scheduler import log, run_sweep

NYAYA_ENV = os.environ.get("NYAYA_ENV", "dev").lower()
IDENTITY_HEADER = "x-user-id"

app = FastAPI(title="Nyaya Civic", version="1.0.0")


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
            "user_id": request.headers.get(IDENTITY_HEADER, ""),
        }
        log.info(json.dumps(entry, sort_keys=True))
        return response


app.add_middleware(RequestLogMiddleware)


@app.exception_handler(GovernanceError)
async def governance_error_handler(_: Request, exc: GovernanceError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "error": exc.to_dict()},
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(_: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "error": {"code": "http_error", "message": str(exc.detail)}},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(_: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "ok": False,
            "error": {
                "code": "validation_error",
                "message": "Request validation failed",
                "details": exc.errors(),
            },
        },
    )


# ── Identity helpers ──────────────────────────────────────────────────


def _caller_id(request: Request):
    return request.headers.get(IDENTITY_HEADER) or None


def _require_user(request: Request) -> dict:
    user_id = _caller_id(request)
    if not user_id:
        raise Unauthenticated("Missing X-User-Id header")
    try:
        return get_pool_directory().get_user(user_id)
    except NotFound:
        raise Unauthenticated(f"Unknown user {user_id}")


def _require_pool_admin(request: Request, pool_id: str | None) -> dict:
    """Superadmins anywhere; otherwise only the admin recorded on the pool."""
    user = _require_user(request)
    if user["role"] == UserRole.SUPERADMIN.value:
        return user
    if user["role"] in ADMIN_ROLES and pool_id:
        pool = get_pool_directory().get_pool(pool_id)
        if pool["admin_id"] == user["id"]:
            return user
    raise PermissionDenied("Forbidden: Insufficient permissions")


def _epoch(dt: datetime | None) -> float | None:
    """Naive datetimes are read as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def _require_superadmin(request: Request) -> dict:
    user = _require_user(request)
    if user["role"] != UserRole.SUPERADMIN.value:
        raise PermissionDenied("Forbidden: Insufficient permissions")
    return user


# ── Request models ────────────────────────────────────────────────────


class RegisterIn(BaseModel):
    email: str = Field(min_length=3, max_length=254)
    display_name: str = ""
    role: str = UserRole.MEMBER.value


class LoginIn(BaseModel):
    email: str


class MetricsIn(BaseModel):
    contribution_score: float | None = None
    voting_participation: float | None = None
    proposal_accuracy: float | None = None


class PoolIn(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    description: str = ""
    subscription_tier: str = "free"
    is_private: bool = False


class DepositIn(BaseModel):
    amount: float = Field(gt=0)


class ProposalIn(BaseModel):
    pool_id: str
    title: str = Field(min_length=1, max_length=200)
    description: str = ""
    expires_at: datetime | None = None


class VoteIn(BaseModel):
    # Left untyped; the ledger reports invalid_state before invalid_choice
    choice: Any = None


class StatusUpdate(BaseModel):
    status: str


class RecalculateIn(BaseModel):
    user_id: str


class CaseIn(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: str = ""
    estimated_cost: float = Field(default=0.0, ge=0)


class CostIn(BaseModel):
    amount: float = Field(gt=0)


class CaseCloseIn(BaseModel):
    outcome: str


class CheckoutIn(BaseModel):
    pool_id: str
    tier: str


# ── Auth simulation ───────────────────────────────────────────────────


@app.post("/api/auth/register")
def api_register(body: RegisterIn):
    """Create a user. Only superadmin creation is refused here."""
    if body.role == UserRole.SUPERADMIN.value:
        raise PermissionDenied("Superadmins cannot self-register")
    user = get_pool_directory().register_user(body.email, body.display_name, body.role)
    return {"ok": True, "user": user}


@app.post("/api/auth/login")
def api_login(body: LoginIn):
    return {"ok": True, "user": get_pool_directory().login(body.email)}


@app.get("/api/users/{user_id}")
def api_get_user(user_id: str):
    return {"ok": True, "user": get_pool_directory().get_user(user_id)}


@app.put("/api/users/{user_id}/metrics")
def api_update_metrics(user_id: str, body: MetricsIn, request: Request):
    """Set reputation inputs. Admin of the user's pool or superadmin."""
    target = get_pool_directory().get_user(user_id)
    _require_pool_admin(request, target["pool_id"])
    user = get_pool_directory().update_metrics(user_id, **body.model_dump())
    return {"ok": True, "user": user}


# ── Pools ─────────────────────────────────────────────────────────────


@app.get("/api/pools")
def api_list_pools():
    return {"pools": get_pool_directory().list_public_pools()}


@app.post("/api/pools")
def api_create_pool(body: PoolIn, request: Request):
    user = _require_user(request)
    pool = get_pool_directory().create_pool(
        body.name, body.description, body.subscription_tier, body.is_private, user["id"],
    )
    return {"ok": True, "pool": pool}


@app.get("/api/pools/{pool_id}")
def api_get_pool(pool_id: str):
    return {"ok": True, "pool": get_pool_directory().get_pool(pool_id)}


@app.post("/api/pools/{pool_id}/join")
def api_join_pool(pool_id: str, request: Request):
    user = _require_user(request)
    return {"ok": True, "user": get_pool_directory().join_pool(pool_id, user["id"])}


@app.post("/api/pools/{pool_id}/deposit")
def api_deposit(pool_id: str, body: DepositIn, request: Request):
    user = _require_user(request)
    pool = get_pool_directory().deposit(pool_id, user["id"], body.amount)
    return {"ok": True, "pool": pool}


@app.get("/api/pools/{pool_id}/features/{feature}")
def api_feature_access(pool_id: str, feature: str):
    allowed = get_billing_engine().check_feature_access(pool_id, feature)
    return {"ok": True, "feature": feature, "allowed": allowed}


# ── Proposals ─────────────────────────────────────────────────────────


@app.get("/api/pools/{pool_id}/proposals")
def api_list_proposals(pool_id: str, status: str | None = None):
    return {"proposals": get_proposal_lifecycle().list_proposals(pool_id, status=status)}


@app.post("/api/proposals")
def api_create_proposal(body: ProposalIn, request: Request):
    user = _require_user(request)
    proposal = get_proposal_lifecycle().create_proposal(
        body.pool_id, body.title, body.description, user["id"], _epoch(body.expires_at),
    )
    return {"ok": True, "proposal": proposal}


@app.get("/api/proposals/{proposal_id}")
def api_get_proposal(proposal_id: str):
    return {"ok": True, "proposal": get_proposal_lifecycle().get_proposal(proposal_id)}


@app.post("/api/proposals/{proposal_id}/vote")
def api_cast_vote(proposal_id: str, request: Request, body: VoteIn | None = None):
    choice = body.choice if body else None
    result = get_vote_ledger().cast_vote(proposal_id, _caller_id(request), choice)
    return {"ok": True, **result}


@app.get("/api/proposals/{proposal_id}/votes")
def api_list_votes(proposal_id: str):
    get_proposal_lifecycle().get_proposal(proposal_id)
    return {"votes": get_vote_ledger().list_votes(proposal_id)}


@app.patch("/api/proposals/{proposal_id}/status")
def api_update_proposal_status(proposal_id: str, body: StatusUpdate, request: Request):
    lifecycle = get_proposal_lifecycle()
    proposal = lifecycle.get_proposal(proposal_id)
    user = _require_pool_admin(request, proposal["pool_id"])
    updated = lifecycle.transition(proposal_id, body.status, user["id"])
    return {"ok": True, "proposal": updated}


@app.post("/api/proposals/sweep")
def api_sweep(request: Request):
    """Run the expiry sweep now instead of waiting for the next tick."""
    _require_superadmin(request)
    result = run_sweep()
    return {"ok": result.ok, "sweep": result.to_dict()}


# ── Reputation ────────────────────────────────────────────────────────


@app.post("/api/reputation/recalculate")
def api_recalculate_reputation(body: RecalculateIn, request: Request):
    caller = _require_user(request)
    if caller["id"] != body.user_id and caller["role"] not in ADMIN_ROLES:
        raise PermissionDenied("Forbidden: Insufficient permissions")
    return {"ok": True, **get_reputation_engine().recompute(body.user_id)}


# ── Audit ─────────────────────────────────────────────────────────────


@app.get("/api/audit-logs")
def api_audit_logs(
    pool_id: str | None = None,
    user_id: str | None = None,
    action: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    limit: int = 500,
):
    entries = get_audit_log().query(
        pool_id=pool_id,
        user_id=user_id,
        action=action,
        start=_epoch(start_date),
        end=_epoch(end_date),
        limit=max(1, min(limit, 5000)),
    )
    return {"logs": [e.to_dict() for e in entries]}


@app.get("/api/audit-logs/verify")
def api_verify_audit():
    return {"ok": True, "chain": get_audit_log().verify_chain()}


# ── Cases ─────────────────────────────────────────────────────────────


@app.get("/api/pools/{pool_id}/cases")
def api_list_cases(pool_id: str):
    return {"cases": get_case_tracker().list_cases(pool_id)}


@app.post("/api/pools/{pool_id}/cases")
def api_open_case(pool_id: str, body: CaseIn, request: Request):
    user = _require_pool_admin(request, pool_id)
    case = get_case_tracker().open_case(
        pool_id, body.title, body.description, body.estimated_cost, user["id"],
    )
    return {"ok": True, "case": case}


@app.post("/api/cases/{case_id}/advance")
def api_advance_case(case_id: str, request: Request):
    tracker = get_case_tracker()
    user = _require_pool_admin(request, tracker.get_case(case_id)["pool_id"])
    return {"ok": True, "case": tracker.advance_stage(case_id, user["id"])}


@app.post("/api/cases/{case_id}/cost")
def api_case_cost(case_id: str, body: CostIn, request: Request):
    tracker = get_case_tracker()
    user = _require_pool_admin(request, tracker.get_case(case_id)["pool_id"])
    return {"ok": True, "case": tracker.record_cost(case_id, body.amount, user["id"])}


@app.post("/api/cases/{case_id}/close")
def api_close_case(case_id: str, body: CaseCloseIn, request: Request):
    tracker = get_case_tracker()
    user = _require_pool_admin(request, tracker.get_case(case_id)["pool_id"])
    return {"ok": True, "case": tracker.close_case(case_id, body.outcome, user["id"])}


# ── Payments ──────────────────────────────────────────────────────────


@app.post("/api/payments/create-checkout")
def api_create_checkout(body: CheckoutIn, request: Request):
    _require_pool_admin(request, body.pool_id)
    get_pool_directory().get_pool(body.pool_id)
    return get_billing_engine().create_checkout(body.pool_id, body.tier)


@app.post("/api/payments/webhook")
async def api_payments_webhook(request: Request):
    event = await request.json()
    return get_billing_engine().handle_webhook(event)


# ── Health ────────────────────────────────────────────────────────────


@app.get("/healthz")
def healthz():
    return {"ok": True, "status": "healthy", "env": NYAYA_ENV}


@app.get("/readyz")
def readyz():
    storage = get_database().healthcheck()
    if not storage.get("ok"):
        raise HTTPException(
            status_code=503, detail=f"Storage not ready: {storage.get('error', 'unknown')}"
        )
    return {"ok": True, "status": "ready", "storage": storage}


@app.get("/")
def root():
    return {"name": "Nyaya Civic", "status": "running"}


if __name__ == "__main__":
    import uvicorn

    log.info("API STARTING on port 8000")
    uvicorn.run(app, host="0.0.0.0", port=8000)
