"""Billing, plan and credits router."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_account_scope, get_auth_context, require_admin
from routers.rate_limit import rate_limit
from services.accounts import get_account
from services.billing_errors import (
    AccountNotFoundError,
    BillingError,
    ExternalSubscriptionNotFoundError,
    IdempotencyConflictError,
    InsufficientCreditsError,
    InvalidCreditEventError,
    PaymentPlatformNotConfiguredError,
)
from services.billing_queue import enqueue_sync_job
from services.billing_sync import handle_billing_event, sync_account
from services.billing_types import BillingEvent, CreditType, TransactionType
from services.credits import (
    apply_credit_event,
    audit_balance,
    get_credit_summary,
    ledger_entry_payload,
    list_ledger_entries,
    rebuild_balance,
)
from services.plans import plan_limits

router = APIRouter()
logger = logging.getLogger(__name__)


class SyncRequest(BaseModel):
    account_id: Optional[str] = None
    background: bool = False


class CreditAdjustRequest(BaseModel):
    account_id: str
    amount: int = Field(ge=-1000000, le=1000000)
    credit_type: CreditType = CreditType.PURCHASED
    reason: str = Field(min_length=1, max_length=500)
    idempotency_key: str = Field(min_length=1, max_length=255)
    allow_overdraft: bool = False


class BillingEventRequest(BaseModel):
    event_type: str
    event_id: str = Field(min_length=1, max_length=255)
    account_id: Optional[str] = None
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    checkout_session_id: Optional[str] = None
    invoice_id: Optional[str] = None
    charge_id: Optional[str] = None
    credits: Optional[int] = Field(default=None, ge=1)
    billing_reason: Optional[str] = None


def _http_error(exc: BillingError) -> HTTPException:
    """Map a billing error onto a response; terminal failures keep their detail in logs."""
    if isinstance(exc, InsufficientCreditsError):
        return HTTPException(
            status_code=402,
            detail={"message": "Insufficient credits.", "required": exc.required, "available": exc.available},
        )
    if isinstance(exc, (AccountNotFoundError, ExternalSubscriptionNotFoundError)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, IdempotencyConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, InvalidCreditEventError):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, PaymentPlatformNotConfiguredError):
        logger.error("Payment platform is not configured: %s", exc)
        return HTTPException(status_code=503, detail="Billing is not configured.")
    if exc.retryable:
        return HTTPException(status_code=503, detail="Billing service temporarily unavailable. Try again shortly.")
    logger.error("Billing operation failed: %s (%s)", exc, exc.context)
    return HTTPException(
        status_code=422,
        detail="Billing data could not be reconciled. Support has been notified.",
    )


@router.get("/credits")
async def credits_summary(
    account_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_account_id = ensure_account_scope(auth, account_id)
    try:
        account = await get_account(db, scoped_account_id)
    except BillingError as exc:
        raise _http_error(exc) from exc
    return await get_credit_summary(db, account)


@router.get("/credits/ledger")
async def credits_ledger(
    account_id: Optional[str] = Query(default=None),
    limit: int = Query(default=20, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    transaction_type: Optional[TransactionType] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_account_id = ensure_account_scope(auth, account_id)
    try:
        await get_account(db, scoped_account_id)
    except BillingError as exc:
        raise _http_error(exc) from exc
    entries, total = await list_ledger_entries(
        db,
        scoped_account_id,
        limit=limit,
        offset=offset,
        transaction_type=transaction_type.value if transaction_type else None,
    )
    return {
        "account_id": scoped_account_id,
        "total_count": total,
        "limit": limit,
        "offset": offset,
        "entries": [ledger_entry_payload(entry) for entry in entries],
    }


@router.get("/plan")
async def plan_summary(
    account_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_account_id = ensure_account_scope(auth, account_id)
    try:
        account = await get_account(db, scoped_account_id)
    except BillingError as exc:
        raise _http_error(exc) from exc
    return {
        "account_id": account.id,
        "plan": account.plan,
        "billing_period": account.billing_period,
        "subscription_status": account.subscription_status,
        "has_had_paid_plan": bool(account.has_had_paid_plan),
        "is_free_account": bool(account.is_free_account),
        "limits": plan_limits(account.plan, account.billing_period).as_dict(),
    }


@router.post("/sync")
async def sync_subscription(
    request: SyncRequest,
    _rate_limit: None = Depends(rate_limit("billing_sync", limit=10, window_seconds=600)),
    auth: AuthContext = Depends(get_auth_context),
):
    scoped_account_id = ensure_account_scope(auth, request.account_id)
    if request.background:
        job = enqueue_sync_job(scoped_account_id)
        return {"account_id": scoped_account_id, "queued": True, "job_id": job.id}

    try:
        result = await sync_account(scoped_account_id)
    except BillingError as exc:
        raise _http_error(exc) from exc

    payload = {"account_id": scoped_account_id, "outcome": result.outcome.value}
    if result.reconciliation is not None:
        payload["changed_fields"] = list(result.reconciliation.changed_fields)
        payload["billing"] = result.reconciliation.after.as_dict()
    return payload


@router.post("/admin/credits/adjust")
async def admin_adjust_credits(
    request: CreditAdjustRequest,
    auth: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    try:
        entry = await apply_credit_event(
            db,
            request.account_id,
            amount=request.amount,
            credit_type=request.credit_type,
            transaction_type=TransactionType.MANUAL_ADJUST,
            idempotency_key=request.idempotency_key,
            description=request.reason,
            actor=f"admin:{auth.account_id}",
            allow_overdraft=request.allow_overdraft,
        )
    except BillingError as exc:
        raise _http_error(exc) from exc
    return {"ok": True, "replayed": entry.replayed, "entry": ledger_entry_payload(entry)}


@router.post("/admin/credits/{account_id}/rebuild")
async def admin_rebuild_balance(
    account_id: str,
    repair: bool = Query(default=False),
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    try:
        await get_account(db, account_id)
        derived = await rebuild_balance(db, account_id, repair=repair)
    except BillingError as exc:
        raise _http_error(exc) from exc
    return {"account_id": account_id, "repaired": repair, "ledger_balance": derived.as_dict()}


@router.get("/admin/credits/{account_id}/audit")
async def admin_audit_balance(
    account_id: str,
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    try:
        await get_account(db, account_id)
    except BillingError as exc:
        raise _http_error(exc) from exc
    audit = await audit_balance(db, account_id)
    return {
        "account_id": account_id,
        "in_sync": audit.in_sync,
        "cached": audit.cached.as_dict(),
        "ledger": audit.derived.as_dict(),
    }


@router.post("/admin/events")
async def admin_replay_event(
    request: BillingEventRequest,
    _admin: AuthContext = Depends(require_admin),
):
    """Replay a billing event an operator has already verified against the platform."""
    event = BillingEvent(
        event_type=request.event_type,
        idempotency_hint=request.event_id,
        account_id=request.account_id,
        subscription_id=request.subscription_id,
        customer_id=request.customer_id,
        checkout_session_id=request.checkout_session_id,
        invoice_id=request.invoice_id,
        charge_id=request.charge_id,
        credits=request.credits,
        billing_reason=request.billing_reason,
    )
    try:
        return await handle_billing_event(event)
    except BillingError as exc:
        raise _http_error(exc) from exc
