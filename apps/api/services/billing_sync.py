"""Reconciliation entry point: the single path from live billing data to stored state."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.account import Account
from services.accounts import find_account_id, get_account
from services.billing_errors import (
    AccountNotFoundError,
    BillingError,
    ExternalPlatformUnavailableError,
    ExternalSubscriptionNotFoundError,
)
from services.billing_types import (
    BillingEvent,
    CreditType,
    ReconciliationOutcome,
    SyncOutcome,
    SyncResult,
    TransactionType,
    is_paid_plan,
)
from services.credits import apply_credit_event, claw_back_purchase, replenish_included_credits
from services.payment_platform import PaymentPlatformClient, get_payment_platform_client
from services.price_catalog import PriceCatalog, get_price_catalog
from services.reconciler import reconcile_subscription


logger = logging.getLogger(__name__)

SUBSCRIPTION_EVENTS = (
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
    "customer.subscription.trial_will_end",
    "customer.subscription.paused",
    "customer.subscription.resumed",
)
CYCLE_BILLING_REASONS = ("subscription_create", "subscription_cycle")
HANDLED_EVENTS = (
    "checkout.session.completed",
    *SUBSCRIPTION_EVENTS,
    "invoice.payment_succeeded",
    "invoice.payment_failed",
    "charge.refunded",
)


async def _fetch_subscription(client: PaymentPlatformClient, subscription_id: str):
    # Outer bound in case a client implementation ignores its own timeout.
    deadline = float(settings.STRIPE_TIMEOUT_SECONDS) + 5.0
    try:
        return await asyncio.wait_for(client.get_subscription(subscription_id), timeout=deadline)
    except asyncio.TimeoutError as exc:
        raise ExternalPlatformUnavailableError(
            "Payment platform timed out.", subscription_id=subscription_id
        ) from exc


async def sync_account(
    account_id: str,
    *,
    subscription_id: Optional[str] = None,
    client: Optional[PaymentPlatformClient] = None,
    catalog: Optional[PriceCatalog] = None,
    session_maker: Optional[async_sessionmaker] = None,
) -> SyncResult:
    """Pull the external subscription and reconcile the account against it.

    `subscription_id` overrides the stored reference (new checkout). The
    network call happens outside any database transaction; only the
    reconcile step holds the account lock.
    """
    session_maker = session_maker or async_session_maker
    catalog = catalog or get_price_catalog()

    async with session_maker() as db:
        account = await get_account(db, account_id)
        target_subscription = subscription_id or account.external_subscription_id
        deleted_at = account.deleted_at

    if deleted_at is not None:
        logger.warning("sync_account account=%s skipped: account deleted at %s", account_id, deleted_at)
        return SyncResult(account_id=account_id, outcome=SyncOutcome.NOTHING_TO_SYNC)

    if not target_subscription:
        logger.info("sync_account account=%s nothing to sync", account_id)
        return SyncResult(account_id=account_id, outcome=SyncOutcome.NOTHING_TO_SYNC)

    client = client or get_payment_platform_client()
    snapshot = await _fetch_subscription(client, target_subscription)

    async with session_maker() as db:
        result = await reconcile_subscription(db, account_id, snapshot, catalog)

    outcome = (
        SyncOutcome.UPDATED
        if result.outcome == ReconciliationOutcome.UPDATED
        else SyncOutcome.ALREADY_IN_SYNC
    )
    return SyncResult(account_id=account_id, outcome=outcome, reconciliation=result)


async def sync_all_accounts(
    *,
    client: Optional[PaymentPlatformClient] = None,
    catalog: Optional[PriceCatalog] = None,
    session_maker: Optional[async_sessionmaker] = None,
) -> Dict[str, int]:
    """Scheduled drift sweep over every live account with a subscription."""
    session_maker = session_maker or async_session_maker
    async with session_maker() as db:
        result = await db.execute(
            select(Account.id).where(
                Account.external_subscription_id.is_not(None),
                Account.deleted_at.is_(None),
            )
        )
        account_ids: List[str] = [row[0] for row in result.all()]

    counts = {"updated": 0, "already_in_sync": 0, "nothing_to_sync": 0, "failed": 0}
    for account_id in account_ids:
        try:
            sync = await sync_account(account_id, client=client, catalog=catalog, session_maker=session_maker)
        except BillingError as exc:
            counts["failed"] += 1
            logger.error("Scheduled sync failed for account %s: %s (%s)", account_id, exc, exc.context)
            continue
        counts[sync.outcome.value] += 1
    return counts


async def _metadata_account_id(event: BillingEvent, client: Optional[PaymentPlatformClient]) -> Optional[str]:
    """Account id stamped on the subscription's metadata at checkout, if any."""
    if not event.subscription_id:
        return None
    client = client or get_payment_platform_client()
    try:
        snapshot = await _fetch_subscription(client, event.subscription_id)
    except ExternalSubscriptionNotFoundError:
        return None
    return snapshot.metadata.get("account_id") or None


async def _resolve_event_account(
    event: BillingEvent,
    client: Optional[PaymentPlatformClient],
    session_maker: async_sessionmaker,
) -> str:
    if event.account_id:
        return event.account_id
    async with session_maker() as db:
        account_id = await find_account_id(
            db,
            subscription_id=event.subscription_id,
            customer_id=event.customer_id,
        )
    if not account_id:
        metadata_account_id = await _metadata_account_id(event, client)
        if metadata_account_id:
            async with session_maker() as db:
                account_id = await find_account_id(db, metadata_account_id=metadata_account_id)
            if account_id:
                logger.info(
                    "Billing event %s matched account %s through subscription metadata",
                    event.idempotency_hint,
                    account_id,
                )
    if not account_id:
        logger.error(
            "No account matches billing event %s (%s): subscription=%s customer=%s",
            event.idempotency_hint,
            event.event_type,
            event.subscription_id,
            event.customer_id,
        )
        raise AccountNotFoundError(event.subscription_id or event.customer_id or "unknown")
    return account_id


async def handle_billing_event(
    event: BillingEvent,
    *,
    client: Optional[PaymentPlatformClient] = None,
    catalog: Optional[PriceCatalog] = None,
    session_maker: Optional[async_sessionmaker] = None,
) -> Dict[str, Any]:
    """Route a verified external billing event to reconciliation and/or the ledger.

    Safe to redeliver: reconciliation converges and every ledger write is
    keyed by an id taken from the event. Events for soft-deleted accounts are
    logged and skipped.
    """
    session_maker = session_maker or async_session_maker
    summary: Dict[str, Any] = {"event_type": event.event_type, "actions": []}
    logger.info("billing_event %s type=%s", event.idempotency_hint, event.event_type)

    if event.event_type not in HANDLED_EVENTS:
        logger.debug("No handler for billing event type %s", event.event_type)
        return summary
    if event.event_type == "charge.refunded" and (not event.credits or not event.charge_id):
        logger.info("Refund %s is not for a credit pack; ignoring", event.charge_id)
        return summary

    account_id = await _resolve_event_account(event, client, session_maker)
    summary["account_id"] = account_id
    async with session_maker() as db:
        account = await get_account(db, account_id)
        deleted_at = account.deleted_at
    if deleted_at is not None:
        logger.warning(
            "Skipping billing event %s (%s) for account %s deleted at %s",
            event.idempotency_hint,
            event.event_type,
            account_id,
            deleted_at,
        )
        summary["skipped"] = "account_deleted"
        return summary

    if event.event_type == "checkout.session.completed":
        if event.credits:
            session_key = event.checkout_session_id or event.idempotency_hint
            async with session_maker() as db:
                entry = await apply_credit_event(
                    db,
                    account_id,
                    amount=int(event.credits),
                    credit_type=CreditType.PURCHASED,
                    transaction_type=TransactionType.PURCHASE,
                    idempotency_key=f"checkout:{session_key}",
                    description=f"Credit pack purchase: {int(event.credits)} credits",
                    actor="payment_platform",
                    billing_reference=event.checkout_session_id,
                )
            summary["actions"].append({"ledger": entry.transaction_type, "replayed": entry.replayed})
        elif event.subscription_id:
            sync = await sync_account(
                account_id,
                subscription_id=event.subscription_id,
                client=client,
                catalog=catalog,
                session_maker=session_maker,
            )
            summary["actions"].append({"sync": sync.outcome.value})
        else:
            logger.warning("Checkout %s carried neither credits nor a subscription", event.checkout_session_id)
        return summary

    if event.event_type in SUBSCRIPTION_EVENTS:
        sync = await sync_account(
            account_id,
            subscription_id=event.subscription_id,
            client=client,
            catalog=catalog,
            session_maker=session_maker,
        )
        summary["actions"].append({"sync": sync.outcome.value})
        return summary

    if event.event_type == "invoice.payment_succeeded":
        invoice_key = event.invoice_id or event.idempotency_hint
        if event.credits:
            # Auto top-up credit subscription: its price is not a plan price.
            async with session_maker() as db:
                entry = await apply_credit_event(
                    db,
                    account_id,
                    amount=int(event.credits),
                    credit_type=CreditType.PURCHASED,
                    transaction_type=TransactionType.RENEWAL,
                    idempotency_key=f"invoice:{invoice_key}",
                    description=f"Credit subscription renewal: {int(event.credits)} credits",
                    actor="payment_platform",
                    billing_reference=event.invoice_id,
                )
            summary["actions"].append({"ledger": entry.transaction_type, "replayed": entry.replayed})
            return summary

        sync = await sync_account(
            account_id,
            subscription_id=event.subscription_id,
            client=client,
            catalog=catalog,
            session_maker=session_maker,
        )
        summary["actions"].append({"sync": sync.outcome.value})
        if event.billing_reason in CYCLE_BILLING_REASONS:
            async with session_maker() as db:
                account = await get_account(db, account_id)
                paid = is_paid_plan(account.plan)
            if paid:
                async with session_maker() as db:
                    entry = await replenish_included_credits(
                        db,
                        account_id,
                        idempotency_key=f"renewal:{invoice_key}",
                        actor="payment_platform",
                        billing_reference=event.invoice_id,
                    )
                summary["actions"].append({"ledger": entry.transaction_type, "replayed": entry.replayed})
        return summary

    if event.event_type == "invoice.payment_failed":
        if event.subscription_id and not event.credits:
            sync = await sync_account(
                account_id,
                subscription_id=event.subscription_id,
                client=client,
                catalog=catalog,
                session_maker=session_maker,
            )
            summary["actions"].append({"sync": sync.outcome.value})
        return summary

    # charge.refunded
    async with session_maker() as db:
        entry = await claw_back_purchase(
            db,
            account_id,
            credits=int(event.credits),
            charge_id=event.charge_id,
            actor="payment_platform",
        )
    summary["actions"].append({"ledger": entry.transaction_type, "replayed": entry.replayed})
    return summary


def run_sync_account_job(account_id: str, subscription_id: Optional[str] = None) -> Dict[str, Any]:
    """RQ worker entrypoint for account sync jobs.

    Retryable failures propagate so RQ's retry policy applies; terminal ones
    are logged for operator follow-up and end the job.
    """
    try:
        result = asyncio.run(sync_account(account_id, subscription_id=subscription_id))
    except BillingError as exc:
        if exc.retryable:
            raise
        logger.error("Sync job for account %s ended with terminal error: %s (%s)", account_id, exc, exc.context)
        return {"account_id": account_id, "outcome": "failed", "error": type(exc).__name__}
    return {"account_id": account_id, "outcome": result.outcome.value}
