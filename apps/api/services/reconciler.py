"""Subscription reconciliation: external subscription -> account billing fields."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from services.accounts import billing_fields, lock_account
from services.billing_errors import (
    InvalidSubscriptionStructureError,
    StorageUnavailableError,
    UnknownPriceError,
)
from services.billing_types import (
    BillingFields,
    NotFound,
    ReconciliationOutcome,
    ReconciliationResult,
    SubscriptionSnapshot,
    SubscriptionStatus,
    is_paid_plan,
)
from services.price_catalog import PriceCatalog


logger = logging.getLogger(__name__)


def extract_price_id(snapshot: SubscriptionSnapshot, *, account_id: str) -> str:
    """Price id of the first line item, or InvalidSubscriptionStructureError."""
    line_items = snapshot.line_items or ()
    if not line_items:
        raise InvalidSubscriptionStructureError(
            "Subscription has no line items.",
            account_id=account_id,
            subscription_id=snapshot.subscription_id,
        )
    price_id = line_items[0].price_id
    if not isinstance(price_id, str) or not price_id.strip():
        raise InvalidSubscriptionStructureError(
            "Subscription line item has no price id.",
            account_id=account_id,
            subscription_id=snapshot.subscription_id,
        )
    return price_id.strip()


def _validated_status(snapshot: SubscriptionSnapshot, *, account_id: str) -> str:
    try:
        return SubscriptionStatus(snapshot.status).value
    except ValueError as exc:
        raise InvalidSubscriptionStructureError(
            f"Unrecognized subscription status: {snapshot.status!r}",
            account_id=account_id,
            subscription_id=snapshot.subscription_id,
        ) from exc


async def reconcile_subscription(
    db: AsyncSession,
    account_id: str,
    snapshot: SubscriptionSnapshot,
    catalog: PriceCatalog,
) -> ReconciliationResult:
    """Bring the account's billing fields in line with an external subscription.

    Structure and price are validated before the account is touched, so
    terminal errors leave it unchanged. A repeat call with the same snapshot
    returns `already_in_sync` without writing. `has_had_paid_plan` is only
    ever raised, never cleared.
    """
    try:
        price_id = extract_price_id(snapshot, account_id=account_id)
        status = _validated_status(snapshot, account_id=account_id)
        if not (snapshot.subscription_id or "").strip():
            raise InvalidSubscriptionStructureError("Subscription has no id.", account_id=account_id)
    except InvalidSubscriptionStructureError as exc:
        logger.error("Invalid subscription structure for account %s: %s (%s)", account_id, exc, exc.context)
        raise

    resolution = catalog.resolve(price_id)
    if isinstance(resolution, NotFound):
        logger.error(
            "Unknown price %s on subscription %s for account %s; account left unchanged",
            price_id,
            snapshot.subscription_id,
            account_id,
        )
        raise UnknownPriceError(
            price_id,
            account_id=account_id,
            subscription_id=snapshot.subscription_id,
        )

    try:
        account = await lock_account(db, account_id)
        before = billing_fields(account)
        after = BillingFields(
            plan=resolution.plan.value,
            billing_period=resolution.billing_period.value,
            subscription_status=status,
            external_customer_id=snapshot.customer_id or before.external_customer_id,
            external_subscription_id=snapshot.subscription_id,
            has_had_paid_plan=before.has_had_paid_plan or is_paid_plan(resolution.plan),
        )

        if after == before:
            await db.commit()
            return ReconciliationResult(
                account_id=account_id,
                outcome=ReconciliationOutcome.ALREADY_IN_SYNC,
                before=before,
                after=before,
            )

        account.plan = after.plan
        account.billing_period = after.billing_period
        account.subscription_status = after.subscription_status
        account.external_customer_id = after.external_customer_id
        account.external_subscription_id = after.external_subscription_id
        account.has_had_paid_plan = after.has_had_paid_plan
        account.updated_at = datetime.now(timezone.utc)
        await db.commit()
    except DBAPIError as exc:
        await db.rollback()
        raise StorageUnavailableError(
            "Account storage unavailable.", original=exc, account_id=account_id
        ) from exc
    except Exception:
        await db.rollback()
        raise

    result = ReconciliationResult(
        account_id=account_id,
        outcome=ReconciliationOutcome.UPDATED,
        before=before,
        after=after,
    )
    logger.info(
        "reconcile account=%s subscription=%s changed=%s before=%s after=%s",
        account_id,
        snapshot.subscription_id,
        result.changed_fields,
        before.as_dict(),
        after.as_dict(),
    )
    return result
