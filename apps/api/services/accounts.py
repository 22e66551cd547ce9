"""Account lookups and the per-account write lock."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.account import Account
from services.billing_errors import AccountNotFoundError
from services.billing_types import BillingFields


logger = logging.getLogger(__name__)


async def lock_account(db: AsyncSession, account_id: str) -> Account:
    """Load an account with a row lock held until the transaction ends.

    Every read-modify-write of billing fields or credit balances for the
    account goes through this lock.
    """
    result = await db.execute(
        select(Account)
        .where(Account.id == account_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    account = result.scalar_one_or_none()
    if account is None:
        raise AccountNotFoundError(account_id)
    return account


async def get_account(db: AsyncSession, account_id: str) -> Account:
    result = await db.execute(
        select(Account).where(Account.id == account_id).execution_options(populate_existing=True)
    )
    account = result.scalar_one_or_none()
    if account is None:
        raise AccountNotFoundError(account_id)
    return account


async def find_account_id(
    db: AsyncSession,
    *,
    subscription_id: Optional[str] = None,
    customer_id: Optional[str] = None,
    metadata_account_id: Optional[str] = None,
) -> Optional[str]:
    """Match an external subscription or customer id to an account id.

    `metadata_account_id` is the account id stamped on the subscription at
    checkout; it only matches an account that exists.
    """
    if subscription_id:
        result = await db.execute(
            select(Account.id).where(Account.external_subscription_id == subscription_id).limit(1)
        )
        account_id = result.scalar_one_or_none()
        if account_id:
            return account_id
    if customer_id:
        result = await db.execute(
            select(Account.id).where(Account.external_customer_id == customer_id).limit(1)
        )
        account_id = result.scalar_one_or_none()
        if account_id:
            return account_id
    if metadata_account_id:
        result = await db.execute(select(Account.id).where(Account.id == metadata_account_id))
        account_id = result.scalar_one_or_none()
        if account_id:
            return account_id
    return None


def billing_fields(account: Account) -> BillingFields:
    return BillingFields(
        plan=account.plan or "no_plan",
        billing_period=account.billing_period or "none",
        subscription_status=account.subscription_status,
        external_customer_id=account.external_customer_id,
        external_subscription_id=account.external_subscription_id,
        has_had_paid_plan=bool(account.has_had_paid_plan),
    )


async def soft_delete_account(db: AsyncSession, account_id: str) -> Account:
    """Flag an account as deleted; billing history and ledger stay intact."""
    try:
        account = await lock_account(db, account_id)
        if account.deleted_at is None:
            account.deleted_at = datetime.now(timezone.utc)
            account.updated_at = account.deleted_at
            logger.info("Account %s soft-deleted", account_id)
        await db.commit()
        return account
    except Exception:
        await db.rollback()
        raise
