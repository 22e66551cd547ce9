"""Credit ledger and balance accounting.

Every balance change is one or more immutable `credit_ledger` rows plus an
update of the cached `credit_balances` row, committed together. Writes for
an account are serialized by locking its `accounts` row; the unique
constraint on `credit_ledger.idempotency_key` makes replays return the
previously recorded entry instead of applying twice.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
import uuid

from sqlalchemy import func
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from models.account import Account
from models.credit_balance import CreditBalance
from models.credit_ledger import CreditLedger
from services.accounts import lock_account
from services.billing_errors import (
    IdempotencyConflictError,
    InsufficientCreditsError,
    InvalidCreditEventError,
    StorageUnavailableError,
)
from services.billing_types import (
    BalanceAudit,
    CreditBalanceView,
    CreditType,
    LedgerResult,
    TransactionType,
    UsageDebitResult,
)
from services.plans import included_credit_allotment, plan_limits


logger = logging.getLogger(__name__)

_POSITIVE_ONLY = {TransactionType.PURCHASE, TransactionType.RENEWAL, TransactionType.USAGE_REFUND}
_NEGATIVE_ONLY = {TransactionType.USAGE, TransactionType.REFUND}

LedgerWriter = Callable[[Account, CreditBalance], List[CreditLedger]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_result(entry: CreditLedger, replayed: bool = False) -> LedgerResult:
    return LedgerResult(
        entry_id=entry.id,
        account_id=entry.account_id,
        amount=int(entry.amount),
        balance_after=int(entry.balance_after),
        credit_type=entry.credit_type,
        transaction_type=entry.transaction_type,
        idempotency_key=entry.idempotency_key,
        description=entry.description,
        created_by=entry.created_by,
        created_at=entry.created_at,
        replayed=replayed,
    )


def _coerce_credit_type(value: Any) -> CreditType:
    try:
        return CreditType(value)
    except ValueError as exc:
        raise InvalidCreditEventError(f"Unknown credit type: {value}", credit_type=str(value)) from exc


def _coerce_transaction_type(value: Any) -> TransactionType:
    try:
        return TransactionType(value)
    except ValueError as exc:
        raise InvalidCreditEventError(f"Unknown transaction type: {value}", transaction_type=str(value)) from exc


def _require_key(idempotency_key: Optional[str]) -> str:
    key = (idempotency_key or "").strip()
    if not key:
        raise InvalidCreditEventError("idempotency_key is required")
    return key


def _validate_amount(amount: int, transaction_type: TransactionType) -> None:
    if transaction_type in _POSITIVE_ONLY and amount <= 0:
        raise InvalidCreditEventError(
            f"{transaction_type.value} amount must be positive",
            amount=amount,
            transaction_type=transaction_type.value,
        )
    if transaction_type in _NEGATIVE_ONLY and amount >= 0:
        raise InvalidCreditEventError(
            f"{transaction_type.value} amount must be negative",
            amount=amount,
            transaction_type=transaction_type.value,
        )
    if transaction_type == TransactionType.MANUAL_ADJUST and amount == 0:
        raise InvalidCreditEventError("manual_adjust amount must be non-zero", amount=amount)


async def _load_balance_for_update(db: AsyncSession, account_id: str) -> CreditBalance:
    result = await db.execute(
        select(CreditBalance)
        .where(CreditBalance.account_id == account_id)
        .execution_options(populate_existing=True)
    )
    balance = result.scalar_one_or_none()
    if balance is None:
        balance = CreditBalance(account_id=account_id, included_credits=0, purchased_credits=0)
        db.add(balance)
    return balance


async def _recorded_results(db: AsyncSession, keys: Sequence[str]) -> List[LedgerResult]:
    result = await db.execute(
        select(CreditLedger)
        .where(CreditLedger.idempotency_key.in_(list(keys)))
        .order_by(CreditLedger.created_at.asc(), CreditLedger.idempotency_key.asc())
    )
    return [_to_result(entry, replayed=True) for entry in result.scalars().all()]


def _check_replay_owner(recorded: List[LedgerResult], account_id: str) -> None:
    for entry in recorded:
        if entry.account_id != account_id:
            logger.error(
                "Idempotency key %s reused: recorded for account %s, requested for account %s",
                entry.idempotency_key,
                entry.account_id,
                account_id,
            )
            raise IdempotencyConflictError(
                "Idempotency key already used by another account.",
                idempotency_key=entry.idempotency_key,
                account_id=account_id,
            )


def _append_entry(
    db: AsyncSession,
    balance: CreditBalance,
    *,
    amount: int,
    credit_type: CreditType,
    transaction_type: TransactionType,
    idempotency_key: str,
    description: Optional[str],
    actor: Optional[str],
    billing_reference: Optional[str] = None,
) -> CreditLedger:
    now = _utcnow()
    if credit_type == CreditType.INCLUDED:
        balance.included_credits = int(balance.included_credits or 0) + amount
    else:
        balance.purchased_credits = int(balance.purchased_credits or 0) + amount
    balance.updated_at = now

    entry = CreditLedger(
        id=str(uuid.uuid4()),
        account_id=balance.account_id,
        amount=amount,
        balance_after=int(balance.included_credits) + int(balance.purchased_credits),
        credit_type=credit_type.value,
        transaction_type=transaction_type.value,
        description=description,
        created_by=actor,
        idempotency_key=idempotency_key,
        billing_reference=billing_reference,
        created_at=now,
    )
    db.add(entry)
    return entry


async def _write_once(
    db: AsyncSession,
    account_id: str,
    keys: Sequence[str],
    writer: LedgerWriter,
) -> Tuple[List[LedgerResult], bool]:
    """Run `writer` under the account lock unless any of `keys` is already recorded.

    Returns (results, replayed). Nothing is committed if `writer` raises.
    """
    try:
        account = await lock_account(db, account_id)
        recorded = await _recorded_results(db, keys)
        if recorded:
            await db.commit()
            _check_replay_owner(recorded, account_id)
            return recorded, True

        balance = await _load_balance_for_update(db, account_id)
        entries = writer(account, balance)
        results = [_to_result(entry) for entry in entries]
        await db.commit()
        return results, False
    except IntegrityError:
        await db.rollback()
        recorded = await _recorded_results(db, keys)
        if not recorded:
            raise
        _check_replay_owner(recorded, account_id)
        logger.info("Concurrent replay of idempotency key(s) %s for account %s", list(keys), account_id)
        return recorded, True
    except DBAPIError as exc:
        await db.rollback()
        raise StorageUnavailableError(
            "Credit ledger storage unavailable.",
            original=exc,
            account_id=account_id,
        ) from exc
    except Exception:
        await db.rollback()
        raise


async def apply_credit_event(
    db: AsyncSession,
    account_id: str,
    *,
    amount: int,
    credit_type: CreditType | str,
    transaction_type: TransactionType | str,
    idempotency_key: str,
    description: Optional[str] = None,
    actor: Optional[str] = None,
    allow_overdraft: bool = False,
    billing_reference: Optional[str] = None,
) -> LedgerResult:
    """Append one ledger entry and update the cached balance atomically.

    A negative amount that would take its credit type below zero raises
    `InsufficientCreditsError`, unless this is a `manual_adjust` with
    `allow_overdraft=True`. Replaying an idempotency key returns the
    recorded entry with `replayed=True`.
    """
    credit_kind = _coerce_credit_type(credit_type)
    tx_type = _coerce_transaction_type(transaction_type)
    key = _require_key(idempotency_key)
    amount = int(amount)
    _validate_amount(amount, tx_type)
    if allow_overdraft and tx_type != TransactionType.MANUAL_ADJUST:
        raise InvalidCreditEventError(
            "Only manual_adjust may bypass the credit floor.",
            transaction_type=tx_type.value,
        )

    def _write(account: Account, balance: CreditBalance) -> List[CreditLedger]:
        current = int(
            (balance.included_credits if credit_kind == CreditType.INCLUDED else balance.purchased_credits) or 0
        )
        if amount < 0 and current + amount < 0:
            if not allow_overdraft:
                raise InsufficientCreditsError(
                    -amount,
                    current,
                    account_id=account_id,
                    credit_type=credit_kind.value,
                    transaction_type=tx_type.value,
                    idempotency_key=key,
                )
            logger.warning(
                "Floor-breaking manual adjustment by %s on account %s: %s %s credits (was %s)",
                actor or "unknown",
                account_id,
                amount,
                credit_kind.value,
                current,
            )
        return [
            _append_entry(
                db,
                balance,
                amount=amount,
                credit_type=credit_kind,
                transaction_type=tx_type,
                idempotency_key=key,
                description=description,
                actor=actor,
                billing_reference=billing_reference,
            )
        ]

    results, replayed = await _write_once(db, account_id, [key], _write)
    result = results[0]
    if replayed:
        if result.amount != amount or result.transaction_type != tx_type.value:
            logger.warning(
                "Idempotency key %s replayed with different parameters for account %s", key, account_id
            )
        logger.info("Credit event %s already applied for account %s", key, account_id)
    else:
        logger.info(
            "credit_event account=%s type=%s credit=%s amount=%s balance_after=%s",
            account_id,
            tx_type.value,
            credit_kind.value,
            amount,
            result.balance_after,
        )
    return result


async def consume_credits(
    db: AsyncSession,
    account_id: str,
    *,
    cost: int,
    idempotency_key: str,
    description: Optional[str] = None,
    actor: Optional[str] = None,
) -> UsageDebitResult:
    """Debit a feature usage, drawing on included credits before purchased ones."""
    debit_cost = int(cost)
    if debit_cost <= 0:
        raise InvalidCreditEventError("Usage cost must be positive", amount=debit_cost)
    key = _require_key(idempotency_key)
    keys = [key, f"{key}:included", f"{key}:purchased"]

    def _write(account: Account, balance: CreditBalance) -> List[CreditLedger]:
        included = int(balance.included_credits or 0)
        purchased = int(balance.purchased_credits or 0)
        if included + purchased < debit_cost:
            raise InsufficientCreditsError(
                debit_cost,
                included + purchased,
                account_id=account_id,
                transaction_type=TransactionType.USAGE.value,
                idempotency_key=key,
            )
        included_debit = min(included, debit_cost)
        purchased_debit = debit_cost - included_debit
        split = included_debit > 0 and purchased_debit > 0

        entries: List[CreditLedger] = []
        for credit_kind, part in ((CreditType.INCLUDED, included_debit), (CreditType.PURCHASED, purchased_debit)):
            if part <= 0:
                continue
            entries.append(
                _append_entry(
                    db,
                    balance,
                    amount=-part,
                    credit_type=credit_kind,
                    transaction_type=TransactionType.USAGE,
                    idempotency_key=f"{key}:{credit_kind.value}" if split else key,
                    description=description,
                    actor=actor,
                )
            )
        return entries

    results, replayed = await _write_once(db, account_id, keys, _write)
    charged = -sum(entry.amount for entry in results)
    if replayed:
        logger.info("Usage debit %s already applied for account %s", key, account_id)
    return UsageDebitResult(account_id=account_id, charged=charged, entries=tuple(results), replayed=replayed)


async def refund_usage(
    db: AsyncSession,
    account_id: str,
    *,
    amount: int,
    original_idempotency_key: str,
    description: Optional[str] = None,
    actor: Optional[str] = None,
) -> LedgerResult:
    """Compensate a failed feature run; refunded credits land as purchased so they persist."""
    original_key = _require_key(original_idempotency_key)
    return await apply_credit_event(
        db,
        account_id,
        amount=amount,
        credit_type=CreditType.PURCHASED,
        transaction_type=TransactionType.USAGE_REFUND,
        idempotency_key=f"{original_key}:refund",
        description=description or "Refund for failed feature usage",
        actor=actor,
    )


async def claw_back_purchase(
    db: AsyncSession,
    account_id: str,
    *,
    credits: int,
    charge_id: str,
    actor: Optional[str] = None,
) -> LedgerResult:
    """Remove refunded pack credits from purchased credits, never below zero.

    The refund entry is always recorded under its charge key, with a zero
    amount when nothing was left to claw back, so a redelivered refund never
    removes credits bought afterwards.
    """
    requested = int(credits)
    if requested <= 0:
        raise InvalidCreditEventError("Claw-back credits must be positive", amount=requested)
    key = f"refund:{_require_key(charge_id)}"

    def _write(account: Account, balance: CreditBalance) -> List[CreditLedger]:
        clawed = min(max(int(balance.purchased_credits or 0), 0), requested)
        if clawed == 0:
            logger.info("No purchased credits to claw back for account %s (charge %s)", account_id, charge_id)
        return [
            _append_entry(
                db,
                balance,
                amount=-clawed,
                credit_type=CreditType.PURCHASED,
                transaction_type=TransactionType.REFUND,
                idempotency_key=key,
                description=f"Refund: {clawed} credits clawed back",
                actor=actor,
                billing_reference=charge_id,
            )
        ]

    results, _ = await _write_once(db, account_id, [key], _write)
    return results[0]


async def replenish_included_credits(
    db: AsyncSession,
    account_id: str,
    *,
    idempotency_key: str,
    allotment: Optional[int] = None,
    actor: Optional[str] = None,
    billing_reference: Optional[str] = None,
) -> LedgerResult:
    """Reset included credits to the plan allotment for a new billing cycle.

    Written as a single `subscription_grant` entry of `allotment - included`;
    leftover included credits from the previous cycle do not carry over.
    """
    key = _require_key(idempotency_key)

    def _write(account: Account, balance: CreditBalance) -> List[CreditLedger]:
        target = included_credit_allotment(account.plan) if allotment is None else max(int(allotment), 0)
        delta = target - int(balance.included_credits or 0)
        balance.last_grant_at = _utcnow()
        return [
            _append_entry(
                db,
                balance,
                amount=delta,
                credit_type=CreditType.INCLUDED,
                transaction_type=TransactionType.SUBSCRIPTION_GRANT,
                idempotency_key=key,
                description=f"Included credits reset to {target} for {account.plan} plan",
                actor=actor,
                billing_reference=billing_reference,
            )
        ]

    results, replayed = await _write_once(db, account_id, [key], _write)
    if replayed:
        logger.info("Included credit replenish %s already applied for account %s", key, account_id)
    return results[0]


async def get_balance(db: AsyncSession, account_id: str) -> CreditBalanceView:
    """Cached balance; zeros when no credit event has happened yet."""
    result = await db.execute(
        select(CreditBalance)
        .where(CreditBalance.account_id == account_id)
        .execution_options(populate_existing=True)
    )
    balance = result.scalar_one_or_none()
    if balance is None:
        return CreditBalanceView(included_credits=0, purchased_credits=0)
    return CreditBalanceView(
        included_credits=int(balance.included_credits or 0),
        purchased_credits=int(balance.purchased_credits or 0),
    )


async def _ledger_sums(db: AsyncSession, account_id: str) -> CreditBalanceView:
    result = await db.execute(
        select(CreditLedger.credit_type, func.coalesce(func.sum(CreditLedger.amount), 0))
        .where(CreditLedger.account_id == account_id)
        .group_by(CreditLedger.credit_type)
    )
    sums: Dict[str, int] = {str(row[0]): int(row[1] or 0) for row in result.all()}
    return CreditBalanceView(
        included_credits=sums.get(CreditType.INCLUDED.value, 0),
        purchased_credits=sums.get(CreditType.PURCHASED.value, 0),
    )


async def rebuild_balance(db: AsyncSession, account_id: str, *, repair: bool = False) -> CreditBalanceView:
    """Re-sum the full ledger. With `repair=True` the cache is overwritten with the result."""
    if not repair:
        return await _ledger_sums(db, account_id)

    try:
        await lock_account(db, account_id)
        derived = await _ledger_sums(db, account_id)
        balance = await _load_balance_for_update(db, account_id)
        if (
            int(balance.included_credits or 0) != derived.included_credits
            or int(balance.purchased_credits or 0) != derived.purchased_credits
        ):
            logger.warning(
                "Repairing credit balance for account %s: cached=(%s, %s) ledger=(%s, %s)",
                account_id,
                balance.included_credits,
                balance.purchased_credits,
                derived.included_credits,
                derived.purchased_credits,
            )
        balance.included_credits = derived.included_credits
        balance.purchased_credits = derived.purchased_credits
        balance.updated_at = _utcnow()
        await db.commit()
        return derived
    except DBAPIError as exc:
        await db.rollback()
        raise StorageUnavailableError("Credit ledger storage unavailable.", original=exc, account_id=account_id) from exc
    except Exception:
        await db.rollback()
        raise


async def audit_balance(db: AsyncSession, account_id: str, *, repair: bool = False) -> BalanceAudit:
    cached = await get_balance(db, account_id)
    derived = await _ledger_sums(db, account_id)
    repaired = False
    if cached != derived:
        logger.error(
            "Credit balance drift for account %s: cached=%s ledger=%s",
            account_id,
            cached.as_dict(),
            derived.as_dict(),
        )
        if repair:
            derived = await rebuild_balance(db, account_id, repair=True)
            repaired = True
    return BalanceAudit(account_id=account_id, cached=cached, derived=derived, repaired=repaired)


async def audit_all_balances(
    session_maker: Optional[async_sessionmaker] = None,
    *,
    repair: bool = False,
) -> List[BalanceAudit]:
    """Compare every cached balance with its ledger; returns the drifted ones."""
    if session_maker is None:
        from database import async_session_maker

        session_maker = async_session_maker

    async with session_maker() as db:
        result = await db.execute(select(CreditLedger.account_id).distinct())
        ledger_accounts = {row[0] for row in result.all()}
        result = await db.execute(select(CreditBalance.account_id))
        cached_accounts = {row[0] for row in result.all()}

    drifted: List[BalanceAudit] = []
    for account_id in sorted(ledger_accounts | cached_accounts):
        async with session_maker() as db:
            audit = await audit_balance(db, account_id, repair=repair)
        if not audit.in_sync:
            drifted.append(audit)
    return drifted


async def list_ledger_entries(
    db: AsyncSession,
    account_id: str,
    *,
    limit: int = 20,
    offset: int = 0,
    transaction_type: Optional[str] = None,
) -> Tuple[List[LedgerResult], int]:
    """Newest-first page of ledger entries and the total count."""
    filters = [CreditLedger.account_id == account_id]
    if transaction_type:
        filters.append(CreditLedger.transaction_type == _coerce_transaction_type(transaction_type).value)

    total_result = await db.execute(select(func.count(CreditLedger.id)).where(*filters))
    total = int(total_result.scalar() or 0)

    result = await db.execute(
        select(CreditLedger)
        .where(*filters)
        .order_by(CreditLedger.created_at.desc(), CreditLedger.id.desc())
        .offset(max(int(offset), 0))
        .limit(max(min(int(limit), 200), 1))
    )
    return [_to_result(entry) for entry in result.scalars().all()], total


def ledger_entry_payload(entry: LedgerResult) -> Dict[str, Any]:
    return {
        "id": entry.entry_id,
        "amount": entry.amount,
        "balance_after": entry.balance_after,
        "credit_type": entry.credit_type,
        "transaction_type": entry.transaction_type,
        "description": entry.description,
        "created_by": entry.created_by,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


async def get_credit_summary(db: AsyncSession, account: Account) -> Dict[str, Any]:
    balance = await get_balance(db, account.id)
    entries, _ = await list_ledger_entries(db, account.id, limit=30)
    return {
        **balance.as_dict(),
        "plan": account.plan,
        "monthly_included_credits": plan_limits(account.plan, account.billing_period).monthly_included_credits,
        "recent_entries": [ledger_entry_payload(entry) for entry in entries],
    }