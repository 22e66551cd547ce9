"""Billing domain vocabulary and value objects."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union


class Plan(str, Enum):
    NO_PLAN = "no_plan"
    FREE = "free"
    GROWER = "grower"
    BUILDER = "builder"
    MAVEN = "maven"


PAID_PLANS = frozenset({Plan.GROWER, Plan.BUILDER, Plan.MAVEN})


class BillingPeriod(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"
    NONE = "none"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    UNPAID = "unpaid"
    PAUSED = "paused"


class CreditType(str, Enum):
    INCLUDED = "included"
    PURCHASED = "purchased"


class TransactionType(str, Enum):
    MANUAL_ADJUST = "manual_adjust"
    SUBSCRIPTION_GRANT = "subscription_grant"
    PURCHASE = "purchase"
    USAGE = "usage"
    RENEWAL = "renewal"
    REFUND = "refund"
    USAGE_REFUND = "usage_refund"


def is_paid_plan(plan: Union[Plan, str, None]) -> bool:
    try:
        return Plan(plan) in PAID_PLANS
    except ValueError:
        return False


# --- Price resolution -------------------------------------------------------


@dataclass(frozen=True)
class Resolved:
    plan: Plan
    billing_period: BillingPeriod


@dataclass(frozen=True)
class NotFound:
    price_id: str


PriceResolution = Union[Resolved, NotFound]


# --- External subscription snapshot -----------------------------------------


@dataclass(frozen=True)
class SubscriptionLineItem:
    price_id: Optional[str]


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Minimal view of an external subscription the reconciler depends on."""

    subscription_id: Optional[str]
    customer_id: Optional[str]
    status: Optional[str]
    line_items: Tuple[SubscriptionLineItem, ...] = ()
    metadata: Dict[str, str] = field(default_factory=dict)


# --- Results ----------------------------------------------------------------


@dataclass(frozen=True)
class BillingFields:
    plan: str
    billing_period: str
    subscription_status: Optional[str]
    external_customer_id: Optional[str]
    external_subscription_id: Optional[str]
    has_had_paid_plan: bool

    def as_dict(self) -> Dict[str, Any]:
        return {
            "plan": self.plan,
            "billing_period": self.billing_period,
            "subscription_status": self.subscription_status,
            "external_customer_id": self.external_customer_id,
            "external_subscription_id": self.external_subscription_id,
            "has_had_paid_plan": self.has_had_paid_plan,
        }


class ReconciliationOutcome(str, Enum):
    UPDATED = "updated"
    ALREADY_IN_SYNC = "already_in_sync"


@dataclass(frozen=True)
class ReconciliationResult:
    account_id: str
    outcome: ReconciliationOutcome
    before: BillingFields
    after: BillingFields

    @property
    def changed_fields(self) -> List[str]:
        before = self.before.as_dict()
        return [key for key, value in self.after.as_dict().items() if before[key] != value]


class SyncOutcome(str, Enum):
    NOTHING_TO_SYNC = "nothing_to_sync"
    UPDATED = "updated"
    ALREADY_IN_SYNC = "already_in_sync"


@dataclass(frozen=True)
class SyncResult:
    account_id: str
    outcome: SyncOutcome
    reconciliation: Optional[ReconciliationResult] = None


@dataclass(frozen=True)
class CreditBalanceView:
    included_credits: int
    purchased_credits: int

    @property
    def total_credits(self) -> int:
        return self.included_credits + self.purchased_credits

    def as_dict(self) -> Dict[str, int]:
        return {
            "included_credits": self.included_credits,
            "purchased_credits": self.purchased_credits,
            "total_credits": self.total_credits,
        }


@dataclass(frozen=True)
class LedgerResult:
    entry_id: str
    account_id: str
    amount: int
    balance_after: int
    credit_type: str
    transaction_type: str
    idempotency_key: str
    description: Optional[str]
    created_by: Optional[str]
    created_at: Optional[datetime]
    replayed: bool = False


@dataclass(frozen=True)
class UsageDebitResult:
    account_id: str
    charged: int
    entries: Tuple[LedgerResult, ...]
    replayed: bool = False

    @property
    def balance_after(self) -> int:
        return self.entries[-1].balance_after if self.entries else 0


@dataclass(frozen=True)
class BalanceAudit:
    account_id: str
    cached: CreditBalanceView
    derived: CreditBalanceView
    repaired: bool = False

    @property
    def in_sync(self) -> bool:
        return self.cached == self.derived


@dataclass(frozen=True)
class BillingEvent:
    """Normalized trigger delivered by webhook ingestion or operators."""

    event_type: str
    idempotency_hint: str
    account_id: Optional[str] = None
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    checkout_session_id: Optional[str] = None
    invoice_id: Optional[str] = None
    charge_id: Optional[str] = None
    credits: Optional[int] = None
    billing_reason: Optional[str] = None
