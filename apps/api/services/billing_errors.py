"""Billing error taxonomy."""

from __future__ import annotations

from typing import Any, Dict, Optional


class BillingError(RuntimeError):
    """Base class; `context` carries what an operator needs to act."""

    retryable = False

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.context: Dict[str, Any] = {key: value for key, value in context.items() if value is not None}


class InvalidSubscriptionStructureError(BillingError):
    """External subscription payload is missing or malformed."""


class UnknownPriceError(BillingError):
    """Price id is absent from the deployed catalog."""

    def __init__(self, price_id: str, **context: Any) -> None:
        super().__init__(f"Price {price_id} is not present in the price catalog.", price_id=price_id, **context)
        self.price_id = price_id


class PriceNotConfiguredError(BillingError):
    """No price id configured for a (plan, billing period) pair."""


class InsufficientCreditsError(BillingError):
    def __init__(self, required: int, available: int, **context: Any) -> None:
        super().__init__(
            f"Insufficient credits. Required: {required}, available: {available}.",
            required=required,
            available=available,
            **context,
        )
        self.required = required
        self.available = available


class IdempotencyConflictError(BillingError):
    """Idempotency key already recorded against a different account."""


class InvalidCreditEventError(BillingError, ValueError):
    """Amount or sign does not fit the transaction type."""


class AccountNotFoundError(BillingError):
    def __init__(self, account_id: str) -> None:
        super().__init__(f"Account {account_id} not found.", account_id=account_id)
        self.account_id = account_id


class ExternalSubscriptionNotFoundError(BillingError):
    """Payment platform has no subscription with the requested id."""


class ExternalPlatformUnavailableError(BillingError):
    retryable = True


class StorageUnavailableError(BillingError):
    retryable = True

    def __init__(self, message: str, original: Optional[BaseException] = None, **context: Any) -> None:
        super().__init__(message, **context)
        self.original = original


class PaymentPlatformNotConfiguredError(BillingError):
    """Stripe credentials are missing or were rejected; retrying will not help."""
