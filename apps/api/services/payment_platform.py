"""Payment platform client backed by the Stripe SDK."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import stripe

from config import require_stripe_secret_key, settings
from services.billing_errors import (
    ExternalPlatformUnavailableError,
    ExternalSubscriptionNotFoundError,
    InvalidSubscriptionStructureError,
    PaymentPlatformNotConfiguredError,
)
from services.billing_types import SubscriptionLineItem, SubscriptionSnapshot


logger = logging.getLogger(__name__)


class PaymentPlatformClient(ABC):
    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        raise NotImplementedError


def snapshot_from_stripe(payload: Dict[str, Any]) -> SubscriptionSnapshot:
    """Map a Stripe subscription object onto the reconciler's snapshot shape."""
    if not isinstance(payload, dict):
        raise InvalidSubscriptionStructureError("Subscription payload is not an object.")

    items = payload.get("items")
    data = items.get("data") if isinstance(items, dict) else None
    if not isinstance(data, list):
        raise InvalidSubscriptionStructureError(
            "Subscription payload has no items list.",
            subscription_id=payload.get("id"),
        )

    line_items = []
    for item in data:
        price = item.get("price") if isinstance(item, dict) else None
        price_id = price.get("id") if isinstance(price, dict) else price
        line_items.append(SubscriptionLineItem(price_id=price_id if isinstance(price_id, str) else None))

    customer = payload.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")

    metadata = payload.get("metadata") or {}
    return SubscriptionSnapshot(
        subscription_id=payload.get("id"),
        customer_id=customer if isinstance(customer, str) else None,
        status=payload.get("status"),
        line_items=tuple(line_items),
        metadata={str(k): str(v) for k, v in metadata.items()} if isinstance(metadata, dict) else {},
    )


class StripePaymentPlatformClient(PaymentPlatformClient):
    """Fetches subscriptions with a bounded timeout; never retries internally."""

    def __init__(
        self,
        *,
        api_key: str,
        timeout_seconds: float = 10.0,
        stripe_client: Optional[stripe.StripeClient] = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self._stripe = stripe_client or stripe.StripeClient(
            api_key,
            http_client=stripe.HTTPXClient(timeout=timeout_seconds),
            max_network_retries=0,
        )

    async def get_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        try:
            subscription = await self._stripe.subscriptions.retrieve_async(subscription_id)
        except stripe.InvalidRequestError as exc:
            if exc.http_status == 404:
                raise ExternalSubscriptionNotFoundError(
                    f"Subscription {subscription_id} not found on payment platform.",
                    subscription_id=subscription_id,
                ) from exc
            raise InvalidSubscriptionStructureError(
                f"Payment platform rejected subscription lookup: {exc.user_message or exc}",
                subscription_id=subscription_id,
                status_code=exc.http_status,
            ) from exc
        except (stripe.AuthenticationError, stripe.PermissionError) as exc:
            logger.error("Stripe rejected the configured API key: %s", exc.user_message or exc)
            raise PaymentPlatformNotConfiguredError(
                "Payment platform credentials were rejected.",
                subscription_id=subscription_id,
                status_code=exc.http_status,
            ) from exc
        except stripe.StripeError as exc:
            logger.warning("Stripe subscription %s fetch failed: %s", subscription_id, exc)
            raise ExternalPlatformUnavailableError(
                "Payment platform unavailable.",
                subscription_id=subscription_id,
                status_code=exc.http_status,
            ) from exc
        return snapshot_from_stripe(subscription.to_dict())


def get_payment_platform_client() -> PaymentPlatformClient:
    """Client configured from settings; raises a terminal error when Stripe is not configured."""
    try:
        api_key = require_stripe_secret_key()
    except ValueError as exc:
        raise PaymentPlatformNotConfiguredError("Payment platform is not configured.") from exc
    return StripePaymentPlatformClient(
        api_key=api_key,
        timeout_seconds=float(settings.STRIPE_TIMEOUT_SECONDS),
    )
