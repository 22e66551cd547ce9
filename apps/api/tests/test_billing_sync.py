from unittest.mock import MagicMock, patch

import pytest

from config import settings
from services.accounts import get_account, soft_delete_account
from services.billing_errors import (
    AccountNotFoundError,
    ExternalPlatformUnavailableError,
    PaymentPlatformNotConfiguredError,
    UnknownPriceError,
)
from services.billing_sync import handle_billing_event, run_sync_account_job, sync_account, sync_all_accounts
from services.billing_types import (
    BillingEvent,
    CreditBalanceView,
    SubscriptionLineItem,
    SubscriptionSnapshot,
    SyncOutcome,
    SyncResult,
)
from services.credits import consume_credits, get_balance
from services.payment_platform import PaymentPlatformClient


class FakePaymentPlatform(PaymentPlatformClient):
    def __init__(self, subscriptions=None, error=None):
        self.subscriptions = subscriptions or {}
        self.error = error
        self.calls = []

    async def get_subscription(self, subscription_id):
        self.calls.append(subscription_id)
        if self.error is not None:
            raise self.error
        return self.subscriptions[subscription_id]


def _subscription(subscription_id, price_id, status="active", customer_id="cus_1", metadata=None):
    return SubscriptionSnapshot(
        subscription_id=subscription_id,
        customer_id=customer_id,
        status=status,
        line_items=(SubscriptionLineItem(price_id=price_id),),
        metadata=metadata or {},
    )


@pytest.mark.asyncio
async def test_sync_without_subscription_is_nothing_to_sync(session_maker, create_account, catalog):
    await create_account("acct-none")
    client = FakePaymentPlatform()

    result = await sync_account("acct-none", client=client, catalog=catalog, session_maker=session_maker)

    assert result.outcome == SyncOutcome.NOTHING_TO_SYNC
    assert client.calls == []


@pytest.mark.asyncio
async def test_sync_updates_then_reports_in_sync(session_maker, create_account, catalog):
    await create_account("acct-sync", external_subscription_id="sub_9")
    client = FakePaymentPlatform({"sub_9": _subscription("sub_9", "price_maven_y")})

    first = await sync_account("acct-sync", client=client, catalog=catalog, session_maker=session_maker)
    second = await sync_account("acct-sync", client=client, catalog=catalog, session_maker=session_maker)

    assert first.outcome == SyncOutcome.UPDATED
    assert second.outcome == SyncOutcome.ALREADY_IN_SYNC
    async with session_maker() as db:
        account = await get_account(db, "acct-sync")
    assert (account.plan, account.billing_period, account.has_had_paid_plan) == ("maven", "annual", True)


@pytest.mark.asyncio
async def test_platform_outage_propagates_and_leaves_account(session_maker, create_account, catalog):
    await create_account("acct-down", plan="grower", billing_period="monthly", external_subscription_id="sub_d")
    client = FakePaymentPlatform(error=ExternalPlatformUnavailableError("Payment platform timed out."))

    with pytest.raises(ExternalPlatformUnavailableError) as exc_info:
        await sync_account("acct-down", client=client, catalog=catalog, session_maker=session_maker)
    assert exc_info.value.retryable is True

    async with session_maker() as db:
        account = await get_account(db, "acct-down")
    assert account.plan == "grower"


@pytest.mark.asyncio
async def test_sync_all_accounts_counts_failures(session_maker, create_account, catalog):
    await create_account("acct-ok", external_subscription_id="sub_ok")
    await create_account("acct-bad", external_subscription_id="sub_bad")
    client = FakePaymentPlatform(
        {
            "sub_ok": _subscription("sub_ok", "price_grower_m"),
            "sub_bad": _subscription("sub_bad", "price_unknown"),
        }
    )

    counts = await sync_all_accounts(client=client, catalog=catalog, session_maker=session_maker)

    assert counts["updated"] == 1
    assert counts["failed"] == 1


@pytest.mark.asyncio
async def test_checkout_with_credits_grants_purchase_once(session_maker, create_account, catalog):
    await create_account("acct-pack")
    event = BillingEvent(
        event_type="checkout.session.completed",
        idempotency_hint="evt_1",
        account_id="acct-pack",
        checkout_session_id="cs_123",
        credits=50,
    )

    first = await handle_billing_event(event, catalog=catalog, session_maker=session_maker)
    second = await handle_billing_event(event, catalog=catalog, session_maker=session_maker)

    assert first["actions"] == [{"ledger": "purchase", "replayed": False}]
    assert second["actions"] == [{"ledger": "purchase", "replayed": True}]
    async with session_maker() as db:
        assert await get_balance(db, "acct-pack") == CreditBalanceView(included_credits=0, purchased_credits=50)


@pytest.mark.asyncio
async def test_subscription_event_resolves_account_by_subscription(session_maker, create_account, catalog):
    await create_account("acct-evt", external_subscription_id="sub_evt", external_customer_id="cus_evt")
    client = FakePaymentPlatform({"sub_evt": _subscription("sub_evt", "price_builder_m", customer_id="cus_evt")})
    event = BillingEvent(
        event_type="customer.subscription.updated",
        idempotency_hint="evt_2",
        subscription_id="sub_evt",
    )

    summary = await handle_billing_event(event, client=client, catalog=catalog, session_maker=session_maker)

    assert summary["account_id"] == "acct-evt"
    assert summary["actions"] == [{"sync": "updated"}]


@pytest.mark.asyncio
async def test_unmatched_subscription_event_raises(session_maker, catalog):
    client = FakePaymentPlatform(
        {"sub_orphan": _subscription("sub_orphan", "price_builder_m", metadata={"account_id": "acct-gone"})}
    )
    event = BillingEvent(
        event_type="customer.subscription.deleted",
        idempotency_hint="evt_3",
        subscription_id="sub_orphan",
    )
    with pytest.raises(AccountNotFoundError):
        await handle_billing_event(event, client=client, catalog=catalog, session_maker=session_maker)
    assert client.calls == ["sub_orphan"]


@pytest.mark.asyncio
async def test_subscription_metadata_matches_new_subscription(session_maker, create_account, catalog):
    await create_account("acct-meta")
    client = FakePaymentPlatform(
        {
            "sub_meta": _subscription(
                "sub_meta", "price_grower_m", customer_id="cus_meta", metadata={"account_id": "acct-meta"}
            )
        }
    )
    event = BillingEvent(
        event_type="customer.subscription.created",
        idempotency_hint="evt_meta",
        subscription_id="sub_meta",
        customer_id="cus_meta",
    )

    summary = await handle_billing_event(event, client=client, catalog=catalog, session_maker=session_maker)

    assert summary["account_id"] == "acct-meta"
    assert summary["actions"] == [{"sync": "updated"}]
    async with session_maker() as db:
        account = await get_account(db, "acct-meta")
    assert account.plan == "grower"


@pytest.mark.asyncio
async def test_renewal_invoice_syncs_and_replenishes(session_maker, create_account, catalog):
    await create_account("acct-cycle", external_subscription_id="sub_cycle")
    client = FakePaymentPlatform({"sub_cycle": _subscription("sub_cycle", "price_grower_m")})
    event = BillingEvent(
        event_type="invoice.payment_succeeded",
        idempotency_hint="evt_4",
        subscription_id="sub_cycle",
        invoice_id="in_1",
        billing_reason="subscription_cycle",
    )

    await handle_billing_event(event, client=client, catalog=catalog, session_maker=session_maker)
    replay = await handle_billing_event(event, client=client, catalog=catalog, session_maker=session_maker)

    assert replay["actions"] == [
        {"sync": "already_in_sync"},
        {"ledger": "subscription_grant", "replayed": True},
    ]
    async with session_maker() as db:
        assert await get_balance(db, "acct-cycle") == CreditBalanceView(included_credits=100, purchased_credits=0)


@pytest.mark.asyncio
async def test_credit_subscription_invoice_grants_renewal(session_maker, create_account, catalog):
    await create_account("acct-topup", external_customer_id="cus_topup")
    client = FakePaymentPlatform()
    event = BillingEvent(
        event_type="invoice.payment_succeeded",
        idempotency_hint="evt_5",
        customer_id="cus_topup",
        subscription_id="sub_credit_pack",
        invoice_id="in_topup",
        credits=25,
    )

    summary = await handle_billing_event(event, client=client, catalog=catalog, session_maker=session_maker)

    assert summary["actions"] == [{"ledger": "renewal", "replayed": False}]
    assert client.calls == []


@pytest.mark.asyncio
async def test_charge_refund_claws_back(session_maker, create_account, catalog):
    await create_account("acct-refund")
    await handle_billing_event(
        BillingEvent(
            event_type="checkout.session.completed",
            idempotency_hint="evt_6",
            account_id="acct-refund",
            checkout_session_id="cs_refund",
            credits=40,
        ),
        catalog=catalog,
        session_maker=session_maker,
    )

    summary = await handle_billing_event(
        BillingEvent(
            event_type="charge.refunded",
            idempotency_hint="evt_7",
            account_id="acct-refund",
            charge_id="ch_refund",
            credits=40,
        ),
        catalog=catalog,
        session_maker=session_maker,
    )

    assert summary["actions"] == [{"ledger": "refund", "replayed": False}]
    async with session_maker() as db:
        assert (await get_balance(db, "acct-refund")).total_credits == 0


@pytest.mark.asyncio
async def test_redelivered_refund_after_repurchase_is_replayed(session_maker, create_account, catalog):
    await create_account("acct-repack")

    def _checkout(session_id, event_id):
        return BillingEvent(
            event_type="checkout.session.completed",
            idempotency_hint=event_id,
            account_id="acct-repack",
            checkout_session_id=session_id,
            credits=40,
        )

    refund = BillingEvent(
        event_type="charge.refunded",
        idempotency_hint="evt_refund",
        account_id="acct-repack",
        charge_id="ch_1",
        credits=40,
    )

    await handle_billing_event(_checkout("cs_1", "evt_buy_1"), catalog=catalog, session_maker=session_maker)
    async with session_maker() as db:
        await consume_credits(db, "acct-repack", cost=40, idempotency_key="use-repack")
    first = await handle_billing_event(refund, catalog=catalog, session_maker=session_maker)
    await handle_billing_event(_checkout("cs_2", "evt_buy_2"), catalog=catalog, session_maker=session_maker)
    again = await handle_billing_event(refund, catalog=catalog, session_maker=session_maker)

    assert first["actions"] == [{"ledger": "refund", "replayed": False}]
    assert again["actions"] == [{"ledger": "refund", "replayed": True}]
    async with session_maker() as db:
        assert await get_balance(db, "acct-repack") == CreditBalanceView(included_credits=0, purchased_credits=40)


@pytest.mark.asyncio
async def test_deleted_account_is_not_synced(session_maker, create_account, catalog):
    await create_account("acct-deleted", plan="grower", billing_period="monthly", external_subscription_id="sub_del")
    async with session_maker() as db:
        await soft_delete_account(db, "acct-deleted")
    client = FakePaymentPlatform({"sub_del": _subscription("sub_del", "price_maven_y")})

    result = await sync_account("acct-deleted", client=client, catalog=catalog, session_maker=session_maker)

    assert result.outcome == SyncOutcome.NOTHING_TO_SYNC
    assert client.calls == []
    async with session_maker() as db:
        account = await get_account(db, "acct-deleted")
    assert account.plan == "grower"


@pytest.mark.asyncio
async def test_events_for_deleted_account_are_skipped(session_maker, create_account, catalog):
    await create_account("acct-closed", external_subscription_id="sub_closed")
    async with session_maker() as db:
        await soft_delete_account(db, "acct-closed")
    client = FakePaymentPlatform({"sub_closed": _subscription("sub_closed", "price_builder_m")})

    sync_summary = await handle_billing_event(
        BillingEvent(
            event_type="customer.subscription.updated",
            idempotency_hint="evt_c1",
            subscription_id="sub_closed",
        ),
        client=client,
        catalog=catalog,
        session_maker=session_maker,
    )
    pack_summary = await handle_billing_event(
        BillingEvent(
            event_type="checkout.session.completed",
            idempotency_hint="evt_c2",
            account_id="acct-closed",
            checkout_session_id="cs_closed",
            credits=20,
        ),
        catalog=catalog,
        session_maker=session_maker,
    )

    assert sync_summary["skipped"] == "account_deleted"
    assert sync_summary["actions"] == []
    assert pack_summary["skipped"] == "account_deleted"
    assert client.calls == []
    async with session_maker() as db:
        assert (await get_balance(db, "acct-closed")).total_credits == 0


@pytest.mark.asyncio
async def test_unknown_event_type_is_ignored(session_maker, catalog):
    summary = await handle_billing_event(
        BillingEvent(event_type="customer.tax_id.created", idempotency_hint="evt_8"),
        catalog=catalog,
        session_maker=session_maker,
    )
    assert summary["actions"] == []


def test_sync_job_reraises_retryable_errors():
    async def _unavailable(*args, **kwargs):
        raise ExternalPlatformUnavailableError("down")

    with patch("services.billing_sync.sync_account", side_effect=_unavailable):
        with pytest.raises(ExternalPlatformUnavailableError):
            run_sync_account_job("acct-job")


def test_sync_job_swallows_terminal_errors():
    async def _unknown_price(*args, **kwargs):
        raise UnknownPriceError("price_gone", account_id="acct-job")

    with patch("services.billing_sync.sync_account", side_effect=_unknown_price):
        result = run_sync_account_job("acct-job")
    assert result == {"account_id": "acct-job", "outcome": "failed", "error": "UnknownPriceError"}


def test_sync_job_reports_outcome():
    async def _in_sync(account_id, subscription_id=None):
        return SyncResult(account_id=account_id, outcome=SyncOutcome.ALREADY_IN_SYNC)

    with patch("services.billing_sync.sync_account", side_effect=_in_sync):
        result = run_sync_account_job("acct-job")
    assert result == {"account_id": "acct-job", "outcome": "already_in_sync"}


@pytest.mark.asyncio
async def test_sweep_without_stripe_key_counts_failures(session_maker, create_account, catalog):
    await create_account("acct-nokey-1", external_subscription_id="sub_nk1")
    await create_account("acct-nokey-2", external_subscription_id="sub_nk2")

    with patch.object(settings, "STRIPE_SECRET_KEY", ""):
        counts = await sync_all_accounts(catalog=catalog, session_maker=session_maker)

    assert counts["failed"] == 2
    assert counts["updated"] == 0


def test_sync_job_without_stripe_key_ends_without_retry():
    async def _not_configured(*args, **kwargs):
        raise PaymentPlatformNotConfiguredError("Payment platform is not configured.")

    with patch("services.billing_sync.sync_account", side_effect=_not_configured):
        result = run_sync_account_job("acct-job")
    assert result == {"account_id": "acct-job", "outcome": "failed", "error": "PaymentPlatformNotConfiguredError"}


def test_enqueue_sync_job_uses_billing_queue():
    queue = MagicMock()
    with patch("services.billing_queue.get_billing_queue", return_value=queue):
        from services.billing_queue import enqueue_sync_job

        enqueue_sync_job("acct-q", "sub_q")

    args, kwargs = queue.enqueue.call_args
    assert args == ("services.billing_sync.run_sync_account_job", "acct-q", "sub_q")
    assert kwargs["job_id"] == "billing-sync:acct-q"
    assert kwargs["retry"].max == 3
