"""
Tests for SubscriptionEventProcessor — tier state machine, per-cycle energy
grants, event-id idempotency and out-of-order delivery.
"""

from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from conftest import make_account, read_account
from lunachat.config import settings
from lunachat.core.database import get_engine
from lunachat.models.billing import EnergyGrant, ProcessedWebhookEvent, SubscriptionRecord
from lunachat.services.customer_link import CustomerLinkResolver
from lunachat.services.subscription_events import (
    SubscriptionEventProcessor,
    SubscriptionSnapshot,
    derive_tier,
    grant_key,
)

MONTHLY = "price_monthly_test"
ANNUAL = "price_annual_test"


def _subscription(sub_id="sub_1", status="active", price=MONTHLY, period_end=2_000_000, customer="cus_1",
                  account_id="uid_alice"):
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "current_period_end": period_end,
        "items": {"data": [{"price": {"id": price}}]},
        "metadata": {"account_id": account_id} if account_id else {},
    }


def _event(event_id, event_type, obj, created=1_000):
    return {"id": event_id, "type": event_type, "created": created, "data": {"object": obj}}


def _checkout(sub_id="sub_1", customer="cus_1", account_id="uid_alice", payment_status="paid"):
    return {
        "id": "cs_1",
        "object": "checkout.session",
        "mode": "subscription",
        "payment_status": payment_status,
        "subscription": sub_id,
        "customer": customer,
        "client_reference_id": account_id,
        "metadata": {"account_id": account_id, "plan": "monthly"},
    }


def _record(account_id="uid_alice"):
    with get_engine().connect() as conn:
        row = conn.execute(
            select(SubscriptionRecord.__table__).where(SubscriptionRecord.__table__.c.account_id == account_id)
        ).mappings().first()
    return dict(row) if row else None


def _count(model):
    with get_engine().connect() as conn:
        return len(conn.execute(select(model.__table__)).all())


@pytest.fixture
def payments():
    mock = AsyncMock()
    mock.retrieve_subscription = AsyncMock(return_value=_subscription())
    mock.retrieve_customer = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def processor(payments):
    return SubscriptionEventProcessor(payments, CustomerLinkResolver(payments))


class TestPureHelpers:
    def test_derive_tier(self):
        prices = {MONTHLY: "monthly", ANNUAL: "annual"}
        assert derive_tier("active", MONTHLY, prices) == "monthly"
        assert derive_tier("trialing", ANNUAL, prices) == "annual"
        assert derive_tier("past_due", MONTHLY, prices) == "none"
        assert derive_tier("active", "price_other", prices) == "none"
        assert derive_tier("active", None, prices) == "none"

    def test_grant_key(self):
        assert grant_key("sub_1", 1700000000) == "grant:sub_1:1700000000"

    def test_snapshot_reads_period_from_item(self):
        sub = _subscription()
        del sub["current_period_end"]
        sub["items"]["data"][0]["current_period_end"] = 1234
        snapshot = SubscriptionSnapshot.from_stripe(sub)
        assert snapshot.current_period_end == 1234
        assert snapshot.price_id == MONTHLY

    def test_snapshot_expanded_customer(self):
        sub = _subscription(customer={"id": "cus_9", "object": "customer"})
        assert SubscriptionSnapshot.from_stripe(sub).customer_id == "cus_9"


class TestCheckoutCompleted:
    @pytest.mark.asyncio
    async def test_monthly_checkout_grants_and_sets_tier(self, processor, payments):
        make_account(balance=5)

        outcome = await processor.process(_event("evt_1", "checkout.session.completed", _checkout()))

        assert outcome.handled is True
        assert outcome.tier == "monthly"
        assert outcome.energy_granted == settings.monthly_energy_grant
        account = read_account("uid_alice")
        assert account["tier"] == "monthly"
        assert account["energy_balance"] == 5 + settings.monthly_energy_grant
        assert account["payment_customer_id"] == "cus_1"
        record = _record()
        assert record["status"] == "active"
        assert record["plan"] == "monthly"
        assert record["current_period_end"] == 2_000_000
        payments.retrieve_subscription.assert_awaited_once_with("sub_1")

    @pytest.mark.asyncio
    async def test_replay_is_a_noop(self, processor, payments):
        make_account()
        event = _event("evt_1", "checkout.session.completed", _checkout())

        await processor.process(event)
        replay = await processor.process(event)

        assert replay.duplicate is True
        assert read_account("uid_alice")["energy_balance"] == settings.monthly_energy_grant
        assert payments.retrieve_subscription.await_count == 1
        assert _count(ProcessedWebhookEvent) == 1

    @pytest.mark.asyncio
    async def test_unpaid_checkout_is_skipped(self, processor):
        make_account()
        outcome = await processor.process(
            _event("evt_2", "checkout.session.completed", _checkout(payment_status="unpaid"))
        )
        assert outcome.handled is False
        assert outcome.reason == "checkout_not_paid"
        assert read_account("uid_alice")["tier"] == "none"

    @pytest.mark.asyncio
    async def test_annual_checkout(self, processor, payments):
        make_account()
        payments.retrieve_subscription.return_value = _subscription(price=ANNUAL)
        outcome = await processor.process(_event("evt_3", "checkout.session.completed", _checkout()))
        assert outcome.tier == "annual"
        assert read_account("uid_alice")["energy_balance"] == settings.annual_energy_grant


class TestSubscriptionLifecycle:
    @pytest.mark.asyncio
    async def test_one_grant_per_cycle_across_events(self, processor):
        make_account()
        await processor.process(_event("evt_1", "checkout.session.completed", _checkout(), created=1000))
        outcome = await processor.process(
            _event("evt_2", "customer.subscription.updated", _subscription(), created=1001)
        )

        assert outcome.energy_granted == 0
        assert read_account("uid_alice")["energy_balance"] == settings.monthly_energy_grant
        assert _count(EnergyGrant) == 1

    @pytest.mark.asyncio
    async def test_renewal_grants_again(self, processor):
        make_account()
        await processor.process(_event("evt_1", "customer.subscription.created", _subscription(), created=1000))
        await processor.process(
            _event("evt_2", "customer.subscription.updated", _subscription(period_end=4_600_000), created=2000)
        )
        assert read_account("uid_alice")["energy_balance"] == 2 * settings.monthly_energy_grant

    @pytest.mark.asyncio
    async def test_plan_change_to_annual(self, processor):
        make_account()
        await processor.process(_event("evt_1", "customer.subscription.created", _subscription(), created=1000))
        outcome = await processor.process(
            _event("evt_2", "customer.subscription.updated", _subscription(price=ANNUAL, period_end=9_000_000),
                   created=2000)
        )
        assert outcome.tier == "annual"
        assert read_account("uid_alice")["tier"] == "annual"

    @pytest.mark.asyncio
    async def test_deleted_clears_tier_and_keeps_balance(self, processor):
        make_account()
        await processor.process(_event("evt_1", "customer.subscription.created", _subscription(), created=1000))
        balance = read_account("uid_alice")["energy_balance"]

        outcome = await processor.process(
            _event("evt_2", "customer.subscription.deleted", _subscription(status="canceled"), created=2000)
        )

        assert outcome.tier == "none"
        account = read_account("uid_alice")
        assert account["tier"] == "none"
        assert account["energy_balance"] == balance
        record = _record()
        assert record["status"] == "canceled"
        assert record["plan"] is None
        assert record["price_id"] is None
        assert record["current_period_end"] is None

    @pytest.mark.asyncio
    async def test_stale_update_does_not_overwrite(self, processor):
        make_account()
        await processor.process(
            _event("evt_new", "customer.subscription.updated", _subscription(price=ANNUAL), created=2000)
        )
        outcome = await processor.process(
            _event("evt_old", "customer.subscription.updated", _subscription(status="past_due"), created=1500)
        )

        assert outcome.reason == "stale_event"
        assert read_account("uid_alice")["tier"] == "annual"
        assert _record()["status"] == "active"

    @pytest.mark.asyncio
    async def test_deleting_an_old_subscription_keeps_the_current_one(self, processor):
        make_account()
        await processor.process(
            _event("evt_1", "customer.subscription.created", _subscription(sub_id="sub_new"), created=2000)
        )
        outcome = await processor.process(
            _event("evt_2", "customer.subscription.deleted", _subscription(sub_id="sub_old", status="canceled"),
                   created=3000)
        )
        assert outcome.reason == "stale_event"
        assert read_account("uid_alice")["tier"] == "monthly"

    @pytest.mark.asyncio
    async def test_unknown_price_is_skipped(self, processor):
        make_account()
        outcome = await processor.process(
            _event("evt_1", "customer.subscription.created", _subscription(price="price_other"))
        )
        assert outcome.handled is False
        assert outcome.reason.startswith("unknown_plan_price")
        assert read_account("uid_alice")["energy_balance"] == 0


class TestInvoices:
    @pytest.mark.asyncio
    async def test_failed_payment_downgrades_without_grant(self, processor, payments):
        make_account()
        await processor.process(_event("evt_1", "customer.subscription.created", _subscription(), created=1000))
        payments.retrieve_subscription.return_value = _subscription(status="past_due")

        outcome = await processor.process(
            _event("evt_2", "invoice.payment_failed", {"id": "in_1", "subscription": "sub_1", "customer": "cus_1"},
                   created=900)
        )

        assert outcome.tier == "none"
        assert outcome.energy_granted == 0
        assert read_account("uid_alice")["tier"] == "none"

    @pytest.mark.asyncio
    async def test_subscription_from_invoice_parent(self, processor, payments):
        make_account()
        invoice = {
            "id": "in_2",
            "customer": "cus_1",
            "parent": {"subscription_details": {"subscription": "sub_1"}},
        }
        outcome = await processor.process(_event("evt_3", "invoice.paid", invoice))
        assert outcome.tier == "monthly"
        assert outcome.energy_granted == 0
        payments.retrieve_subscription.assert_awaited_once_with("sub_1")


class TestUnlinkedAndIgnored:
    @pytest.mark.asyncio
    async def test_unknown_event_type_is_acknowledged(self, processor):
        event = _event("evt_x", "customer.created", {"id": "cus_1"})
        outcome = await processor.process(event)
        assert outcome.handled is False
        assert outcome.reason == "ignored_event_type"
        assert (await processor.process(event)).duplicate is True

    @pytest.mark.asyncio
    async def test_unlinked_customer_is_skipped(self, processor, payments):
        outcome = await processor.process(
            _event("evt_1", "customer.subscription.created",
                   _subscription(customer="cus_unknown", account_id=None))
        )
        assert outcome.handled is False
        assert outcome.reason == "account_not_linked"
        payments.retrieve_customer.assert_awaited_once_with("cus_unknown")

    @pytest.mark.asyncio
    async def test_account_found_through_customer_pointer(self, processor):
        make_account(payment_customer_id="cus_1")
        outcome = await processor.process(
            _event("evt_1", "customer.subscription.created", _subscription(account_id=None))
        )
        assert outcome.account_id == "uid_alice"
        assert outcome.tier == "monthly"
