"""
Subscription Event Processor — Stripe Lifecycle to Tier & Energy
================================================================

PURPOSE:
    Consumes verified Stripe events (at-least-once, possibly out of order)
    and keeps Account.tier, Account.energy_balance and SubscriptionRecord
    consistent with the processor's subscription state.

STATE MACHINE (per account):
    none -> monthly | annual     checkout completed / subscription active
    monthly <-> annual           plan change via subscription updated
    monthly | annual -> none     deleted, or status leaves {active, trialing}

    tier = plan  iff  status in {active, trialing}
                      and the first item's price id is a configured plan price
    otherwise tier = none

EVENTS:
    checkout.session.completed      re-fetch subscription, apply, grant
    customer.subscription.created   apply snapshot, grant
    customer.subscription.updated   apply snapshot, grant (renewal/reactivation)
    customer.subscription.deleted   tier none, plan/price/period cleared,
                                    balance untouched
    invoice.paid / .payment_succeeded / .payment_failed
                                    re-fetch subscription and reconcile, no grant

IDEMPOTENCY:
    - processed_webhook_events row keyed by event id, inserted in the SAME
      transaction as the mutation, so a replay is a no-op.
    - energy_grants row keyed "grant:{subscription_id}:{current_period_end}"
      so each billing cycle is credited at most once whichever event gets
      there first.

ORDERING:
    Snapshot events older (event.created) than the snapshot already applied
    are recorded as processed but do not overwrite state. Re-fetch events
    carry live data and always apply.

DEFENSIVE:
    Events whose account cannot be linked, or whose price matches no plan,
    are logged and acknowledged with handled=False rather than raised, since
    retries cannot fix them. Stripe or database failures propagate so the
    webhook returns 500 and Stripe retries.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from lunachat.config import settings
from lunachat.core.database import get_engine
from lunachat.models.account import TIER_NONE, Account
from lunachat.models.billing import EnergyGrant, ProcessedWebhookEvent, SubscriptionRecord
from lunachat.services.customer_link import ACCOUNT_METADATA_KEY, LEGACY_METADATA_KEYS, CustomerLinkResolver
from lunachat.services.payments_gateway import PaymentsGateway

logger = logging.getLogger(__name__)

__all__ = [
    "SubscriptionEventProcessor",
    "SubscriptionSnapshot",
    "EventOutcome",
    "derive_tier",
    "grant_key",
]

ENTITLED_STATUSES = frozenset({"active", "trialing"})
PAID_CHECKOUT_STATUSES = frozenset({"paid", "no_payment_required"})

accounts_table = Account.__table__
records_table = SubscriptionRecord.__table__
events_table = ProcessedWebhookEvent.__table__
grants_table = EnergyGrant.__table__


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def derive_tier(status: Optional[str], price_id: Optional[str], plan_prices: Dict[str, str]) -> str:
    if status not in ENTITLED_STATUSES or not price_id:
        return TIER_NONE
    return plan_prices.get(price_id, TIER_NONE)


def grant_key(subscription_id: str, period_end: int) -> str:
    return f"grant:{subscription_id}:{period_end}"


def _id_of(value: Any) -> Optional[str]:
    """Stripe fields may be an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """The fields of a Stripe subscription this service cares about."""

    subscription_id: str
    customer_id: Optional[str]
    status: str
    price_id: Optional[str]
    current_period_end: Optional[int]
    metadata: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_stripe(cls, sub: Dict[str, Any]) -> "SubscriptionSnapshot":
        items = (sub.get("items") or {}).get("data") or []
        first_item = items[0] if items else {}
        price = first_item.get("price") or first_item.get("plan") or {}
        # Newer API versions carry the period on the item, not the subscription
        period_end = sub.get("current_period_end") or first_item.get("current_period_end")
        return cls(
            subscription_id=sub["id"],
            customer_id=_id_of(sub.get("customer")),
            status=sub.get("status") or "incomplete",
            price_id=_id_of(price),
            current_period_end=int(period_end) if period_end else None,
            metadata=dict(sub.get("metadata") or {}),
        )

    def plan(self, plan_prices: Dict[str, str]) -> Optional[str]:
        return plan_prices.get(self.price_id) if self.price_id else None

    def tier(self, plan_prices: Dict[str, str]) -> str:
        return derive_tier(self.status, self.price_id, plan_prices)


@dataclass(frozen=True)
class EventOutcome:
    """Result of process(). Always acknowledged with HTTP 200."""

    event_id: str
    event_type: str
    handled: bool
    duplicate: bool = False
    account_id: Optional[str] = None
    tier: Optional[str] = None
    energy_granted: int = 0
    reason: Optional[str] = None


@dataclass
class _Mutation:
    """What a handler decided; applied atomically by _apply()."""

    account_id: str
    snapshot: Optional[SubscriptionSnapshot] = None
    clear: bool = False
    live: bool = False
    grant: bool = False
    customer_id: Optional[str] = None


class _Skip(Exception):
    """Handler decided the event cannot be applied (acknowledged, handled=False)."""

    def __init__(self, reason: str, account_id: Optional[str] = None) -> None:
        self.reason = reason
        self.account_id = account_id
        super().__init__(reason)


# ---------------------------------------------------------------------------
# Processor
# ---------------------------------------------------------------------------

class SubscriptionEventProcessor:
    def __init__(
        self,
        payments: PaymentsGateway,
        link_resolver: CustomerLinkResolver,
        plan_prices: Optional[Dict[str, str]] = None,
        grant_for_plan: Optional[Callable[[str], int]] = None,
    ) -> None:
        self._payments = payments
        self._links = link_resolver
        self._plan_prices = plan_prices if plan_prices is not None else settings.plan_price_ids()
        self._grant_for_plan = grant_for_plan or settings.energy_grant_for_plan
        self._handlers = {
            "checkout.session.completed": self._on_checkout_completed,
            "customer.subscription.created": self._on_subscription_changed,
            "customer.subscription.updated": self._on_subscription_changed,
            "customer.subscription.deleted": self._on_subscription_deleted,
            "invoice.paid": self._on_invoice,
            "invoice.payment_succeeded": self._on_invoice,
            "invoice.payment_failed": self._on_invoice,
        }

    async def process(self, event: Dict[str, Any]) -> EventOutcome:
        event_id = event["id"]
        event_type = event["type"]
        created = int(event.get("created") or 0)

        if self._already_processed(event_id):
            logger.info("Duplicate webhook event %s (%s) ignored", event_id, event_type)
            return EventOutcome(event_id, event_type, handled=True, duplicate=True)

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info("Unhandled Stripe event type %s", event_type)
            return self._acknowledge(event_id, event_type, "ignored_event_type")

        obj = (event.get("data") or {}).get("object") or {}
        try:
            mutation = await handler(obj)
        except _Skip as skip:
            logger.warning(
                "Stripe event %s (%s) skipped: %s",
                event_id,
                event_type,
                skip.reason,
                extra={"account_id": skip.account_id},
            )
            return self._acknowledge(event_id, event_type, skip.reason, skip.account_id)

        return self._apply(event_id, event_type, created, mutation)

    # ------------------------------------------------------------------
    # Handlers: decide, never write
    # ------------------------------------------------------------------

    async def _on_checkout_completed(self, session: Dict[str, Any]) -> _Mutation:
        if session.get("mode") != "subscription":
            raise _Skip("not_subscription_checkout")
        if session.get("payment_status") not in PAID_CHECKOUT_STATUSES:
            raise _Skip("checkout_not_paid")
        subscription_id = _id_of(session.get("subscription"))
        if not subscription_id:
            raise _Skip("checkout_without_subscription")

        customer_id = _id_of(session.get("customer"))
        metadata = session.get("metadata") or {}
        account_id = await self._resolve_account(
            metadata.get(ACCOUNT_METADATA_KEY) or session.get("client_reference_id"),
            customer_id,
        )

        snapshot = SubscriptionSnapshot.from_stripe(
            await self._payments.retrieve_subscription(subscription_id)
        )
        self._require_known_plan(snapshot, account_id)
        return _Mutation(
            account_id=account_id,
            snapshot=snapshot,
            live=True,
            grant=True,
            customer_id=customer_id or snapshot.customer_id,
        )

    async def _on_subscription_changed(self, sub: Dict[str, Any]) -> _Mutation:
        snapshot = SubscriptionSnapshot.from_stripe(sub)
        account_id = await self._resolve_account(
            self._metadata_account(snapshot.metadata), snapshot.customer_id
        )
        self._require_known_plan(snapshot, account_id)
        return _Mutation(
            account_id=account_id,
            snapshot=snapshot,
            grant=True,
            customer_id=snapshot.customer_id,
        )

    async def _on_subscription_deleted(self, sub: Dict[str, Any]) -> _Mutation:
        snapshot = SubscriptionSnapshot.from_stripe(sub)
        account_id = await self._resolve_account(
            self._metadata_account(snapshot.metadata), snapshot.customer_id
        )
        return _Mutation(account_id=account_id, snapshot=snapshot, clear=True)

    async def _on_invoice(self, invoice: Dict[str, Any]) -> _Mutation:
        subscription_id = _id_of(invoice.get("subscription"))
        if not subscription_id:
            # API 2025-03-31+: invoice.parent.subscription_details.subscription
            details = ((invoice.get("parent") or {}).get("subscription_details") or {})
            subscription_id = _id_of(details.get("subscription"))
        if not subscription_id:
            raise _Skip("invoice_without_subscription")

        snapshot = SubscriptionSnapshot.from_stripe(
            await self._payments.retrieve_subscription(subscription_id)
        )
        account_id = await self._resolve_account(
            self._metadata_account(snapshot.metadata),
            snapshot.customer_id or _id_of(invoice.get("customer")),
        )
        self._require_known_plan(snapshot, account_id)
        return _Mutation(
            account_id=account_id,
            snapshot=snapshot,
            live=True,
            customer_id=snapshot.customer_id,
        )

    # ------------------------------------------------------------------
    # Account resolution
    # ------------------------------------------------------------------

    @staticmethod
    def _metadata_account(metadata: Dict[str, str]) -> Optional[str]:
        for key in (ACCOUNT_METADATA_KEY, *LEGACY_METADATA_KEYS):
            if metadata.get(key):
                return metadata[key]
        return None

    async def _resolve_account(self, hinted_account_id: Optional[str], customer_id: Optional[str]) -> str:
        if hinted_account_id and self._account_exists(hinted_account_id):
            return hinted_account_id
        account_id = await self._links.account_for_customer(customer_id)
        if account_id:
            return account_id
        raise _Skip("account_not_linked", hinted_account_id)

    def _require_known_plan(self, snapshot: SubscriptionSnapshot, account_id: str) -> None:
        if snapshot.status in ENTITLED_STATUSES and snapshot.plan(self._plan_prices) is None:
            raise _Skip(f"unknown_plan_price:{snapshot.price_id}", account_id)

    @staticmethod
    def _account_exists(account_id: str) -> bool:
        engine = get_engine()
        with engine.connect() as conn:
            return conn.execute(
                select(accounts_table.c.id).where(accounts_table.c.id == account_id)
            ).first() is not None

    @staticmethod
    def _already_processed(event_id: str) -> bool:
        engine = get_engine()
        with engine.connect() as conn:
            return conn.execute(
                select(events_table.c.event_id).where(events_table.c.event_id == event_id)
            ).first() is not None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _acknowledge(
        self,
        event_id: str,
        event_type: str,
        reason: str,
        account_id: Optional[str] = None,
    ) -> EventOutcome:
        """Record a skipped event so replays short-circuit."""
        engine = get_engine()
        try:
            with engine.begin() as conn:
                self._mark_processed(conn, event_id, event_type, account_id, handled=False)
        except IntegrityError:
            return EventOutcome(event_id, event_type, handled=True, duplicate=True)
        return EventOutcome(event_id, event_type, handled=False, account_id=account_id, reason=reason)

    def _apply(self, event_id: str, event_type: str, created: int, m: _Mutation) -> EventOutcome:
        now = datetime.now(timezone.utc)
        engine = get_engine()
        try:
            with engine.begin() as conn:
                self._mark_processed(conn, event_id, event_type, m.account_id, handled=True)

                existing = conn.execute(
                    select(records_table).where(records_table.c.account_id == m.account_id)
                ).mappings().first()

                if self._is_superseded(existing, m, created):
                    logger.info(
                        "Stripe event %s for %s is older than applied snapshot, state unchanged",
                        event_id,
                        m.account_id,
                    )
                    return EventOutcome(
                        event_id, event_type, handled=True, account_id=m.account_id, reason="stale_event"
                    )

                tier = self._write_record(conn, existing, m, created, now)
                conn.execute(
                    accounts_table.update()
                    .where(accounts_table.c.id == m.account_id)
                    .values(tier=tier, updated_at=now)
                )
                if m.customer_id:
                    conn.execute(
                        accounts_table.update()
                        .where(accounts_table.c.id == m.account_id)
                        .where(accounts_table.c.payment_customer_id.is_(None))
                        .values(payment_customer_id=m.customer_id)
                    )

                granted = 0
                if m.grant and tier != TIER_NONE:
                    granted = self._grant_cycle(conn, m, tier, event_id, now)
        except IntegrityError:
            # A concurrent delivery of the same event committed first
            logger.info("Webhook event %s committed concurrently, treating as duplicate", event_id)
            return EventOutcome(event_id, event_type, handled=True, duplicate=True, account_id=m.account_id)

        logger.info(
            "subscription_event_applied",
            extra={
                "stripe.event_id": event_id,
                "stripe.event_type": event_type,
                "account_id": m.account_id,
                "tier": tier,
                "energy_granted": granted,
            },
        )
        return EventOutcome(
            event_id,
            event_type,
            handled=True,
            account_id=m.account_id,
            tier=tier,
            energy_granted=granted,
        )

    @staticmethod
    def _mark_processed(
        conn: Connection,
        event_id: str,
        event_type: str,
        account_id: Optional[str],
        handled: bool,
    ) -> None:
        conn.execute(
            events_table.insert().values(
                event_id=event_id,
                event_type=event_type,
                account_id=account_id,
                handled=handled,
                processed_at=datetime.now(timezone.utc),
            )
        )

    @staticmethod
    def _is_superseded(existing, m: _Mutation, created: int) -> bool:
        if existing is None or m.snapshot is None:
            return False
        # A different (older or newer) subscription must not clear the current one
        if m.clear and existing["subscription_id"] and existing["subscription_id"] != m.snapshot.subscription_id:
            return True
        if m.live:
            return False
        applied = existing["source_event_created"]
        return bool(applied) and created < applied

    def _write_record(self, conn: Connection, existing, m: _Mutation, created: int, now: datetime) -> str:
        snap = m.snapshot
        if m.clear:
            values = {
                "subscription_id": snap.subscription_id if snap else None,
                "customer_id": snap.customer_id if snap else None,
                "status": "canceled",
                "price_id": None,
                "plan": None,
                "current_period_end": None,
            }
            tier = TIER_NONE
        else:
            tier = snap.tier(self._plan_prices)
            values = {
                "subscription_id": snap.subscription_id,
                "customer_id": snap.customer_id,
                "status": snap.status,
                "price_id": snap.price_id,
                "plan": snap.plan(self._plan_prices),
                "current_period_end": snap.current_period_end,
            }

        previous = existing["source_event_created"] if existing is not None else None
        values["source_event_created"] = max(previous or 0, created) or None
        values["updated_at"] = now

        if existing is None:
            conn.execute(records_table.insert().values(account_id=m.account_id, **values))
        else:
            conn.execute(
                records_table.update()
                .where(records_table.c.account_id == m.account_id)
                .values(**values)
            )
        return tier

    def _grant_cycle(self, conn: Connection, m: _Mutation, tier: str, event_id: str, now: datetime) -> int:
        snap = m.snapshot
        if snap is None or snap.current_period_end is None:
            logger.warning("No billing period on subscription for %s, energy not granted", m.account_id)
            return 0

        key = grant_key(snap.subscription_id, snap.current_period_end)
        already = conn.execute(
            select(grants_table.c.grant_key).where(grants_table.c.grant_key == key)
        ).first()
        if already is not None:
            return 0

        amount = self._grant_for_plan(tier)
        if amount <= 0:
            return 0
        conn.execute(
            grants_table.insert().values(
                grant_key=key,
                account_id=m.account_id,
                amount=amount,
                plan=tier,
                event_id=event_id,
                created_at=now,
            )
        )
        conn.execute(
            accounts_table.update()
            .where(accounts_table.c.id == m.account_id)
            .values(energy_balance=accounts_table.c.energy_balance + amount)
        )
        logger.info("Granted %d energy to %s for cycle %s", amount, m.account_id, key)
        return amount
