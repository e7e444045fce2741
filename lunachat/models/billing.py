"""
Billing Models
==============

SQLModel tables for subscription state derived from payment-processor events:
- SubscriptionRecord: latest applied subscription snapshot per account.
- ProcessedWebhookEvent: event ids already applied (at-least-once dedupe).
- EnergyGrant: one row per billing cycle that has been credited.

All three are written inside the same transaction as the account mutation
they describe.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlmodel import Field, SQLModel


class SubscriptionRecord(SQLModel, table=True):
    """Stripe subscription state for an account."""

    __tablename__ = "subscription_records"

    account_id: str = Field(primary_key=True, foreign_key="accounts.id", max_length=128)
    subscription_id: Optional[str] = Field(default=None, index=True, max_length=255)
    customer_id: Optional[str] = Field(default=None, max_length=255)
    status: str = Field(default="inactive", max_length=32)
    price_id: Optional[str] = Field(default=None, max_length=255)
    plan: Optional[str] = Field(default=None, max_length=16)
    current_period_end: Optional[int] = Field(default=None)
    # event.created of the snapshot last applied, used to drop stale events
    source_event_created: Optional[int] = Field(default=None)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ProcessedWebhookEvent(SQLModel, table=True):
    __tablename__ = "processed_webhook_events"

    event_id: str = Field(primary_key=True, max_length=255)
    event_type: str = Field(max_length=128)
    account_id: Optional[str] = Field(default=None, max_length=128)
    handled: bool = Field(default=True)
    processed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class EnergyGrant(SQLModel, table=True):
    """Marker that a billing cycle's energy has been credited."""

    __tablename__ = "energy_grants"

    grant_key: str = Field(primary_key=True, max_length=255)
    account_id: str = Field(foreign_key="accounts.id", index=True, max_length=128)
    amount: int
    plan: str = Field(max_length=16)
    event_id: Optional[str] = Field(default=None, max_length=255)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
