"""
Account Models
==============

SQLModel tables for per-user account state:
- Account: energy balance, subscription tier and the cached payment
  customer pointer.
- InvitationCode: one-time access codes consumed at registration.

The balance is only ever written with arithmetic UPDATE statements
(see UsageRecorder and SubscriptionEventProcessor); the CHECK constraint
backs the non-negative invariant at the storage layer.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import CheckConstraint
from sqlmodel import Field, SQLModel

TIER_NONE = "none"
TIER_MONTHLY = "monthly"
TIER_ANNUAL = "annual"
TIERS = (TIER_NONE, TIER_MONTHLY, TIER_ANNUAL)


class Account(SQLModel, table=True):
    """One row per identity-provider user."""

    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("energy_balance >= 0", name="ck_accounts_energy_balance_nonnegative"),
    )

    id: str = Field(primary_key=True, max_length=128)
    email: Optional[str] = Field(default=None, max_length=320)
    energy_balance: int = Field(default=0)
    tier: str = Field(default=TIER_NONE, max_length=16)
    payment_customer_id: Optional[str] = Field(default=None, index=True, max_length=255)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class InvitationCode(SQLModel, table=True):
    """A one-time invitation code. Issuance happens out of band."""

    __tablename__ = "invitation_codes"

    code: str = Field(primary_key=True, max_length=128)
    is_valid: bool = Field(default=True)
    is_used: bool = Field(default=False)
    used_by_email: Optional[str] = Field(default=None, max_length=320)
    used_at: Optional[datetime] = Field(default=None)
