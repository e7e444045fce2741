"""initial account, conversation and billing tables

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- accounts ---
    op.create_table(
        "accounts",
        sa.Column("id", sa.String(128), primary_key=True),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("energy_balance", sa.Integer, nullable=False, server_default="0"),
        sa.Column("tier", sa.String(16), nullable=False, server_default="none"),
        sa.Column("payment_customer_id", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
        sa.CheckConstraint("energy_balance >= 0", name="ck_accounts_energy_balance_nonnegative"),
    )
    op.create_index("ix_accounts_payment_customer_id", "accounts", ["payment_customer_id"])

    # --- invitation_codes ---
    op.create_table(
        "invitation_codes",
        sa.Column("code", sa.String(128), primary_key=True),
        sa.Column("is_valid", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("is_used", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("used_by_email", sa.String(320), nullable=True),
        sa.Column("used_at", sa.DateTime, nullable=True),
    )

    # --- chat_turns ---
    op.create_table(
        "chat_turns",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("account_id", sa.String(128), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("turn_key", sa.String(255), nullable=False),
        sa.Column("role", sa.String(16), nullable=False),
        sa.Column("text", sa.Text, nullable=False),
        sa.Column("input_tokens", sa.Integer, nullable=True),
        sa.Column("output_tokens", sa.Integer, nullable=True),
        sa.Column("total_tokens", sa.Integer, nullable=True),
        sa.Column("usd_cost", sa.Float, nullable=True),
        sa.Column("energy_cost", sa.Integer, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.UniqueConstraint("account_id", "turn_key", name="uq_chat_turns_account_turn_key"),
    )
    op.create_index("ix_chat_turns_account_id", "chat_turns", ["account_id"])

    # --- subscription_records ---
    op.create_table(
        "subscription_records",
        sa.Column("account_id", sa.String(128), sa.ForeignKey("accounts.id"), primary_key=True),
        sa.Column("subscription_id", sa.String(255), nullable=True),
        sa.Column("customer_id", sa.String(255), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="inactive"),
        sa.Column("price_id", sa.String(255), nullable=True),
        sa.Column("plan", sa.String(16), nullable=True),
        sa.Column("current_period_end", sa.Integer, nullable=True),
        sa.Column("source_event_created", sa.Integer, nullable=True),
        sa.Column("updated_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_subscription_records_subscription_id", "subscription_records", ["subscription_id"])

    # --- processed_webhook_events ---
    op.create_table(
        "processed_webhook_events",
        sa.Column("event_id", sa.String(255), primary_key=True),
        sa.Column("event_type", sa.String(128), nullable=False),
        sa.Column("account_id", sa.String(128), nullable=True),
        sa.Column("handled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("processed_at", sa.DateTime, nullable=False),
    )

    # --- energy_grants ---
    op.create_table(
        "energy_grants",
        sa.Column("grant_key", sa.String(255), primary_key=True),
        sa.Column("account_id", sa.String(128), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("plan", sa.String(16), nullable=False),
        sa.Column("event_id", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_energy_grants_account_id", "energy_grants", ["account_id"])


def downgrade() -> None:
    op.drop_index("ix_energy_grants_account_id", table_name="energy_grants")
    op.drop_table("energy_grants")
    op.drop_table("processed_webhook_events")
    op.drop_index("ix_subscription_records_subscription_id", table_name="subscription_records")
    op.drop_table("subscription_records")
    op.drop_index("ix_chat_turns_account_id", table_name="chat_turns")
    op.drop_table("chat_turns")
    op.drop_table("invitation_codes")
    op.drop_index("ix_accounts_payment_customer_id", table_name="accounts")
    op.drop_table("accounts")
