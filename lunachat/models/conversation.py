"""
Conversation Models
===================

ChatTurn: append-only conversation history. The autoincrement ``id`` is the
monotonic ordering key; ``turn_key`` is the idempotency key of a turn, unique
per account, so a retried commit can never append the same turn twice.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"


class ChatTurn(SQLModel, table=True):
    """A single persisted user or assistant turn."""

    __tablename__ = "chat_turns"
    __table_args__ = (UniqueConstraint("account_id", "turn_key", name="uq_chat_turns_account_turn_key"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    account_id: str = Field(foreign_key="accounts.id", index=True, max_length=128)
    turn_key: str = Field(max_length=255)
    role: str = Field(max_length=16)
    text: str
    input_tokens: Optional[int] = Field(default=None)
    output_tokens: Optional[int] = Field(default=None)
    total_tokens: Optional[int] = Field(default=None)
    usd_cost: Optional[float] = Field(default=None)
    energy_cost: Optional[int] = Field(default=None)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
