"""
Usage Recorder — Atomic Debit & Ledger Append
=============================================

PURPOSE:
    Commits a completed model exchange in ONE database transaction:

    1. insert the user turn if its turn_key is not already present
       (it is normally written eagerly before the model call);
    2. conditional debit:
           UPDATE accounts SET energy_balance = energy_balance - :cost
           WHERE id = :id AND energy_balance >= :cost
       zero rows updated -> roll back and raise InvariantViolationError;
    3. insert the assistant turn with its cost fields;
    4. read back the new balance.

    The conditional UPDATE re-reads the live balance inside the transaction,
    so a concurrent request that spent the balance after admission makes
    this commit abort instead of going negative.

IDEMPOTENCY:
    Every turn carries a ``turn_key`` that is unique per account. The key is
    a digest of the request id and the message text ("<digest>:user",
    "<digest>:assistant"), so a request id reused for a different message
    starts a new exchange. A replayed commit for the same exchange hits the
    (account_id, turn_key) constraint and rolls back, so it can neither
    double-append nor double-debit.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from lunachat.core.database import get_engine
from lunachat.core.errors import AccountNotFoundError, InvariantViolationError
from lunachat.models.account import Account
from lunachat.models.conversation import ROLE_ASSISTANT, ROLE_USER, ChatTurn
from lunachat.services.cost_estimator import ActualCost

logger = logging.getLogger(__name__)

accounts_table = Account.__table__
turns_table = ChatTurn.__table__


def exchange_digest(request_id: str, message: str) -> str:
    return hashlib.sha256(f"{request_id}\x00{message}".encode("utf-8")).hexdigest()


def user_turn_key(request_id: str, message: str) -> str:
    return f"{exchange_digest(request_id, message)}:user"


def assistant_turn_key(request_id: str, message: str) -> str:
    return f"{exchange_digest(request_id, message)}:assistant"


@dataclass(frozen=True)
class PendingTurn:
    """A user turn that may or may not already be persisted."""

    turn_key: str
    text: str
    role: str = ROLE_USER


@dataclass(frozen=True)
class RecordedUsage:
    new_balance: int
    assistant_turn_id: int
    user_turn_inserted: bool


class UsageRecorder:
    """Writes conversation turns and debits energy atomically."""

    # ------------------------------------------------------------------
    # Eager user-turn write (before the model call)
    # ------------------------------------------------------------------

    def persist_user_turn(self, account_id: str, turn: PendingTurn) -> bool:
        """Persist the user turn on its own. Returns False if it already existed."""
        engine = get_engine()
        try:
            with engine.begin() as conn:
                return self._insert_turn_if_absent(conn, account_id, turn)
        except IntegrityError:
            logger.info("User turn already persisted: %s", turn.turn_key)
            return False

    # ------------------------------------------------------------------
    # Post-call commit
    # ------------------------------------------------------------------

    def record(
        self,
        account_id: str,
        assistant_text: str,
        cost: ActualCost,
        assistant_key: str,
        user_turn: Optional[PendingTurn] = None,
    ) -> RecordedUsage:
        """Append the exchange and debit ``cost.energy`` in one transaction.

        Raises:
            InvariantViolationError: the debit would make the balance negative.
                Nothing is committed, including the user turn if it was passed in.
            AccountNotFoundError: the account row is gone.
        """
        if cost.energy < 0:
            raise ValueError(f"Energy cost must be non-negative: {cost.energy}")

        now = datetime.now(timezone.utc)
        engine = get_engine()
        with engine.begin() as conn:
            user_inserted = False
            if user_turn is not None:
                user_inserted = self._insert_turn_if_absent(conn, account_id, user_turn)

            result = conn.execute(
                accounts_table.update()
                .where(
                    accounts_table.c.id == account_id,
                    accounts_table.c.energy_balance >= cost.energy,
                )
                .values(
                    energy_balance=accounts_table.c.energy_balance - cost.energy,
                    updated_at=now,
                )
            )
            if result.rowcount != 1:
                current = conn.execute(
                    select(accounts_table.c.energy_balance).where(accounts_table.c.id == account_id)
                ).scalar()
                if current is None:
                    raise AccountNotFoundError(account_id)
                raise InvariantViolationError(
                    reply=assistant_text,
                    account_id=account_id,
                    current_balance=current,
                    cost=cost.energy,
                )

            inserted = conn.execute(
                turns_table.insert().values(
                    account_id=account_id,
                    turn_key=assistant_key,
                    role=ROLE_ASSISTANT,
                    text=assistant_text,
                    input_tokens=cost.input_tokens,
                    output_tokens=cost.output_tokens,
                    total_tokens=cost.total_tokens,
                    usd_cost=cost.usd,
                    energy_cost=cost.energy,
                    created_at=now,
                )
            )
            assistant_turn_id = inserted.inserted_primary_key[0]

            new_balance = conn.execute(
                select(accounts_table.c.energy_balance).where(accounts_table.c.id == account_id)
            ).scalar_one()

        logger.info(
            "usage_recorded",
            extra={
                "account_id": account_id,
                "cost.energy": cost.energy,
                "cost.usd": round(cost.usd, 6),
                "tokens.input": cost.input_tokens,
                "tokens.output": cost.output_tokens,
                "balance.new": new_balance,
            },
        )
        return RecordedUsage(
            new_balance=new_balance,
            assistant_turn_id=assistant_turn_id,
            user_turn_inserted=user_inserted,
        )

    def find_recorded(self, account_id: str, assistant_key: str) -> Optional[tuple]:
        """Return (assistant turn row, current balance) if this exchange was already committed."""
        engine = get_engine()
        with engine.connect() as conn:
            row = conn.execute(
                select(turns_table).where(
                    turns_table.c.turn_key == assistant_key,
                    turns_table.c.account_id == account_id,
                )
            ).mappings().first()
            if row is None:
                return None
            balance = conn.execute(
                select(accounts_table.c.energy_balance).where(accounts_table.c.id == account_id)
            ).scalar_one()
        return row, balance

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _insert_turn_if_absent(conn: Connection, account_id: str, turn: PendingTurn) -> bool:
        existing = conn.execute(
            select(turns_table.c.id).where(
                turns_table.c.account_id == account_id,
                turns_table.c.turn_key == turn.turn_key,
            )
        ).first()
        if existing is not None:
            return False
        conn.execute(
            turns_table.insert().values(
                account_id=account_id,
                turn_key=turn.turn_key,
                role=turn.role,
                text=turn.text,
                created_at=datetime.now(timezone.utc),
            )
        )
        return True


usage_recorder = UsageRecorder()
