"""
Account Service
===============

Account provisioning and the read side of account state:
- provision(): create the Account row for a verified identity (idempotent)
- get_account() / summary(): balance, tier and subscription record
- history(): persisted chat turns in ledger order

Balance and tier are never written here.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from lunachat.config import settings
from lunachat.core.database import get_session_context
from lunachat.core.errors import AccountNotFoundError
from lunachat.models.account import Account
from lunachat.models.billing import SubscriptionRecord
from lunachat.models.conversation import ChatTurn

logger = logging.getLogger(__name__)


class AccountService:
    def provision(self, account_id: str, email: Optional[str]) -> Account:
        """Create the account if it does not exist yet; return it either way."""
        with get_session_context() as session:
            account = session.get(Account, account_id)
            if account is not None:
                return account
            account = Account(id=account_id, email=email)
            session.add(account)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.info("Account %s provisioned concurrently", account_id)
                return session.get(Account, account_id)
            session.refresh(account)
            logger.info("Provisioned account %s", account_id)
            return account

    def get_account(self, account_id: str) -> Account:
        with get_session_context() as session:
            account = session.get(Account, account_id)
            if account is None:
                raise AccountNotFoundError(account_id)
            return account

    def summary(self, account_id: str) -> Dict[str, Any]:
        with get_session_context() as session:
            account = session.get(Account, account_id)
            if account is None:
                raise AccountNotFoundError(account_id)
            record = session.get(SubscriptionRecord, account_id)
            return {
                "accountId": account.id,
                "email": account.email,
                "energyBalance": account.energy_balance,
                "tier": account.tier,
                "subscription": (
                    {
                        "status": record.status,
                        "plan": record.plan,
                        "currentPeriodEnd": record.current_period_end,
                    }
                    if record is not None
                    else None
                ),
            }

    def history(self, account_id: str, limit: Optional[int] = None) -> List[ChatTurn]:
        """Most recent ``limit`` turns, returned in ascending ledger order."""
        limit = limit or settings.history_page_limit
        with get_session_context() as session:
            rows = session.exec(
                select(ChatTurn)
                .where(ChatTurn.account_id == account_id)
                .order_by(ChatTurn.id.desc())
                .limit(limit)
            ).all()
        return list(reversed(rows))


account_service = AccountService()
