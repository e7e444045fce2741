"""
Customer Link Resolver
======================

PURPOSE:
    Maintains the bidirectional link between an Account and its Stripe
    customer:

        Account.payment_customer_id   ->  customer id       (cached pointer)
        customer.metadata["account_id"] ->  account id      (back-reference)

    resolve() is idempotent and self-healing:
      1. cached pointer -> customer exists and is not deleted -> use it
      2. else list customers by email (limit 100) -> first non-deleted one
         that is not linked to a different account
      3. else create a customer carrying metadata.account_id; the idempotency
         key names the pointer being replaced, so a customer deleted inside
         Stripe's replay window is never handed back
    and on success always ensures the back-reference and rewrites the pointer.

    account_for_customer() walks the link the other way for webhooks and
    repairs the cached pointer when it had to fall back to metadata.

    Customers created before the account_id key existed carry the identity
    subject under "firebaseUid"; both keys are honoured when reading.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import select

from lunachat.core.database import get_engine
from lunachat.core.errors import CustomerLinkError, UpstreamProviderError
from lunachat.models.account import Account
from lunachat.services.payments_gateway import PaymentsGateway

logger = logging.getLogger(__name__)

ACCOUNT_METADATA_KEY = "account_id"
LEGACY_METADATA_KEYS = ("firebaseUid",)

accounts_table = Account.__table__


def linked_account_id(customer: Dict[str, Any]) -> Optional[str]:
    """Account id recorded on a customer's metadata, if any."""
    metadata = customer.get("metadata") or {}
    for key in (ACCOUNT_METADATA_KEY, *LEGACY_METADATA_KEYS):
        value = metadata.get(key)
        if value:
            return value
    return None


class CustomerLinkResolver:
    def __init__(self, payments: PaymentsGateway) -> None:
        self._payments = payments

    # ------------------------------------------------------------------
    # account -> customer
    # ------------------------------------------------------------------

    async def resolve(self, account_id: str, email: Optional[str]) -> str:
        """Return the Stripe customer id for ``account_id``, creating one if needed.

        Raises:
            CustomerLinkError: Stripe could not be reached or refused the calls.
        """
        cached_id = self._read_pointer(account_id)
        try:
            customer = await self._from_cached_pointer(account_id, cached_id)
            if customer is None and email:
                customer = await self._from_email(account_id, email)
            if customer is None:
                customer = await self._payments.create_customer(
                    email=email,
                    metadata={ACCOUNT_METADATA_KEY: account_id},
                    idempotency_key=f"lunachat-customer:{account_id}:{cached_id or 'initial'}",
                )
                logger.info("Created Stripe customer %s for account %s", customer["id"], account_id)
        except UpstreamProviderError as exc:
            raise CustomerLinkError(account_id, detail=exc.detail) from exc

        if customer.get("deleted"):
            raise CustomerLinkError(account_id, detail=f"Stripe returned deleted customer {customer['id']}")

        customer_id = customer["id"]
        await self._ensure_back_reference(customer, account_id)
        self._write_pointer(account_id, customer_id)
        return customer_id

    async def _from_cached_pointer(self, account_id: str, cached_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not cached_id:
            return None
        customer = await self._payments.retrieve_customer(cached_id)
        if customer is None or customer.get("deleted"):
            logger.warning(
                "Cached Stripe customer %s for account %s is missing or deleted, searching by email",
                cached_id,
                account_id,
            )
            return None
        return customer

    async def _from_email(self, account_id: str, email: str) -> Optional[Dict[str, Any]]:
        for customer in await self._payments.find_customers_by_email(email, limit=100):
            if customer.get("deleted"):
                continue
            owner = linked_account_id(customer)
            if owner and owner != account_id:
                logger.warning(
                    "Stripe customer %s with email match belongs to account %s, skipping",
                    customer.get("id"),
                    owner,
                )
                continue
            logger.info("Found Stripe customer %s by email for account %s", customer["id"], account_id)
            return customer
        return None

    async def _ensure_back_reference(self, customer: Dict[str, Any], account_id: str) -> None:
        metadata = customer.get("metadata") or {}
        if metadata.get(ACCOUNT_METADATA_KEY) == account_id:
            return
        try:
            await self._payments.update_customer_metadata(
                customer["id"], {ACCOUNT_METADATA_KEY: account_id}
            )
        except UpstreamProviderError as exc:
            # Pointer is still written; the next resolve() retries the metadata
            logger.error(
                "Failed to set account metadata on Stripe customer %s: %s",
                customer["id"],
                exc.detail,
            )

    # ------------------------------------------------------------------
    # customer -> account
    # ------------------------------------------------------------------

    async def account_for_customer(self, customer_id: Optional[str]) -> Optional[str]:
        """Find the account linked to ``customer_id``; None if it cannot be linked."""
        if not customer_id:
            return None

        engine = get_engine()
        with engine.connect() as conn:
            account_id = conn.execute(
                select(accounts_table.c.id).where(accounts_table.c.payment_customer_id == customer_id)
            ).scalar()
        if account_id:
            return account_id

        customer = await self._payments.retrieve_customer(customer_id)
        if customer is None or customer.get("deleted"):
            return None
        account_id = linked_account_id(customer)
        if not account_id:
            return None
        if not self._write_pointer(account_id, customer_id):
            logger.warning("Stripe customer %s references unknown account %s", customer_id, account_id)
            return None
        logger.info("Repaired customer pointer %s -> %s", account_id, customer_id)
        return account_id

    # ------------------------------------------------------------------
    # Cached pointer
    # ------------------------------------------------------------------

    @staticmethod
    def _read_pointer(account_id: str) -> Optional[str]:
        engine = get_engine()
        with engine.connect() as conn:
            return conn.execute(
                select(accounts_table.c.payment_customer_id).where(accounts_table.c.id == account_id)
            ).scalar()

    @staticmethod
    def _write_pointer(account_id: str, customer_id: str) -> bool:
        """Store the pointer. Returns False if the account does not exist."""
        engine = get_engine()
        with engine.begin() as conn:
            result = conn.execute(
                accounts_table.update()
                .where(accounts_table.c.id == account_id)
                .values(payment_customer_id=customer_id, updated_at=datetime.now(timezone.utc))
            )
        return result.rowcount == 1
