"""
Checkout Service
================

Hosted Stripe pages for the signed-in account:
- create_checkout(): subscription Checkout Session for a plan
- create_portal(): self-service billing portal session

Both resolve the account's customer through CustomerLinkResolver first, so
every session is bound to a customer that carries metadata.account_id.
The checkout session and its subscription also carry account_id, which is
how checkout.session.completed finds the account without a lookup.
"""

from __future__ import annotations

import logging
from typing import Dict

from lunachat.auth.identity import AuthenticatedUser
from lunachat.config import settings
from lunachat.core.errors import ConfigurationError, RequestValidationFailed
from lunachat.services.account_service import AccountService, account_service
from lunachat.services.customer_link import ACCOUNT_METADATA_KEY, CustomerLinkResolver
from lunachat.services.payments_gateway import PaymentsGateway

logger = logging.getLogger(__name__)

PLANS = ("monthly", "annual")


class CheckoutService:
    def __init__(
        self,
        payments: PaymentsGateway,
        links: CustomerLinkResolver,
        accounts: AccountService = account_service,
    ) -> None:
        self._payments = payments
        self._links = links
        self._accounts = accounts

    async def _customer_for(self, user: AuthenticatedUser) -> str:
        account = self._accounts.get_account(user.user_id)
        return await self._links.resolve(account.id, account.email or user.email)

    async def create_checkout(self, user: AuthenticatedUser, plan: str) -> Dict[str, str]:
        if plan not in PLANS:
            raise RequestValidationFailed(
                f"unknown plan {plan!r}",
                public={"details": f"Plan must be one of: {', '.join(PLANS)}."},
            )
        price_id = settings.price_id_for_plan(plan)
        if not price_id:
            raise ConfigurationError("payments", detail=f"no Stripe price configured for plan {plan}")

        customer_id = await self._customer_for(user)
        base = settings.public_url.rstrip("/")
        session = await self._payments.create_checkout_session({
            "mode": "subscription",
            "customer": customer_id,
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": f"{base}/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{base}/subscribe",
            "client_reference_id": user.user_id,
            "metadata": {ACCOUNT_METADATA_KEY: user.user_id, "plan": plan},
            "subscription_data": {"metadata": {ACCOUNT_METADATA_KEY: user.user_id}},
        })
        logger.info("Checkout session %s created for %s (%s)", session.get("id"), user.user_id, plan)
        return {"url": session["url"], "sessionId": session["id"]}

    async def create_portal(self, user: AuthenticatedUser) -> Dict[str, str]:
        customer_id = await self._customer_for(user)
        base = settings.public_url.rstrip("/")
        session = await self._payments.create_portal_session(customer_id, return_url=f"{base}/subscription")
        return {"url": session["url"]}
