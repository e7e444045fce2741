"""
Payments Gateway — Stripe Client Wrapper
========================================

PURPOSE:
    The one place that talks to Stripe. Wraps an explicitly constructed
    ``stripe.StripeClient`` and exposes async methods that return plain
    dicts, so the rest of the service (and its tests) never handles SDK
    objects.

    - Customers: retrieve / list-by-email / create / update metadata
    - Subscriptions: retrieve (live reconciliation for webhooks)
    - Checkout & billing-portal sessions
    - Webhook signature verification

    SDK calls are synchronous and run in a worker thread via run_sync().
    Any stripe.StripeError or timeout is raised as UpstreamProviderError
    (LUNA-PAY-001).
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

import stripe

from lunachat.config import settings
from lunachat.core.async_utils import run_sync
from lunachat.core.errors import UpstreamProviderError, WebhookVerificationError

logger = logging.getLogger(__name__)

__all__ = ["PaymentsGateway"]

STRIPE_TIMEOUT_S = 20


def _plain(obj: Any) -> Dict[str, Any]:
    """Convert a StripeObject (or dict) into plain nested dicts."""
    if obj is None:
        return {}
    if isinstance(obj, dict) and not isinstance(obj, stripe.StripeObject):
        return obj
    return json.loads(str(obj))


class PaymentsGateway:
    """Async facade over stripe.StripeClient."""

    def __init__(
        self,
        client: stripe.StripeClient,
        webhook_secret: Optional[str] = None,
        webhook_tolerance_s: Optional[int] = None,
    ) -> None:
        self._client = client
        self._webhook_secret = webhook_secret
        self._tolerance = webhook_tolerance_s or settings.stripe_webhook_tolerance_s

    @classmethod
    def from_settings(cls) -> "PaymentsGateway":
        if not settings.stripe_secret_key:
            raise ValueError("LUNACHAT_STRIPE_SECRET_KEY is not set")
        return cls(
            client=stripe.StripeClient(settings.stripe_secret_key),
            webhook_secret=settings.stripe_webhook_secret,
        )

    # ------------------------------------------------------------------
    # Internal call wrapper
    # ------------------------------------------------------------------

    async def _call(self, operation: str, func, *args, **kwargs) -> Any:
        try:
            return await run_sync(func, *args, timeout=STRIPE_TIMEOUT_S, **kwargs)
        except stripe.StripeError as exc:
            logger.error("Stripe %s failed: %s", operation, exc)
            raise UpstreamProviderError(
                "stripe",
                detail=f"{operation}: {exc}",
                code="LUNA-PAY-001",
                context={"operation": operation, "stripe.code": getattr(exc, "code", None)},
            ) from exc
        except TimeoutError as exc:
            logger.error("Stripe %s timed out: %s", operation, exc)
            raise UpstreamProviderError(
                "stripe",
                detail=f"{operation}: {exc}",
                code="LUNA-PAY-001",
                context={"operation": operation},
            ) from exc

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    async def retrieve_customer(self, customer_id: str) -> Optional[Dict[str, Any]]:
        """Return the customer, or None if Stripe has no such customer."""
        try:
            customer = await run_sync(
                self._client.v1.customers.retrieve, customer_id, timeout=STRIPE_TIMEOUT_S
            )
        except stripe.InvalidRequestError as exc:
            if getattr(exc, "code", None) == "resource_missing":
                return None
            raise UpstreamProviderError(
                "stripe", detail=f"retrieve_customer: {exc}", code="LUNA-PAY-001"
            ) from exc
        except (stripe.StripeError, TimeoutError) as exc:
            raise UpstreamProviderError(
                "stripe", detail=f"retrieve_customer: {exc}", code="LUNA-PAY-001"
            ) from exc
        return _plain(customer)

    async def find_customers_by_email(self, email: str, limit: int = 100) -> List[Dict[str, Any]]:
        result = await self._call(
            "list_customers",
            self._client.v1.customers.list,
            params={"email": email, "limit": limit},
        )
        return _plain(result).get("data", [])

    async def create_customer(
        self,
        email: Optional[str],
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"metadata": metadata}
        if email:
            params["email"] = email
        options = {"idempotency_key": idempotency_key} if idempotency_key else None
        customer = await self._call(
            "create_customer",
            self._client.v1.customers.create,
            params=params,
            options=options,
        )
        return _plain(customer)

    async def update_customer_metadata(self, customer_id: str, metadata: Dict[str, str]) -> Dict[str, Any]:
        customer = await self._call(
            "update_customer",
            self._client.v1.customers.update,
            customer_id,
            params={"metadata": metadata},
        )
        return _plain(customer)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        subscription = await self._call(
            "retrieve_subscription",
            self._client.v1.subscriptions.retrieve,
            subscription_id,
        )
        return _plain(subscription)

    # ------------------------------------------------------------------
    # Hosted sessions
    # ------------------------------------------------------------------

    async def create_checkout_session(self, params: Dict[str, Any]) -> Dict[str, Any]:
        session = await self._call(
            "create_checkout_session",
            self._client.v1.checkout.sessions.create,
            params=params,
        )
        return _plain(session)

    async def create_portal_session(self, customer_id: str, return_url: str) -> Dict[str, Any]:
        session = await self._call(
            "create_portal_session",
            self._client.v1.billing_portal.sessions.create,
            params={"customer": customer_id, "return_url": return_url},
        )
        return _plain(session)

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify the Stripe-Signature header and return the parsed event.

        Raises WebhookVerificationError on a missing secret, missing or bad
        signature, stale timestamp or unparseable body.
        """
        if not self._webhook_secret:
            raise WebhookVerificationError("webhook secret is not configured")
        if not signature:
            raise WebhookVerificationError("missing Stripe-Signature header")

        text = payload.decode("utf-8", errors="replace")
        try:
            stripe.WebhookSignature.verify_header(text, signature, self._webhook_secret, self._tolerance)
        except stripe.SignatureVerificationError as exc:
            raise WebhookVerificationError(f"signature check failed: {exc}") from exc

        try:
            event = json.loads(text)
        except json.JSONDecodeError as exc:
            raise WebhookVerificationError(f"invalid JSON payload: {exc}") from exc
        if not isinstance(event, dict) or "id" not in event or "type" not in event:
            raise WebhookVerificationError("payload is not a Stripe event")
        return event
