"""
Account & Billing Router
========================

- POST /api/account            provision the caller's account (idempotent)
- GET  /api/account            balance, tier and subscription summary
- POST /api/billing/checkout   hosted checkout for a plan -> {url, sessionId}
- POST /api/billing/portal     self-service billing portal -> {url}
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from lunachat.auth.identity import AuthenticatedUser, get_current_user
from lunachat.clients import get_payments
from lunachat.services.account_service import account_service
from lunachat.services.checkout_service import CheckoutService
from lunachat.services.customer_link import CustomerLinkResolver
from lunachat.services.payments_gateway import PaymentsGateway

logger = logging.getLogger(__name__)

account_router = APIRouter()
billing_router = APIRouter()


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------

class SubscriptionSummary(BaseModel):
    status: str
    plan: Optional[str] = None
    currentPeriodEnd: Optional[int] = None


class AccountResponse(BaseModel):
    accountId: str
    email: Optional[str] = None
    energyBalance: int
    tier: str
    subscription: Optional[SubscriptionSummary] = None


class CheckoutRequest(BaseModel):
    plan: str = Field(..., description="monthly or annual")


class CheckoutResponse(BaseModel):
    url: str
    sessionId: str


class PortalResponse(BaseModel):
    url: str


def get_checkout_service(payments: PaymentsGateway = Depends(get_payments)) -> CheckoutService:
    return CheckoutService(payments, CustomerLinkResolver(payments))


# ---------------------------------------------------------------------------
# Account
# ---------------------------------------------------------------------------

@account_router.post(
    "",
    response_model=AccountResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Provision account",
    description="Creates the caller's account with a zero balance if it does not exist yet.",
)
async def provision_account(user: AuthenticatedUser = Depends(get_current_user)) -> Dict[str, Any]:
    account_service.provision(user.user_id, user.email)
    return account_service.summary(user.user_id)


@account_router.get("", response_model=AccountResponse, summary="Account summary")
async def get_account(user: AuthenticatedUser = Depends(get_current_user)) -> Dict[str, Any]:
    return account_service.summary(user.user_id)


# ---------------------------------------------------------------------------
# Billing
# ---------------------------------------------------------------------------

@billing_router.post("/checkout", response_model=CheckoutResponse, summary="Create checkout session")
async def create_checkout_session(
    body: CheckoutRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    service: CheckoutService = Depends(get_checkout_service),
):
    return await service.create_checkout(user, body.plan)


@billing_router.post("/portal", response_model=PortalResponse, summary="Create billing portal session")
async def create_portal_session(
    user: AuthenticatedUser = Depends(get_current_user),
    service: CheckoutService = Depends(get_checkout_service),
):
    return await service.create_portal(user)
