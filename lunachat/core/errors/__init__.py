"""
Error code system.

LunaChatError is the base exception for all structured errors.
Raise it (or one of the subclasses below) with an error code from the
registry, and the error handler will produce a structured JSON response.

``public`` fields are merged into the response body verbatim; ``context``
is only ever logged.

Usage:
    from lunachat.core.errors import InsufficientBalanceError
    raise InsufficientBalanceError(current_balance=100, estimated_cost=150)
"""

from __future__ import annotations

import re
from typing import Any, Dict, Optional

CODE_PATTERN = re.compile(r"^LUNA-[A-Z]{2,6}-\d{3}$")


class LunaChatError(Exception):
    """Structured application error tied to the error registry.

    Args:
        code: Registry error code, e.g. "LUNA-BAL-001".
        detail: Internal-only detail message (never exposed to users).
        context: Arbitrary key-value context for structured logging.
        public: Extra fields returned to the caller in the response body.
    """

    def __init__(
        self,
        code: str,
        detail: str | None = None,
        context: dict | None = None,
        public: dict | None = None,
    ) -> None:
        if not CODE_PATTERN.match(code):
            raise ValueError(f"Invalid error code format: {code!r}")
        self.code = code
        self.detail = detail
        self.context = context or {}
        self.public = public or {}
        super().__init__(f"{code}: {detail}" if detail else code)


class AuthenticationError(LunaChatError):
    """Missing (401) or invalid/expired (403) bearer token."""

    def __init__(self, detail: str | None = None, *, missing: bool = False, code: str | None = None) -> None:
        if code is None:
            code = "LUNA-AUTH-001" if missing else "LUNA-AUTH-002"
        super().__init__(code, detail=detail)


class InsufficientBalanceError(LunaChatError):
    """Worst-case energy for a request exceeds the account balance."""

    def __init__(self, current_balance: int, estimated_cost: int) -> None:
        self.current_balance = current_balance
        self.estimated_cost = estimated_cost
        super().__init__(
            "LUNA-BAL-001",
            detail=f"balance {current_balance} < estimated {estimated_cost}",
            context={"current_balance": current_balance, "estimated_cost": estimated_cost},
            public={
                "details": (
                    f"This message needs up to {estimated_cost} energy "
                    f"but only {current_balance} is available."
                ),
                "currentBalance": current_balance,
                "estimatedCost": estimated_cost,
            },
        )


class UpstreamProviderError(LunaChatError):
    """An external provider (model, payments, identity) failed or timed out."""

    def __init__(
        self,
        provider: str,
        detail: str | None = None,
        code: str = "LUNA-LLM-001",
        context: dict | None = None,
    ) -> None:
        self.provider = provider
        ctx = {"provider": provider}
        ctx.update(context or {})
        super().__init__(code, detail=detail, context=ctx)


class CustomerLinkError(UpstreamProviderError):
    """The account could not be linked to a payment-processor customer."""

    def __init__(self, account_id: str, detail: str | None = None) -> None:
        super().__init__(
            "stripe",
            detail=detail,
            code="LUNA-PAY-002",
            context={"account_id": account_id},
        )


class InvariantViolationError(LunaChatError):
    """A post-call commit would have driven the balance negative.

    The generated reply is still returned to the caller, flagged as not saved.
    """

    def __init__(
        self,
        reply: str,
        account_id: str,
        current_balance: Optional[int],
        cost: int,
    ) -> None:
        self.reply = reply
        super().__init__(
            "LUNA-INV-001",
            detail=f"debit of {cost} would make balance {current_balance} negative",
            context={"account_id": account_id, "current_balance": current_balance, "cost": cost},
            public={"reply": reply, "state_saved": False},
        )


class WebhookVerificationError(LunaChatError):
    """Webhook payload failed signature verification or could not be parsed."""

    def __init__(self, detail: str | None = None) -> None:
        super().__init__("LUNA-HOOK-001", detail=detail)


class AccountNotFoundError(LunaChatError):
    def __init__(self, account_id: str) -> None:
        super().__init__(
            "LUNA-ACC-001",
            detail=f"no account for {account_id}",
            context={"account_id": account_id},
        )


class ConfigurationError(LunaChatError):
    """An external client handle failed to initialise at startup."""

    def __init__(self, client: str, detail: str | None = None) -> None:
        super().__init__("LUNA-CFG-001", detail=detail, context={"client": client})


class RequestValidationFailed(LunaChatError):
    def __init__(self, detail: str, public: Dict[str, Any] | None = None) -> None:
        super().__init__("LUNA-API-001", detail=detail, public=public)
