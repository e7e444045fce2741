"""
External Client Handles
=======================

PURPOSE:
    Every external client (payments, model, identity) is constructed exactly
    once, at process start, by build_clients(). Each handle is an explicit
    result:

        Ok(value)   the client is ready
        Err(error)  construction failed; ``error`` says which client and why

    A missing or broken client does not stop the process; routes that need
    it fail with a configuration error (503) through require(), while the
    rest of the API keeps working. Nothing downstream ever sees a
    half-initialised client.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Generic, TypeVar, Union

from fastapi import Request

from lunachat.auth.identity import IdentityClient
from lunachat.core.errors import ConfigurationError
from lunachat.services.llm_providers.base import BaseLLMProvider
from lunachat.services.llm_providers.gemini import GeminiProvider
from lunachat.services.payments_gateway import PaymentsGateway

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ClientInitError:
    client: str
    message: str


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err:
    error: ClientInitError


Result = Union[Ok[T], Err]


@dataclass(frozen=True)
class Clients:
    payments: Result[PaymentsGateway]
    model: Result[BaseLLMProvider]
    identity: Result[IdentityClient]

    def status(self) -> dict:
        return {
            name: isinstance(getattr(self, name), Ok)
            for name in ("payments", "model", "identity")
        }


def _build(name: str, factory: Callable[[], T]) -> Result[T]:
    try:
        value = factory()
    except Exception as exc:
        logger.error("Client %s failed to initialise: %s", name, exc)
        return Err(ClientInitError(client=name, message=str(exc)))
    logger.info("Client %s initialised", name)
    return Ok(value)


def build_clients() -> Clients:
    """Construct every external client once. Never raises."""
    return Clients(
        payments=_build("payments", PaymentsGateway.from_settings),
        model=_build("model", GeminiProvider),
        identity=_build("identity", IdentityClient.from_settings),
    )


async def close_clients(clients: Clients) -> None:
    if isinstance(clients.identity, Ok):
        await clients.identity.value.aclose()


def require(result: Result[T], name: str) -> T:
    """Unwrap a client handle or raise ConfigurationError."""
    if isinstance(result, Ok):
        return result.value
    raise ConfigurationError(name, detail=result.error.message)


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------

def get_clients(request: Request) -> Clients:
    return request.app.state.clients


def get_payments(request: Request) -> PaymentsGateway:
    return require(get_clients(request).payments, "payments")


def get_model(request: Request) -> BaseLLMProvider:
    return require(get_clients(request).model, "model")


def get_identity(request: Request) -> IdentityClient:
    return require(get_clients(request).identity, "identity")
