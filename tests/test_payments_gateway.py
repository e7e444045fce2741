"""
Tests for PaymentsGateway error mapping and the startup client handles.
"""

from unittest.mock import MagicMock

import pytest
import stripe

from lunachat.clients import ClientInitError, Err, Ok, build_clients, require
from lunachat.config import settings
from lunachat.core.errors import ConfigurationError, UpstreamProviderError, WebhookVerificationError
from lunachat.services.payments_gateway import PaymentsGateway


def _gateway(secret="whsec_x"):
    client = MagicMock()
    return PaymentsGateway(client=client, webhook_secret=secret), client


class TestCalls:
    @pytest.mark.asyncio
    async def test_missing_customer_is_none(self):
        gateway, client = _gateway()
        client.v1.customers.retrieve.side_effect = stripe.InvalidRequestError(
            "No such customer: 'cus_x'", "id", code="resource_missing"
        )
        assert await gateway.retrieve_customer("cus_x") is None

    @pytest.mark.asyncio
    async def test_stripe_error_becomes_upstream_error(self):
        gateway, client = _gateway()
        client.v1.subscriptions.retrieve.side_effect = stripe.APIConnectionError("network down")
        with pytest.raises(UpstreamProviderError) as exc_info:
            await gateway.retrieve_subscription("sub_1")
        assert exc_info.value.code == "LUNA-PAY-001"

    @pytest.mark.asyncio
    async def test_create_customer_passes_idempotency_key(self):
        gateway, client = _gateway()
        client.v1.customers.create.return_value = {"id": "cus_1", "metadata": {"account_id": "uid_a"}}

        customer = await gateway.create_customer("a@example.com", {"account_id": "uid_a"}, idempotency_key="k1")

        assert customer["id"] == "cus_1"
        kwargs = client.v1.customers.create.call_args.kwargs
        assert kwargs["params"] == {"metadata": {"account_id": "uid_a"}, "email": "a@example.com"}
        assert kwargs["options"] == {"idempotency_key": "k1"}

    @pytest.mark.asyncio
    async def test_list_by_email(self):
        gateway, client = _gateway()
        client.v1.customers.list.return_value = {"object": "list", "data": [{"id": "cus_1"}]}
        assert await gateway.find_customers_by_email("a@example.com") == [{"id": "cus_1"}]
        assert client.v1.customers.list.call_args.kwargs["params"] == {"email": "a@example.com", "limit": 100}


class TestVerifyWebhook:
    def test_secret_not_configured(self):
        gateway, _ = _gateway(secret=None)
        with pytest.raises(WebhookVerificationError, match="not configured"):
            gateway.verify_webhook(b"{}", "t=1,v1=abc")

    def test_garbage_signature(self):
        gateway, _ = _gateway()
        with pytest.raises(WebhookVerificationError):
            gateway.verify_webhook(b'{"id": "evt_1", "type": "x"}', "not-a-signature")


class TestClientHandles:
    def test_unconfigured_clients_are_errors(self, monkeypatch):
        monkeypatch.setattr(settings, "stripe_secret_key", None)
        monkeypatch.setattr(settings, "gemini_api_key", None)
        monkeypatch.setattr(settings, "identity_api_key", None)

        clients = build_clients()

        assert isinstance(clients.payments, Err)
        assert isinstance(clients.model, Err)
        assert isinstance(clients.identity, Err)
        assert clients.payments.error.client == "payments"
        assert clients.status() == {"payments": False, "model": False, "identity": False}

    def test_require_unwraps_ok(self):
        assert require(Ok("value"), "payments") == "value"

    def test_require_raises_configuration_error(self):
        with pytest.raises(ConfigurationError) as exc_info:
            require(Err(ClientInitError("payments", "missing key")), "payments")
        assert exc_info.value.code == "LUNA-CFG-001"
