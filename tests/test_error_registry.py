"""
Tests for the error registry and the LunaChatError response shape.
"""

import pytest
import yaml
from fastapi import FastAPI
from fastapi.testclient import TestClient

from lunachat.core.errors import (
    CODE_PATTERN,
    InsufficientBalanceError,
    InvariantViolationError,
    LunaChatError,
)
from lunachat.core.errors.middleware import lunachat_error_handler
from lunachat.core.errors.registry import ErrorRegistry, RegistryValidationError, VALID_DOMAINS


class TestRegistryLoading:
    def test_load_real_registry(self):
        registry = ErrorRegistry()
        registry.load()
        assert registry.schema_version == 1
        assert len(registry) >= 12

    def test_every_domain_has_a_code(self):
        registry = ErrorRegistry()
        registry.load()
        covered = {code.split("-")[1] for code in registry.all_codes()}
        assert covered == VALID_DOMAINS

    def test_http_statuses(self):
        registry = ErrorRegistry()
        registry.load()
        assert registry.lookup("LUNA-BAL-001").http_status == 402
        assert registry.lookup("LUNA-AUTH-001").http_status == 401
        assert registry.lookup("LUNA-AUTH-002").http_status == 403
        assert registry.lookup("LUNA-LLM-001").http_status == 502
        assert registry.lookup("LUNA-INV-001").severity == "CRITICAL"

    def test_lookup_missing_code_raises(self):
        registry = ErrorRegistry()
        registry.load()
        with pytest.raises(KeyError, match="Unknown error code"):
            registry.lookup("LUNA-ZZZ-999")

    def test_domain_mismatch_rejected(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.safe_dump({
            "schema_version": 1,
            "errors": [{
                "code": "LUNA-BAL-001", "domain": "PAY", "title": "x", "severity": "ERROR",
                "retryable": False, "http_status": 402, "safe_message": "x", "remediation": [],
            }],
        }))
        with pytest.raises(RegistryValidationError, match="doesn't match"):
            ErrorRegistry().load(str(path))

    def test_non_error_status_rejected(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.safe_dump({
            "schema_version": 1,
            "errors": [{
                "code": "LUNA-BAL-001", "domain": "BAL", "title": "x", "severity": "ERROR",
                "retryable": False, "http_status": 200, "safe_message": "x", "remediation": [],
            }],
        }))
        with pytest.raises(RegistryValidationError, match="not an error status"):
            ErrorRegistry().load(str(path))

    def test_client_and_server_errors(self):
        registry = ErrorRegistry()
        registry.load()
        assert registry.lookup("LUNA-BAL-001").is_client_error is True
        assert registry.lookup("LUNA-INV-001").is_client_error is False


class TestErrorCodes:
    def test_invalid_code_format(self):
        with pytest.raises(ValueError):
            LunaChatError("BAD-CODE")

    def test_pattern(self):
        assert CODE_PATTERN.match("LUNA-HOOK-001")
        assert not CODE_PATTERN.match("LUNA-hook-001")


def _app_raising(exc):
    app = FastAPI()
    app.add_exception_handler(LunaChatError, lunachat_error_handler)

    @app.get("/boom")
    async def boom():
        raise exc

    return TestClient(app)


class TestHandler:
    def test_insufficient_balance_body(self):
        response = _app_raising(InsufficientBalanceError(current_balance=100, estimated_cost=150)).get("/boom")
        assert response.status_code == 402
        body = response.json()
        assert body["error"] == "Insufficient energy"
        assert body["currentBalance"] == 100
        assert body["estimatedCost"] == 150
        assert "150" in body["details"]

    def test_invariant_violation_returns_reply(self):
        exc = InvariantViolationError(reply="partial answer", account_id="uid_a", current_balance=1, cost=5)
        response = _app_raising(exc).get("/boom")
        assert response.status_code == 500
        assert response.json()["reply"] == "partial answer"
        assert response.json()["state_saved"] is False

    def test_unregistered_code_falls_back(self):
        response = _app_raising(LunaChatError("LUNA-SYS-999", detail="internal")).get("/boom")
        assert response.status_code == 500
        assert response.json()["code"] == "LUNA-SYS-999"
        assert "internal" not in response.json()["error"]
