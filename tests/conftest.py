"""
Pytest configuration for LunaChat tests.
Points the app at a throwaway SQLite database and fixed Stripe settings.
"""

import os
import tempfile

# Must be set before any lunachat imports (settings and engine read env at import)
_test_data_dir = tempfile.mkdtemp(prefix="lunachat_test_")
os.environ.setdefault("LUNACHAT_DATA_DIRECTORY", _test_data_dir)
os.environ.setdefault("LUNACHAT_LOG_DIRECTORY", os.path.join(_test_data_dir, "logs"))
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_test_data_dir}/test.db")
os.environ["LUNACHAT_STRIPE_MONTHLY_PRICE_ID"] = "price_monthly_test"
os.environ["LUNACHAT_STRIPE_ANNUAL_PRICE_ID"] = "price_annual_test"
os.environ["LUNACHAT_STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["LUNACHAT_PUBLIC_URL"] = "https://luna.test"

from typing import Optional, Sequence

import pytest
from sqlmodel import SQLModel

from lunachat.auth.identity import AuthenticatedUser
from lunachat.core.database import get_engine
from lunachat.core.errors import AuthenticationError
from lunachat.models.account import Account

import lunachat.models  # noqa: F401  registers every table on SQLModel.metadata

SQLModel.metadata.create_all(get_engine())

# Load error registry so LunaChatError returns correct HTTP status codes
from lunachat.core.errors.registry import error_registry
error_registry.load()

from lunachat.services.conversation_assembler import ModelTurn
from lunachat.services.llm_providers.base import BaseLLMProvider, ModelReply, ModelUsage


@pytest.fixture(autouse=True)
def clean_db():
    """Every test starts from empty tables."""
    engine = get_engine()
    with engine.begin() as conn:
        for table in reversed(SQLModel.metadata.sorted_tables):
            conn.execute(table.delete())
    yield


def make_account(account_id: str = "uid_alice", balance: int = 0, email: Optional[str] = "alice@example.com", **fields) -> Account:
    engine = get_engine()
    with engine.begin() as conn:
        conn.execute(
            Account.__table__.insert().values(
                id=account_id, email=email, energy_balance=balance, **fields
            )
        )
    return account_id


def read_account(account_id: str) -> dict:
    engine = get_engine()
    with engine.connect() as conn:
        row = conn.execute(
            Account.__table__.select().where(Account.__table__.c.id == account_id)
        ).mappings().first()
    return dict(row) if row is not None else None


# ---------------------------------------------------------------------------
# Fakes for external clients
# ---------------------------------------------------------------------------

class FakeModel(BaseLLMProvider):
    """Deterministic model: fixed token count, fixed reply and usage."""

    def __init__(self, input_tokens: int = 1000, output_tokens: int = 500, reply: str = "Hello from Luna.",
                 usage: bool = True, error: Optional[Exception] = None):
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.reply = reply
        self.usage = usage
        self.error = error
        self.generate_calls = []
        self.count_calls = 0

    async def generate_reply(self, turns: Sequence[ModelTurn], max_output_tokens: int) -> ModelReply:
        self.generate_calls.append((list(turns), max_output_tokens))
        if self.error is not None:
            raise self.error
        usage = None
        if self.usage:
            usage = ModelUsage(
                input_tokens=self.input_tokens,
                output_tokens=self.output_tokens,
                total_tokens=self.input_tokens + self.output_tokens,
            )
        return ModelReply(text=self.reply, usage=usage)

    async def count_tokens(self, turns: Sequence[ModelTurn]) -> int:
        self.count_calls += 1
        return self.input_tokens

    def get_model_info(self):
        return {"provider": "fake", "model": "fake-1"}


class FakeIdentity:
    """Accepts "token-<uid>" bearer tokens."""

    async def verify_id_token(self, id_token: str) -> AuthenticatedUser:
        if not id_token.startswith("token-"):
            raise AuthenticationError("token rejected")
        uid = id_token[len("token-"):]
        return AuthenticatedUser(user_id=uid, email=f"{uid}@example.com", email_verified=True)

    async def email_exists(self, email: str) -> bool:
        return email == "known@example.com"

    async def aclose(self) -> None:
        pass


@pytest.fixture
def fake_model():
    return FakeModel()


@pytest.fixture
def fake_identity():
    return FakeIdentity()


def auth(uid: str = "uid_alice") -> dict:
    return {"Authorization": f"Bearer token-{uid}"}
