"""
Tests for AccountService — idempotent provisioning and history paging.
"""

import pytest

from conftest import make_account
from lunachat.core.errors import AccountNotFoundError
from lunachat.services.account_service import AccountService
from lunachat.services.usage_recorder import PendingTurn, UsageRecorder


def test_provision_twice_returns_same_account():
    service = AccountService()
    first = service.provision("uid_new", "new@example.com")
    second = service.provision("uid_new", "other@example.com")
    assert first.id == second.id
    assert second.email == "new@example.com"
    assert second.energy_balance == 0


def test_get_account_missing():
    with pytest.raises(AccountNotFoundError):
        AccountService().get_account("uid_ghost")


def test_history_keeps_latest_in_ascending_order():
    make_account()
    recorder = UsageRecorder()
    for i in range(5):
        recorder.persist_user_turn("uid_alice", PendingTurn(turn_key=f"r{i}:user", text=f"m{i}"))

    turns = AccountService().history("uid_alice", limit=3)

    assert [t.text for t in turns] == ["m2", "m3", "m4"]


def test_summary_without_subscription():
    make_account(balance=3)
    summary = AccountService().summary("uid_alice")
    assert summary == {
        "accountId": "uid_alice",
        "email": "alice@example.com",
        "energyBalance": 3,
        "tier": "none",
        "subscription": None,
    }
