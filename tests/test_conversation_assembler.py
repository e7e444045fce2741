"""
Tests for ConversationAssembler — preamble placement, role mapping and
client-visible history.
"""

from datetime import datetime, timezone

import pytest

from lunachat.models.conversation import ChatTurn
from lunachat.prompts.persona import PERSONA_PREAMBLE
from lunachat.services.conversation_assembler import (
    ConversationAssembler,
    ModelTurn,
    to_model_role,
)


def _turn(i, role, text, energy=None):
    return ChatTurn(
        id=i,
        account_id="uid_alice",
        turn_key=f"req{i}:{role}",
        role=role,
        text=text,
        energy_cost=energy,
        created_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )


class TestAssemble:
    def test_preamble_first_then_history_then_new_turn(self):
        assembler = ConversationAssembler()
        history = [_turn(1, "user", "hi"), _turn(2, "assistant", "hello", energy=2)]

        turns = assembler.assemble(history, "how are you?")

        n = len(PERSONA_PREAMBLE)
        assert turns[:n] == list(assembler.preamble)
        assert turns[n:] == [
            ModelTurn("user", "hi"),
            ModelTurn("model", "hello"),
            ModelTurn("user", "how are you?"),
        ]

    def test_empty_history(self):
        assembler = ConversationAssembler(preamble=[("user", "rules"), ("model", "ok")])
        turns = assembler.assemble([], "first")
        assert turns == [ModelTurn("user", "rules"), ModelTurn("model", "ok"), ModelTurn("user", "first")]

    def test_persona_preamble_alternates_roles(self):
        roles = [role for role, _ in PERSONA_PREAMBLE]
        assert roles[0] == "user"
        assert all(a != b for a, b in zip(roles, roles[1:]))


class TestRoles:
    def test_assistant_maps_to_model(self):
        assert to_model_role("assistant") == "model"
        assert to_model_role("user") == "user"

    def test_unknown_role_rejected(self):
        with pytest.raises(ValueError, match="Unknown turn role"):
            to_model_role("system")


class TestVisibleHistory:
    def test_never_includes_preamble(self):
        history = [_turn(1, "user", "hi"), _turn(2, "assistant", "hello", energy=2)]
        visible = ConversationAssembler.visible_history(history)
        assert [t["text"] for t in visible] == ["hi", "hello"]
        assert visible[1]["energyCost"] == 2
        assert visible[0]["createdAt"].startswith("2026-01-01")
