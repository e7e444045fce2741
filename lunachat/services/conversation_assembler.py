"""
Conversation Assembler
======================

PURPOSE:
    Builds the ordered, role-tagged turn sequence sent to the model:

        persona preamble  +  persisted history (ascending)  +  new user turn

    Pure: no I/O. Persisted roles are mapped to model roles
    (assistant -> model, user -> user). The preamble is never part of
    ``visible_history()``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Sequence

from lunachat.models.conversation import ROLE_ASSISTANT, ROLE_USER, ChatTurn
from lunachat.prompts.persona import PERSONA_PREAMBLE

MODEL_ROLE_USER = "user"
MODEL_ROLE_MODEL = "model"

_ROLE_MAP: Dict[str, str] = {
    ROLE_USER: MODEL_ROLE_USER,
    ROLE_ASSISTANT: MODEL_ROLE_MODEL,
}


@dataclass(frozen=True)
class ModelTurn:
    """A single turn in model-facing roles ("user" or "model")."""

    role: str
    text: str


def to_model_role(role: str) -> str:
    try:
        return _ROLE_MAP[role]
    except KeyError:
        raise ValueError(f"Unknown turn role: {role!r}") from None


class ConversationAssembler:
    """Assembles model context from the persona preamble and stored turns."""

    def __init__(self, preamble: Sequence[tuple] = PERSONA_PREAMBLE) -> None:
        self._preamble = tuple(ModelTurn(role=r, text=t) for r, t in preamble)

    @property
    def preamble(self) -> tuple:
        return self._preamble

    def assemble(self, persisted_turns: Iterable[ChatTurn], new_user_text: str) -> List[ModelTurn]:
        """Return preamble + history + the new user turn.

        ``persisted_turns`` must already be in ascending ledger order.
        """
        turns: List[ModelTurn] = list(self._preamble)
        turns.extend(
            ModelTurn(role=to_model_role(t.role), text=t.text) for t in persisted_turns
        )
        turns.append(ModelTurn(role=MODEL_ROLE_USER, text=new_user_text))
        return turns

    @staticmethod
    def visible_history(persisted_turns: Iterable[ChatTurn]) -> List[dict]:
        """Client-facing history: persisted turns only, never the preamble."""
        return [
            {
                "id": t.id,
                "role": t.role,
                "text": t.text,
                "energyCost": t.energy_cost,
                "createdAt": t.created_at.isoformat() if t.created_at else None,
            }
            for t in persisted_turns
        ]


conversation_assembler = ConversationAssembler()
