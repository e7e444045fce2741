"""
Tests for AccessGate — one-time invitation code consumption.
"""

from lunachat.core.database import get_engine
from lunachat.models.account import InvitationCode
from lunachat.services.access_gate import (
    ERR_ALREADY_USED,
    ERR_INVALID,
    ERR_NO_LONGER_VALID,
    AccessGate,
)


def _code(code="LUNA-2026", **fields):
    with get_engine().begin() as conn:
        conn.execute(InvitationCode.__table__.insert().values(code=code, **fields))


def _row(code="LUNA-2026"):
    with get_engine().connect() as conn:
        return conn.execute(
            InvitationCode.__table__.select().where(InvitationCode.__table__.c.code == code)
        ).mappings().first()


class TestVerify:
    def test_unknown_code(self):
        result = AccessGate().verify("a@example.com", "NOPE")
        assert result.verified is False
        assert result.error == ERR_INVALID

    def test_invalidated_code(self):
        _code(is_valid=False)
        result = AccessGate().verify("a@example.com", "LUNA-2026")
        assert result.error == ERR_NO_LONGER_VALID

    def test_first_use_consumes(self):
        _code()
        result = AccessGate().verify("A@Example.com ", "LUNA-2026")
        assert result.verified is True
        row = _row()
        assert row["is_used"] is True
        assert row["used_by_email"] == "a@example.com"
        assert row["used_at"] is not None

    def test_same_email_is_idempotent(self):
        _code()
        gate = AccessGate()
        gate.verify("a@example.com", "LUNA-2026")
        first_used_at = _row()["used_at"]

        assert gate.verify("a@example.com", "LUNA-2026").verified is True
        assert _row()["used_at"] == first_used_at

    def test_other_email_rejected(self):
        _code()
        gate = AccessGate()
        gate.verify("a@example.com", "LUNA-2026")

        result = gate.verify("b@example.com", "LUNA-2026")
        assert result.verified is False
        assert result.error == ERR_ALREADY_USED
        assert _row()["used_by_email"] == "a@example.com"
