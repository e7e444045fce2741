"""
Access Gate — One-Time Invitation Codes
=======================================

verify(email, code):
    unknown code                   -> "Invalid access code."
    is_valid == False              -> "Access code is no longer valid."
    used by a different email      -> "Access code has already been used."
    used by the same email         -> verified, nothing rewritten
    unused                         -> consume (is_used, used_by_email, used_at)

Consumption is a conditional UPDATE ... WHERE is_used = false, so when two
registrations race for the same code exactly one wins; the loser re-reads
the row and gets the "already used" answer (or a verified answer if it was
the same email).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select

from lunachat.core.database import get_engine
from lunachat.models.account import InvitationCode

logger = logging.getLogger(__name__)

ERR_INVALID = "Invalid access code."
ERR_NO_LONGER_VALID = "Access code is no longer valid."
ERR_ALREADY_USED = "Access code has already been used."

codes_table = InvitationCode.__table__


@dataclass(frozen=True)
class AccessCheck:
    verified: bool
    error: Optional[str] = None


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AccessGate:
    def verify(self, email: str, code: str) -> AccessCheck:
        email = normalize_email(email)
        code = code.strip()
        engine = get_engine()

        with engine.begin() as conn:
            row = conn.execute(
                select(codes_table).where(codes_table.c.code == code)
            ).mappings().first()
            decision = self._decide(row, email)
            if decision is not None:
                return decision

            result = conn.execute(
                codes_table.update()
                .where(codes_table.c.code == code, codes_table.c.is_used.is_(False))
                .values(is_used=True, used_by_email=email, used_at=datetime.now(timezone.utc))
            )
            if result.rowcount == 1:
                logger.info("Access code %s consumed", code)
                return AccessCheck(verified=True)

            # Lost the race: someone consumed it between the read and the update
            row = conn.execute(
                select(codes_table).where(codes_table.c.code == code)
            ).mappings().first()

        return self._decide(row, email) or AccessCheck(verified=False, error=ERR_ALREADY_USED)

    @staticmethod
    def _decide(row, email: str) -> Optional[AccessCheck]:
        """Answer from the current row, or None if the code is free to consume."""
        if row is None:
            return AccessCheck(verified=False, error=ERR_INVALID)
        if row["is_valid"] is False:
            return AccessCheck(verified=False, error=ERR_NO_LONGER_VALID)
        if row["is_used"]:
            used_by = normalize_email(row["used_by_email"] or "")
            if used_by == email:
                return AccessCheck(verified=True)
            return AccessCheck(verified=False, error=ERR_ALREADY_USED)
        return None


access_gate = AccessGate()
