"""
Balance Guard — Pre-flight Admission
====================================

Pure admission check run before any mutation and before the model call.
A request is rejected iff its worst-case energy exceeds the current balance;
a request that would consume the balance exactly is admitted.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from lunachat.core.errors import InsufficientBalanceError


@dataclass(frozen=True)
class Admission:
    """Result of an authorize() call."""

    allowed: bool
    current_balance: int
    required_energy: int
    reason: Optional[str] = None


class BalanceGuard:
    def authorize(self, current_balance: int, worst_case_energy: int) -> Admission:
        if worst_case_energy > current_balance:
            return Admission(
                allowed=False,
                current_balance=current_balance,
                required_energy=worst_case_energy,
                reason="zero_balance" if current_balance <= 0 else "insufficient_balance",
            )
        return Admission(
            allowed=True,
            current_balance=current_balance,
            required_energy=worst_case_energy,
        )

    def authorize_or_raise(self, current_balance: int, worst_case_energy: int) -> Admission:
        """Like authorize(), but raise InsufficientBalanceError on rejection."""
        admission = self.authorize(current_balance, worst_case_energy)
        if not admission.allowed:
            raise InsufficientBalanceError(
                current_balance=current_balance,
                estimated_cost=worst_case_energy,
            )
        return admission


balance_guard = BalanceGuard()
