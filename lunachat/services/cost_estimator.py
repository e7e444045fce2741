"""
Cost Estimator — Tiered Token Pricing to Energy
================================================

PURPOSE:
    Converts token counts into USD and integer energy:
    1. **estimate_cost()** — Pre-flight: counts input tokens of the whole
       assembled context and prices it together with the configured maximum
       output, giving the worst-case energy for admission.
    2. **actual_cost()** — Post-flight: prices the provider's reported usage.

COST CALCULATION:
    Gemini pricing (USD per 1M tokens), selected by input size:
      - input_tokens <= 200k:  input $1.25,  output $10.00
      - input_tokens  > 200k:  input $2.50,  output $15.00
    The tier is chosen by input tokens alone and applies to both prices.

    energy = ceil(usd × ENERGY_COST_MULTIPLIER)   (default multiplier 250)

    Because pricing is monotonic in output tokens, an estimate computed with
    max_output_tokens is always >= the actual cost for the same input.

TOKEN COUNTING:
    Delegated to an async ``count_tokens(turns)`` callable (the model
    provider). If counting fails, one token per character is assumed. No
    tokenizer emits more tokens than characters, so the fallback never
    undercounts. A warning is logged and admission still runs.

CONFIGURATION (env vars with LUNACHAT_ prefix):
    LUNACHAT_PRICING_THRESHOLD_TOKENS, LUNACHAT_INPUT_PRICE_LOW/HIGH,
    LUNACHAT_OUTPUT_PRICE_LOW/HIGH, LUNACHAT_ENERGY_COST_MULTIPLIER,
    LUNACHAT_MAX_OUTPUT_TOKENS
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence

from lunachat.config import settings
from lunachat.services.conversation_assembler import ModelTurn

logger = logging.getLogger(__name__)

__all__ = [
    "CostEstimator",
    "CostEstimate",
    "ActualCost",
    "PricingTier",
    "heuristic_token_count",
]

TokenCounter = Callable[[Sequence[ModelTurn]], Awaitable[int]]

CHARS_PER_TOKEN = 1


@dataclass(frozen=True)
class PricingTier:
    """USD per one million tokens."""

    input_per_million: float
    output_per_million: float


@dataclass(frozen=True)
class CostEstimate:
    """Worst-case cost of a request, computed before the model call."""

    input_tokens: int
    max_output_tokens: int
    worst_case_usd: float
    worst_case_energy: int
    heuristic: bool = False


@dataclass(frozen=True)
class ActualCost:
    """Cost of a completed model call."""

    input_tokens: int
    output_tokens: int
    total_tokens: int
    usd: float
    energy: int


def heuristic_token_count(turns: Sequence[ModelTurn]) -> int:
    chars = sum(len(t.text) for t in turns)
    return math.ceil(chars / CHARS_PER_TOKEN)


class CostEstimator:
    """
    Tiered per-token pricing with an energy conversion.

    Pricing values are read from settings at construction so tests can
    build an estimator with their own numbers.
    """

    def __init__(
        self,
        token_counter: Optional[TokenCounter] = None,
        threshold_tokens: Optional[int] = None,
        low: Optional[PricingTier] = None,
        high: Optional[PricingTier] = None,
        energy_multiplier: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
    ) -> None:
        self._token_counter = token_counter
        self._threshold = threshold_tokens if threshold_tokens is not None else settings.pricing_threshold_tokens
        self._low = low or PricingTier(settings.input_price_low, settings.output_price_low)
        self._high = high or PricingTier(settings.input_price_high, settings.output_price_high)
        self._multiplier = energy_multiplier if energy_multiplier is not None else settings.energy_cost_multiplier
        self._max_output_tokens = max_output_tokens if max_output_tokens is not None else settings.max_output_tokens

    # ------------------------------------------------------------------
    # Properties for read-only access to config
    # ------------------------------------------------------------------

    @property
    def threshold_tokens(self) -> int:
        return self._threshold

    @property
    def energy_multiplier(self) -> float:
        return self._multiplier

    @property
    def max_output_tokens(self) -> int:
        return self._max_output_tokens

    # ------------------------------------------------------------------
    # Pricing primitives
    # ------------------------------------------------------------------

    def tier_for(self, input_tokens: int) -> PricingTier:
        return self._high if input_tokens > self._threshold else self._low

    def usd_cost(self, input_tokens: int, output_tokens: int) -> float:
        """USD cost of a call. Raises ValueError on negative token counts."""
        if input_tokens < 0 or output_tokens < 0:
            raise ValueError(
                f"Token counts must be non-negative: input={input_tokens}, output={output_tokens}"
            )
        tier = self.tier_for(input_tokens)
        return (
            (input_tokens / 1_000_000) * tier.input_per_million
            + (output_tokens / 1_000_000) * tier.output_per_million
        )

    def energy_for_usd(self, usd: float) -> int:
        # round() strips float noise so an exact 2.0 never ceils to 3
        return math.ceil(round(usd * self._multiplier, 9))

    # ------------------------------------------------------------------
    # Pre-flight / post-flight
    # ------------------------------------------------------------------

    async def count_input_tokens(self, turns: Sequence[ModelTurn]) -> tuple[int, bool]:
        """Return (input_tokens, heuristic_used)."""
        if self._token_counter is None:
            return heuristic_token_count(turns), True
        try:
            return int(await self._token_counter(turns)), False
        except Exception as exc:
            fallback = heuristic_token_count(turns)
            logger.warning(
                "Token counting failed, using character heuristic (%d tokens): %s",
                fallback,
                exc,
            )
            return fallback, True

    async def estimate_cost(
        self,
        turns: Sequence[ModelTurn],
        max_output_tokens: Optional[int] = None,
    ) -> CostEstimate:
        """Worst-case cost of sending ``turns`` and receiving a maximal reply."""
        max_out = max_output_tokens if max_output_tokens is not None else self._max_output_tokens
        input_tokens, heuristic = await self.count_input_tokens(turns)
        usd = self.usd_cost(input_tokens, max_out)
        estimate = CostEstimate(
            input_tokens=input_tokens,
            max_output_tokens=max_out,
            worst_case_usd=usd,
            worst_case_energy=self.energy_for_usd(usd),
            heuristic=heuristic,
        )
        logger.info(
            "cost_estimated",
            extra={
                "tokens.input": input_tokens,
                "tokens.max_output": max_out,
                "cost.usd": round(usd, 6),
                "cost.energy": estimate.worst_case_energy,
                "heuristic": heuristic,
            },
        )
        return estimate

    def actual_cost(self, input_tokens: int, output_tokens: int, total_tokens: Optional[int] = None) -> ActualCost:
        usd = self.usd_cost(input_tokens, output_tokens)
        return ActualCost(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=total_tokens if total_tokens is not None else input_tokens + output_tokens,
            usd=usd,
            energy=self.energy_for_usd(usd),
        )
