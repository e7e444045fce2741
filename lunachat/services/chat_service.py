"""
Chat Service — Metered Conversation Turn
========================================

PURPOSE:
    Runs one metered chat exchange:

    1. load Account (404 if missing) and persisted history
    2. ConversationAssembler: preamble + history + new user turn
    3. CostEstimator: worst-case energy (counted input + max output)
    4. BalanceGuard: reject with 402 before any write or model call
    5. persist the user turn eagerly (never lost if the model fails)
    6. model call; failure -> UpstreamProviderError, no debit
    7. CostEstimator: actual cost from reported usage; if the provider
       omits usage, counted input + max output is charged
    8. UsageRecorder: atomic append + conditional debit

TURN KEYS:
    A digest of the request id and the message text, scoped to the account,
    so a client retrying with the same X-Request-ID never duplicates its
    turn. A retry whose exchange was already committed returns the stored
    reply without a second model call or debit. A retry after a model
    failure reuses the saved user turn instead of sending it twice. The same
    request id with a different message is a new exchange.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from lunachat.auth.identity import AuthenticatedUser
from lunachat.core.errors import RequestValidationFailed, UpstreamProviderError
from lunachat.services.account_service import AccountService, account_service
from lunachat.services.balance_guard import BalanceGuard, balance_guard
from lunachat.services.conversation_assembler import ConversationAssembler, conversation_assembler
from lunachat.services.cost_estimator import ActualCost, CostEstimator
from lunachat.services.llm_providers.base import BaseLLMProvider, LLMProviderError
from lunachat.services.usage_recorder import (
    PendingTurn,
    UsageRecorder,
    assistant_turn_key,
    usage_recorder,
    user_turn_key,
)

logger = logging.getLogger(__name__)

MAX_MESSAGE_CHARS = 32_000


@dataclass(frozen=True)
class ChatResult:
    reply: str
    updated_balance: int
    cost: ActualCost


class ChatService:
    def __init__(
        self,
        model: BaseLLMProvider,
        estimator: Optional[CostEstimator] = None,
        assembler: ConversationAssembler = conversation_assembler,
        guard: BalanceGuard = balance_guard,
        recorder: UsageRecorder = usage_recorder,
        accounts: AccountService = account_service,
    ) -> None:
        self._model = model
        self._estimator = estimator or CostEstimator(token_counter=model.count_tokens)
        self._assembler = assembler
        self._guard = guard
        self._recorder = recorder
        self._accounts = accounts

    async def chat(self, user: AuthenticatedUser, message: str, request_id: str) -> ChatResult:
        if not message or not message.strip():
            raise RequestValidationFailed("empty message", public={"details": "Message must not be empty."})
        if len(message) > MAX_MESSAGE_CHARS:
            raise RequestValidationFailed(
                "message too long",
                public={"details": f"Message must be at most {MAX_MESSAGE_CHARS} characters."},
            )

        account = self._accounts.get_account(user.user_id)

        user_key = user_turn_key(request_id, message)
        assistant_key = assistant_turn_key(request_id, message)

        replay = self._recorder.find_recorded(account.id, assistant_key)
        if replay is not None:
            row, balance = replay
            logger.info("Request %s already committed, returning stored reply", request_id)
            return ChatResult(
                reply=row["text"],
                updated_balance=balance,
                cost=ActualCost(
                    input_tokens=row["input_tokens"],
                    output_tokens=row["output_tokens"],
                    total_tokens=row["total_tokens"],
                    usd=row["usd_cost"],
                    energy=row["energy_cost"],
                ),
            )

        # A user turn saved by an earlier failed attempt is re-sent as the new turn
        history = [t for t in self._accounts.history(account.id) if t.turn_key != user_key]
        turns = self._assembler.assemble(history, message)

        estimate = await self._estimator.estimate_cost(turns)
        self._guard.authorize_or_raise(account.energy_balance, estimate.worst_case_energy)

        user_turn = PendingTurn(turn_key=user_key, text=message)
        self._recorder.persist_user_turn(account.id, user_turn)

        try:
            reply = await self._model.generate_reply(turns, estimate.max_output_tokens)
        except LLMProviderError as exc:
            raise UpstreamProviderError(
                exc.provider,
                detail=exc.message,
                context={"account_id": account.id, "error.type": type(exc).__name__},
            ) from exc

        if reply.usage is None:
            logger.warning(
                "Model returned no usage metadata, charging counted input plus max output for %s",
                account.id,
            )
            cost = self._estimator.actual_cost(estimate.input_tokens, estimate.max_output_tokens)
        else:
            if reply.usage.input_tokens != estimate.input_tokens:
                logger.info(
                    "Reported input tokens (%d) differ from counted (%d)",
                    reply.usage.input_tokens,
                    estimate.input_tokens,
                )
            cost = self._estimator.actual_cost(
                reply.usage.input_tokens,
                reply.usage.output_tokens,
                reply.usage.total_tokens,
            )

        recorded = self._recorder.record(
            account.id,
            reply.text,
            cost,
            assistant_key=assistant_key,
            user_turn=user_turn,
        )
        return ChatResult(reply=reply.text, updated_balance=recorded.new_balance, cost=cost)
