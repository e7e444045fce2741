"""
Chat Router
===========

- POST /api/chat           one metered exchange with the model
- GET  /api/chat/history   the caller's persisted turns (no persona preamble)

Error responses come from the LunaChatError handler:
    401/403 auth, 402 insufficient energy, 404 no account,
    502 model failure, 500 {reply, state_saved: false} on a debit abort.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from lunachat.auth.identity import AuthenticatedUser, get_current_user
from lunachat.clients import get_model
from lunachat.services.account_service import account_service
from lunachat.services.chat_service import ChatService
from lunachat.services.conversation_assembler import ConversationAssembler
from lunachat.services.llm_providers.base import BaseLLMProvider

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------

class ChatRequest(BaseModel):
    message: str = Field(..., description="The user's message")


class UsageResponse(BaseModel):
    inputTokens: int
    outputTokens: int
    totalTokens: int
    usd: float
    energy: int


class ChatResponse(BaseModel):
    reply: str
    updatedBalance: int
    usage: UsageResponse


class HistoryTurn(BaseModel):
    id: int
    role: str
    text: str
    energyCost: Optional[int] = None
    createdAt: Optional[str] = None


class HistoryResponse(BaseModel):
    turns: List[HistoryTurn]


def get_chat_service(model: BaseLLMProvider = Depends(get_model)) -> ChatService:
    return ChatService(model)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post(
    "",
    response_model=ChatResponse,
    summary="Send a chat message",
    description="Runs one metered exchange: admission check, model call, atomic debit.",
)
async def chat(
    body: ChatRequest,
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    result = await service.chat(user, body.message, request_id=request.state.request_id)
    return ChatResponse(
        reply=result.reply,
        updatedBalance=result.updated_balance,
        usage=UsageResponse(
            inputTokens=result.cost.input_tokens,
            outputTokens=result.cost.output_tokens,
            totalTokens=result.cost.total_tokens,
            usd=result.cost.usd,
            energy=result.cost.energy,
        ),
    )


@router.get(
    "/history",
    response_model=HistoryResponse,
    summary="Conversation history",
)
async def chat_history(
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
    user: AuthenticatedUser = Depends(get_current_user),
):
    turns = account_service.history(user.user_id, limit=limit)
    return HistoryResponse(turns=ConversationAssembler.visible_history(turns))
