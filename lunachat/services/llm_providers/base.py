"""
LLM Provider Base Class
=======================

Abstract base class and exceptions for model providers.
A provider accepts a list of role-tagged turns and returns text plus the
token-usage counters reported by the provider.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

from lunachat.services.conversation_assembler import ModelTurn


class LLMProviderError(Exception):
    """Base exception for LLM provider errors."""

    def __init__(self, message: str, provider: str = "unknown", original_error: Exception = None):
        self.message = message
        self.provider = provider
        self.original_error = original_error
        super().__init__(self.message)


class RateLimitError(LLMProviderError):
    """Raised when provider rate limit is exceeded."""
    pass


class AuthenticationError(LLMProviderError):
    """Raised when API key is invalid or missing."""
    pass


@dataclass(frozen=True)
class ModelUsage:
    input_tokens: int
    output_tokens: int
    total_tokens: int


@dataclass(frozen=True)
class ModelReply:
    """Generated text plus usage. ``usage`` is None when the provider omits it."""

    text: str
    usage: Optional[ModelUsage] = None


class BaseLLMProvider(ABC):
    """
    Abstract base class for model providers.

    Implementations must map SDK failures onto LLMProviderError subclasses;
    callers never see raw SDK exceptions.
    """

    @abstractmethod
    async def generate_reply(
        self,
        turns: Sequence[ModelTurn],
        max_output_tokens: int,
    ) -> ModelReply:
        """
        Generate the next model turn for ``turns``.

        Args:
            turns: Full context, last turn is the new user message
            max_output_tokens: Hard cap on generated tokens

        Raises:
            LLMProviderError: On generation failure, timeout or safety block
        """
        pass

    @abstractmethod
    async def count_tokens(self, turns: Sequence[ModelTurn]) -> int:
        """Return the provider's input token count for ``turns``."""
        pass

    @abstractmethod
    def get_model_info(self) -> Dict[str, Any]:
        """Return metadata about the configured model."""
        pass
