"""
Gemini LLM Provider
===================

Google Gemini implementation of BaseLLMProvider.
Uses the google-genai SDK async client (``client.aio``).

Safety settings block medium-and-above harassment, hate speech, sexually
explicit and dangerous content.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

from google import genai
from google.genai import types

from lunachat.config import settings
from lunachat.services.conversation_assembler import ModelTurn
from .base import (
    AuthenticationError,
    BaseLLMProvider,
    LLMProviderError,
    ModelReply,
    ModelUsage,
    RateLimitError,
)

logger = logging.getLogger(__name__)

SAFETY_SETTINGS = [
    types.SafetySetting(
        category=category,
        threshold=types.HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
    )
    for category in (
        types.HarmCategory.HARM_CATEGORY_HARASSMENT,
        types.HarmCategory.HARM_CATEGORY_HATE_SPEECH,
        types.HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT,
        types.HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT,
    )
]


def to_contents(turns: Sequence[ModelTurn]) -> List[types.Content]:
    return [
        types.Content(role=t.role, parts=[types.Part(text=t.text)])
        for t in turns
    ]


class GeminiProvider(BaseLLMProvider):
    """Gemini provider using the google-genai SDK."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model_name: Optional[str] = None,
        temperature: Optional[float] = None,
        timeout_s: Optional[float] = None,
        client: Optional[genai.Client] = None,
    ):
        self.api_key = api_key or settings.gemini_api_key
        self.model_name = model_name or settings.llm_model
        self.temperature = temperature if temperature is not None else settings.llm_temperature
        self.timeout_s = timeout_s or settings.llm_timeout_s

        if client is not None:
            self.client = client
            return

        if not self.api_key:
            raise AuthenticationError(
                "Gemini API key not found. Set LUNACHAT_GEMINI_API_KEY.",
                provider="gemini",
            )
        self.client = genai.Client(api_key=self.api_key)

    async def generate_reply(
        self,
        turns: Sequence[ModelTurn],
        max_output_tokens: int,
    ) -> ModelReply:
        """Generate the next turn with Gemini."""
        config = types.GenerateContentConfig(
            temperature=self.temperature,
            max_output_tokens=max_output_tokens,
            safety_settings=SAFETY_SETTINGS,
        )
        try:
            response = await asyncio.wait_for(
                self.client.aio.models.generate_content(
                    model=self.model_name,
                    contents=to_contents(turns),
                    config=config,
                ),
                timeout=self.timeout_s,
            )
        except asyncio.TimeoutError as e:
            raise LLMProviderError(
                f"Gemini call timed out after {self.timeout_s}s",
                provider="gemini",
                original_error=e,
            )
        except Exception as e:
            self._handle_exception(e)

        if not response.candidates:
            raise LLMProviderError(
                "Generation blocked by safety filters or no candidates returned.",
                provider="gemini",
            )

        text = response.text
        if not text:
            finish = getattr(response.candidates[0], "finish_reason", None)
            raise LLMProviderError(
                f"Gemini returned an empty reply (finish_reason={finish})",
                provider="gemini",
            )

        return ModelReply(text=text, usage=self._extract_usage(response))

    async def count_tokens(self, turns: Sequence[ModelTurn]) -> int:
        try:
            result = await self.client.aio.models.count_tokens(
                model=self.model_name,
                contents=to_contents(turns),
            )
        except Exception as e:
            self._handle_exception(e)
        return int(result.total_tokens or 0)

    @staticmethod
    def _extract_usage(response) -> Optional[ModelUsage]:
        meta = getattr(response, "usage_metadata", None)
        if meta is None or meta.prompt_token_count is None:
            return None
        # Thinking tokens are billed as output
        output_tokens = (meta.candidates_token_count or 0) + (getattr(meta, "thoughts_token_count", None) or 0)
        input_tokens = meta.prompt_token_count
        total = meta.total_token_count or input_tokens + output_tokens
        return ModelUsage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=total,
        )

    def _handle_exception(self, e: Exception):
        """Map SDK errors to standard provider errors."""
        err_str = str(e).lower()

        if "429" in err_str or "resource_exhausted" in err_str or "quota" in err_str:
            raise RateLimitError(
                f"Gemini quota exceeded: {str(e)}",
                provider="gemini",
                original_error=e,
            )

        if "401" in err_str or "403" in err_str or "api key" in err_str:
            raise AuthenticationError(
                f"Gemini authentication failed: {str(e)}",
                provider="gemini",
                original_error=e,
            )

        raise LLMProviderError(
            f"Gemini provider error: {str(e)}",
            provider="gemini",
            original_error=e,
        )

    def get_model_info(self) -> Dict[str, Any]:
        return {
            "provider": "gemini",
            "model": self.model_name,
            "capabilities": ["generate", "count_tokens"],
        }
