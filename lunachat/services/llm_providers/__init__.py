from .base import BaseLLMProvider, LLMProviderError, ModelReply, ModelUsage
from .gemini import GeminiProvider

__all__ = ["BaseLLMProvider", "LLMProviderError", "ModelReply", "ModelUsage", "GeminiProvider"]
