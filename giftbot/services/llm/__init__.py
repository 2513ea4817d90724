from giftbot.services.llm.base import LLMError, LLMProvider, LLMResponse
from giftbot.services.llm.openai_provider import OpenAICompatibleProvider

__all__ = ["LLMError", "LLMProvider", "LLMResponse", "OpenAICompatibleProvider"]
