from typing import List, Optional

import httpx

from giftbot.logging_config import get_logger
from giftbot.services.llm.base import LLMError, LLMProvider, LLMResponse

logger = get_logger("llm.openai")


class OpenAICompatibleProvider(LLMProvider):
    """Chat-completions provider for OpenAI-compatible APIs (DeepSeek by default)."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.deepseek.com/v1",
        default_model: str = "deepseek-chat",
        timeout_seconds: float = 30.0,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.default_model = default_model
        self.timeout_seconds = timeout_seconds

    async def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 800,
    ) -> LLMResponse:
        model = model or self.default_model
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        logger.debug(f"LLM request: model={model}, messages_count={len(messages)}")

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.HTTPError as exc:
            logger.error(f"LLM transport error: {exc}")
            raise LLMError(f"LLM transport error: {exc}") from exc

        logger.debug(f"LLM response status: {response.status_code}")

        if response.status_code != 200:
            logger.error(f"LLM error: {response.text}")
            raise LLMError(f"LLM API error: {response.status_code} - {response.text}")

        try:
            data = response.json()
            content = ""
            if data.get("choices"):
                message = data["choices"][0].get("message") or {}
                content = message.get("content") or ""
            if not isinstance(content, str):
                raise TypeError(f"content is {type(content).__name__}")
        except (ValueError, TypeError, AttributeError, KeyError, IndexError) as exc:
            logger.error(f"LLM malformed response: {exc}")
            raise LLMError(f"LLM malformed response: {exc}") from exc
        logger.debug(f"LLM content: {content[:100] if content else 'EMPTY'}")

        return LLMResponse(
            content=content,
            model=data.get("model", model),
            usage=data.get("usage"),
        )
