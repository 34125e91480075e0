import httpx
import logging
from typing import Any, Dict, List, Optional

from shopbot.application.interfaces import LanguageModel, ModelReply, ToolCall
from shopbot.application.retry import RetryPolicy, retry_with_backoff
from shopbot.domain.exceptions import LanguageModelError

logger = logging.getLogger(__name__)

LLM_POLICY = RetryPolicy(max_attempts=2, initial_delay=1.0, multiplier=2.0, max_delay=4.0)


class OpenAIChatClient(LanguageModel):
    """Chat Completions API (OpenAI и совместимые) с function calling"""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model: str,
        timeout: float = 30.0,
        temperature: float = 0.3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        policy: RetryPolicy = LLM_POLICY
    ):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._model = model
        self._timeout = timeout
        self._temperature = temperature
        self._transport = transport
        self._policy = policy

    async def complete(self, messages: List[Dict[str, Any]], tools: List[Dict[str, Any]]) -> ModelReply:
        payload: Dict[str, Any] = {
            "model": self._model,
            "messages": messages,
            "temperature": self._temperature
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"

        data = await retry_with_backoff(
            lambda: self._post(payload),
            self._policy,
            operation="llm:chat",
            retry_on=(LanguageModelError,)
        )
        return self._to_reply(data)

    async def _post(self, payload: dict) -> dict:
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
                response = await client.post(
                    f"{self._base_url}/chat/completions",
                    json=payload,
                    headers={"Authorization": f"Bearer {self._api_key}"}
                )
        except httpx.TimeoutException:
            raise LanguageModelError(f"LLM timeout after {self._timeout}s")
        except httpx.RequestError as e:
            logger.error(f"LLM ошибка подключения: {e}")
            raise LanguageModelError(f"LLM не доступна: {str(e)}")

        if response.status_code != 200:
            raise LanguageModelError(f"LLM ошибка: {response.status_code} {response.text[:200]}")
        try:
            return response.json()
        except ValueError:
            raise LanguageModelError(f"LLM вернула не JSON: {response.text[:200]}")

    def _to_reply(self, data: dict) -> ModelReply:
        try:
            message = data["choices"][0]["message"]
        except (KeyError, IndexError, TypeError):
            raise LanguageModelError("LLM вернула ответ без choices")

        calls = [
            ToolCall(
                id=call["id"],
                name=call["function"]["name"],
                arguments=call["function"].get("arguments") or "{}"
            )
            for call in message.get("tool_calls") or []
            if call.get("type", "function") == "function"
        ]
        usage = data.get("usage") or {}
        if usage:
            logger.info(f"LLM токены: {usage.get('prompt_tokens')} + {usage.get('completion_tokens')}")
        return ModelReply(content=message.get("content"), tool_calls=calls)
