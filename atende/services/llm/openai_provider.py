from typing import List, Optional

import httpx

from atende.logging_config import get_logger
from atende.services.llm.base import (
    LLMError,
    LLMPermanentError,
    LLMProvider,
    LLMResponse,
    LLMTransientError,
    ToolCall,
)

logger = get_logger("llm.openai")

_PERMANENT_STATUS = {400, 401, 403, 404, 422}


def _error_from_response(response: httpx.Response) -> LLMError:
    text = response.text
    message = f"OpenAI API error: {response.status_code} - {text[:500]}"
    if response.status_code in _PERMANENT_STATUS:
        return LLMPermanentError(message, response.status_code)
    if response.status_code == 429 and "insufficient_quota" in text:
        return LLMPermanentError(message, response.status_code)
    return LLMTransientError(message, response.status_code)


class OpenAIProvider(LLMProvider):
    """OpenAI-compatible chat completions and embeddings over REST."""

    def __init__(
        self,
        api_key: str,
        default_model: str = "gpt-4o-mini",
        *,
        embedding_model: str = "text-embedding-3-small",
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.embedding_model = embedding_model
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    @property
    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _post(self, path: str, payload: dict) -> dict:
        try:
            response = await self._client.post(f"{self.base_url}{path}", headers=self._headers, json=payload)
        except httpx.TimeoutException as exc:
            raise LLMTransientError(f"OpenAI request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise LLMTransientError(f"OpenAI request failed: {exc}") from exc

        logger.debug(f"OpenAI response status: {response.status_code}")
        if response.status_code != 200:
            logger.error(f"OpenAI error: {response.text[:500]}")
            raise _error_from_response(response)
        return response.json()

    async def complete(
        self,
        messages: List[dict],
        *,
        tools: Optional[List[dict]] = None,
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
    ) -> LLMResponse:
        model = model or self.default_model
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}, tools={len(tools or [])}")

        data = await self._post("/chat/completions", payload)

        content = ""
        tool_calls: List[ToolCall] = []
        if data.get("choices"):
            message = data["choices"][0].get("message", {})
            content = message.get("content") or ""
            for call in message.get("tool_calls") or []:
                function = call.get("function", {})
                tool_calls.append(
                    ToolCall(
                        id=call.get("id", ""),
                        name=function.get("name", ""),
                        arguments=function.get("arguments") or "{}",
                    )
                )

        return LLMResponse(
            content=content,
            model=data.get("model", model),
            usage=data.get("usage"),
            tool_calls=tool_calls,
        )

    async def embed(self, text: str, *, model: Optional[str] = None) -> List[float]:
        data = await self._post("/embeddings", {"model": model or self.embedding_model, "input": text})
        items = data.get("data") or []
        if not items or "embedding" not in items[0]:
            raise LLMTransientError("OpenAI embeddings response without data")
        return [float(value) for value in items[0]["embedding"]]

    async def close(self) -> None:
        await self._client.aclose()
