from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional


class LLMError(Exception):
    """Completion or embedding service failure."""

    retryable = True

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class LLMTransientError(LLMError):
    """Timeouts, 5xx and throttling: worth another attempt."""

    retryable = True


class LLMPermanentError(LLMError):
    """Bad credentials, exhausted quota, malformed request."""

    retryable = False


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str  # raw JSON text as produced by the model


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None
    tool_calls: List[ToolCall] = field(default_factory=list)

    @property
    def input_tokens(self) -> int:
        return int((self.usage or {}).get("prompt_tokens") or 0)

    @property
    def output_tokens(self) -> int:
        return int((self.usage or {}).get("completion_tokens") or 0)

    def assistant_message(self) -> dict:
        """The assistant turn to echo back before tool results."""
        message: dict = {"role": "assistant", "content": self.content or None}
        if self.tool_calls:
            message["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.arguments},
                }
                for call in self.tool_calls
            ]
        return message


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    async def complete(
        self,
        messages: List[dict],
        *,
        tools: Optional[List[dict]] = None,
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
    ) -> LLMResponse:
        """Run one chat completion, optionally offering tools."""

    @abstractmethod
    async def embed(self, text: str, *, model: Optional[str] = None) -> List[float]:
        """Return the embedding vector for ``text``."""

    async def close(self) -> None:
        return None
