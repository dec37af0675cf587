from atende.services.llm.base import (
    LLMError,
    LLMPermanentError,
    LLMProvider,
    LLMResponse,
    LLMTransientError,
    ToolCall,
)
from atende.services.llm.openai_provider import OpenAIProvider

__all__ = [
    "LLMError",
    "LLMPermanentError",
    "LLMTransientError",
    "LLMProvider",
    "LLMResponse",
    "ToolCall",
    "OpenAIProvider",
]
