from relaybot.services.llm.base import LLMProvider, LLMResponse, LLMToolCall
from relaybot.services.llm.openai_provider import OpenAIProvider

__all__ = ["LLMProvider", "LLMResponse", "LLMToolCall", "OpenAIProvider"]
