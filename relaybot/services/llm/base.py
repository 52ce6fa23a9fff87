from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class LLMToolCall:
    id: str
    name: str
    args: dict


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None
    tool_calls: List[LLMToolCall] = field(default_factory=list)


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        tools: Optional[List[dict]] = None,
    ) -> LLMResponse:
        """Generate response from LLM."""
        pass

    def generate_image(self, prompt: str, model: Optional[str] = None) -> str:
        """Return a URL of a generated image."""
        raise NotImplementedError(f"{type(self).__name__} does not generate images")
