"""
LLM Provider Interface

The layered context summarizer reaches language models only through
``LLMProvider``. A request is a short list of ``LLMMessage``s (an archiving
instruction and a transcript) and the reply comes back as an ``LLMResponse``
whose failures are data, not exceptions, so the caller owns the retry policy.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional


@dataclass
class LLMMessage:
    """One chat message sent to a model."""
    role: str
    content: str
    name: Optional[str] = None

    @classmethod
    def system(cls, content: str) -> "LLMMessage":
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> "LLMMessage":
        return cls(role="user", content=content)

    def to_dict(self) -> Dict[str, Any]:
        msg_dict: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.name:
            msg_dict["name"] = self.name
        return msg_dict


@dataclass
class LLMResponse:
    """
    A model reply.

    ``finish_reason == "error"`` marks a failed call; ``content`` then holds
    the error text, which callers inspect to decide whether to retry.
    """
    content: Optional[str] = None
    finish_reason: Optional[str] = None
    usage: Dict[str, int] = field(default_factory=dict)
    model: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.finish_reason == "error"

    @property
    def text(self) -> str:
        return (self.content or "").strip()

    @classmethod
    def error(cls, message: str, model: Optional[str] = None) -> "LLMResponse":
        return cls(content=f"Error: {message}", finish_reason="error", model=model)


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    async def complete(self,
                       messages: List[LLMMessage],
                       model: Optional[str] = None,
                       temperature: Optional[float] = None,
                       max_tokens: Optional[int] = None,
                       json_mode: bool = False,
                       **kwargs) -> LLMResponse:
        """
        Generate a completion.

        Args:
            messages: The request messages
            model: The model to use (defaults to the provider's default)
            temperature: The sampling temperature
            max_tokens: Maximum tokens to generate
            json_mode: Ask the model for a single JSON object
            **kwargs: Additional provider-specific parameters

        Returns:
            The reply; failures are reported through ``LLMResponse.error``
            rather than raised
        """

    @abstractmethod
    def parse_response(self, raw_response: Any) -> LLMResponse:
        """Convert a provider-specific reply into an ``LLMResponse``."""
