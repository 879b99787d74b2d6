"""
LLM Integration Package

Pluggable interface for the language models used to summarize archived
conversation chunks.
"""

from llm.provider_interface import LLMProvider, LLMMessage, LLMResponse
from llm.provider_factory import LLMProviderFactory

__all__ = [
    "LLMProvider",
    "LLMMessage",
    "LLMResponse",
    "LLMProviderFactory",
]
