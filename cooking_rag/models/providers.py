"""
LLM Provider implementations for the cooking retrieval system.
"""

from .llm_manager import LLMProvider, OpenAIProvider, AnthropicProvider

__all__ = ["LLMProvider", "OpenAIProvider", "AnthropicProvider"]
