"""
LLM abstraction layer for the cooking retrieval system.
"""

from .llm_manager import LLMManager, QueryLLM, parse_json_response
from .providers import OpenAIProvider, AnthropicProvider

__all__ = ["LLMManager", "QueryLLM", "parse_json_response", "OpenAIProvider", "AnthropicProvider"]
