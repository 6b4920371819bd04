"""
LLM Manager for handling different language model providers.
"""

import asyncio
import json
import logging
import os
import re
from typing import Dict, Any, List, Optional, Tuple
from abc import ABC, abstractmethod
from dataclasses import dataclass

from .prompts import GRAPH_QUERY_PROMPT, GRAPH_QUERY_SYSTEM, KEYWORD_EXTRACTION_PROMPT

logger = logging.getLogger(__name__)


def resolve_env_vars(value: str) -> str:
    """Resolve environment variables in string values like ${VAR_NAME}."""
    if isinstance(value, str) and "${" in value:
        def replace_env_var(match):
            var_name = match.group(1)
            return os.getenv(var_name, match.group(0))

        return re.sub(r'\$\{([^}]+)\}', replace_env_var, value)
    return value


def parse_json_response(response: str) -> Dict[str, Any]:
    """
    Extract the first JSON object from an LLM response.

    Tolerates markdown code fences and prose around the object.

    Raises:
        ValueError: if no JSON object can be decoded.
    """
    if not response or not response.strip():
        raise ValueError("Empty LLM response")

    text = response.strip()
    text = re.sub(r'^```(?:json)?\s*', '', text)
    text = re.sub(r'\s*```$', '', text)

    json_match = re.search(r'\{.*\}', text, re.DOTALL)
    json_str = json_match.group() if json_match else text

    try:
        data = json.loads(json_str)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in LLM response: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def _string_list(value: Any) -> List[str]:
    """Keep the non-empty string items of a JSON list."""
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if isinstance(item, (str, int, float)) and str(item).strip()]


@dataclass
class LLMConfig:
    """Configuration for LLM providers."""
    provider: str
    model: str
    temperature: float = 0.1
    max_tokens: int = 2048
    api_key: Optional[str] = None

    def __post_init__(self):
        """Resolve environment variables after initialization."""
        if self.api_key:
            self.api_key = resolve_env_vars(self.api_key)


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    async def generate(self, prompt: str, system: Optional[str] = None, **kwargs) -> str:
        """Generate text using the LLM."""
        pass


class OpenAIProvider(LLMProvider):
    """OpenAI provider implementation."""

    def __init__(self, config: LLMConfig):
        self.config = config
        self.api_key = config.api_key or os.getenv("OPENAI_API_KEY")
        if not self.api_key or self.api_key.startswith("${"):
            raise ValueError("OpenAI API key not found")

        from openai import AsyncOpenAI
        self.client = AsyncOpenAI(api_key=self.api_key)

    async def generate(self, prompt: str, system: Optional[str] = None, **kwargs) -> str:
        """Generate text using OpenAI."""
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        try:
            response = await self.client.chat.completions.create(
                model=self.config.model,
                messages=messages,
                max_tokens=kwargs.get("max_tokens", self.config.max_tokens),
                temperature=kwargs.get("temperature", self.config.temperature)
            )
            return response.choices[0].message.content or ""
        except Exception as e:
            logger.error(f"OpenAI generation error: {e}")
            raise


class AnthropicProvider(LLMProvider):
    """Anthropic provider implementation."""

    def __init__(self, config: LLMConfig):
        self.config = config
        self.api_key = config.api_key or os.getenv("ANTHROPIC_API_KEY")
        if not self.api_key or self.api_key.startswith("${"):
            raise ValueError("Anthropic API key not found")

        import anthropic
        self.client = anthropic.AsyncAnthropic(api_key=self.api_key)

    async def generate(self, prompt: str, system: Optional[str] = None, **kwargs) -> str:
        """Generate text using Anthropic."""
        params = {
            "model": self.config.model,
            "max_tokens": kwargs.get("max_tokens", self.config.max_tokens),
            "temperature": kwargs.get("temperature", self.config.temperature),
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            params["system"] = system

        try:
            response = await self.client.messages.create(**params)
            return response.content[0].text
        except Exception as e:
            logger.error(f"Anthropic generation error: {e}")
            raise


class QueryLLM(ABC):
    """
    Capability interface the retrieval components depend on.

    Implementations raise on transport or parse failures; callers own the
    fallback behaviour.
    """

    @abstractmethod
    async def classify_graph_query(self, query: str) -> Dict[str, Any]:
        """Return the structured graph query plan fields for a query."""
        pass

    @abstractmethod
    async def extract_keywords(self, query: str) -> Tuple[List[str], List[str]]:
        """Return (entity_keywords, topic_keywords) for a query."""
        pass

    @abstractmethod
    async def generate(self, prompt: str, **kwargs) -> str:
        """Generate free text."""
        pass


class LLMManager(QueryLLM):
    """Manager for handling different LLM providers."""

    PROVIDER_DEFAULTS = {
        "openai": (OpenAIProvider, "gpt-4o-mini"),
        "anthropic": (AnthropicProvider, "claude-3-5-haiku-latest"),
    }

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.llm_config = config.get("llm", {})
        self.timeout = self.llm_config.get("timeout", 30.0)
        self.providers: Dict[str, LLMProvider] = {}
        self._initialize_providers()

    def _initialize_providers(self):
        """Initialize available LLM providers."""
        for name, (provider_cls, default_model) in self.PROVIDER_DEFAULTS.items():
            if name not in self.llm_config:
                continue

            section = self.llm_config[name] or {}
            provider_config = LLMConfig(
                provider=name,
                model=section.get("model", default_model),
                temperature=section.get("temperature", 0.1),
                max_tokens=section.get("max_tokens", 2048),
                api_key=section.get("api_key")
            )
            try:
                self.providers[name] = provider_cls(provider_config)
                logger.info(f"{name} provider initialized ({provider_config.model})")
            except Exception as e:
                logger.warning(f"Failed to initialize {name} provider: {e}")

        if not self.providers:
            raise ValueError("No LLM providers could be initialized")

    def _provider_name(self, provider: Optional[str] = None) -> str:
        provider_name = provider or self.llm_config.get("default_provider") or list(self.providers.keys())[0]
        if provider_name not in self.providers:
            raise ValueError(f"Provider {provider_name} not available")
        return provider_name

    async def generate(self, prompt: str, provider: Optional[str] = None, **kwargs) -> str:
        """Generate text using specified or default provider, bounded by the request timeout."""
        provider_name = self._provider_name(provider)
        timeout = kwargs.pop("timeout", self.timeout)
        return await asyncio.wait_for(
            self.providers[provider_name].generate(prompt, **kwargs),
            timeout=timeout
        )

    async def classify_graph_query(self, query: str) -> Dict[str, Any]:
        """Ask the LLM for a graph query plan and return the decoded JSON object."""
        response = await self.generate(
            GRAPH_QUERY_PROMPT.format(query=query),
            system=GRAPH_QUERY_SYSTEM,
            temperature=0.1,
            max_tokens=1000
        )
        return parse_json_response(response)

    async def extract_keywords(self, query: str) -> Tuple[List[str], List[str]]:
        """Ask the LLM for entity-level and topic-level keyword lists."""
        response = await self.generate(
            KEYWORD_EXTRACTION_PROMPT.format(query=query),
            temperature=0.1,
            max_tokens=500
        )
        data = parse_json_response(response)
        if "entity_keywords" not in data and "topic_keywords" not in data:
            raise ValueError("Keyword response has neither entity_keywords nor topic_keywords")

        return _string_list(data.get("entity_keywords")), _string_list(data.get("topic_keywords"))

    def get_available_providers(self) -> List[str]:
        """Get list of available providers."""
        return list(self.providers.keys())
