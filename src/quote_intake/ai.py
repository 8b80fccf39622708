"""
Text-completion providers (Anthropic, OpenAI) with optional Cloudflare AI
Gateway routing.

An unconfigured provider is a normal state: ``build_ai_provider`` returns
None and every consumer has a defined fallback.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any

import httpx

from .config import LLMConfig
from .errors import ProviderError

logger = logging.getLogger(__name__)

DEFAULT_MODELS = {
    "anthropic": "claude-sonnet-4-20250514",
    "openai": "gpt-4o",
}

GATEWAY_BASE = "https://gateway.ai.cloudflare.com/v1"
ANTHROPIC_VERSION = "2023-06-01"

_FENCE_START = re.compile(r"^```(?:json)?\s*")
_FENCE_END = re.compile(r"\s*```$")


def parse_json_response(text: str) -> dict[str, Any]:
    """
    Parse a provider answer that should be a single JSON object.

    Markdown code fences are tolerated. Raises ValueError for anything that
    is not a JSON object.
    """
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = _FENCE_END.sub("", _FENCE_START.sub("", cleaned))
    data = json.loads(cleaned)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


class AIProvider(ABC):
    """A text-completion backend."""

    name: str = "base"

    def __init__(
        self,
        api_key: str,
        model: str | None = None,
        gateway_account_id: str | None = None,
        gateway_name: str | None = None,
        timeout_seconds: float = 15.0,
    ):
        self.api_key = api_key
        self.model = model or DEFAULT_MODELS[self.name]
        self.gateway_account_id = gateway_account_id
        self.gateway_name = gateway_name
        self.timeout = timeout_seconds

    @property
    def uses_gateway(self) -> bool:
        return bool(self.gateway_account_id and self.gateway_name)

    def gateway_url(self, path: str) -> str:
        return f"{GATEWAY_BASE}/{self.gateway_account_id}/{self.gateway_name}/{self.name}/{path}"

    async def _post(self, url: str, headers: dict[str, str], body: dict[str, Any]) -> dict:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                response = await client.post(url, headers=headers, json=body)
            except httpx.RequestError as e:
                raise ProviderError(f"{self.name} request failed: {e}") from e

        if response.status_code >= 400:
            raise ProviderError(
                f"{self.name} API error {response.status_code}: {response.text[:200]}"
            )
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(f"{self.name} returned invalid JSON") from e
        if not isinstance(data, dict):
            raise ProviderError(f"{self.name} returned a non-object response")
        return data

    @abstractmethod
    async def complete(self, prompt: str, max_tokens: int = 1024) -> str:
        """Return the completion text for a single user prompt."""


class AnthropicProvider(AIProvider):
    name = "anthropic"

    def endpoint(self) -> str:
        if self.uses_gateway:
            return self.gateway_url("v1/messages")
        return "https://api.anthropic.com/v1/messages"

    async def complete(self, prompt: str, max_tokens: int = 1024) -> str:
        data = await self._post(
            self.endpoint(),
            headers={"x-api-key": self.api_key, "anthropic-version": ANTHROPIC_VERSION},
            body={
                "model": self.model,
                "max_tokens": max_tokens,
                "messages": [{"role": "user", "content": prompt}],
            },
        )
        content = data.get("content")
        block = content[0] if isinstance(content, list) and content else None
        text = None
        if isinstance(block, dict) and block.get("type") == "text":
            text = block.get("text")
        if not isinstance(text, str):
            raise ProviderError("anthropic returned no text content")
        return text


class OpenAIProvider(AIProvider):
    name = "openai"

    def endpoint(self) -> str:
        if self.uses_gateway:
            return self.gateway_url("chat/completions")
        return "https://api.openai.com/v1/chat/completions"

    async def complete(self, prompt: str, max_tokens: int = 1024) -> str:
        data = await self._post(
            self.endpoint(),
            headers={"Authorization": f"Bearer {self.api_key}"},
            body={
                "model": self.model,
                "max_tokens": max_tokens,
                "response_format": {"type": "json_object"},
                "messages": [{"role": "user", "content": prompt}],
            },
        )
        choices = data.get("choices")
        choice = choices[0] if isinstance(choices, list) and choices else None
        message = choice.get("message") if isinstance(choice, dict) else None
        text = message.get("content") if isinstance(message, dict) else None
        if not isinstance(text, str) or not text:
            raise ProviderError("openai returned no message content")
        return text


PROVIDERS: dict[str, type[AIProvider]] = {
    "anthropic": AnthropicProvider,
    "openai": OpenAIProvider,
}


def build_ai_provider(config: LLMConfig) -> AIProvider | None:
    """The configured provider, or None when no API key is available."""
    api_key = config.get_api_key()
    if not api_key:
        return None

    provider_cls = PROVIDERS.get(config.provider)
    if provider_cls is None:
        logger.warning(f"Unknown AI provider {config.provider!r}, AI features disabled")
        return None

    return provider_cls(
        api_key=api_key,
        model=config.model,
        gateway_account_id=config.gateway_account_id,
        gateway_name=config.gateway_name,
        timeout_seconds=config.timeout_seconds,
    )
