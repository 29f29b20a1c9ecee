"""
AI backend used by the investigation loop.

Providers expose a single coroutine, send_message(prompt), returning the
model's text. Callers wrap it in a circuit breaker; providers themselves do
not retry.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from anthropic import AsyncAnthropic

from config import RuntimeConfig
from errors import ConfigurationError


logger = logging.getLogger(__name__)


@dataclass
class AIResponse:
    """Text reply from the AI backend."""
    content: str
    usage: Dict[str, int] = field(default_factory=dict)


class AIProvider:
    """
    Interface for AI backends. Subclass for each provider.
    """

    name = "base"

    async def send_message(self, prompt: str) -> AIResponse:
        raise NotImplementedError


class AnthropicProvider(AIProvider):
    """Anthropic Messages API backend."""

    name = "anthropic"

    def __init__(
        self,
        api_key: str,
        model: str,
        max_tokens: int = 4096,
        base_url: Optional[str] = None,
        client: Optional[AsyncAnthropic] = None
    ):
        self.model = model
        self.max_tokens = max_tokens

        if client is None:
            client_kwargs: Dict[str, Any] = {"api_key": api_key}
            # Proxy servers speaking the Anthropic API
            if base_url:
                client_kwargs["base_url"] = base_url
            client = AsyncAnthropic(**client_kwargs)
        self.client = client

    async def send_message(self, prompt: str) -> AIResponse:
        response = await self.client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            messages=[{"role": "user", "content": prompt}]
        )

        content = ""
        for block in response.content:
            if getattr(block, "type", None) == "text":
                content += block.text

        usage = {}
        if getattr(response, "usage", None) is not None:
            usage = {
                "input_tokens": response.usage.input_tokens,
                "output_tokens": response.usage.output_tokens,
            }

        logger.debug(f"Anthropic response: {len(content)} chars, usage={usage}")
        return AIResponse(content=content, usage=usage)


def create_ai_provider(config: RuntimeConfig) -> AIProvider:
    """Build the configured AI provider."""
    if config.ai_provider == "anthropic":
        if not config.anthropic_api_key:
            raise ConfigurationError(
                "ANTHROPIC_API_KEY environment variable not set",
                operation="create_ai_provider",
                component="ai_provider",
                suggested_actions=["Set ANTHROPIC_API_KEY environment variable"]
            )
        return AnthropicProvider(
            api_key=config.anthropic_api_key,
            model=config.ai_model,
            max_tokens=config.ai_max_tokens,
            base_url=config.anthropic_base_url
        )

    raise ConfigurationError(
        f"Unsupported AI provider: {config.ai_provider}",
        operation="create_ai_provider",
        component="ai_provider",
        suggested_actions=["Set AI_PROVIDER to 'anthropic'"]
    )
