"""
OpenAI-compatible provider client.

Sends a single-message chat completion and turns the reply into a plain
command string plus token usage.
"""

import logging
import os
from dataclasses import dataclass

from openai import OpenAI, OpenAIError

from llmsh.config.loader import ProviderConfig
from llmsh.core.errors import EmptyResponseError, ProviderError
from llmsh.core.token_counter import TokenUsage

logger = logging.getLogger(__name__)

# Local servers such as Ollama ignore the key, but the SDK requires one.
PLACEHOLDER_API_KEY = "not-needed"


@dataclass(frozen=True)
class LLMResult:
    """A provider reply reduced to what the orchestrator needs."""
    command: str
    model: str
    usage: TokenUsage


def strip_code_fence(text: str) -> str:
    """Remove an enclosing ``` fence (with optional language tag)."""
    text = text.strip()
    if text.startswith("```"):
        lines = text.split("\n")
        if len(lines) >= 2:
            lines = lines[1:]
            if lines[-1].strip() == "```":
                lines = lines[:-1]
            text = "\n".join(lines)
    return text.strip()


class OpenAICompatibleClient:
    """Calls any endpoint speaking the OpenAI chat-completions API.

    Failures are raised as ProviderError; the caller decides whether they
    reach the user.
    """

    def call(self, provider: ProviderConfig, prompt: str) -> LLMResult:
        """Send prompt to the provider and return the generated command.

        Args:
            provider: Provider connection settings
            prompt: Complete prompt text

        Returns:
            LLMResult with the fence-stripped command, the model that
            answered and the token usage

        Raises:
            ProviderError: On transport or API failure
            EmptyResponseError: If the reply has no choices
        """
        params = {
            "model": provider.model,
            "messages": [{"role": "user", "content": prompt}],
        }
        if provider.max_tokens > 0:
            params["max_tokens"] = provider.max_tokens
        if provider.temperature >= 0:
            params["temperature"] = provider.temperature

        try:
            client = OpenAI(
                api_key=provider.api_key or os.environ.get("OPENAI_API_KEY") or PLACEHOLDER_API_KEY,
                base_url=provider.base_url.rstrip("/") or None,
                max_retries=0,
            )
            response = client.chat.completions.create(**params)
        except OpenAIError as e:
            logger.warning("Provider call to %s failed: %s", provider.base_url, e)
            raise ProviderError(f"API call failed: {e}") from e

        if not response.choices:
            raise EmptyResponseError()

        content = response.choices[0].message.content or ""
        return LLMResult(
            command=strip_code_fence(content),
            model=response.model or provider.model,
            usage=_usage_from_response(response),
        )


def _usage_from_response(response) -> TokenUsage:
    usage = response.usage
    if usage is None:
        return TokenUsage()

    cache_read = 0
    details = getattr(usage, "prompt_tokens_details", None)
    if details is not None and getattr(details, "cached_tokens", None):
        cache_read = details.cached_tokens

    return TokenUsage(
        input_tokens=usage.prompt_tokens or 0,
        output_tokens=usage.completion_tokens or 0,
        cache_read_tokens=cache_read,
    )
