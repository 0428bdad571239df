"""
LLM Provider with Fallback Logic

Chat completions with automatic fallback from Claude (via OpenRouter) to
GPT-4o (OpenAI). Both go through the OpenAI SDK.

Fallback Behavior:
- 402 (credits) errors: Immediate fallback (no retry)
- Retryable errors (429, 5xx, timeouts): exponential backoff, then fallback
- Other errors: fallback straight away
- Controlled via LLM_FALLBACK_ENABLED env var (default: true)
"""

import os
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any

from openai import AsyncOpenAI

logger = logging.getLogger(__name__)

# =============================================================================
# Configuration
# =============================================================================

DEFAULT_PRIMARY_MODEL = "anthropic/claude-sonnet-4.5"
DEFAULT_FALLBACK_MODEL = "gpt-4o"
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


@dataclass
class LLMConfig:
    """LLM configuration from environment variables."""

    primary_model: str = field(default_factory=lambda: os.getenv("LLM_PRIMARY_MODEL", DEFAULT_PRIMARY_MODEL))
    fallback_model: str = field(default_factory=lambda: os.getenv("LLM_FALLBACK_MODEL", DEFAULT_FALLBACK_MODEL))
    fallback_enabled: bool = field(default_factory=lambda: os.getenv("LLM_FALLBACK_ENABLED", "true").lower() != "false")
    openrouter_api_key: Optional[str] = field(default_factory=lambda: os.getenv("OPENROUTER_API_KEY"))
    openai_api_key: Optional[str] = field(default_factory=lambda: os.getenv("OPENAI_API_KEY"))

    @property
    def fallback_available(self) -> bool:
        """Check if fallback is available (OpenAI API key is set)."""
        return bool(self.openai_api_key)

    @property
    def primary_available(self) -> bool:
        """Check if primary (OpenRouter) is available."""
        return bool(self.openrouter_api_key)


def get_config() -> LLMConfig:
    """Get current LLM configuration."""
    return LLMConfig()


@dataclass
class ProviderEndpoint:
    """One OpenAI-compatible endpoint and the model to use on it."""
    name: str
    model: str
    api_key: str
    base_url: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)

    def create_client(self) -> AsyncOpenAI:
        return AsyncOpenAI(
            api_key=self.api_key,
            base_url=self.base_url,
            default_headers=self.headers or None,
        )


def primary_endpoint(config: LLMConfig) -> Optional[ProviderEndpoint]:
    if not config.primary_available:
        return None
    return ProviderEndpoint(
        name="openrouter",
        model=config.primary_model,
        api_key=config.openrouter_api_key,
        base_url=OPENROUTER_BASE_URL,
        headers={"X-Title": "Forum Q&A Slack Bot"},
    )


def fallback_endpoint(config: LLMConfig) -> Optional[ProviderEndpoint]:
    if not (config.fallback_enabled and config.fallback_available):
        return None
    return ProviderEndpoint(
        name="openai",
        model=config.fallback_model,
        api_key=config.openai_api_key,
    )


# =============================================================================
# Error Classification
# =============================================================================

def _status_of(error: Exception) -> Optional[int]:
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    return None


def is_credits_error(error: Exception) -> bool:
    """
    Check if error is a credits/insufficient funds error (402).
    These fall back immediately without retry.
    """
    if _status_of(error) == 402:
        return True
    error_str = str(error).lower()
    credit_indicators = ['402', 'credits', 'insufficient', 'can only afford', 'quota exceeded']
    return any(indicator in error_str for indicator in credit_indicators)


def is_retryable_error(error: Exception) -> bool:
    """Check if error is retryable (rate limits, timeouts, server errors)."""
    status = _status_of(error)
    if status is not None and (status == 429 or 500 <= status < 600):
        return True
    error_str = str(error).lower()
    retryable_patterns = ['timeout', 'timed out', 'rate limit', '429', '503', '504', 'connection', 'network']
    return any(pattern in error_str for pattern in retryable_patterns)


def backoff_delay(attempt: int, base: float = 1.0, cap: float = 10.0) -> float:
    """Exponential backoff: 1s, 2s, 4s... capped."""
    return min(base * (2 ** (attempt - 1)), cap)


# =============================================================================
# Response Types
# =============================================================================

@dataclass
class TokenUsage:
    """Token usage information from LLM response."""
    prompt: int = 0
    completion: int = 0
    total: int = 0


@dataclass
class LLMResponse:
    """LLM response with content and metadata."""
    content: Optional[str]
    tool_calls: Optional[List[Dict[str, Any]]]
    tokens: TokenUsage
    used_fallback: bool = False
    actual_model: str = ""
    finish_reason: str = "stop"


def parse_completion(response) -> LLMResponse:
    """Parse an OpenAI-compatible chat completion into LLMResponse."""
    choice = response.choices[0]
    message = choice.message

    tool_calls = None
    if message.tool_calls:
        tool_calls = [
            {
                "id": tc.id,
                "type": "function",
                "function": {
                    "name": tc.function.name,
                    "arguments": tc.function.arguments,
                }
            }
            for tc in message.tool_calls
        ]

    usage = response.usage
    tokens = TokenUsage(
        prompt=usage.prompt_tokens if usage else 0,
        completion=usage.completion_tokens if usage else 0,
        total=usage.total_tokens if usage else 0,
    )

    return LLMResponse(
        content=message.content,
        tool_calls=tool_calls,
        tokens=tokens,
        finish_reason=choice.finish_reason or "stop",
    )


# =============================================================================
# Main LLM Caller
# =============================================================================

class LLMProvider:
    """
    LLM Provider with fallback support.

    Usage:
        provider = LLMProvider()
        response = await provider.call_with_fallback(
            messages=[{"role": "user", "content": "Hello"}],
            tools=[...],  # Optional
        )
        await provider.close()
    """

    def __init__(self, config: Optional[LLMConfig] = None, retry_base_delay: float = 1.0):
        self.config = config or get_config()
        self.primary = primary_endpoint(self.config)
        self.fallback = fallback_endpoint(self.config)
        self.retry_base_delay = retry_base_delay
        self._clients: Dict[str, AsyncOpenAI] = {}

    def _client_for(self, endpoint: ProviderEndpoint) -> AsyncOpenAI:
        """Lazy-create one client per endpoint."""
        client = self._clients.get(endpoint.name)
        if client is None:
            client = endpoint.create_client()
            self._clients[endpoint.name] = client
        return client

    async def _complete(self, endpoint: ProviderEndpoint, params: Dict[str, Any]) -> LLMResponse:
        """Run one chat completion against an endpoint."""
        client = self._client_for(endpoint)
        response = await client.chat.completions.create(model=endpoint.model, **params)
        return parse_completion(response)

    async def call_with_fallback(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        max_tokens: int = 4096,
        temperature: float = 0.0,
        max_retries: int = 2,
    ) -> LLMResponse:
        """
        Call the primary model, falling back when it fails.

        Args:
            messages: List of message dicts with role and content
            tools: Optional tool definitions (OpenAI function calling format)
            max_tokens: Maximum tokens to generate
            temperature: Sampling temperature
            max_retries: Attempts on the primary for retryable errors

        Returns:
            LLMResponse with content, tool_calls, and metadata
        """
        params: Dict[str, Any] = {
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if tools:
            params["tools"] = tools
            params["tool_choice"] = "auto"

        last_error: Optional[Exception] = None

        if self.primary:
            for attempt in range(1, max_retries + 1):
                try:
                    logger.debug(f"Calling primary LLM ({self.primary.model}), attempt {attempt}/{max_retries}")
                    response = await self._complete(self.primary, params)
                    response.used_fallback = False
                    response.actual_model = self.primary.model
                    return response
                except Exception as e:
                    last_error = e
                    logger.warning(f"Primary LLM attempt {attempt} failed: {e}")

                    if is_credits_error(e):
                        logger.warning("Credits error detected, falling back immediately")
                        break
                    if not is_retryable_error(e):
                        logger.warning("Non-retryable error, attempting fallback")
                        break
                    if attempt < max_retries:
                        delay = backoff_delay(attempt, base=self.retry_base_delay)
                        logger.debug(f"Retrying in {delay}s...")
                        await asyncio.sleep(delay)
        else:
            logger.warning("Primary LLM (OpenRouter) not configured")

        if self.fallback:
            try:
                logger.info(f"Falling back to {self.fallback.model}")
                response = await self._complete(self.fallback, params)
                response.used_fallback = True
                response.actual_model = self.fallback.model
                return response
            except Exception as e:
                logger.error(f"Fallback LLM also failed: {e}")
                primary_model = self.primary.model if self.primary else "none"
                raise RuntimeError(
                    f"Both primary ({primary_model}) and fallback ({self.fallback.model}) failed. "
                    f"Primary error: {last_error}. Fallback error: {e}"
                ) from e

        if last_error:
            raise last_error
        raise RuntimeError("No LLM provider available (check API keys)")

    async def close(self):
        """Close HTTP clients."""
        for client in self._clients.values():
            await client.close()
        self._clients.clear()


def get_fallback_status() -> Dict[str, Any]:
    """Get current fallback configuration status."""
    config = get_config()
    return {
        "primary_model": config.primary_model,
        "fallback_model": config.fallback_model,
        "fallback_enabled": config.fallback_enabled,
        "primary_available": config.primary_available,
        "fallback_available": config.fallback_available,
    }
