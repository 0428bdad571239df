"""Tests for LLM provider fallback logic."""

from unittest.mock import AsyncMock

import pytest

from forum_qa_bot.llm_provider import (
    LLMConfig,
    LLMProvider,
    LLMResponse,
    TokenUsage,
    backoff_delay,
    get_fallback_status,
    is_credits_error,
    is_retryable_error,
)


class StatusError(Exception):
    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


def _config(**overrides) -> LLMConfig:
    values = dict(
        primary_model="claude-test",
        fallback_model="gpt-test",
        fallback_enabled=True,
        openrouter_api_key="or-key",
        openai_api_key="oa-key",
    )
    values.update(overrides)
    return LLMConfig(**values)


def _response(content: str = "answer") -> LLMResponse:
    return LLMResponse(content=content, tool_calls=None, tokens=TokenUsage(1, 2, 3))


def _provider(**overrides) -> LLMProvider:
    return LLMProvider(config=_config(**overrides), retry_base_delay=0)


class TestErrorClassification:
    def test_credits_by_status(self):
        assert is_credits_error(StatusError("payment required", 402))

    def test_credits_by_message(self):
        assert is_credits_error(Exception("This request requires more credits"))
        assert not is_credits_error(Exception("bad request"))

    def test_retryable(self):
        assert is_retryable_error(StatusError("busy", 503))
        assert is_retryable_error(StatusError("slow down", 429))
        assert is_retryable_error(Exception("Request timed out"))
        assert not is_retryable_error(StatusError("invalid", 400))

    def test_backoff(self):
        assert [backoff_delay(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]
        assert backoff_delay(10) == 10.0


class TestCallWithFallback:
    @pytest.mark.asyncio
    async def test_primary_success(self):
        provider = _provider()
        provider._complete = AsyncMock(return_value=_response())

        response = await provider.call_with_fallback([{"role": "user", "content": "hi"}])

        assert response.content == "answer"
        assert not response.used_fallback
        assert response.actual_model == "claude-test"
        endpoint, params = provider._complete.call_args.args
        assert endpoint.name == "openrouter"
        assert "tools" not in params

    @pytest.mark.asyncio
    async def test_tools_passed_with_auto_choice(self):
        provider = _provider()
        provider._complete = AsyncMock(return_value=_response())
        tools = [{"type": "function", "function": {"name": "forum__search_messages"}}]

        await provider.call_with_fallback([{"role": "user", "content": "hi"}], tools=tools)

        params = provider._complete.call_args.args[1]
        assert params["tools"] == tools
        assert params["tool_choice"] == "auto"

    @pytest.mark.asyncio
    async def test_credits_error_falls_back_without_retry(self):
        provider = _provider()
        provider._complete = AsyncMock(side_effect=[StatusError("out of credits", 402), _response("fallback")])

        response = await provider.call_with_fallback([{"role": "user", "content": "hi"}], max_retries=3)

        assert response.content == "fallback"
        assert response.used_fallback
        assert response.actual_model == "gpt-test"
        assert provider._complete.await_count == 2

    @pytest.mark.asyncio
    async def test_retryable_error_retries_primary(self):
        provider = _provider()
        provider._complete = AsyncMock(side_effect=[StatusError("busy", 503), _response()])

        response = await provider.call_with_fallback([{"role": "user", "content": "hi"}])

        assert not response.used_fallback
        assert provider._complete.await_count == 2

    @pytest.mark.asyncio
    async def test_both_fail(self):
        provider = _provider()
        provider._complete = AsyncMock(side_effect=[StatusError("bad", 400), StatusError("also bad", 400)])

        with pytest.raises(RuntimeError, match="Both primary"):
            await provider.call_with_fallback([{"role": "user", "content": "hi"}])

    @pytest.mark.asyncio
    async def test_primary_error_without_fallback_propagates(self):
        provider = _provider(fallback_enabled=False)
        provider._complete = AsyncMock(side_effect=StatusError("bad", 400))

        with pytest.raises(StatusError):
            await provider.call_with_fallback([{"role": "user", "content": "hi"}])

    @pytest.mark.asyncio
    async def test_fallback_only(self):
        provider = _provider(openrouter_api_key=None)
        provider._complete = AsyncMock(return_value=_response())

        response = await provider.call_with_fallback([{"role": "user", "content": "hi"}])

        assert response.used_fallback
        assert provider.primary is None

    @pytest.mark.asyncio
    async def test_no_provider(self):
        provider = _provider(openrouter_api_key=None, openai_api_key=None)
        with pytest.raises(RuntimeError, match="No LLM provider"):
            await provider.call_with_fallback([{"role": "user", "content": "hi"}])


class TestFallbackStatus:
    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("LLM_FALLBACK_ENABLED", "false")
        monkeypatch.setenv("OPENAI_API_KEY", "oa-key")
        monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)

        status = get_fallback_status()

        assert status["fallback_enabled"] is False
        assert status["fallback_available"] is True
        assert status["primary_available"] is False
