"""
Tests for GeminiProvider and ProviderRegistry.

The SDK client is mocked; no network access.
"""
import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from app.adapters.gemini_adapter import (
    FREE_TIER_PROVIDER,
    GeminiConfig,
    GeminiProvider,
    ProviderRegistry,
    ProviderRequest,
)
from app.core.errors import ProviderError, ProviderTimeoutError
from app.core.types import Tier
from conftest import FakeProvider


class ServiceUnavailable(Exception):
    pass


def _provider(**config):
    with patch("app.adapters.gemini_adapter.genai.Client"):
        provider = GeminiProvider(api_key="test-key", config=GeminiConfig(**config))
    provider.client.aio.models.generate_content = AsyncMock(return_value=MagicMock(text="Drink water."))
    return provider


REQUEST = ProviderRequest(system_prompt="You are helpful.", user_message="hydration?", model="l2-model")


class TestGeminiProvider:

    def test_requires_api_key(self):
        with pytest.raises(ValueError):
            GeminiProvider(api_key="")

    @pytest.mark.asyncio
    async def test_invoke_builds_single_turn_request(self):
        provider = _provider()

        result = await provider.invoke(REQUEST)

        assert result.text == "Drink water."
        assert result.model == "l2-model"
        kwargs = provider.client.aio.models.generate_content.call_args.kwargs
        assert kwargs["contents"] == "hydration?"
        assert kwargs["config"].system_instruction == "You are helpful."

    @pytest.mark.asyncio
    async def test_empty_text_is_a_provider_error(self):
        provider = _provider()
        provider.client.aio.models.generate_content.return_value = MagicMock(text="  ")

        with pytest.raises(ProviderError, match="Empty response"):
            await provider.invoke(REQUEST)

    @pytest.mark.asyncio
    async def test_retryable_error_is_retried(self):
        provider = _provider(base_retry_delay=0.0)
        provider.client.aio.models.generate_content.side_effect = [
            ServiceUnavailable("busy"),
            MagicMock(text="Second time lucky."),
        ]

        result = await provider.invoke(REQUEST)

        assert result.text == "Second time lucky."
        assert provider.client.aio.models.generate_content.await_count == 2

    @pytest.mark.asyncio
    async def test_other_errors_fail_fast(self):
        provider = _provider()
        provider.client.aio.models.generate_content.side_effect = KeyError("bad")

        with pytest.raises(ProviderError, match="KeyError"):
            await provider.invoke(REQUEST)

        assert provider.client.aio.models.generate_content.await_count == 1

    @pytest.mark.asyncio
    async def test_timeout(self):
        provider = _provider(max_retries=1)

        async def slow(**kwargs):
            await asyncio.sleep(1)

        provider.client.aio.models.generate_content = slow

        with pytest.raises(ProviderTimeoutError):
            await provider.invoke(ProviderRequest("s", "u", "m", timeout_seconds=0.01))

    @pytest.mark.asyncio
    async def test_timed_out_attempt_is_retried_within_deadline(self):
        provider = _provider(max_retries=2)
        calls = []

        async def first_call_hangs(**kwargs):
            calls.append(kwargs["model"])
            if len(calls) == 1:
                await asyncio.sleep(5)
            return MagicMock(text="Made it.")

        provider.client.aio.models.generate_content = first_call_hangs

        result = await asyncio.wait_for(
            provider.invoke(ProviderRequest("s", "u", "m", timeout_seconds=1.0)),
            timeout=1.0,
        )

        assert result.text == "Made it."
        assert len(calls) == 2


class TestProviderRegistry:

    def test_tiers_resolve_to_models(self):
        registry = ProviderRegistry.for_provider(FakeProvider(), "pro", "flash", "lite")

        assert registry.resolve(Tier.L1).model == "pro"
        assert registry.resolve(Tier.L2).model == "flash"
        assert registry.resolve(Tier.L1, force_free_tier=True).name == FREE_TIER_PROVIDER

    def test_costs(self):
        registry = ProviderRegistry.for_provider(FakeProvider(), "pro", "flash", "lite")

        assert registry.resolve(Tier.L1).cost_for(2000) == pytest.approx(0.02)
        assert registry.resolve(Tier.L2).cost_for(2000) == pytest.approx(0.005)
        assert registry.resolve(Tier.L2, force_free_tier=True).cost_for(2000) == 0.0

    def test_unregistered_tier(self):
        with pytest.raises(KeyError):
            ProviderRegistry().resolve(Tier.L1)
