"""
Wellness Router Gemini Provider
===============================

Wraps Google Gemini SDK calls behind the narrow ``LLMProvider`` interface
the routing engine depends on.

Key Responsibilities:
1. Build single-turn requests (system prompt + user message)
2. Handle retries with exponential backoff inside one overall deadline
3. Map SDK failures to ``ProviderError`` / ``ProviderTimeoutError``
4. Map routing tiers to provider/model/cost (``ProviderRegistry``)

Design Principle: isolate SDK-specific code so the pipeline is testable
with a fake provider.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Protocol

from google import genai
from google.genai.types import (
    GenerateContentConfig,
    SafetySetting,
    HarmCategory,
    HarmBlockThreshold,
)

from app.core.errors import ProviderError, ProviderTimeoutError
from app.core.types import Tier

logger = logging.getLogger(__name__)


# =============================================================================
# SAFETY SETTINGS
# =============================================================================

DEFAULT_SAFETY_SETTINGS = [
    SafetySetting(
        category=HarmCategory.HARM_CATEGORY_HATE_SPEECH,
        threshold=HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
    ),
    SafetySetting(
        category=HarmCategory.HARM_CATEGORY_HARASSMENT,
        threshold=HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
    ),
    SafetySetting(
        category=HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT,
        threshold=HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
    ),
    SafetySetting(
        category=HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT,
        threshold=HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
    ),
]


# =============================================================================
# RETRY CONFIGURATION
# =============================================================================

RETRY_EXCEPTIONS = (
    "ResourceExhausted",  # 429 - Rate limit
    "ServiceUnavailable",  # 503 - Temporary outage
    "DeadlineExceeded",   # Timeout
)


# =============================================================================
# PROVIDER INTERFACE
# =============================================================================

@dataclass
class ProviderRequest:
    system_prompt: str
    user_message: str
    model: str
    max_output_tokens: int = 1000
    temperature: float = 0.7
    # Overall deadline for the call, retries included
    timeout_seconds: float = 30.0

    @property
    def input_text(self) -> str:
        """Everything sent to the model (for usage accounting)."""
        return f"{self.system_prompt}\n{self.user_message}"


@dataclass
class ProviderResult:
    text: str
    provider: str
    model: str


class LLMProvider(Protocol):
    name: str

    async def invoke(self, request: ProviderRequest) -> ProviderResult:
        ...


# =============================================================================
# GEMINI
# =============================================================================

@dataclass
class GeminiConfig:
    """Configuration for GeminiProvider."""
    temperature: float = 0.7
    top_p: float = 0.95
    top_k: int = 40
    enable_safety_settings: bool = True
    max_retries: int = 3
    base_retry_delay: float = 2.0


class GeminiProvider:
    """
    ``LLMProvider`` backed by ``client.aio.models.generate_content``.

    USAGE:
        provider = GeminiProvider(api_key="...")
        result = await provider.invoke(ProviderRequest(
            system_prompt="You are a helpful health and wellness AI assistant...",
            user_message="Is my HbA1c of 6.1% a concern?",
            model="gemini-2.5-pro",
        ))
    """

    name = "gemini"

    def __init__(self, api_key: str, config: Optional[GeminiConfig] = None):
        if not api_key:
            raise ValueError("Gemini API key is required")

        self.client = genai.Client(api_key=api_key)
        self.config = config or GeminiConfig()

        logger.info(f"GeminiProvider initialized: retries={self.config.max_retries}")

    def _build_config(self, request: ProviderRequest) -> GenerateContentConfig:
        return GenerateContentConfig(
            system_instruction=request.system_prompt,
            safety_settings=DEFAULT_SAFETY_SETTINGS if self.config.enable_safety_settings else None,
            temperature=request.temperature,
            top_p=self.config.top_p,
            top_k=self.config.top_k,
            max_output_tokens=request.max_output_tokens,
        )

    async def invoke(self, request: ProviderRequest) -> ProviderResult:
        try:
            response = await self.call_with_retry(
                self.client.aio.models.generate_content,
                request.timeout_seconds,
                model=request.model,
                contents=request.user_message,
                config=self._build_config(request),
            )
        except asyncio.TimeoutError as e:
            raise ProviderTimeoutError(str(e)) from e
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(f"{type(e).__name__}: {e}") from e

        text = getattr(response, "text", None) or ""
        if not text.strip():
            raise ProviderError(f"Empty response from {request.model}")

        return ProviderResult(text=text, provider=self.name, model=request.model)

    async def call_with_retry(self, func, timeout_seconds: float, *args, **kwargs):
        """
        Call an async SDK function with exponential backoff inside one deadline.

        ``timeout_seconds`` bounds the whole call. Each attempt gets an equal
        share of it, so a timed-out attempt can still be retried. Retries
        429 / 503 / deadline errors and timeouts; anything else propagates
        immediately.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds
        attempt_timeout = timeout_seconds / max(1, self.config.max_retries)
        last_exception: Optional[BaseException] = None

        for attempt in range(self.config.max_retries):
            budget = min(attempt_timeout, deadline - loop.time())
            if budget <= 0:
                break
            try:
                return await asyncio.wait_for(func(*args, **kwargs), timeout=budget)

            except asyncio.TimeoutError:
                last_exception = asyncio.TimeoutError(f"Timeout after {budget:.1f}s")
                logger.warning(f"Timeout on attempt {attempt + 1}")

            except Exception as e:
                last_exception = e
                error_type = type(e).__name__
                if not any(exc in error_type for exc in RETRY_EXCEPTIONS):
                    raise
                delay = min(
                    self.config.base_retry_delay * (2 ** attempt),
                    max(0.0, deadline - loop.time())
                )
                logger.warning(
                    f"Retryable error {error_type} on attempt {attempt + 1}, retrying in {delay}s"
                )
                await asyncio.sleep(delay)

        raise last_exception or asyncio.TimeoutError(f"Timeout after {timeout_seconds}s")


# =============================================================================
# REGISTRY
# =============================================================================

FREE_TIER_PROVIDER = "free_tier"


@dataclass
class ProviderBinding:
    """Resolved target of a routed call."""
    name: str
    provider: LLMProvider
    model: str
    cost_per_1k_tokens: float

    def cost_for(self, tokens: int) -> float:
        return round(tokens / 1000 * self.cost_per_1k_tokens, 6)


class ProviderRegistry:
    """
    Maps tiers (and the forced free tier) to provider, model and price.

    Usage:
        registry = ProviderRegistry.from_settings(settings, provider)
        binding = registry.resolve(Tier.L1, force_free_tier=False)
    """

    def __init__(self):
        self._bindings: Dict[str, ProviderBinding] = {}

    def register(self, key: str, binding: ProviderBinding) -> None:
        self._bindings[key] = binding

    def resolve(self, tier: Tier, force_free_tier: bool = False) -> ProviderBinding:
        key = FREE_TIER_PROVIDER if force_free_tier else tier.value
        if key not in self._bindings:
            raise KeyError(f"No provider registered for {key}")
        return self._bindings[key]

    @classmethod
    def for_provider(
        cls,
        provider: LLMProvider,
        l1_model: str,
        l2_model: str,
        free_tier_model: str,
        l1_cost_per_1k: float = 0.01,
        l2_cost_per_1k: float = 0.0025,
    ) -> "ProviderRegistry":
        """One provider serving all three tiers with different models."""
        registry = cls()
        registry.register(Tier.L1.value, ProviderBinding(
            f"{provider.name}_l1", provider, l1_model, l1_cost_per_1k
        ))
        registry.register(Tier.L2.value, ProviderBinding(
            f"{provider.name}_l2", provider, l2_model, l2_cost_per_1k
        ))
        registry.register(FREE_TIER_PROVIDER, ProviderBinding(
            FREE_TIER_PROVIDER, provider, free_tier_model, 0.0
        ))
        return registry


def create_provider_registry(provider: Optional[LLMProvider] = None) -> ProviderRegistry:
    """Registry wired from settings (a real GeminiProvider unless one is given)."""
    from config import settings

    if provider is None:
        provider = GeminiProvider(
            api_key=settings.gemini_api_key,
            config=GeminiConfig(temperature=settings.temperature),
        )
    return ProviderRegistry.for_provider(
        provider,
        l1_model=settings.l1_model,
        l2_model=settings.l2_model,
        free_tier_model=settings.free_tier_model,
    )
