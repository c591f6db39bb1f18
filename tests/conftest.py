"""
Shared fixtures: a scripted LLM provider and a fully wired engine on
process-local stores.
"""
import asyncio
from datetime import datetime, timedelta
from typing import List, Optional

import pytest

from app.adapters.gemini_adapter import ProviderRequest, ProviderResult
from app.core.engine import create_chat_engine
from app.memory.stores import create_memory_stores


class FakeProvider:
    """LLMProvider double: returns ``text`` or raises ``error`` after ``delay`` seconds."""

    name = "fake"

    def __init__(self, text: str = "Eat more leafy greens. [FOLLOWUP:Want a recipe?]",
                 error: Optional[Exception] = None, delay: float = 0.0):
        self.text = text
        self.error = error
        self.delay = delay
        self.calls: List[ProviderRequest] = []

    async def invoke(self, request: ProviderRequest) -> ProviderResult:
        self.calls.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return ProviderResult(text=self.text, provider=self.name, model=request.model)


class FakeClock:
    """Mutable ``datetime.utcnow`` stand-in."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 3, 1, 9, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def stores():
    return create_memory_stores()


@pytest.fixture
def engine(stores, provider):
    return create_chat_engine(stores=stores, provider=provider)


@pytest.fixture
def clock():
    return FakeClock()
