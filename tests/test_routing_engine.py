"""
Test suite for RoutingEngine

Covers tier classification, the degradation chain (L1 rate limit -> L2,
budget / open circuit -> free tier) and response parsing.
"""
import asyncio

import pytest

from app.adapters.gemini_adapter import FREE_TIER_PROVIDER, ProviderRegistry
from app.core.circuit_breaker import ProviderCircuitBreaker
from app.core.errors import ProviderError, ProviderTimeoutError
from app.core.routing_engine import RoutingEngine, build_citations, parse_response
from app.core.tables import load_routing_tables
from app.core.types import Tier
from app.core.usage_ledger import L1RateLimiter, UsageLedger
from app.memory.stores import InMemoryKeyedStore
from app.rag.retriever import ContextSource, RankedContext, empty_context
from conftest import FakeProvider


def _routing(provider, **kwargs):
    registry = ProviderRegistry.for_provider(provider, "l1-model", "l2-model", "free-model")
    kwargs.setdefault("ledger", UsageLedger(InMemoryKeyedStore("usage")))
    kwargs.setdefault("rate_limiter", L1RateLimiter())
    return RoutingEngine(load_routing_tables(), registry=registry, **kwargs)


@pytest.fixture
def routing(provider):
    return _routing(provider)


# =============================================================================
# TIER CLASSIFICATION
# =============================================================================

class TestClassifyTier:

    @pytest.mark.parametrize("query,domain,tier,reason", [
        ("explain my blood test", "general_wellness", Tier.L1, "l1_keyword:blood test"),
        ("hi there", "health_reports", Tier.L1, "l1_domain:health_reports"),
        ("give me a recipe", "fitness", Tier.L2, "l2_keyword:recipe"),
        ("anything", "nutrition", Tier.L2, "l2_domain:nutrition"),
        ("anything", "health", Tier.L1, "health_domain:health"),
        ("anything", "fitness", Tier.L2, "default"),
    ])
    def test_rules(self, routing, query, domain, tier, reason):
        assert routing.classify_tier(query, domain) == (tier, reason)

    def test_l1_keyword_beats_l2_keyword(self, routing):
        tier, _ = routing.classify_tier("workout tips for my vitamin D deficiency", "fitness")

        assert tier == Tier.L1

    def test_l1_keyword_beats_l2_domain(self, routing):
        tier, _ = routing.classify_tier("is my cholesterol ok for this diet", "nutrition")

        assert tier == Tier.L1

    def test_l2_retrieval_is_stricter(self):
        l1 = RoutingEngine.retrieval_options(Tier.L1, ["recipe"])
        l2 = RoutingEngine.retrieval_options(Tier.L2, ["recipe"])

        assert (l1.max_documents, l1.relevance_threshold) == (5, 0.7)
        assert (l2.max_documents, l2.relevance_threshold) == (3, 0.8)
        assert l2.context_types == ["recipe"]

    def test_system_prompt(self, routing):
        prompt = routing.build_system_prompt("fitness", "RELEVANT CONTEXT:\n\n1. Plan")

        assert "focused on fitness" in prompt
        assert "fitness plans" in prompt
        assert "IMPORTANT GUIDELINES" in prompt
        assert prompt.endswith("1. Plan")


# =============================================================================
# DEGRADATION
# =============================================================================

class TestDecide:

    @pytest.mark.asyncio
    async def test_l1_decision(self, routing):
        decision, binding = await routing.decide("user_1", "hba1c?", "health_reports", Tier.L1, "r")

        assert decision.tier == Tier.L1
        assert decision.accuracy_requirement == 0.95
        assert binding.model == "l1-model"
        assert not decision.force_free_tier

    @pytest.mark.asyncio
    async def test_rate_limited_l1_downgrades_to_l2(self, provider):
        routing = _routing(provider, rate_limiter=L1RateLimiter(per_minute=1))
        await routing.route("user_1", "hba1c?", "health_reports", Tier.L1, "r", empty_context())

        decision, binding = await routing.decide("user_1", "hba1c?", "health_reports", Tier.L1, "r")

        assert decision.tier == Tier.L2
        assert "l1_rate_limited" in decision.reason
        assert binding.model == "l2-model"
        assert routing.get_metrics()["l1_downgrades"] == 1

    @pytest.mark.asyncio
    async def test_exhausted_budget_forces_free_tier(self, routing):
        routing.ledger.set_token_limit("user_1", 10)

        decision, binding = await routing.decide("user_1", "snack ideas", "nutrition", Tier.L2, "r")

        assert decision.force_free_tier
        assert "budget_exhausted" in decision.reason
        assert binding.name == FREE_TIER_PROVIDER

    @pytest.mark.asyncio
    async def test_open_circuit_forces_free_tier(self, provider):
        breaker = ProviderCircuitBreaker(failure_threshold=1)
        breaker.record_failure("Timeout")
        routing = _routing(provider, breaker=breaker)

        decision, _ = await routing.decide("user_1", "snack ideas", "nutrition", Tier.L2, "r")

        assert decision.force_free_tier
        assert "circuit_open" in decision.reason
        assert decision.reserved_tokens == 0
        assert (await routing.ledger.get_stats("user_1"))["daily_reserved"] == 0

    @pytest.mark.asyncio
    async def test_paid_decision_holds_its_estimate(self, routing):
        decision, _ = await routing.decide("user_1", "snack ideas", "nutrition", Tier.L2, "r")

        assert decision.reserved_tokens == decision.estimated_tokens
        assert (await routing.ledger.get_stats("user_1"))["daily_reserved"] == decision.estimated_tokens


# =============================================================================
# CALLS
# =============================================================================

class TestRoute:

    @pytest.mark.asyncio
    async def test_successful_call_is_parsed_and_billed(self, routing, provider):
        routed = await routing.route("user_1", "snack ideas", "nutrition", Tier.L2, "r", empty_context())

        assert routed.content == "Eat more leafy greens."
        assert routed.follow_ups == ["Want a recipe?"]
        assert routed.cost > 0
        assert provider.calls[0].max_output_tokens == 800

        stats = await routing.ledger.get_stats("user_1")
        assert stats["daily_used"] == routed.usage.total
        assert stats["request_count"] == 1

    @pytest.mark.asyncio
    async def test_free_tier_call_costs_nothing(self, routing):
        routing.ledger.set_token_limit("user_1", 0)

        routed = await routing.route("user_1", "snack ideas", "nutrition", Tier.L2, "r", empty_context())

        assert routed.cost == 0.0
        stats = await routing.ledger.get_stats("user_1")
        assert stats["daily_used"] == 0
        assert stats["free_tier_requests"] == 1

    @pytest.mark.asyncio
    async def test_domain_follow_ups_when_model_gives_none(self):
        routing = _routing(FakeProvider(text="Plain answer."))

        routed = await routing.route("user_1", "squats", "fitness", Tier.L2, "r", empty_context())

        assert routed.follow_ups == routing.tables.follow_ups_for("fitness")

    @pytest.mark.asyncio
    async def test_timeout_raises_and_trips_breaker(self):
        routing = _routing(FakeProvider(delay=1.0), timeout_seconds=0.01)

        with pytest.raises(ProviderTimeoutError):
            await routing.route("user_1", "snack ideas", "nutrition", Tier.L2, "r", empty_context())

        assert routing.breaker.get_metrics()["failure_count"] == 1
        assert (await routing.ledger.get_stats("user_1"))["daily_reserved"] == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_is_wrapped(self):
        routing = _routing(FakeProvider(error=RuntimeError("boom")))

        with pytest.raises(ProviderError, match="RuntimeError"):
            await routing.route("user_1", "snack ideas", "nutrition", Tier.L2, "r", empty_context())

    @pytest.mark.asyncio
    async def test_free_tier_failure_does_not_trip_breaker(self):
        routing = _routing(FakeProvider(error=RuntimeError("boom")))
        routing.ledger.set_token_limit("user_1", 0)

        with pytest.raises(ProviderError):
            await routing.route("user_1", "snack ideas", "nutrition", Tier.L2, "r", empty_context())

        assert routing.breaker.get_metrics()["failure_count"] == 0

    @pytest.mark.asyncio
    async def test_failed_call_releases_its_hold(self):
        routing = _routing(FakeProvider(error=ProviderError("503")))

        with pytest.raises(ProviderError):
            await routing.route("user_1", "snack ideas", "nutrition", Tier.L2, "r", empty_context())

        stats = await routing.ledger.get_stats("user_1")
        assert stats["daily_reserved"] == 0
        assert stats["daily_used"] == 0

    @pytest.mark.asyncio
    async def test_concurrent_calls_cannot_overspend_budget(self):
        routing = _routing(FakeProvider(delay=0.01))
        routing.ledger.set_token_limit("user_1", 600)

        routed = await asyncio.gather(*(
            routing.route("user_1", "snack ideas", "nutrition", Tier.L2, "r", empty_context())
            for _ in range(5)
        ))

        paid = [r for r in routed if not r.decision.force_free_tier]
        assert len(paid) == 1
        stats = await routing.ledger.get_stats("user_1")
        assert stats["daily_used"] <= 600
        assert stats["daily_reserved"] == 0
        assert stats["free_tier_requests"] == 4

    @pytest.mark.asyncio
    async def test_decision_is_audited(self, provider):
        audit = InMemoryKeyedStore("routing_decisions")
        routing = _routing(provider, audit_store=audit)

        await routing.route("user_1", "snack ideas", "nutrition", Tier.L2, "r", empty_context())

        docs = await audit.query({"user_id": "user_1"})
        assert len(docs) == 1
        assert docs[0]["tier"] == "L2"


# =============================================================================
# PARSING
# =============================================================================

class TestParsing:

    def test_markers_extracted_and_stripped(self):
        parsed = parse_response(
            "Try oats. [ACTION: LOG_MEAL] [ACTION:log_meal] [ACTION:DANCE] [FOLLOWUP: Want more?]"
        )

        assert parsed.content == "Try oats."
        assert [a.action_type for a in parsed.actions] == ["log_meal"]
        assert parsed.actions[0].requires_confirmation
        assert parsed.follow_ups == ["Want more?"]

    def test_plain_text(self):
        parsed = parse_response("Just water.")

        assert parsed.content == "Just water."
        assert parsed.actions == []

    def test_citations(self):
        context = RankedContext(sources=[
            ContextSource("kb_1", "knowledge_base", "Nutrition Basics", "...", 0.85),
        ])

        assert build_citations(context) == ["Nutrition Basics (Relevance: 85.0%)"]
