"""
RoutingEngine - tiered, budget-aware provider calls

Turns a classified, context-enriched query into exactly one provider call
(or a degraded one) and parses the answer.

Routing Priority:
1. Tier: L1 keyword / health_reports -> L1; L2 keyword / nutrition,
   meal_planning -> L2; other health-adjacent domains -> L1; else L2
2. L1 rate limit exceeded -> downgrade to L2 (never reject)
3. Ledger remaining < estimate -> force free tier (never reject)
4. Paid-provider circuit open -> force free tier

No lock is held across the provider call: the ledger holds the estimate
before it and reconciles (or releases the hold) after it. Ledger and audit
failures are logged and swallowed.
"""
import asyncio
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging

from app.adapters.gemini_adapter import ProviderBinding, ProviderRegistry, ProviderRequest
from app.core.circuit_breaker import ProviderCircuitBreaker
from app.core.errors import ProviderError, ProviderTimeoutError
from app.core.tables import RoutingTables
from app.core.token_counter import TokenCounter, TokenUsage
from app.core.types import ActionType, ProposedAction, RoutingDecision, Tier
from app.core.usage_ledger import L1RateLimiter, UsageLedger
from app.memory.stores import KeyedStore
from app.rag.retriever import RankedContext, RetrievalOptions

logger = logging.getLogger(__name__)

L2_MAX_DOCUMENTS = 3
L2_RELEVANCE_THRESHOLD = 0.8
L2_MAX_OUTPUT_TOKENS = 800

GUIDELINES = (
    "\n\nIMPORTANT GUIDELINES:\n"
    "- Only answer questions related to health, nutrition, fitness, and wellness\n"
    "- If asked about topics outside your domain, politely redirect to health/wellness topics\n"
    "- Always cite sources when available in your knowledge base\n"
    "- Suggest actionable steps when appropriate, but ask for confirmation before executing actions\n"
    "- Be encouraging and supportive while providing accurate information\n"
)

ACTION_DESCRIPTIONS = {
    ActionType.LOG_MEAL: "Log this meal in your nutrition diary",
    ActionType.UPDATE_PROFILE: "Update your profile with new information",
    ActionType.SCHEDULE_WORKOUT: "Add this workout to your schedule",
}

_ACTION_MARKER = re.compile(r"\[ACTION:\s*([A-Z_]+)\s*\]", re.IGNORECASE)
_FOLLOWUP_MARKER = re.compile(r"\[FOLLOWUP:([^\]]+)\]", re.IGNORECASE)
_ANY_ACTION_MARKER = re.compile(r"\[ACTION:[^\]]+\]", re.IGNORECASE)


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class ParsedResponse:
    content: str
    actions: List[ProposedAction] = field(default_factory=list)
    follow_ups: List[str] = field(default_factory=list)


@dataclass
class RoutedResponse:
    decision: RoutingDecision
    content: str
    actions: List[ProposedAction]
    follow_ups: List[str]
    citations: List[str]
    usage: TokenUsage
    cost: float
    provider: str
    model: str


def parse_response(text: str) -> ParsedResponse:
    """Extract action / follow-up markers and strip all markers from the text."""
    actions: List[ProposedAction] = []
    seen = set()
    for match in _ACTION_MARKER.finditer(text or ""):
        try:
            action_type = ActionType(match.group(1).lower())
        except ValueError:
            logger.debug(f"Ignoring unknown action marker: {match.group(0)}")
            continue
        if action_type in seen:
            continue
        seen.add(action_type)
        actions.append(ProposedAction(
            action_type=action_type.value,
            description=ACTION_DESCRIPTIONS[action_type],
        ))

    follow_ups = [m.group(1).strip() for m in _FOLLOWUP_MARKER.finditer(text or "")]
    content = _FOLLOWUP_MARKER.sub("", _ANY_ACTION_MARKER.sub("", text or "")).strip()
    return ParsedResponse(content=content, actions=actions, follow_ups=follow_ups)


def build_citations(context: RankedContext) -> List[str]:
    return [f"{s.title} (Relevance: {s.relevance_score:.1%})" for s in context.sources]


# =============================================================================
# ENGINE
# =============================================================================

class RoutingEngine:
    """
    Usage:
        routing = RoutingEngine(tables, ledger, rate_limiter, registry)
        tier, reason = routing.classify_tier(query, domain)
        context = await retriever.retrieve(..., options=routing.retrieval_options(tier, types))
        routed = await routing.route(user_id, query, domain, tier, reason, context)
    """

    def __init__(
        self,
        tables: RoutingTables,
        ledger: UsageLedger,
        rate_limiter: L1RateLimiter,
        registry: ProviderRegistry,
        breaker: Optional[ProviderCircuitBreaker] = None,
        token_counter: Optional[TokenCounter] = None,
        audit_store: Optional[KeyedStore] = None,
        timeout_seconds: float = 30.0,
        max_output_tokens: int = 1000,
        temperature: float = 0.7,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.tables = tables
        self.ledger = ledger
        self.rate_limiter = rate_limiter
        self.registry = registry
        self.breaker = breaker or ProviderCircuitBreaker()
        self.token_counter = token_counter or TokenCounter()
        self.audit_store = audit_store
        self.timeout_seconds = timeout_seconds
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self.clock = clock

        self._total_calls = 0
        self._free_tier_calls = 0
        self._downgrades = 0

    # -------------------------------------------------------------------------
    # Tier
    # -------------------------------------------------------------------------

    def classify_tier(self, query: str, domain: str) -> Tuple[Tier, str]:
        """(tier, reason). L1 triggers are checked first and win over L2 ones."""
        tiers = self.tables.tiers
        lowered = (query or "").lower()

        l1_hit = next((kw for kw in tiers.l1_keywords if kw in lowered), None)
        if l1_hit:
            return Tier.L1, f"l1_keyword:{l1_hit}"
        if domain in tiers.l1_domains:
            return Tier.L1, f"l1_domain:{domain}"

        l2_hit = next((kw for kw in tiers.l2_keywords if kw in lowered), None)
        if l2_hit:
            return Tier.L2, f"l2_keyword:{l2_hit}"
        if domain in tiers.l2_domains:
            return Tier.L2, f"l2_domain:{domain}"

        if domain in tiers.health_adjacent_domains:
            return Tier.L1, f"health_domain:{domain}"
        return Tier.L2, "default"

    @staticmethod
    def retrieval_options(tier: Tier, context_types: List[str]) -> RetrievalOptions:
        """L2 calls get a smaller, stricter context."""
        if tier == Tier.L2:
            return RetrievalOptions(
                max_documents=L2_MAX_DOCUMENTS,
                relevance_threshold=L2_RELEVANCE_THRESHOLD,
                context_types=list(context_types),
            )
        return RetrievalOptions(context_types=list(context_types))

    def build_system_prompt(self, domain: str, context_text: str = "") -> str:
        prompts = self.tables.domain_prompts
        prompt = f"You are a helpful health and wellness AI assistant focused on {domain}. "
        prompt += prompts.get(domain) or prompts.get("general_wellness", "")
        prompt += GUIDELINES
        if context_text:
            prompt += f"\n{context_text}"
        return prompt

    # -------------------------------------------------------------------------
    # Decision
    # -------------------------------------------------------------------------

    async def decide(
        self,
        user_id: str,
        query: str,
        domain: str,
        tier: Tier,
        reason: str,
        context_text: str = ""
    ) -> Tuple[RoutingDecision, ProviderBinding]:
        reasons = [reason]

        if tier == Tier.L1:
            limit = self.rate_limiter.check(user_id)
            if limit.blocked:
                tier = Tier.L2
                reasons.append("l1_rate_limited")
                self._downgrades += 1

        estimate = self.token_counter.estimate_request(query, context_text)
        force_free_tier = False
        reserved_tokens = 0
        try:
            reservation = await self.ledger.reserve(user_id, estimate.total)
            reserved_tokens = reservation.held_tokens
            if reservation.force_free_tier:
                force_free_tier = True
                reasons.append("budget_exhausted")
        except Exception as e:
            logger.error(f"Ledger pre-check failed for {user_id}: {e}")

        if not force_free_tier and not self.breaker.allows_request():
            force_free_tier = True
            reasons.append("circuit_open")
            await self._release(user_id, reserved_tokens)
            reserved_tokens = 0

        binding = self.registry.resolve(tier, force_free_tier=force_free_tier)
        decision = RoutingDecision(
            request_type="chat",
            domain=domain,
            tier=tier,
            provider=binding.name,
            model=binding.model,
            accuracy_requirement=tier.accuracy_requirement,
            estimated_cost=binding.cost_for(estimate.total),
            estimated_tokens=estimate.total,
            force_free_tier=force_free_tier,
            reason=",".join(reasons),
            user_id=user_id,
            reserved_tokens=reserved_tokens,
            created_at=self.clock(),
        )
        return decision, binding

    # -------------------------------------------------------------------------
    # Call
    # -------------------------------------------------------------------------

    async def route(
        self,
        user_id: str,
        query: str,
        domain: str,
        tier: Tier,
        reason: str,
        context: RankedContext
    ) -> RoutedResponse:
        """
        Decide, call, parse, account.

        Raises:
            ProviderError / ProviderTimeoutError when the call fails
        """
        decision, binding = await self.decide(
            user_id, query, domain, tier, reason, context.context_text
        )

        request = ProviderRequest(
            system_prompt=self.build_system_prompt(domain, context.context_text),
            user_message=query,
            model=binding.model,
            max_output_tokens=L2_MAX_OUTPUT_TOKENS if decision.tier == Tier.L2 else self.max_output_tokens,
            temperature=self.temperature,
            timeout_seconds=self.timeout_seconds,
        )

        self._total_calls += 1
        if decision.force_free_tier:
            self._free_tier_calls += 1
        if decision.tier == Tier.L1:
            self.rate_limiter.record(user_id)

        await self._audit(decision)

        logger.info(
            f"🧭 Routing {user_id} [{domain}] -> {decision.tier.value} "
            f"{binding.name}/{binding.model} ({decision.reason})"
        )

        # The provider enforces the deadline across its own retries; this
        # bound covers providers that do not.
        try:
            result = await asyncio.wait_for(
                binding.provider.invoke(request),
                timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as e:
            self._record_provider_failure(decision, "Timeout")
            await self._release(user_id, decision.reserved_tokens)
            raise ProviderTimeoutError(f"Provider timed out after {self.timeout_seconds}s") from e
        except asyncio.CancelledError:
            await self._release(user_id, decision.reserved_tokens)
            raise
        except ProviderError as e:
            self._record_provider_failure(decision, type(e).__name__)
            await self._release(user_id, decision.reserved_tokens)
            raise
        except Exception as e:
            self._record_provider_failure(decision, type(e).__name__)
            await self._release(user_id, decision.reserved_tokens)
            raise ProviderError(f"{type(e).__name__}: {e}") from e

        if not decision.force_free_tier:
            self.breaker.record_success()

        parsed = parse_response(result.text)
        usage = self.token_counter.actual_usage(request.input_text, result.text)
        cost = 0.0 if decision.force_free_tier else binding.cost_for(usage.total)

        try:
            await self.ledger.commit(
                user_id, usage.total, decision.tier, binding.name,
                free_tier=decision.force_free_tier,
                reserved_tokens=decision.reserved_tokens
            )
        except Exception as e:
            logger.error(f"❌ Ledger commit failed for {user_id}: {e}")

        return RoutedResponse(
            decision=decision,
            content=parsed.content,
            actions=parsed.actions,
            follow_ups=parsed.follow_ups or self.tables.follow_ups_for(domain),
            citations=build_citations(context),
            usage=usage,
            cost=cost,
            provider=binding.name,
            model=binding.model,
        )

    def _record_provider_failure(self, decision: RoutingDecision, error_type: str) -> None:
        logger.error(f"Provider {decision.provider} failed ({error_type})")
        if not decision.force_free_tier:
            self.breaker.record_failure(error_type)

    async def _release(self, user_id: str, reserved_tokens: int) -> None:
        if not reserved_tokens:
            return
        try:
            await self.ledger.release(user_id, reserved_tokens)
        except Exception as e:
            logger.error(f"❌ Ledger release failed for {user_id}: {e}")

    async def _audit(self, decision: RoutingDecision) -> None:
        if self.audit_store is None:
            return
        doc = decision.to_dict()
        doc.update({"user_id": decision.user_id, "created_at": decision.created_at})
        try:
            key = f"{decision.user_id}:{decision.created_at.isoformat()}:{self._total_calls}"
            await self.audit_store.put(key, doc)
        except Exception as e:
            logger.warning(f"Routing audit write failed: {e}")

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "total_calls": self._total_calls,
            "free_tier_calls": self._free_tier_calls,
            "l1_downgrades": self._downgrades,
            "circuit_breaker": self.breaker.get_metrics(),
        }
