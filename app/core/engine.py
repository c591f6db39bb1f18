"""
Wellness Router Chat Engine
===========================

The per-message pipeline. Every answer path (canned redirect, local cache,
health profile, diet plan, routed model call) ends in the same place:
one persisted assistant message and one ``ChatResponse``.

Pipeline (cheapest source first):
1. Resolve the session (paused -> rejected, expired/archived -> replaced)
2. Append the user message (status processing)
3. Scope classification -> out of scope: canned redirect, cost 0
4. Smart Query Cache -> hit: cost 0
5. Tier; for L1 the Health Profile Store -> fresh hit: cost 0
6. Diet-planning queries -> active diet plan, cost 0
7. RAG context
8-10. Routed provider call (ledger, rate limit, parsing, usage commit)
11. L1 answers are extracted back into the Health Profile Store
12. Diet-plan progress refresh
13. Session activity / message count

Only session and action errors escape ``send_message``; provider and
internal failures become a failed assistant message and the session stays
usable.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .errors import (
    ActionConfirmationRequired,
    ActionExecutionError,
    PersistenceError,
    ProviderError,
    ProviderTimeoutError,
    UnknownActionError,
)
from .diet_plan import DietPlanManager
from .normalizer import normalize
from .routing_engine import RoutingEngine
from .scope_classifier import OUT_OF_SCOPE_RESPONSE, ScopeClassifier
from .session_manager import SessionManager
from .tables import RoutingTables
from .types import (
    ActionStatus,
    ChatResponse,
    DomainClassification,
    Message,
    MessageRole,
    NormalizedText,
    ProcessingStatus,
    ProposedAction,
    RoutingDecision,
    SendMessageRequest,
    Session,
    Tier,
    get_error_response,
)

from app.memory.health_profile import HealthProfileStore
from app.memory.smart_query_cache import SmartQueryCache
from app.rag.retriever import ContextRetriever

logger = logging.getLogger(__name__)

# (user_id, parameters) -> handler result
ActionHandler = Callable[[str, Dict[str, Any]], Awaitable[Any]]
# user_id -> metrics snapshot for the smart cache (None when unavailable)
MetricsLoader = Callable[[str], Awaitable[Optional[Dict[str, Any]]]]

LOCAL_CACHE_PROVIDER = "local_cache"
HEALTH_PROFILE_PROVIDER = "health_profile"
DIET_PLANNER_PROVIDER = "timeline_diet_planner"
OUT_OF_SCOPE_PROVIDER = "scope_guard"

PROFILE_CITATION = "Your personalized health profile"


# =============================================================================
# REQUEST CONTEXT
# =============================================================================

@dataclass
class MessageContext:
    """State carried through one ``send_message`` call."""
    user_id: str
    session: Session
    user_message: Message
    normalized: NormalizedText
    started_at: float = field(default_factory=time.time)
    classification: Optional[DomainClassification] = None

    def elapsed_ms(self) -> int:
        return int((time.time() - self.started_at) * 1000)


# =============================================================================
# CHAT ENGINE
# =============================================================================

class ChatEngine:
    """
    ARCHITECTURE:
    ```
    send_message
        │
        ├─ SessionManager      (session + message persistence)
        ├─ ScopeClassifier     (out of scope -> redirect)
        ├─ SmartQueryCache     (personal-data questions)
        ├─ HealthProfileStore  (L1 questions already answered before)
        ├─ DietPlanManager     (diet-planning questions)
        ├─ ContextRetriever    (RAG)
        └─ RoutingEngine       (ledger, tiers, provider call)
    ```

    Build with ``create_chat_engine()``; tests wire fakes directly.
    """

    def __init__(
        self,
        tables: RoutingTables,
        sessions: SessionManager,
        classifier: ScopeClassifier,
        smart_cache: SmartQueryCache,
        profiles: HealthProfileStore,
        retriever: ContextRetriever,
        routing: RoutingEngine,
        diet_plans: DietPlanManager,
        metrics_loader: Optional[MetricsLoader] = None,
        action_handlers: Optional[Dict[str, ActionHandler]] = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.tables = tables
        self.sessions = sessions
        self.classifier = classifier
        self.smart_cache = smart_cache
        self.profiles = profiles
        self.retriever = retriever
        self.routing = routing
        self.diet_plans = diet_plans
        self.metrics_loader = metrics_loader
        self.action_handlers: Dict[str, ActionHandler] = dict(action_handlers or {})
        self.clock = clock

        logger.info("ChatEngine initialized")

    def register_action_handler(self, action_type: str, handler: ActionHandler) -> None:
        self.action_handlers[action_type] = handler

    # =========================================================================
    # MAIN ENTRY POINT
    # =========================================================================

    async def send_message(self, user_id: str, request: SendMessageRequest) -> ChatResponse:
        """
        Process one user message.

        Raises:
            SessionNotFoundError / SessionOwnershipError / SessionPausedError
        """
        session = await self.sessions.resolve_session(
            user_id, request.session_id, request.session_type, request.preferences
        )

        normalized = normalize(request.message)
        user_message = Message(
            session_id=session.id,
            user_id=user_id,
            role=MessageRole.USER,
            content=request.message,
            processing_status=ProcessingStatus.PROCESSING,
            metadata={"language_detection": {"language": normalized.language_tag}},
            created_at=self.clock(),
        )
        await self.sessions.append_message(user_message)

        context = MessageContext(
            user_id=user_id,
            session=session,
            user_message=user_message,
            normalized=normalized,
        )

        try:
            return await self._execute_pipeline(context)

        except ProviderTimeoutError as e:
            logger.error(f"Provider timeout for {user_id}: {e}")
            return await self._fail(context, "timeout")

        except ProviderError as e:
            logger.error(f"Provider failure for {user_id}: {e}")
            return await self._fail(context, "provider_failure")

        except Exception as e:
            logger.error(f"Engine error: {e}", exc_info=True)
            return await self._fail(context, "internal_error")

    async def _execute_pipeline(self, context: MessageContext) -> ChatResponse:
        user_id = context.user_id
        text = context.normalized.text

        # Step 3: scope
        classification = self.classifier.classify(text)
        context.classification = classification
        if not classification.is_in_scope:
            return await self._respond(
                context,
                content=OUT_OF_SCOPE_RESPONSE,
                decision=self._local_decision(classification.domain, Tier.L2, OUT_OF_SCOPE_PROVIDER, "out_of_scope"),
                follow_ups=self.classifier.out_of_scope_follow_ups(),
                status=ProcessingStatus.OUT_OF_SCOPE,
            )
        domain = classification.domain

        # Step 4: smart cache
        await self._refresh_metrics(user_id)
        local = self.smart_cache.lookup(user_id, text)
        self.smart_cache.record(user_id, text, local is not None, local)
        if local is not None:
            logger.info(f"⚡ Smart cache {local.data_source} hit for {user_id}: {local.question_id}")
            return await self._respond(
                context,
                content=local.answer,
                decision=self._local_decision(domain, Tier.L2, LOCAL_CACHE_PROVIDER, local.question_id),
                follow_ups=local.follow_ups,
                extra={"data_source": local.data_source, "confidence": local.confidence},
            )

        # Step 5: tier, then the health profile for L1 questions
        tier, tier_reason = self.routing.classify_tier(text, domain)
        if tier == Tier.L1:
            insight = await self.profiles.get_insight_for_query(user_id, text)
            if insight is not None:
                await self._credit_profile_savings(user_id, text)
                logger.info(f"🧬 Health profile answered {insight.metrics} for {user_id}")
                return await self._respond(
                    context,
                    content=insight.answer,
                    decision=self._local_decision(domain, Tier.L1, HEALTH_PROFILE_PROVIDER, "profile_hit"),
                    citations=[PROFILE_CITATION],
                    follow_ups=insight.follow_ups,
                    extra={"confidence": insight.confidence, "profile_metrics": insight.metrics},
                )

        # Step 6: diet-planning questions
        if self._is_diet_planning_query(text):
            plan = await self.diet_plans.get_or_create_plan(user_id)
            plan = await self.diet_plans.update_progress(user_id) or plan
            return await self._respond(
                context,
                content=self.diet_plans.render_plan(plan),
                decision=self._local_decision(domain, Tier.L2, DIET_PLANNER_PROVIDER, "diet_plan"),
                follow_ups=self.tables.follow_ups_for("meal_planning"),
                extra={"diet_plan_id": plan.id, "phase": plan.phase.value},
            )

        # Step 7: RAG
        rag_context = await self.retriever.retrieve(
            user_id, text, domain,
            self.routing.retrieval_options(tier, self.tables.context_types_for(domain)),
        )

        # Steps 8-10: routed call
        routed = await self.routing.route(user_id, text, domain, tier, tier_reason, rag_context)

        # Step 11: feed L1 answers back into the profile
        if routed.decision.tier == Tier.L1:
            await self.profiles.extract_and_store(
                user_id,
                routed.content,
                analysis_type=f"{domain}_analysis",
                confidence=routed.decision.accuracy_requirement,
                cost=routed.cost,
                source=routed.provider,
            )

        # Step 12: diet plan progress
        try:
            await self.diet_plans.update_progress(user_id)
        except Exception as e:
            logger.warning(f"Diet plan progress refresh failed for {user_id}: {e}")

        return await self._respond(
            context,
            content=routed.content,
            decision=routed.decision,
            cost=routed.cost,
            citations=routed.citations,
            follow_ups=routed.follow_ups,
            actions=routed.actions,
            token_count=routed.usage.total,
            rag_context={
                "sources": [s.to_dict() for s in rag_context.sources],
                "metadata": rag_context.metadata,
            },
            extra={"provider": routed.provider, "model": routed.model},
        )

    # =========================================================================
    # PIPELINE HELPERS
    # =========================================================================

    async def _refresh_metrics(self, user_id: str) -> None:
        if self.metrics_loader is None:
            return
        try:
            metrics = await self.metrics_loader(user_id)
        except Exception as e:
            logger.warning(f"Metrics loader failed for {user_id}: {e}")
            return
        if metrics:
            self.smart_cache.load_metrics(user_id, metrics)

    def _is_diet_planning_query(self, text: str) -> bool:
        lowered = text.lower()
        return any(kw in lowered for kw in self.tables.diet_planning_keywords)

    async def _credit_profile_savings(self, user_id: str, text: str) -> None:
        """Credit the L1 call the profile hit avoided."""
        try:
            estimate = self.routing.token_counter.estimate_request(text)
            avoided = self.routing.registry.resolve(Tier.L1).cost_for(estimate.total)
            await self.profiles.record_cost_savings(user_id, avoided)
        except Exception as e:
            logger.warning(f"Cost savings update failed for {user_id}: {e}")

    def _local_decision(self, domain: str, tier: Tier, provider: str, reason: str) -> RoutingDecision:
        return RoutingDecision(
            request_type="chat",
            domain=domain,
            tier=tier,
            provider=provider,
            model="none",
            accuracy_requirement=tier.accuracy_requirement,
            reason=reason,
        )

    async def _respond(
        self,
        context: MessageContext,
        content: str,
        decision: RoutingDecision,
        cost: float = 0.0,
        citations: Optional[List[str]] = None,
        follow_ups: Optional[List[str]] = None,
        actions: Optional[List[ProposedAction]] = None,
        token_count: int = 0,
        rag_context: Optional[Dict[str, Any]] = None,
        extra: Optional[Dict[str, Any]] = None,
        status: ProcessingStatus = ProcessingStatus.COMPLETED
    ) -> ChatResponse:
        """Persist the assistant message and close out the exchange."""
        citations = citations or []
        follow_ups = follow_ups or []
        action_dicts = [a.to_dict() for a in (actions or [])]
        classification = context.classification

        metadata: Dict[str, Any] = {
            "domain_classification": classification.to_dict() if classification else None,
            "language_detection": {"language": context.normalized.language_tag},
            "rag_context": rag_context or {"sources": [], "metadata": {}},
            "routing_decision": decision.to_dict(),
            "cost": cost,
            "processing_time_ms": context.elapsed_ms(),
            **(extra or {}),
        }

        assistant_message = Message(
            session_id=context.session.id,
            user_id=context.user_id,
            role=MessageRole.ASSISTANT,
            content=content,
            processing_status=status,
            metadata={
                **metadata,
                "actions": action_dicts,
                "follow_up_questions": follow_ups,
                "citations": citations,
            },
            token_count=token_count,
            cost_usd=cost,
            created_at=self.clock(),
        )
        await self._persist_exchange(context, assistant_message, status)

        return ChatResponse(
            session_id=context.session.id,
            message_id=assistant_message.id,
            response=content,
            metadata=metadata,
            citations=citations,
            follow_up_questions=follow_ups,
            actions=action_dicts,
        )

    async def _fail(self, context: MessageContext, error_code: str) -> ChatResponse:
        error = get_error_response(error_code)
        error_message = Message(
            session_id=context.session.id,
            user_id=context.user_id,
            role=MessageRole.ERROR,
            content=error.message,
            processing_status=ProcessingStatus.FAILED,
            metadata={"error_code": error.error_code, "can_retry": error.can_retry},
            created_at=self.clock(),
        )
        await self._persist_exchange(context, error_message, ProcessingStatus.FAILED)

        return ChatResponse(
            session_id=context.session.id,
            message_id=error_message.id,
            response=error.message,
            success=False,
            metadata={
                "cost": 0.0,
                "processing_time_ms": context.elapsed_ms(),
                "can_retry": error.can_retry,
                "suggestion": error.suggestion,
            },
            error=error.error_code,
        )

    async def _persist_exchange(
        self,
        context: MessageContext,
        reply: Message,
        user_status: ProcessingStatus
    ) -> None:
        """Write the reply and the user message status; failures are logged only."""
        try:
            context.user_message.processing_status = user_status
            await self.sessions.save_message(context.user_message)
            await self.sessions.append_message(reply)
            context.session = await self.sessions.record_exchange(context.session)
        except PersistenceError as e:
            logger.error(f"❌ Failed to persist exchange for session {context.session.id}: {e}")

    # =========================================================================
    # ACTIONS
    # =========================================================================

    async def execute_action(
        self,
        user_id: str,
        message_id: str,
        action_index: int,
        confirmed: bool
    ) -> Dict[str, Any]:
        """
        Run a proposed action from an assistant message.

        Raises:
            MessageNotFoundError: unknown message (or another user's)
            ActionConfirmationRequired: ``confirmed`` is False
            UnknownActionError: no such action / no handler for its type
            ActionExecutionError: handler failed (action marked rejected)
        """
        message = await self.sessions.get_message(user_id, message_id)
        actions = message.metadata.get("actions", [])
        if action_index < 0 or action_index >= len(actions):
            raise UnknownActionError(f"Message {message_id} has no action #{action_index}")

        action = ProposedAction.from_dict(actions[action_index])
        if action.status != ActionStatus.PENDING:
            raise ActionExecutionError(f"Action already {action.status.value}")
        if not confirmed:
            raise ActionConfirmationRequired(
                f"Action '{action.action_type}' requires confirmation: {action.description}"
            )

        handler = self.action_handlers.get(action.action_type)
        if handler is None:
            raise UnknownActionError(f"No handler registered for '{action.action_type}'")

        try:
            result = await handler(user_id, action.parameters)
        except Exception as e:
            action.status = ActionStatus.REJECTED
            actions[action_index] = action.to_dict()
            await self.sessions.save_message(message)
            logger.error(f"Action {action.action_type} failed for {user_id}: {e}")
            raise ActionExecutionError(str(e)) from e

        action.status = ActionStatus.EXECUTED
        actions[action_index] = action.to_dict()
        await self.sessions.save_message(message)
        logger.info(f"✅ Executed {action.action_type} for {user_id}")
        return {"action_type": action.action_type, "status": action.status.value, "result": result}

    # =========================================================================
    # COLLABORATOR HOOKS
    # =========================================================================

    async def index_user_data(
        self,
        user_id: str,
        context_type: str,
        payload: Dict[str, Any]
    ) -> Optional[str]:
        """Make a domain record available to RAG (and to the profile, for reports)."""
        if context_type == "health_report":
            await self.profiles.update_from_health_report(user_id, payload)
        return await self.retriever.index_user_data(user_id, context_type, payload)


# =============================================================================
# FACTORY FUNCTION
# =============================================================================

def create_chat_engine(
    stores=None,
    provider=None,
    metrics_loader: Optional[MetricsLoader] = None,
    action_handlers: Optional[Dict[str, ActionHandler]] = None,
) -> ChatEngine:
    """
    Factory function to create ChatEngine with settings.

    Args:
        stores: StoreBundle (defaults to process-local stores)
        provider: LLMProvider serving every tier (defaults to Gemini)
        metrics_loader: Source of smart-cache metrics snapshots
        action_handlers: Handlers per action type

    Returns:
        Configured ChatEngine
    """
    from config import settings
    from app.adapters.gemini_adapter import create_provider_registry
    from app.core.circuit_breaker import ProviderCircuitBreaker
    from app.core.keyed_lock import KeyedLock
    from app.core.tables import load_routing_tables
    from app.core.token_counter import TokenCounter
    from app.core.usage_ledger import L1RateLimiter, UsageLedger
    from app.memory.stores import create_memory_stores

    stores = stores or create_memory_stores()
    tables = load_routing_tables(settings.routing_tables_path or None)
    locks = KeyedLock()

    profiles = HealthProfileStore(stores.health_profiles, locks=locks)
    smart_cache = SmartQueryCache(follow_ups=tables.cache_follow_ups_for)
    profiles.add_change_listener(smart_cache.on_profile_change)

    routing = RoutingEngine(
        tables=tables,
        ledger=UsageLedger(stores.usage_ledger, settings.daily_token_limit, locks=locks),
        rate_limiter=L1RateLimiter(
            per_minute=settings.l1_rate_per_minute,
            per_hour=settings.l1_rate_per_hour,
            per_day=settings.l1_rate_per_day,
        ),
        registry=create_provider_registry(provider),
        breaker=ProviderCircuitBreaker(
            failure_threshold=settings.circuit_failure_threshold,
            recovery_timeout=settings.circuit_recovery_seconds,
        ),
        token_counter=TokenCounter(),
        audit_store=stores.routing_decisions,
        timeout_seconds=settings.provider_timeout_seconds,
        max_output_tokens=settings.max_output_tokens,
        temperature=settings.temperature,
    )

    return ChatEngine(
        tables=tables,
        sessions=SessionManager(
            stores.sessions,
            stores.messages,
            expiration_hours=settings.session_expiration_hours,
            max_sessions_per_user=settings.max_sessions_per_user,
            locks=locks,
        ),
        classifier=ScopeClassifier(tables),
        smart_cache=smart_cache,
        profiles=profiles,
        retriever=ContextRetriever(stores.rag_contexts, profiles),
        routing=routing,
        diet_plans=DietPlanManager(stores.diet_plans, profiles, locks=locks),
        metrics_loader=metrics_loader,
        action_handlers=action_handlers,
    )
