"""
Wellness Router Core Types
==========================

Shared dataclasses, enums, and type definitions for the chat routing pipeline.

This module defines the contract between components (session manager,
classifier, caches, routing engine) and the documents they persist.
Documents round-trip through plain dicts (``to_dict`` / ``from_dict``) so the
same objects work with the in-memory and the MongoDB stores.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


def new_id() -> str:
    return str(uuid.uuid4())


# =============================================================================
# ENUMS
# =============================================================================

class SessionStatus(Enum):
    """
    Session lifecycle.

    ACTIVE -> PAUSED -> ACTIVE -> ARCHIVED (terminal)
    EXPIRED is reached automatically when now > expires_at while active.
    """
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"
    EXPIRED = "expired"


class SessionType(Enum):
    GENERAL_CHAT = "general_chat"
    HEALTH_CONSULTATION = "health_consultation"
    NUTRITION_PLANNING = "nutrition_planning"
    FITNESS_GUIDANCE = "fitness_guidance"
    MEAL_PLANNING = "meal_planning"


class MessageRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    ERROR = "error"


class ProcessingStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    OUT_OF_SCOPE = "out_of_scope"


class Tier(Enum):
    """
    Accuracy/cost class of a routed call.

    L1: health-critical interpretation (accuracy 0.95)
    L2: general advice, cost-optimized (accuracy 0.85)
    """
    L1 = "L1"
    L2 = "L2"

    @property
    def accuracy_requirement(self) -> float:
        return 0.95 if self is Tier.L1 else 0.85


class ActionType(Enum):
    LOG_MEAL = "log_meal"
    UPDATE_PROFILE = "update_profile"
    SCHEDULE_WORKOUT = "schedule_workout"


class ActionStatus(Enum):
    PENDING = "pending"
    EXECUTED = "executed"
    REJECTED = "rejected"


# =============================================================================
# CLASSIFICATION
# =============================================================================

@dataclass
class NormalizedText:
    """Output of the preprocessing step: cleaned text plus a language tag."""
    text: str
    language_tag: str = "en"


@dataclass
class DomainClassification:
    domain: str
    confidence: float
    is_in_scope: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "domain": self.domain,
            "confidence": self.confidence,
            "is_in_scope": self.is_in_scope,
        }


# =============================================================================
# SESSIONS & MESSAGES
# =============================================================================

@dataclass
class SessionPreferences:
    language: str = "en"
    response_style: str = "conversational"
    domain_focus: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "language": self.language,
            "response_style": self.response_style,
            "domain_focus": list(self.domain_focus),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SessionPreferences":
        data = data or {}
        return cls(
            language=data.get("language", "en"),
            response_style=data.get("response_style", "conversational"),
            domain_focus=list(data.get("domain_focus") or []),
        )


@dataclass
class Session:
    """Chat session document - owned exclusively by ``user_id``."""
    user_id: str
    expires_at: datetime
    type: SessionType = SessionType.GENERAL_CHAT
    status: SessionStatus = SessionStatus.ACTIVE
    preferences: SessionPreferences = field(default_factory=SessionPreferences)
    title: str = "Health & Wellness Chat"
    message_count: int = 0
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=datetime.utcnow)
    last_activity_at: datetime = field(default_factory=datetime.utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.utcnow()) > self.expires_at

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        """Reusable for new messages: active and not past its expiry."""
        return self.status == SessionStatus.ACTIVE and not self.is_expired(now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type.value,
            "status": self.status.value,
            "preferences": self.preferences.to_dict(),
            "title": self.title,
            "message_count": self.message_count,
            "created_at": self.created_at,
            "last_activity_at": self.last_activity_at,
            "expires_at": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            type=SessionType(data.get("type", SessionType.GENERAL_CHAT.value)),
            status=SessionStatus(data.get("status", SessionStatus.ACTIVE.value)),
            preferences=SessionPreferences.from_dict(data.get("preferences")),
            title=data.get("title", "Health & Wellness Chat"),
            message_count=data.get("message_count", 0),
            created_at=data["created_at"],
            last_activity_at=data["last_activity_at"],
            expires_at=data["expires_at"],
        )


@dataclass
class ProposedAction:
    """
    An action embedded in an assistant message (e.g. "log this meal").

    Nothing fires on a collaborator domain until the user confirms it.
    """
    action_type: str
    description: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    requires_confirmation: bool = True
    status: ActionStatus = ActionStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_type": self.action_type,
            "description": self.description,
            "parameters": dict(self.parameters),
            "requires_confirmation": self.requires_confirmation,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProposedAction":
        return cls(
            action_type=data["action_type"],
            description=data.get("description", ""),
            parameters=dict(data.get("parameters") or {}),
            requires_confirmation=data.get("requires_confirmation", True),
            status=ActionStatus(data.get("status", ActionStatus.PENDING.value)),
        )


@dataclass
class Message:
    """Chat message - append-only per session, immutable once completed."""
    session_id: str
    user_id: str
    role: MessageRole
    content: str
    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    metadata: Dict[str, Any] = field(default_factory=dict)
    token_count: int = 0
    cost_usd: float = 0.0
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def actions(self) -> List[ProposedAction]:
        return [ProposedAction.from_dict(a) for a in self.metadata.get("actions", [])]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "user_id": self.user_id,
            "role": self.role.value,
            "content": self.content,
            "processing_status": self.processing_status.value,
            "metadata": self.metadata,
            "token_count": self.token_count,
            "cost_usd": self.cost_usd,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            id=data["id"],
            session_id=data["session_id"],
            user_id=data["user_id"],
            role=MessageRole(data["role"]),
            content=data.get("content", ""),
            processing_status=ProcessingStatus(data.get("processing_status", "pending")),
            metadata=dict(data.get("metadata") or {}),
            token_count=data.get("token_count", 0),
            cost_usd=data.get("cost_usd", 0.0),
            created_at=data["created_at"],
        )


# =============================================================================
# ROUTING
# =============================================================================

@dataclass
class RoutingDecision:
    """
    Audit record of a routing choice. Written once per external call.

    Local answers (cache, profile, diet plan, out-of-scope) also carry one so
    the response metadata has a uniform shape; those have ``estimated_cost=0``.
    """
    request_type: str
    domain: str
    tier: Tier
    provider: str
    model: str
    accuracy_requirement: float
    estimated_cost: float = 0.0
    estimated_tokens: int = 0
    force_free_tier: bool = False
    reason: str = ""
    user_id: Optional[str] = None
    # Budget tokens held by the ledger until the call is committed or released
    reserved_tokens: int = 0
    created_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_type": self.request_type,
            "domain": self.domain,
            "tier": self.tier.value,
            "provider": self.provider,
            "model": self.model,
            "accuracy_requirement": self.accuracy_requirement,
            "estimated_cost": self.estimated_cost,
            "estimated_tokens": self.estimated_tokens,
            "force_free_tier": self.force_free_tier,
            "reason": self.reason,
        }


# =============================================================================
# INBOUND / OUTBOUND
# =============================================================================

@dataclass
class SendMessageRequest:
    message: str
    session_id: Optional[str] = None
    session_type: Optional[SessionType] = None
    preferences: Optional[SessionPreferences] = None


@dataclass
class ChatResponse:
    """Unified result of ``send_message`` for every answer path."""
    session_id: str
    message_id: str
    response: str
    success: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)
    citations: List[str] = field(default_factory=list)
    follow_up_questions: List[str] = field(default_factory=list)
    actions: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def cost(self) -> float:
        return float(self.metadata.get("cost", 0.0))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": self.success,
            "session_id": self.session_id,
            "message_id": self.message_id,
            "response": self.response,
            "metadata": self.metadata,
            "citations": self.citations,
            "follow_up_questions": self.follow_up_questions,
            "actions": self.actions,
            "error": self.error,
        }


@dataclass
class ErrorResponse:
    """
    Structured error for client handling.

    Shown as the assistant message when processing fails after a session
    exists; the session stays usable.
    """
    error_code: str
    message: str
    can_retry: bool
    suggestion: Optional[str] = None


# =============================================================================
# PREDEFINED ERROR RESPONSES
# =============================================================================

ERROR_RESPONSES = {
    "provider_failure": ErrorResponse(
        error_code="provider_failure",
        message="I'm sorry, processing failed while generating your answer. Please try again.",
        can_retry=True,
        suggestion="Try asking again in a moment",
    ),
    "timeout": ErrorResponse(
        error_code="timeout",
        message="I'm sorry, your request took too long to process. Please try again.",
        can_retry=True,
        suggestion="Try a shorter or more specific question",
    ),
    "internal_error": ErrorResponse(
        error_code="internal_error",
        message="I'm sorry, something went wrong while processing your message. Please try again.",
        can_retry=True,
        suggestion=None,
    ),
}


def get_error_response(error_code: str) -> ErrorResponse:
    """
    Get predefined error response by code.

    Falls back to internal_error if code not found.
    """
    return ERROR_RESPONSES.get(error_code, ERROR_RESPONSES["internal_error"])
