"""
Exceptions raised across the routing pipeline.

Only the client-facing ones (session ownership/lookup, paused sessions,
action execution) are meant to escape ``ChatEngine``; the rest are caught
inside the pipeline and degrade to a logged, still-answered request.
"""


class WellnessRouterError(Exception):
    """Base class for all pipeline errors."""


# -----------------------------------------------------------------------------
# Client errors
# -----------------------------------------------------------------------------

class SessionNotFoundError(WellnessRouterError):
    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class SessionOwnershipError(SessionNotFoundError):
    """Session exists but belongs to another user (reported as not found)."""


class SessionPausedError(WellnessRouterError):
    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} is paused - resume it before sending messages")
        self.session_id = session_id


class InvalidSessionTransition(WellnessRouterError):
    pass


class MessageNotFoundError(WellnessRouterError):
    def __init__(self, message_id: str):
        super().__init__(f"Message not found: {message_id}")
        self.message_id = message_id


class DietPlanNotFoundError(WellnessRouterError):
    def __init__(self, user_id: str):
        super().__init__(f"No active diet plan for user {user_id}")
        self.user_id = user_id


class ActionConfirmationRequired(WellnessRouterError):
    pass


class UnknownActionError(WellnessRouterError):
    pass


class ActionExecutionError(WellnessRouterError):
    pass


# -----------------------------------------------------------------------------
# Internal failures (degrade, never abort an answered request)
# -----------------------------------------------------------------------------

class ProviderError(WellnessRouterError):
    """External model call failed."""


class ProviderTimeoutError(ProviderError):
    pass


class PersistenceError(WellnessRouterError):
    pass
