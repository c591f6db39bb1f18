"""
Session Manager
===============

Chat session lifecycle and message persistence.

    active -> paused -> active -> archived (terminal)
    active -> expired (automatic once now > expires_at)

- sessions are owned by one user; touching another user's session raises
  ``SessionOwnershipError`` (reported as not found)
- only active, unexpired sessions are reused for new messages; an expired
  or archived one is replaced transparently, a paused one rejects messages
- at most ``max_sessions_per_user`` active sessions; creating one more
  expires the oldest
- messages are append-only with strictly increasing ``created_at`` per session
"""
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
import logging

from app.core.errors import (
    InvalidSessionTransition,
    MessageNotFoundError,
    SessionNotFoundError,
    SessionOwnershipError,
    SessionPausedError,
)
from app.core.keyed_lock import KeyedLock
from app.core.types import (
    Message,
    Session,
    SessionPreferences,
    SessionStatus,
    SessionType,
)
from app.memory.stores import KeyedStore

logger = logging.getLogger(__name__)

TIMESTAMP_STEP = timedelta(microseconds=1)


class SessionManager:
    """
    Usage:
        sessions = SessionManager(stores.sessions, stores.messages)
        session = await sessions.resolve_session(user_id, request.session_id)
        await sessions.append_message(Message(...))
        await sessions.record_exchange(session)
    """

    def __init__(
        self,
        session_store: KeyedStore,
        message_store: KeyedStore,
        expiration_hours: int = 168,
        max_sessions_per_user: int = 50,
        locks: Optional[KeyedLock] = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.session_store = session_store
        self.message_store = message_store
        self.expiration = timedelta(hours=expiration_hours)
        self.max_sessions_per_user = max_sessions_per_user
        self.locks = locks or KeyedLock()
        self.clock = clock

        # session_id -> created_at of its newest message
        self._last_message_at: Dict[str, datetime] = {}

    # =========================================================================
    # SESSIONS
    # =========================================================================

    async def create_session(
        self,
        user_id: str,
        session_type: SessionType = SessionType.GENERAL_CHAT,
        preferences: Optional[SessionPreferences] = None,
        title: Optional[str] = None
    ) -> Session:
        async with self.locks.hold(f"sessions:{user_id}"):
            await self._enforce_session_limit(user_id)

            now = self.clock()
            session = Session(
                user_id=user_id,
                type=session_type,
                preferences=preferences or SessionPreferences(),
                title=title or "Health & Wellness Chat",
                created_at=now,
                last_activity_at=now,
                expires_at=now + self.expiration,
            )
            await self.session_store.put(session.id, session.to_dict())

        logger.info(f"💬 Created {session_type.value} session {session.id} for {user_id}")
        return session

    async def _enforce_session_limit(self, user_id: str) -> None:
        active = [
            Session.from_dict(d)
            for d in await self.session_store.query_by_user(user_id, {"status": SessionStatus.ACTIVE.value})
        ]
        if len(active) < self.max_sessions_per_user:
            return
        active.sort(key=lambda s: s.created_at)
        for oldest in active[:len(active) - self.max_sessions_per_user + 1]:
            oldest.status = SessionStatus.EXPIRED
            await self.session_store.put(oldest.id, oldest.to_dict())
            logger.info(f"Session limit reached for {user_id}: expired {oldest.id}")

    async def get_session(self, user_id: str, session_id: str) -> Session:
        """
        Raises:
            SessionNotFoundError: no such session
            SessionOwnershipError: session belongs to another user
        """
        doc = await self.session_store.get(session_id)
        if doc is None:
            raise SessionNotFoundError(session_id)
        if doc["user_id"] != user_id:
            logger.warning(f"User {user_id} attempted to access session {session_id}")
            raise SessionOwnershipError(session_id)

        session = Session.from_dict(doc)
        if session.status == SessionStatus.ACTIVE and session.is_expired(self.clock()):
            session.status = SessionStatus.EXPIRED
            await self.session_store.put(session.id, session.to_dict())
        return session

    async def resolve_session(
        self,
        user_id: str,
        session_id: Optional[str] = None,
        session_type: Optional[SessionType] = None,
        preferences: Optional[SessionPreferences] = None
    ) -> Session:
        """
        Session to append the next message to.

        Raises:
            SessionPausedError: the requested session is paused
        """
        if session_id:
            session = await self.get_session(user_id, session_id)
            if session.status == SessionStatus.PAUSED:
                raise SessionPausedError(session_id)
            if session.is_usable(self.clock()):
                return session
            logger.info(f"Session {session_id} is {session.status.value} - starting a new one")
            return await self.create_session(
                user_id, session_type or session.type, preferences or session.preferences
            )

        for session in await self.list_sessions(user_id):
            if session.is_usable(self.clock()) and (session_type is None or session.type == session_type):
                return session
        return await self.create_session(user_id, session_type or SessionType.GENERAL_CHAT, preferences)

    async def list_sessions(self, user_id: str, include_expired: bool = False) -> List[Session]:
        """Most recently active first."""
        now = self.clock()
        sessions = []
        for doc in await self.session_store.query_by_user(user_id):
            session = Session.from_dict(doc)
            if session.status == SessionStatus.ACTIVE and session.is_expired(now):
                session.status = SessionStatus.EXPIRED
            if not include_expired and session.status in (SessionStatus.EXPIRED, SessionStatus.ARCHIVED):
                continue
            sessions.append(session)
        sessions.sort(key=lambda s: s.last_activity_at, reverse=True)
        return sessions

    async def pause_session(self, user_id: str, session_id: str) -> Session:
        return await self._transition(
            user_id, session_id, {SessionStatus.ACTIVE}, SessionStatus.PAUSED
        )

    async def resume_session(self, user_id: str, session_id: str) -> Session:
        session = await self.get_session(user_id, session_id)
        if session.status == SessionStatus.PAUSED and session.is_expired(self.clock()):
            session.status = SessionStatus.EXPIRED
            await self.session_store.put(session.id, session.to_dict())
            raise InvalidSessionTransition(f"Session {session_id} expired while paused")
        return await self._transition(
            user_id, session_id, {SessionStatus.PAUSED}, SessionStatus.ACTIVE
        )

    async def archive_session(self, user_id: str, session_id: str) -> Session:
        return await self._transition(
            user_id, session_id,
            {SessionStatus.ACTIVE, SessionStatus.PAUSED, SessionStatus.EXPIRED},
            SessionStatus.ARCHIVED,
        )

    async def _transition(
        self,
        user_id: str,
        session_id: str,
        allowed_from: set,
        target: SessionStatus
    ) -> Session:
        async with self.locks.hold(f"sessions:{user_id}"):
            session = await self.get_session(user_id, session_id)
            if session.status not in allowed_from:
                raise InvalidSessionTransition(
                    f"Cannot move session {session_id} from {session.status.value} to {target.value}"
                )
            session.status = target
            session.last_activity_at = self.clock()
            await self.session_store.put(session.id, session.to_dict())
        if target == SessionStatus.ARCHIVED:
            self._last_message_at.pop(session_id, None)
        logger.info(f"Session {session_id} -> {target.value}")
        return session

    async def delete_session(self, user_id: str, session_id: str) -> int:
        """Delete a session and its messages. Returns the number of messages removed."""
        await self.get_session(user_id, session_id)
        messages = await self.message_store.query({"session_id": session_id})
        for doc in messages:
            await self.message_store.delete(doc["id"])
        await self.session_store.delete(session_id)
        self._last_message_at.pop(session_id, None)
        logger.info(f"Deleted session {session_id} ({len(messages)} messages)")
        return len(messages)

    async def record_exchange(self, session: Session, message_count: int = 2) -> Session:
        """Bump message count and last activity after a completed exchange."""
        async with self.locks.hold(f"sessions:{session.user_id}"):
            doc = await self.session_store.get(session.id)
            current = Session.from_dict(doc) if doc else session
            current.message_count += message_count
            current.last_activity_at = self.clock()
            await self.session_store.put(current.id, current.to_dict())
        return current

    async def cleanup_expired_sessions(self) -> int:
        """Mark every active session past its expiry as expired."""
        now = self.clock()
        expired = 0
        for doc in await self.session_store.query({"status": SessionStatus.ACTIVE.value}):
            session = Session.from_dict(doc)
            if session.is_expired(now):
                session.status = SessionStatus.EXPIRED
                await self.session_store.put(session.id, session.to_dict())
                self._last_message_at.pop(session.id, None)
                expired += 1
        if expired:
            logger.info(f"🧹 Expired {expired} sessions")
        return expired

    async def get_session_stats(self, user_id: str) -> Dict[str, Any]:
        sessions = await self.list_sessions(user_id, include_expired=True)
        by_status: Dict[str, int] = {}
        by_type: Dict[str, int] = {}
        for session in sessions:
            by_status[session.status.value] = by_status.get(session.status.value, 0) + 1
            by_type[session.type.value] = by_type.get(session.type.value, 0) + 1
        return {
            "total_sessions": len(sessions),
            "active_sessions": by_status.get(SessionStatus.ACTIVE.value, 0),
            "by_status": by_status,
            "by_type": by_type,
            "total_messages": sum(s.message_count for s in sessions),
        }

    # =========================================================================
    # MESSAGES
    # =========================================================================

    async def append_message(self, message: Message) -> Message:
        """Persist a new message, bumping ``created_at`` past the session's newest."""
        async with self.locks.hold(f"messages:{message.session_id}"):
            last = self._last_message_at.get(message.session_id)
            if last is None:
                existing = await self.message_store.query({"session_id": message.session_id})
                if existing:
                    last = max(d["created_at"] for d in existing)
            if last is not None and message.created_at <= last:
                message.created_at = last + TIMESTAMP_STEP
            await self.message_store.put(message.id, message.to_dict())
            self._last_message_at[message.session_id] = message.created_at
        return message

    async def save_message(self, message: Message) -> Message:
        """Rewrite an existing message (status / action updates)."""
        await self.message_store.put(message.id, message.to_dict())
        return message

    async def get_message(self, user_id: str, message_id: str) -> Message:
        doc = await self.message_store.get(message_id)
        if doc is None or doc["user_id"] != user_id:
            raise MessageNotFoundError(message_id)
        return Message.from_dict(doc)

    async def get_messages(
        self,
        user_id: str,
        session_id: str,
        limit: Optional[int] = None
    ) -> List[Message]:
        """Session history in order (the last ``limit`` messages when given)."""
        await self.get_session(user_id, session_id)
        docs = await self.message_store.query({"session_id": session_id})
        messages = sorted((Message.from_dict(d) for d in docs), key=lambda m: m.created_at)
        if limit is not None:
            messages = messages[-limit:]
        return messages
