"""
Tests for SessionManager - session lifecycle and message persistence.
"""
import asyncio
from datetime import timedelta

import pytest
from unittest.mock import patch

from app.core.errors import (
    InvalidSessionTransition,
    MessageNotFoundError,
    SessionNotFoundError,
    SessionOwnershipError,
    SessionPausedError,
)
from app.core.session_manager import SessionManager
from app.core.types import Message, MessageRole, SessionStatus, SessionType
from app.memory.stores import InMemoryKeyedStore


@pytest.fixture
def sessions(clock):
    return SessionManager(
        InMemoryKeyedStore("sessions"),
        InMemoryKeyedStore("messages"),
        expiration_hours=24,
        max_sessions_per_user=2,
        clock=clock,
    )


def _message(session, content="hi", created_at=None, role=MessageRole.USER):
    message = Message(session_id=session.id, user_id=session.user_id, role=role, content=content)
    if created_at is not None:
        message.created_at = created_at
    return message


class TestSessions:

    @pytest.mark.asyncio
    async def test_create_and_get(self, sessions, clock):
        created = await sessions.create_session("user_1", SessionType.FITNESS_GUIDANCE)

        session = await sessions.get_session("user_1", created.id)

        assert session.type == SessionType.FITNESS_GUIDANCE
        assert session.status == SessionStatus.ACTIVE
        assert session.expires_at == clock.now + sessions.expiration

    @pytest.mark.asyncio
    async def test_unknown_session(self, sessions):
        with pytest.raises(SessionNotFoundError):
            await sessions.get_session("user_1", "missing")

    @pytest.mark.asyncio
    async def test_other_users_session_looks_missing(self, sessions):
        created = await sessions.create_session("user_1")

        with pytest.raises(SessionNotFoundError) as exc_info:
            await sessions.get_session("user_2", created.id)

        assert isinstance(exc_info.value, SessionOwnershipError)

    @pytest.mark.asyncio
    async def test_session_limit_expires_oldest(self, sessions, clock):
        first = await sessions.create_session("user_1")
        clock.advance(minutes=1)
        await sessions.create_session("user_1")
        clock.advance(minutes=1)
        await sessions.create_session("user_1")

        assert (await sessions.get_session("user_1", first.id)).status == SessionStatus.EXPIRED
        assert len(await sessions.list_sessions("user_1")) == 2

    @pytest.mark.asyncio
    async def test_expiry_is_detected_on_read(self, sessions, clock):
        created = await sessions.create_session("user_1")
        clock.advance(hours=25)

        session = await sessions.get_session("user_1", created.id)

        assert session.status == SessionStatus.EXPIRED
        assert await sessions.list_sessions("user_1") == []


class TestResolve:

    @pytest.mark.asyncio
    async def test_reuses_most_recent_usable_session(self, sessions, clock):
        await sessions.create_session("user_1")
        clock.advance(minutes=5)
        newest = await sessions.create_session("user_1")

        resolved = await sessions.resolve_session("user_1")

        assert resolved.id == newest.id

    @pytest.mark.asyncio
    async def test_type_filter(self, sessions):
        await sessions.create_session("user_1", SessionType.GENERAL_CHAT)

        resolved = await sessions.resolve_session("user_1", session_type=SessionType.MEAL_PLANNING)

        assert resolved.type == SessionType.MEAL_PLANNING

    @pytest.mark.asyncio
    async def test_expired_session_is_replaced(self, sessions, clock):
        created = await sessions.create_session("user_1", SessionType.NUTRITION_PLANNING)
        clock.advance(hours=25)

        resolved = await sessions.resolve_session("user_1", created.id)

        assert resolved.id != created.id
        assert resolved.type == SessionType.NUTRITION_PLANNING

    @pytest.mark.asyncio
    async def test_paused_session_rejects_messages(self, sessions):
        created = await sessions.create_session("user_1")
        await sessions.pause_session("user_1", created.id)

        with pytest.raises(SessionPausedError):
            await sessions.resolve_session("user_1", created.id)


class TestTransitions:

    @pytest.mark.asyncio
    async def test_pause_resume_archive(self, sessions):
        created = await sessions.create_session("user_1")

        assert (await sessions.pause_session("user_1", created.id)).status == SessionStatus.PAUSED
        assert (await sessions.resume_session("user_1", created.id)).status == SessionStatus.ACTIVE
        assert (await sessions.archive_session("user_1", created.id)).status == SessionStatus.ARCHIVED

    @pytest.mark.asyncio
    async def test_archived_is_terminal(self, sessions):
        created = await sessions.create_session("user_1")
        await sessions.archive_session("user_1", created.id)

        with pytest.raises(InvalidSessionTransition):
            await sessions.pause_session("user_1", created.id)
        with pytest.raises(InvalidSessionTransition):
            await sessions.resume_session("user_1", created.id)

    @pytest.mark.asyncio
    async def test_resume_after_expiry_fails(self, sessions, clock):
        created = await sessions.create_session("user_1")
        await sessions.pause_session("user_1", created.id)
        clock.advance(hours=25)

        with pytest.raises(InvalidSessionTransition):
            await sessions.resume_session("user_1", created.id)

        assert (await sessions.get_session("user_1", created.id)).status == SessionStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_cleanup_expired_sessions(self, sessions, clock):
        await sessions.create_session("user_1")
        await sessions.create_session("user_2")
        clock.advance(hours=25)
        await sessions.create_session("user_3")

        assert await sessions.cleanup_expired_sessions() == 2

    @pytest.mark.asyncio
    async def test_stats(self, sessions):
        created = await sessions.create_session("user_1", SessionType.FITNESS_GUIDANCE)
        await sessions.record_exchange(created)

        stats = await sessions.get_session_stats("user_1")

        assert stats["total_sessions"] == 1
        assert stats["by_type"] == {"fitness_guidance": 1}
        assert stats["total_messages"] == 2

    @pytest.mark.asyncio
    async def test_concurrent_exchanges_all_counted(self, sessions):
        created = await sessions.create_session("user_1")
        original_get = sessions.session_store.get

        async def yielding_get(key):
            await asyncio.sleep(0)
            return await original_get(key)

        with patch.object(sessions.session_store, "get", side_effect=yielding_get):
            await asyncio.gather(*(sessions.record_exchange(created) for _ in range(5)))

        assert (await sessions.get_session("user_1", created.id)).message_count == 10

    @pytest.mark.asyncio
    async def test_pause_does_not_lose_a_concurrent_exchange(self, sessions):
        created = await sessions.create_session("user_1")

        await asyncio.gather(
            sessions.record_exchange(created),
            sessions.pause_session("user_1", created.id),
        )

        session = await sessions.get_session("user_1", created.id)
        assert session.message_count == 2
        assert session.status == SessionStatus.PAUSED


class TestMessages:

    @pytest.mark.asyncio
    async def test_timestamps_strictly_increase(self, sessions, clock):
        session = await sessions.create_session("user_1")

        first = await sessions.append_message(_message(session, "one", created_at=clock.now))
        second = await sessions.append_message(_message(session, "two", created_at=clock.now))

        assert second.created_at > first.created_at
        history = await sessions.get_messages("user_1", session.id)
        assert [m.content for m in history] == ["one", "two"]

    @pytest.mark.asyncio
    async def test_history_limit_keeps_latest(self, sessions, clock):
        session = await sessions.create_session("user_1")
        for index in range(5):
            clock.advance(seconds=1)
            await sessions.append_message(_message(session, str(index), created_at=clock.now))

        history = await sessions.get_messages("user_1", session.id, limit=2)

        assert [m.content for m in history] == ["3", "4"]

    @pytest.mark.asyncio
    async def test_get_message_enforces_owner(self, sessions):
        session = await sessions.create_session("user_1")
        message = await sessions.append_message(_message(session))

        assert (await sessions.get_message("user_1", message.id)).content == "hi"
        with pytest.raises(MessageNotFoundError):
            await sessions.get_message("user_2", message.id)

    @pytest.mark.asyncio
    async def test_delete_removes_messages(self, sessions):
        session = await sessions.create_session("user_1")
        await sessions.append_message(_message(session, "one"))
        await sessions.append_message(_message(session, "two", role=MessageRole.ASSISTANT))

        assert await sessions.delete_session("user_1", session.id) == 2
        with pytest.raises(SessionNotFoundError):
            await sessions.get_session("user_1", session.id)

    @pytest.mark.asyncio
    async def test_timestamp_tracking_dropped_for_finished_sessions(self, sessions, clock):
        expiring = await sessions.create_session("user_1")
        archived = await sessions.create_session("user_2")
        await sessions.append_message(_message(expiring, "one", created_at=clock.now))
        await sessions.append_message(_message(archived, "one", created_at=clock.now))

        await sessions.archive_session("user_2", archived.id)
        clock.advance(hours=25)
        await sessions.cleanup_expired_sessions()

        assert sessions._last_message_at == {}

        late = await sessions.append_message(_message(expiring, "two", created_at=clock.now - timedelta(days=2)))
        first = (await sessions.get_messages("user_1", expiring.id))[0]
        assert late.created_at > first.created_at
