"""Tests for the feedback request lifecycle."""
import pytest

from slotbot.core.errors import FeedbackClosed, FeedbackNotFound
from slotbot.directory import list_active_feedback
from slotbot.feedback import close_feedback, respond_to_feedback, submit_feedback
from slotbot.models import FeedbackStatus


@pytest.mark.asyncio
async def test_status_moves_forward_only(session_factory, seed, clock):
    client = await seed.user(2001)

    async with session_factory() as session:
        async with session.begin():
            request = await submit_feedback(session, client.id, "Where is the office?", clock())
    assert request.status == FeedbackStatus.NEW.value

    async with session_factory() as session:
        async with session.begin():
            telegram_id = await respond_to_feedback(session, request.id, "Second floor.")
    assert telegram_id == 2001

    async with session_factory() as session:
        async with session.begin():
            closed = await close_feedback(session, request.id)
    assert closed.status == FeedbackStatus.CLOSED.value

    with pytest.raises(FeedbackClosed):
        async with session_factory() as session:
            async with session.begin():
                await respond_to_feedback(session, request.id, "Too late")

    with pytest.raises(FeedbackClosed):
        async with session_factory() as session:
            async with session.begin():
                await close_feedback(session, request.id)


@pytest.mark.asyncio
async def test_unknown_request(session_factory):
    with pytest.raises(FeedbackNotFound):
        async with session_factory() as session:
            async with session.begin():
                await close_feedback(session, 999)


@pytest.mark.asyncio
async def test_active_feedback_excludes_closed(session_factory, seed, clock):
    client = await seed.user(2001)
    async with session_factory() as session:
        async with session.begin():
            first = await submit_feedback(session, client.id, "First", clock())
            second = await submit_feedback(session, client.id, "Second", clock())
            await close_feedback(session, first.id)

    async with session_factory() as session:
        active = await list_active_feedback(session)

    assert [r.id for r in active] == [second.id]
    assert active[0].status == FeedbackStatus.NEW.value
