"""Tests for the conversation flow engine."""
from datetime import date, time

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from slotbot.flows import (
    SUPERSEDED_NOTICE,
    FeedbackForm,
    FeedbackReplyForm,
    FlowEngine,
    Notify,
    OnboardingForm,
    Reply,
    ServiceForm,
    ServiceRenameWalk,
    SlotEditForm,
    SlotForm,
    Step,
)
from slotbot.models import FeedbackRequest, FeedbackStatus, Service, Slot, Specialist, User, UserRole
from slotbot.sessions import SessionStore

CHAT = 555


@pytest.fixture
def store(clock):
    return SessionStore(clock=clock)


@pytest.fixture
def flows(session_factory, store, alerts, clock):
    return FlowEngine(session_factory, store, alerts, clock=clock)


def _texts(result):
    return [effect.text for effect in result.effects if isinstance(effect, Reply)]


@pytest.mark.asyncio
async def test_onboarding_walks_every_step(flows, session_factory):
    effects = flows.start(CHAT, OnboardingForm())
    assert effects == [Reply("Enter the specialist's Telegram ID:")]

    result = await flows.advance(CHAT, "5005")
    assert result.state.step == Step.AWAITING_NAME
    result = await flows.advance(CHAT, "Anna")
    assert result.state.step == Step.AWAITING_SPECIALIZATION
    result = await flows.advance(CHAT, "Therapist")
    assert result.state.step == Step.AWAITING_DESCRIPTION
    result = await flows.advance(CHAT, "Ten years of practice")
    assert result.state.step == Step.AWAITING_FIRST_SERVICE
    specialist_id = result.state.specialist_id
    assert specialist_id is not None
    result = await flows.advance(CHAT, "Back massage")
    assert result.state.step == Step.AWAITING_FIRST_SLOT
    result = await flows.advance(CHAT, "2025-03-10 10:00")
    assert result.done
    assert flows.active(CHAT) is None

    async with session_factory() as session:
        user = await session.scalar(select(User).where(User.telegram_id == 5005))
        specialist = await session.get(Specialist, specialist_id)
        services = (await session.execute(select(Service))).scalars().all()
        slots = (await session.execute(select(Slot))).scalars().all()
    assert user.name == "Anna"
    assert user.role == UserRole.SPECIALIST.value
    assert specialist.user_id == user.id
    assert specialist.specialization == "Therapist"
    assert [s.name for s in services] == ["Back massage"]
    assert [(s.date, s.time) for s in slots] == [(date(2025, 3, 10), time(10, 0))]


@pytest.mark.asyncio
async def test_onboarding_keeps_admin_role(flows, seed, session_factory):
    await seed.user(9001, name="Root", role=UserRole.ADMIN)
    flows.start(CHAT, OnboardingForm())
    for text in ["9001", "Root", "Therapist", "Also a therapist"]:
        await flows.advance(CHAT, text)

    async with session_factory() as session:
        user = await session.scalar(select(User).where(User.telegram_id == 9001))
    assert user.role == UserRole.ADMIN.value


@pytest.mark.asyncio
async def test_onboarding_rejects_bad_or_registered_identity(flows, seed, alerts):
    await seed.specialist(telegram_id=1001)
    flows.start(CHAT, OnboardingForm())

    result = await flows.advance(CHAT, "not-a-number")
    assert result.state.step == Step.AWAITING_SPECIALIST_ID
    assert "Invalid Telegram ID" in _texts(result)[0]
    assert alerts.alerts == []

    result = await flows.advance(CHAT, "1001")
    assert result.state.step == Step.AWAITING_SPECIALIST_ID
    assert "already registered" in _texts(result)[0]
    assert [severity for severity, _ in alerts.alerts] == ["warning"]


@pytest.mark.asyncio
async def test_validation_error_keeps_step_and_reprompts(flows, seed, session_factory):
    specialist = await seed.specialist()
    flows.start(CHAT, SlotForm(specialist_id=specialist.id))

    result = await flows.advance(CHAT, "2025-13-01 10:00")

    assert result.state == SlotForm(specialist_id=specialist.id)
    assert flows.active(CHAT) == SlotForm(specialist_id=specialist.id)
    texts = _texts(result)
    assert texts[0].startswith("❌")
    assert "YYYY-MM-DD HH:MM" in texts[-1]
    async with session_factory() as session:
        assert (await session.execute(select(Slot))).scalars().all() == []

    result = await flows.advance(CHAT, "2025-03-10 10:00")
    assert result.done


@pytest.mark.asyncio
async def test_conflict_keeps_step_and_alerts(flows, seed, alerts):
    specialist = await seed.specialist()
    await seed.slot(specialist.id, date(2025, 3, 10), time(10, 0))
    flows.start(CHAT, SlotForm(specialist_id=specialist.id))

    result = await flows.advance(CHAT, "2025-03-10 10:00")

    assert result.state == SlotForm(specialist_id=specialist.id)
    assert "already has a slot" in _texts(result)[0]
    assert len(alerts.alerts) == 1
    severity, message = alerts.alerts[0]
    assert severity == "warning"
    assert "SlotForm" in message


@pytest.mark.asyncio
async def test_not_found_aborts_flow_and_alerts(flows, alerts):
    flows.start(CHAT, ServiceForm(specialist_id=999))

    result = await flows.advance(CHAT, "Massage")

    assert result.done
    assert flows.active(CHAT) is None
    assert _texts(result) == ["❌ Specialist not found."]
    assert alerts.alerts and alerts.alerts[0][0] == "warning"


@pytest.mark.asyncio
async def test_persistence_failure_clears_flow(flows, seed, alerts, monkeypatch):
    client = await seed.user(2001)

    async def failing_submit(*args, **kwargs):
        raise OperationalError("INSERT", {}, Exception("disk I/O error"))

    monkeypatch.setattr("slotbot.flows.submit_feedback", failing_submit)
    flows.start(CHAT, FeedbackForm(user_id=client.id))

    result = await flows.advance(CHAT, "Hello")

    assert result.done
    assert flows.active(CHAT) is None
    assert "/reset" in _texts(result)[0]
    assert alerts.alerts[0][0] == "error"


@pytest.mark.asyncio
async def test_starting_a_flow_supersedes_the_previous_one(flows, seed):
    specialist = await seed.specialist()
    flows.start(CHAT, ServiceForm(specialist_id=specialist.id))

    effects = flows.start(CHAT, SlotForm(specialist_id=specialist.id))

    assert effects[0] == Reply(SUPERSEDED_NOTICE)
    assert flows.active(CHAT) == SlotForm(specialist_id=specialist.id)


@pytest.mark.asyncio
async def test_advance_without_flow_is_not_handled(flows):
    result = await flows.advance(CHAT, "hello")
    assert result.handled is False
    assert result.effects == []


@pytest.mark.asyncio
async def test_service_name_rules(flows, seed, session_factory):
    specialist = await seed.specialist()
    flows.start(CHAT, ServiceForm(specialist_id=specialist.id))

    result = await flows.advance(CHAT, "Massage 2")
    assert result.state.step == Step.AWAITING_SERVICE_NAME
    result = await flows.advance(CHAT, "Массаж спины")
    assert result.done

    async with session_factory() as session:
        names = (await session.execute(select(Service.name))).scalars().all()
    assert names == ["Массаж спины"]


@pytest.mark.asyncio
async def test_rename_walk_visits_each_service(flows, seed, session_factory):
    specialist = await seed.specialist()
    first = await seed.service(specialist.id, "Massage")
    second = await seed.service(specialist.id, "Consultation")
    effects = flows.start(
        CHAT,
        ServiceRenameWalk(
            specialist_id=specialist.id,
            services=((first.id, "Massage"), (second.id, "Consultation")),
        ),
    )
    assert "1 of 2" in effects[-1].text

    result = await flows.advance(CHAT, "Deep massage")
    assert result.state.index == 1
    assert "2 of 2" in _texts(result)[-1]
    result = await flows.advance(CHAT, "First visit")
    assert result.done

    async with session_factory() as session:
        assert (await session.get(Service, first.id)).name == "Deep massage"
        assert (await session.get(Service, second.id)).name == "First visit"


@pytest.mark.asyncio
async def test_slot_edit_refuses_booked_slot(flows, seed, session_factory):
    specialist = await seed.specialist()
    slot = await seed.slot(specialist.id, date(2025, 3, 10), time(10, 0), is_booked=True)
    flows.start(CHAT, SlotEditForm(slot_id=slot.id))

    result = await flows.advance(CHAT, "2025-03-11 14:00")

    assert result.done
    assert "booked" in _texts(result)[0]
    async with session_factory() as session:
        assert (await session.get(Slot, slot.id)).date == date(2025, 3, 10)


@pytest.mark.asyncio
async def test_feedback_and_reply(flows, seed, session_factory):
    client = await seed.user(2001)
    flows.start(CHAT, FeedbackForm(user_id=client.id))
    result = await flows.advance(CHAT, "Can I reschedule?")
    assert result.done

    async with session_factory() as session:
        request = await session.scalar(select(FeedbackRequest))
    assert request.status == FeedbackStatus.NEW.value

    admin_chat = 777
    flows.start(admin_chat, FeedbackReplyForm(request_id=request.id))
    result = await flows.advance(admin_chat, "Yes, pick another slot.")

    assert Notify(2001, "✉️ Administrator reply: Yes, pick another slot.") in result.effects
    async with session_factory() as session:
        request = await session.get(FeedbackRequest, request.id)
    assert request.status == FeedbackStatus.IN_PROGRESS.value
    assert request.admin_response == "Yes, pick another slot."
