"""
Tests for the booking engine: reservation atomicity, concurrency,
ownership on cancel, and expiry.
"""
import asyncio
from datetime import date, datetime, time

import pytest
from sqlalchemy import func, select

from slotbot.core.errors import BookingNotFound, NotOwner, SlotAlreadyBooked, SlotNotFound, UserNotFound
from slotbot.models import Booking, BookingHistory, HistoryReason, Slot, UserRole


async def _slot_state(session_factory, slot_id):
    async with session_factory() as session:
        slot = await session.get(Slot, slot_id)
        bookings = await session.scalar(select(func.count()).select_from(Booking).where(Booking.slot_id == slot_id))
    return slot.is_booked, bookings


@pytest.mark.asyncio
async def test_reserve_books_slot_and_notifies_everyone(booking_engine, session_factory, seed, gateway):
    specialist = await seed.specialist(telegram_id=1001, name="Anna")
    client = await seed.user(2001, name="Bob")
    await seed.user(9001, name="Root", role=UserRole.ADMIN)
    slot = await seed.slot(specialist.id, date(2025, 3, 10), time(10, 0))

    receipt = await booking_engine.reserve(client.id, slot.id)

    assert receipt.slot_id == slot.id
    assert receipt.specialist_name == "Anna"
    assert receipt.client_name == "Bob"
    assert await _slot_state(session_factory, slot.id) == (True, 1)

    assert any("10-03-2025 10:00" in text for text in gateway.texts_for(2001))
    assert any("Bob" in text for text in gateway.texts_for(1001))
    assert any("Bob" in text and "Anna" in text for text in gateway.texts_for(9001))


@pytest.mark.asyncio
async def test_reserve_missing_or_booked_slot(booking_engine, seed):
    specialist = await seed.specialist()
    client = await seed.user(2001)
    booked = await seed.slot(specialist.id, date(2025, 3, 10), time(10, 0), is_booked=True)

    with pytest.raises(SlotNotFound):
        await booking_engine.reserve(client.id, 999)
    with pytest.raises(SlotAlreadyBooked):
        await booking_engine.reserve(client.id, booked.id)


@pytest.mark.asyncio
async def test_reserve_unknown_user_leaves_slot_free(booking_engine, session_factory, seed):
    specialist = await seed.specialist()
    slot = await seed.slot(specialist.id, date(2025, 3, 10), time(10, 0))

    with pytest.raises(UserNotFound):
        await booking_engine.reserve(12345, slot.id)
    assert await _slot_state(session_factory, slot.id) == (False, 0)


@pytest.mark.asyncio
async def test_concurrent_reservations_book_slot_once(booking_engine, session_factory, seed):
    specialist = await seed.specialist()
    first = await seed.user(2001, name="First")
    second = await seed.user(2002, name="Second")
    slot = await seed.slot(specialist.id, date(2025, 3, 10), time(10, 0))

    results = await asyncio.gather(
        booking_engine.reserve(first.id, slot.id),
        booking_engine.reserve(second.id, slot.id),
        return_exceptions=True,
    )

    successes = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], SlotAlreadyBooked)
    assert await _slot_state(session_factory, slot.id) == (True, 1)


@pytest.mark.asyncio
async def test_failure_between_insert_and_flip_rolls_back(booking_engine, session_factory, seed, gateway, monkeypatch):
    specialist = await seed.specialist()
    client = await seed.user(2001)
    slot = await seed.slot(specialist.id, date(2025, 3, 10), time(10, 0))

    async def broken_mark_slot(session, slot_id, booked):
        raise RuntimeError("injected failure")

    monkeypatch.setattr("slotbot.bookings._mark_slot", broken_mark_slot)

    with pytest.raises(RuntimeError):
        await booking_engine.reserve(client.id, slot.id)

    assert await _slot_state(session_factory, slot.id) == (False, 0)
    assert gateway.sent == []


@pytest.mark.asyncio
async def test_gateway_failure_does_not_undo_booking(booking_engine, session_factory, seed, gateway):
    specialist = await seed.specialist(telegram_id=1001)
    client = await seed.user(2001)
    slot = await seed.slot(specialist.id, date(2025, 3, 10), time(10, 0))
    gateway.fail_for = {1001, 2001}

    await booking_engine.reserve(client.id, slot.id)

    assert await _slot_state(session_factory, slot.id) == (True, 1)


@pytest.mark.asyncio
async def test_cancel_requires_ownership(booking_engine, session_factory, seed):
    specialist = await seed.specialist()
    owner = await seed.user(2001)
    stranger = await seed.user(2002)
    slot = await seed.slot(specialist.id, date(2025, 3, 10), time(10, 0))
    receipt = await booking_engine.reserve(owner.id, slot.id)

    with pytest.raises(NotOwner):
        await booking_engine.cancel(receipt.booking_id, stranger.id)
    assert await _slot_state(session_factory, slot.id) == (True, 1)

    with pytest.raises(BookingNotFound):
        await booking_engine.cancel(999, owner.id)


@pytest.mark.asyncio
async def test_cancel_releases_slot_and_archives(booking_engine, session_factory, seed, gateway, clock):
    specialist = await seed.specialist(telegram_id=1001)
    owner = await seed.user(2001, name="Bob")
    slot = await seed.slot(specialist.id, date(2025, 3, 10), time(10, 0))
    receipt = await booking_engine.reserve(owner.id, slot.id)
    gateway.sent.clear()

    await booking_engine.cancel(receipt.booking_id, owner.id)

    assert await _slot_state(session_factory, slot.id) == (False, 0)
    async with session_factory() as session:
        history = (await session.execute(select(BookingHistory))).scalars().all()
    assert len(history) == 1
    assert history[0].reason == HistoryReason.CANCELLED.value
    assert history[0].closed_at == clock()
    assert gateway.texts_for(2001) and gateway.texts_for(1001)

    # The released slot can be booked again
    await booking_engine.reserve(owner.id, slot.id)


@pytest.mark.asyncio
async def test_expire_happens_exactly_once(booking_engine, session_factory, seed, clock):
    specialist = await seed.specialist()
    client = await seed.user(2001)
    slot = await seed.slot(specialist.id, date(2025, 3, 5), time(13, 0))
    receipt = await booking_engine.reserve(client.id, slot.id)

    clock.advance(hours=2)
    assert await booking_engine.expire(receipt.booking_id) is True
    assert await booking_engine.expire(receipt.booking_id) is False

    async with session_factory() as session:
        history = (await session.execute(select(BookingHistory))).scalars().all()
    assert len(history) == 1
    assert history[0].reason == HistoryReason.EXPIRED.value
    assert history[0].closed_at >= history[0].created_at
    assert history[0].closed_at == datetime(2025, 3, 5, 14, 0)
    assert await _slot_state(session_factory, slot.id) == (False, 0)


@pytest.mark.asyncio
async def test_listings(booking_engine, seed):
    anna = await seed.specialist(telegram_id=1001, name="Anna", specialization="Therapist")
    boris = await seed.specialist(telegram_id=1002, name="Boris", specialization="Dentist")
    client = await seed.user(2001, name="Bob")
    late = await seed.slot(anna.id, date(2025, 3, 11), time(10, 0))
    early = await seed.slot(boris.id, date(2025, 3, 10), time(18, 0))
    await booking_engine.reserve(client.id, late.id)
    await booking_engine.reserve(client.id, early.id)

    mine = await booking_engine.list_user_bookings(client.id)
    assert [b.slot_id for b in mine] == [early.id, late.id]
    assert [b.specialization for b in mine] == ["Dentist", "Therapist"]

    annas = await booking_engine.list_specialist_bookings(anna.id)
    assert [(b.slot_id, b.client_name) for b in annas] == [(late.id, "Bob")]
