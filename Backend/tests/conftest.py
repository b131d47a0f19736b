"""
Pytest configuration and fixtures for async database testing.

Every test gets its own SQLite database file (aiosqlite driver) with the full
schema created, so tests never share state and never touch a real Postgres.
"""
from datetime import date, datetime, time, timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from slotbot.bookings import BookingEngine
from slotbot.core.db import Base, build_engine
from slotbot.models import Service, Slot, Specialist, User, UserRole

# Wednesday noon; regeneration windows and weekday skipping are computed from here
FROZEN_NOW = datetime(2025, 3, 5, 12, 0)


class FakeGateway:
    """Notification gateway that records every message instead of sending it."""

    def __init__(self):
        self.sent = []
        self.fail_for = set()

    async def send(self, telegram_id, text):
        if telegram_id in self.fail_for:
            raise RuntimeError(f"delivery to {telegram_id} failed")
        self.sent.append((telegram_id, text))
        return True

    def texts_for(self, telegram_id):
        return [text for tid, text in self.sent if tid == telegram_id]


class RecordingAlerts:
    def __init__(self):
        self.alerts = []

    async def alert(self, severity, message):
        self.alerts.append((severity, message))


class FrozenClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class Seeder:
    """Inserts fixture rows, each in its own committed transaction."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def user(self, telegram_id, name="Client", role=UserRole.CLIENT):
        async with self.session_factory() as session:
            async with session.begin():
                user = User(telegram_id=telegram_id, name=name, role=role.value)
                session.add(user)
            return user

    async def specialist(self, telegram_id=1001, name="Anna", specialization="Therapist"):
        async with self.session_factory() as session:
            async with session.begin():
                user = User(telegram_id=telegram_id, name=name, role=UserRole.SPECIALIST.value)
                session.add(user)
                await session.flush()
                specialist = Specialist(user_id=user.id, specialization=specialization, description="Experienced")
                session.add(specialist)
            return specialist

    async def service(self, specialist_id, name="Massage"):
        async with self.session_factory() as session:
            async with session.begin():
                service = Service(specialist_id=specialist_id, name=name)
                session.add(service)
            return service

    async def slot(self, specialist_id, slot_date: date, slot_time: time, is_booked=False):
        async with self.session_factory() as session:
            async with session.begin():
                slot = Slot(specialist_id=specialist_id, date=slot_date, time=slot_time, is_booked=is_booked)
                session.add(slot)
            return slot


@pytest.fixture
async def db_engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'slotbot_test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def alerts():
    return RecordingAlerts()


@pytest.fixture
def clock():
    return FrozenClock(FROZEN_NOW)


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)


@pytest.fixture
def booking_engine(session_factory, gateway, alerts, clock):
    return BookingEngine(session_factory, gateway, alerts, clock=clock)
