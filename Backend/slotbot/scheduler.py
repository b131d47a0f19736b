"""
Reconciliation scheduler.

Every tick runs three passes, each isolated from the others' failures:
    1. expiry        - close bookings whose slot time has passed
                       (one transaction each; a failing booking is
                       alerted and the rest still expire)
    2. regeneration  - drop stale free slots, then fill the next week of
                       weekday slots for every specialist
    3. reminders     - "tomorrow" and "starting soon" messages

Reminders re-read the live booking set each tick instead of scheduling
timers. A booking that sits inside a window across several ticks is reminded
on each of them (at-least-once, at most once per tick).

Ticks are single-flight: a tick requested while one is running is skipped.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .bookings import BookingEngine
from .core.config import Settings
from .core.errors import BotError
from .models import Booking, Slot, Specialist, User
from .notifications import AlertSink, NotificationGateway, notify
from .slots import delete_stale_free_slots, slot_exists
from .timeutils import format_date_time, hours_until, local_now, slot_datetime

logger = logging.getLogger(__name__)

TOMORROW_WINDOW = (23, 24)
SOON_WINDOW = (0, 1)


def reminder_kind(hours_left: float) -> Optional[str]:
    """Which reminder, if any, is due for a booking starting in hours_left."""
    if TOMORROW_WINDOW[0] < hours_left <= TOMORROW_WINDOW[1]:
        return "tomorrow"
    if SOON_WINDOW[0] < hours_left <= SOON_WINDOW[1]:
        return "soon"
    return None


@dataclass
class TickReport:
    expired: int = 0
    deleted_slots: int = 0
    created_slots: int = 0
    reminders: int = 0
    failed_passes: List[str] = field(default_factory=list)
    skipped: bool = False


class ReconciliationScheduler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        engine: BookingEngine,
        gateway: NotificationGateway,
        alerts: AlertSink,
        settings: Settings,
        clock: Callable[[], datetime] = local_now,
    ):
        self.session_factory = session_factory
        self.engine = engine
        self.gateway = gateway
        self.alerts = alerts
        self.settings = settings
        self.clock = clock
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    async def expire_pass(self, now: datetime) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Booking.id)
                .join(Slot, Booking.slot_id == Slot.id)
                .where(
                    or_(
                        Slot.date < now.date(),
                        and_(Slot.date == now.date(), Slot.time < now.time()),
                    )
                )
            )
            booking_ids = list(result.scalars().all())

        expired = 0
        for booking_id in booking_ids:
            try:
                if await self.engine.expire(booking_id):
                    expired += 1
            except BotError as e:
                logger.error(f"Could not expire booking #{booking_id}: {e.code} {e.details}")
                if not e.alerted:
                    await self.alerts.alert("error", f"Expiry of booking #{booking_id} failed: {e.message}")
            except Exception as e:
                logger.exception(f"Could not expire booking #{booking_id}")
                await self.alerts.alert("error", f"Expiry of booking #{booking_id} failed: {e}")
        return expired

    async def regenerate_pass(self, now: datetime) -> tuple[int, int]:
        """
        Returns:
            (deleted, created) slot counts
        """
        grace_cutoff = now - timedelta(minutes=self.settings.slot_grace_minutes)
        times_of_day = self.settings.daily_slot_time_list
        created = 0

        async with self.session_factory() as session:
            async with session.begin():
                deleted_ids = await delete_stale_free_slots(session, grace_cutoff)
                for slot_id in deleted_ids:
                    logger.info(f"Deleted stale slot #{slot_id}")

                specialist_ids = list((await session.execute(select(Specialist.id))).scalars().all())
                start = now.date() + timedelta(days=1)
                for offset in range(self.settings.regeneration_days):
                    day = start + timedelta(days=offset)
                    if day.weekday() >= 5:
                        continue
                    for specialist_id in specialist_ids:
                        for slot_time in times_of_day:
                            if await slot_exists(session, specialist_id, day, slot_time):
                                continue
                            session.add(Slot(specialist_id=specialist_id, date=day, time=slot_time, is_booked=False))
                            created += 1
                            logger.info(f"Adding slot for specialist #{specialist_id} on {day} {slot_time:%H:%M}")

        return len(deleted_ids), created

    async def reminder_pass(self, now: datetime) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Booking.id, Slot.date, Slot.time, Specialist.specialization, User.telegram_id)
                .join(Slot, Booking.slot_id == Slot.id)
                .join(Specialist, Slot.specialist_id == Specialist.id)
                .join(User, Booking.user_id == User.id)
                .where(Slot.is_booked.is_(True))
            )
            rows = result.all()

        sent = 0
        for booking_id, slot_date, slot_time, specialization, telegram_id in rows:
            kind = reminder_kind(hours_until(slot_datetime(slot_date, slot_time), now))
            if kind is None:
                continue
            when = format_date_time(slot_date, slot_time)
            if kind == "tomorrow":
                text = f"⏰ Reminder: you have an appointment tomorrow at {when} ({specialization})."
            else:
                text = f"⏰ Reminder: your appointment at {when} ({specialization}) starts within the hour."
            await notify(self.gateway, telegram_id, text)
            logger.info(f"Sent '{kind}' reminder for booking #{booking_id}")
            sent += 1
        return sent

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self) -> TickReport:
        if self._lock.locked():
            logger.warning("Previous reconciliation tick still running; skipping")
            return TickReport(skipped=True)

        async with self._lock:
            now = self.clock()
            report = TickReport()

            try:
                report.expired = await self.expire_pass(now)
            except Exception as e:
                await self._pass_failed(report, "expiry", e)

            try:
                report.deleted_slots, report.created_slots = await self.regenerate_pass(now)
            except Exception as e:
                await self._pass_failed(report, "regeneration", e)

            try:
                report.reminders = await self.reminder_pass(now)
            except Exception as e:
                await self._pass_failed(report, "reminders", e)

            logger.debug(f"Reconciliation tick done: {report}")
            return report

    async def _pass_failed(self, report: TickReport, name: str, error: Exception) -> None:
        report.failed_passes.append(name)
        logger.exception(f"Reconciliation pass '{name}' failed: {error}")
        try:
            await self.alerts.alert("error", f"Scheduler pass '{name}' failed: {error}")
        except Exception as alert_error:
            logger.error(f"Could not alert admins about '{name}' failure: {alert_error}")

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        interval = self.settings.scheduler_interval_seconds
        logger.info(f"Reconciliation scheduler started (every {interval}s)")
        while not self._stopping.is_set():
            try:
                await self.tick()
            except Exception as e:
                logger.exception(f"Reconciliation tick crashed: {e}")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Reconciliation scheduler stopped")

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if not self._task:
            return
        self._stopping.set()
        await self._task
        self._task = None
