"""
Booking engine.

reserve(), cancel() and expire() each run in a single transaction. A slot's
is_booked flag and its Booking row always change together; any failure
inside the transaction rolls both back.

Double booking is prevented three ways, all inside the reservation
transaction:
    1. SELECT ... FOR UPDATE on the slot row serializes concurrent attempts
       on the same slot (Postgres); unrelated slots are not blocked.
    2. The is_booked flip is a compare-and-swap (WHERE is_booked = false)
       whose row count is checked.
    3. bookings.slot_id is unique.

Notifications are sent after commit through the gateway and never roll back.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Callable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .core.errors import (
    BookingNotFound,
    BotError,
    NotOwner,
    PersistenceError,
    SlotAlreadyBooked,
    SlotNotFound,
    UserNotFound,
)
from .models import Booking, BookingHistory, HistoryReason, Slot, Specialist, User
from .notifications import AlertSink, NotificationGateway, notify
from .timeutils import format_date_time, local_now
from .users import list_admin_telegram_ids

logger = logging.getLogger(__name__)


@dataclass
class BookingReceipt:
    booking_id: int
    slot_id: int
    slot_date: date
    slot_time: time
    specialist_id: int
    specialist_name: str
    client_name: str


@dataclass
class BookingView:
    booking_id: int
    slot_id: int
    slot_date: date
    slot_time: time
    specialist_id: int
    specialization: str
    client_name: str
    created_at: datetime


async def _mark_slot(session: AsyncSession, slot_id: int, booked: bool) -> None:
    """Flip is_booked, only from the opposite value."""
    result = await session.execute(
        update(Slot)
        .where(Slot.id == slot_id, Slot.is_booked.is_(not booked))
        .values(is_booked=booked)
    )
    if booked and result.rowcount == 0:
        raise SlotAlreadyBooked(details={"slot_id": slot_id})


async def _lock_slot(session: AsyncSession, slot_id: int) -> Optional[Slot]:
    result = await session.execute(select(Slot).where(Slot.id == slot_id).with_for_update())
    return result.scalar_one_or_none()


async def _archive(
    session: AsyncSession,
    booking: Booking,
    slot: Slot,
    reason: HistoryReason,
    closed_at: datetime,
) -> None:
    session.add(
        BookingHistory(
            user_id=booking.user_id,
            slot_id=slot.id,
            specialist_id=slot.specialist_id,
            created_at=booking.created_at,
            closed_at=closed_at,
            reason=reason.value,
        )
    )
    await session.delete(booking)
    await session.flush()
    await _mark_slot(session, slot.id, booked=False)


class BookingEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: NotificationGateway,
        alerts: AlertSink,
        clock: Callable[[], datetime] = local_now,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.alerts = alerts
        self.clock = clock

    async def reserve(self, user_id: int, slot_id: int) -> BookingReceipt:
        """
        Reserve a free slot for a user.

        Raises:
            SlotNotFound: Slot does not exist
            SlotAlreadyBooked: Slot is booked (or was booked concurrently)
            PersistenceError: Transaction failed and was rolled back
        """
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    slot = await _lock_slot(session, slot_id)
                    if not slot:
                        raise SlotNotFound(details={"slot_id": slot_id})
                    if slot.is_booked:
                        raise SlotAlreadyBooked(details={"slot_id": slot_id})

                    client = await session.get(User, user_id)
                    if not client:
                        raise UserNotFound(details={"user_id": user_id})
                    result = await session.execute(
                        select(Specialist, User)
                        .join(User, Specialist.user_id == User.id)
                        .where(Specialist.id == slot.specialist_id)
                    )
                    specialist, specialist_user = result.one()

                    booking = Booking(user_id=user_id, slot_id=slot_id, created_at=self.clock())
                    session.add(booking)
                    await session.flush()
                    await _mark_slot(session, slot_id, booked=True)

                    receipt = BookingReceipt(
                        booking_id=booking.id,
                        slot_id=slot.id,
                        slot_date=slot.date,
                        slot_time=slot.time,
                        specialist_id=specialist.id,
                        specialist_name=specialist_user.name or "Specialist",
                        client_name=client.name or "Anonymous",
                    )
                    client_telegram_id = client.telegram_id
                    specialist_telegram_id = specialist_user.telegram_id
        except BotError:
            raise
        except IntegrityError as e:
            logger.info(f"Slot #{slot_id} lost a concurrent reservation race: {e.orig}")
            raise SlotAlreadyBooked(details={"slot_id": slot_id})
        except SQLAlchemyError as e:
            logger.exception(f"Reservation of slot #{slot_id} for user #{user_id} failed")
            raise await self._persistence_failed(
                f"Reservation of slot #{slot_id} failed: {e}", {"slot_id": slot_id, "error": str(e)}
            )

        when = format_date_time(receipt.slot_date, receipt.slot_time)
        logger.info(
            f"User #{user_id} ({receipt.client_name}) booked slot #{slot_id} "
            f"with specialist #{receipt.specialist_id} at {when}"
        )
        await notify(self.gateway, client_telegram_id, f"✅ You are booked! 📅 {when} with {receipt.specialist_name}")
        await notify(self.gateway, specialist_telegram_id, f"📥 New booking: 📅 {when} from {receipt.client_name}")
        await self._notify_admins(
            f"New booking: {receipt.client_name} booked {receipt.specialist_name} "
            f"(#{receipt.specialist_id}) at {when}."
        )
        return receipt

    async def cancel(self, booking_id: int, requesting_user_id: int) -> BookingReceipt:
        """
        Cancel a booking on behalf of its owner and release the slot.

        Raises:
            BookingNotFound: Booking does not exist
            NotOwner: Booking belongs to someone else
            PersistenceError: Transaction failed and was rolled back
        """
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        select(Booking).where(Booking.id == booking_id).with_for_update()
                    )
                    booking = result.scalar_one_or_none()
                    if not booking:
                        raise BookingNotFound(details={"booking_id": booking_id})
                    if booking.user_id != requesting_user_id:
                        raise NotOwner(details={"booking_id": booking_id})

                    slot = await _lock_slot(session, booking.slot_id)
                    client = await session.get(User, booking.user_id)
                    result = await session.execute(
                        select(User)
                        .join(Specialist, Specialist.user_id == User.id)
                        .where(Specialist.id == slot.specialist_id)
                    )
                    specialist_user = result.scalar_one()

                    receipt = BookingReceipt(
                        booking_id=booking.id,
                        slot_id=slot.id,
                        slot_date=slot.date,
                        slot_time=slot.time,
                        specialist_id=slot.specialist_id,
                        specialist_name=specialist_user.name or "Specialist",
                        client_name=client.name or "Anonymous",
                    )
                    await _archive(session, booking, slot, HistoryReason.CANCELLED, self.clock())
                    client_telegram_id = client.telegram_id
                    specialist_telegram_id = specialist_user.telegram_id
        except BotError:
            raise
        except SQLAlchemyError as e:
            logger.exception(f"Cancellation of booking #{booking_id} failed")
            raise await self._persistence_failed(
                f"Cancellation of booking #{booking_id} failed: {e}", {"booking_id": booking_id, "error": str(e)}
            )

        when = format_date_time(receipt.slot_date, receipt.slot_time)
        logger.info(f"User #{requesting_user_id} cancelled booking #{booking_id} ({when})")
        await notify(self.gateway, client_telegram_id, f"✅ Your booking for {when} is cancelled.")
        await notify(self.gateway, specialist_telegram_id, f"❌ {receipt.client_name} cancelled the booking for {when}.")
        return receipt

    async def expire(self, booking_id: int) -> bool:
        """
        Close a booking whose slot time has passed. No ownership check.

        Returns:
            True if the booking was archived, False if it was already gone
        """
        now = self.clock()
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        select(Booking).where(Booking.id == booking_id).with_for_update()
                    )
                    booking = result.scalar_one_or_none()
                    if not booking:
                        return False
                    slot = await _lock_slot(session, booking.slot_id)
                    client = await session.get(User, booking.user_id)
                    when = format_date_time(slot.date, slot.time)
                    await _archive(session, booking, slot, HistoryReason.EXPIRED, now)
                    client_telegram_id = client.telegram_id if client else None
        except SQLAlchemyError as e:
            logger.exception(f"Expiry of booking #{booking_id} failed")
            raise await self._persistence_failed(
                f"Expiry of booking #{booking_id} failed: {e}", {"booking_id": booking_id, "error": str(e)}
            )

        logger.info(f"Booking #{booking_id} ({when}) expired and was archived")
        await notify(self.gateway, client_telegram_id, f"⏰ Your booking for {when} has ended and was closed automatically.")
        return True

    async def list_user_bookings(self, user_id: int) -> List[BookingView]:
        return await self._list_bookings(Booking.user_id == user_id)

    async def list_specialist_bookings(self, specialist_id: int) -> List[BookingView]:
        return await self._list_bookings(Slot.specialist_id == specialist_id)

    async def _list_bookings(self, condition) -> List[BookingView]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Booking, Slot, Specialist, User)
                .join(Slot, Booking.slot_id == Slot.id)
                .join(Specialist, Slot.specialist_id == Specialist.id)
                .join(User, Booking.user_id == User.id)
                .where(condition)
                .order_by(Slot.date, Slot.time)
            )
            return [
                BookingView(
                    booking_id=booking.id,
                    slot_id=slot.id,
                    slot_date=slot.date,
                    slot_time=slot.time,
                    specialist_id=specialist.id,
                    specialization=specialist.specialization,
                    client_name=client.name or "Anonymous",
                    created_at=booking.created_at,
                )
                for booking, slot, specialist, client in result.all()
            ]

    async def _persistence_failed(self, message: str, details: dict) -> PersistenceError:
        await self.alerts.alert("error", message)
        error = PersistenceError(details=details)
        error.alerted = True
        return error

    async def _notify_admins(self, text: str) -> None:
        try:
            async with self.session_factory() as session:
                admin_ids = await list_admin_telegram_ids(session)
        except SQLAlchemyError as e:
            logger.error(f"Could not load admins for booking summary: {e}")
            return
        for telegram_id in admin_ids:
            await notify(self.gateway, telegram_id, text)
