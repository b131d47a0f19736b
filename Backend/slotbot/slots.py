"""
Slot store.

A booked slot is immutable: update_slot() and delete_slot() only touch rows
with is_booked = false and report whether anything changed. Booking state is
flipped exclusively by the booking engine.
"""

import logging
from datetime import date, datetime, time
from typing import List, Optional

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .core.errors import SlotConflict
from .models import Slot

logger = logging.getLogger(__name__)


def _at_or_after(moment: datetime):
    """SQL filter for slots whose (date, time) is not before the given minute."""
    cutoff = moment.replace(second=0, microsecond=0)
    return or_(
        Slot.date > cutoff.date(),
        and_(Slot.date == cutoff.date(), Slot.time >= cutoff.time()),
    )


def _before(moment: datetime):
    return or_(
        Slot.date < moment.date(),
        and_(Slot.date == moment.date(), Slot.time < moment.time()),
    )


async def get_slot(session: AsyncSession, slot_id: int) -> Optional[Slot]:
    result = await session.execute(select(Slot).where(Slot.id == slot_id))
    return result.scalar_one_or_none()


async def slot_exists(session: AsyncSession, specialist_id: int, slot_date: date, slot_time: time) -> bool:
    result = await session.execute(
        select(Slot.id).where(
            Slot.specialist_id == specialist_id,
            Slot.date == slot_date,
            Slot.time == slot_time,
        )
    )
    return result.first() is not None


async def create_slot(session: AsyncSession, specialist_id: int, slot_date: date, slot_time: time) -> Slot:
    """
    Insert a free slot.

    Raises:
        SlotConflict: If the specialist already has a slot at that moment
    """
    if await slot_exists(session, specialist_id, slot_date, slot_time):
        raise SlotConflict(details={"specialist_id": specialist_id})
    slot = Slot(specialist_id=specialist_id, date=slot_date, time=slot_time, is_booked=False)
    session.add(slot)
    try:
        await session.flush()
    except IntegrityError:
        raise SlotConflict(details={"specialist_id": specialist_id})
    logger.info(f"Created slot #{slot.id} for specialist #{specialist_id} on {slot_date} {slot_time:%H:%M}")
    return slot


async def update_slot(session: AsyncSession, slot_id: int, slot_date: date, slot_time: time) -> bool:
    """
    Move a free slot. Returns False when the slot is booked or missing.

    Raises:
        SlotConflict: If the specialist already has a slot at the new moment
    """
    try:
        result = await session.execute(
            update(Slot)
            .where(Slot.id == slot_id, Slot.is_booked.is_(False))
            .values(date=slot_date, time=slot_time)
        )
    except IntegrityError:
        raise SlotConflict(details={"slot_id": slot_id})
    changed = result.rowcount > 0
    if changed:
        logger.info(f"Slot #{slot_id} moved to {slot_date} {slot_time:%H:%M}")
    else:
        logger.info(f"Slot #{slot_id} not moved (booked or missing)")
    return changed


async def delete_slot(session: AsyncSession, slot_id: int) -> bool:
    """Delete a free slot. Returns False when the slot is booked or missing."""
    result = await session.execute(
        delete(Slot).where(Slot.id == slot_id, Slot.is_booked.is_(False))
    )
    deleted = result.rowcount > 0
    logger.info(f"Slot #{slot_id} {'deleted' if deleted else 'not deleted (booked or missing)'}")
    return deleted


async def list_future_slots(
    session: AsyncSession,
    specialist_id: int,
    now: datetime,
    free_only: bool = False,
) -> List[Slot]:
    query = select(Slot).where(Slot.specialist_id == specialist_id, _at_or_after(now))
    if free_only:
        query = query.where(Slot.is_booked.is_(False))
    result = await session.execute(query.order_by(Slot.date, Slot.time))
    return list(result.scalars().all())


async def list_all_slots(session: AsyncSession, specialist_id: int) -> List[Slot]:
    result = await session.execute(
        select(Slot).where(Slot.specialist_id == specialist_id).order_by(Slot.date, Slot.time)
    )
    return list(result.scalars().all())


async def delete_stale_free_slots(session: AsyncSession, cutoff: datetime) -> List[int]:
    """Remove free slots that start before the cutoff; booked ones are kept."""
    result = await session.execute(
        select(Slot.id).where(Slot.is_booked.is_(False), _before(cutoff))
    )
    slot_ids = list(result.scalars().all())
    if slot_ids:
        await session.execute(
            delete(Slot).where(Slot.id.in_(slot_ids), Slot.is_booked.is_(False))
        )
    return slot_ids
