"""
Specialists and their services.

Specialists only come into existence through admin onboarding; services are
added and renamed by admin flows.
"""

import logging
import re
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .core.errors import AlreadyRegistered, InvalidServiceName, SpecialistNotFound
from .models import Service, Specialist, User, UserRole
from .users import assign_role, get_specialist_for_user, get_user_by_telegram_id

logger = logging.getLogger(__name__)

# Letters from any alphabet, separated by single spaces or hyphens
_SERVICE_NAME_RE = re.compile(r"^[^\W\d_]+(?:[ -][^\W\d_]+)*$")


def validate_service_name(name: str | None) -> str:
    """
    Normalize and check a service name.

    Raises:
        InvalidServiceName: If the name has anything but letters, spaces and hyphens
    """
    cleaned = " ".join((name or "").split())
    if not cleaned or not _SERVICE_NAME_RE.match(cleaned):
        raise InvalidServiceName(details={"name": name})
    return cleaned


async def get_specialist(session: AsyncSession, specialist_id: int) -> Specialist:
    specialist = await session.get(Specialist, specialist_id)
    if not specialist:
        raise SpecialistNotFound(details={"specialist_id": specialist_id})
    return specialist


async def create_specialist(
    session: AsyncSession,
    telegram_id: int,
    name: str,
    specialization: str,
    description: Optional[str],
) -> Specialist:
    """
    Register a specialist for a Telegram identity.

    An unknown identity gets a new user record. An existing user is promoted
    (admins keep their admin role) unless they already have a specialist record.

    Raises:
        AlreadyRegistered: The identity is already a specialist
    """
    user = await get_user_by_telegram_id(session, telegram_id)
    if user is None:
        user = User(telegram_id=telegram_id, name=name, role=UserRole.SPECIALIST.value)
        session.add(user)
        await session.flush()
    else:
        if await get_specialist_for_user(session, user.id):
            raise AlreadyRegistered(details={"telegram_id": telegram_id})
        user.name = name
        await assign_role(session, user, UserRole.SPECIALIST)

    specialist = Specialist(user_id=user.id, specialization=specialization, description=description)
    session.add(specialist)
    await session.flush()
    logger.info(f"Specialist #{specialist.id} ({name}, {specialization}) registered for {telegram_id}")
    return specialist


async def add_service(session: AsyncSession, specialist_id: int, name: str) -> Service:
    await get_specialist(session, specialist_id)
    service = Service(specialist_id=specialist_id, name=validate_service_name(name))
    session.add(service)
    await session.flush()
    logger.info(f"Service #{service.id} '{service.name}' added for specialist #{specialist_id}")
    return service


async def rename_service(session: AsyncSession, service_id: int, name: str) -> Optional[Service]:
    """Rename a service; returns None when it no longer exists."""
    cleaned = validate_service_name(name)
    service = await session.get(Service, service_id)
    if not service:
        return None
    old_name, service.name = service.name, cleaned
    await session.flush()
    logger.info(f"Service #{service_id} renamed '{old_name}' -> '{cleaned}'")
    return service


async def list_service_refs(session: AsyncSession, specialist_id: int) -> List[tuple[int, str]]:
    result = await session.execute(
        select(Service.id, Service.name).where(Service.specialist_id == specialist_id).order_by(Service.id)
    )
    return [(service_id, name) for service_id, name in result.all()]
