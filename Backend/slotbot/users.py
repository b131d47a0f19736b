import logging
from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Specialist, User, UserRole

logger = logging.getLogger(__name__)


async def get_user_by_telegram_id(session: AsyncSession, telegram_id: int) -> Optional[User]:
    result = await session.execute(select(User).where(User.telegram_id == telegram_id))
    return result.scalar_one_or_none()


async def get_or_create_user(session: AsyncSession, telegram_id: int, name: Optional[str]) -> User:
    """Register a user on first contact; existing users are returned unchanged."""
    user = await get_user_by_telegram_id(session, telegram_id)
    if user:
        return user
    user = User(telegram_id=telegram_id, name=name, role=UserRole.CLIENT.value)
    session.add(user)
    await session.flush()
    logger.info(f"Registered new user {telegram_id} ({name})")
    return user


async def assign_role(session: AsyncSession, user: User, role: UserRole) -> User:
    """
    Give a user a new role. Admins are never demoted by this call, so
    onboarding an admin as a specialist keeps their admin rights.
    """
    if user.role == UserRole.ADMIN.value and role != UserRole.ADMIN:
        logger.info(f"User {user.telegram_id} keeps admin role (requested {role.value})")
        return user
    user.role = role.value
    await session.flush()
    logger.info(f"Role of user {user.telegram_id} set to {role.value}")
    return user


async def list_admin_telegram_ids(session: AsyncSession) -> List[int]:
    result = await session.execute(select(User.telegram_id).where(User.role == UserRole.ADMIN.value))
    return [row for row in result.scalars().all() if row]


async def ensure_admins(session: AsyncSession, telegram_ids: Iterable[int]) -> None:
    """Promote configured admin identities, creating placeholder users when needed."""
    for telegram_id in telegram_ids:
        user = await get_user_by_telegram_id(session, telegram_id)
        if not user:
            session.add(User(telegram_id=telegram_id, name=None, role=UserRole.ADMIN.value))
            logger.info(f"Seeded admin user {telegram_id}")
        elif user.role != UserRole.ADMIN.value:
            user.role = UserRole.ADMIN.value
            logger.info(f"Promoted configured admin {telegram_id}")
    await session.commit()


async def get_specialist_for_user(session: AsyncSession, user_id: int) -> Optional[Specialist]:
    result = await session.execute(select(Specialist).where(Specialist.user_id == user_id))
    return result.scalar_one_or_none()
