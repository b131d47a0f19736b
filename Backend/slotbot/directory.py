"""Read-only listings: specialists, services, open feedback."""

from typing import List

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import FeedbackRequest, FeedbackStatus, Service, Specialist, User


class SpecialistSummary(BaseModel):
    id: int
    name: str
    specialization: str
    description: str | None = None


class ServiceSummary(BaseModel):
    id: int
    specialist_id: int
    name: str


class FeedbackSummary(BaseModel):
    id: int
    user_id: int
    message: str
    status: str
    admin_response: str | None = None


async def list_specialists(session: AsyncSession) -> List[SpecialistSummary]:
    result = await session.execute(
        select(Specialist, User)
        .join(User, Specialist.user_id == User.id)
        .order_by(User.name, Specialist.id)
    )
    return [
        SpecialistSummary(
            id=specialist.id,
            name=user.name or f"#{specialist.id}",
            specialization=specialist.specialization,
            description=specialist.description,
        )
        for specialist, user in result.all()
    ]


async def list_services(session: AsyncSession, specialist_id: int) -> List[ServiceSummary]:
    result = await session.execute(
        select(Service).where(Service.specialist_id == specialist_id).order_by(Service.name, Service.id)
    )
    return [
        ServiceSummary(id=service.id, specialist_id=service.specialist_id, name=service.name)
        for service in result.scalars().all()
    ]


async def list_active_feedback(session: AsyncSession) -> List[FeedbackSummary]:
    result = await session.execute(
        select(FeedbackRequest)
        .where(FeedbackRequest.status != FeedbackStatus.CLOSED.value)
        .order_by(FeedbackRequest.id.desc())
    )
    return [
        FeedbackSummary(
            id=request.id,
            user_id=request.user_id,
            message=request.message,
            status=request.status,
            admin_response=request.admin_response,
        )
        for request in result.scalars().all()
    ]
