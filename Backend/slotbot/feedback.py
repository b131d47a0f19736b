import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .core.errors import FeedbackClosed, FeedbackNotFound
from .models import FeedbackRequest, FeedbackStatus, User

logger = logging.getLogger(__name__)

# Position of each status in the forward-only lifecycle
_STATUS_ORDER = {
    FeedbackStatus.NEW.value: 0,
    FeedbackStatus.IN_PROGRESS.value: 1,
    FeedbackStatus.CLOSED.value: 2,
}


def _advance_status(request: FeedbackRequest, target: FeedbackStatus) -> None:
    if request.status == FeedbackStatus.CLOSED.value:
        raise FeedbackClosed(details={"request_id": request.id})
    if _STATUS_ORDER[target.value] < _STATUS_ORDER[request.status]:
        raise FeedbackClosed(
            f"Feedback #{request.id} cannot move back to {target.value}.",
            details={"request_id": request.id},
        )
    request.status = target.value


async def _get_request(session: AsyncSession, request_id: int) -> FeedbackRequest:
    request = await session.get(FeedbackRequest, request_id)
    if not request:
        raise FeedbackNotFound(details={"request_id": request_id})
    return request


async def submit_feedback(session: AsyncSession, user_id: int, text: str, now: datetime) -> FeedbackRequest:
    request = FeedbackRequest(
        user_id=user_id,
        message=text,
        status=FeedbackStatus.NEW.value,
        created_at=now,
    )
    session.add(request)
    await session.flush()
    logger.info(f"User #{user_id} submitted feedback #{request.id}")
    return request


async def respond_to_feedback(session: AsyncSession, request_id: int, response: str) -> Optional[int]:
    """
    Store the admin's answer and move the request to in_progress.

    Returns:
        Telegram id of the user who asked, so the caller can forward the answer
    """
    request = await _get_request(session, request_id)
    _advance_status(request, FeedbackStatus.IN_PROGRESS)
    request.admin_response = response
    await session.flush()
    user = await session.get(User, request.user_id)
    logger.info(f"Feedback #{request_id} answered")
    return user.telegram_id if user else None


async def close_feedback(session: AsyncSession, request_id: int) -> FeedbackRequest:
    request = await _get_request(session, request_id)
    _advance_status(request, FeedbackStatus.CLOSED)
    await session.flush()
    logger.info(f"Feedback #{request_id} closed")
    return request
