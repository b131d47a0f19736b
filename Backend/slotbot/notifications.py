"""
Outbound notifications and admin alerting.

NotificationGateway.send() is best-effort: it returns False on failure and
never raises, so a failed message can't undo a committed booking change.

AlertSink.alert() is the operational alert channel. AdminBroadcastAlerts
fans an alert out to every admin identity known to the database.
"""

import logging
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .users import list_admin_telegram_ids

logger = logging.getLogger(__name__)

SEVERITY_ICONS = {
    "info": "ℹ️",
    "warning": "⚠️",
    "error": "🚨",
}


class NotificationGateway(Protocol):
    async def send(self, telegram_id: int, text: str) -> bool:
        ...


class AlertSink(Protocol):
    async def alert(self, severity: str, message: str) -> None:
        ...


async def notify(gateway: NotificationGateway, telegram_id: int | None, text: str) -> bool:
    """Send and swallow any failure; the caller's state change already happened."""
    if not telegram_id:
        return False
    try:
        return await gateway.send(telegram_id, text)
    except Exception as e:
        logger.error(f"Failed to notify {telegram_id}: {e}")
        return False


class AdminBroadcastAlerts:
    """Alert sink that messages every admin through the gateway."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], gateway: NotificationGateway):
        self.session_factory = session_factory
        self.gateway = gateway

    async def alert(self, severity: str, message: str) -> None:
        icon = SEVERITY_ICONS.get(severity, "🚨")
        logger.log(logging.ERROR if severity == "error" else logging.INFO, f"[alert:{severity}] {message}")
        try:
            async with self.session_factory() as session:
                admin_ids = await list_admin_telegram_ids(session)
        except Exception as e:
            logger.error(f"Could not load admins for alert: {e}")
            return
        for telegram_id in admin_ids:
            await notify(self.gateway, telegram_id, f"{icon} {message}")

