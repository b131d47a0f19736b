import logging
from datetime import timedelta
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from .bookings import BookingEngine
from .catalog import get_specialist
from .core.config import Settings, get_settings
from .core.db import AsyncSessionLocal, Base, engine
from .core.errors import BotError, ConflictError, NotFoundError, OwnershipError, ValidationError
from .core.logging_setup import configure_logging
from .core.responses import bot_error_response, success_response
from .directory import list_active_feedback, list_services, list_specialists
from .flows import FlowEngine
from .handlers import BotDispatcher
from .notifications import AdminBroadcastAlerts
from .scheduler import ReconciliationScheduler
from .sessions import SessionStore
from .telegram import TelegramClient, Update
from .timeutils import local_now
from .users import ensure_admins

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (OwnershipError, status.HTTP_403_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
)


def _status_for(exc: BotError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def create_app(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    db_engine: Optional[AsyncEngine] = None,
    client: Optional[TelegramClient] = None,
) -> FastAPI:
    settings = settings or get_settings()
    session_factory = session_factory or AsyncSessionLocal
    db_engine = db_engine or engine
    client = client or TelegramClient(settings.telegram_token, settings.telegram_api_base)

    alerts = AdminBroadcastAlerts(session_factory, client)
    store = SessionStore(timeout=timedelta(minutes=settings.session_timeout_minutes), clock=local_now)
    booking_engine = BookingEngine(session_factory, client, alerts)
    flows = FlowEngine(session_factory, store, alerts)
    dispatcher = BotDispatcher(session_factory, client, booking_engine, flows, store, alerts)
    scheduler = ReconciliationScheduler(session_factory, booking_engine, client, alerts, settings)

    app = FastAPI(title="Slotbot Booking Backend")
    app.state.dispatcher = dispatcher
    app.state.scheduler = scheduler
    app.state.sessions = store

    async def get_db():
        async with session_factory() as session:
            yield session

    @app.on_event("startup")
    async def on_startup():
        configure_logging()
        async with db_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with session_factory() as session:
            await ensure_admins(session, settings.admin_telegram_id_list)
        if settings.scheduler_enabled:
            scheduler.start()
        logger.info("Slotbot started")

    @app.on_event("shutdown")
    async def on_shutdown():
        await scheduler.stop()
        await client.aclose()
        logger.info("Slotbot stopped")

    @app.exception_handler(BotError)
    async def bot_error_handler(request, exc: BotError):
        return JSONResponse(status_code=_status_for(exc), content=bot_error_response(exc))

    @app.get("/health")
    async def healthcheck():
        return {"ok": True}

    @app.post("/telegram/webhook")
    async def telegram_webhook(
        update: Update,
        x_telegram_bot_api_secret_token: Optional[str] = Header(default=None),
    ):
        if settings.telegram_webhook_secret and x_telegram_bot_api_secret_token != settings.telegram_webhook_secret:
            logger.warning(f"Rejected webhook update {update.update_id}: bad secret token")
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid secret token")
        try:
            await dispatcher.handle_update(update)
        except Exception:
            # Always acknowledge; Telegram redelivers on non-2xx.
            logger.exception(f"Unhandled error for update {update.update_id}")
        return {"ok": True}

    @app.get("/specialists")
    async def specialists_endpoint(session: AsyncSession = Depends(get_db)):
        specialists = await list_specialists(session)
        return success_response([s.model_dump() for s in specialists])

    @app.get("/specialists/{specialist_id}/services")
    async def services_endpoint(specialist_id: int, session: AsyncSession = Depends(get_db)):
        await get_specialist(session, specialist_id)
        services = await list_services(session, specialist_id)
        return success_response([s.model_dump() for s in services])

    @app.get("/feedback/active")
    async def active_feedback_endpoint(session: AsyncSession = Depends(get_db)):
        requests = await list_active_feedback(session)
        return success_response([r.model_dump() for r in requests])

    return app


app = create_app()
