"""
Bot dispatcher.

Turns webhook updates into calls on the booking engine, the slot store and the
conversation flow engine, then renders menus and paginated lists back to the
chat.

Updates from the same chat are handled one at a time (per-chat asyncio lock);
different chats interleave freely.

Every reportable failure ends up in _report(): the user gets the error's
message, and anything that is not plain bad input is also raised with the
admins through the alert sink.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .bookings import BookingEngine
from .catalog import get_specialist, list_service_refs
from .core.errors import (
    BotError,
    NotOwner,
    PersistenceError,
    SlotAlreadyBooked,
    SlotNotFound,
    ValidationError,
)
from .directory import list_active_feedback, list_services, list_specialists
from .feedback import close_feedback
from .flows import (
    Effect,
    FeedbackForm,
    FeedbackReplyForm,
    FlowEngine,
    Notify,
    OnboardingForm,
    Reply,
    ServiceForm,
    ServiceRenameWalk,
    SlotEditForm,
    SlotForm,
)
from .models import Slot, User, UserRole
from .notifications import AlertSink, notify
from .pagination import BOOK_SLOTS_PAGE_SIZE, MY_SLOTS_PAGE_SIZE, paginate
from .sessions import PaginationCursor, SessionStore
from .slots import delete_slot, get_slot, list_all_slots, list_future_slots
from .telegram import CallbackQuery, Message, TelegramClient, TelegramError, TelegramUser, Update, button, inline_keyboard
from .timeutils import format_date_time, local_now, slot_datetime
from .users import get_or_create_user, get_specialist_for_user

logger = logging.getLogger(__name__)

BACK_TO_MENU = inline_keyboard([[button("⬅️ Back to menu", "book")]])
ACCESS_DENIED = "⛔ Access denied."
UNKNOWN_ACTION = "❌ Unknown command. Try again with /start."

VIEW_MY_SLOTS = "my_slots"
VIEW_BOOK_SLOTS = "book_slots"


class BadRequest(ValidationError):
    default_message = "Invalid request. Please try again."


def _parse_ids(data: str, prefix: str, count: int) -> List[int]:
    """Split 'prefix_1_2_3' callback data into exactly count integers."""
    parts = data[len(prefix):].split("_")
    if len(parts) != count or not all(part.isdigit() for part in parts):
        logger.warning(f"Malformed callback data: {data}")
        raise BadRequest(details={"data": data})
    return [int(part) for part in parts]


class BotDispatcher:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: TelegramClient,
        engine: BookingEngine,
        flows: FlowEngine,
        store: SessionStore,
        alerts: AlertSink,
        clock: Callable[[], datetime] = local_now,
    ):
        self.session_factory = session_factory
        self.client = client
        self.engine = engine
        self.flows = flows
        self.store = store
        self.alerts = alerts
        self.clock = clock
        # Per-chat locks live only while some update for the chat is in flight
        self._locks: Dict[int, asyncio.Lock] = {}
        self._lock_users: Dict[int, int] = {}

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def handle_update(self, update: Update) -> None:
        if update.callback_query:
            query = update.callback_query
            chat_id = query.message.chat.id if query.message else query.from_user.id
        elif update.message and update.message.from_user:
            chat_id = update.message.chat.id
        else:
            logger.debug(f"Ignoring update {update.update_id}")
            return

        async with self._chat_lock(chat_id):
            try:
                if update.callback_query:
                    await self._handle_callback(chat_id, update.callback_query)
                else:
                    await self._handle_message(chat_id, update.message)
            except BotError as e:
                await self._report(chat_id, e)
            except SQLAlchemyError as e:
                logger.exception(f"Database failure while handling update {update.update_id}")
                await self._report(chat_id, PersistenceError(details={"error": str(e)}))
            except TelegramError as e:
                logger.error(f"Telegram call failed for chat {chat_id}: {e}")

    @asynccontextmanager
    async def _chat_lock(self, chat_id: int):
        lock = self._locks.setdefault(chat_id, asyncio.Lock())
        self._lock_users[chat_id] = self._lock_users.get(chat_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[chat_id] -= 1
            if not self._lock_users[chat_id]:
                del self._lock_users[chat_id]
                del self._locks[chat_id]

    async def _report(self, chat_id: int, error: BotError) -> None:
        await self._send(chat_id, f"❌ {error.message}")
        if isinstance(error, ValidationError):
            logger.info(f"Chat {chat_id}: {error.code} {error.details}")
            return
        logger.warning(f"Chat {chat_id}: {error.code} {error.message} {error.details}")
        if error.alerted:
            return
        severity = "error" if isinstance(error, PersistenceError) else "warning"
        await self.alerts.alert(severity, f"Chat {chat_id}: {error.code} - {error.message}")
        error.alerted = True

    # ------------------------------------------------------------------
    # Output helpers
    # ------------------------------------------------------------------

    async def _send(self, chat_id: int, text: str, reply_markup: Optional[Dict[str, Any]] = None) -> Optional[int]:
        try:
            return await self.client.send_message(chat_id, text, reply_markup)
        except TelegramError as e:
            logger.error(f"Could not reply to chat {chat_id}: {e}")
            return None

    async def _run_effects(self, chat_id: int, effects: List[Effect]) -> None:
        for effect in effects:
            if isinstance(effect, Reply):
                await self._send(chat_id, effect.text)
            elif isinstance(effect, Notify):
                await notify(self.client, effect.telegram_id, effect.text)

    async def _render_page(
        self,
        chat_id: int,
        cursor: PaginationCursor,
        text: str,
        reply_markup: Dict[str, Any],
        navigating: bool,
    ) -> None:
        """Edit the cached list message when paging, otherwise send a new one."""
        previous = self.store.get_cursor(chat_id)
        message_id = None
        if navigating and previous and previous.view == cursor.view and previous.message_id:
            message_id = previous.message_id
            try:
                await self.client.edit_message_text(chat_id, message_id, text, reply_markup)
            except TelegramError as e:
                logger.info(f"Could not edit message {message_id} in chat {chat_id}, sending anew: {e}")
                message_id = None
        if message_id is None:
            message_id = await self._send(chat_id, text, reply_markup)
        cursor.message_id = message_id
        self.store.set_cursor(chat_id, cursor)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def _load_user(self, sender: TelegramUser) -> User:
        async with self.session_factory() as session:
            async with session.begin():
                return await get_or_create_user(session, sender.id, sender.first_name)

    def _menu(self, user: User) -> Dict[str, Any]:
        rows = [
            [button("📅 Book an appointment", "book")],
            [button("✉️ Feedback", "feedback")],
            [button("📋 My bookings", "my_bookings_view")],
        ]
        if user.is_admin:
            rows.append([button("⚙️ Admin panel", "admin_panel")])
        if user.role == UserRole.SPECIALIST.value:
            rows.append([button("🗓 My slots", "my_slots")])
            rows.append([button("👥 My clients", "my_clients")])
        return inline_keyboard(rows)

    # ------------------------------------------------------------------
    # Text messages and commands
    # ------------------------------------------------------------------

    async def _handle_message(self, chat_id: int, message: Message) -> None:
        user = await self._load_user(message.from_user)
        text = (message.text or "").strip()

        if text.startswith("/"):
            command = text.split()[0].split("@")[0].lower()
            logger.info(f"User {user.telegram_id} sent {command}")
            if command == "/start":
                await self._send(chat_id, f"👋 Hello, {user.name or 'there'}! How can I help?", self._menu(user))
            elif command == "/admin":
                await self._admin(chat_id, user)
            elif command == "/reset":
                await self._reset(chat_id, message)
            elif command == "/mybookings":
                await self._my_bookings(chat_id, user)
            elif command == "/slots":
                await self._slots_overview(chat_id, user)
            else:
                await self._send(chat_id, UNKNOWN_ACTION)
            return

        result = await self.flows.advance(chat_id, text)
        if not result.handled:
            await self._send(chat_id, "Use /start to open the menu.")
            return
        await self._run_effects(chat_id, result.effects)

    async def _admin(self, chat_id: int, user: User) -> None:
        if not user.is_admin:
            logger.info(f"User {user.telegram_id} was refused admin mode")
            await self._send(chat_id, "⛔ You do not have administrator rights.")
            return
        await self._send(chat_id, "✅ You are in administrator mode.")
        await self._admin_panel(chat_id, user)

    async def _reset(self, chat_id: int, message: Message) -> None:
        self.store.clear(chat_id)
        logger.info(f"Chat {chat_id} reset its session")
        try:
            await self.client.delete_message(chat_id, message.message_id)
        except TelegramError as e:
            logger.info(f"Could not delete /reset message in chat {chat_id}: {e}")
        await self._send(chat_id, "✅ Session reset. Please start again with /start.")

    async def _slots_overview(self, chat_id: int, user: User) -> None:
        if not user.is_admin:
            await self._send(chat_id, "⛔ You do not have rights for this command.")
            return
        async with self.session_factory() as session:
            specialists = await list_specialists(session)
            for specialist in specialists:
                slots = await list_all_slots(session, specialist.id)
                lines = [f"Slots of {specialist.name} ({specialist.specialization}), {self.clock():%d-%m-%Y %H:%M}"]
                lines.extend(_slot_line(slot) for slot in slots)
                await self._send(chat_id, "\n".join(lines))
        if not specialists:
            await self._send(chat_id, "No specialists yet.")

    # ------------------------------------------------------------------
    # Callback buttons
    # ------------------------------------------------------------------

    async def _handle_callback(self, chat_id: int, query: CallbackQuery) -> None:
        data = query.data or ""
        logger.info(f"Callback from {query.from_user.id}: data={data}")
        try:
            await self.client.answer_callback_query(query.id)
        except TelegramError as e:
            logger.debug(f"answerCallbackQuery failed: {e}")

        user = await self._load_user(query.from_user)

        if data == "book":
            return await self._show_specialists(chat_id)
        if data.startswith("select_specialist_"):
            (specialist_id,) = _parse_ids(data, "select_specialist_", 1)
            return await self._show_services(chat_id, specialist_id)
        if data.startswith("select_service_"):
            specialist_id, service_id = _parse_ids(data, "select_service_", 2)
            return await self._show_bookable_slots(chat_id, specialist_id, service_id, page=0, navigating=False)
        if data.startswith("page_"):
            page, specialist_id, service_id = _parse_ids(data, "page_", 3)
            return await self._show_bookable_slots(chat_id, specialist_id, service_id, page=page, navigating=True)
        if data.startswith("select_slot_"):
            _, _, slot_id = _parse_ids(data, "select_slot_", 3)
            return await self._reserve(chat_id, user, slot_id)
        if data == "my_bookings_view":
            return await self._my_bookings(chat_id, user)
        if data.startswith("cancel_booking_"):
            (booking_id,) = _parse_ids(data, "cancel_booking_", 1)
            await self.engine.cancel(booking_id, user.id)
            return
        if data == "feedback":
            return await self._run_effects(chat_id, self.flows.start(chat_id, FeedbackForm(user_id=user.id)))
        if data == "my_slots":
            return await self._my_slots(chat_id, user, page=0, navigating=False)
        if data.startswith("my_slots_page_"):
            (page,) = _parse_ids(data, "my_slots_page_", 1)
            return await self._my_slots(chat_id, user, page=page, navigating=True)
        if data == "my_clients":
            return await self._my_clients(chat_id, user)
        if data.startswith("edit_slot_"):
            (slot_id,) = _parse_ids(data, "edit_slot_", 1)
            return await self._edit_slot(chat_id, user, slot_id)
        if data.startswith("delete_slot_"):
            (slot_id,) = _parse_ids(data, "delete_slot_", 1)
            return await self._delete_slot(chat_id, user, slot_id)

        if data.startswith(("admin_", "service_for_", "slot_for_", "edit_services_for_")):
            if not user.is_admin:
                logger.warning(f"Non-admin {user.telegram_id} pressed {data}")
                await self._send(chat_id, ACCESS_DENIED)
                return
            return await self._handle_admin_callback(chat_id, user, data)

        logger.warning(f"Unknown callback data from {user.telegram_id}: {data}")
        await self._send(chat_id, UNKNOWN_ACTION)

    async def _handle_admin_callback(self, chat_id: int, user: User, data: str) -> None:
        if data == "admin_panel":
            return await self._admin_panel(chat_id, user)
        if data == "admin_add_specialist":
            return await self._run_effects(chat_id, self.flows.start(chat_id, OnboardingForm()))
        if data == "admin_add_service":
            return await self._pick_specialist(chat_id, "Which specialist gets the new service?", "service_for_")
        if data.startswith("service_for_"):
            (specialist_id,) = _parse_ids(data, "service_for_", 1)
            return await self._run_effects(chat_id, self.flows.start(chat_id, ServiceForm(specialist_id=specialist_id)))
        if data == "admin_add_slot":
            return await self._pick_specialist(chat_id, "Which specialist gets the new slot?", "slot_for_")
        if data.startswith("slot_for_"):
            (specialist_id,) = _parse_ids(data, "slot_for_", 1)
            return await self._run_effects(chat_id, self.flows.start(chat_id, SlotForm(specialist_id=specialist_id)))
        if data == "admin_edit_services":
            return await self._pick_specialist(chat_id, "Whose services do you want to edit?", "edit_services_for_")
        if data.startswith("edit_services_for_"):
            (specialist_id,) = _parse_ids(data, "edit_services_for_", 1)
            return await self._start_rename_walk(chat_id, specialist_id)
        if data.startswith("admin_reply_"):
            (request_id,) = _parse_ids(data, "admin_reply_", 1)
            return await self._run_effects(chat_id, self.flows.start(chat_id, FeedbackReplyForm(request_id=request_id)))
        if data.startswith("admin_close_"):
            (request_id,) = _parse_ids(data, "admin_close_", 1)
            async with self.session_factory() as session:
                async with session.begin():
                    await close_feedback(session, request_id)
            logger.info(f"Admin {user.telegram_id} closed feedback #{request_id}")
            await self._send(chat_id, f"✅ Request #{request_id} closed.")
            return

        logger.warning(f"Unknown admin callback data from {user.telegram_id}: {data}")
        await self._send(chat_id, UNKNOWN_ACTION)

    # ------------------------------------------------------------------
    # Client screens
    # ------------------------------------------------------------------

    async def _show_specialists(self, chat_id: int) -> None:
        async with self.session_factory() as session:
            specialists = await list_specialists(session)
        if not specialists:
            await self._send(chat_id, "No specialists are available.")
            return
        rows = [[button(f"{s.name} — {s.specialization}", f"select_specialist_{s.id}")] for s in specialists]
        await self._send(chat_id, "Choose a specialist:", inline_keyboard(rows))

    async def _show_services(self, chat_id: int, specialist_id: int) -> None:
        async with self.session_factory() as session:
            services = await list_services(session, specialist_id)
        if not services:
            logger.info(f"No services for specialist #{specialist_id}")
            await self._send(chat_id, "This specialist has no services yet.")
            return
        rows = [[button(s.name, f"select_service_{specialist_id}_{s.id}")] for s in services]
        await self._send(chat_id, "Choose a service:", inline_keyboard(rows))

    async def _show_bookable_slots(
        self,
        chat_id: int,
        specialist_id: int,
        service_id: int,
        page: int,
        navigating: bool,
    ) -> None:
        async with self.session_factory() as session:
            slots = await list_future_slots(session, specialist_id, self.clock(), free_only=True)
        if not slots:
            await self._send(chat_id, "No free slots are available.", BACK_TO_MENU)
            return

        current = paginate(slots, page, BOOK_SLOTS_PAGE_SIZE)
        rows = [
            [button(format_date_time(slot.date, slot.time), f"select_slot_{specialist_id}_{service_id}_{slot.id}")]
            for slot in current.items
        ]
        rows.append(_nav_row(current, lambda p: f"page_{p}_{specialist_id}_{service_id}"))
        text = f"Choose a slot (page {current.page + 1} of {current.total_pages}):"
        cursor = PaginationCursor(
            view=VIEW_BOOK_SLOTS,
            specialist_id=specialist_id,
            service_id=service_id,
            page=current.page,
            message_id=None,
        )
        await self._render_page(chat_id, cursor, text, inline_keyboard(rows), navigating)

    async def _reserve(self, chat_id: int, user: User, slot_id: int) -> None:
        try:
            await self.engine.reserve(user.id, slot_id)
        except (SlotAlreadyBooked, SlotNotFound) as e:
            logger.info(f"User {user.telegram_id} could not book slot #{slot_id}: {e.code}")
            await self.alerts.alert("warning", f"Chat {chat_id}: booking of slot #{slot_id} refused: {e.code}")
            await self._send(chat_id, f"❌ {e.message}", BACK_TO_MENU)
            return
        await self._send(chat_id, "What would you like to do next?", BACK_TO_MENU)

    async def _my_bookings(self, chat_id: int, user: User) -> None:
        now = self.clock()
        shown = 0
        for booking in await self.engine.list_user_bookings(user.id):
            if slot_datetime(booking.slot_date, booking.slot_time) < now:
                await self.engine.expire(booking.booking_id)
                continue
            await self._send(
                chat_id,
                f"📅 Booking: {format_date_time(booking.slot_date, booking.slot_time)}\n"
                f"Specialist: {booking.specialization}",
                inline_keyboard([[button("❌ Cancel", f"cancel_booking_{booking.booking_id}")]]),
            )
            shown += 1
        if not shown:
            await self._send(chat_id, "You have no active bookings.")

    # ------------------------------------------------------------------
    # Specialist screens
    # ------------------------------------------------------------------

    async def _require_specialist_id(self, chat_id: int, user: User) -> Optional[int]:
        async with self.session_factory() as session:
            specialist = await get_specialist_for_user(session, user.id)
        if not specialist:
            await self._send(chat_id, "You are not registered as a specialist.")
            return None
        return specialist.id

    async def _my_slots(self, chat_id: int, user: User, page: int, navigating: bool) -> None:
        specialist_id = await self._require_specialist_id(chat_id, user)
        if specialist_id is None:
            return
        now = self.clock()
        async with self.session_factory() as session:
            slots = await list_future_slots(session, specialist_id, now)
        if not slots:
            await self._send(chat_id, "You have no upcoming slots.")
            return

        current = paginate(slots, page, MY_SLOTS_PAGE_SIZE)
        lines = [f"Your slots, {now:%d-%m-%Y %H:%M} (page {current.page + 1} of {current.total_pages})"]
        lines.extend(_slot_line(slot) for slot in current.items)
        rows = [
            [button("✏️ Edit", f"edit_slot_{slot.id}"), button("🗑 Delete", f"delete_slot_{slot.id}")]
            for slot in current.items
            if not slot.is_booked
        ]
        rows.append(_nav_row(current, lambda p: f"my_slots_page_{p}"))
        cursor = PaginationCursor(
            view=VIEW_MY_SLOTS,
            specialist_id=specialist_id,
            service_id=None,
            page=current.page,
            message_id=None,
        )
        await self._render_page(chat_id, cursor, "\n".join(lines), inline_keyboard(rows), navigating)
        logger.info(f"Specialist #{specialist_id} viewed slots page {current.page + 1}/{current.total_pages}")

    async def _my_clients(self, chat_id: int, user: User) -> None:
        specialist_id = await self._require_specialist_id(chat_id, user)
        if specialist_id is None:
            return
        bookings = await self.engine.list_specialist_bookings(specialist_id)
        if not bookings:
            await self._send(chat_id, "Nobody has booked you yet.")
            return
        await self._send(
            chat_id,
            "\n\n".join(f"👤 {b.client_name}\n📅 {format_date_time(b.slot_date, b.slot_time)}" for b in bookings),
        )

    async def _owned_slot(self, user: User, slot_id: int) -> Slot:
        async with self.session_factory() as session:
            slot = await get_slot(session, slot_id)
            if not slot:
                raise SlotNotFound(details={"slot_id": slot_id})
            if user.is_admin:
                return slot
            specialist = await get_specialist_for_user(session, user.id)
        if not specialist or specialist.id != slot.specialist_id:
            raise NotOwner("You can only change your own slots.", details={"slot_id": slot_id})
        return slot

    async def _edit_slot(self, chat_id: int, user: User, slot_id: int) -> None:
        slot = await self._owned_slot(user, slot_id)
        if slot.is_booked:
            await self._send(chat_id, "⚠️ This slot is booked and cannot be changed.")
            return
        await self._run_effects(chat_id, self.flows.start(chat_id, SlotEditForm(slot_id=slot_id)))

    async def _delete_slot(self, chat_id: int, user: User, slot_id: int) -> None:
        await self._owned_slot(user, slot_id)
        async with self.session_factory() as session:
            async with session.begin():
                deleted = await delete_slot(session, slot_id)
        if deleted:
            await self._send(chat_id, "✅ Slot deleted.")
        else:
            await self._send(chat_id, "⚠️ This slot is booked and cannot be deleted.")

    # ------------------------------------------------------------------
    # Admin screens
    # ------------------------------------------------------------------

    async def _admin_panel(self, chat_id: int, user: User) -> None:
        keyboard = inline_keyboard([
            [button("➕ Add specialist", "admin_add_specialist")],
            [button("➕ Add service", "admin_add_service")],
            [button("➕ Add slot", "admin_add_slot")],
            [button("✏️ Edit services", "admin_edit_services")],
        ])
        await self._send(chat_id, "⚙️ Admin panel", keyboard)

        async with self.session_factory() as session:
            requests = await list_active_feedback(session)
        for request in requests:
            await self._send(
                chat_id,
                f"#{request.id} - {request.message} [{request.status}]",
                inline_keyboard([
                    [button("Reply", f"admin_reply_{request.id}")],
                    [button("Close", f"admin_close_{request.id}")],
                ]),
            )
        logger.info(f"Admin {user.telegram_id} opened the panel ({len(requests)} open requests)")

    async def _pick_specialist(self, chat_id: int, prompt: str, prefix: str) -> None:
        async with self.session_factory() as session:
            specialists = await list_specialists(session)
        if not specialists:
            await self._send(chat_id, "No specialists yet. Add one first.")
            return
        rows = [[button(f"{s.name} — {s.specialization}", f"{prefix}{s.id}")] for s in specialists]
        await self._send(chat_id, prompt, inline_keyboard(rows))

    async def _start_rename_walk(self, chat_id: int, specialist_id: int) -> None:
        async with self.session_factory() as session:
            await get_specialist(session, specialist_id)
            services = await list_service_refs(session, specialist_id)
        if not services:
            await self._send(chat_id, "This specialist has no services.")
            return
        flow = ServiceRenameWalk(specialist_id=specialist_id, services=tuple(services))
        await self._run_effects(chat_id, self.flows.start(chat_id, flow))


def _slot_line(slot: Slot) -> str:
    status = "Booked" if slot.is_booked else "Free"
    return f"📅 {format_date_time(slot.date, slot.time)} - {status}"


def _nav_row(page, callback: Callable[[int], str]) -> List[Dict[str, str]]:
    row = []
    if page.has_previous:
        row.append(button("⬅️ Back", callback(page.page - 1)))
    if page.has_next:
        row.append(button("➡️ Next", callback(page.page + 1)))
    return row
