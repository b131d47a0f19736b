"""
Conversation flow engine.

Multi-step forms (admin data entry, client feedback) are explicit state
machines. Each chat holds at most one flow in the SessionStore; every inbound
text message for that chat is fed to advance(), which runs the current step
inside one database transaction and returns the next state plus the effects
the dispatcher should carry out.

Steps write to the database only once their input is complete, so a dropped
or abandoned flow never leaves a half-entered record behind.

ERROR POLICY:
    - ValidationError: reply with the error, re-prompt, stay on the same step
    - ConflictError: same as above, and admins are alerted (FeedbackClosed
      is the exception, it aborts)
    - NotFoundError / OwnershipError: reply, abort the flow, alert admins
    - PersistenceError (any database failure): apology with a /reset hint,
      flow cleared, admins alerted
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .catalog import add_service, create_specialist, get_specialist, rename_service, validate_service_name
from .core.errors import (
    AlreadyRegistered,
    BotError,
    InvalidIdentity,
    PersistenceError,
    SlotNotFound,
    ValidationError,
)
from .feedback import respond_to_feedback, submit_feedback
from .notifications import AlertSink
from .sessions import SessionStore
from .slots import create_slot, get_slot, update_slot
from .timeutils import ENTRY_FORMAT_HINT, format_date_time, local_now, parse_entry
from .users import get_specialist_for_user, get_user_by_telegram_id

logger = logging.getLogger(__name__)


class Step(str, Enum):
    AWAITING_SPECIALIST_ID = "awaiting_specialist_id"
    AWAITING_NAME = "awaiting_name"
    AWAITING_SPECIALIZATION = "awaiting_specialization"
    AWAITING_DESCRIPTION = "awaiting_description"
    AWAITING_FIRST_SERVICE = "awaiting_first_service"
    AWAITING_FIRST_SLOT = "awaiting_first_slot"
    AWAITING_SERVICE_NAME = "awaiting_service_name"
    AWAITING_SLOT = "awaiting_slot"
    AWAITING_NEW_DATE_TIME = "awaiting_new_date_time"
    AWAITING_RENAME = "awaiting_rename"
    AWAITING_FEEDBACK_TEXT = "awaiting_feedback_text"
    AWAITING_REPLY_TEXT = "awaiting_reply_text"


# ---------------------------------------------------------------------------
# Flow states
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OnboardingForm:
    step: Step = Step.AWAITING_SPECIALIST_ID
    telegram_id: Optional[int] = None
    name: Optional[str] = None
    specialization: Optional[str] = None
    specialist_id: Optional[int] = None


@dataclass(frozen=True)
class ServiceForm:
    specialist_id: int
    step: Step = Step.AWAITING_SERVICE_NAME


@dataclass(frozen=True)
class SlotForm:
    specialist_id: int
    step: Step = Step.AWAITING_SLOT


@dataclass(frozen=True)
class SlotEditForm:
    slot_id: int
    step: Step = Step.AWAITING_NEW_DATE_TIME


@dataclass(frozen=True)
class ServiceRenameWalk:
    """Rename a specialist's services one after another."""

    specialist_id: int
    services: Tuple[Tuple[int, str], ...]
    index: int = 0
    step: Step = Step.AWAITING_RENAME


@dataclass(frozen=True)
class FeedbackForm:
    user_id: int
    step: Step = Step.AWAITING_FEEDBACK_TEXT


@dataclass(frozen=True)
class FeedbackReplyForm:
    request_id: int
    step: Step = Step.AWAITING_REPLY_TEXT


FlowState = Union[
    OnboardingForm,
    ServiceForm,
    SlotForm,
    SlotEditForm,
    ServiceRenameWalk,
    FeedbackForm,
    FeedbackReplyForm,
]


# ---------------------------------------------------------------------------
# Effects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Reply:
    """Message back to the chat that sent the input."""

    text: str


@dataclass(frozen=True)
class Notify:
    """Message to some other Telegram identity."""

    telegram_id: int
    text: str


Effect = Union[Reply, Notify]


@dataclass
class FlowResult:
    state: Optional[FlowState]
    effects: List[Effect] = field(default_factory=list)
    # False when the chat had no active flow and the input was not consumed
    handled: bool = True

    @property
    def done(self) -> bool:
        return self.state is None


SUPERSEDED_NOTICE = "ℹ️ The previous unfinished action was cancelled."

_PROMPTS = {
    Step.AWAITING_SPECIALIST_ID: "Enter the specialist's Telegram ID:",
    Step.AWAITING_NAME: "Enter the specialist's name:",
    Step.AWAITING_SPECIALIZATION: "Enter the specialization:",
    Step.AWAITING_DESCRIPTION: "Enter a short description of the specialist:",
    Step.AWAITING_FIRST_SERVICE: "Enter the name of the first service:",
    Step.AWAITING_FIRST_SLOT: f"Enter the first slot (format: {ENTRY_FORMAT_HINT}):",
    Step.AWAITING_SERVICE_NAME: "Enter the service name (letters, spaces and hyphens only):",
    Step.AWAITING_SLOT: f"Enter the slot date and time (format: {ENTRY_FORMAT_HINT}):",
    Step.AWAITING_NEW_DATE_TIME: f"Enter the new date and time (format: {ENTRY_FORMAT_HINT}):",
    Step.AWAITING_FEEDBACK_TEXT: "✉️ Enter your message for the administrator:",
    Step.AWAITING_REPLY_TEXT: "Enter your reply to the user:",
}


def prompt_for(flow: FlowState) -> str:
    if isinstance(flow, ServiceRenameWalk):
        _, current_name = flow.services[flow.index]
        return (
            f"Service {flow.index + 1} of {len(flow.services)}: \"{current_name}\".\n"
            "Enter the new name:"
        )
    return _PROMPTS[flow.step]


def _required(text: str, label: str) -> str:
    if not text:
        raise ValidationError(f"{label} cannot be empty.")
    return text


StepResult = Tuple[Optional[FlowState], List[Effect]]
StepHandler = Callable[[AsyncSession, FlowState, str], Awaitable[StepResult]]


class FlowEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: SessionStore,
        alerts: AlertSink,
        clock: Callable[[], datetime] = local_now,
    ):
        self.session_factory = session_factory
        self.store = store
        self.alerts = alerts
        self.clock = clock
        self._handlers: Dict[type, StepHandler] = {
            OnboardingForm: self._onboarding_step,
            ServiceForm: self._service_step,
            SlotForm: self._slot_step,
            SlotEditForm: self._slot_edit_step,
            ServiceRenameWalk: self._rename_step,
            FeedbackForm: self._feedback_step,
            FeedbackReplyForm: self._feedback_reply_step,
        }

    def active(self, chat_id: int) -> Optional[FlowState]:
        return self.store.get_flow(chat_id)

    def start(self, chat_id: int, flow: FlowState) -> List[Effect]:
        """Register a new flow for the chat, superseding any unfinished one."""
        effects: List[Effect] = []
        current = self.store.get_flow(chat_id)
        if current is not None:
            logger.info(
                f"Chat {chat_id}: {type(current).__name__} at {current.step.value} "
                f"superseded by {type(flow).__name__}"
            )
            effects.append(Reply(SUPERSEDED_NOTICE))
        self.store.set_flow(chat_id, flow)
        logger.info(f"Chat {chat_id}: started {type(flow).__name__}")
        effects.append(Reply(prompt_for(flow)))
        return effects

    async def advance(self, chat_id: int, text: Optional[str]) -> FlowResult:
        flow = self.store.get_flow(chat_id)
        if flow is None:
            return FlowResult(state=None, handled=False)

        handler = self._handlers[type(flow)]
        value = (text or "").strip()
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    next_state, effects = await handler(session, flow, value)
        except BotError as e:
            return await self._step_failed(chat_id, flow, e)
        except SQLAlchemyError as e:
            logger.exception(f"Chat {chat_id}: database failure in {type(flow).__name__} at {flow.step.value}")
            return await self._step_failed(chat_id, flow, PersistenceError(details={"error": str(e)}))

        if next_state is None:
            self.store.clear_flow(chat_id)
            logger.info(f"Chat {chat_id}: {type(flow).__name__} completed")
        else:
            self.store.set_flow(chat_id, next_state)
            effects.append(Reply(prompt_for(next_state)))
        return FlowResult(state=next_state, effects=effects)

    async def _step_failed(self, chat_id: int, flow: FlowState, error: BotError) -> FlowResult:
        outcome = "rejected input" if error.keeps_step else "aborted"
        if not isinstance(error, ValidationError) and not error.alerted:
            severity = "error" if isinstance(error, PersistenceError) else "warning"
            await self.alerts.alert(
                severity,
                f"{type(flow).__name__} in chat {chat_id} {outcome} at {flow.step.value}: {error.message}",
            )
            error.alerted = True

        if error.keeps_step:
            logger.info(f"Chat {chat_id}: {type(flow).__name__} at {flow.step.value} {outcome} ({error.code})")
            self.store.set_flow(chat_id, flow)
            return FlowResult(state=flow, effects=[Reply(f"❌ {error.message}"), Reply(prompt_for(flow))])

        self.store.clear_flow(chat_id)
        logger.warning(
            f"Chat {chat_id}: {type(flow).__name__} aborted at {flow.step.value}: {error.code} {error.details}"
        )
        return FlowResult(state=None, effects=[Reply(f"❌ {error.message}")])

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _onboarding_step(self, session: AsyncSession, flow: OnboardingForm, text: str) -> StepResult:
        if flow.step == Step.AWAITING_SPECIALIST_ID:
            if not text.isdigit():
                raise InvalidIdentity(details={"value": text})
            telegram_id = int(text)
            user = await get_user_by_telegram_id(session, telegram_id)
            if user and await get_specialist_for_user(session, user.id):
                raise AlreadyRegistered(details={"telegram_id": telegram_id})
            return replace(flow, telegram_id=telegram_id, step=Step.AWAITING_NAME), []

        if flow.step == Step.AWAITING_NAME:
            return replace(flow, name=_required(text, "Name"), step=Step.AWAITING_SPECIALIZATION), []

        if flow.step == Step.AWAITING_SPECIALIZATION:
            specialization = _required(text, "Specialization")
            return replace(flow, specialization=specialization, step=Step.AWAITING_DESCRIPTION), []

        if flow.step == Step.AWAITING_DESCRIPTION:
            specialist = await create_specialist(
                session,
                telegram_id=flow.telegram_id,
                name=flow.name,
                specialization=flow.specialization,
                description=_required(text, "Description"),
            )
            next_state = replace(flow, specialist_id=specialist.id, step=Step.AWAITING_FIRST_SERVICE)
            return next_state, [Reply(f"✅ Specialist {flow.name} added.")]

        if flow.step == Step.AWAITING_FIRST_SERVICE:
            service = await add_service(session, flow.specialist_id, text)
            return replace(flow, step=Step.AWAITING_FIRST_SLOT), [Reply(f"✅ Service \"{service.name}\" added.")]

        slot_date, slot_time = parse_entry(text)
        await create_slot(session, flow.specialist_id, slot_date, slot_time)
        return None, [
            Reply(f"✅ Slot {format_date_time(slot_date, slot_time)} added."),
            Reply(f"🎉 Onboarding of {flow.name} is complete."),
        ]

    async def _service_step(self, session: AsyncSession, flow: ServiceForm, text: str) -> StepResult:
        service = await add_service(session, flow.specialist_id, text)
        return None, [Reply(f"✅ Service \"{service.name}\" added.")]

    async def _slot_step(self, session: AsyncSession, flow: SlotForm, text: str) -> StepResult:
        slot_date, slot_time = parse_entry(text)
        await get_specialist(session, flow.specialist_id)
        await create_slot(session, flow.specialist_id, slot_date, slot_time)
        return None, [Reply(f"✅ Slot {format_date_time(slot_date, slot_time)} added.")]

    async def _slot_edit_step(self, session: AsyncSession, flow: SlotEditForm, text: str) -> StepResult:
        slot_date, slot_time = parse_entry(text)
        if await update_slot(session, flow.slot_id, slot_date, slot_time):
            return None, [Reply(f"✅ Slot moved to {format_date_time(slot_date, slot_time)}.")]
        if await get_slot(session, flow.slot_id) is None:
            raise SlotNotFound(details={"slot_id": flow.slot_id})
        return None, [Reply("⚠️ This slot has been booked and can no longer be changed.")]

    async def _rename_step(self, session: AsyncSession, flow: ServiceRenameWalk, text: str) -> StepResult:
        service_id, old_name = flow.services[flow.index]
        new_name = validate_service_name(text)
        if await rename_service(session, service_id, new_name) is None:
            effects: List[Effect] = [Reply(f"⚠️ Service \"{old_name}\" no longer exists, skipped.")]
        else:
            effects = [Reply(f"✅ \"{old_name}\" renamed to \"{new_name}\".")]

        if flow.index + 1 >= len(flow.services):
            effects.append(Reply("✅ All services updated."))
            return None, effects
        return replace(flow, index=flow.index + 1), effects

    async def _feedback_step(self, session: AsyncSession, flow: FeedbackForm, text: str) -> StepResult:
        message = _required(text, "Message")
        await submit_feedback(session, flow.user_id, message, self.clock())
        return None, [Reply("✅ Your message has been sent. An administrator will contact you.")]

    async def _feedback_reply_step(self, session: AsyncSession, flow: FeedbackReplyForm, text: str) -> StepResult:
        response = _required(text, "Reply")
        telegram_id = await respond_to_feedback(session, flow.request_id, response)
        effects: List[Effect] = []
        if telegram_id:
            effects.append(Notify(telegram_id, f"✉️ Administrator reply: {response}"))
        effects.append(Reply("✅ Reply sent."))
        return None, effects
