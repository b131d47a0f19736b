"""
In-memory per-chat session store.

Holds the in-progress conversation flow and the pagination cursor for each
chat. Nothing here is persisted: a restart drops every unfinished form, and
since flows only write to the database at the end of a step, no partial
records are left behind.

Sessions expire after SESSION_TIMEOUT of inactivity and are swept on access.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional
import logging

logger = logging.getLogger(__name__)


@dataclass
class PaginationCursor:
    view: str  # 'my_slots' or 'book_slots'
    specialist_id: int
    service_id: Optional[int]
    page: int
    message_id: Optional[int]


@dataclass
class ChatSession:
    flow: Optional[Any] = None
    cursor: Optional[PaginationCursor] = None
    expires_at: datetime = datetime.max


class SessionStore:
    def __init__(self, timeout: timedelta = timedelta(minutes=15), clock: Callable[[], datetime] = datetime.now):
        self.timeout = timeout
        self.clock = clock
        self._sessions: Dict[int, ChatSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def _cleanup_expired_sessions(self) -> None:
        """Remove expired sessions."""
        now = self.clock()
        expired = [chat_id for chat_id, session in self._sessions.items() if session.expires_at < now]
        for chat_id in expired:
            del self._sessions[chat_id]
            logger.debug(f"Cleaned up expired session for chat {chat_id}")

    def _touch(self, chat_id: int) -> ChatSession:
        self._cleanup_expired_sessions()
        session = self._sessions.setdefault(chat_id, ChatSession())
        session.expires_at = self.clock() + self.timeout
        return session

    def get(self, chat_id: int) -> Optional[ChatSession]:
        self._cleanup_expired_sessions()
        return self._sessions.get(chat_id)

    def get_flow(self, chat_id: int) -> Optional[Any]:
        session = self.get(chat_id)
        return session.flow if session else None

    def set_flow(self, chat_id: int, flow: Any) -> None:
        self._touch(chat_id).flow = flow
        logger.debug(f"Flow set for chat {chat_id}: {type(flow).__name__}")

    def clear_flow(self, chat_id: int) -> None:
        session = self._sessions.get(chat_id)
        if session:
            session.flow = None
            self._drop_if_empty(chat_id)

    def get_cursor(self, chat_id: int) -> Optional[PaginationCursor]:
        session = self.get(chat_id)
        return session.cursor if session else None

    def set_cursor(self, chat_id: int, cursor: PaginationCursor) -> None:
        self._touch(chat_id).cursor = cursor

    def clear(self, chat_id: int) -> None:
        """Drop everything stored for a chat."""
        if chat_id in self._sessions:
            del self._sessions[chat_id]
            logger.debug(f"Session cleared for chat {chat_id}")

    def _drop_if_empty(self, chat_id: int) -> None:
        session = self._sessions.get(chat_id)
        if session and session.flow is None and session.cursor is None:
            del self._sessions[chat_id]
