"""
Telegram Bot API transport.

Inbound: pydantic models for the subset of webhook updates the bot handles
(text messages and inline-button callbacks).

Outbound: TelegramClient wraps the Bot API methods the bot uses over httpx.
Its send() method is the NotificationGateway used for notifications to
third parties and never raises.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Webhook update models
# ---------------------------------------------------------------------------


class TelegramUser(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    first_name: Optional[str] = None
    username: Optional[str] = None


class Chat(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int


class Message(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    message_id: int
    chat: Chat
    from_user: Optional[TelegramUser] = Field(default=None, alias="from")
    text: Optional[str] = None


class CallbackQuery(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    from_user: TelegramUser = Field(alias="from")
    message: Optional[Message] = None
    data: Optional[str] = None


class Update(BaseModel):
    model_config = ConfigDict(extra="ignore")

    update_id: int
    message: Optional[Message] = None
    callback_query: Optional[CallbackQuery] = None


# ---------------------------------------------------------------------------
# Keyboards
# ---------------------------------------------------------------------------


def button(text: str, callback_data: str) -> Dict[str, str]:
    return {"text": text, "callback_data": callback_data}


def inline_keyboard(rows: List[List[Dict[str, str]]]) -> Dict[str, Any]:
    """Build reply_markup, dropping empty rows."""
    return {"inline_keyboard": [row for row in rows if row]}


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class TelegramError(Exception):
    """Raised when a Bot API call fails or returns ok=false."""

    def __init__(self, method: str, description: str):
        self.method = method
        self.description = description
        super().__init__(f"{method}: {description}")


class TelegramClient:
    def __init__(
        self,
        token: str,
        api_base: str = "https://api.telegram.org",
        http: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.token = token
        self.api_base = api_base.rstrip("/")
        self._http = http or httpx.AsyncClient(timeout=timeout)
        self._owns_http = http is None

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def _call(self, method: str, payload: Dict[str, Any]) -> Any:
        url = f"{self.api_base}/bot{self.token}/{method}"
        try:
            response = await self._http.post(url, json=payload)
            data = response.json()
        except httpx.RequestError as e:
            raise TelegramError(method, f"request failed: {e}")
        except ValueError:
            raise TelegramError(method, f"non-JSON response (HTTP {response.status_code})")

        if not data.get("ok"):
            raise TelegramError(method, data.get("description") or f"HTTP {response.status_code}")
        return data.get("result")

    async def send_message(
        self,
        chat_id: int,
        text: str,
        reply_markup: Optional[Dict[str, Any]] = None,
    ) -> Optional[int]:
        """Send a message and return its message_id."""
        payload: Dict[str, Any] = {"chat_id": chat_id, "text": text}
        if reply_markup:
            payload["reply_markup"] = reply_markup
        result = await self._call("sendMessage", payload)
        return result.get("message_id") if isinstance(result, dict) else None

    async def edit_message_text(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        reply_markup: Optional[Dict[str, Any]] = None,
    ) -> None:
        payload: Dict[str, Any] = {"chat_id": chat_id, "message_id": message_id, "text": text}
        if reply_markup:
            payload["reply_markup"] = reply_markup
        await self._call("editMessageText", payload)

    async def delete_message(self, chat_id: int, message_id: int) -> None:
        await self._call("deleteMessage", {"chat_id": chat_id, "message_id": message_id})

    async def answer_callback_query(self, callback_query_id: str, text: Optional[str] = None) -> None:
        payload: Dict[str, Any] = {"callback_query_id": callback_query_id}
        if text:
            payload["text"] = text
        await self._call("answerCallbackQuery", payload)

    async def send(self, telegram_id: int, text: str) -> bool:
        """Best-effort delivery; failures are logged and reported as False."""
        try:
            await self.send_message(telegram_id, text)
            return True
        except Exception as e:
            logger.error(f"Failed to deliver message to {telegram_id}: {e}")
            return False
