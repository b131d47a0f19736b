"""Tests for the Telegram Bot API client and update models."""
import json

import httpx
import pytest

from slotbot.telegram import TelegramClient, TelegramError, Update, button, inline_keyboard


def _client(handler):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TelegramClient("123:ABC", api_base="https://telegram.test", http=http), http


@pytest.mark.asyncio
async def test_send_message_posts_json_and_returns_message_id():
    calls = []

    def handler(request):
        calls.append((request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={"ok": True, "result": {"message_id": 77}})

    client, http = _client(handler)
    markup = inline_keyboard([[button("Book", "book")], []])

    message_id = await client.send_message(42, "Hello", markup)

    assert message_id == 77
    assert calls == [
        (
            "/bot123:ABC/sendMessage",
            {
                "chat_id": 42,
                "text": "Hello",
                "reply_markup": {"inline_keyboard": [[{"text": "Book", "callback_data": "book"}]]},
            },
        )
    ]
    await http.aclose()


@pytest.mark.asyncio
async def test_api_error_raises_but_send_does_not():
    def handler(request):
        return httpx.Response(403, json={"ok": False, "description": "Forbidden: bot was blocked by the user"})

    client, http = _client(handler)

    with pytest.raises(TelegramError) as exc_info:
        await client.edit_message_text(42, 1, "text")
    assert "blocked" in str(exc_info.value)

    assert await client.send(42, "Hello") is False
    await http.aclose()


@pytest.mark.asyncio
async def test_network_error_is_wrapped():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client, http = _client(handler)

    with pytest.raises(TelegramError):
        await client.answer_callback_query("abc")
    await http.aclose()


def test_update_parses_message_and_callback():
    update = Update.model_validate(
        {
            "update_id": 1,
            "message": {
                "message_id": 10,
                "date": 1741176000,
                "chat": {"id": 42, "type": "private"},
                "from": {"id": 42, "is_bot": False, "first_name": "Bob"},
                "text": "/start",
            },
        }
    )
    assert update.message.from_user.first_name == "Bob"
    assert update.callback_query is None

    update = Update.model_validate(
        {
            "update_id": 2,
            "callback_query": {
                "id": "cb1",
                "from": {"id": 42, "first_name": "Bob"},
                "message": {"message_id": 11, "chat": {"id": 42}},
                "data": "select_specialist_3",
            },
        }
    )
    assert update.callback_query.data == "select_specialist_3"
    assert update.callback_query.message.chat.id == 42
