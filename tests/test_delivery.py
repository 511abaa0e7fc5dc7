from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from telegram.constants import ParseMode
from telegram.error import BadRequest

from utils import (
    DeliveryError, DeliveryErrorKind, classify_delivery_error, deliver_text, escape_markdown_v2,
    get_mime_type, sanitize_markdown, send_response, split_message
)


def parse_error():
    return BadRequest("Can't parse entities: character '.' is reserved and must be escaped")


def test_escape_markdown_v2():
    assert escape_markdown_v2("a_b*c [x](y) 1.5!") == "a\\_b\\*c \\[x\\]\\(y\\) 1\\.5\\!"


def test_sanitize_restores_newline_markers():
    assert sanitize_markdown("line\\nnext.") == "line\nnext\\."


def test_classify_delivery_error():
    assert classify_delivery_error(parse_error()) is DeliveryErrorKind.ENTITY_PARSE
    assert classify_delivery_error(BadRequest("Chat not found")) is DeliveryErrorKind.OTHER


def test_split_message():
    assert split_message("short", 10) == ["short"]
    assert split_message("a" * 25, 10) == ["a" * 10, "a" * 10, "a" * 5]


@pytest.mark.asyncio
async def test_first_attempt_success_sends_once():
    send = AsyncMock(return_value="sent")
    assert await deliver_text(send, "*bold*") == "sent"
    send.assert_awaited_once_with("*bold*", ParseMode.MARKDOWN_V2)


@pytest.mark.asyncio
async def test_one_parse_failure_then_success():
    send = AsyncMock(side_effect=[parse_error(), "sent"])
    assert await deliver_text(send, "Hello.") == "sent"

    calls = [c.args for c in send.call_args_list]
    assert calls == [("Hello.", ParseMode.MARKDOWN_V2), ("Hello\\.", ParseMode.MARKDOWN_V2)]


@pytest.mark.asyncio
async def test_all_parse_failures_fall_back_to_plain_text():
    send = AsyncMock(side_effect=[parse_error() for _ in range(4)] + ["sent"])
    assert await deliver_text(send, "Hello.", max_retries=3) == "sent"

    calls = [c.args for c in send.call_args_list]
    assert len(calls) == 5
    # Each retry escapes the original text, never a previous attempt's output.
    assert calls[1:4] == [("Hello\\.", ParseMode.MARKDOWN_V2)] * 3
    assert calls[4] == ("Hello.", None)


@pytest.mark.asyncio
async def test_plain_text_failure_propagates():
    send = AsyncMock(side_effect=[parse_error() for _ in range(5)])
    with pytest.raises(DeliveryError):
        await deliver_text(send, "Hello.", max_retries=3)
    assert send.await_count == 5


@pytest.mark.asyncio
async def test_other_error_during_retry_propagates_immediately():
    send = AsyncMock(side_effect=[parse_error(), BadRequest("Chat not found")])
    with pytest.raises(DeliveryError) as exc_info:
        await deliver_text(send, "Hello.")
    assert exc_info.value.kind is DeliveryErrorKind.OTHER
    assert send.await_count == 2


@pytest.mark.asyncio
async def test_send_response_splits_long_replies():
    bot = SimpleNamespace(send_message=AsyncMock())
    await send_response(bot, 5, "x" * 5000)

    texts = [c.kwargs["text"] for c in bot.send_message.call_args_list]
    assert len(texts) == 3
    assert "".join(texts) == "x" * 5000
    assert all(c.kwargs["chat_id"] == 5 for c in bot.send_message.call_args_list)


def test_get_mime_type():
    assert get_mime_type("https://api.telegram.org/file/bot1/photos/file_1.JPG") == "image/jpeg"
    assert get_mime_type("https://example.com/doc.pdf?download=1") == "application/pdf"
    assert get_mime_type("https://example.com/voice/file_3.oga") == "audio/ogg"
    assert get_mime_type("https://example.com/archive.zip") == "application/octet-stream"
    assert get_mime_type("https://example.com/noext") == "application/octet-stream"
