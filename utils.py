import logging
import os
import re
from enum import Enum
from urllib.parse import urlparse

import httpx
from telegram.constants import ParseMode
from telegram.error import BadRequest, TelegramError

from config import TELEGRAM_MSG_LIMIT, DELIVERY_MAX_RETRIES, FETCH_TIMEOUT

# --- Custom Logger ---
class CustomFormatter(logging.Formatter):
    def format(self, record):
        log_fmt = "%(asctime)s - %(message)s"
        formatter = logging.Formatter(log_fmt, datefmt='%Y-%m-%d %H:%M:%S')
        return formatter.format(record)

def setup_logger(name="bot"):
    # Silence libs
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("telegram").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)

    if not logger.handlers:
        ch = logging.StreamHandler()
        ch.setFormatter(CustomFormatter())
        logger.addHandler(ch)
    return logger

logger = setup_logger()

def log_activity(user_id, action):
    logger.info(f"{user_id} - {action}")

# --- Files ---

MIME_TYPES = {
    '.jpg': 'image/jpeg',
    '.jpeg': 'image/jpeg',
    '.png': 'image/png',
    '.gif': 'image/gif',
    '.webp': 'image/webp',
    '.heic': 'image/heic',
    '.heif': 'image/heif',
    '.wav': 'audio/wav',
    '.mp3': 'audio/mp3',
    '.aiff': 'audio/aiff',
    '.ogg': 'audio/ogg',
    '.oga': 'audio/ogg',
    '.flac': 'audio/flac',
    '.pdf': 'application/pdf',
    '.mp4': 'video/mp4',
    '.webm': 'video/webm',
    '.avi': 'video/avi',
    '.mov': 'video/quicktime',
}
DEFAULT_MIME_TYPE = 'application/octet-stream'

def get_mime_type(file_url: str) -> str:
    extension = os.path.splitext(urlparse(file_url).path)[1].lower()
    return MIME_TYPES.get(extension, DEFAULT_MIME_TYPE)

async def download_file(file_url: str, timeout: float = FETCH_TIMEOUT) -> bytes:
    async with httpx.AsyncClient(follow_redirects=True) as client:
        resp = await client.get(file_url, timeout=timeout)
        resp.raise_for_status()
        return resp.content

# --- Text Utils ---

MARKDOWN_V2_SPECIAL_CHARS = r'_*[]()~`>#+-=|{}.!'

def escape_markdown_v2(text: str) -> str:
    return re.sub(f'([{re.escape(MARKDOWN_V2_SPECIAL_CHARS)}])', r'\\\1', text)

def sanitize_markdown(text: str) -> str:
    """Escapes MarkdownV2 specials, then turns literal '\\n' markers back into newlines."""
    return escape_markdown_v2(text).replace('\\n', '\n')

def split_message(text: str, limit: int) -> list:
    if len(text) <= limit:
        return [text]
    return [text[i:i + limit] for i in range(0, len(text), limit)]

# --- Delivery ---

class DeliveryErrorKind(Enum):
    ENTITY_PARSE = "entity_parse"
    OTHER = "other"

class DeliveryError(Exception):
    def __init__(self, kind: DeliveryErrorKind, message: str = ""):
        super().__init__(message or kind.value)
        self.kind = kind

def classify_delivery_error(exc: Exception) -> DeliveryErrorKind:
    if isinstance(exc, BadRequest) and "can't parse entities" in exc.message.lower():
        return DeliveryErrorKind.ENTITY_PARSE
    return DeliveryErrorKind.OTHER

async def deliver_text(send, text: str, max_retries: int = DELIVERY_MAX_RETRIES):
    """
    Sends `text` through `send(text, parse_mode)`, degrading the format on failure:

    1. MarkdownV2 with the text as-is.
    2. Up to `max_retries` MarkdownV2 attempts with sanitized text. Entity parse
       errors retry; any other error is raised as DeliveryError right away.
    3. One plain-text attempt with the original text; its failure is raised.

    Every retry sanitizes the original text, never a previous attempt's output.
    """
    try:
        return await send(text, ParseMode.MARKDOWN_V2)
    except TelegramError as e:
        logger.warning(f"MarkdownV2 delivery failed, retrying with sanitized text: {e}")

    for attempt in range(1, max_retries + 1):
        try:
            return await send(sanitize_markdown(text), ParseMode.MARKDOWN_V2)
        except TelegramError as e:
            kind = classify_delivery_error(e)
            logger.warning(f"Delivery attempt {attempt}/{max_retries} failed ({kind.value}): {e}")
            if kind is not DeliveryErrorKind.ENTITY_PARSE:
                raise DeliveryError(kind, str(e)) from e

    logger.warning("Max retries reached. Falling back to plain text.")
    try:
        return await send(text, None)
    except TelegramError as e:
        logger.error(f"Failed to send even without formatting: {e}")
        raise DeliveryError(classify_delivery_error(e), str(e)) from e

async def send_response(bot, chat_id: int, text: str):
    """Delivers a generated reply, split so that each escaped chunk still fits one message."""
    async def send(chunk, parse_mode):
        return await bot.send_message(chat_id=chat_id, text=chunk, parse_mode=parse_mode)

    # Escaping can at most double a chunk's length.
    sent_msg = None
    for chunk in split_message(text, TELEGRAM_MSG_LIMIT // 2):
        sent_msg = await deliver_text(send, chunk)
    return sent_msg
