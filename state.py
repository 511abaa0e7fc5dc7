import hashlib
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from config import (
    RATE_LIMIT_MAX_REQUESTS, RATE_LIMIT_WINDOW, KEY_VALIDATION_TTL, HISTORY_MAX_TURNS
)


class MediaKind(str, Enum):
    IMAGE = "image"
    AUDIO = "audio"
    PDF = "pdf"
    VIDEO = "video"


class Mode(Enum):
    IDLE = "idle"
    AWAITING_CREDENTIAL = "awaiting_credential"
    ACTIVE_CHAT = "active_chat"
    AWAITING_IMAGE = "awaiting_image"
    AWAITING_AUDIO = "awaiting_audio"
    AWAITING_PDF = "awaiting_pdf"
    AWAITING_VIDEO = "awaiting_video"
    AWAITING_DESCRIPTION = "awaiting_description"


AWAITING_MODE = {
    MediaKind.IMAGE: Mode.AWAITING_IMAGE,
    MediaKind.AUDIO: Mode.AWAITING_AUDIO,
    MediaKind.PDF: Mode.AWAITING_PDF,
    MediaKind.VIDEO: Mode.AWAITING_VIDEO,
}


@dataclass(frozen=True)
class PendingMedia:
    kind: MediaKind
    file_url: str


@dataclass(frozen=True)
class Conversation:
    mode: Mode = Mode.IDLE
    pending: Optional[PendingMedia] = None

    def is_awaiting(self, kind: MediaKind) -> bool:
        return self.mode is AWAITING_MODE[kind]


IDLE = Conversation()


class ConversationStore:
    """One Conversation per chat. Writing a chat's entry replaces whatever mode it was in."""

    def __init__(self):
        self._chats: dict[int, Conversation] = {}

    def get(self, chat_id: int) -> Conversation:
        return self._chats.get(chat_id, IDLE)

    def mode(self, chat_id: int) -> Mode:
        return self.get(chat_id).mode

    def enter(self, chat_id: int, mode: Mode):
        if mode is Mode.AWAITING_DESCRIPTION:
            raise ValueError("use await_description() to attach the pending file")
        if mode is Mode.IDLE:
            self.reset(chat_id)
        else:
            self._chats[chat_id] = Conversation(mode)

    def await_description(self, chat_id: int, pending: PendingMedia):
        self._chats[chat_id] = Conversation(Mode.AWAITING_DESCRIPTION, pending)

    def reset(self, chat_id: int):
        self._chats.pop(chat_id, None)

    def __len__(self):
        return len(self._chats)


class ChatHistoryStore:
    """Gemini-style turns per chat, trimmed oldest-first in user/model pairs."""

    def __init__(self, max_turns: int = HISTORY_MAX_TURNS):
        self.max_turns = max_turns
        self._history: dict[int, list[dict]] = {}

    def turns(self, chat_id: int) -> list[dict]:
        return list(self._history.get(chat_id, []))

    def append(self, chat_id: int, role: str, text: str):
        history = self._history.setdefault(chat_id, [])
        history.append({"role": role, "parts": [text]})
        while self.max_turns and len(history) > self.max_turns:
            del history[:2]

    def clear(self, chat_id: int):
        self._history.pop(chat_id, None)


@dataclass
class RateState:
    count: int
    window_start: float


class RateLimiter:
    def __init__(self, max_requests: int = RATE_LIMIT_MAX_REQUESTS, window: float = RATE_LIMIT_WINDOW,
                 clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window = window
        self._clock = clock
        self._users: dict[int, RateState] = {}

    def is_limited(self, user_id: int) -> bool:
        now = self._clock()
        state = self._users.get(user_id)
        if state is None or now - state.window_start > self.window:
            self._prune(now)
            self._users[user_id] = RateState(count=1, window_start=now)
            return False
        state.count += 1
        return state.count > self.max_requests

    def count(self, user_id: int) -> int:
        state = self._users.get(user_id)
        return state.count if state else 0

    def _prune(self, now: float):
        expired = [uid for uid, s in self._users.items() if now - s.window_start > self.window]
        for uid in expired:
            del self._users[uid]

    def __len__(self):
        return len(self._users)


class ValidationCache:
    """Remembers key validation outcomes for `ttl` seconds. Keys are held only as digests."""

    def __init__(self, ttl: float = KEY_VALIDATION_TTL, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, tuple[bool, float]] = {}

    @staticmethod
    def _digest(api_key: str) -> str:
        return hashlib.sha256(api_key.encode('utf-8')).hexdigest()

    def get(self, api_key: str) -> Optional[bool]:
        digest = self._digest(api_key)
        entry = self._entries.get(digest)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[digest]
            return None
        return value

    def set(self, api_key: str, valid: bool):
        now = self._clock()
        self._entries = {d: e for d, e in self._entries.items() if now < e[1]}
        self._entries[self._digest(api_key)] = (valid, now + self.ttl)

    def __len__(self):
        return len(self._entries)


@dataclass
class BotState:
    store: Any
    backend: Any
    conversations: ConversationStore = field(default_factory=ConversationStore)
    histories: ChatHistoryStore = field(default_factory=ChatHistoryStore)
    limiter: RateLimiter = field(default_factory=RateLimiter)
    key_cache: ValidationCache = field(default_factory=ValidationCache)
