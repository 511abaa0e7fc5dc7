from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from cryptography.fernet import Fernet

from database import CredentialStore
from localization import load_languages
from state import BotState


@pytest.fixture(scope="session", autouse=True)
def languages():
    load_languages()


@pytest.fixture
def store(tmp_path):
    s = CredentialStore(str(tmp_path / "users.db"), Fernet.generate_key())
    yield s
    s.close()


class FakeBackend:
    """Records every call; raises `error` when set."""

    def __init__(self):
        self.valid_keys = {"good-key"}
        self.reply = "answer"
        self.error = None
        self.validate_calls = []
        self.generate_calls = []
        self.analyze_calls = []
        self.system_instructions = []

    async def validate_api_key(self, api_key):
        self.validate_calls.append(api_key)
        return api_key in self.valid_keys

    async def generate_text(self, api_key, history, text, system_instruction=None):
        self.generate_calls.append((api_key, history, text))
        self.system_instructions.append(system_instruction)
        if self.error:
            raise self.error
        return self.reply

    async def analyze_media(self, api_key, kind, file_url, prompt, user_id=None):
        self.analyze_calls.append((api_key, kind, file_url, prompt))
        if self.error:
            raise self.error
        return self.reply


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def state(store, backend):
    return BotState(store=store, backend=backend)


@pytest.fixture
def context(state):
    return SimpleNamespace(bot=AsyncMock(), bot_data={"state": state})


@pytest.fixture
def make_update():
    def _make(text=None, user_id=42, chat_id=42, language_code="en", **media):
        fields = dict(text=text, photo=[], audio=None, voice=None, document=None, video=None)
        fields.update(media)
        message = SimpleNamespace(reply_text=AsyncMock(), **fields)
        return SimpleNamespace(
            message=message,
            effective_user=SimpleNamespace(id=user_id, language_code=language_code),
            effective_chat=SimpleNamespace(id=chat_id),
        )
    return _make


@pytest.fixture
def replies():
    def _replies(update):
        return [c.args[0] for c in update.message.reply_text.call_args_list]
    return _replies
