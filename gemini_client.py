import asyncio
import logging
import os
import tempfile
from enum import Enum

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
from google.generativeai.client import get_default_file_client
from google.generativeai.types import (
    BlockedPromptException, HarmBlockThreshold, HarmCategory, StopCandidateException
)

from config import GEMINI_MODEL, GENERATION_CONFIG, VALIDATION_PROMPT, VIDEO_POLL_INTERVAL
from state import MediaKind
from utils import download_file, get_mime_type, log_activity

logger = logging.getLogger("bot")

SAFETY_SETTINGS = {
    HarmCategory.HARM_CATEGORY_HARASSMENT: HarmBlockThreshold.BLOCK_NONE,
    HarmCategory.HARM_CATEGORY_HATE_SPEECH: HarmBlockThreshold.BLOCK_NONE,
    HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT: HarmBlockThreshold.BLOCK_NONE,
    HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT: HarmBlockThreshold.BLOCK_NONE,
}


class BackendErrorKind(Enum):
    TRANSIENT = "transient"
    SAFETY = "safety"
    RATE_LIMIT = "rate_limit"
    OTHER = "other"


class BackendError(Exception):
    def __init__(self, kind: BackendErrorKind, message: str = ""):
        super().__init__(message or kind.value)
        self.kind = kind


def classify_backend_error(exc: Exception) -> BackendErrorKind:
    if isinstance(exc, BackendError):
        return exc.kind
    if isinstance(exc, (google_exceptions.ResourceExhausted, google_exceptions.TooManyRequests)):
        return BackendErrorKind.RATE_LIMIT
    if isinstance(exc, (google_exceptions.ServerError, google_exceptions.DeadlineExceeded)):
        return BackendErrorKind.TRANSIENT
    if isinstance(exc, (BlockedPromptException, StopCandidateException)):
        return BackendErrorKind.SAFETY
    return BackendErrorKind.OTHER


def response_text(response) -> str:
    try:
        return response.text
    except ValueError as e:
        # No valid part in the candidate: the prompt or the answer was blocked.
        raise BackendError(BackendErrorKind.SAFETY, str(e)) from e


class GeminiClient:
    """
    Thin wrapper over google-generativeai with one API key per call.

    The SDK keeps its key in process-wide configuration, so `_model()` reconfigures
    right before each call. The SDK resolves its client synchronously at the start
    of the call, so there must be no await between `_model()` and the call itself.
    """

    def __init__(self, model_name: str = GEMINI_MODEL, fetch=download_file,
                 poll_interval: float = VIDEO_POLL_INTERVAL):
        self.model_name = model_name
        self.fetch = fetch
        self.poll_interval = poll_interval

    def _model(self, api_key: str, system_instruction: str = None):
        genai.configure(api_key=api_key)
        return genai.GenerativeModel(
            self.model_name,
            system_instruction=system_instruction,
            generation_config=GENERATION_CONFIG,
            safety_settings=SAFETY_SETTINGS,
        )

    async def validate_api_key(self, api_key: str) -> bool:
        if not api_key:
            return False
        try:
            response = await self._model(api_key).generate_content_async(VALIDATION_PROMPT)
            response_text(response)
            return True
        except Exception as e:
            logger.warning(f"Gemini API key validation failed: {type(e).__name__}")
            return False

    async def generate_text(self, api_key: str, history: list, user_input: str,
                            system_instruction: str = None) -> str:
        try:
            chat = self._model(api_key, system_instruction).start_chat(history=history)
            response = await chat.send_message_async(user_input)
            return response_text(response)
        except BackendError:
            raise
        except Exception as e:
            raise BackendError(classify_backend_error(e), str(e)) from e

    async def analyze_media(self, api_key: str, kind: MediaKind, file_url: str, prompt: str, user_id=None) -> str:
        temp_path = None
        try:
            data = await self.fetch(file_url)
            mime_type = get_mime_type(file_url)
            log_activity(user_id, f"Analyzing {kind.value} with MIME type: {mime_type}")

            with tempfile.NamedTemporaryFile(prefix=f"temp_{kind.value}_", delete=False) as f:
                f.write(data)
                temp_path = f.name

            genai.configure(api_key=api_key)
            file_client = get_default_file_client()
            uploaded = await asyncio.to_thread(
                file_client.create_file, temp_path, mime_type=mime_type, display_name=f"temp_{kind.value}"
            )
            if kind is MediaKind.VIDEO:
                uploaded = await self.wait_for_file_active(file_client, uploaded)

            model = self._model(api_key)
            response = await model.generate_content_async([
                {"file_data": {"mime_type": uploaded.mime_type, "file_uri": uploaded.uri}},
                prompt,
            ])
            return response_text(response)
        except BackendError:
            raise
        except Exception as e:
            raise BackendError(classify_backend_error(e), str(e)) from e
        finally:
            if temp_path and os.path.exists(temp_path):
                os.remove(temp_path)

    async def wait_for_file_active(self, file_client, uploaded):
        """Polls the File API until the upload leaves PROCESSING."""
        logger.info(f"Waiting for {uploaded.name} to be processed...")
        current = uploaded
        while current.state.name == "PROCESSING":
            await asyncio.sleep(self.poll_interval)
            current = await asyncio.to_thread(file_client.get_file, name=uploaded.name)
        if current.state.name != "ACTIVE":
            raise BackendError(BackendErrorKind.OTHER, f"File {current.name} failed to process")
        logger.info(f"{current.name} is ready")
        return current
