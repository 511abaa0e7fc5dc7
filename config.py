import os
from dotenv import load_dotenv

load_dotenv()

BASE_DIR = os.path.dirname(os.path.abspath(__file__))

TELEGRAM_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN") or os.getenv("TELEGRAM_TOKEN")
ENCRYPTION_KEY = os.getenv("ENCRYPTION_KEY")  # Fernet key, urlsafe base64 of 32 bytes
ADMIN_USER_IDS = {int(x) for x in os.getenv("ADMIN_USER_IDS", "").split(",") if x.strip().isdigit()}

DATABASE_FILE = os.getenv("DATABASE_FILE", "bot_users.db")
LANGUAGE_FILE = os.path.join(BASE_DIR, "languages.yaml")
TELEGRAM_MSG_LIMIT = 4096

# Gemini
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-1.5-flash-002")
GENERATION_CONFIG = {
    "temperature": 1,
    "top_p": 0.95,
    "top_k": 40,
    "max_output_tokens": 8192,
    "response_mime_type": "text/plain",
}
VALIDATION_PROMPT = "Test prompt for validation purposes."

# Limits and timings (seconds)
RATE_LIMIT_MAX_REQUESTS = 5
RATE_LIMIT_WINDOW = 60
KEY_VALIDATION_TTL = 600
DELIVERY_MAX_RETRIES = 3
VIDEO_POLL_INTERVAL = 10
RECONNECT_DELAY = 10
FETCH_TIMEOUT = 60.0
HISTORY_MAX_TURNS = 40

# Commands
STATS_COMMAND = os.getenv("STATS_COMMAND", "stats")
HELP_CHANNEL_ID = os.getenv("HELP_CHANNEL_ID")
HELP_MESSAGE_ID = int(os.getenv("HELP_MESSAGE_ID", "0")) or None

# Supported Languages
DEFAULT_LANGUAGE = os.getenv("DEFAULT_LANGUAGE", "fa")
SUPPORTED_LANGUAGES = {
    'fa': 'فارسی',
    'en': 'English',
}
