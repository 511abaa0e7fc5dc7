import hashlib
import logging
import sqlite3
import threading
from datetime import datetime, timezone

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger("bot")


def hash_user_id(user_id) -> str:
    return hashlib.sha256(str(user_id).encode('utf-8')).hexdigest()


class CredentialStore:
    """
    Per-user Gemini API keys plus the /start usage log.

    Rows are keyed by the SHA-256 of the Telegram user id, and keys are
    Fernet-encrypted before they touch the disk.
    """

    def __init__(self, path: str, encryption_key):
        if not encryption_key:
            raise ValueError("ENCRYPTION_KEY is not set")
        self._fernet = Fernet(encryption_key)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if path != ":memory:":
            self._conn.execute("PRAGMA journal_mode = WAL")
        self._create_tables()

    def _create_tables(self):
        with self._lock, self._conn:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT UNIQUE,
                    api_key TEXT
                )
            """)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS start_command_usage (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT,
                    timestamp TEXT
                )
            """)

    def close(self):
        self._conn.close()

    # --- Encryption ---

    def encrypt(self, text: str) -> str:
        return self._fernet.encrypt(text.encode('utf-8')).decode('ascii')

    def decrypt(self, token: str) -> str:
        return self._fernet.decrypt(token.encode('ascii')).decode('utf-8')

    # --- Credentials ---

    def has_api_key(self, user_id) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM users WHERE user_id = ?", (hash_user_id(user_id),)
            ).fetchone()
        return row is not None

    def get_api_key(self, user_id):
        """Returns the decrypted key, or None when the user has none (or it can't be decrypted)."""
        with self._lock:
            row = self._conn.execute(
                "SELECT api_key FROM users WHERE user_id = ?", (hash_user_id(user_id),)
            ).fetchone()
        if row is None:
            return None
        try:
            return self.decrypt(row['api_key'])
        except InvalidToken:
            logger.error(f"Stored key for user {user_id} could not be decrypted (ENCRYPTION_KEY changed?)")
            return None

    def set_api_key(self, user_id, api_key: str):
        encrypted = self.encrypt(api_key)
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO users (user_id, api_key) VALUES (?, ?) "
                "ON CONFLICT(user_id) DO UPDATE SET api_key = excluded.api_key",
                (hash_user_id(user_id), encrypted),
            )

    # --- Usage log ---

    def track_start(self, user_id, when: datetime = None):
        when = when or datetime.now(timezone.utc)
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO start_command_usage (user_id, timestamp) VALUES (?, ?)",
                (hash_user_id(user_id), when.isoformat()),
            )

    def start_stats(self) -> dict:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) AS total_users, COUNT(DISTINCT user_id) AS unique_users, "
                "MAX(timestamp) AS latest_usage FROM start_command_usage"
            ).fetchone()
        return dict(row)
