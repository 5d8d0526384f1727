import base64
import binascii
import hashlib
import hmac
import logging
import os
import secrets
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Optional

from .config import settings
from .models import UserInfo

logger = logging.getLogger(__name__)

ANONYMOUS_USER = UserInfo(id=0, username="anonymous", role="owner")


class AuthService:
    def __init__(
        self,
        db_path: Optional[str] = None,
        secret: Optional[str] = None,
        cookie_name: Optional[str] = None,
        session_ttl_hours: Optional[int] = None,
        disabled: Optional[bool] = None,
    ) -> None:
        self.db_path = db_path or settings.auth_db_path
        self.secret = secret or settings.auth_secret or secrets.token_hex(32)
        self.cookie_name = cookie_name or settings.auth_cookie_name
        self.session_ttl_hours = session_ttl_hours or settings.session_ttl_hours
        self.disabled = settings.auth_disabled if disabled is None else disabled

        if not self.disabled and not (secret or settings.auth_secret):
            logger.warning(
                "AUTH_SECRET is not set; sessions will reset on restart. Set AUTH_SECRET to persist sessions."
            )

    def init_db(self) -> None:
        os.makedirs(os.path.dirname(self.db_path), exist_ok=True)
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    username TEXT UNIQUE NOT NULL,
                    password_hash TEXT NOT NULL,
                    role TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    token_hash TEXT UNIQUE NOT NULL,
                    created_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_sessions_token_hash ON sessions(token_hash)"
            )

    def sync_owner(
        self, username: Optional[str] = None, password: Optional[str] = None
    ) -> Optional[UserInfo]:
        """Make the panel owner match PANEL_USER / PANEL_PASS.

        The environment is the source of truth: a changed password replaces the stored hash
        and drops existing sessions.
        """
        if self.disabled:
            logger.warning("Authentication is disabled; every request is treated as the owner.")
            return None

        username = (username or settings.owner_username or "").strip().lower()
        password = password or settings.owner_password or ""
        if not username or not password:
            raise RuntimeError(
                "No panel credentials configured. Set PANEL_USER and PANEL_PASS, or AUTH_DISABLED=true."
            )

        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, password_hash FROM users WHERE username = ?", (username,)
            ).fetchone()
            if row is None:
                created_at = self._now().isoformat()
                cursor = conn.execute(
                    """
                    INSERT INTO users (username, password_hash, role, created_at)
                    VALUES (?, ?, 'owner', ?)
                    """,
                    (username, self._hash_password(password), created_at),
                )
                logger.info("Owner account %s created from environment variables.", username)
                return UserInfo(id=cursor.lastrowid, username=username, role="owner")

            if not self._verify_password(row["password_hash"], password):
                conn.execute(
                    "UPDATE users SET password_hash = ? WHERE id = ?",
                    (self._hash_password(password), row["id"]),
                )
                conn.execute("DELETE FROM sessions WHERE user_id = ?", (row["id"],))
                logger.info("Owner password for %s updated from environment.", username)
            return UserInfo(id=row["id"], username=username, role="owner")

    def authenticate(self, username: str, password: str) -> Optional[UserInfo]:
        username = username.strip().lower()
        if not username or not password:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, username, password_hash, role FROM users WHERE username = ?",
                (username,),
            ).fetchone()
        if not row:
            return None
        if not self._verify_password(row["password_hash"], password):
            return None
        return UserInfo(id=row["id"], username=row["username"], role=row["role"])

    def create_session(self, user_id: int) -> tuple[str, datetime]:
        token = secrets.token_urlsafe(32)
        now = self._now()
        expires = now + timedelta(hours=self.session_ttl_hours)
        with self._connect() as conn:
            conn.execute("DELETE FROM sessions WHERE expires_at < ?", (now.isoformat(),))
            conn.execute(
                """
                INSERT INTO sessions (user_id, token_hash, created_at, expires_at)
                VALUES (?, ?, ?, ?)
                """,
                (user_id, self._hash_token(token), now.isoformat(), expires.isoformat()),
            )
        return token, expires

    def delete_session(self, token: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM sessions WHERE token_hash = ?", (self._hash_token(token),))

    def get_user_by_session(self, token: str) -> Optional[UserInfo]:
        if not token:
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT users.id, users.username, users.role, sessions.expires_at
                FROM sessions
                JOIN users ON users.id = sessions.user_id
                WHERE sessions.token_hash = ?
                """,
                (self._hash_token(token),),
            ).fetchone()
        if not row:
            return None
        if datetime.fromisoformat(row["expires_at"]) < self._now():
            self.delete_session(token)
            return None
        return UserInfo(id=row["id"], username=row["username"], role=row["role"])

    def get_user_from_request(self, request) -> Optional[UserInfo]:
        """Resolve the caller of an HTTP request or WebSocket handshake."""
        if self.disabled:
            return ANONYMOUS_USER
        token = request.cookies.get(self.cookie_name)
        if not token:
            auth_header = request.headers.get("authorization", "")
            if auth_header.startswith("Bearer "):
                token = auth_header[7:]
        if not token:
            return None
        return self.get_user_by_session(token)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _hash_password(self, password: str, salt: Optional[bytes] = None) -> str:
        salt = salt or secrets.token_bytes(16)
        iterations = 200_000
        dk = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)
        return "$".join(
            [
                "pbkdf2_sha256",
                str(iterations),
                base64.b64encode(salt).decode("ascii"),
                base64.b64encode(dk).decode("ascii"),
            ]
        )

    def _verify_password(self, stored: str, password: str) -> bool:
        try:
            algorithm, iterations_str, salt_b64, hash_b64 = stored.split("$", 3)
            if algorithm != "pbkdf2_sha256":
                return False
            iterations = int(iterations_str)
            salt = base64.b64decode(salt_b64)
            expected = base64.b64decode(hash_b64)
        except (ValueError, binascii.Error):
            return False
        derived = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)
        return hmac.compare_digest(expected, derived)

    def _hash_token(self, token: str) -> str:
        return hmac.new(self.secret.encode("utf-8"), token.encode("utf-8"), hashlib.sha256).hexdigest()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)
