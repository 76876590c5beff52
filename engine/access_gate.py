"""Bearer-token access control.

Tokens are HS256 JWTs carrying ``user``, ``iat`` and ``exp``; nothing is kept
server-side per session. The signing secret comes from the config or is
generated once and persisted in the ``kvp`` table.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import secrets
import sqlite3
import string
import time
from dataclasses import dataclass

import jwt

from engine.errors import Unauthorized

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
PBKDF2_ROUNDS = 100_000
SECRET_KEY = "jwt_secret"

REASON_USER_NOT_FOUND = "user_not_found"
REASON_INVALID_PASSWORD = "invalid_password"
REASON_INVALID_TOKEN = "invalid_token"
REASON_EXPIRED = "token_expired"


@dataclass(frozen=True)
class Credential:
    username: str
    issued_at: int
    expires_at: int


def hash_password(password: str, *, rounds: int = PBKDF2_ROUNDS, salt: bytes | None = None) -> str:
    salt = salt or secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, rounds)
    return "pbkdf2_sha256${}${}${}".format(
        rounds,
        base64.b64encode(salt).decode("ascii"),
        base64.b64encode(digest).decode("ascii"),
    )


def verify_password(password: str, stored: str) -> bool:
    try:
        scheme, rounds, salt_b64, digest_b64 = stored.split("$", 3)
        if scheme != "pbkdf2_sha256":
            return False
        salt = base64.b64decode(salt_b64)
        expected = base64.b64decode(digest_b64)
        digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, int(rounds))
    except (ValueError, TypeError):
        return False
    return hmac.compare_digest(digest, expected)


def generate_secret(length: int = 32) -> str:
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


class UserStore:
    def __init__(self, db_path):
        self.db_path = db_path
        conn = self._connect()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    username TEXT PRIMARY KEY,
                    password_hash TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kvp (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )
            conn.commit()
        finally:
            conn.close()

    def _connect(self):
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def add_user(self, username, password):
        conn = self._connect()
        try:
            conn.execute(
                "INSERT OR REPLACE INTO users (username, password_hash) VALUES (?, ?)",
                (username, hash_password(password)),
            )
            conn.commit()
        finally:
            conn.close()

    def remove_user(self, username) -> bool:
        conn = self._connect()
        try:
            cur = conn.execute("DELETE FROM users WHERE username=?", (username,))
            conn.commit()
            return cur.rowcount > 0
        finally:
            conn.close()

    def get_password_hash(self, username):
        conn = self._connect()
        try:
            row = conn.execute("SELECT password_hash FROM users WHERE username=?", (username,)).fetchone()
        finally:
            conn.close()
        return row["password_hash"] if row else None

    def get_or_create_secret(self):
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            row = cur.execute("SELECT value FROM kvp WHERE key=?", (SECRET_KEY,)).fetchone()
            if row:
                conn.commit()
                return row["value"]
            secret = generate_secret()
            cur.execute("INSERT INTO kvp (key, value) VALUES (?, ?)", (SECRET_KEY, secret))
            conn.commit()
            logger.info("Generated new token signing secret")
            return secret
        finally:
            conn.close()


class AccessGate:
    def __init__(self, users: UserStore, *, secret: str | None = None, token_ttl_hours: float = 24):
        self.users = users
        self._secret = secret or users.get_or_create_secret()
        self.token_ttl_seconds = int(token_ttl_hours * 3600)

    def login(self, username: str, password: str) -> str:
        """Return a signed token, or raise ``Unauthorized`` with a typed reason."""
        stored = self.users.get_password_hash(username or "")
        if stored is None:
            raise Unauthorized("User not found", reason=REASON_USER_NOT_FOUND)
        if not verify_password(password or "", stored):
            raise Unauthorized("Invalid password", reason=REASON_INVALID_PASSWORD)
        now = int(time.time())
        claims = {"user": username, "iat": now, "exp": now + self.token_ttl_seconds}
        logger.info("Issued token for %s", username)
        return jwt.encode(claims, self._secret, algorithm=JWT_ALGORITHM)

    def require(self, token: str | None) -> Credential:
        if not token:
            raise Unauthorized("Missing credential", reason=REASON_INVALID_TOKEN)
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[JWT_ALGORITHM],
                options={"require": ["exp", "iat", "user"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise Unauthorized("Token expired", reason=REASON_EXPIRED) from exc
        except jwt.InvalidTokenError as exc:
            raise Unauthorized("Invalid token", reason=REASON_INVALID_TOKEN) from exc
        username = claims.get("user")
        if not isinstance(username, str) or self.users.get_password_hash(username) is None:
            raise Unauthorized("Unknown user", reason=REASON_INVALID_TOKEN)
        return Credential(username=username, issued_at=int(claims["iat"]), expires_at=int(claims["exp"]))

    def check(self, token: str | None) -> bool:
        try:
            self.require(token)
        except Unauthorized:
            return False
        return True
