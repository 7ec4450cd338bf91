"""
Code/Token Store

Persists authorization codes, access tokens and refresh tokens with expiry and
single-use semantics.

Every operation that reads a credential in order to spend it (code exchange,
refresh rotation) is a single atomic check-and-remove: two concurrent callers
presenting the same value get exactly one success. Expiry is evaluated lazily
against the ``now`` the caller passes in; nothing is evicted in the background.

The SQLite backend stores only SHA-256 hashes of code and token values.
"""

import hashlib
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from utils.sqlite import SQLiteDatabase

logger = logging.getLogger(__name__)


class TokenKind(str, Enum):
    ACCESS = "access_token"
    REFRESH = "refresh_token"


@dataclass(frozen=True)
class AuthorizationCode:
    """Single-use authorization code bound to a client and redirect URI."""
    code: str
    client_id: str
    user_id: str
    redirect_uri: str
    scope: str
    expires_at: float
    nonce: Optional[str] = None
    auth_time: float = field(default_factory=time.time)
    issued_at: float = field(default_factory=time.time)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class Token:
    """Opaque access or refresh token."""
    value: str
    kind: TokenKind
    user_id: str
    client_id: str
    scope: str
    expires_at: float
    issued_at: float = field(default_factory=time.time)
    auth_time: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


def _hash_value(value: str) -> str:
    """Hash a code or token for storage (non-reversible)."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class CodeTokenStore(ABC):
    """Storage interface for authorization codes and tokens."""

    @abstractmethod
    def save_code(self, code: AuthorizationCode) -> None:
        ...

    @abstractmethod
    def consume_code(self, code: str, client_id: str, redirect_uri: str, now: float) -> Optional[AuthorizationCode]:
        """
        Atomically spend an authorization code.

        Returns the code when it exists, is unexpired and was issued to exactly
        this client and redirect URI, removing it in the same step. Returns
        None otherwise. Expired codes are removed; codes presented with the
        wrong binding are left untouched.
        """

    @abstractmethod
    def save_token(self, token: Token) -> None:
        ...

    @abstractmethod
    def get_token(self, value: str, now: float) -> Optional[Token]:
        """Look up a live token; expired tokens read as absent."""

    @abstractmethod
    def consume_refresh_token(self, value: str, client_id: str, now: float) -> Optional[Token]:
        """Atomically remove and return a live refresh token issued to client_id."""

    @abstractmethod
    def delete_token(self, value: str) -> bool:
        """Remove a token of either kind; unknown values are not an error."""

    @abstractmethod
    def purge_subject(self, user_id: str, client_id: Optional[str] = None) -> tuple[int, int]:
        """
        Remove every token and pending code for a user; returns (tokens, codes) removed.

        When client_id is given only credentials issued to that client are removed.
        """

    @abstractmethod
    def cleanup_expired(self, now: float) -> dict[str, int]:
        """Remove expired codes and tokens."""


class InMemoryCodeTokenStore(CodeTokenStore):
    def __init__(self):
        self._lock = threading.RLock()
        self._codes: dict[str, AuthorizationCode] = {}
        self._tokens: dict[str, Token] = {}

    def save_code(self, code: AuthorizationCode) -> None:
        with self._lock:
            self._codes[code.code] = code

    def consume_code(self, code: str, client_id: str, redirect_uri: str, now: float) -> Optional[AuthorizationCode]:
        with self._lock:
            stored = self._codes.get(code)
            if stored is None:
                return None
            if stored.is_expired(now):
                del self._codes[code]
                return None
            if stored.client_id != client_id or stored.redirect_uri != redirect_uri:
                return None
            del self._codes[code]
            return stored

    def save_token(self, token: Token) -> None:
        with self._lock:
            self._tokens[token.value] = token

    def get_token(self, value: str, now: float) -> Optional[Token]:
        with self._lock:
            token = self._tokens.get(value)
        if token is None or token.is_expired(now):
            return None
        return token

    def consume_refresh_token(self, value: str, client_id: str, now: float) -> Optional[Token]:
        with self._lock:
            token = self._tokens.get(value)
            if token is None or token.kind != TokenKind.REFRESH:
                return None
            if token.is_expired(now):
                del self._tokens[value]
                return None
            if token.client_id != client_id:
                return None
            del self._tokens[value]
            return token

    def delete_token(self, value: str) -> bool:
        with self._lock:
            return self._tokens.pop(value, None) is not None

    def purge_subject(self, user_id: str, client_id: Optional[str] = None) -> tuple[int, int]:
        def owned(item) -> bool:
            return item.user_id == user_id and (client_id is None or item.client_id == client_id)

        with self._lock:
            token_values = [v for v, t in self._tokens.items() if owned(t)]
            code_values = [c for c, ac in self._codes.items() if owned(ac)]
            for value in token_values:
                del self._tokens[value]
            for value in code_values:
                del self._codes[value]
        return len(token_values), len(code_values)

    def cleanup_expired(self, now: float) -> dict[str, int]:
        with self._lock:
            expired_codes = [c for c, ac in self._codes.items() if ac.is_expired(now)]
            expired_tokens = [v for v, t in self._tokens.items() if t.is_expired(now)]
            for value in expired_codes:
                del self._codes[value]
            for value in expired_tokens:
                del self._tokens[value]
        return {"codes": len(expired_codes), "tokens": len(expired_tokens)}


class SQLiteCodeTokenStore(CodeTokenStore):
    MIGRATIONS = [
        [
            """
            CREATE TABLE IF NOT EXISTS authorization_codes (
                code_hash TEXT PRIMARY KEY,
                client_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                redirect_uri TEXT NOT NULL,
                scope TEXT NOT NULL,
                nonce TEXT,
                auth_time REAL NOT NULL,
                issued_at REAL NOT NULL,
                expires_at REAL NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS tokens (
                token_hash TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                user_id TEXT NOT NULL,
                client_id TEXT NOT NULL,
                scope TEXT NOT NULL,
                auth_time REAL,
                issued_at REAL NOT NULL,
                expires_at REAL NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_codes_user_id ON authorization_codes (user_id)",
            "CREATE INDEX IF NOT EXISTS idx_codes_expires_at ON authorization_codes (expires_at)",
            "CREATE INDEX IF NOT EXISTS idx_tokens_user_id ON tokens (user_id)",
            "CREATE INDEX IF NOT EXISTS idx_tokens_expires_at ON tokens (expires_at)",
        ],
    ]

    def __init__(self, db: SQLiteDatabase):
        self.db = db
        self.db.ensure_schema("code_token_store", self.MIGRATIONS)

    @staticmethod
    def _row_to_code(code: str, row) -> AuthorizationCode:
        return AuthorizationCode(
            code=code,
            client_id=row["client_id"],
            user_id=row["user_id"],
            redirect_uri=row["redirect_uri"],
            scope=row["scope"],
            nonce=row["nonce"],
            auth_time=row["auth_time"],
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
        )

    @staticmethod
    def _row_to_token(value: str, row) -> Token:
        return Token(
            value=value,
            kind=TokenKind(row["kind"]),
            user_id=row["user_id"],
            client_id=row["client_id"],
            scope=row["scope"],
            auth_time=row["auth_time"],
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
        )

    def save_code(self, code: AuthorizationCode) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO authorization_codes (
                    code_hash, client_id, user_id, redirect_uri, scope, nonce, auth_time, issued_at, expires_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    _hash_value(code.code), code.client_id, code.user_id, code.redirect_uri, code.scope,
                    code.nonce, code.auth_time, code.issued_at, code.expires_at,
                ),
            )

    def consume_code(self, code: str, client_id: str, redirect_uri: str, now: float) -> Optional[AuthorizationCode]:
        code_hash = _hash_value(code)
        with self.db.transaction() as conn:
            row = conn.execute("SELECT * FROM authorization_codes WHERE code_hash = ?", (code_hash,)).fetchone()
            if row is None:
                return None
            if now >= row["expires_at"]:
                conn.execute("DELETE FROM authorization_codes WHERE code_hash = ?", (code_hash,))
                return None
            if row["client_id"] != client_id or row["redirect_uri"] != redirect_uri:
                return None
            conn.execute("DELETE FROM authorization_codes WHERE code_hash = ?", (code_hash,))
            return self._row_to_code(code, row)

    def save_token(self, token: Token) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO tokens (token_hash, kind, user_id, client_id, scope, auth_time, issued_at, expires_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    _hash_value(token.value), token.kind.value, token.user_id, token.client_id, token.scope,
                    token.auth_time, token.issued_at, token.expires_at,
                ),
            )

    def get_token(self, value: str, now: float) -> Optional[Token]:
        with self.db.connection() as conn:
            row = conn.execute("SELECT * FROM tokens WHERE token_hash = ?", (_hash_value(value),)).fetchone()
        if row is None or now >= row["expires_at"]:
            return None
        return self._row_to_token(value, row)

    def consume_refresh_token(self, value: str, client_id: str, now: float) -> Optional[Token]:
        token_hash = _hash_value(value)
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM tokens WHERE token_hash = ? AND kind = ?", (token_hash, TokenKind.REFRESH.value)
            ).fetchone()
            if row is None:
                return None
            if now >= row["expires_at"]:
                conn.execute("DELETE FROM tokens WHERE token_hash = ?", (token_hash,))
                return None
            if row["client_id"] != client_id:
                return None
            conn.execute("DELETE FROM tokens WHERE token_hash = ?", (token_hash,))
            return self._row_to_token(value, row)

    def delete_token(self, value: str) -> bool:
        with self.db.transaction() as conn:
            cursor = conn.execute("DELETE FROM tokens WHERE token_hash = ?", (_hash_value(value),))
            return cursor.rowcount > 0

    def purge_subject(self, user_id: str, client_id: Optional[str] = None) -> tuple[int, int]:
        where, params = "user_id = ?", [user_id]
        if client_id is not None:
            where, params = "user_id = ? AND client_id = ?", [user_id, client_id]
        with self.db.transaction() as conn:
            tokens_removed = conn.execute(f"DELETE FROM tokens WHERE {where}", params).rowcount
            codes_removed = conn.execute(f"DELETE FROM authorization_codes WHERE {where}", params).rowcount
        return tokens_removed, codes_removed

    def cleanup_expired(self, now: float) -> dict[str, int]:
        with self.db.transaction() as conn:
            codes = conn.execute("DELETE FROM authorization_codes WHERE expires_at <= ?", (now,)).rowcount
            tokens = conn.execute("DELETE FROM tokens WHERE expires_at <= ?", (now,)).rowcount
        if codes or tokens:
            logger.info(f"Cleaned up {codes} expired codes and {tokens} expired tokens")
        return {"codes": codes, "tokens": tokens}
