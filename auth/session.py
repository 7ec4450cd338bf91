"""
Browser session cookie.

After a successful face verification the browser receives a signed session
cookie (HS256 JWT over sub, sid and exp) so the session status and logout
endpoints can tell who is signed in.
"""

import logging
import secrets
import time
from dataclasses import dataclass
from typing import Optional

import jwt

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "faceauth_session"


@dataclass(frozen=True)
class BrowserSession:
    user_id: str
    session_id: str
    expires_at: int


class SessionManager:
    def __init__(self, secret: str, ttl: int = 24 * 3600):
        self._secret = secret
        self.ttl = ttl

    def issue(self, user_id: str, now: Optional[float] = None) -> tuple[str, BrowserSession]:
        """Create a session for user_id, returning the cookie value and the session."""
        now = time.time() if now is None else now
        session = BrowserSession(user_id=user_id, session_id=secrets.token_hex(16), expires_at=int(now) + self.ttl)
        value = jwt.encode(
            {"sub": session.user_id, "sid": session.session_id, "exp": session.expires_at},
            self._secret,
            algorithm="HS256",
        )
        return value, session

    def read(self, cookie: Optional[str]) -> Optional[BrowserSession]:
        """Decode a session cookie; None when absent, forged or expired."""
        if not cookie:
            return None
        try:
            claims = jwt.decode(cookie, self._secret, algorithms=["HS256"], options={"require": ["sub", "sid", "exp"]})
        except jwt.PyJWTError as e:
            logger.debug(f"Ignoring invalid session cookie: {e}")
            return None
        return BrowserSession(user_id=claims["sub"], session_id=claims["sid"], expires_at=claims["exp"])
