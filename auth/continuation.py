"""
Continuation Codec

Carries an in-flight authorization request through the browser redirects
between /oauth/authorize, the face capture page and the verification
endpoint, without any server-side state.

The token format is ``base64url(json) "." base64url(hmac_sha256(json))``.
The payload is readable by anyone holding the token but cannot be altered
without the server secret.
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
from dataclasses import asdict, dataclass, fields
from typing import Optional

from .errors import ErrorCode, OAuth2Error

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthorizationContinuation:
    """A validated authorization request awaiting the biometric step."""
    client_id: str
    redirect_uri: str
    scope: str
    state: Optional[str] = None
    nonce: Optional[str] = None


_FIELDS = {f.name for f in fields(AuthorizationContinuation)}
_REQUIRED = {"client_id", "redirect_uri", "scope"}


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


class ContinuationCodec:
    def __init__(self, secret: str):
        if not secret:
            raise ValueError("Continuation secret must not be empty")
        self._key = secret.encode("utf-8")

    def _sign(self, payload: str) -> str:
        return _b64encode(hmac.new(self._key, payload.encode("ascii"), hashlib.sha256).digest())

    def encode(self, continuation: AuthorizationContinuation) -> str:
        raw = json.dumps(asdict(continuation), separators=(",", ":"), sort_keys=True)
        payload = _b64encode(raw.encode("utf-8"))
        return f"{payload}.{self._sign(payload)}"

    def decode(self, token: Optional[str]) -> AuthorizationContinuation:
        """
        Decode and authenticate a continuation token.

        Raises:
            OAuth2Error: malformed_request for anything that is not a token
                this server issued, unmodified
        """
        if not token or not isinstance(token, str) or token.count(".") != 1:
            raise OAuth2Error(ErrorCode.MALFORMED_REQUEST, "Invalid authorization request")

        payload, signature = token.split(".")
        try:
            expected = self._sign(payload)
        except UnicodeEncodeError as e:
            raise OAuth2Error(ErrorCode.MALFORMED_REQUEST, "Invalid authorization request") from e
        if not hmac.compare_digest(signature.encode("ascii", "replace"), expected.encode("ascii")):
            logger.warning("Rejected continuation with an invalid signature")
            raise OAuth2Error(ErrorCode.MALFORMED_REQUEST, "Invalid authorization request")

        try:
            data = json.loads(_b64decode(payload).decode("utf-8"))
        except (binascii.Error, UnicodeDecodeError, ValueError) as e:
            raise OAuth2Error(ErrorCode.MALFORMED_REQUEST, "Invalid authorization request") from e

        if not isinstance(data, dict) or set(data) != _FIELDS:
            raise OAuth2Error(ErrorCode.MALFORMED_REQUEST, "Invalid authorization request")
        for name, value in data.items():
            if value is None and name not in _REQUIRED:
                continue
            if not isinstance(value, str):
                raise OAuth2Error(ErrorCode.MALFORMED_REQUEST, "Invalid authorization request")

        return AuthorizationContinuation(**data)
