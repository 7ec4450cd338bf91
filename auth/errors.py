"""
OAuth 2.0 error vocabulary for the Face Authentication Server.

Errors are raised as exceptions by the engine and the stores and converted to
HTTP responses only at the endpoint layer: JSON bodies for the back-channel
endpoints, redirects back to the client for failures during authorization.
"""

from enum import Enum
from typing import Optional

from utils.sqlite import StorageError

__all__ = ["AuthorizationRedirectError", "ErrorCode", "OAuth2Error", "StorageError"]


class ErrorCode(str, Enum):
    """OAuth 2.0 error codes (RFC 6749) plus the biometric flow outcomes."""
    INVALID_REQUEST = "invalid_request"
    INVALID_CLIENT = "invalid_client"
    INVALID_REDIRECT_URI = "invalid_redirect_uri"
    INVALID_CLIENT_METADATA = "invalid_client_metadata"
    INVALID_GRANT = "invalid_grant"
    INVALID_SCOPE = "invalid_scope"
    INVALID_TOKEN = "invalid_token"
    UNAUTHORIZED_CLIENT = "unauthorized_client"
    UNSUPPORTED_GRANT_TYPE = "unsupported_grant_type"
    UNSUPPORTED_RESPONSE_TYPE = "unsupported_response_type"
    ACCESS_DENIED = "access_denied"
    MALFORMED_REQUEST = "malformed_request"
    NO_FACE_DETECTED = "no_face_detected"
    TOO_MANY_REQUESTS = "too_many_requests"
    SERVER_ERROR = "server_error"


_STATUS_CODES = {
    ErrorCode.INVALID_CLIENT: 401,
    ErrorCode.INVALID_TOKEN: 401,
    ErrorCode.NO_FACE_DETECTED: 422,
    ErrorCode.TOO_MANY_REQUESTS: 429,
    ErrorCode.SERVER_ERROR: 500,
}


class OAuth2Error(Exception):
    """OAuth 2.0 error with proper error codes and descriptions."""

    def __init__(self, error: ErrorCode, description: str = "", status_code: Optional[int] = None):
        self.error = error
        self.description = description
        self.status_code = status_code or _STATUS_CODES.get(error, 400)
        super().__init__(f"{error.value}: {description}")

    def to_dict(self) -> dict[str, str]:
        return {"error": self.error.value, "error_description": self.description}


class AuthorizationRedirectError(OAuth2Error):
    """An authorization failure that is reported to the client via its redirect URI."""

    def __init__(self, error: ErrorCode, description: str, redirect_uri: str, state: Optional[str] = None):
        super().__init__(error, description, status_code=302)
        self.redirect_uri = redirect_uri
        self.state = state
