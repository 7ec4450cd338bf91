"""
Authentication module for the Face Authentication Server

This module implements an OAuth 2.0 authorization server with OpenID Connect
identity tokens, where a face match takes the place of a password.

Components:
- errors: OAuth 2.0 error vocabulary
- clients: client registry and dynamic client registration
- continuation: tamper-evident carrier for in-flight authorization requests
- store: authorization codes and access/refresh tokens
- tokens: identity token signing and JWKS
- session: browser session cookie
- claims: user record to OpenID Connect claims
- engine: the authorization state machine
- endpoints: FastAPI routers
"""

from .claims import ClaimsMapper
from .clients import ClientMetadata, ClientRegistry, GrantType, OAuthClient
from .continuation import AuthorizationContinuation, ContinuationCodec
from .engine import AuthorizationEngine, BiometricOutcome, BiometricOutcomeKind
from .errors import AuthorizationRedirectError, ErrorCode, OAuth2Error, StorageError
from .session import SessionManager
from .store import (
    AuthorizationCode,
    CodeTokenStore,
    InMemoryCodeTokenStore,
    SQLiteCodeTokenStore,
    Token,
    TokenKind,
)
from .tokens import JWKS, TokenSigner

__all__ = [
    "AuthorizationCode",
    "AuthorizationContinuation",
    "AuthorizationEngine",
    "AuthorizationRedirectError",
    "BiometricOutcome",
    "BiometricOutcomeKind",
    "ClaimsMapper",
    "ClientMetadata",
    "ClientRegistry",
    "CodeTokenStore",
    "ContinuationCodec",
    "ErrorCode",
    "GrantType",
    "InMemoryCodeTokenStore",
    "JWKS",
    "OAuth2Error",
    "OAuthClient",
    "SQLiteCodeTokenStore",
    "SessionManager",
    "StorageError",
    "Token",
    "TokenKind",
    "TokenSigner",
]
