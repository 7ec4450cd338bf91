"""
Client Registry and Dynamic Client Registration (RFC 7591)

This module keeps the flat, in-process registry of OAuth 2.0 clients and the
registration flow that adds to it at runtime.

Features:
- Static client registration at startup
- Dynamic Client Registration endpoint support (/oauth/register)
- Exact-match redirect URI validation
- Constant-time client secret verification
- Secure client_id and client_secret generation
- Registration rate limiting per client IP

Clients are immutable once registered.
"""

import hmac
import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field, ValidationError, field_validator

from utils.ratelimit import allow

from .errors import ErrorCode, OAuth2Error

logger = logging.getLogger(__name__)

DEFAULT_SCOPES = ("openid", "profile", "email")


class GrantType(str, Enum):
    """OAuth 2.0 grant types supported by this server."""
    AUTHORIZATION_CODE = "authorization_code"
    REFRESH_TOKEN = "refresh_token"


class ResponseType(str, Enum):
    CODE = "code"


class ClientAuthMethod(str, Enum):
    """Token endpoint client authentication methods."""
    CLIENT_SECRET_BASIC = "client_secret_basic"
    CLIENT_SECRET_POST = "client_secret_post"


@dataclass(frozen=True)
class OAuthClient:
    """OAuth 2.0 client registration information."""
    client_id: str
    client_secret: str
    redirect_uris: tuple[str, ...]
    grant_types: frozenset[str] = frozenset({GrantType.AUTHORIZATION_CODE.value, GrantType.REFRESH_TOKEN.value})
    scopes: tuple[str, ...] = DEFAULT_SCOPES
    response_types: tuple[str, ...] = (ResponseType.CODE.value,)
    name: str = "OAuth Client"
    token_endpoint_auth_method: str = ClientAuthMethod.CLIENT_SECRET_BASIC.value
    created_at: float = field(default_factory=time.time)

    @property
    def scope(self) -> str:
        return " ".join(self.scopes)


class ClientMetadata(BaseModel):
    """Client metadata accepted at dynamic registration."""

    client_name: Optional[str] = Field(None, max_length=255)
    # Custom app schemes are allowed, so these are validated by hand
    redirect_uris: Optional[list[str]] = None
    grant_types: list[str] = Field(
        default_factory=lambda: [GrantType.AUTHORIZATION_CODE.value, GrantType.REFRESH_TOKEN.value]
    )
    response_types: list[str] = Field(default_factory=lambda: [ResponseType.CODE.value])
    scope: Optional[str] = Field(None, max_length=1000)
    token_endpoint_auth_method: str = ClientAuthMethod.CLIENT_SECRET_BASIC.value

    @field_validator("redirect_uris")
    @classmethod
    def validate_redirect_uris(cls, v):
        if v:
            for uri in v:
                parsed = urlparse(uri)
                if parsed.scheme in ("http", "https"):
                    if not parsed.netloc:
                        raise ValueError(f"Redirect URI must be absolute: {uri}")
                    if parsed.fragment:
                        raise ValueError(f"Redirect URI must not contain a fragment: {uri}")
                # Permit reverse-domain app schemes like com.example.app://callback
                elif not (parsed.scheme.startswith("com.") or parsed.scheme.startswith("app.")):
                    raise ValueError(f"Invalid redirect URI scheme: {parsed.scheme or uri}")
        return v

    @field_validator("scope")
    @classmethod
    def validate_scope(cls, v):
        if v:
            for scope in v.split():
                if not scope.replace("-", "").replace("_", "").replace(":", "").replace(".", "").isalnum():
                    raise ValueError(f"Invalid scope format: {scope}")
        return v


class ClientRegistry:
    """Thread-safe registry of OAuth clients keyed by client id."""

    def __init__(self, register_rate_limit: int = 10, rate_limit_window: int = 60):
        self._lock = threading.RLock()
        self._clients: dict[str, OAuthClient] = {}
        self.register_rate_limit = register_rate_limit
        self.rate_limit_window = rate_limit_window

    def register(self, client: OAuthClient) -> OAuthClient:
        """
        Register a client.

        Raises:
            OAuth2Error: if the client id is already taken
        """
        with self._lock:
            if client.client_id in self._clients:
                raise OAuth2Error(ErrorCode.INVALID_CLIENT_METADATA, "Client already exists")
            self._clients[client.client_id] = client
        logger.info(f"Registered OAuth client: {client.client_id} ({client.name})")
        return client

    def resolve(self, client_id: Optional[str]) -> Optional[OAuthClient]:
        """Get client by ID."""
        if not client_id:
            return None
        with self._lock:
            return self._clients.get(client_id)

    @staticmethod
    def validate_redirect(client: OAuthClient, redirect_uri: Optional[str]) -> bool:
        """Redirect URIs must match a registered URI exactly."""
        return bool(redirect_uri) and redirect_uri in client.redirect_uris

    def is_known_redirect(self, uri: str) -> bool:
        """Whether any registered client owns this redirect URI."""
        with self._lock:
            return any(uri in client.redirect_uris for client in self._clients.values())

    def authenticate(self, client_id: Optional[str], client_secret: Optional[str]) -> OAuthClient:
        """
        Verify client credentials.

        Returns:
            The authenticated client

        Raises:
            OAuth2Error: invalid_client for unknown ids or wrong secrets
        """
        client = self.resolve(client_id)
        if client is None or not client_secret:
            raise OAuth2Error(ErrorCode.INVALID_CLIENT, "Client authentication failed")
        if not hmac.compare_digest(client_secret.encode(), client.client_secret.encode()):
            logger.warning(f"Client secret mismatch for {client_id}")
            raise OAuth2Error(ErrorCode.INVALID_CLIENT, "Client authentication failed")
        return client

    def _generate_client_id(self) -> str:
        return f"client-{secrets.token_hex(8)}"

    def _generate_client_secret(self) -> str:
        return secrets.token_urlsafe(32)

    def _validate_client_metadata(self, metadata: ClientMetadata) -> None:
        if not metadata.client_name or not metadata.client_name.strip():
            raise OAuth2Error(ErrorCode.INVALID_CLIENT_METADATA, "client_name is required")
        if not metadata.redirect_uris:
            raise OAuth2Error(ErrorCode.INVALID_CLIENT_METADATA, "redirect_uris must be a non-empty list")

        supported_grants = {g.value for g in GrantType}
        for grant_type in metadata.grant_types:
            if grant_type not in supported_grants:
                raise OAuth2Error(ErrorCode.INVALID_CLIENT_METADATA, f"Unsupported grant type: {grant_type}")

        for response_type in metadata.response_types:
            if response_type != ResponseType.CODE.value:
                raise OAuth2Error(ErrorCode.INVALID_CLIENT_METADATA, f"Unsupported response type: {response_type}")

        if metadata.token_endpoint_auth_method not in {m.value for m in ClientAuthMethod}:
            raise OAuth2Error(
                ErrorCode.INVALID_CLIENT_METADATA,
                f"Unsupported authentication method: {metadata.token_endpoint_auth_method}",
            )

    def register_dynamic(self, body: dict, client_ip: str = "unknown") -> tuple[OAuthClient, dict]:
        """
        Register a new client from RFC 7591 metadata.

        Args:
            body: Raw registration request body
            client_ip: Caller address, used for rate limiting

        Returns:
            The new client and the registration response body

        Raises:
            OAuth2Error: invalid_client_metadata or too_many_requests
        """
        if not allow(
            scope=f"dcr_registration:{client_ip}",
            max_per_window=self.register_rate_limit,
            window_seconds=self.rate_limit_window,
        ):
            logger.warning(f"Client registration rate limit exceeded for {client_ip}")
            raise OAuth2Error(ErrorCode.TOO_MANY_REQUESTS, "Rate limit exceeded for client registration")

        try:
            metadata = ClientMetadata.model_validate(body)
        except ValidationError as e:
            first = e.errors()[0]
            raise OAuth2Error(ErrorCode.INVALID_CLIENT_METADATA, first.get("msg", "Invalid client metadata")) from e

        self._validate_client_metadata(metadata)

        issued_at = int(time.time())
        client = OAuthClient(
            client_id=self._generate_client_id(),
            client_secret=self._generate_client_secret(),
            redirect_uris=tuple(metadata.redirect_uris),
            grant_types=frozenset(metadata.grant_types),
            scopes=tuple((metadata.scope or "openid profile").split()),
            response_types=tuple(metadata.response_types),
            name=metadata.client_name.strip(),
            token_endpoint_auth_method=metadata.token_endpoint_auth_method,
            created_at=issued_at,
        )
        self.register(client)

        response = {
            "client_id": client.client_id,
            "client_secret": client.client_secret,
            "client_id_issued_at": issued_at,
            "client_secret_expires_at": 0,
            "client_name": client.name,
            "redirect_uris": list(client.redirect_uris),
            "grant_types": list(metadata.grant_types),
            "response_types": list(client.response_types),
            "scope": client.scope,
            "token_endpoint_auth_method": client.token_endpoint_auth_method,
        }
        return client, response
