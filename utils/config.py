"""
Centralized Configuration for the Face Authentication Server

This module loads every tunable of the authorization server from environment
variables (optionally seeded from a ``.env`` file) and exposes them as typed,
validated dataclasses.

Features:
- Single place for all FACEAUTH_* environment variables
- Type conversion and validation with clear error reporting
- Ephemeral secrets generated (with a warning) when none are configured
- Process-wide cached instance with an explicit reset for tests
"""

import logging
import os
import secrets
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

ENV_PREFIX = "FACEAUTH_"

STORAGE_BACKENDS = ("memory", "sqlite")
DUPLICATE_ENROLLMENT_POLICIES = ("reject", "merge", "allow")
LOG_FORMATS = ("text", "json")


class ConfigurationError(ValueError):
    """Raised when an environment variable holds an unusable value."""


@dataclass
class ServerConfig:
    """HTTP surface settings."""

    host: str
    port: int
    issuer: Optional[str]
    cors_origins: list[str]
    capture_url: str
    registration_url: str
    post_logout_redirect_uri: str
    log_level: str
    log_format: str
    log_dir: Optional[str]


@dataclass
class StorageConfig:
    """Persistence backend selection."""

    backend: str
    db_path: str


@dataclass
class TokenConfig:
    """Lifetimes (seconds) and signing material for issued credentials."""

    code_ttl: int
    access_token_ttl: int
    refresh_token_ttl: int
    id_token_ttl: int
    session_ttl: int
    signing_key_path: Optional[str]


@dataclass
class SecurityConfig:
    """Secrets, rate limits and the statically registered client."""

    continuation_secret: str
    session_secret: str
    register_rate_limit: int
    verify_rate_limit: int
    rate_limit_window: int
    default_client_id: str
    default_client_secret: Optional[str]
    default_client_redirect_uris: list[str] = field(default_factory=list)
    # Peers whose X-Forwarded-For / X-Real-IP headers are believed
    trusted_proxies: list[str] = field(default_factory=list)


@dataclass
class BiometricConfig:
    """Face matching behaviour."""

    match_threshold: float
    duplicate_enrollment: str


class Settings:
    """
    Typed view over the FACEAUTH_* environment.

    Args:
        environ: Mapping to read variables from. Defaults to ``os.environ``
            after loading a ``.env`` file if one is present.
    """

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        if environ is None:
            load_dotenv()
            environ = os.environ
        self._env = environ

        self.server = self._load_server_config()
        self.storage = self._load_storage_config()
        self.tokens = self._load_token_config()
        self.security = self._load_security_config()
        self.biometrics = self._load_biometric_config()

    def _get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        value = self._env.get(f"{ENV_PREFIX}{name}")
        if value is None or value.strip() == "":
            return default
        return value.strip()

    def _get_int(self, name: str, default: int, minimum: int = 1) -> int:
        raw = self._get(name, str(default))
        try:
            value = int(raw)
        except ValueError as e:
            raise ConfigurationError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}") from e
        if value < minimum:
            raise ConfigurationError(f"{ENV_PREFIX}{name} must be >= {minimum}, got {value}")
        return value

    def _get_list(self, name: str, default: str = "") -> list[str]:
        raw = self._get(name, default) or ""
        return [item.strip() for item in raw.split(",") if item.strip()]

    def _get_choice(self, name: str, default: str, choices: tuple[str, ...]) -> str:
        value = (self._get(name, default) or default).lower()
        if value not in choices:
            raise ConfigurationError(f"{ENV_PREFIX}{name} must be one of {', '.join(choices)}, got {value!r}")
        return value

    def _get_secret(self, name: str) -> str:
        value = self._get(name)
        if value:
            return value
        logger.warning(f"{ENV_PREFIX}{name} not set - using an ephemeral secret that will not survive restart")
        return secrets.token_urlsafe(32)

    def _load_server_config(self) -> ServerConfig:
        issuer = self._get("ISSUER")
        return ServerConfig(
            host=self._get("HOST", "127.0.0.1"),
            port=self._get_int("PORT", 5001),
            issuer=issuer.rstrip("/") if issuer else None,
            cors_origins=self._get_list("CORS_ORIGINS", "*"),
            capture_url=self._get("CAPTURE_URL", "/face-auth"),
            registration_url=self._get("REGISTRATION_URL", "/register"),
            post_logout_redirect_uri=self._get("POST_LOGOUT_REDIRECT_URI", "http://localhost:3000"),
            log_level=(self._get("LOG_LEVEL", "INFO")).upper(),
            log_format=self._get_choice("LOG_FORMAT", "text", LOG_FORMATS),
            log_dir=self._get("LOG_DIR"),
        )

    def _load_storage_config(self) -> StorageConfig:
        return StorageConfig(
            backend=self._get_choice("STORAGE", "memory", STORAGE_BACKENDS),
            db_path=self._get("DB_PATH", "faceauth.db"),
        )

    def _load_token_config(self) -> TokenConfig:
        return TokenConfig(
            code_ttl=self._get_int("CODE_TTL", 600),
            access_token_ttl=self._get_int("ACCESS_TOKEN_TTL", 3600),
            refresh_token_ttl=self._get_int("REFRESH_TOKEN_TTL", 30 * 24 * 3600),
            id_token_ttl=self._get_int("ID_TOKEN_TTL", 3600),
            session_ttl=self._get_int("SESSION_TTL", 24 * 3600),
            signing_key_path=self._get("SIGNING_KEY_PATH"),
        )

    def _load_security_config(self) -> SecurityConfig:
        return SecurityConfig(
            continuation_secret=self._get_secret("CONTINUATION_SECRET"),
            session_secret=self._get_secret("SESSION_SECRET"),
            register_rate_limit=self._get_int("REGISTER_RATE_LIMIT", 10),
            verify_rate_limit=self._get_int("VERIFY_RATE_LIMIT", 30),
            rate_limit_window=self._get_int("RATE_LIMIT_WINDOW", 60),
            default_client_id=self._get("DEFAULT_CLIENT_ID", "face-auth-client"),
            default_client_secret=self._get("DEFAULT_CLIENT_SECRET"),
            default_client_redirect_uris=self._get_list(
                "DEFAULT_CLIENT_REDIRECT_URIS",
                "http://localhost:5000/oauth/callback,http://localhost:3000/oauth/callback",
            ),
            trusted_proxies=self._get_list("TRUSTED_PROXIES"),
        )

    def _load_biometric_config(self) -> BiometricConfig:
        raw = self._get("MATCH_THRESHOLD", "0.6")
        try:
            threshold = float(raw)
        except ValueError as e:
            raise ConfigurationError(f"{ENV_PREFIX}MATCH_THRESHOLD must be a number, got {raw!r}") from e
        if threshold <= 0:
            raise ConfigurationError(f"{ENV_PREFIX}MATCH_THRESHOLD must be positive, got {threshold}")

        return BiometricConfig(
            match_threshold=threshold,
            duplicate_enrollment=self._get_choice("DUPLICATE_ENROLLMENT", "reject", DUPLICATE_ENROLLMENT_POLICIES),
        )


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the process-wide settings, loading them on first use."""
    global _settings
    if _settings is None:
        _settings = Settings()
        logger.info("Configuration loaded successfully")
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next call reloads the environment."""
    global _settings
    _settings = None
