"""
Face Authentication Server - HTTP entry point

Builds the FastAPI application around the Authorization Engine and runs it
with uvicorn.

Usage:
    python server_http.py --host 0.0.0.0 --port 5001

    # or, from code / tests
    from server_http import create_app
    app = create_app(settings)
"""

import argparse
import logging
import uuid
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from auth.claims import ClaimsMapper
from auth.clients import ClientRegistry, OAuthClient
from auth.continuation import ContinuationCodec
from auth.endpoints import (
    NO_STORE_HEADERS,
    ServerContext,
    create_discovery_router,
    create_oauth_router,
    create_verification_router,
    error_response,
)
from auth.engine import AuthorizationEngine
from auth.errors import ErrorCode, OAuth2Error, StorageError
from auth.session import SessionManager
from auth.store import CodeTokenStore, InMemoryCodeTokenStore, SQLiteCodeTokenStore
from auth.tokens import TokenSigner
from biometrics.identities import IdentityStore, InMemoryIdentityStore, SQLiteIdentityStore
from biometrics.matcher import LinearScanMatcher
from biometrics.templates import InMemoryTemplateStore, SQLiteTemplateStore, TemplateStore
from utils.config import Settings, get_settings
from utils.logging_setup import configure_logging, reset_correlation_id, set_correlation_id
from utils.sqlite import SQLiteDatabase

logger = logging.getLogger(__name__)

SERVER_NAME = "Face Authentication Server"


def _build_stores(settings: Settings) -> tuple[CodeTokenStore, TemplateStore, IdentityStore]:
    if settings.storage.backend == "sqlite":
        db = SQLiteDatabase(settings.storage.db_path)
        logger.info(f"Using SQLite storage at {settings.storage.db_path}")
        return SQLiteCodeTokenStore(db), SQLiteTemplateStore(db), SQLiteIdentityStore(db)
    logger.info("Using in-memory storage")
    return InMemoryCodeTokenStore(), InMemoryTemplateStore(), InMemoryIdentityStore()


def _build_signer(settings: Settings) -> TokenSigner:
    if settings.tokens.signing_key_path:
        return TokenSigner.from_pem_file(settings.tokens.signing_key_path)
    return TokenSigner.ephemeral()


def _build_client_registry(settings: Settings) -> ClientRegistry:
    security = settings.security
    registry = ClientRegistry(
        register_rate_limit=security.register_rate_limit,
        rate_limit_window=security.rate_limit_window,
    )
    if security.default_client_secret:
        registry.register(
            OAuthClient(
                client_id=security.default_client_id,
                client_secret=security.default_client_secret,
                redirect_uris=tuple(security.default_client_redirect_uris),
                name="Default Client",
            )
        )
    else:
        logger.info("FACEAUTH_DEFAULT_CLIENT_SECRET not set - no static client registered")
    return registry


def create_app(
    settings: Optional[Settings] = None,
    *,
    clients: Optional[ClientRegistry] = None,
    codes: Optional[CodeTokenStore] = None,
    templates: Optional[TemplateStore] = None,
    identities: Optional[IdentityStore] = None,
    signer: Optional[TokenSigner] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Any collaborator not passed in is built from settings.

    Args:
        settings: Configuration; the process-wide settings when omitted
        clients: Client Registry
        codes: Code/Token Store
        templates: Template Store
        identities: Identity Store
        signer: Identity token signing key

    Returns:
        The configured application; the engine is available as app.state.engine
    """
    settings = settings or get_settings()

    if codes is None or templates is None or identities is None:
        default_codes, default_templates, default_identities = _build_stores(settings)
        codes = codes or default_codes
        templates = templates or default_templates
        identities = identities or default_identities

    engine = AuthorizationEngine(
        clients=clients or _build_client_registry(settings),
        codes=codes,
        templates=templates,
        identities=identities,
        matcher=LinearScanMatcher(),
        codec=ContinuationCodec(settings.security.continuation_secret),
        signer=signer or _build_signer(settings),
        claims=ClaimsMapper(id_token_ttl=settings.tokens.id_token_ttl),
        match_threshold=settings.biometrics.match_threshold,
        duplicate_enrollment=settings.biometrics.duplicate_enrollment,
        code_ttl=settings.tokens.code_ttl,
        access_token_ttl=settings.tokens.access_token_ttl,
        refresh_token_ttl=settings.tokens.refresh_token_ttl,
    )
    context = ServerContext(
        engine=engine,
        sessions=SessionManager(settings.security.session_secret, ttl=settings.tokens.session_ttl),
        capture_url=settings.server.capture_url,
        registration_url=settings.server.registration_url,
        post_logout_redirect_uri=settings.server.post_logout_redirect_uri,
        issuer=settings.server.issuer,
        verify_rate_limit=settings.security.verify_rate_limit,
        rate_limit_window=settings.security.rate_limit_window,
        trusted_proxies=tuple(settings.security.trusted_proxies),
    )

    app = FastAPI(title=SERVER_NAME)
    app.state.engine = engine
    app.state.context = context

    cors_origins = settings.server.cors_origins or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        # Browsers refuse credentialed responses for a wildcard origin
        allow_credentials=cors_origins != ["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        # Reuse inbound correlation id if provided
        corr_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        request.state.correlation_id = corr_id
        token = set_correlation_id(corr_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)
        response.headers["X-Request-ID"] = corr_id
        return response

    @app.exception_handler(OAuth2Error)
    async def oauth2_error_handler(request: Request, exc: OAuth2Error):
        return error_response(exc)

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError):
        logger.exception(f"Storage failure on {request.url.path}")
        return error_response(OAuth2Error(ErrorCode.SERVER_ERROR, "Internal server error"))

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.url.path}")
        return JSONResponse(
            status_code=500,
            content={"error": ErrorCode.SERVER_ERROR.value, "error_description": "Internal server error"},
            headers=NO_STORE_HEADERS,
        )

    @app.get("/health")
    async def health():
        return {"status": "ok", "templates": await run_in_threadpool(engine.templates.count)}

    app.include_router(create_discovery_router(context))
    app.include_router(create_oauth_router(context))
    app.include_router(create_verification_router(context))

    logger.info(f"{SERVER_NAME} application created")
    return app


def main():
    """Main entry point for the server."""
    parser = argparse.ArgumentParser(description=SERVER_NAME)
    parser.add_argument("--host", help="Host to bind to (default: FACEAUTH_HOST or 127.0.0.1)")
    parser.add_argument("--port", type=int, help="Port to bind to (default: FACEAUTH_PORT or 5001)")
    parser.add_argument("--log-level", help="Logging level (default: FACEAUTH_LOG_LEVEL or INFO)")
    parser.add_argument("--log-format", choices=["text", "json"], help="Console log format")
    args = parser.parse_args()

    settings = get_settings()
    log_level = (args.log_level or settings.server.log_level).upper()
    configure_logging(
        level=log_level,
        log_format=args.log_format or settings.server.log_format,
        log_dir=settings.server.log_dir,
    )

    host = args.host or settings.server.host
    port = args.port or settings.server.port
    app = create_app(settings)

    logger.info(f"Starting {SERVER_NAME} on {host}:{port}")
    uvicorn.run(app, host=host, port=port, log_level=log_level.lower())


if __name__ == "__main__":
    main()
