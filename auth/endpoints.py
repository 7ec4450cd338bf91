"""
OAuth 2.0 / OpenID Connect HTTP Endpoints

FastAPI routers exposing the Authorization Engine.

Endpoints:
- GET  /.well-known/openid-configuration - Provider metadata
- POST /oauth/register - Dynamic Client Registration (RFC 7591)
- GET  /oauth/authorize - Start an authorization request
- POST /face-auth/verify - Face capture submits a descriptor (collaborator boundary)
- POST /oauth/token - authorization_code and refresh_token grants
- GET  /oauth/userinfo - Claims for a bearer access token
- GET  /oauth/jwks - Identity token verification keys
- POST /oauth/revoke - Token revocation (RFC 7009)
- POST /oauth/introspect - Token introspection (RFC 7662)
- POST /oauth/backchannel-logout - OpenID back-channel logout
- GET  /oauth/logout - End the browser session
- GET  /oauth/session - Browser session status

Usage:
    from auth.endpoints import ServerContext, create_oauth_router, create_verification_router

    app = FastAPI()
    app.include_router(create_oauth_router(context))
    app.include_router(create_verification_router(context))
"""

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import unquote_plus

from fastapi import APIRouter, Request, Response, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, ValidationError

from biometrics.models import RegistrationProfile
from utils.ratelimit import allow

from .claims import PROFILE_CLAIMS
from .clients import ClientAuthMethod, GrantType
from .engine import AuthorizationEngine, BiometricOutcomeKind, append_query
from .errors import AuthorizationRedirectError, ErrorCode, OAuth2Error
from .session import SESSION_COOKIE_NAME, SessionManager
from .tokens import ID_TOKEN_ALGORITHM

logger = logging.getLogger(__name__)

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


@dataclass
class ServerContext:
    """Collaborators and settings shared by the HTTP endpoints."""
    engine: AuthorizationEngine
    sessions: SessionManager
    capture_url: str = "/face-auth"
    registration_url: str = "/register"
    post_logout_redirect_uri: str = "http://localhost:3000"
    issuer: Optional[str] = None
    verify_rate_limit: int = 30
    rate_limit_window: int = 60
    trusted_proxies: tuple[str, ...] = ()


class ErrorResponse(BaseModel):
    """OAuth 2.0 error response format as defined in RFC 6749."""

    error: str
    error_description: Optional[str] = None


class ClientRegistrationResponse(BaseModel):
    """Client registration response as defined in RFC 7591."""

    client_id: str
    client_secret: str
    client_id_issued_at: int
    client_secret_expires_at: int = 0
    client_name: str
    redirect_uris: list[str]
    grant_types: list[str]
    response_types: list[str]
    scope: str
    token_endpoint_auth_method: str


class DiscoveryResponse(BaseModel):
    """OpenID Provider Metadata."""

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    userinfo_endpoint: str
    jwks_uri: str
    registration_endpoint: str
    revocation_endpoint: str
    introspection_endpoint: str
    end_session_endpoint: str
    backchannel_logout_supported: bool = True
    response_types_supported: list[str] = ["code"]
    grant_types_supported: list[str] = [g.value for g in GrantType]
    subject_types_supported: list[str] = ["public"]
    id_token_signing_alg_values_supported: list[str] = [ID_TOKEN_ALGORITHM]
    scopes_supported: list[str] = ["openid", "profile", "email"]
    token_endpoint_auth_methods_supported: list[str] = [m.value for m in ClientAuthMethod]
    claims_supported: list[str] = list(PROFILE_CLAIMS)


class RegistrationProfileModel(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    username: Optional[str] = None
    phone: Optional[str] = None
    picture: Optional[str] = None


class BiometricVerificationRequest(BaseModel):
    """Submission from the face capture page."""

    request: Optional[str] = None
    # Validated by the matcher so that a bad descriptor reads as "no face"
    descriptor: Optional[Any] = None
    action: Optional[str] = None
    profile: Optional[RegistrationProfileModel] = None


def get_client_ip(request: Request, trusted_proxies: tuple[str, ...] = ()) -> str:
    """
    Extract client IP address from request.

    Forwarding headers are only honoured when the direct peer is a trusted proxy.
    """
    peer = request.client.host if request.client and request.client.host else None
    if peer is None or peer not in trusted_proxies:
        return peer or "unknown"

    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    return peer


def resolve_issuer(request: Request, configured: Optional[str], trusted_proxies: tuple[str, ...] = ()) -> str:
    """Configured issuer, or the public base URL as seen through a trusted proxy."""
    if configured:
        return configured
    forwarded = {}
    if request.client and request.client.host in trusted_proxies:
        forwarded = request.headers
    proto = forwarded.get("x-forwarded-proto") or request.url.scheme
    host = forwarded.get("x-forwarded-host") or request.headers.get("host") or request.url.netloc
    return f"{proto.split(',')[0].strip()}://{host.split(',')[0].strip()}"


def error_response(error: OAuth2Error, headers: Optional[dict[str, str]] = None) -> JSONResponse:
    """Render an OAuth2Error as a JSON error body."""
    body = ErrorResponse(error=error.error.value, error_description=error.description or None)
    return JSONResponse(
        status_code=error.status_code,
        content=body.model_dump(exclude_none=True),
        headers={**NO_STORE_HEADERS, **(headers or {})},
    )


def error_redirect(error: AuthorizationRedirectError) -> RedirectResponse:
    """Report an authorization failure to the client via its redirect URI."""
    location = append_query(
        error.redirect_uri,
        {"error": error.error.value, "error_description": error.description, "state": error.state},
    )
    return RedirectResponse(url=location, status_code=status.HTTP_302_FOUND)


async def read_params(request: Request) -> dict[str, Any]:
    """Read a JSON or form-encoded request body as a flat dict."""
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise OAuth2Error(ErrorCode.INVALID_REQUEST, "Request body is not valid JSON") from e
        if not isinstance(body, dict):
            raise OAuth2Error(ErrorCode.INVALID_REQUEST, "Request body must be a JSON object")
        return body

    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


def str_param(params: dict[str, Any], name: str) -> Optional[str]:
    """A body parameter if it is a string; JSON bodies may carry other types."""
    value = params.get(name)
    return value if isinstance(value, str) else None


def parse_basic_auth(request: Request) -> Optional[tuple[str, str]]:
    """Client credentials from an HTTP Basic Authorization header, if present."""
    header = request.headers.get("authorization")
    if not header or not header.lower().startswith("basic "):
        return None
    try:
        decoded = base64.b64decode(header[6:].strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise OAuth2Error(ErrorCode.INVALID_CLIENT, "Malformed Basic credentials") from e
    client_id, sep, client_secret = decoded.partition(":")
    if not sep:
        raise OAuth2Error(ErrorCode.INVALID_CLIENT, "Malformed Basic credentials")
    return unquote_plus(client_id), unquote_plus(client_secret)


def get_bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization")
    if header and header.lower().startswith("bearer "):
        return header[7:].strip()
    return None


def create_discovery_router(context: ServerContext) -> APIRouter:
    router = APIRouter()

    @router.get("/.well-known/openid-configuration", response_model=DiscoveryResponse)
    async def openid_configuration(request: Request):
        """OpenID Provider Metadata."""
        issuer = resolve_issuer(request, context.issuer, context.trusted_proxies)
        return DiscoveryResponse(
            issuer=issuer,
            authorization_endpoint=f"{issuer}/oauth/authorize",
            token_endpoint=f"{issuer}/oauth/token",
            userinfo_endpoint=f"{issuer}/oauth/userinfo",
            jwks_uri=f"{issuer}/oauth/jwks",
            registration_endpoint=f"{issuer}/oauth/register",
            revocation_endpoint=f"{issuer}/oauth/revoke",
            introspection_endpoint=f"{issuer}/oauth/introspect",
            end_session_endpoint=f"{issuer}/oauth/logout",
        )

    return router


def create_oauth_router(context: ServerContext) -> APIRouter:
    """Create FastAPI router with the /oauth endpoints."""

    router = APIRouter(prefix="/oauth", tags=["oauth"])
    engine = context.engine

    @router.post("/register",
                 response_model=ClientRegistrationResponse,
                 status_code=status.HTTP_201_CREATED,
                 summary="Register OAuth 2.0 Client")
    async def register_client(request: Request):
        """Register a new OAuth 2.0 client."""
        client_ip = get_client_ip(request, context.trusted_proxies)
        try:
            body = await read_params(request)
            _client, registration = await run_in_threadpool(engine.clients.register_dynamic, body, client_ip)
        except OAuth2Error as e:
            error = e
            if e.error == ErrorCode.INVALID_REQUEST:
                error = OAuth2Error(ErrorCode.INVALID_CLIENT_METADATA, e.description)
            logger.warning(f"Client registration from {client_ip} failed: {error}")
            return error_response(error)

        logger.info(f"Successfully registered client: {registration['client_id']} from {client_ip}")
        return JSONResponse(
            status_code=status.HTTP_201_CREATED,
            content=ClientRegistrationResponse(**registration).model_dump(),
            headers=NO_STORE_HEADERS,
        )

    @router.get("/authorize")
    async def authorize(
        request: Request,
        client_id: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        response_type: Optional[str] = None,
        scope: Optional[str] = None,
        state: Optional[str] = None,
        nonce: Optional[str] = None,
    ):
        """Validate the request and send the browser to face capture."""
        try:
            continuation = engine.begin_authorization(client_id, redirect_uri, response_type, scope, state, nonce)
        except AuthorizationRedirectError as e:
            logger.info(f"Authorization request from client {client_id} refused: {e.error.value}")
            return error_redirect(e)
        except OAuth2Error as e:
            logger.warning(f"Authorization request cannot be redirected: {e}")
            return error_response(e)

        return RedirectResponse(
            url=append_query(context.capture_url, {"request": continuation}),
            status_code=status.HTTP_302_FOUND,
        )

    @router.post("/token")
    async def token(request: Request):
        """Token endpoint for the authorization_code and refresh_token grants."""
        challenge = None
        try:
            params = await read_params(request)

            grant_type = str_param(params, "grant_type")
            if not grant_type:
                raise OAuth2Error(ErrorCode.INVALID_REQUEST, "Missing grant_type")
            if grant_type not in {g.value for g in GrantType}:
                raise OAuth2Error(ErrorCode.UNSUPPORTED_GRANT_TYPE, f"Unsupported grant type: {grant_type}")

            if request.headers.get("authorization", "").lower().startswith("basic "):
                challenge = {"WWW-Authenticate": 'Basic realm="oauth"'}
            basic = parse_basic_auth(request)
            if basic:
                client_id, client_secret = basic
            else:
                client_id, client_secret = str_param(params, "client_id"), str_param(params, "client_secret")
            client = engine.authenticate_client(client_id, client_secret)

            issuer = resolve_issuer(request, context.issuer, context.trusted_proxies)
            if grant_type == GrantType.AUTHORIZATION_CODE.value:
                result = await run_in_threadpool(
                    engine.exchange_code,
                    client,
                    str_param(params, "code"),
                    str_param(params, "redirect_uri"),
                    issuer,
                )
            else:
                result = await run_in_threadpool(engine.refresh, client, str_param(params, "refresh_token"), issuer)

        except OAuth2Error as e:
            logger.warning(f"Token request failed: {e.error.value}")
            headers = challenge if e.error == ErrorCode.INVALID_CLIENT else None
            return error_response(e, headers)

        return JSONResponse(content=result, headers=NO_STORE_HEADERS)

    @router.api_route("/userinfo", methods=["GET", "POST"])
    async def userinfo(request: Request):
        """Claims about the user the access token was issued for."""
        try:
            claims = await run_in_threadpool(engine.userinfo, get_bearer_token(request))
        except OAuth2Error as e:
            return error_response(
                e, {"WWW-Authenticate": f'Bearer error="{e.error.value}", error_description="{e.description}"'}
            )
        return JSONResponse(content=claims, headers=NO_STORE_HEADERS)

    @router.get("/jwks")
    async def jwks():
        return engine.signer.jwks().model_dump()

    @router.post("/revoke")
    async def revoke(request: Request):
        """Token revocation; always succeeds."""
        try:
            params = await read_params(request)
        except OAuth2Error as e:
            logger.debug(f"Unreadable revocation request: {e}")
            params = {}
        await run_in_threadpool(engine.revoke, str_param(params, "token"))
        return Response(status_code=status.HTTP_200_OK, headers=NO_STORE_HEADERS)

    @router.post("/introspect")
    async def introspect(request: Request):
        try:
            params = await read_params(request)
            result = await run_in_threadpool(engine.introspect, str_param(params, "token"))
        except OAuth2Error as e:
            return error_response(e)
        return JSONResponse(content=result, headers=NO_STORE_HEADERS)

    @router.post("/backchannel-logout")
    async def backchannel_logout(request: Request):
        """Purge the tokens of a subject named in a signed logout token."""
        try:
            params = await read_params(request)
        except OAuth2Error as e:
            logger.debug(f"Unreadable logout request: {e}")
            params = {}
        await run_in_threadpool(engine.backchannel_logout, str_param(params, "logout_token"))
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @router.get("/logout")
    async def logout(
        request: Request, post_logout_redirect_uri: Optional[str] = None, state: Optional[str] = None
    ):
        """End the browser session and return to the client."""
        session = context.sessions.read(request.cookies.get(SESSION_COOKIE_NAME))
        if session:
            logger.info(f"User {session.user_id} logged out")

        target = context.post_logout_redirect_uri
        if post_logout_redirect_uri and engine.clients.is_known_redirect(post_logout_redirect_uri):
            target = append_query(post_logout_redirect_uri, {"state": state})

        response = RedirectResponse(url=target, status_code=status.HTTP_302_FOUND)
        response.delete_cookie(SESSION_COOKIE_NAME, path="/")
        return response

    @router.get("/session")
    async def session_status(request: Request):
        session = context.sessions.read(request.cookies.get(SESSION_COOKIE_NAME))
        if session is None:
            return JSONResponse(content={"authenticated": False, "user": None, "expires": None})
        user = await run_in_threadpool(engine.lookup_user, session.user_id)
        return JSONResponse(
            content={
                "authenticated": True,
                "user": engine.claims.userinfo(user),
                "expires": session.expires_at,
            },
            headers=NO_STORE_HEADERS,
        )

    return router


def create_verification_router(context: ServerContext) -> APIRouter:
    """Create the router the face capture page submits descriptors to."""

    router = APIRouter(prefix="/face-auth", tags=["biometrics"])
    engine = context.engine

    @router.post("/verify")
    async def verify(request: Request):
        """Authenticate or enroll a face for a pending authorization request."""
        client_ip = get_client_ip(request, context.trusted_proxies)
        allowed = await run_in_threadpool(
            allow,
            scope=f"face_verify:{client_ip}",
            max_per_window=context.verify_rate_limit,
            window_seconds=context.rate_limit_window,
        )
        if not allowed:
            logger.warning(f"Face verification rate limit exceeded for {client_ip}")
            return error_response(OAuth2Error(ErrorCode.TOO_MANY_REQUESTS, "Too many verification attempts"))

        try:
            body = await read_params(request)
            try:
                submission = BiometricVerificationRequest.model_validate(body)
            except ValidationError as e:
                raise OAuth2Error(ErrorCode.INVALID_REQUEST, "Invalid verification request") from e

            profile = RegistrationProfile(**submission.profile.model_dump()) if submission.profile else None
            outcome = await run_in_threadpool(
                engine.complete_biometric, submission.request, submission.descriptor, submission.action, profile
            )
        except AuthorizationRedirectError as e:
            logger.info(f"Face verification from {client_ip} denied: {e.description}")
            return error_redirect(e)
        except OAuth2Error as e:
            logger.info(f"Face verification from {client_ip} failed: {e.error.value}")
            return error_response(e)

        if outcome.kind == BiometricOutcomeKind.ENROLLMENT_REQUIRED:
            return RedirectResponse(
                url=append_query(context.registration_url, {"request": submission.request}),
                status_code=status.HTTP_303_SEE_OTHER,
            )

        cookie, session = context.sessions.issue(outcome.user_id)
        response = RedirectResponse(url=outcome.redirect_url, status_code=status.HTTP_302_FOUND)
        response.set_cookie(
            SESSION_COOKIE_NAME,
            cookie,
            max_age=context.sessions.ttl,
            httponly=True,
            samesite="lax",
            secure=resolve_issuer(request, context.issuer, context.trusted_proxies).startswith("https://"),
            path="/",
        )
        return response

    return router
