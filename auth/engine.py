"""
Authorization Engine

Orchestrates the authorization code flow with a face match in place of a
password:

    REQUESTED -> AWAITING_BIOMETRIC -> CODE_ISSUED | DENIED -> EXCHANGED

- begin_authorization validates the request against the Client Registry and
  hands back a signed continuation for the face capture page.
- complete_biometric authenticates (Matcher over every template) or enrolls
  (new template and user) and issues a 10 minute, single-use code.
- exchange_code and refresh mint opaque access/refresh tokens through the
  Code/Token Store plus an RS256 identity token from the Claims Mapper.
- revoke, introspect, userinfo and backchannel_logout manage issued tokens.

The engine raises OAuth2Error / AuthorizationRedirectError and never builds
HTTP responses itself.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

from biometrics.identities import IdentityStore
from biometrics.matcher import DEFAULT_THRESHOLD, Matcher, as_descriptor
from biometrics.models import BiometricTemplate, RegistrationProfile, User
from biometrics.templates import TemplateStore

from .claims import ClaimsMapper
from .clients import ClientRegistry, GrantType, OAuthClient
from .continuation import AuthorizationContinuation, ContinuationCodec
from .errors import AuthorizationRedirectError, ErrorCode, OAuth2Error
from .store import AuthorizationCode, CodeTokenStore, Token, TokenKind
from .tokens import TokenSigner, generate_opaque_token

logger = logging.getLogger(__name__)


class BiometricAction(str, Enum):
    AUTHENTICATE = "authenticate"
    ENROLL = "enroll"

    @classmethod
    def parse(cls, value: Optional[str]) -> "BiometricAction":
        if value == "register":
            return cls.ENROLL
        try:
            return cls(value or cls.AUTHENTICATE.value)
        except ValueError as e:
            raise OAuth2Error(ErrorCode.INVALID_REQUEST, f"Unknown action: {value}") from e


class DuplicateEnrollmentPolicy(str, Enum):
    REJECT = "reject"
    MERGE = "merge"
    ALLOW = "allow"


class BiometricOutcomeKind(str, Enum):
    CODE_ISSUED = "code_issued"
    ENROLLMENT_REQUIRED = "enrollment_required"


@dataclass(frozen=True)
class BiometricOutcome:
    """Result of the biometric step that is not an error."""
    kind: BiometricOutcomeKind
    continuation: AuthorizationContinuation
    redirect_url: Optional[str] = None
    user_id: Optional[str] = None


def append_query(uri: str, params: dict[str, Optional[str]]) -> str:
    """Add query parameters to a URI, keeping any it already has."""
    params = {k: v for k, v in params.items() if v is not None}
    scheme, netloc, path, query, fragment = urlsplit(uri)
    extra = urlencode(params)
    query = f"{query}&{extra}" if query else extra
    return urlunsplit((scheme, netloc, path, query, fragment))


class AuthorizationEngine:
    """
    OAuth 2.0 / OpenID Connect protocol state machine.

    Every store is passed in explicitly; the engine holds no credential state
    of its own.
    """

    def __init__(
        self,
        clients: ClientRegistry,
        codes: CodeTokenStore,
        templates: TemplateStore,
        identities: IdentityStore,
        matcher: Matcher,
        codec: ContinuationCodec,
        signer: TokenSigner,
        claims: ClaimsMapper,
        match_threshold: float = DEFAULT_THRESHOLD,
        duplicate_enrollment: str = DuplicateEnrollmentPolicy.REJECT.value,
        code_ttl: int = 600,
        access_token_ttl: int = 3600,
        refresh_token_ttl: int = 30 * 24 * 3600,
        clock: Callable[[], float] = time.time,
    ):
        self.clients = clients
        self.codes = codes
        self.templates = templates
        self.identities = identities
        self.matcher = matcher
        self.codec = codec
        self.signer = signer
        self.claims = claims
        self.match_threshold = match_threshold
        self.duplicate_enrollment = DuplicateEnrollmentPolicy(duplicate_enrollment)
        self.code_ttl = code_ttl
        self.access_token_ttl = access_token_ttl
        self.refresh_token_ttl = refresh_token_ttl
        self.clock = clock
        # Duplicate check and template write must not interleave
        self._enroll_lock = threading.Lock()

    # Authorization request

    def begin_authorization(
        self,
        client_id: Optional[str],
        redirect_uri: Optional[str],
        response_type: Optional[str],
        scope: Optional[str] = None,
        state: Optional[str] = None,
        nonce: Optional[str] = None,
    ) -> str:
        """
        Validate an authorization request.

        Returns:
            The continuation token to hand to the face capture page

        Raises:
            OAuth2Error: unknown client or unusable redirect URI (no safe redirect)
            AuthorizationRedirectError: any other failure, reported to the client
        """
        client = self.clients.resolve(client_id)
        if client is None:
            raise OAuth2Error(ErrorCode.INVALID_CLIENT, "Unknown client")
        if not redirect_uri:
            raise OAuth2Error(ErrorCode.INVALID_REDIRECT_URI, "Missing redirect_uri")
        if not self.clients.validate_redirect(client, redirect_uri):
            raise OAuth2Error(ErrorCode.INVALID_REDIRECT_URI, "redirect_uri is not registered for this client")

        if response_type != "code":
            raise AuthorizationRedirectError(
                ErrorCode.UNSUPPORTED_RESPONSE_TYPE, "Only 'code' response type supported", redirect_uri, state
            )
        if GrantType.AUTHORIZATION_CODE.value not in client.grant_types:
            raise AuthorizationRedirectError(
                ErrorCode.UNAUTHORIZED_CLIENT, "Client may not use the authorization code grant", redirect_uri, state
            )

        requested = (scope or "").split()
        if not requested:
            requested = list(client.scopes)
        elif not set(requested).issubset(client.scopes):
            raise AuthorizationRedirectError(ErrorCode.INVALID_SCOPE, "Requested scope not allowed", redirect_uri, state)

        continuation = AuthorizationContinuation(
            client_id=client.client_id,
            redirect_uri=redirect_uri,
            scope=" ".join(requested),
            state=state,
            nonce=nonce,
        )
        logger.info(f"Authorization request accepted for client {client.client_id}")
        return self.codec.encode(continuation)

    def resume(self, token: Optional[str]) -> tuple[AuthorizationContinuation, OAuthClient]:
        """Decode a continuation and re-check it against the registry."""
        continuation = self.codec.decode(token)
        client = self.clients.resolve(continuation.client_id)
        if client is None:
            raise OAuth2Error(ErrorCode.INVALID_CLIENT, "Unknown client")
        if not self.clients.validate_redirect(client, continuation.redirect_uri):
            raise OAuth2Error(ErrorCode.INVALID_REDIRECT_URI, "redirect_uri is not registered for this client")
        return continuation, client

    # Biometric step

    def complete_biometric(
        self,
        token: Optional[str],
        descriptor: Any,
        action: Optional[str] = None,
        profile: Optional[RegistrationProfile] = None,
    ) -> BiometricOutcome:
        """
        Authenticate or enroll the face behind an authorization request.

        Args:
            token: Continuation token from begin_authorization
            descriptor: Face descriptor from the capture page
            action: "authenticate" or "enroll" ("register" is accepted too)
            profile: Registration attributes for enrollment

        Returns:
            CODE_ISSUED with the client redirect, or ENROLLMENT_REQUIRED when
            there are no templates to match against

        Raises:
            OAuth2Error: malformed continuation, no usable face, storage failure
            AuthorizationRedirectError: access_denied
        """
        continuation, _client = self.resume(token)
        biometric_action = BiometricAction.parse(action)

        sample = as_descriptor(descriptor)
        if sample is None:
            raise OAuth2Error(ErrorCode.NO_FACE_DETECTED, "No face detected, please try again")

        if biometric_action == BiometricAction.ENROLL:
            user_id = self._enroll(continuation, sample, profile)
        else:
            candidates = self.templates.all()
            if not candidates:
                logger.info("No enrolled faces, routing to enrollment")
                return BiometricOutcome(kind=BiometricOutcomeKind.ENROLLMENT_REQUIRED, continuation=continuation)
            user_id = self._authenticate(continuation, sample, candidates)

        code = self.issue_code(continuation, user_id)
        redirect_url = append_query(continuation.redirect_uri, {"code": code.code, "state": continuation.state})
        return BiometricOutcome(
            kind=BiometricOutcomeKind.CODE_ISSUED,
            continuation=continuation,
            redirect_url=redirect_url,
            user_id=user_id,
        )

    def _deny(self, continuation: AuthorizationContinuation, description: str) -> AuthorizationRedirectError:
        return AuthorizationRedirectError(
            ErrorCode.ACCESS_DENIED, description, continuation.redirect_uri, continuation.state
        )

    def _authenticate(self, continuation: AuthorizationContinuation, sample, candidates: list[BiometricTemplate]) -> str:
        result = self.matcher.match(sample, candidates, self.match_threshold)
        if not result.matched:
            raise self._deny(continuation, "Face not recognized")

        if self.identities.get(result.user_id) is None:
            logger.error(f"Template {result.template.template_id} matched but user {result.user_id} has no record")
            raise self._deny(continuation, "Face not recognized")

        logger.info(f"Authenticated user {result.user_id} for client {continuation.client_id}")
        return result.user_id

    def _enroll(self, continuation: AuthorizationContinuation, sample, profile: Optional[RegistrationProfile]) -> str:
        with self._enroll_lock:
            return self._enroll_locked(continuation, sample, profile)

    def _enroll_locked(
        self, continuation: AuthorizationContinuation, sample, profile: Optional[RegistrationProfile]
    ) -> str:
        if self.duplicate_enrollment != DuplicateEnrollmentPolicy.ALLOW:
            candidates = self.templates.all()
            if candidates:
                existing = self.matcher.match(sample, candidates, self.match_threshold)
                if existing.matched:
                    if self.duplicate_enrollment == DuplicateEnrollmentPolicy.REJECT:
                        logger.info(f"Rejected enrollment of a face already enrolled for {existing.user_id}")
                        raise self._deny(continuation, "Face already enrolled")
                    return self._authenticate(continuation, sample, candidates)

        now = self.clock()
        user_id = str(uuid.uuid4())
        template = BiometricTemplate.create(user_id, sample.tolist(), enrolled_at=now)
        self.templates.add(template)
        try:
            self.identities.create(User.enroll(user_id, template, profile, now=now))
        except Exception as e:
            # Template without a user would match but never authenticate
            self.templates.remove(template.template_id)
            logger.error(f"Enrollment of user {user_id} failed, template removed: {e}")
            raise OAuth2Error(ErrorCode.SERVER_ERROR, "Enrollment failed") from e

        logger.info(f"Enrolled new user {user_id}")
        return user_id

    def issue_code(self, continuation: AuthorizationContinuation, user_id: str) -> AuthorizationCode:
        now = self.clock()
        code = AuthorizationCode(
            code=generate_opaque_token(),
            client_id=continuation.client_id,
            user_id=user_id,
            redirect_uri=continuation.redirect_uri,
            scope=continuation.scope,
            nonce=continuation.nonce,
            auth_time=now,
            issued_at=now,
            expires_at=now + self.code_ttl,
        )
        self.codes.save_code(code)
        logger.info(f"Issued authorization code for user {user_id} to client {continuation.client_id}")
        return code

    # Token endpoint

    def authenticate_client(self, client_id: Optional[str], client_secret: Optional[str]) -> OAuthClient:
        return self.clients.authenticate(client_id, client_secret)

    @staticmethod
    def _require_grant(client: OAuthClient, grant: GrantType) -> None:
        if grant.value not in client.grant_types:
            raise OAuth2Error(ErrorCode.UNAUTHORIZED_CLIENT, f"Client is not registered for {grant.value}")

    def exchange_code(
        self, client: OAuthClient, code: Optional[str], redirect_uri: Optional[str], issuer: str
    ) -> dict[str, Any]:
        """
        Exchange an authorization code for tokens.

        Raises:
            OAuth2Error: invalid_request, unauthorized_client or invalid_grant
        """
        self._require_grant(client, GrantType.AUTHORIZATION_CODE)
        if not code:
            raise OAuth2Error(ErrorCode.INVALID_REQUEST, "Missing code")

        auth_code = self.codes.consume_code(code, client.client_id, redirect_uri or "", self.clock())
        if auth_code is None:
            logger.warning(f"Rejected authorization code exchange for client {client.client_id}")
            raise OAuth2Error(ErrorCode.INVALID_GRANT, "Invalid, expired or already used authorization code")

        return self._mint(client, auth_code.user_id, auth_code.scope, issuer, auth_code.nonce, auth_code.auth_time)

    def refresh(self, client: OAuthClient, refresh_token: Optional[str], issuer: str) -> dict[str, Any]:
        """Rotate a refresh token into a new access/refresh pair."""
        self._require_grant(client, GrantType.REFRESH_TOKEN)
        if not refresh_token:
            raise OAuth2Error(ErrorCode.INVALID_REQUEST, "Missing refresh_token")

        old = self.codes.consume_refresh_token(refresh_token, client.client_id, self.clock())
        if old is None:
            logger.warning(f"Rejected refresh token for client {client.client_id}")
            raise OAuth2Error(ErrorCode.INVALID_GRANT, "Invalid or expired refresh token")

        return self._mint(client, old.user_id, old.scope, issuer, None, old.auth_time)

    def _mint(
        self,
        client: OAuthClient,
        user_id: str,
        scope: str,
        issuer: str,
        nonce: Optional[str],
        auth_time: Optional[float],
    ) -> dict[str, Any]:
        now = self.clock()
        access = Token(
            value=generate_opaque_token(),
            kind=TokenKind.ACCESS,
            user_id=user_id,
            client_id=client.client_id,
            scope=scope,
            issued_at=now,
            expires_at=now + self.access_token_ttl,
            auth_time=auth_time,
        )
        refresh = Token(
            value=generate_opaque_token(),
            kind=TokenKind.REFRESH,
            user_id=user_id,
            client_id=client.client_id,
            scope=scope,
            issued_at=now,
            expires_at=now + self.refresh_token_ttl,
            auth_time=auth_time,
        )
        self.codes.save_token(access)
        self.codes.save_token(refresh)

        user = self.lookup_user(user_id)
        id_token = self.signer.sign(self.claims.project(user, client, issuer, now, nonce=nonce, auth_time=auth_time))

        logger.info(f"Issued tokens for user {user_id} to client {client.client_id}")
        return {
            "access_token": access.value,
            "token_type": "Bearer",
            "expires_in": self.access_token_ttl,
            "refresh_token": refresh.value,
            "refresh_expires_in": self.refresh_token_ttl,
            "id_token": id_token,
            "scope": scope,
        }

    # Token management

    def lookup_user(self, user_id: str) -> User:
        """The stored user, or a record synthesized from the id."""
        return self.identities.get(user_id) or User.with_defaults(user_id)

    def revoke(self, token: Optional[str]) -> None:
        """Revoke a token; unknown or already revoked values succeed silently."""
        if token and self.codes.delete_token(token):
            logger.info("Token revoked")

    def introspect(self, token: Optional[str]) -> dict[str, Any]:
        if not token:
            raise OAuth2Error(ErrorCode.INVALID_REQUEST, "Missing token")

        stored = self.codes.get_token(token, self.clock())
        if stored is None:
            return {"active": False}

        return {
            "active": True,
            "client_id": stored.client_id,
            "username": self.lookup_user(stored.user_id).name,
            "scope": stored.scope,
            "sub": stored.user_id,
            "exp": int(stored.expires_at),
            "iat": int(stored.issued_at),
            "token_type": stored.kind.value,
        }

    def userinfo(self, access_token: Optional[str]) -> dict[str, Any]:
        if not access_token:
            raise OAuth2Error(ErrorCode.INVALID_TOKEN, "Missing access token")
        stored = self.codes.get_token(access_token, self.clock())
        if stored is None or stored.kind != TokenKind.ACCESS:
            raise OAuth2Error(ErrorCode.INVALID_TOKEN, "Invalid or expired access token")
        return self.claims.userinfo(self.lookup_user(stored.user_id))

    def _client_secret(self, client_id: str) -> Optional[str]:
        client = self.clients.resolve(client_id)
        return client.client_secret if client else None

    def backchannel_logout(self, logout_token: Optional[str]) -> Optional[tuple[int, int]]:
        """
        Purge the tokens and pending codes of the subject of a verified logout token.

        A token signed by this server reaches every client; one signed by a
        client reaches only that client's credentials.

        Returns:
            (tokens, codes) removed, or None when nothing was purged
        """
        if not logout_token:
            return None
        verified = self.signer.verify_logout_token(logout_token, self._client_secret)
        if verified is None:
            return None

        removed = self.codes.purge_subject(verified.subject, client_id=verified.client_id)
        scope = f"client {verified.client_id}" if verified.client_id else "all clients"
        logger.info(
            f"Backchannel logout for user {verified.subject} ({scope}): "
            f"{removed[0]} tokens, {removed[1]} codes removed"
        )
        return removed
