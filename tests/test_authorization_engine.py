"""
Tests for the Authorization Engine state machine

Exercises the engine directly (no HTTP) with in-memory stores and a
controllable clock.
"""

from concurrent.futures import ThreadPoolExecutor
from urllib.parse import parse_qs, urlsplit

import jwt
import pytest

from auth.claims import ClaimsMapper
from auth.clients import OAuthClient
from auth.engine import AuthorizationEngine, BiometricOutcomeKind, append_query
from auth.errors import AuthorizationRedirectError, ErrorCode, OAuth2Error
from auth.store import InMemoryCodeTokenStore, TokenKind
from auth.tokens import BACKCHANNEL_LOGOUT_EVENT
from biometrics.identities import InMemoryIdentityStore
from biometrics.matcher import LinearScanMatcher
from biometrics.models import RegistrationProfile
from biometrics.templates import InMemoryTemplateStore
from utils.sqlite import StorageError

from .conftest import CLIENT_ID, CLIENT_SECRET, REDIRECT_URI, face_vector

ISSUER = "https://auth.example.com"


def query(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


def begin(engine, **overrides):
    params = dict(client_id=CLIENT_ID, redirect_uri=REDIRECT_URI, response_type="code", scope="openid profile",
                  state="state-123", nonce="nonce-abc")
    params.update(overrides)
    return engine.begin_authorization(**params)


def enroll(engine, vector, profile=None):
    outcome = engine.complete_biometric(begin(engine), vector, "enroll", profile)
    return outcome.user_id


def issue_code(engine, vector):
    outcome = engine.complete_biometric(begin(engine), vector, "authenticate")
    return query(outcome.redirect_url)["code"]


def logout_claims(sub, **extra):
    return {"sub": sub, "events": {BACKCHANNEL_LOGOUT_EVENT: {}}, **extra}


class TestBeginAuthorization:
    def test_valid_request_yields_continuation(self, engine, codec):
        token = begin(engine)

        continuation = codec.decode(token)
        assert continuation.client_id == CLIENT_ID
        assert continuation.redirect_uri == REDIRECT_URI
        assert continuation.scope == "openid profile"
        assert continuation.state == "state-123"
        assert continuation.nonce == "nonce-abc"

    def test_empty_scope_defaults_to_client_scopes(self, engine, codec):
        assert codec.decode(begin(engine, scope=None)).scope == "openid profile email"

    @pytest.mark.parametrize("overrides,error", [
        ({"client_id": "unknown"}, ErrorCode.INVALID_CLIENT),
        ({"client_id": None}, ErrorCode.INVALID_CLIENT),
        ({"redirect_uri": None}, ErrorCode.INVALID_REDIRECT_URI),
        ({"redirect_uri": "https://evil.example.com/cb"}, ErrorCode.INVALID_REDIRECT_URI),
    ])
    def test_unsafe_to_redirect(self, engine, overrides, error):
        """Failures with no trustworthy redirect target are reported locally."""
        with pytest.raises(OAuth2Error) as exc_info:
            begin(engine, **overrides)

        assert not isinstance(exc_info.value, AuthorizationRedirectError)
        assert exc_info.value.error == error

    @pytest.mark.parametrize("overrides,error", [
        ({"response_type": "token"}, ErrorCode.UNSUPPORTED_RESPONSE_TYPE),
        ({"response_type": None}, ErrorCode.UNSUPPORTED_RESPONSE_TYPE),
        ({"scope": "openid admin"}, ErrorCode.INVALID_SCOPE),
    ])
    def test_redirected_failures(self, engine, overrides, error):
        with pytest.raises(AuthorizationRedirectError) as exc_info:
            begin(engine, **overrides)

        assert exc_info.value.error == error
        assert exc_info.value.redirect_uri == REDIRECT_URI
        assert exc_info.value.state == "state-123"

    def test_client_without_code_grant(self, engine):
        engine.clients.register(OAuthClient(
            client_id="refresh-only",
            client_secret="s",
            redirect_uris=(REDIRECT_URI,),
            grant_types=frozenset({"refresh_token"}),
        ))

        with pytest.raises(AuthorizationRedirectError) as exc_info:
            begin(engine, client_id="refresh-only")

        assert exc_info.value.error == ErrorCode.UNAUTHORIZED_CLIENT


class TestBiometricStep:
    def test_enroll_then_authenticate(self, engine):
        """Enroll A with T_A, authenticate with P at distance 0.3 -> code for A."""
        user_id = enroll(engine, face_vector(1.0))

        outcome = engine.complete_biometric(begin(engine), face_vector(1.3), "authenticate")

        assert outcome.kind == BiometricOutcomeKind.CODE_ISSUED
        assert outcome.user_id == user_id
        params = query(outcome.redirect_url)
        assert params["state"] == "state-123"
        assert params["code"]
        assert outcome.redirect_url.startswith(REDIRECT_URI + "?")

    def test_enrollment_creates_verified_user_and_template(self, engine):
        profile = RegistrationProfile(first_name="Ada", last_name="Lovelace", email="ada@example.com")

        user_id = enroll(engine, face_vector(1.0), profile)

        user = engine.identities.get(user_id)
        assert user.face_verified is True
        assert user.name == "Ada Lovelace"
        assert user.email_verified is True
        templates = engine.templates.for_user(user_id)
        assert len(templates) == 1
        assert user.template_id == templates[0].template_id

    def test_register_is_an_alias_for_enroll(self, engine):
        outcome = engine.complete_biometric(begin(engine), face_vector(1.0), "register")

        assert engine.identities.get(outcome.user_id) is not None

    def test_no_templates_routes_to_enrollment(self, engine):
        """With nobody enrolled, authentication guides toward enrollment, not access_denied."""
        token = begin(engine)

        outcome = engine.complete_biometric(token, face_vector(1.0), "authenticate")

        assert outcome.kind == BiometricOutcomeKind.ENROLLMENT_REQUIRED
        assert outcome.redirect_url is None
        assert outcome.continuation.state == "state-123"

    def test_no_match_is_access_denied(self, engine):
        enroll(engine, face_vector(1.0))

        with pytest.raises(AuthorizationRedirectError) as exc_info:
            engine.complete_biometric(begin(engine), face_vector(-1.0), "authenticate")

        assert exc_info.value.error == ErrorCode.ACCESS_DENIED
        assert exc_info.value.redirect_uri == REDIRECT_URI
        assert exc_info.value.state == "state-123"

    @pytest.mark.parametrize("descriptor", [None, [], [float("nan")] * 128])
    def test_no_face_detected(self, engine, descriptor):
        with pytest.raises(OAuth2Error) as exc_info:
            engine.complete_biometric(begin(engine), descriptor, "authenticate")

        assert exc_info.value.error == ErrorCode.NO_FACE_DETECTED
        assert exc_info.value.status_code == 422

    def test_tampered_continuation(self, engine):
        token = begin(engine)

        with pytest.raises(OAuth2Error) as exc_info:
            engine.complete_biometric(token[:-2] + "xx", face_vector(1.0), "authenticate")

        assert exc_info.value.error == ErrorCode.MALFORMED_REQUEST

    def test_unknown_action(self, engine):
        with pytest.raises(OAuth2Error) as exc_info:
            engine.complete_biometric(begin(engine), face_vector(1.0), "delete")

        assert exc_info.value.error == ErrorCode.INVALID_REQUEST

    def test_matched_template_without_user_is_denied(self, engine):
        user_id = enroll(engine, face_vector(1.0))
        engine.identities._users.pop(user_id)

        with pytest.raises(AuthorizationRedirectError) as exc_info:
            engine.complete_biometric(begin(engine), face_vector(1.0), "authenticate")

        assert exc_info.value.error == ErrorCode.ACCESS_DENIED


class TestDuplicateEnrollment:
    def make_engine(self, engine, policy):
        return AuthorizationEngine(
            clients=engine.clients,
            codes=engine.codes,
            templates=engine.templates,
            identities=engine.identities,
            matcher=engine.matcher,
            codec=engine.codec,
            signer=engine.signer,
            claims=engine.claims,
            duplicate_enrollment=policy,
            clock=engine.clock,
        )

    def test_reject(self, engine):
        enroll(engine, face_vector(1.0))

        with pytest.raises(AuthorizationRedirectError) as exc_info:
            enroll(engine, face_vector(1.1))

        assert exc_info.value.error == ErrorCode.ACCESS_DENIED
        assert engine.templates.count() == 1

    def test_merge_authenticates_existing_user(self, engine):
        merging = self.make_engine(engine, "merge")
        original = enroll(merging, face_vector(1.0))

        assert enroll(merging, face_vector(1.1)) == original
        assert merging.templates.count() == 1

    def test_allow_creates_new_identity(self, engine):
        allowing = self.make_engine(engine, "allow")
        first = enroll(allowing, face_vector(1.0))

        second = enroll(allowing, face_vector(1.0))

        assert second != first
        assert allowing.templates.count() == 2

    def test_different_face_enrolls_under_reject(self, engine):
        enroll(engine, face_vector(1.0))
        enroll(engine, face_vector(-1.0))

        assert engine.templates.count() == 2

    def test_concurrent_enrollment_of_one_face(self, engine):
        """Simultaneous enrollments of the same face leave exactly one identity."""
        tokens = [begin(engine) for _ in range(8)]

        def attempt(token):
            try:
                return engine.complete_biometric(token, face_vector(1.0), "enroll").user_id
            except AuthorizationRedirectError:
                return None

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(attempt, tokens))

        assert sum(1 for r in results if r is not None) == 1
        assert engine.templates.count() == 1


class FailingIdentityStore(InMemoryIdentityStore):
    def create(self, user):
        raise StorageError("disk full")


class TestEnrollmentCompensation:
    def test_template_removed_when_user_write_fails(self, registry, codec, signer, clock):
        engine = AuthorizationEngine(
            clients=registry,
            codes=InMemoryCodeTokenStore(),
            templates=InMemoryTemplateStore(),
            identities=FailingIdentityStore(),
            matcher=LinearScanMatcher(),
            codec=codec,
            signer=signer,
            claims=ClaimsMapper(),
            clock=clock,
        )

        with pytest.raises(OAuth2Error) as exc_info:
            enroll(engine, face_vector(1.0))

        assert exc_info.value.error == ErrorCode.SERVER_ERROR
        assert engine.templates.count() == 0


class TestCodeExchange:
    @pytest.fixture
    def client(self, engine):
        return engine.authenticate_client(CLIENT_ID, CLIENT_SECRET)

    @pytest.fixture
    def user_id(self, engine):
        return enroll(engine, face_vector(1.0))

    def test_exchange_issues_tokens(self, engine, client, user_id, signer):
        code = issue_code(engine, face_vector(1.3))

        result = engine.exchange_code(client, code, REDIRECT_URI, ISSUER)

        assert result["token_type"] == "Bearer"
        assert result["expires_in"] == 3600
        assert result["refresh_expires_in"] == 30 * 24 * 3600
        assert result["access_token"] != result["refresh_token"]
        claims = signer.verify(result["id_token"], audience=CLIENT_ID, issuer=ISSUER)
        assert claims["sub"] == user_id
        assert claims["face_verified"] is True
        assert claims["nonce"] == "nonce-abc"

        access = engine.codes.get_token(result["access_token"], engine.clock())
        assert access.kind == TokenKind.ACCESS
        assert access.user_id == user_id
        assert access.scope == "openid profile"

    def test_code_is_single_use(self, engine, client, user_id):
        code = issue_code(engine, face_vector(1.0))
        engine.exchange_code(client, code, REDIRECT_URI, ISSUER)

        with pytest.raises(OAuth2Error) as exc_info:
            engine.exchange_code(client, code, REDIRECT_URI, ISSUER)

        assert exc_info.value.error == ErrorCode.INVALID_GRANT

    def test_redirect_uri_binding(self, engine, client, user_id):
        code = issue_code(engine, face_vector(1.0))

        with pytest.raises(OAuth2Error) as exc_info:
            engine.exchange_code(client, code, "https://app.example.com/other", ISSUER)

        assert exc_info.value.error == ErrorCode.INVALID_GRANT

    def test_code_bound_to_client(self, engine, user_id):
        other, _ = engine.clients.register_dynamic({"client_name": "Other", "redirect_uris": [REDIRECT_URI]})
        code = issue_code(engine, face_vector(1.0))

        with pytest.raises(OAuth2Error) as exc_info:
            engine.exchange_code(other, code, REDIRECT_URI, ISSUER)

        assert exc_info.value.error == ErrorCode.INVALID_GRANT

    def test_expired_code(self, engine, client, user_id, clock):
        code = issue_code(engine, face_vector(1.0))
        clock.advance(600)

        with pytest.raises(OAuth2Error) as exc_info:
            engine.exchange_code(client, code, REDIRECT_URI, ISSUER)

        assert exc_info.value.error == ErrorCode.INVALID_GRANT

    def test_missing_code(self, engine, client):
        with pytest.raises(OAuth2Error) as exc_info:
            engine.exchange_code(client, None, REDIRECT_URI, ISSUER)

        assert exc_info.value.error == ErrorCode.INVALID_REQUEST

    def test_grant_not_registered(self, engine, user_id):
        refresh_only = engine.clients.register(OAuthClient(
            client_id="refresh-only", client_secret="s", redirect_uris=(REDIRECT_URI,),
            grant_types=frozenset({"refresh_token"}),
        ))

        with pytest.raises(OAuth2Error) as exc_info:
            engine.exchange_code(refresh_only, "any-code", REDIRECT_URI, ISSUER)

        assert exc_info.value.error == ErrorCode.UNAUTHORIZED_CLIENT


class TestRefreshAndTokenManagement:
    @pytest.fixture
    def client(self, engine):
        return engine.authenticate_client(CLIENT_ID, CLIENT_SECRET)

    @pytest.fixture
    def tokens(self, engine, client):
        enroll(engine, face_vector(1.0))
        code = issue_code(engine, face_vector(1.0))
        return engine.exchange_code(client, code, REDIRECT_URI, ISSUER)

    def test_refresh_rotation(self, engine, client, tokens):
        rotated = engine.refresh(client, tokens["refresh_token"], ISSUER)

        assert rotated["refresh_token"] != tokens["refresh_token"]
        assert rotated["id_token"]
        assert rotated["scope"] == tokens["scope"]
        with pytest.raises(OAuth2Error) as exc_info:
            engine.refresh(client, tokens["refresh_token"], ISSUER)
        assert exc_info.value.error == ErrorCode.INVALID_GRANT
        # The new refresh token still works
        engine.refresh(client, rotated["refresh_token"], ISSUER)

    def test_refresh_after_expiry(self, engine, client, tokens, clock):
        clock.advance(30 * 24 * 3600)

        with pytest.raises(OAuth2Error) as exc_info:
            engine.refresh(client, tokens["refresh_token"], ISSUER)

        assert exc_info.value.error == ErrorCode.INVALID_GRANT

    def test_access_token_cannot_refresh(self, engine, client, tokens):
        with pytest.raises(OAuth2Error) as exc_info:
            engine.refresh(client, tokens["access_token"], ISSUER)

        assert exc_info.value.error == ErrorCode.INVALID_GRANT

    def test_introspect_active_and_inactive(self, engine, tokens, clock):
        info = engine.introspect(tokens["access_token"])

        assert info["active"] is True
        assert info["client_id"] == CLIENT_ID
        assert info["token_type"] == "access_token"
        assert info["scope"] == "openid profile"
        assert info["exp"] - info["iat"] == 3600
        assert info["username"].startswith("User ")

        assert engine.introspect(tokens["refresh_token"])["token_type"] == "refresh_token"
        assert engine.introspect("unknown") == {"active": False}
        clock.advance(3600)
        assert engine.introspect(tokens["access_token"]) == {"active": False}

    def test_introspect_requires_token(self, engine):
        with pytest.raises(OAuth2Error) as exc_info:
            engine.introspect(None)

        assert exc_info.value.error == ErrorCode.INVALID_REQUEST

    def test_revoke_is_idempotent(self, engine, tokens):
        engine.revoke(tokens["access_token"])
        engine.revoke(tokens["access_token"])
        engine.revoke("never-existed")
        engine.revoke(None)

        assert engine.introspect(tokens["access_token"]) == {"active": False}

    def test_userinfo(self, engine, tokens):
        claims = engine.userinfo(tokens["access_token"])

        assert claims["face_verified"] is True
        with pytest.raises(OAuth2Error) as exc_info:
            engine.userinfo(tokens["refresh_token"])
        assert exc_info.value.error == ErrorCode.INVALID_TOKEN
        assert exc_info.value.status_code == 401

    def test_backchannel_logout_purges_subject(self, engine, tokens, signer):
        sub = engine.introspect(tokens["access_token"])["sub"]
        pending = issue_code(engine, face_vector(1.0))

        removed = engine.backchannel_logout(signer.sign(logout_claims(sub, iss=ISSUER)))

        # Access and refresh token; the enrollment code and the pending one
        assert removed == (2, 2)
        assert engine.introspect(tokens["access_token"]) == {"active": False}
        assert engine.introspect(tokens["refresh_token"]) == {"active": False}
        with pytest.raises(OAuth2Error):
            engine.exchange_code(engine.clients.resolve(CLIENT_ID), pending, REDIRECT_URI, ISSUER)

    def test_backchannel_logout_ignores_unverified(self, engine, tokens):
        assert engine.backchannel_logout("garbage") is None
        assert engine.backchannel_logout(None) is None
        assert engine.introspect(tokens["access_token"])["active"] is True

    def test_replayed_id_token_does_not_log_out(self, engine, tokens):
        assert engine.backchannel_logout(tokens["id_token"]) is None
        assert engine.introspect(tokens["access_token"])["active"] is True

    def test_client_signed_logout_reaches_only_that_client(self, engine, tokens):
        """A client can end its own sessions but not those held by other clients."""
        sub = engine.introspect(tokens["access_token"])["sub"]
        other, registration = engine.clients.register_dynamic(
            {"client_name": "Other", "redirect_uris": ["https://other.example.com/cb"]}
        )
        forged = jwt.encode(logout_claims(sub, iss=other.client_id), registration["client_secret"], algorithm="HS256")

        assert engine.backchannel_logout(forged) == (0, 0)
        assert engine.introspect(tokens["access_token"])["active"] is True

        own = jwt.encode(logout_claims(sub, iss=CLIENT_ID), CLIENT_SECRET, algorithm="HS256")
        assert engine.backchannel_logout(own)[0] == 2
        assert engine.introspect(tokens["access_token"]) == {"active": False}


class TestAppendQuery:
    def test_keeps_existing_query(self):
        url = append_query("https://a.example.com/cb?tenant=1", {"code": "abc", "state": None})

        assert url == "https://a.example.com/cb?tenant=1&code=abc"

    def test_encodes_values(self):
        assert query(append_query("/face-auth", {"request": "a b&c"})) == {"request": "a b&c"}
