"""
Tests for the Claims Mapper
"""

import pytest

from auth.claims import ID_TOKEN_CLAIMS, PROFILE_CLAIMS, ClaimsMapper
from biometrics.models import User


@pytest.fixture
def mapper():
    return ClaimsMapper(id_token_ttl=3600)


class TestClaimsMapper:
    def test_project_includes_registered_claims(self, mapper, test_client_registration):
        user = User.with_defaults("abcdef123456")

        claims = mapper.project(user, test_client_registration, "https://issuer.example.com", now=1000.5, nonce="n-1")

        assert claims["sub"] == "abcdef123456"
        assert claims["iss"] == "https://issuer.example.com"
        assert claims["aud"] == test_client_registration.client_id
        assert claims["iat"] == 1000
        assert claims["exp"] == 4600
        assert claims["auth_time"] == 1000
        assert claims["nonce"] == "n-1"
        assert claims["face_verified"] is True

    def test_claim_set_shape_is_stable(self, mapper, test_client_registration):
        """Users without optional attributes still get every claim."""
        sparse = User.with_defaults("abcdef")

        claims = mapper.project(sparse, test_client_registration, "https://issuer", now=0, nonce="n")

        assert set(claims) == set(PROFILE_CLAIMS) | set(ID_TOKEN_CLAIMS)
        assert claims["name"] == "User abcdef"
        assert claims["email"] == "user-abcdef@example.com"
        assert claims["preferred_username"] == "abcdef"

    def test_nonce_omitted_when_not_requested(self, mapper, test_client_registration):
        claims = mapper.project(User.with_defaults("abcdef"), test_client_registration, "https://issuer", now=0)

        assert "nonce" not in claims

    def test_auth_time_carried_forward(self, mapper, test_client_registration):
        claims = mapper.project(
            User.with_defaults("abcdef"), test_client_registration, "https://issuer", now=5000, auth_time=1000
        )

        assert claims["auth_time"] == 1000
        assert claims["iat"] == 5000

    def test_userinfo_has_no_token_claims(self):
        claims = ClaimsMapper.userinfo(User.with_defaults("abcdef"))

        assert set(claims) == set(PROFILE_CLAIMS)
