"""
Claims Mapper

Projects a user record into OpenID Connect claims. The claim set always has
the same shape: attributes a user never provided map to their documented
defaults instead of being omitted.
"""

from typing import Any, Optional

from biometrics.models import User

from .clients import OAuthClient

PROFILE_CLAIMS = (
    "sub",
    "name",
    "given_name",
    "family_name",
    "preferred_username",
    "email",
    "email_verified",
    "phone_number",
    "phone_number_verified",
    "face_verified",
    "picture",
    "updated_at",
)

ID_TOKEN_CLAIMS = ("iss", "aud", "exp", "iat", "auth_time", "nonce")


class ClaimsMapper:
    def __init__(self, id_token_ttl: int = 3600):
        self.id_token_ttl = id_token_ttl

    @staticmethod
    def userinfo(user: User) -> dict[str, Any]:
        """Profile claims for the userinfo endpoint."""
        return {
            "sub": user.user_id,
            "name": user.name,
            "given_name": user.given_name,
            "family_name": user.family_name,
            "preferred_username": user.preferred_username or user.user_id,
            "email": user.email,
            "email_verified": user.email_verified,
            "phone_number": user.phone_number or "",
            "phone_number_verified": user.phone_number_verified,
            "face_verified": user.face_verified,
            "picture": user.picture or "",
            "updated_at": int(user.updated_at),
        }

    def project(
        self,
        user: User,
        client: OAuthClient,
        issuer: str,
        now: float,
        nonce: Optional[str] = None,
        auth_time: Optional[float] = None,
    ) -> dict[str, Any]:
        """
        Build identity token claims.

        Args:
            user: Subject of the token
            client: Audience of the token
            issuer: Issuer identifier
            now: Issue time
            nonce: Echoed when the authorization request carried one
            auth_time: When the face match happened; defaults to now

        Returns:
            Registered JWT claims plus the profile claims
        """
        issued_at = int(now)
        claims = {
            "iss": issuer,
            "aud": client.client_id,
            "exp": issued_at + self.id_token_ttl,
            "iat": issued_at,
            "auth_time": int(auth_time if auth_time is not None else now),
        }
        claims.update(self.userinfo(user))
        if nonce:
            claims["nonce"] = nonce
        return claims
