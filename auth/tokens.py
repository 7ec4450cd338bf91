"""
Token signing and key publication

Identity tokens are RS256 JWTs signed with a single RSA key whose public half
is published through the JWKS endpoint. Access and refresh tokens are opaque
random strings; their state lives in the Code/Token Store.

Dependencies:
- PyJWT: JWT encoding/decoding
- cryptography: RSA key generation and serialization
- secrets: Secure random generation
"""

import base64
import hashlib
import logging
import os
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

ID_TOKEN_ALGORITHM = "RS256"
BACKCHANNEL_LOGOUT_EVENT = "http://schemas.openid.net/event/backchannel-logout"


class JWKSKey(BaseModel):
    """JSON Web Key structure."""

    kty: str = Field(..., description="Key type")
    use: str = Field(..., description="Public key use")
    kid: str = Field(..., description="Key ID")
    alg: str = Field(..., description="Algorithm")
    n: str = Field(..., description="RSA modulus")
    e: str = Field(..., description="RSA exponent")


class JWKS(BaseModel):
    """JSON Web Key Set."""

    keys: list[JWKSKey] = Field(default_factory=list, description="Keys")


@dataclass(frozen=True)
class LogoutToken:
    """A verified back-channel logout token."""
    subject: str
    # Set when signed by a client; that client's credentials are the only ones affected
    client_id: Optional[str]
    claims: dict[str, Any]


def generate_opaque_token() -> str:
    """Generate an unguessable access/refresh token or authorization code."""
    return secrets.token_urlsafe(32)


def _int_to_base64url(value: int) -> str:
    byte_length = (value.bit_length() + 7) // 8
    return base64.urlsafe_b64encode(value.to_bytes(byte_length, "big")).decode("ascii").rstrip("=")


class TokenSigner:
    """
    Holds the RSA signing key for identity tokens.

    Args:
        private_key: RSA private key; a fresh 2048-bit key when omitted
    """

    def __init__(self, private_key: Optional[rsa.RSAPrivateKey] = None):
        self._private_key = private_key or rsa.generate_private_key(public_exponent=65537, key_size=2048)
        self._public_key = self._private_key.public_key()

        der = self._public_key.public_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        self.key_id = base64.urlsafe_b64encode(hashlib.sha256(der).digest()[:12]).decode("ascii").rstrip("=")

    @classmethod
    def from_pem_file(cls, path: str) -> "TokenSigner":
        """
        Load the signing key from a PEM file, creating the file when absent.

        Args:
            path: Location of an unencrypted PKCS8 private key
        """
        key_path = Path(path)
        if key_path.exists():
            private_key = serialization.load_pem_private_key(key_path.read_bytes(), password=None)
            if not isinstance(private_key, rsa.RSAPrivateKey):
                raise ValueError(f"Signing key at {path} is not an RSA key")
            logger.info(f"Loaded identity token signing key from {path}")
            return cls(private_key)

        signer = cls()
        key_path.parent.mkdir(parents=True, exist_ok=True)
        key_path.write_bytes(signer.private_pem())
        os.chmod(key_path, 0o600)
        logger.info(f"Generated identity token signing key at {path}")
        return signer

    @classmethod
    def ephemeral(cls) -> "TokenSigner":
        logger.warning("No signing key configured - identity tokens will not verify after restart")
        return cls()

    def private_pem(self) -> bytes:
        return self._private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def public_pem(self) -> bytes:
        return self._public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )

    def sign(self, claims: dict[str, Any]) -> str:
        """Sign claims as an RS256 JWT carrying this key's kid."""
        return jwt.encode(claims, self._private_key, algorithm=ID_TOKEN_ALGORITHM, headers={"kid": self.key_id})

    def verify(self, token: str, audience: Optional[str] = None, issuer: Optional[str] = None) -> dict[str, Any]:
        """
        Verify a JWT signed by this server.

        Raises:
            jwt.PyJWTError: bad signature, expired, or wrong audience/issuer
        """
        options = {"verify_aud": audience is not None, "verify_iss": issuer is not None}
        return jwt.decode(
            token,
            self._public_key,
            algorithms=[ID_TOKEN_ALGORITHM],
            audience=audience,
            issuer=issuer,
            options=options,
        )

    def jwks(self) -> JWKS:
        """Get JSON Web Key Set for identity token verification."""
        public_numbers = self._public_key.public_numbers()
        return JWKS(
            keys=[
                JWKSKey(
                    kty="RSA",
                    use="sig",
                    kid=self.key_id,
                    alg=ID_TOKEN_ALGORITHM,
                    n=_int_to_base64url(public_numbers.n),
                    e=_int_to_base64url(public_numbers.e),
                )
            ]
        )

    def verify_logout_token(self, token: str, client_secret_for: Callable[[str], Optional[str]]) -> Optional[LogoutToken]:
        """
        Verify a back-channel logout token.

        RS256 tokens must be signed by this server's key. HS256 tokens must be
        signed with the secret of the registered client named in ``iss`` and
        only reach that client's credentials. Either way the token must carry
        a ``sub``, the back-channel logout event and no ``nonce``, so identity
        tokens are never accepted in its place.

        Args:
            token: The logout_token JWT
            client_secret_for: Looks up a client secret by client id

        Returns:
            The verified logout token, or None when it cannot be verified
        """
        try:
            header = jwt.get_unverified_header(token)
            algorithm = header.get("alg")

            if algorithm == ID_TOKEN_ALGORITHM:
                claims, client_id = self.verify(token), None
            elif algorithm == "HS256":
                unverified = jwt.decode(token, options={"verify_signature": False})
                client_id = unverified.get("iss")
                secret = client_secret_for(client_id) if isinstance(client_id, str) else None
                if not secret:
                    logger.warning("Logout token issuer is not a registered client")
                    return None
                claims = jwt.decode(token, secret, algorithms=["HS256"], options={"verify_aud": False})
            else:
                logger.warning(f"Logout token uses unsupported algorithm {algorithm!r}")
                return None

        except jwt.PyJWTError as e:
            logger.warning(f"Logout token verification failed: {e}")
            return None

        events = claims.get("events")
        if not isinstance(events, dict) or BACKCHANNEL_LOGOUT_EVENT not in events:
            logger.warning("Logout token lacks the back-channel logout event")
            return None
        if "nonce" in claims:
            logger.warning("Logout token carries a nonce")
            return None
        if not isinstance(claims.get("sub"), str):
            logger.warning("Logout token has no subject")
            return None

        return LogoutToken(subject=claims["sub"], client_id=client_id, claims=claims)
