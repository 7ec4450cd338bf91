"""
Biometric data records.

BiometricTemplate is the stored face descriptor of one enrollment; User is the
profile of the person it belongs to. Both are plain dataclasses so stores can
hand out copies without leaking their internal state.
"""

import time
import uuid
from dataclasses import dataclass, field
from typing import Optional


def default_display_name(user_id: str) -> str:
    return f"User {user_id[:6]}"


def default_email(user_id: str) -> str:
    return f"user-{user_id[:6]}@example.com"


@dataclass(frozen=True)
class BiometricTemplate:
    """An enrolled face descriptor. Never mutated after creation."""
    template_id: str
    user_id: str
    vector: tuple[float, ...]
    enrolled_at: float = field(default_factory=time.time)

    @classmethod
    def create(cls, user_id: str, vector, enrolled_at: Optional[float] = None) -> "BiometricTemplate":
        return cls(
            template_id=uuid.uuid4().hex,
            user_id=user_id,
            vector=tuple(float(v) for v in vector),
            enrolled_at=time.time() if enrolled_at is None else enrolled_at,
        )


@dataclass
class RegistrationProfile:
    """Attributes collected by the registration form before face capture."""
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    username: Optional[str] = None
    phone: Optional[str] = None
    picture: Optional[str] = None


@dataclass
class User:
    """User profile record keyed by an immutable id."""
    user_id: str
    name: str
    given_name: str
    family_name: str
    email: str
    preferred_username: Optional[str] = None
    email_verified: bool = False
    phone_number: Optional[str] = None
    phone_number_verified: bool = False
    face_verified: bool = False
    picture: Optional[str] = None
    template_id: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @classmethod
    def with_defaults(cls, user_id: str, face_verified: bool = True) -> "User":
        """Build a record for an id with no stored profile."""
        return cls(
            user_id=user_id,
            name=default_display_name(user_id),
            given_name="User",
            family_name=user_id[:6],
            email=default_email(user_id),
            face_verified=face_verified,
        )

    @classmethod
    def enroll(
        cls,
        user_id: str,
        template: BiometricTemplate,
        profile: Optional[RegistrationProfile] = None,
        now: Optional[float] = None,
    ) -> "User":
        """
        Build the record for a freshly enrolled face.

        Args:
            user_id: The new identity
            template: The template just stored for this user
            profile: Pending registration attributes, if the user filled the form
            now: Creation timestamp

        Returns:
            A face-verified user with unset attributes defaulted
        """
        now = time.time() if now is None else now
        user = cls.with_defaults(user_id)
        user.template_id = template.template_id
        user.created_at = now
        user.updated_at = now

        if profile is None:
            return user

        if profile.first_name:
            user.given_name = profile.first_name
        if profile.last_name:
            user.family_name = profile.last_name
        if profile.first_name or profile.last_name:
            user.name = " ".join(p for p in (profile.first_name, profile.last_name) if p)
        if profile.email:
            user.email = profile.email
        user.email_verified = True
        user.preferred_username = profile.username
        user.phone_number = profile.phone
        user.phone_number_verified = bool(profile.phone)
        user.picture = profile.picture
        return user
