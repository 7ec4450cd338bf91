"""
Tests for the Template and Identity stores (both backends)
"""

import pytest

from biometrics.identities import InMemoryIdentityStore, SQLiteIdentityStore
from biometrics.models import BiometricTemplate, RegistrationProfile, User
from biometrics.templates import InMemoryTemplateStore, SQLiteTemplateStore
from utils.sqlite import SQLiteDatabase, StorageError


@pytest.fixture(params=["memory", "sqlite"])
def template_store(request, tmp_path):
    if request.param == "memory":
        return InMemoryTemplateStore()
    return SQLiteTemplateStore(SQLiteDatabase(str(tmp_path / "templates.db")))


@pytest.fixture(params=["memory", "sqlite"])
def identity_store(request, tmp_path):
    if request.param == "memory":
        return InMemoryIdentityStore()
    return SQLiteIdentityStore(SQLiteDatabase(str(tmp_path / "users.db")))


class TestTemplateStore:
    def test_add_and_enumerate_in_enrollment_order(self, template_store):
        first = BiometricTemplate.create("alice", [0.1, 0.2, 0.3])
        second = BiometricTemplate.create("bob", [0.4, 0.5, 0.6])
        third = BiometricTemplate.create("alice", [0.7, 0.8, 0.9])
        for template in (first, second, third):
            template_store.add(template)

        assert [t.template_id for t in template_store.all()] == [
            first.template_id, second.template_id, third.template_id
        ]
        assert template_store.count() == 3
        assert [t.template_id for t in template_store.for_user("alice")] == [first.template_id, third.template_id]

    def test_vector_round_trips_exactly(self, template_store):
        vector = [0.123456789012345, -1e-9, 42.0]
        template = BiometricTemplate.create("alice", vector)
        template_store.add(template)

        assert template_store.all()[0].vector == tuple(vector)

    def test_duplicate_template_id_rejected(self, template_store):
        template = BiometricTemplate.create("alice", [0.1])
        template_store.add(template)

        with pytest.raises((ValueError, StorageError)):
            template_store.add(template)

    def test_remove(self, template_store):
        template = BiometricTemplate.create("alice", [0.1])
        template_store.add(template)

        assert template_store.remove(template.template_id) is True
        assert template_store.remove(template.template_id) is False
        assert template_store.count() == 0


class TestIdentityStore:
    def test_create_and_get(self, identity_store):
        user = User.with_defaults("abcdef123456")
        identity_store.create(user)

        loaded = identity_store.get("abcdef123456")

        assert loaded == user
        assert loaded.face_verified is True
        assert identity_store.get("missing") is None

    def test_duplicate_id_rejected(self, identity_store):
        identity_store.create(User.with_defaults("abcdef"))

        with pytest.raises(StorageError):
            identity_store.create(User.with_defaults("abcdef"))

    def test_update(self, identity_store):
        user = User.with_defaults("abcdef")
        identity_store.create(user)
        user.email = "new@example.com"
        user.email_verified = True

        identity_store.update(user)

        loaded = identity_store.get("abcdef")
        assert loaded.email == "new@example.com"
        assert loaded.email_verified is True

    def test_update_unknown_user(self, identity_store):
        with pytest.raises(StorageError):
            identity_store.update(User.with_defaults("ghost"))

    def test_returned_records_are_copies(self, identity_store):
        identity_store.create(User.with_defaults("abcdef"))

        identity_store.get("abcdef").name = "Changed"

        assert identity_store.get("abcdef").name == "User abcdef"


class TestUserModel:
    def test_defaults_from_id(self):
        user = User.with_defaults("0123456789")

        assert user.name == "User 012345"
        assert user.given_name == "User"
        assert user.family_name == "012345"
        assert user.email == "user-012345@example.com"
        assert user.email_verified is False

    def test_enroll_without_profile(self):
        template = BiometricTemplate.create("0123456789", [0.1])

        user = User.enroll("0123456789", template, now=100.0)

        assert user.face_verified is True
        assert user.template_id == template.template_id
        assert user.name == "User 012345"
        assert user.created_at == 100.0

    def test_enroll_with_profile(self):
        template = BiometricTemplate.create("0123456789", [0.1])
        profile = RegistrationProfile(
            first_name="Ada", last_name="Lovelace", email="ada@example.com", username="ada", phone="+44 20 7946 0000"
        )

        user = User.enroll("0123456789", template, profile)

        assert user.name == "Ada Lovelace"
        assert user.given_name == "Ada"
        assert user.family_name == "Lovelace"
        assert user.email == "ada@example.com"
        assert user.email_verified is True
        assert user.preferred_username == "ada"
        assert user.phone_number_verified is True

    def test_partial_profile_keeps_defaults(self):
        template = BiometricTemplate.create("0123456789", [0.1])

        user = User.enroll("0123456789", template, RegistrationProfile(first_name="Ada"))

        assert user.name == "Ada"
        assert user.family_name == "012345"
        assert user.email == "user-012345@example.com"
        assert user.phone_number_verified is False
