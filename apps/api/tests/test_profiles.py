from __future__ import annotations

import uuid
from types import SimpleNamespace
from typing import Any

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import func, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from mercatur.core.auth import IdentityProviderError
from mercatur.crm.results import ErrorCode
from mercatur.platform.security import SYSTEM_IDENTITY, Identity, identity_scope
from mercatur.profiles import triggers
from mercatur.profiles.models import AuthUser, UserProfile
from mercatur.profiles.service import ProfileService, default_display_name, profile_service
from mercatur.profiles.tasks import touch_last_login


class FakeProvider:
    def __init__(self) -> None:
        self.registered: list[str] = []

    def get_current_user(self, request: Any) -> Identity | None:
        return None

    def sign_up(self, email: str, password: str, metadata: dict[str, Any] | None = None) -> Identity:
        self.registered.append(email)
        return Identity(user_id=uuid.uuid4(), email=email, metadata=dict(metadata or {}))


class RejectingProvider(FakeProvider):
    def sign_up(self, email: str, password: str, metadata: dict[str, Any] | None = None) -> Identity:
        raise IdentityProviderError("User already registered")


def _self_heal_count(layer: str) -> float:
    return REGISTRY.get_sample_value("profile_self_heal_total", {"layer": layer}) or 0.0


def _stored_profile(session: Session, user_id: uuid.UUID) -> UserProfile | None:
    with identity_scope(session, SYSTEM_IDENTITY):
        return session.execute(select(UserProfile).where(UserProfile.id == user_id)).scalar_one_or_none()


def test_default_display_name_fallbacks() -> None:
    user_id = uuid.uuid4()

    assert default_display_name(Identity(user_id=user_id), " Kari ") == "Kari"
    assert default_display_name(Identity(user_id=user_id, metadata={"full_name": "Per Hansen"})) == "Per Hansen"
    assert default_display_name(Identity(user_id=user_id, email="lise@example.com")) == "lise"
    assert default_display_name(Identity(user_id=user_id)) == "New User"


def test_sign_up_creates_profile_from_registration_hook(db_session: Session) -> None:
    provider = FakeProvider()
    before = _self_heal_count("trigger")

    result = profile_service.sign_up_with_profile(db_session, provider, "kari@example.com", "s3cret-pass", "Kari Nordmann")

    assert result.success
    assert result.data.full_name == "Kari Nordmann"
    assert result.data.email == "kari@example.com"
    assert result.data.role == "user"
    assert _self_heal_count("trigger") == before + 1
    with identity_scope(db_session, SYSTEM_IDENTITY):
        assert db_session.execute(select(func.count(AuthUser.id))).scalar_one() == 1


def test_sign_up_survives_registration_hook_failure(db_session: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    def _broken(*args: Any, **kwargs: Any) -> bool:
        raise RuntimeError("profile table unavailable")

    monkeypatch.setattr(triggers, "insert_profile_if_missing", _broken)
    before = _self_heal_count("signup")

    result = profile_service.sign_up_with_profile(db_session, FakeProvider(), "per@example.com", "s3cret-pass", "Per")

    assert result.success
    assert result.data.full_name == "Per"
    assert _self_heal_count("signup") == before + 1
    assert _stored_profile(db_session, result.data.id) is not None


def test_sign_up_provider_error_is_a_validation_error(db_session: Session) -> None:
    result = profile_service.sign_up_with_profile(
        db_session,
        RejectingProvider(),
        "kari@example.com",
        "s3cret-pass",
        "Kari",
    )

    assert result.code == ErrorCode.VALIDATION_ERROR
    assert result.error == "User already registered"


def test_request_guard_heals_missing_profile_and_dispatches_last_login(db_session: Session) -> None:
    dispatched: list[uuid.UUID] = []
    service = ProfileService(dispatch_last_login=dispatched.append)
    identity = Identity(user_id=uuid.uuid4(), email="lise@example.com", metadata={"full_name": "Lise"})

    first = service.check_auth_and_ensure_profile(db_session, identity)
    second = service.check_auth_and_ensure_profile(db_session, identity)

    assert first.success and second.success
    assert first.data.full_name == "Lise"
    assert second.data.created_at == first.data.created_at
    assert dispatched == [identity.user_id, identity.user_id]
    with identity_scope(db_session, SYSTEM_IDENTITY):
        count = db_session.execute(
            select(func.count(UserProfile.id)).where(UserProfile.id == identity.user_id)
        ).scalar_one()
    assert count == 1


def test_request_guard_tolerates_dispatch_failure(db_session: Session) -> None:
    def _unreachable_broker(user_id: uuid.UUID) -> None:
        raise ConnectionError("broker down")

    service = ProfileService(dispatch_last_login=_unreachable_broker)
    identity = Identity(user_id=uuid.uuid4(), email="ola@example.com")
    before = REGISTRY.get_sample_value("profile_last_login_dispatch_failures_total") or 0.0

    result = service.check_auth_and_ensure_profile(db_session, identity)

    assert result.success
    assert result.data.full_name == "ola"
    assert REGISTRY.get_sample_value("profile_last_login_dispatch_failures_total") == before + 1


def test_request_guard_without_identity(db_session: Session) -> None:
    dispatched: list[uuid.UUID] = []
    service = ProfileService(dispatch_last_login=dispatched.append)

    result = service.check_auth_and_ensure_profile(db_session, None)

    assert result.code == ErrorCode.UNAUTHORIZED
    assert dispatched == []


def test_touch_last_login_updates_own_profile(engine: Engine, db_session: Session, users: SimpleNamespace) -> None:
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)

    assert touch_last_login(factory, users.alice.user_id) is True
    assert touch_last_login(factory, uuid.uuid4()) is False

    db_session.expire_all()
    assert _stored_profile(db_session, users.alice.user_id).last_login_at is not None
    assert _stored_profile(db_session, users.bob.user_id).last_login_at is None


def test_update_profile_only_for_self(db_session: Session, users: SimpleNamespace) -> None:
    own = profile_service.update_profile(
        db_session,
        users.alice,
        users.alice.user_id,
        {"full_name": "Alice Liddell", "avatar_url": "https://cdn.example.com/alice.png"},
    )
    other = profile_service.update_profile(db_session, users.alice, users.bob.user_id, {"full_name": "Bobby"})
    invalid = profile_service.update_profile(db_session, users.alice, users.alice.user_id, {"avatar_url": "nope"})

    assert own.success
    assert own.data.full_name == "Alice Liddell"
    assert own.data.avatar_url == "https://cdn.example.com/alice.png"
    assert other.code == ErrorCode.FORBIDDEN
    assert invalid.code == ErrorCode.VALIDATION_ERROR
    assert invalid.error == "avatar_url: must be a valid URL"


def test_profiles_are_readable_by_signed_in_users(db_session: Session, users: SimpleNamespace) -> None:
    single = profile_service.get_profile(db_session, users.carol, users.alice.user_id)
    listing = profile_service.list_profiles(db_session, users.carol)
    missing = profile_service.get_profile(db_session, users.carol, uuid.uuid4())

    assert single.data.full_name == "Alice"
    assert [profile.full_name for profile in listing.data] == ["Alice", "Bob", "Carol"]
    assert missing.code == ErrorCode.NOT_FOUND
