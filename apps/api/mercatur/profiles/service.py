from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from mercatur.core.auth import IdentityProvider, IdentityProviderError
from mercatur.core.config import get_settings
from mercatur.crm.models import utcnow
from mercatur.crm.results import ActionError, ActionResult, ErrorCode, NotFound, ValidationFailed, action_boundary
from mercatur.metrics import observe_last_login_dispatch_failure, observe_profile_self_heal
from mercatur.platform.security.context import SYSTEM_IDENTITY, Identity
from mercatur.platform.security.repository import BaseRepository
from mercatur.platform.security.rls import identity_scope
from mercatur.profiles.models import DEFAULT_DISPLAY_NAME, AuthUser, UserProfile
from mercatur.profiles.schemas import ProfileRead, ProfileUpdate
from mercatur.profiles.tasks import touch_last_login_task


logger = logging.getLogger("mercatur.profiles.service")

LastLoginDispatcher = Callable[[uuid.UUID], Any]


def default_display_name(identity: Identity, explicit: str | None = None) -> str:
    if explicit and explicit.strip():
        return explicit.strip()
    metadata_name = identity.metadata.get("full_name")
    if isinstance(metadata_name, str) and metadata_name.strip():
        return metadata_name.strip()
    if identity.email:
        local_part = identity.email.split("@", 1)[0]
        if local_part:
            return local_part
    return DEFAULT_DISPLAY_NAME


def dispatch_last_login_task(user_id: uuid.UUID) -> Any:
    return touch_last_login_task.delay(str(user_id))


class ProfileRepository(BaseRepository):
    resource = "profile"
    model = UserProfile
    ownership_columns = ()

    def _allows(self, identity: Identity, action: str, ownership: Any) -> bool:
        if action == "read":
            return True
        return ownership.id == identity.user_id


profile_repository = ProfileRepository()


class ProfileService:
    def __init__(self, dispatch_last_login: LastLoginDispatcher | None = None) -> None:
        self.dispatch_last_login = dispatch_last_login or dispatch_last_login_task

    def _load(self, session: Session, user_id: uuid.UUID) -> UserProfile | None:
        return session.execute(select(UserProfile).where(UserProfile.id == user_id)).scalar_one_or_none()

    def _get_or_create(
        self,
        session: Session,
        identity: Identity,
        full_name: str | None,
        layer: str,
    ) -> UserProfile:
        """Idempotent: an existing profile is returned unchanged."""

        existing = self._load(session, identity.user_id)
        if existing is not None:
            return existing

        now = utcnow()
        profile = UserProfile(
            id=identity.user_id,
            full_name=default_display_name(identity, full_name),
            email=identity.email,
            role="user",
            last_login_at=now,
        )
        session.add(profile)
        try:
            session.flush()
            session.commit()
        except IntegrityError:
            # A concurrent layer inserted the same profile first.
            session.rollback()
            existing = self._load(session, identity.user_id)
            if existing is None:
                raise
            return existing

        observe_profile_self_heal(layer)
        logger.info("profile.created", extra={"user_id": identity.subject, "layer": layer})
        return profile

    @action_boundary("profile", "ensure")
    def ensure_profile(
        self,
        session: Session,
        identity: Identity,
        full_name: str | None = None,
        layer: str = "signup",
    ) -> ProfileRead:
        return ProfileRead.model_validate(self._get_or_create(session, identity, full_name, layer))

    def check_auth_and_ensure_profile(
        self,
        session: Session,
        identity: Identity | None,
    ) -> ActionResult[ProfileRead]:
        """Per-request guard: the profile exists afterwards and last login is refreshed in the background."""

        result = self.ensure_profile(session, identity, layer="request")
        if not result.success or identity is None:
            return result
        try:
            self.dispatch_last_login(identity.user_id)
        except Exception as exc:
            observe_last_login_dispatch_failure()
            logger.warning("profile.last_login_dispatch_failed", extra={"user_id": identity.subject, "error": str(exc)})
        return result

    def mirror_identity(self, session: Session, identity: Identity) -> bool:
        """Record a freshly registered identity locally; the insert hook creates its profile."""

        with identity_scope(session, SYSTEM_IDENTITY):
            found = session.execute(select(AuthUser.id).where(AuthUser.id == identity.user_id)).first()
            if found is not None:
                return False
            session.add(AuthUser(id=identity.user_id, email=identity.email, raw_metadata=dict(identity.metadata)))
            session.flush()
            session.commit()
        return True

    def sign_up_with_profile(
        self,
        session: Session,
        provider: IdentityProvider,
        email: str,
        password: str,
        full_name: str,
    ) -> ActionResult[ProfileRead]:
        try:
            identity = provider.sign_up(email, password, {"full_name": full_name})
        except IdentityProviderError as exc:
            logger.warning("profile.sign_up_failed", extra={"error": str(exc)})
            details = str(exc) if get_settings().expose_error_details else None
            return ActionError(error=str(exc), code=ErrorCode.VALIDATION_ERROR, details=details)

        try:
            self.mirror_identity(session, identity)
        except SQLAlchemyError as exc:
            session.rollback()
            logger.warning("profile.mirror_failed", extra={"user_id": identity.subject, "error": str(exc)})

        return self.ensure_profile(session, identity, full_name=full_name, layer="signup")

    @action_boundary("profile", "get")
    def get_profile(self, session: Session, identity: Identity, user_id: uuid.UUID | None = None) -> ProfileRead:
        profile = self._load(session, user_id or identity.user_id)
        if profile is None:
            raise NotFound("Profile")
        return ProfileRead.model_validate(profile)

    @action_boundary("profile", "update")
    def update_profile(self, session: Session, identity: Identity, user_id: uuid.UUID, payload: Any) -> ProfileRead:
        if not isinstance(payload, dict) and not isinstance(payload, ProfileUpdate):
            raise ValidationFailed("Request body must be an object.")
        dto = payload if isinstance(payload, ProfileUpdate) else ProfileUpdate.model_validate(payload)

        profile = self._load(session, user_id)
        if profile is None:
            raise NotFound("Profile")
        profile_repository.require(identity, "update", profile, entity_id=user_id)

        for key, value in dto.changes().items():
            setattr(profile, key, value)
        session.flush()
        session.commit()
        logger.info("profile.updated", extra={"entity_type": "profile", "entity_id": str(user_id)})
        return ProfileRead.model_validate(profile)

    @action_boundary("profile", "list")
    def list_profiles(self, session: Session, identity: Identity) -> list[ProfileRead]:
        profiles = session.execute(
            select(UserProfile).order_by(UserProfile.full_name, UserProfile.id).limit(get_settings().list_limit)
        ).scalars()
        return [ProfileRead.model_validate(profile) for profile in profiles]


profile_service = ProfileService()
