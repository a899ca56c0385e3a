from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import JSON, CheckConstraint, DateTime, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from mercatur.core.database import Base
from mercatur.crm.models import utcnow


PROFILE_ROLES = ("admin", "user")
DEFAULT_DISPLAY_NAME = "New User"


class AuthUser(Base):
    """Local mirror of an identity registered at the external provider."""

    __tablename__ = "auth_user"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True)
    email: Mapped[str | None] = mapped_column(Text, nullable=True, unique=True)
    raw_metadata: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class UserProfile(Base):
    __tablename__ = "user_profile"
    __policy_resource__ = "profile"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True)
    full_name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    avatar_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="user", server_default="user")
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (CheckConstraint("role IN ('admin', 'user')", name="ck_user_profile_role"),)


from mercatur.profiles import policies as _policies  # noqa: E402,F401
from mercatur.profiles import triggers as _triggers  # noqa: E402,F401
