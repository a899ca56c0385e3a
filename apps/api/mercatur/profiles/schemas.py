from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, ClassVar, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, StringConstraints, field_validator

from mercatur.crm.schemas import PatchModel, _normalize_url, as_utc


DisplayName = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=200)]


class ProfileRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    full_name: str
    email: str | None
    avatar_url: str | None
    role: Literal["admin", "user"]
    last_login_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @field_validator("last_login_at", "created_at", "updated_at", mode="after")
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)


class ProfileUpdate(PatchModel):
    required_fields: ClassVar[frozenset[str]] = frozenset({"full_name"})

    full_name: DisplayName | None = None
    avatar_url: str | None = None

    @field_validator("avatar_url", mode="before")
    @classmethod
    def _validate_avatar(cls, value: Any) -> str | None:
        return _normalize_url(value, max_length=2000)


class SignUpRequest(BaseModel):
    email: EmailStr
    password: Annotated[str, StringConstraints(min_length=8)]
    full_name: DisplayName
