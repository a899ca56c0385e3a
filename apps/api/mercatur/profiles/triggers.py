"""Layer 1 of profile self-healing: create the profile when an identity is mirrored."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import event, select
from sqlalchemy.engine import Connection

from mercatur.crm.models import utcnow
from mercatur.metrics import observe_profile_self_heal
from mercatur.profiles.models import DEFAULT_DISPLAY_NAME, AuthUser, UserProfile


logger = logging.getLogger("mercatur.profiles.trigger")


def display_name_from_registration(email: str | None, metadata: dict[str, Any] | None) -> str:
    full_name = (metadata or {}).get("full_name")
    if isinstance(full_name, str) and full_name.strip():
        return full_name.strip()
    if email:
        return email
    return DEFAULT_DISPLAY_NAME


def insert_profile_if_missing(
    connection: Connection,
    *,
    user_id: uuid.UUID,
    full_name: str,
    email: str | None,
    last_login_at: datetime | None = None,
) -> bool:
    table = UserProfile.__table__
    if connection.execute(select(table.c.id).where(table.c.id == user_id)).first() is not None:
        return False
    now = utcnow()
    connection.execute(
        table.insert().values(
            id=user_id,
            full_name=full_name,
            email=email,
            role="user",
            last_login_at=last_login_at,
            created_at=now,
            updated_at=now,
        )
    )
    return True


@event.listens_for(AuthUser, "after_insert")
def create_profile_for_new_user(mapper: Any, connection: Connection, target: AuthUser) -> None:
    full_name = display_name_from_registration(target.email, target.raw_metadata)
    try:
        # A failed statement must not poison the surrounding Postgres transaction.
        savepoint = connection.begin_nested() if connection.dialect.name == "postgresql" else None
        try:
            created = insert_profile_if_missing(
                connection,
                user_id=target.id,
                full_name=full_name,
                email=target.email,
            )
        except Exception:
            if savepoint is not None:
                savepoint.rollback()
            raise
        if savepoint is not None:
            savepoint.commit()
    except Exception as exc:
        logger.warning(
            "profile.trigger_failed",
            extra={"user_id": str(target.id), "layer": "trigger", "error": str(exc)},
        )
        return

    if created:
        observe_profile_self_heal("trigger")
        logger.info("profile.created", extra={"user_id": str(target.id), "layer": "trigger"})
