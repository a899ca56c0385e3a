from __future__ import annotations

import logging
import uuid
from collections.abc import Callable

from sqlalchemy import update
from sqlalchemy.orm import Session

from mercatur.core.celery_app import celery_app
from mercatur.core.database import SessionLocal
from mercatur.crm.models import utcnow
from mercatur.platform.security.context import Identity
from mercatur.platform.security.rls import identity_scope
from mercatur.profiles.models import UserProfile


logger = logging.getLogger("mercatur.profiles.tasks")


def touch_last_login(session_factory: Callable[[], Session], user_id: uuid.UUID) -> bool:
    """Stamp ``last_login_at`` on the caller's own profile; returns whether a row changed."""

    session = session_factory()
    try:
        with identity_scope(session, Identity(user_id=user_id)):
            result = session.execute(
                update(UserProfile)
                .where(UserProfile.id == user_id)
                .values(last_login_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            session.commit()
        return result.rowcount > 0
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@celery_app.task(name="profiles.touch_last_login")
def touch_last_login_task(user_id: str) -> bool:
    updated = touch_last_login(SessionLocal, uuid.UUID(user_id))
    if not updated:
        logger.warning("profile.last_login_missing", extra={"user_id": user_id})
    return updated
