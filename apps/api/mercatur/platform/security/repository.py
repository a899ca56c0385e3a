from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy import Row, select
from sqlalchemy.orm import Session

from mercatur import audit
from mercatur.metrics import observe_ownership_denied
from mercatur.platform.security.context import Identity
from mercatur.platform.security.errors import AccessDenied


logger = logging.getLogger("mercatur.security.ownership")


class BaseRepository:
    """Explicit application-layer ownership checks.

    Subclasses name the mapped ``model``, the ownership columns to load and
    implement ``_allows``. The checks intentionally restate the row policies so
    that each layer rejects the same requests on its own.
    """

    resource = ""
    model: Any = None
    ownership_columns: tuple[str, ...] = ()

    def load_ownership(self, session: Session, entity_id: uuid.UUID) -> Row[Any] | None:
        columns = [self.model.id, *(getattr(self.model, name) for name in self.ownership_columns)]
        return session.execute(select(*columns).where(self.model.id == entity_id)).first()

    def can(self, identity: Identity, action: str, ownership: Any) -> bool:
        if identity.is_system:
            return True
        return self._allows(identity, action, ownership)

    def require(self, identity: Identity, action: str, ownership: Any, *, entity_id: uuid.UUID | None = None) -> None:
        if self.can(identity, action, ownership):
            return
        observe_ownership_denied(resource=self.resource, action=action)
        audit.record(
            actor_user_id=identity.subject,
            entity_type=self.resource,
            entity_id=str(entity_id) if entity_id is not None else None,
            action="ownership.denied",
            details={"action": action},
        )
        logger.warning(
            "ownership.denied",
            extra={
                "resource": self.resource,
                "action": action,
                "entity_id": str(entity_id) if entity_id is not None else None,
                "user_id": identity.subject,
            },
        )
        raise AccessDenied(self.resource, action, entity_id)

    def _allows(self, identity: Identity, action: str, ownership: Any) -> bool:
        raise NotImplementedError
