from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from mercatur.context import get_correlation_id

audit_entries: list[dict[str, Any]] = []


def record(
    actor_user_id: str | None,
    entity_type: str,
    entity_id: str | None,
    action: str,
    details: dict[str, Any] | None = None,
    correlation_id: str | None = None,
) -> None:
    """Append an authorization audit entry; denied attempts are recorded here."""

    audit_entries.append(
        {
            "id": str(uuid.uuid4()),
            "actor_user_id": actor_user_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "action": action,
            "details": details or {},
            "correlation_id": correlation_id or get_correlation_id(),
            "occurred_at": datetime.now(timezone.utc).isoformat(),
        }
    )
