from __future__ import annotations

import uuid


class AuthorizationError(Exception):
    """Base authorization error for ownership and row policy enforcement failures."""


class AccessDenied(AuthorizationError):
    """Raised by the explicit application-layer ownership check."""

    def __init__(self, resource: str, action: str, entity_id: uuid.UUID | None = None) -> None:
        self.resource = resource
        self.action = action
        self.entity_id = entity_id
        super().__init__(f"Access denied: {action} on '{resource}'")


class RowPolicyViolation(AuthorizationError):
    """Raised when a write breaks the row policy store's USING or WITH CHECK predicate."""

    def __init__(self, resource: str, command: str, entity_id: uuid.UUID | None = None) -> None:
        self.resource = resource
        self.command = command
        self.entity_id = entity_id
        super().__init__(f"new row violates row-level security policy for '{resource}' ({command})")
