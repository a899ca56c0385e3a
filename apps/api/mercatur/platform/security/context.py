from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True, slots=True)
class Identity:
    """Authenticated caller, passed explicitly into every repository call."""

    user_id: uuid.UUID
    email: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)
    is_system: bool = False

    @property
    def subject(self) -> str:
        return str(self.user_id)


SYSTEM_IDENTITY = Identity(user_id=uuid.UUID(int=0), email=None, is_system=True)
