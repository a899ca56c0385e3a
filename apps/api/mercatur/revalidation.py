from __future__ import annotations

import uuid

from mercatur import events


REVALIDATE_EVENT = "cache.revalidate_requested"


def customers_path() -> str:
    return "/customers"


def customer_path(customer_id: uuid.UUID) -> str:
    return f"/customers/{customer_id}"


def customer_contacts_path(customer_id: uuid.UUID) -> str:
    return f"/customers/{customer_id}/contacts"


def customer_communications_path(customer_id: uuid.UUID) -> str:
    return f"/customers/{customer_id}/communications"


def contact_path(customer_id: uuid.UUID, contact_id: uuid.UUID) -> str:
    return f"/customers/{customer_id}/contacts/{contact_id}"


def deals_path() -> str:
    return "/deals"


def deal_path(deal_id: uuid.UUID) -> str:
    return f"/deals/{deal_id}"


def dashboard_path() -> str:
    return "/dashboard"


def revalidate_paths(*paths: str, actor_user_id: str | None = None) -> list[str]:
    """Publish a push invalidation hint for the given page keys."""

    unique = list(dict.fromkeys(path for path in paths if path))
    if unique:
        events.publish(
            events.build_envelope(
                REVALIDATE_EVENT,
                actor_user_id=actor_user_id,
                payload={"paths": unique},
            )
        )
    return unique
