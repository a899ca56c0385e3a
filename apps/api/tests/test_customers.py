from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import date
from decimal import Decimal
from types import SimpleNamespace

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from mercatur import events
from mercatur.crm.models import CRMContact, CRMCustomer, CRMDeal
from mercatur.crm.results import ErrorCode
from mercatur.crm.service import customer_service
from mercatur.platform.security import SYSTEM_IDENTITY, identity_scope
from mercatur.revalidation import REVALIDATE_EVENT


def _revalidated_paths() -> list[str]:
    paths: list[str] = []
    for envelope in events.published_events:
        if envelope["event_type"] == REVALIDATE_EVENT:
            paths.extend(envelope["payload"]["paths"])
    return paths


def test_create_customer_records_creator_and_invalidates_lists(db_session: Session, users: SimpleNamespace) -> None:
    result = customer_service.create(
        db_session,
        users.alice,
        {"company_name": "  Acme AS ", "org_number": "987654321", "website": "https://acme.example"},
    )

    assert result.success
    with identity_scope(db_session, SYSTEM_IDENTITY):
        customer = db_session.execute(select(CRMCustomer).where(CRMCustomer.id == result.data.id)).scalar_one()
        assert customer.company_name == "Acme AS"
        assert customer.created_by == users.alice.user_id
        assert customer.updated_by == users.alice.user_id
        assert customer.assigned_to is None

    assert "/customers" in _revalidated_paths()
    assert "/dashboard" in _revalidated_paths()
    assert any(envelope["event_type"] == "crm.customer.created" for envelope in events.published_events)


def test_create_customer_requires_identity(db_session: Session) -> None:
    result = customer_service.create(db_session, None, {"company_name": "Ghost AS"})

    assert not result.success
    assert result.code == ErrorCode.UNAUTHORIZED
    assert result.details is None


def test_create_customer_validation_errors(db_session: Session, users: SimpleNamespace) -> None:
    missing = customer_service.create(db_session, users.alice, {})
    bad_org = customer_service.create(db_session, users.alice, {"company_name": "Acme", "org_number": "12345"})
    bad_url = customer_service.create(db_session, users.alice, {"company_name": "Acme", "website": "not a url"})

    assert missing.code == ErrorCode.VALIDATION_ERROR
    assert missing.error.startswith("company_name")
    assert bad_org.code == ErrorCode.VALIDATION_ERROR
    assert bad_org.error.startswith("org_number")
    assert bad_url.code == ErrorCode.VALIDATION_ERROR
    assert bad_url.error == "website: must be a valid URL"


def test_assigning_to_unknown_user_is_rejected(db_session: Session, users: SimpleNamespace) -> None:
    result = customer_service.create(
        db_session,
        users.alice,
        {"company_name": "Acme", "assigned_to": str(uuid.uuid4())},
    )

    assert result.code == ErrorCode.VALIDATION_ERROR
    assert result.error == "assigned_to: unknown user"


def test_owner_and_assignee_can_update(
    db_session: Session,
    users: SimpleNamespace,
    make_customer: Callable[..., uuid.UUID],
) -> None:
    customer_id = make_customer(users.alice, assigned_to=str(users.bob.user_id))

    by_owner = customer_service.update(db_session, users.alice, customer_id, {"industry": "Shipping"})
    by_assignee = customer_service.update(db_session, users.bob, customer_id, {"notes": "Called"})

    assert by_owner.success
    assert by_assignee.success
    with identity_scope(db_session, SYSTEM_IDENTITY):
        customer = db_session.execute(select(CRMCustomer).where(CRMCustomer.id == customer_id)).scalar_one()
        assert customer.industry == "Shipping"
        assert customer.notes == "Called"
        assert customer.updated_by == users.bob.user_id


def test_stranger_cannot_update_or_delete(
    db_session: Session,
    users: SimpleNamespace,
    make_customer: Callable[..., uuid.UUID],
) -> None:
    customer_id = make_customer(users.alice)

    update_result = customer_service.update(db_session, users.carol, customer_id, {"industry": "Retail"})
    delete_result = customer_service.delete(db_session, users.carol, customer_id)

    assert update_result.code == ErrorCode.FORBIDDEN
    assert delete_result.code == ErrorCode.FORBIDDEN
    assert update_result.error == "You do not have access to this resource."


def test_assignee_cannot_hand_customer_away(
    db_session: Session,
    users: SimpleNamespace,
    make_customer: Callable[..., uuid.UUID],
) -> None:
    customer_id = make_customer(users.alice, assigned_to=str(users.bob.user_id))

    result = customer_service.update(
        db_session,
        users.bob,
        customer_id,
        {"assigned_to": str(users.carol.user_id)},
    )

    assert result.code == ErrorCode.FORBIDDEN
    with identity_scope(db_session, SYSTEM_IDENTITY):
        assigned = db_session.execute(
            select(CRMCustomer.assigned_to).where(CRMCustomer.id == customer_id)
        ).scalar_one()
    assert assigned == users.bob.user_id


def test_update_rejects_null_for_required_field(
    db_session: Session,
    users: SimpleNamespace,
    make_customer: Callable[..., uuid.UUID],
) -> None:
    customer_id = make_customer(users.alice)

    result = customer_service.update(db_session, users.alice, customer_id, {"company_name": None})

    assert result.code == ErrorCode.VALIDATION_ERROR


def test_get_missing_customer_is_not_found(db_session: Session, users: SimpleNamespace) -> None:
    result = customer_service.get_by_id(db_session, users.alice, uuid.uuid4())

    assert result.code == ErrorCode.NOT_FOUND
    assert result.error == "Customer was not found."


def test_get_customer_includes_rollups(
    db_session: Session,
    users: SimpleNamespace,
    make_customer: Callable[..., uuid.UUID],
    make_contact: Callable[..., uuid.UUID],
    make_deal: Callable[..., uuid.UUID],
    make_communication: Callable[..., uuid.UUID],
) -> None:
    customer_id = make_customer(users.alice)
    make_contact(users.alice, customer_id, "Kari Primary", is_primary=True)
    make_contact(users.alice, customer_id, "Per Secondary")
    make_deal(users.alice, customer_id)
    make_communication(users.alice, customer_id, communication_date="2025-02-01T09:30:00Z")
    make_communication(users.alice, customer_id, communication_date="2025-01-01T09:30:00Z")

    result = customer_service.get_by_id(db_session, users.alice, customer_id)

    assert result.success
    stats = result.data
    assert stats.contact_count == 2
    assert stats.deal_count == 1
    assert stats.communication_count == 2
    assert stats.primary_contact_name == "Kari Primary"
    assert stats.last_communication_date.isoformat() == "2025-02-01T09:30:00+00:00"


def test_list_customers_paginates_and_clamps_limit(
    db_session: Session,
    users: SimpleNamespace,
    make_customer: Callable[..., uuid.UUID],
) -> None:
    for index in range(3):
        make_customer(users.alice, f"Customer {index}")

    page_two = customer_service.list_customers(db_session, users.bob, page=2, limit=2)
    clamped = customer_service.list_customers(db_session, users.bob, page=0, limit=500)

    assert page_two.success
    assert page_two.data.total == 3
    assert page_two.data.total_pages == 2
    assert page_two.data.page == 2
    assert len(page_two.data.customers) == 1
    assert clamped.data.page == 1
    assert clamped.data.limit == 100
    assert len(clamped.data.customers) == 3


def test_search_customers_matches_name_and_org_number(
    db_session: Session,
    users: SimpleNamespace,
    make_customer: Callable[..., uuid.UUID],
) -> None:
    make_customer(users.alice, "Acme AS", org_number="912345678")
    make_customer(users.alice, "Fjord Shipping")

    by_name = customer_service.search_customers(db_session, users.alice, "acme")
    by_org = customer_service.search_customers(db_session, users.alice, "12345")
    empty = customer_service.search_customers(db_session, users.alice, "   ")

    assert [customer.company_name for customer in by_name.data] == ["Acme AS"]
    assert [customer.company_name for customer in by_org.data] == ["Acme AS"]
    assert empty.data == []


def test_delete_customer_cascades_to_children(
    db_session: Session,
    users: SimpleNamespace,
    make_customer: Callable[..., uuid.UUID],
    make_contact: Callable[..., uuid.UUID],
    make_deal: Callable[..., uuid.UUID],
) -> None:
    customer_id = make_customer(users.alice)
    make_contact(users.alice, customer_id)
    make_deal(users.alice, customer_id)

    result = customer_service.delete(db_session, users.alice, customer_id)

    assert result.success
    assert result.data.id == customer_id
    with identity_scope(db_session, SYSTEM_IDENTITY):
        assert db_session.execute(select(func.count(CRMContact.id))).scalar_one() == 0
        assert db_session.execute(select(func.count(CRMDeal.id))).scalar_one() == 0
    assert f"/customers/{customer_id}" in _revalidated_paths()


def test_created_customer_reads_back_every_field(db_session: Session, users: SimpleNamespace) -> None:
    payload = {
        "company_name": "Acme AS",
        "org_number": "912345678",
        "industry": "Shipping",
        "website": "https://acme.example",
        "address": "Storgata 1, 0155 Oslo",
        "notes": "Met at Nor-Shipping.",
        "lifecycle_stage": "prospect",
        "customer_status": "potential",
        "lead_source": "Trade fair",
        "annual_revenue": "1250000.50",
        "next_contact_date": "2025-03-01",
        "assigned_to": str(users.bob.user_id),
    }
    expected = {
        **payload,
        "annual_revenue": Decimal("1250000.50"),
        "next_contact_date": date(2025, 3, 1),
        "assigned_to": users.bob.user_id,
    }

    customer_id = customer_service.create(db_session, users.alice, payload).data.id
    customer = customer_service.get_by_id(db_session, users.alice, customer_id).data

    assert {field: getattr(customer, field) for field in expected} == expected
    assert customer.created_by == users.alice.user_id


def test_search_customers_lists_recently_updated_first(
    db_session: Session,
    users: SimpleNamespace,
    make_customer: Callable[..., uuid.UUID],
) -> None:
    older_id = make_customer(users.alice, "Acme Shipping")
    make_customer(users.alice, "Acme Logistics")
    assert customer_service.update(db_session, users.alice, older_id, {"industry": "Shipping"}).success

    result = customer_service.search_customers(db_session, users.alice, "acme")

    assert [customer.company_name for customer in result.data] == ["Acme Shipping", "Acme Logistics"]
