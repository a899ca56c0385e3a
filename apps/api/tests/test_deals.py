from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import date, datetime, timezone
from decimal import Decimal
from types import SimpleNamespace

from sqlalchemy.orm import Session

from mercatur import events
from mercatur.crm.results import ErrorCode
from mercatur.crm.service import deal_service


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


def test_deal_defaults(
    db_session: Session,
    users: SimpleNamespace,
    make_customer: Callable[..., uuid.UUID],
    make_deal: Callable[..., uuid.UUID],
) -> None:
    customer_id = make_customer(users.alice)
    deal_id = make_deal(users.alice, customer_id, deal_value="150000.50", currency="eur")

    deal = deal_service.get_by_id(db_session, users.alice, deal_id).data

    assert deal.stage == "lead"
    assert deal.probability == 0
    assert deal.currency == "EUR"
    assert deal.deal_value == Decimal("150000.50")
    assert deal.assigned_to == users.alice.user_id
    assert deal.created_by == users.alice.user_id
    assert deal.actual_close_date is None


def test_deal_validation(
    db_session: Session,
    users: SimpleNamespace,
    make_customer: Callable[..., uuid.UUID],
) -> None:
    customer_id = make_customer(users.alice)
    base = {"customer_id": str(customer_id), "deal_name": "Pilot"}

    bad_stage = deal_service.create(db_session, users.alice, {**base, "stage": "closed"})
    bad_probability = deal_service.create(db_session, users.alice, {**base, "probability": 101})
    negative_value = deal_service.create(db_session, users.alice, {**base, "deal_value": "-1"})
    unknown_assignee = deal_service.create(db_session, users.alice, {**base, "assigned_to": str(uuid.uuid4())})

    assert bad_stage.code == ErrorCode.VALIDATION_ERROR
    assert bad_probability.code == ErrorCode.VALIDATION_ERROR
    assert negative_value.code == ErrorCode.VALIDATION_ERROR
    assert unknown_assignee.error == "assigned_to: unknown user"


def test_winning_deal_stamps_close_date_once(
    db_session: Session,
    users: SimpleNamespace,
    make_customer: Callable[..., uuid.UUID],
    make_deal: Callable[..., uuid.UUID],
) -> None:
    customer_id = make_customer(users.alice)
    deal_id = make_deal(users.alice, customer_id, stage="negotiation")

    won = deal_service.update(db_session, users.alice, deal_id, {"stage": "won"})
    assert won.success
    assert deal_service.get_by_id(db_session, users.alice, deal_id).data.actual_close_date == _utc_today()
    assert any(envelope["event_type"] == "crm.deal.closed_won" for envelope in events.published_events)

    deal_service.update(db_session, users.alice, deal_id, {"actual_close_date": "2024-03-01"})
    relabelled = deal_service.update(db_session, users.alice, deal_id, {"stage": "lost"})

    assert relabelled.success
    deal = deal_service.get_by_id(db_session, users.alice, deal_id).data
    assert deal.stage == "lost"
    assert deal.actual_close_date == date(2024, 3, 1)


def test_losing_deal_stamps_close_date(
    db_session: Session,
    users: SimpleNamespace,
    make_customer: Callable[..., uuid.UUID],
    make_deal: Callable[..., uuid.UUID],
) -> None:
    customer_id = make_customer(users.alice)
    deal_id = make_deal(users.alice, customer_id)

    deal_service.update(db_session, users.alice, deal_id, {"stage": "lost", "lost_reason": "Budget"})

    deal = deal_service.get_by_id(db_session, users.alice, deal_id).data
    assert deal.actual_close_date == _utc_today()
    assert deal.lost_reason == "Budget"


def test_deal_contact_must_belong_to_customer(
    db_session: Session,
    users: SimpleNamespace,
    make_customer: Callable[..., uuid.UUID],
    make_contact: Callable[..., uuid.UUID],
    make_deal: Callable[..., uuid.UUID],
) -> None:
    customer_id = make_customer(users.alice)
    other_customer_id = make_customer(users.alice, "Other AS")
    foreign_contact_id = make_contact(users.alice, other_customer_id)
    deal_id = make_deal(users.alice, customer_id)

    create_result = deal_service.create(
        db_session,
        users.alice,
        {"customer_id": str(customer_id), "deal_name": "Upsell", "contact_id": str(foreign_contact_id)},
    )
    update_result = deal_service.update(db_session, users.alice, deal_id, {"contact_id": str(foreign_contact_id)})

    assert create_result.code == ErrorCode.VALIDATION_ERROR
    assert create_result.error == "contact_id: invalid contact for this customer"
    assert update_result.code == ErrorCode.VALIDATION_ERROR


def test_only_deal_owner_or_assignee_can_update(
    db_session: Session,
    users: SimpleNamespace,
    make_customer: Callable[..., uuid.UUID],
    make_deal: Callable[..., uuid.UUID],
) -> None:
    customer_id = make_customer(users.alice)
    deal_id = make_deal(users.alice, customer_id, assigned_to=str(users.bob.user_id))

    by_assignee = deal_service.update(db_session, users.bob, deal_id, {"probability": 40})
    by_stranger = deal_service.update(db_session, users.carol, deal_id, {"probability": 90})
    delete_by_stranger = deal_service.delete(db_session, users.carol, deal_id)

    assert by_assignee.success
    assert by_stranger.code == ErrorCode.FORBIDDEN
    assert delete_by_stranger.code == ErrorCode.FORBIDDEN
    assert deal_service.get_by_id(db_session, users.alice, deal_id).data.probability == 40


def test_deal_visibility_follows_parent_customer(
    db_session: Session,
    users: SimpleNamespace,
    make_customer: Callable[..., uuid.UUID],
    make_deal: Callable[..., uuid.UUID],
) -> None:
    open_customer_id = make_customer(users.alice, "Open AS")
    private_customer_id = make_customer(users.alice, "Private AS", assigned_to=str(users.alice.user_id))
    open_deal_id = make_deal(users.alice, open_customer_id, "Open deal")
    private_deal_id = make_deal(users.alice, private_customer_id, "Private deal")
    carols_deal_id = make_deal(users.alice, private_customer_id, "Carol's deal", assigned_to=str(users.carol.user_id))

    assert deal_service.get_by_id(db_session, users.carol, open_deal_id).success
    assert deal_service.get_by_id(db_session, users.carol, private_deal_id).code == ErrorCode.NOT_FOUND
    assert deal_service.get_by_id(db_session, users.carol, carols_deal_id).success

    listed = deal_service.list_for_customer(db_session, users.carol, private_customer_id)
    assert [deal.deal_name for deal in listed.data] == ["Carol's deal"]


def test_list_deals_filters_by_stage(
    db_session: Session,
    users: SimpleNamespace,
    make_customer: Callable[..., uuid.UUID],
    make_deal: Callable[..., uuid.UUID],
) -> None:
    customer_id = make_customer(users.alice)
    make_deal(users.alice, customer_id, "Early", stage="qualified")
    make_deal(users.alice, customer_id, "Late", stage="proposal")

    qualified = deal_service.list_deals(db_session, users.alice, stage="qualified")
    everything = deal_service.list_deals(db_session, users.alice)

    assert [deal.deal_name for deal in qualified.data] == ["Early"]
    assert {deal.deal_name for deal in everything.data} == {"Early", "Late"}


def test_moving_deal_requires_access_to_target_customer(
    db_session: Session,
    users: SimpleNamespace,
    make_customer: Callable[..., uuid.UUID],
    make_deal: Callable[..., uuid.UUID],
) -> None:
    customer_id = make_customer(users.alice)
    bobs_customer_id = make_customer(users.bob, "Bob's AS", assigned_to=str(users.bob.user_id))
    shared_customer_id = make_customer(users.bob, "Shared AS")
    deal_id = make_deal(users.alice, customer_id)

    blocked = deal_service.update(db_session, users.alice, deal_id, {"customer_id": str(bobs_customer_id)})
    moved = deal_service.update(db_session, users.alice, deal_id, {"customer_id": str(shared_customer_id)})

    assert blocked.code == ErrorCode.FORBIDDEN
    assert moved.success
    assert deal_service.get_by_id(db_session, users.alice, deal_id).data.customer_id == shared_customer_id


def test_created_deal_reads_back_every_field(
    db_session: Session,
    users: SimpleNamespace,
    make_customer: Callable[..., uuid.UUID],
    make_contact: Callable[..., uuid.UUID],
) -> None:
    customer_id = make_customer(users.alice)
    contact_id = make_contact(users.alice, customer_id)
    payload = {
        "customer_id": str(customer_id),
        "contact_id": str(contact_id),
        "deal_name": "Fleet renewal",
        "deal_value": "250000.50",
        "currency": "EUR",
        "stage": "won",
        "probability": 100,
        "expected_close_date": "2025-01-31",
        "actual_close_date": "2025-01-02",
        "lost_reason": None,
        "notes": "Signed after second round.",
        "assigned_to": str(users.bob.user_id),
    }
    expected = {
        **payload,
        "customer_id": customer_id,
        "contact_id": contact_id,
        "deal_value": Decimal("250000.50"),
        "expected_close_date": date(2025, 1, 31),
        "actual_close_date": date(2025, 1, 2),
        "assigned_to": users.bob.user_id,
    }

    deal_id = deal_service.create(db_session, users.alice, payload).data.id
    deal = deal_service.get_by_id(db_session, users.alice, deal_id).data

    assert {field: getattr(deal, field) for field in expected} == expected
    assert deal.created_by == users.alice.user_id
