from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

from sqlalchemy.orm import Session

from mercatur.crm.dashboard import dashboard_service


def _recent(hours: int) -> str:
    return (datetime.now(timezone.utc) - timedelta(hours=hours)).isoformat()


def test_dashboard_stats_count_only_own_work(
    db_session: Session,
    users: SimpleNamespace,
    make_customer: Callable[..., uuid.UUID],
    make_contact: Callable[..., uuid.UUID],
    make_deal: Callable[..., uuid.UUID],
    make_communication: Callable[..., uuid.UUID],
) -> None:
    mine = make_customer(users.alice, "Mine AS", assigned_to=str(users.alice.user_id))
    make_customer(users.alice, "Unassigned AS")
    make_customer(users.bob, "Bob AS", assigned_to=str(users.bob.user_id))
    make_contact(users.alice, mine, "Kari")
    make_contact(users.alice, mine, "Per")
    make_deal(users.alice, mine, "Open one", deal_value="1000.25", stage="proposal")
    make_deal(users.alice, mine, "Open two", deal_value="500", stage="qualified")
    make_deal(users.alice, mine, "Closed", deal_value="9999", stage="won")
    make_deal(users.alice, mine, "Bob's", deal_value="700", assigned_to=str(users.bob.user_id))
    make_communication(users.alice, mine, "Yesterday", communication_date=_recent(24))
    make_communication(users.alice, mine, "Long ago", communication_date="2024-01-01T00:00:00Z")

    result = dashboard_service.get_dashboard_stats(db_session, users.alice)

    assert result.success
    stats = result.data
    assert stats.total_customers == 1
    assert stats.total_contacts == 2
    assert stats.active_deals == 2
    assert stats.active_deal_value == Decimal("1500.25")
    assert stats.recent_communications == 1
    assert stats.customers_this_month == 2


def test_dashboard_stats_for_new_user_are_zero(db_session: Session, users: SimpleNamespace) -> None:
    stats = dashboard_service.get_dashboard_stats(db_session, users.carol).data

    assert stats.total_customers == 0
    assert stats.active_deals == 0
    assert stats.active_deal_value == Decimal("0")


def test_recent_activity_merges_and_truncates(
    db_session: Session,
    users: SimpleNamespace,
    make_customer: Callable[..., uuid.UUID],
    make_deal: Callable[..., uuid.UUID],
    make_communication: Callable[..., uuid.UUID],
) -> None:
    customer_id = make_customer(users.alice)
    for index in range(6):
        make_communication(users.alice, customer_id, f"Call {index}", communication_date=_recent(48 + index))
    make_deal(users.alice, customer_id, "Fresh deal")

    full = dashboard_service.get_recent_activity(db_session, users.alice, limit=20).data
    short = dashboard_service.get_recent_activity(db_session, users.alice, limit=3).data

    assert [item.type for item in full].count("communication") == 5
    assert {item.type for item in full} == {"customer", "deal", "communication"}
    assert [item.occurred_at for item in full] == sorted((item.occurred_at for item in full), reverse=True)
    assert len(short) == 3
    assert full[-1].title == "Call 4"
    assert all(item.occurred_at.tzinfo is not None for item in full)


def test_recent_activity_excludes_other_users(
    db_session: Session,
    users: SimpleNamespace,
    make_customer: Callable[..., uuid.UUID],
) -> None:
    make_customer(users.bob, "Bob AS")

    assert dashboard_service.get_recent_activity(db_session, users.alice).data == []
