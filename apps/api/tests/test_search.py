from __future__ import annotations

import uuid
from collections.abc import Callable, Generator
from types import SimpleNamespace

import pytest
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from mercatur.crm.search import search_service


@pytest.fixture()
def statements(engine: Engine) -> Generator[list[str], None, None]:
    captured: list[str] = []

    def _capture(conn, cursor, statement, parameters, context, executemany) -> None:  # noqa: ANN001
        captured.append(statement)

    event.listen(engine, "before_cursor_execute", _capture)
    try:
        yield captured
    finally:
        event.remove(engine, "before_cursor_execute", _capture)


@pytest.fixture()
def catalog(
    users: SimpleNamespace,
    make_customer: Callable[..., uuid.UUID],
    make_contact: Callable[..., uuid.UUID],
    make_deal: Callable[..., uuid.UUID],
    make_communication: Callable[..., uuid.UUID],
) -> SimpleNamespace:
    open_id = make_customer(users.alice, "Acme AS", org_number="912345678")
    secret_id = make_customer(users.bob, "Acme Secret", assigned_to=str(users.bob.user_id))
    make_contact(users.alice, open_id, "Kari Acmesen", job_title="CEO")
    make_contact(users.bob, secret_id, "Hidden Acmeson")
    make_communication(users.alice, open_id, "Acme renewal call")
    make_communication(users.bob, secret_id, "Acme secret plans")
    deal_id = make_deal(users.alice, open_id, "Acme rollout", deal_value="1234567.5", stage="proposal")
    make_deal(users.bob, secret_id, "Acme secret deal")
    return SimpleNamespace(open_id=open_id, secret_id=secret_id, deal_id=deal_id)


def test_short_query_returns_nothing_without_touching_the_database(
    db_session: Session,
    users: SimpleNamespace,
    statements: list[str],
) -> None:
    result = search_service.search_entities(db_session, users.alice, " a ")

    assert result.success
    assert result.data == []
    assert statements == []


def test_search_finds_every_entity_kind(db_session: Session, users: SimpleNamespace, catalog: SimpleNamespace) -> None:
    result = search_service.search_entities(db_session, users.alice, "Ac")

    titles = {(hit.type, hit.title) for hit in result.data}
    assert ("customer", "Acme AS") in titles
    assert ("contact", "Kari Acmesen") in titles
    assert ("communication", "Acme renewal call") in titles
    assert ("deal", "Acme rollout") in titles
    assert [hit.type for hit in result.data][0] == "customer"


def test_search_respects_customer_access(db_session: Session, users: SimpleNamespace, catalog: SimpleNamespace) -> None:
    carol_hits = search_service.search_entities(db_session, users.carol, "acme").data
    bob_hits = search_service.search_entities(db_session, users.bob, "acme").data

    carol_titles = {hit.title for hit in carol_hits}
    assert carol_titles == {"Acme AS", "Kari Acmesen", "Acme renewal call", "Acme rollout"}
    assert "Acme Secret" in {hit.title for hit in bob_hits}
    assert "Acme secret deal" in {hit.title for hit in bob_hits}


def test_search_treats_wildcards_literally(db_session: Session, users: SimpleNamespace, catalog: SimpleNamespace) -> None:
    result = search_service.search_entities(db_session, users.alice, "%%")

    assert result.success
    assert result.data == []


def test_search_result_shapes(db_session: Session, users: SimpleNamespace, catalog: SimpleNamespace) -> None:
    hits = {hit.type: hit for hit in search_service.search_entities(db_session, users.alice, "acme").data}

    assert hits["customer"].link == f"/customers/{catalog.open_id}"
    assert hits["customer"].metadata == "912345678"
    assert hits["contact"].metadata == "CEO"
    assert hits["communication"].metadata == "phone"
    assert hits["deal"].link == f"/deals/{catalog.deal_id}"
    assert hits["deal"].metadata == "1 234 567.50 NOK - proposal"


def test_search_requires_identity(db_session: Session) -> None:
    result = search_service.search_entities(db_session, None, "acme")

    assert not result.success
    assert result.code == "UNAUTHORIZED"
