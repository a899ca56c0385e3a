from __future__ import annotations

import uuid
from collections.abc import Callable, Generator
from types import SimpleNamespace
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from mercatur import audit, events
from mercatur.core.config import get_settings
from mercatur.core.database import Base
from mercatur.crm import models as crm_models  # noqa: F401
from mercatur.crm.service import communication_service, contact_service, customer_service, deal_service
from mercatur.platform.security import SYSTEM_IDENTITY, Identity, identity_scope
from mercatur.profiles.models import UserProfile


ALICE_ID = uuid.UUID("00000000-0000-4000-8000-00000000a11c")
BOB_ID = uuid.UUID("00000000-0000-4000-8000-000000000b0b")
CAROL_ID = uuid.UUID("00000000-0000-4000-8000-0000000ca201")


@pytest.fixture()
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def db_session(engine: Engine) -> Generator[Session, None, None]:
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def users(db_session: Session) -> SimpleNamespace:
    """Three signed-up users with profiles."""

    people = {
        "alice": Identity(user_id=ALICE_ID, email="alice@example.com"),
        "bob": Identity(user_id=BOB_ID, email="bob@example.com"),
        "carol": Identity(user_id=CAROL_ID, email="carol@example.com"),
    }
    with identity_scope(db_session, SYSTEM_IDENTITY):
        for name, identity in people.items():
            db_session.add(UserProfile(id=identity.user_id, full_name=name.title(), email=identity.email))
        db_session.commit()
    return SimpleNamespace(**people)


def _created_id(result: Any) -> uuid.UUID:
    assert result.success, getattr(result, "error", None)
    return result.data.id


@pytest.fixture()
def make_customer(db_session: Session) -> Callable[..., uuid.UUID]:
    def _make(identity: Identity, company_name: str = "Acme AS", **fields: Any) -> uuid.UUID:
        payload = {"company_name": company_name, **fields}
        return _created_id(customer_service.create(db_session, identity, payload))

    return _make


@pytest.fixture()
def make_contact(db_session: Session) -> Callable[..., uuid.UUID]:
    def _make(identity: Identity, customer_id: uuid.UUID, full_name: str = "Ola Nordmann", **fields: Any) -> uuid.UUID:
        payload = {"customer_id": str(customer_id), "full_name": full_name, **fields}
        return _created_id(contact_service.create(db_session, identity, payload))

    return _make


@pytest.fixture()
def make_deal(db_session: Session) -> Callable[..., uuid.UUID]:
    def _make(identity: Identity, customer_id: uuid.UUID, deal_name: str = "Pilot", **fields: Any) -> uuid.UUID:
        payload = {"customer_id": str(customer_id), "deal_name": deal_name, **fields}
        return _created_id(deal_service.create(db_session, identity, payload))

    return _make


@pytest.fixture()
def make_communication(db_session: Session) -> Callable[..., uuid.UUID]:
    def _make(identity: Identity, customer_id: uuid.UUID, subject: str = "Intro call", **fields: Any) -> uuid.UUID:
        payload = {
            "customer_id": str(customer_id),
            "communication_type": "phone",
            "communication_date": "2025-01-15T10:00:00+00:00",
            "subject": subject,
            **fields,
        }
        return _created_id(communication_service.create(db_session, identity, payload))

    return _make
