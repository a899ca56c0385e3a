from __future__ import annotations

import uuid
from types import SimpleNamespace
from typing import Any

from sqlalchemy import Row, select
from sqlalchemy.orm import Session

from mercatur.crm.models import CRMCommunicationLog, CRMContact, CRMCustomer, CRMDeal
from mercatur.platform.security.context import Identity
from mercatur.platform.security.repository import BaseRepository


def _customer_accessible(identity: Identity, created_by: uuid.UUID | None, assigned_to: uuid.UUID | None) -> bool:
    return identity.user_id in {created_by, assigned_to} or assigned_to is None


def child_ownership(identity: Identity, parent: Any) -> SimpleNamespace:
    """Ownership view of a row about to be created under ``parent``."""

    return SimpleNamespace(
        created_by=identity.user_id,
        customer_created_by=parent.created_by,
        customer_assigned_to=parent.assigned_to,
    )


class CustomerRepository(BaseRepository):
    resource = "crm.customer"
    model = CRMCustomer
    ownership_columns = ("created_by", "assigned_to")

    def _allows(self, identity: Identity, action: str, ownership: Any) -> bool:
        if action == "read":
            return True
        if action == "create":
            return ownership.created_by == identity.user_id
        return identity.user_id in {ownership.created_by, ownership.assigned_to}


class ContactRepository(BaseRepository):
    resource = "crm.contact"
    model = CRMContact
    ownership_columns = ("customer_id", "created_by")

    def load_ownership(self, session: Session, entity_id: uuid.UUID) -> Row[Any] | None:
        stmt = (
            select(
                CRMContact.id,
                CRMContact.customer_id,
                CRMContact.created_by,
                CRMCustomer.created_by.label("customer_created_by"),
                CRMCustomer.assigned_to.label("customer_assigned_to"),
            )
            .join(CRMCustomer, CRMCustomer.id == CRMContact.customer_id)
            .where(CRMContact.id == entity_id)
        )
        return session.execute(stmt).first()

    def _allows(self, identity: Identity, action: str, ownership: Any) -> bool:
        accessible = _customer_accessible(identity, ownership.customer_created_by, ownership.customer_assigned_to)
        if action == "create":
            return accessible and ownership.created_by == identity.user_id
        return accessible


class DealRepository(BaseRepository):
    resource = "crm.deal"
    model = CRMDeal
    ownership_columns = ("customer_id", "contact_id", "created_by", "assigned_to", "stage", "actual_close_date")

    def _allows(self, identity: Identity, action: str, ownership: Any) -> bool:
        if action == "move":
            return _customer_accessible(identity, ownership.customer_created_by, ownership.customer_assigned_to)
        if action == "create":
            return ownership.created_by == identity.user_id and _customer_accessible(
                identity, ownership.customer_created_by, ownership.customer_assigned_to
            )
        return identity.user_id in {ownership.created_by, ownership.assigned_to}


class CommunicationRepository(BaseRepository):
    resource = "crm.communication"
    model = CRMCommunicationLog
    ownership_columns = ("customer_id", "contact_id", "logged_by")

    def _allows(self, identity: Identity, action: str, ownership: Any) -> bool:
        if action in {"create", "move"}:
            return _customer_accessible(identity, ownership.customer_created_by, ownership.customer_assigned_to)
        return ownership.logged_by == identity.user_id


customer_repository = CustomerRepository()
contact_repository = ContactRepository()
deal_repository = DealRepository()
communication_repository = CommunicationRepository()
