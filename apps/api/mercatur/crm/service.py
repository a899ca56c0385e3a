from __future__ import annotations

import logging
import math
import uuid
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, TypeVar

from pydantic import BaseModel
from sqlalchemy import func, or_, select, text, update
from sqlalchemy.orm import Session

from mercatur import events
from mercatur.core.config import get_settings
from mercatur.crm.aggregates import customer_with_stats_query, to_customer_with_stats
from mercatur.crm.models import (
    TERMINAL_DEAL_STAGES,
    CRMCommunicationLog,
    CRMContact,
    CRMCustomer,
    CRMDeal,
    utcnow,
)
from mercatur.crm.repositories import (
    child_ownership,
    communication_repository,
    contact_repository,
    customer_repository,
    deal_repository,
)
from mercatur.crm.results import NotFound, ValidationFailed, action_boundary
from mercatur.crm.schemas import (
    CommunicationCreate,
    CommunicationRead,
    CommunicationUpdate,
    ContactCreate,
    ContactRead,
    ContactUpdate,
    CustomerCreate,
    CustomerPage,
    CustomerUpdate,
    CustomerWithStats,
    DealCreate,
    DealRead,
    DealUpdate,
    EntityRef,
)
from mercatur.platform.security.context import Identity
from mercatur.profiles.models import UserProfile
from mercatur.revalidation import (
    contact_path,
    customer_communications_path,
    customer_contacts_path,
    customer_path,
    customers_path,
    dashboard_path,
    deal_path,
    deals_path,
    revalidate_paths,
)


logger = logging.getLogger("mercatur.crm.service")

SchemaT = TypeVar("SchemaT", bound=BaseModel)


def _validate(schema: type[SchemaT], payload: Any) -> SchemaT:
    if isinstance(payload, schema):
        return payload
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(exclude_unset=True)
    if not isinstance(payload, Mapping):
        raise ValidationFailed("Request body must be an object.")
    return schema.model_validate(dict(payload))


def _today() -> Any:
    return datetime.now(timezone.utc).date()


def _publish_domain_event(event_type: str, identity: Identity, payload: dict[str, Any]) -> None:
    events.publish(events.build_envelope(event_type, actor_user_id=identity.subject, payload=payload))


def _require_known_user(session: Session, user_id: uuid.UUID, field: str = "assigned_to") -> None:
    found = session.execute(select(UserProfile.id).where(UserProfile.id == user_id)).first()
    if found is None:
        raise ValidationFailed(f"{field}: unknown user")


def _load_parent(session: Session, customer_id: uuid.UUID) -> Any:
    parent = customer_repository.load_ownership(session, customer_id)
    if parent is None:
        raise NotFound("Customer")
    return parent


def _require_contact_of_customer(session: Session, contact_id: uuid.UUID, customer_id: uuid.UUID) -> None:
    owner = session.execute(select(CRMContact.customer_id).where(CRMContact.id == contact_id)).scalar_one_or_none()
    if owner != customer_id:
        raise ValidationFailed("contact_id: invalid contact for this customer")


def _list_limit() -> int:
    return get_settings().list_limit


class CustomerService:
    entity_type = "crm.customer"

    @action_boundary("crm.customer", "create")
    def create(self, session: Session, identity: Identity, payload: Any) -> EntityRef:
        dto = _validate(CustomerCreate, payload)
        if dto.assigned_to is not None:
            _require_known_user(session, dto.assigned_to)

        customer = CRMCustomer(
            **dto.model_dump(),
            created_by=identity.user_id,
            updated_by=identity.user_id,
        )
        session.add(customer)
        session.flush()
        customer_id = customer.id
        session.commit()

        logger.info("crm.customer.created", extra={"entity_type": self.entity_type, "entity_id": str(customer_id)})
        _publish_domain_event("crm.customer.created", identity, {"customer_id": str(customer_id)})
        revalidate_paths(customers_path(), dashboard_path(), actor_user_id=identity.subject)
        return EntityRef(id=customer_id)

    @action_boundary("crm.customer", "update")
    def update(self, session: Session, identity: Identity, customer_id: uuid.UUID, payload: Any) -> EntityRef:
        dto = _validate(CustomerUpdate, payload)
        ownership = customer_repository.load_ownership(session, customer_id)
        if ownership is None:
            raise NotFound("Customer")
        customer_repository.require(identity, "update", ownership, entity_id=customer_id)

        changes = dto.changes()
        if changes.get("assigned_to") is not None:
            _require_known_user(session, changes["assigned_to"])

        customer = session.execute(select(CRMCustomer).where(CRMCustomer.id == customer_id)).scalar_one()
        for key, value in changes.items():
            setattr(customer, key, value)
        customer.updated_by = identity.user_id
        session.flush()
        session.commit()

        logger.info("crm.customer.updated", extra={"entity_type": self.entity_type, "entity_id": str(customer_id)})
        _publish_domain_event(
            "crm.customer.updated",
            identity,
            {"customer_id": str(customer_id), "fields": sorted(changes)},
        )
        revalidate_paths(customers_path(), customer_path(customer_id), dashboard_path(), actor_user_id=identity.subject)
        return EntityRef(id=customer_id)

    @action_boundary("crm.customer", "delete")
    def delete(self, session: Session, identity: Identity, customer_id: uuid.UUID) -> EntityRef:
        ownership = customer_repository.load_ownership(session, customer_id)
        if ownership is None:
            raise NotFound("Customer")
        customer_repository.require(identity, "delete", ownership, entity_id=customer_id)

        customer = session.execute(select(CRMCustomer).where(CRMCustomer.id == customer_id)).scalar_one()
        session.delete(customer)
        session.flush()
        session.commit()

        logger.info("crm.customer.deleted", extra={"entity_type": self.entity_type, "entity_id": str(customer_id)})
        _publish_domain_event("crm.customer.deleted", identity, {"customer_id": str(customer_id)})
        revalidate_paths(customers_path(), customer_path(customer_id), dashboard_path(), actor_user_id=identity.subject)
        return EntityRef(id=customer_id)

    @action_boundary("crm.customer", "get")
    def get_by_id(self, session: Session, identity: Identity, customer_id: uuid.UUID) -> CustomerWithStats:
        row = session.execute(customer_with_stats_query().where(CRMCustomer.id == customer_id)).first()
        if row is None:
            raise NotFound("Customer")
        return to_customer_with_stats(row)

    @action_boundary("crm.customer", "list")
    def list_customers(self, session: Session, identity: Identity, page: int = 1, limit: int | None = None) -> CustomerPage:
        settings = get_settings()
        valid_page = max(1, int(page))
        requested = settings.customer_page_size_default if limit is None else int(limit)
        valid_limit = min(max(1, requested), settings.customer_page_size_max)

        total = session.execute(select(func.count()).select_from(CRMCustomer)).scalar_one()
        rows = session.execute(
            customer_with_stats_query()
            .order_by(CRMCustomer.updated_at.desc(), CRMCustomer.id)
            .offset((valid_page - 1) * valid_limit)
            .limit(valid_limit)
        ).all()
        return CustomerPage(
            customers=[to_customer_with_stats(row) for row in rows],
            total=total,
            page=valid_page,
            limit=valid_limit,
            total_pages=math.ceil(total / valid_limit) if total else 0,
        )

    @action_boundary("crm.customer", "search")
    def search_customers(
        self,
        session: Session,
        identity: Identity,
        query: str,
        limit: int = 50,
    ) -> list[CustomerWithStats]:
        term = (query or "").strip()
        if not term:
            return []
        stmt = (
            customer_with_stats_query()
            .where(
                or_(
                    CRMCustomer.company_name.icontains(term, autoescape=True),
                    CRMCustomer.org_number.icontains(term, autoescape=True),
                    CRMCustomer.industry.icontains(term, autoescape=True),
                )
            )
            .order_by(CRMCustomer.updated_at.desc(), CRMCustomer.id)
            .limit(min(max(1, limit), _list_limit()))
        )
        return [to_customer_with_stats(row) for row in session.execute(stmt).all()]


class ContactService:
    entity_type = "crm.contact"

    def _serialize_primary_writes(self, session: Session, customer_id: uuid.UUID) -> None:
        # Concurrent primary flips on one customer queue behind a transaction-scoped lock.
        if session.get_bind().dialect.name == "postgresql":
            session.execute(
                text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
                {"key": f"crm_contact_primary:{customer_id}"},
            )

    def _clear_primary(
        self,
        session: Session,
        identity: Identity,
        customer_id: uuid.UUID,
        keep_contact_id: uuid.UUID | None,
    ) -> None:
        stmt = update(CRMContact).where(CRMContact.customer_id == customer_id, CRMContact.is_primary.is_(True))
        if keep_contact_id is not None:
            stmt = stmt.where(CRMContact.id != keep_contact_id)
        session.execute(
            stmt.values(is_primary=False, updated_by=identity.user_id, updated_at=utcnow()).execution_options(
                synchronize_session="fetch"
            )
        )

    @action_boundary("crm.contact", "create")
    def create(self, session: Session, identity: Identity, payload: Any) -> EntityRef:
        dto = _validate(ContactCreate, payload)
        parent = _load_parent(session, dto.customer_id)
        contact_repository.require(identity, "create", child_ownership(identity, parent))

        if dto.is_primary:
            self._serialize_primary_writes(session, dto.customer_id)
            self._clear_primary(session, identity, dto.customer_id, keep_contact_id=None)

        contact = CRMContact(
            **dto.model_dump(),
            created_by=identity.user_id,
            updated_by=identity.user_id,
        )
        session.add(contact)
        session.flush()
        contact_id = contact.id
        session.commit()

        logger.info("crm.contact.created", extra={"entity_type": self.entity_type, "entity_id": str(contact_id)})
        _publish_domain_event(
            "crm.contact.created",
            identity,
            {"contact_id": str(contact_id), "customer_id": str(dto.customer_id)},
        )
        revalidate_paths(
            customer_path(dto.customer_id),
            customer_contacts_path(dto.customer_id),
            actor_user_id=identity.subject,
        )
        return EntityRef(id=contact_id)

    @action_boundary("crm.contact", "update")
    def update(self, session: Session, identity: Identity, contact_id: uuid.UUID, payload: Any) -> EntityRef:
        dto = _validate(ContactUpdate, payload)
        ownership = contact_repository.load_ownership(session, contact_id)
        if ownership is None:
            raise NotFound("Contact")
        contact_repository.require(identity, "update", ownership, entity_id=contact_id)

        changes = dto.changes()
        if changes.get("is_primary") is True:
            self._serialize_primary_writes(session, ownership.customer_id)
            self._clear_primary(session, identity, ownership.customer_id, keep_contact_id=contact_id)

        contact = session.execute(select(CRMContact).where(CRMContact.id == contact_id)).scalar_one()
        for key, value in changes.items():
            setattr(contact, key, value)
        contact.updated_by = identity.user_id
        session.flush()
        session.commit()

        logger.info("crm.contact.updated", extra={"entity_type": self.entity_type, "entity_id": str(contact_id)})
        revalidate_paths(
            customer_path(ownership.customer_id),
            customer_contacts_path(ownership.customer_id),
            contact_path(ownership.customer_id, contact_id),
            actor_user_id=identity.subject,
        )
        return EntityRef(id=contact_id)

    @action_boundary("crm.contact", "delete")
    def delete(self, session: Session, identity: Identity, contact_id: uuid.UUID) -> EntityRef:
        ownership = contact_repository.load_ownership(session, contact_id)
        if ownership is None:
            raise NotFound("Contact")
        contact_repository.require(identity, "delete", ownership, entity_id=contact_id)

        contact = session.execute(select(CRMContact).where(CRMContact.id == contact_id)).scalar_one()
        session.delete(contact)
        session.flush()
        session.commit()

        logger.info("crm.contact.deleted", extra={"entity_type": self.entity_type, "entity_id": str(contact_id)})
        revalidate_paths(
            customer_path(ownership.customer_id),
            customer_contacts_path(ownership.customer_id),
            actor_user_id=identity.subject,
        )
        return EntityRef(id=contact_id)

    @action_boundary("crm.contact", "get")
    def get_by_id(self, session: Session, identity: Identity, contact_id: uuid.UUID) -> ContactRead:
        contact = session.execute(select(CRMContact).where(CRMContact.id == contact_id)).scalar_one_or_none()
        if contact is None:
            raise NotFound("Contact")
        return ContactRead.model_validate(contact)

    @action_boundary("crm.contact", "list")
    def list_for_customer(self, session: Session, identity: Identity, customer_id: uuid.UUID) -> list[ContactRead]:
        _load_parent(session, customer_id)
        contacts = session.execute(
            select(CRMContact)
            .where(CRMContact.customer_id == customer_id)
            .order_by(CRMContact.is_primary.desc(), CRMContact.full_name.asc())
            .limit(_list_limit())
        ).scalars()
        return [ContactRead.model_validate(contact) for contact in contacts]


class DealService:
    entity_type = "crm.deal"

    @action_boundary("crm.deal", "create")
    def create(self, session: Session, identity: Identity, payload: Any) -> EntityRef:
        dto = _validate(DealCreate, payload)
        parent = _load_parent(session, dto.customer_id)
        deal_repository.require(identity, "create", child_ownership(identity, parent))
        if dto.contact_id is not None:
            _require_contact_of_customer(session, dto.contact_id, dto.customer_id)
        assigned_to = dto.assigned_to or identity.user_id
        if assigned_to != identity.user_id:
            _require_known_user(session, assigned_to)

        deal = CRMDeal(
            **dto.model_dump(exclude={"assigned_to"}),
            assigned_to=assigned_to,
            created_by=identity.user_id,
            updated_by=identity.user_id,
        )
        session.add(deal)
        session.flush()
        deal_id = deal.id
        session.commit()

        logger.info("crm.deal.created", extra={"entity_type": self.entity_type, "entity_id": str(deal_id)})
        _publish_domain_event(
            "crm.deal.created",
            identity,
            {"deal_id": str(deal_id), "customer_id": str(dto.customer_id), "stage": dto.stage},
        )
        revalidate_paths(
            customer_path(dto.customer_id),
            deals_path(),
            dashboard_path(),
            actor_user_id=identity.subject,
        )
        return EntityRef(id=deal_id)

    @action_boundary("crm.deal", "update")
    def update(self, session: Session, identity: Identity, deal_id: uuid.UUID, payload: Any) -> EntityRef:
        dto = _validate(DealUpdate, payload)
        ownership = deal_repository.load_ownership(session, deal_id)
        if ownership is None:
            raise NotFound("Deal")
        deal_repository.require(identity, "update", ownership, entity_id=deal_id)

        changes = dto.changes()
        customer_id = changes.get("customer_id", ownership.customer_id)
        if customer_id != ownership.customer_id:
            parent = _load_parent(session, customer_id)
            deal_repository.require(identity, "move", child_ownership(identity, parent), entity_id=deal_id)

        contact_id = changes.get("contact_id", ownership.contact_id)
        if contact_id is not None and ("contact_id" in changes or customer_id != ownership.customer_id):
            _require_contact_of_customer(session, contact_id, customer_id)

        if changes.get("assigned_to") is not None and changes["assigned_to"] != identity.user_id:
            _require_known_user(session, changes["assigned_to"])

        new_stage = changes.get("stage")
        entering_terminal = new_stage in TERMINAL_DEAL_STAGES and ownership.stage not in TERMINAL_DEAL_STAGES
        if entering_terminal:
            changes["actual_close_date"] = _today()

        deal = session.execute(select(CRMDeal).where(CRMDeal.id == deal_id)).scalar_one()
        for key, value in changes.items():
            setattr(deal, key, value)
        deal.updated_by = identity.user_id
        session.flush()
        session.commit()

        logger.info("crm.deal.updated", extra={"entity_type": self.entity_type, "entity_id": str(deal_id)})
        if entering_terminal:
            _publish_domain_event(
                f"crm.deal.closed_{new_stage}",
                identity,
                {"deal_id": str(deal_id), "customer_id": str(customer_id)},
            )
        paths = [customer_path(customer_id), deal_path(deal_id), deals_path(), dashboard_path()]
        if customer_id != ownership.customer_id:
            paths.append(customer_path(ownership.customer_id))
        revalidate_paths(*paths, actor_user_id=identity.subject)
        return EntityRef(id=deal_id)

    @action_boundary("crm.deal", "delete")
    def delete(self, session: Session, identity: Identity, deal_id: uuid.UUID) -> EntityRef:
        ownership = deal_repository.load_ownership(session, deal_id)
        if ownership is None:
            raise NotFound("Deal")
        deal_repository.require(identity, "delete", ownership, entity_id=deal_id)

        deal = session.execute(select(CRMDeal).where(CRMDeal.id == deal_id)).scalar_one()
        session.delete(deal)
        session.flush()
        session.commit()

        logger.info("crm.deal.deleted", extra={"entity_type": self.entity_type, "entity_id": str(deal_id)})
        revalidate_paths(
            customer_path(ownership.customer_id),
            deals_path(),
            dashboard_path(),
            actor_user_id=identity.subject,
        )
        return EntityRef(id=deal_id)

    @action_boundary("crm.deal", "get")
    def get_by_id(self, session: Session, identity: Identity, deal_id: uuid.UUID) -> DealRead:
        deal = session.execute(select(CRMDeal).where(CRMDeal.id == deal_id)).scalar_one_or_none()
        if deal is None:
            raise NotFound("Deal")
        return DealRead.model_validate(deal)

    @action_boundary("crm.deal", "list")
    def list_for_customer(self, session: Session, identity: Identity, customer_id: uuid.UUID) -> list[DealRead]:
        _load_parent(session, customer_id)
        deals = session.execute(
            select(CRMDeal)
            .where(CRMDeal.customer_id == customer_id)
            .order_by(CRMDeal.updated_at.desc(), CRMDeal.id)
            .limit(_list_limit())
        ).scalars()
        return [DealRead.model_validate(deal) for deal in deals]

    @action_boundary("crm.deal", "list")
    def list_deals(self, session: Session, identity: Identity, stage: str | None = None) -> list[DealRead]:
        stmt = select(CRMDeal)
        if stage:
            stmt = stmt.where(CRMDeal.stage == stage)
        deals = session.execute(stmt.order_by(CRMDeal.updated_at.desc(), CRMDeal.id).limit(_list_limit())).scalars()
        return [DealRead.model_validate(deal) for deal in deals]


class CommunicationService:
    entity_type = "crm.communication"

    @action_boundary("crm.communication", "create")
    def create(self, session: Session, identity: Identity, payload: Any) -> EntityRef:
        dto = _validate(CommunicationCreate, payload)
        parent = _load_parent(session, dto.customer_id)
        communication_repository.require(identity, "create", child_ownership(identity, parent))
        if dto.contact_id is not None:
            _require_contact_of_customer(session, dto.contact_id, dto.customer_id)

        log = CRMCommunicationLog(**dto.model_dump(), logged_by=identity.user_id)
        session.add(log)
        session.flush()
        log_id = log.id
        session.commit()

        logger.info("crm.communication.created", extra={"entity_type": self.entity_type, "entity_id": str(log_id)})
        revalidate_paths(
            customer_path(dto.customer_id),
            customer_communications_path(dto.customer_id),
            dashboard_path(),
            actor_user_id=identity.subject,
        )
        return EntityRef(id=log_id)

    @action_boundary("crm.communication", "update")
    def update(self, session: Session, identity: Identity, communication_id: uuid.UUID, payload: Any) -> EntityRef:
        dto = _validate(CommunicationUpdate, payload)
        ownership = communication_repository.load_ownership(session, communication_id)
        if ownership is None:
            raise NotFound("Communication")
        communication_repository.require(identity, "update", ownership, entity_id=communication_id)

        changes = dto.changes()
        customer_id = changes.get("customer_id", ownership.customer_id)
        if customer_id != ownership.customer_id:
            parent = _load_parent(session, customer_id)
            communication_repository.require(
                identity, "move", child_ownership(identity, parent), entity_id=communication_id
            )

        contact_id = changes.get("contact_id", ownership.contact_id)
        if contact_id is not None and ("contact_id" in changes or customer_id != ownership.customer_id):
            _require_contact_of_customer(session, contact_id, customer_id)

        log = session.execute(
            select(CRMCommunicationLog).where(CRMCommunicationLog.id == communication_id)
        ).scalar_one()
        for key, value in changes.items():
            setattr(log, key, value)
        session.flush()
        session.commit()

        logger.info(
            "crm.communication.updated",
            extra={"entity_type": self.entity_type, "entity_id": str(communication_id)},
        )
        paths = [customer_path(customer_id), customer_communications_path(customer_id), dashboard_path()]
        if customer_id != ownership.customer_id:
            paths.extend([customer_path(ownership.customer_id), customer_communications_path(ownership.customer_id)])
        revalidate_paths(*paths, actor_user_id=identity.subject)
        return EntityRef(id=communication_id)

    @action_boundary("crm.communication", "delete")
    def delete(self, session: Session, identity: Identity, communication_id: uuid.UUID) -> EntityRef:
        ownership = communication_repository.load_ownership(session, communication_id)
        if ownership is None:
            raise NotFound("Communication")
        communication_repository.require(identity, "delete", ownership, entity_id=communication_id)

        log = session.execute(
            select(CRMCommunicationLog).where(CRMCommunicationLog.id == communication_id)
        ).scalar_one()
        session.delete(log)
        session.flush()
        session.commit()

        logger.info(
            "crm.communication.deleted",
            extra={"entity_type": self.entity_type, "entity_id": str(communication_id)},
        )
        revalidate_paths(
            customer_path(ownership.customer_id),
            customer_communications_path(ownership.customer_id),
            dashboard_path(),
            actor_user_id=identity.subject,
        )
        return EntityRef(id=communication_id)

    @action_boundary("crm.communication", "get")
    def get_by_id(self, session: Session, identity: Identity, communication_id: uuid.UUID) -> CommunicationRead:
        log = session.execute(
            select(CRMCommunicationLog).where(CRMCommunicationLog.id == communication_id)
        ).scalar_one_or_none()
        if log is None:
            raise NotFound("Communication")
        return CommunicationRead.model_validate(log)

    @action_boundary("crm.communication", "list")
    def list_for_customer(
        self,
        session: Session,
        identity: Identity,
        customer_id: uuid.UUID,
    ) -> list[CommunicationRead]:
        _load_parent(session, customer_id)
        logs = session.execute(
            select(CRMCommunicationLog)
            .where(CRMCommunicationLog.customer_id == customer_id)
            .order_by(CRMCommunicationLog.communication_date.desc(), CRMCommunicationLog.id)
            .limit(_list_limit())
        ).scalars()
        return [CommunicationRead.model_validate(log) for log in logs]


customer_service = CustomerService()
contact_service = ContactService()
deal_service = DealService()
communication_service = CommunicationService()
