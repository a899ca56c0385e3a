from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from mercatur.core.config import get_settings
from mercatur.crm.models import CRMCommunicationLog, CRMContact, CRMCustomer, CRMDeal
from mercatur.crm.policies import customer_accessible
from mercatur.crm.results import action_boundary
from mercatur.crm.schemas import SearchResult
from mercatur.platform.security.context import Identity
from mercatur.platform.security.policies import current_user_literal
from mercatur.revalidation import contact_path, customer_path, deal_path


logger = logging.getLogger("mercatur.crm.search")


def _format_value(value: Decimal | None) -> str:
    if value is None:
        return "0"
    return f"{value:,.2f}".replace(",", " ")


def _search_customers(session: Session, identity: Identity, term: str, limit: int) -> list[SearchResult]:
    stmt = (
        select(CRMCustomer.id, CRMCustomer.company_name, CRMCustomer.org_number, CRMCustomer.industry)
        .where(
            customer_accessible(CRMCustomer.id, current_user_literal(identity)),
            or_(
                CRMCustomer.company_name.icontains(term, autoescape=True),
                CRMCustomer.org_number.icontains(term, autoescape=True),
                CRMCustomer.industry.icontains(term, autoescape=True),
            ),
        )
        .order_by(CRMCustomer.company_name)
        .limit(limit)
    )
    return [
        SearchResult(
            type="customer",
            id=row.id,
            title=row.company_name,
            description="Customer",
            link=customer_path(row.id),
            metadata=row.org_number or row.industry or "",
        )
        for row in session.execute(stmt)
    ]


def _search_contacts(session: Session, term: str, limit: int) -> list[SearchResult]:
    stmt = (
        select(CRMContact.id, CRMContact.customer_id, CRMContact.full_name, CRMContact.job_title, CRMContact.email)
        .where(
            or_(
                CRMContact.full_name.icontains(term, autoescape=True),
                CRMContact.email.icontains(term, autoescape=True),
                CRMContact.job_title.icontains(term, autoescape=True),
            )
        )
        .order_by(CRMContact.full_name)
        .limit(limit)
    )
    return [
        SearchResult(
            type="contact",
            id=row.id,
            title=row.full_name,
            description="Contact",
            link=contact_path(row.customer_id, row.id),
            metadata=row.job_title or row.email or "",
        )
        for row in session.execute(stmt)
    ]


def _search_communications(session: Session, identity: Identity, term: str, limit: int) -> list[SearchResult]:
    stmt = (
        select(
            CRMCommunicationLog.id,
            CRMCommunicationLog.customer_id,
            CRMCommunicationLog.subject,
            CRMCommunicationLog.communication_type,
        )
        .where(
            customer_accessible(CRMCommunicationLog.customer_id, current_user_literal(identity)),
            CRMCommunicationLog.subject.icontains(term, autoescape=True),
        )
        .order_by(CRMCommunicationLog.communication_date.desc())
        .limit(limit)
    )
    return [
        SearchResult(
            type="communication",
            id=row.id,
            title=row.subject,
            description="Communication",
            link=f"{customer_path(row.customer_id)}/communications/{row.id}",
            metadata=row.communication_type,
        )
        for row in session.execute(stmt)
    ]


def _search_deals(session: Session, term: str, limit: int) -> list[SearchResult]:
    stmt = (
        select(CRMDeal.id, CRMDeal.deal_name, CRMDeal.deal_value, CRMDeal.currency, CRMDeal.stage)
        .where(CRMDeal.deal_name.icontains(term, autoescape=True))
        .order_by(CRMDeal.deal_name)
        .limit(limit)
    )
    return [
        SearchResult(
            type="deal",
            id=row.id,
            title=row.deal_name,
            description="Deal",
            link=deal_path(row.id),
            metadata=f"{_format_value(row.deal_value)} {row.currency} - {row.stage}",
        )
        for row in session.execute(stmt)
    ]


class SearchService:
    def query_too_short(self, query: str | None) -> bool:
        return len((query or "").strip()) < get_settings().search_min_length

    @action_boundary("crm.search", "search")
    def search_entities(self, session: Session, identity: Identity, query: str | None) -> list[SearchResult]:
        """Fan out one bounded match per entity kind and concatenate the hits.

        Contacts and deals are narrowed by their row policies; customers and
        communications are narrowed to customers the identity can work on.
        """

        if self.query_too_short(query):
            return []
        term = (query or "").strip()
        limit = get_settings().search_limit_per_entity

        results: list[SearchResult] = []
        results.extend(_search_customers(session, identity, term, limit))
        results.extend(_search_contacts(session, term, limit))
        results.extend(_search_communications(session, identity, term, limit))
        results.extend(_search_deals(session, term, limit))
        logger.info("crm.search.completed", extra={"entity_type": "crm.search", "user_id": identity.subject})
        return results


search_service = SearchService()
