from __future__ import annotations

from typing import Any

from sqlalchemy import Row, Select, func, select

from mercatur.crm.models import CRMCommunicationLog, CRMContact, CRMCustomer, CRMDeal
from mercatur.crm.schemas import CustomerRead, CustomerWithStats


STAT_COLUMNS = (
    "contact_count",
    "deal_count",
    "communication_count",
    "last_communication_date",
    "primary_contact_name",
)


def customer_with_stats_query() -> Select[Any]:
    """Customer rows plus child rollups, evaluated under the reader's row policies."""

    contact_count = (
        select(func.count(CRMContact.id))
        .where(CRMContact.customer_id == CRMCustomer.id)
        .correlate(CRMCustomer)
        .scalar_subquery()
    )
    deal_count = (
        select(func.count(CRMDeal.id))
        .where(CRMDeal.customer_id == CRMCustomer.id)
        .correlate(CRMCustomer)
        .scalar_subquery()
    )
    communication_count = (
        select(func.count(CRMCommunicationLog.id))
        .where(CRMCommunicationLog.customer_id == CRMCustomer.id)
        .correlate(CRMCustomer)
        .scalar_subquery()
    )
    last_communication_date = (
        select(func.max(CRMCommunicationLog.communication_date))
        .where(CRMCommunicationLog.customer_id == CRMCustomer.id)
        .correlate(CRMCustomer)
        .scalar_subquery()
    )
    primary_contact_name = (
        select(CRMContact.full_name)
        .where(CRMContact.customer_id == CRMCustomer.id, CRMContact.is_primary.is_(True))
        .correlate(CRMCustomer)
        .limit(1)
        .scalar_subquery()
    )
    return select(
        CRMCustomer,
        contact_count.label("contact_count"),
        deal_count.label("deal_count"),
        communication_count.label("communication_count"),
        last_communication_date.label("last_communication_date"),
        primary_contact_name.label("primary_contact_name"),
    )


def to_customer_with_stats(row: Row[Any]) -> CustomerWithStats:
    base = CustomerRead.model_validate(row[0]).model_dump()
    stats = {name: getattr(row, name) for name in STAT_COLUMNS}
    stats = {key: value for key, value in stats.items() if value is not None}
    return CustomerWithStats.model_validate({**base, **stats})
