"""Row policies for CRM tables.

These are the authoritative read/write rules; the native Postgres policies
installed by migration ``202601160002`` state the same predicates in SQL.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import ColumnElement, and_, or_, select

from mercatur.crm.models import CRMCommunicationLog, CRMContact, CRMCustomer, CRMDeal
from mercatur.platform.security.policies import PolicyCommand, RowPolicy, authenticated, register_row_policies


def customer_accessible(customer_id: ColumnElement[Any], uid: ColumnElement[Any]) -> ColumnElement[bool]:
    """Parent customer is created by, assigned to the identity, or unassigned."""

    parent = CRMCustomer.__table__.alias("policy_parent_customer")
    return (
        select(parent.c.id)
        .where(
            parent.c.id == customer_id,
            or_(
                parent.c.created_by == uid,
                parent.c.assigned_to == uid,
                parent.c.assigned_to.is_(None),
            ),
        )
        .exists()
    )


def _customer_owner(uid: ColumnElement[Any]) -> ColumnElement[bool]:
    return or_(CRMCustomer.created_by == uid, CRMCustomer.assigned_to == uid)


def _contact_parent_accessible(uid: ColumnElement[Any]) -> ColumnElement[bool]:
    return customer_accessible(CRMContact.customer_id, uid)


def _deal_owner(uid: ColumnElement[Any]) -> ColumnElement[bool]:
    return or_(CRMDeal.created_by == uid, CRMDeal.assigned_to == uid)


def _deal_visible(uid: ColumnElement[Any]) -> ColumnElement[bool]:
    return or_(_deal_owner(uid), customer_accessible(CRMDeal.customer_id, uid))


def _communication_logger(uid: ColumnElement[Any]) -> ColumnElement[bool]:
    return CRMCommunicationLog.logged_by == uid


register_row_policies(
    CRMCustomer,
    "crm.customer",
    RowPolicy(PolicyCommand.SELECT, using=authenticated),
    RowPolicy(PolicyCommand.INSERT, with_check=lambda uid: CRMCustomer.created_by == uid),
    RowPolicy(PolicyCommand.UPDATE, using=_customer_owner, with_check=_customer_owner),
    RowPolicy(PolicyCommand.DELETE, using=_customer_owner),
)

register_row_policies(
    CRMContact,
    "crm.contact",
    RowPolicy(PolicyCommand.SELECT, using=_contact_parent_accessible),
    RowPolicy(
        PolicyCommand.INSERT,
        with_check=lambda uid: and_(CRMContact.created_by == uid, _contact_parent_accessible(uid)),
    ),
    RowPolicy(PolicyCommand.UPDATE, using=_contact_parent_accessible, with_check=_contact_parent_accessible),
    RowPolicy(PolicyCommand.DELETE, using=_contact_parent_accessible),
)

register_row_policies(
    CRMDeal,
    "crm.deal",
    RowPolicy(PolicyCommand.SELECT, using=_deal_visible),
    RowPolicy(
        PolicyCommand.INSERT,
        with_check=lambda uid: and_(CRMDeal.created_by == uid, customer_accessible(CRMDeal.customer_id, uid)),
    ),
    RowPolicy(PolicyCommand.UPDATE, using=_deal_owner, with_check=_deal_owner),
    RowPolicy(PolicyCommand.DELETE, using=_deal_owner),
)

register_row_policies(
    CRMCommunicationLog,
    "crm.communication",
    RowPolicy(PolicyCommand.SELECT, using=authenticated),
    RowPolicy(PolicyCommand.INSERT, with_check=authenticated),
    RowPolicy(PolicyCommand.UPDATE, using=_communication_logger),
    RowPolicy(PolicyCommand.DELETE, using=_communication_logger),
)
