from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from mercatur.core.config import get_settings
from mercatur.crm.models import TERMINAL_DEAL_STAGES, CRMCommunicationLog, CRMContact, CRMCustomer, CRMDeal
from mercatur.crm.results import action_boundary
from mercatur.crm.schemas import ActivityItem, DashboardStats, as_utc
from mercatur.platform.security.context import Identity
from mercatur.revalidation import customer_path, deal_path


RECENT_PER_ENTITY = 5


def _start_of_month(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class DashboardService:
    @action_boundary("crm.dashboard", "stats")
    def get_dashboard_stats(self, session: Session, identity: Identity) -> DashboardStats:
        # Each figure is its own point-in-time read; no cross-query snapshot.
        uid = identity.user_id
        now = datetime.now(timezone.utc)
        window_start = now - timedelta(days=get_settings().dashboard_activity_window_days)
        active_deal = (CRMDeal.assigned_to == uid) & CRMDeal.stage.not_in(TERMINAL_DEAL_STAGES)

        total_customers = session.execute(
            select(func.count(CRMCustomer.id)).where(CRMCustomer.assigned_to == uid)
        ).scalar_one()
        total_contacts = session.execute(
            select(func.count(CRMContact.id)).where(CRMContact.created_by == uid)
        ).scalar_one()
        active_deals = session.execute(select(func.count(CRMDeal.id)).where(active_deal)).scalar_one()
        active_deal_value = session.execute(
            select(func.coalesce(func.sum(CRMDeal.deal_value), 0)).where(active_deal)
        ).scalar_one()
        recent_communications = session.execute(
            select(func.count(CRMCommunicationLog.id)).where(
                CRMCommunicationLog.logged_by == uid,
                CRMCommunicationLog.communication_date >= window_start,
            )
        ).scalar_one()
        customers_this_month = session.execute(
            select(func.count(CRMCustomer.id)).where(
                CRMCustomer.created_by == uid,
                CRMCustomer.created_at >= _start_of_month(now),
            )
        ).scalar_one()

        return DashboardStats(
            total_customers=total_customers,
            total_contacts=total_contacts,
            active_deals=active_deals,
            active_deal_value=Decimal(str(active_deal_value)),
            recent_communications=recent_communications,
            customers_this_month=customers_this_month,
        )

    @action_boundary("crm.dashboard", "recent_activity")
    def get_recent_activity(self, session: Session, identity: Identity, limit: int = 10) -> list[ActivityItem]:
        uid = identity.user_id
        items: list[ActivityItem] = []

        customers = session.execute(
            select(CRMCustomer.id, CRMCustomer.company_name, CRMCustomer.created_at)
            .where((CRMCustomer.assigned_to == uid) | (CRMCustomer.created_by == uid))
            .order_by(CRMCustomer.created_at.desc())
            .limit(RECENT_PER_ENTITY)
        )
        for row in customers:
            items.append(
                ActivityItem(
                    type="customer",
                    id=row.id,
                    title=row.company_name,
                    description="New customer created",
                    occurred_at=as_utc(row.created_at),
                    link=customer_path(row.id),
                )
            )

        deals = session.execute(
            select(CRMDeal.id, CRMDeal.deal_name, CRMDeal.created_at)
            .where((CRMDeal.assigned_to == uid) | (CRMDeal.created_by == uid))
            .order_by(CRMDeal.created_at.desc())
            .limit(RECENT_PER_ENTITY)
        )
        for row in deals:
            items.append(
                ActivityItem(
                    type="deal",
                    id=row.id,
                    title=row.deal_name,
                    description="New deal created",
                    occurred_at=as_utc(row.created_at),
                    link=deal_path(row.id),
                )
            )

        communications = session.execute(
            select(
                CRMCommunicationLog.id,
                CRMCommunicationLog.customer_id,
                CRMCommunicationLog.subject,
                CRMCommunicationLog.communication_date,
            )
            .where(CRMCommunicationLog.logged_by == uid)
            .order_by(CRMCommunicationLog.communication_date.desc())
            .limit(RECENT_PER_ENTITY)
        )
        for row in communications:
            items.append(
                ActivityItem(
                    type="communication",
                    id=row.id,
                    title=row.subject or "Communication",
                    description="New activity logged",
                    occurred_at=as_utc(row.communication_date),
                    link=customer_path(row.customer_id),
                )
            )

        items.sort(key=lambda item: item.occurred_at, reverse=True)
        return items[: max(0, limit)]


dashboard_service = DashboardService()
