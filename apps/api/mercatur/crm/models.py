from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from mercatur.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


LIFECYCLE_STAGES = ("lead", "prospect", "customer", "active", "former")
CUSTOMER_STATUSES = ("active", "inactive", "potential", "lost")
DEAL_STAGES = ("lead", "qualified", "proposal", "negotiation", "won", "lost")
TERMINAL_DEAL_STAGES = frozenset({"won", "lost"})
COMMUNICATION_TYPES = ("meeting", "email", "phone", "other")


def _in_list(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{value}'" for value in values)
    return f"{column} IN ({quoted})"


class CRMCustomer(Base):
    __tablename__ = "crm_customer"
    __policy_resource__ = "crm.customer"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_name: Mapped[str] = mapped_column(Text, nullable=False)
    org_number: Mapped[str | None] = mapped_column(String(9), nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    industry: Mapped[str | None] = mapped_column(Text, nullable=True)
    website: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    lifecycle_stage: Mapped[str | None] = mapped_column(String(16), nullable=True)
    customer_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    lead_source: Mapped[str | None] = mapped_column(Text, nullable=True)
    annual_revenue: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    next_contact_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    assigned_to: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True, index=True)
    created_by: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    updated_by: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (
        CheckConstraint(_in_list("lifecycle_stage", LIFECYCLE_STAGES), name="ck_crm_customer_lifecycle_stage"),
        CheckConstraint(_in_list("customer_status", CUSTOMER_STATUSES), name="ck_crm_customer_status"),
        CheckConstraint("annual_revenue IS NULL OR annual_revenue >= 0", name="ck_crm_customer_annual_revenue"),
        Index("ix_crm_customer_company_name", "company_name"),
        Index("ix_crm_customer_updated_at", "updated_at"),
    )


class CRMContact(Base):
    __tablename__ = "crm_contact"
    __policy_resource__ = "crm.contact"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    customer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_customer.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    full_name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    job_title: Mapped[str | None] = mapped_column(Text, nullable=True)
    department: Mapped[str | None] = mapped_column(Text, nullable=True)
    linkedin_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_decision_maker: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    updated_by: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    customer: Mapped[CRMCustomer] = relationship("CRMCustomer")

    __table_args__ = (
        Index(
            "uq_crm_contact_primary_per_customer",
            "customer_id",
            unique=True,
            postgresql_where=text("is_primary"),
            sqlite_where=text("is_primary = 1"),
        ),
        Index("ix_crm_contact_full_name", "full_name"),
    )


class CRMDeal(Base):
    __tablename__ = "crm_deal"
    __policy_resource__ = "crm.deal"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    customer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_customer.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    contact_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_contact.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    deal_name: Mapped[str] = mapped_column(Text, nullable=False)
    deal_value: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="NOK", server_default="NOK")
    stage: Mapped[str] = mapped_column(String(16), nullable=False, default="lead", server_default="lead")
    probability: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    expected_close_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    actual_close_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    lost_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    assigned_to: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True, index=True)
    created_by: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    updated_by: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    customer: Mapped[CRMCustomer] = relationship("CRMCustomer")
    contact: Mapped[CRMContact | None] = relationship("CRMContact")

    __table_args__ = (
        CheckConstraint(_in_list("stage", DEAL_STAGES), name="ck_crm_deal_stage"),
        CheckConstraint("deal_value IS NULL OR deal_value >= 0", name="ck_crm_deal_value"),
        CheckConstraint("probability BETWEEN 0 AND 100", name="ck_crm_deal_probability"),
        Index("ix_crm_deal_updated_at", "updated_at"),
    )


class CRMCommunicationLog(Base):
    __tablename__ = "crm_communication_log"
    __policy_resource__ = "crm.communication"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    customer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_customer.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    contact_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_contact.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    communication_type: Mapped[str] = mapped_column(String(16), nullable=False)
    communication_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    subject: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    logged_by: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    customer: Mapped[CRMCustomer] = relationship("CRMCustomer")
    contact: Mapped[CRMContact | None] = relationship("CRMContact")

    __table_args__ = (
        CheckConstraint(_in_list("communication_type", COMMUNICATION_TYPES), name="ck_crm_communication_type"),
        Index("ix_crm_communication_log_date", "communication_date"),
    )


# Row policies are registered alongside the mapped classes they guard.
from mercatur.crm import policies as _policies  # noqa: E402,F401
