"""create crm and profile tables

Revision ID: 202601160001
Revises:
Create Date: 2026-01-16 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202601160001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "auth_user",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("raw_metadata", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email", name="uq_auth_user_email"),
    )

    op.create_table(
        "user_profile",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("full_name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("avatar_url", sa.Text(), nullable=True),
        sa.Column("role", sa.String(length=16), nullable=False, server_default="user"),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("role IN ('admin', 'user')", name="ck_user_profile_role"),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "crm_customer",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("company_name", sa.Text(), nullable=False),
        sa.Column("org_number", sa.String(length=9), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("industry", sa.Text(), nullable=True),
        sa.Column("website", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("lifecycle_stage", sa.String(length=16), nullable=True),
        sa.Column("customer_status", sa.String(length=16), nullable=True),
        sa.Column("lead_source", sa.Text(), nullable=True),
        sa.Column("annual_revenue", sa.Numeric(14, 2), nullable=True),
        sa.Column("next_contact_date", sa.Date(), nullable=True),
        sa.Column("assigned_to", sa.Uuid(), nullable=True),
        sa.Column("created_by", sa.Uuid(), nullable=False),
        sa.Column("updated_by", sa.Uuid(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "lifecycle_stage IN ('lead', 'prospect', 'customer', 'active', 'former')",
            name="ck_crm_customer_lifecycle_stage",
        ),
        sa.CheckConstraint(
            "customer_status IN ('active', 'inactive', 'potential', 'lost')",
            name="ck_crm_customer_status",
        ),
        sa.CheckConstraint("annual_revenue IS NULL OR annual_revenue >= 0", name="ck_crm_customer_annual_revenue"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_customer_assigned_to", "crm_customer", ["assigned_to"], unique=False)
    op.create_index("ix_crm_customer_created_by", "crm_customer", ["created_by"], unique=False)
    op.create_index("ix_crm_customer_company_name", "crm_customer", ["company_name"], unique=False)
    op.create_index("ix_crm_customer_updated_at", "crm_customer", ["updated_at"], unique=False)

    op.create_table(
        "crm_contact",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("customer_id", sa.Uuid(), nullable=False),
        sa.Column("full_name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("phone", sa.String(length=20), nullable=True),
        sa.Column("job_title", sa.Text(), nullable=True),
        sa.Column("department", sa.Text(), nullable=True),
        sa.Column("linkedin_url", sa.Text(), nullable=True),
        sa.Column("is_decision_maker", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_primary", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by", sa.Uuid(), nullable=False),
        sa.Column("updated_by", sa.Uuid(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["customer_id"], ["crm_customer.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_contact_customer_id", "crm_contact", ["customer_id"], unique=False)
    op.create_index("ix_crm_contact_full_name", "crm_contact", ["full_name"], unique=False)
    op.create_index(
        "uq_crm_contact_primary_per_customer",
        "crm_contact",
        ["customer_id"],
        unique=True,
        postgresql_where=sa.text("is_primary"),
        sqlite_where=sa.text("is_primary = 1"),
    )

    op.create_table(
        "crm_deal",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("customer_id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=True),
        sa.Column("deal_name", sa.Text(), nullable=False),
        sa.Column("deal_value", sa.Numeric(14, 2), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="NOK"),
        sa.Column("stage", sa.String(length=16), nullable=False, server_default="lead"),
        sa.Column("probability", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("expected_close_date", sa.Date(), nullable=True),
        sa.Column("actual_close_date", sa.Date(), nullable=True),
        sa.Column("lost_reason", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("assigned_to", sa.Uuid(), nullable=True),
        sa.Column("created_by", sa.Uuid(), nullable=False),
        sa.Column("updated_by", sa.Uuid(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "stage IN ('lead', 'qualified', 'proposal', 'negotiation', 'won', 'lost')",
            name="ck_crm_deal_stage",
        ),
        sa.CheckConstraint("deal_value IS NULL OR deal_value >= 0", name="ck_crm_deal_value"),
        sa.CheckConstraint("probability BETWEEN 0 AND 100", name="ck_crm_deal_probability"),
        sa.ForeignKeyConstraint(["customer_id"], ["crm_customer.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["contact_id"], ["crm_contact.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_deal_customer_id", "crm_deal", ["customer_id"], unique=False)
    op.create_index("ix_crm_deal_contact_id", "crm_deal", ["contact_id"], unique=False)
    op.create_index("ix_crm_deal_assigned_to", "crm_deal", ["assigned_to"], unique=False)
    op.create_index("ix_crm_deal_created_by", "crm_deal", ["created_by"], unique=False)
    op.create_index("ix_crm_deal_updated_at", "crm_deal", ["updated_at"], unique=False)

    op.create_table(
        "crm_communication_log",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("customer_id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=True),
        sa.Column("communication_type", sa.String(length=16), nullable=False),
        sa.Column("communication_date", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("subject", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("logged_by", sa.Uuid(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint(
            "communication_type IN ('meeting', 'email', 'phone', 'other')",
            name="ck_crm_communication_type",
        ),
        sa.ForeignKeyConstraint(["customer_id"], ["crm_customer.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["contact_id"], ["crm_contact.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_communication_log_customer_id", "crm_communication_log", ["customer_id"], unique=False)
    op.create_index("ix_crm_communication_log_contact_id", "crm_communication_log", ["contact_id"], unique=False)
    op.create_index("ix_crm_communication_log_logged_by", "crm_communication_log", ["logged_by"], unique=False)
    op.create_index("ix_crm_communication_log_date", "crm_communication_log", ["communication_date"], unique=False)


def downgrade() -> None:
    op.drop_table("crm_communication_log")
    op.drop_table("crm_deal")
    op.drop_index("uq_crm_contact_primary_per_customer", table_name="crm_contact")
    op.drop_table("crm_contact")
    op.drop_table("crm_customer")
    op.drop_table("user_profile")
    op.drop_table("auth_user")
