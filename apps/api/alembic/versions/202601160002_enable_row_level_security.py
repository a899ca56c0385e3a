"""enable row level security, triggers and customer stats view

Revision ID: 202601160002
Revises: 202601160001
Create Date: 2026-01-16 00:02:00
"""

from collections.abc import Sequence
import os

from alembic import op


revision: str = "202601160002"
down_revision: str | None = "202601160001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


POLICED_TABLES = ("crm_customer", "crm_contact", "crm_deal", "crm_communication_log", "user_profile")

_ACCESSIBLE_CUSTOMER = """
EXISTS (
    SELECT 1 FROM crm_customer parent
    WHERE parent.id = {table}.customer_id
      AND (
        parent.created_by = app_current_user_id()
        OR parent.assigned_to = app_current_user_id()
        OR parent.assigned_to IS NULL
      )
)
"""

FUNCTIONS = (
    """
    CREATE OR REPLACE FUNCTION app_current_user_id() RETURNS uuid
    LANGUAGE sql STABLE AS $$
        SELECT NULLIF(current_setting('app.current_user_id', true), '')::uuid
    $$
    """,
    """
    CREATE OR REPLACE FUNCTION app_current_role() RETURNS text
    LANGUAGE sql STABLE AS $$
        SELECT COALESCE(NULLIF(current_setting('app.current_role', true), ''), 'anon')
    $$
    """,
    """
    CREATE OR REPLACE FUNCTION app_is_system() RETURNS boolean
    LANGUAGE sql STABLE AS $$
        SELECT app_current_role() = 'system'
    $$
    """,
    """
    CREATE OR REPLACE FUNCTION app_is_authenticated() RETURNS boolean
    LANGUAGE sql STABLE AS $$
        SELECT app_current_role() = 'authenticated' AND app_current_user_id() IS NOT NULL
    $$
    """,
    """
    CREATE OR REPLACE FUNCTION touch_updated_at() RETURNS trigger
    LANGUAGE plpgsql AS $$
    BEGIN
        NEW.updated_at := now();
        RETURN NEW;
    END
    $$
    """,
    """
    CREATE OR REPLACE FUNCTION set_deal_close_date() RETURNS trigger
    LANGUAGE plpgsql AS $$
    BEGIN
        IF NEW.stage IN ('won', 'lost') AND OLD.stage NOT IN ('won', 'lost') THEN
            NEW.actual_close_date := (now() AT TIME ZONE 'utc')::date;
        END IF;
        RETURN NEW;
    END
    $$
    """,
    """
    CREATE OR REPLACE FUNCTION enforce_single_primary_contact() RETURNS trigger
    LANGUAGE plpgsql AS $$
    BEGIN
        IF NEW.is_primary THEN
            UPDATE crm_contact
               SET is_primary = false
             WHERE customer_id = NEW.customer_id
               AND id <> NEW.id
               AND is_primary;
        END IF;
        RETURN NEW;
    END
    $$
    """,
    """
    CREATE OR REPLACE FUNCTION handle_new_auth_user() RETURNS trigger
    LANGUAGE plpgsql SECURITY DEFINER SET search_path = public AS $$
    BEGIN
        BEGIN
            INSERT INTO user_profile (id, full_name, email, role, created_at, updated_at)
            VALUES (
                NEW.id,
                COALESCE(NULLIF(btrim(NEW.raw_metadata ->> 'full_name'), ''), NEW.email, 'New User'),
                NEW.email,
                'user',
                now(),
                now()
            )
            ON CONFLICT (id) DO NOTHING;
        EXCEPTION WHEN others THEN
            RAISE WARNING 'profile creation failed for %: %', NEW.id, SQLERRM;
        END;
        RETURN NEW;
    END
    $$
    """,
)

TRIGGERS = (
    """
    CREATE TRIGGER trg_crm_deal_close_date
    BEFORE UPDATE OF stage ON crm_deal
    FOR EACH ROW EXECUTE FUNCTION set_deal_close_date()
    """,
    """
    CREATE TRIGGER trg_crm_contact_single_primary
    BEFORE INSERT OR UPDATE OF is_primary ON crm_contact
    FOR EACH ROW WHEN (NEW.is_primary) EXECUTE FUNCTION enforce_single_primary_contact()
    """,
    """
    CREATE TRIGGER trg_auth_user_profile
    AFTER INSERT ON auth_user
    FOR EACH ROW EXECUTE FUNCTION handle_new_auth_user()
    """,
    *(
        f"""
        CREATE TRIGGER trg_{table}_updated_at
        BEFORE UPDATE ON {table}
        FOR EACH ROW EXECUTE FUNCTION touch_updated_at()
        """
        for table in POLICED_TABLES
    ),
)


def _policies() -> list[str]:
    contact_accessible = _ACCESSIBLE_CUSTOMER.format(table="crm_contact")
    deal_accessible = _ACCESSIBLE_CUSTOMER.format(table="crm_deal")
    customer_owner = "(created_by = app_current_user_id() OR assigned_to = app_current_user_id())"
    deal_owner = "(created_by = app_current_user_id() OR assigned_to = app_current_user_id())"
    return [
        "CREATE POLICY crm_customer_select ON crm_customer FOR SELECT USING (app_is_system() OR app_is_authenticated())",
        "CREATE POLICY crm_customer_insert ON crm_customer FOR INSERT "
        "WITH CHECK (app_is_system() OR created_by = app_current_user_id())",
        f"CREATE POLICY crm_customer_update ON crm_customer FOR UPDATE "
        f"USING (app_is_system() OR {customer_owner}) WITH CHECK (app_is_system() OR {customer_owner})",
        f"CREATE POLICY crm_customer_delete ON crm_customer FOR DELETE USING (app_is_system() OR {customer_owner})",
        f"CREATE POLICY crm_contact_select ON crm_contact FOR SELECT USING (app_is_system() OR {contact_accessible})",
        f"CREATE POLICY crm_contact_insert ON crm_contact FOR INSERT "
        f"WITH CHECK (app_is_system() OR (created_by = app_current_user_id() AND {contact_accessible}))",
        f"CREATE POLICY crm_contact_update ON crm_contact FOR UPDATE "
        f"USING (app_is_system() OR {contact_accessible}) WITH CHECK (app_is_system() OR {contact_accessible})",
        f"CREATE POLICY crm_contact_delete ON crm_contact FOR DELETE USING (app_is_system() OR {contact_accessible})",
        f"CREATE POLICY crm_deal_select ON crm_deal FOR SELECT "
        f"USING (app_is_system() OR {deal_owner} OR {deal_accessible})",
        f"CREATE POLICY crm_deal_insert ON crm_deal FOR INSERT "
        f"WITH CHECK (app_is_system() OR (created_by = app_current_user_id() AND {deal_accessible}))",
        f"CREATE POLICY crm_deal_update ON crm_deal FOR UPDATE "
        f"USING (app_is_system() OR {deal_owner}) WITH CHECK (app_is_system() OR {deal_owner})",
        f"CREATE POLICY crm_deal_delete ON crm_deal FOR DELETE USING (app_is_system() OR {deal_owner})",
        "CREATE POLICY crm_communication_log_select ON crm_communication_log FOR SELECT "
        "USING (app_is_system() OR app_is_authenticated())",
        "CREATE POLICY crm_communication_log_insert ON crm_communication_log FOR INSERT "
        "WITH CHECK (app_is_system() OR app_is_authenticated())",
        "CREATE POLICY crm_communication_log_update ON crm_communication_log FOR UPDATE "
        "USING (app_is_system() OR logged_by = app_current_user_id())",
        "CREATE POLICY crm_communication_log_delete ON crm_communication_log FOR DELETE "
        "USING (app_is_system() OR logged_by = app_current_user_id())",
        "CREATE POLICY user_profile_select ON user_profile FOR SELECT USING (app_is_system() OR app_is_authenticated())",
        "CREATE POLICY user_profile_insert ON user_profile FOR INSERT "
        "WITH CHECK (app_is_system() OR id = app_current_user_id())",
        "CREATE POLICY user_profile_update ON user_profile FOR UPDATE "
        "USING (app_is_system() OR id = app_current_user_id())",
    ]


CUSTOMER_STATS_VIEW = """
CREATE VIEW crm_customer_with_stats WITH (security_invoker = true) AS
SELECT
    c.*,
    (SELECT count(*) FROM crm_contact ct WHERE ct.customer_id = c.id) AS contact_count,
    (SELECT count(*) FROM crm_deal d WHERE d.customer_id = c.id) AS deal_count,
    (SELECT count(*) FROM crm_communication_log l WHERE l.customer_id = c.id) AS communication_count,
    (SELECT max(l.communication_date) FROM crm_communication_log l WHERE l.customer_id = c.id)
        AS last_communication_date,
    (SELECT ct.full_name FROM crm_contact ct WHERE ct.customer_id = c.id AND ct.is_primary LIMIT 1)
        AS primary_contact_name
FROM crm_customer c
"""


def upgrade() -> None:
    if op.get_bind().dialect.name != "postgresql":
        return

    for statement in FUNCTIONS:
        op.execute(statement)
    for statement in TRIGGERS:
        op.execute(statement)
    for table in POLICED_TABLES:
        op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
    for statement in _policies():
        op.execute(statement)
    op.execute(CUSTOMER_STATS_VIEW)

    app_role = os.getenv("MERCATUR_APP_ROLE")
    if app_role:
        op.execute(f'GRANT SELECT, INSERT, UPDATE, DELETE ON ALL TABLES IN SCHEMA public TO "{app_role}"')


def downgrade() -> None:
    if op.get_bind().dialect.name != "postgresql":
        return

    op.execute("DROP VIEW IF EXISTS crm_customer_with_stats")
    for table in POLICED_TABLES:
        op.execute(f"DROP TRIGGER IF EXISTS trg_{table}_updated_at ON {table}")
        op.execute(f"ALTER TABLE {table} DISABLE ROW LEVEL SECURITY")
    for statement in _policies():
        name, table = statement.split()[2], statement.split()[4]
        op.execute(f"DROP POLICY IF EXISTS {name} ON {table}")
    op.execute("DROP TRIGGER IF EXISTS trg_auth_user_profile ON auth_user")
    op.execute("DROP TRIGGER IF EXISTS trg_crm_contact_single_primary ON crm_contact")
    op.execute("DROP TRIGGER IF EXISTS trg_crm_deal_close_date ON crm_deal")
    for function in (
        "handle_new_auth_user()",
        "enforce_single_primary_contact()",
        "set_deal_close_date()",
        "touch_updated_at()",
        "app_is_authenticated()",
        "app_is_system()",
        "app_current_role()",
        "app_current_user_id()",
    ):
        op.execute(f"DROP FUNCTION IF EXISTS {function}")
