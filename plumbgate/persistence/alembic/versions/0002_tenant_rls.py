"""tenant row-level security

Revision ID: 0002_tenant_rls
Revises: 0001_init
Create Date: 2026-09-28 10:30:00.000000

Policies compare ``tenant_id`` with the transaction-local setting
``app.current_tenant`` published by the scoped accessor. FORCE applies them to
the table owner as well, so an application query that forgot its predicate
still sees zero foreign rows. With the setting unset, no rows match.
"""
from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "0002_tenant_rls"
down_revision = "0001_init"
branch_labels = None
depends_on = None


TENANT_TABLES = ("customers", "jobs", "invoices", "materials")


def upgrade() -> None:
    for table in TENANT_TABLES:
        op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
        op.execute(f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY")
        op.execute(
            f"""
            CREATE POLICY {table}_tenant_isolation ON {table}
            USING (tenant_id = current_setting('app.current_tenant', true))
            WITH CHECK (tenant_id = current_setting('app.current_tenant', true))
            """
        )


def downgrade() -> None:
    for table in reversed(TENANT_TABLES):
        op.execute(f"DROP POLICY IF EXISTS {table}_tenant_isolation ON {table}")
        op.execute(f"ALTER TABLE {table} NO FORCE ROW LEVEL SECURITY")
        op.execute(f"ALTER TABLE {table} DISABLE ROW LEVEL SECURITY")
