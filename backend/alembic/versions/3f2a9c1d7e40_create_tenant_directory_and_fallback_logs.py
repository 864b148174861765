"""create tenant directory and fallback execution logs

Revision ID: 3f2a9c1d7e40
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "3f2a9c1d7e40"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # -----------------------------------------------------
    # 1) Tenant directory
    # -----------------------------------------------------
    op.create_table(
        "tenants",
        sa.Column("tenant_id", sa.String(length=100), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=200), nullable=True),
        sa.Column("datastore_uri", sa.String(length=1000), nullable=True),
        sa.Column(
            "collections",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("setup_complete", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )

    # -----------------------------------------------------
    # 2) Audit records that could not reach a tenant datastore
    # -----------------------------------------------------
    op.create_table(
        "control_execution_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("run_id", sa.String(length=64), nullable=False),
        sa.Column("scheme_id", sa.String(length=64), nullable=True),
        sa.Column("tenant_id", sa.String(length=100), nullable=True),
        sa.Column("mode", sa.String(length=20), nullable=True),
        sa.Column("state", sa.String(length=20), nullable=False),
        sa.Column("executed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("summary", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("agents", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("post_processing_log", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("error", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("diagnostics", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.UniqueConstraint("run_id", name="uq_control_execution_logs_run_id"),
    )

    op.create_index(
        "ix_control_execution_logs_tenant_scheme",
        "control_execution_logs",
        ["tenant_id", "scheme_id"],
    )
    op.create_index(
        "ix_control_execution_logs_executed_at",
        "control_execution_logs",
        ["executed_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_control_execution_logs_executed_at", table_name="control_execution_logs")
    op.drop_index("ix_control_execution_logs_tenant_scheme", table_name="control_execution_logs")
    op.drop_table("control_execution_logs")
    op.drop_table("tenants")
