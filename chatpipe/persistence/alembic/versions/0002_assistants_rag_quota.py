"""assistants and daily retrieval quota

Revision ID: 0002_assistants_rag_quota
Revises: 0001_init
Create Date: 2026-10-19 12:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0002_assistants_rag_quota"
down_revision = "0001_init"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "assistants",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_assistants_tenant_id", "assistants", ["tenant_id"])
    # New conversations look up the tenant's default assistant on first contact.
    op.create_index("ix_assistants_tenant_default", "assistants", ["tenant_id", "is_default"])

    # Null falls back to the plan default at read time.
    op.add_column("plan_limits", sa.Column("max_daily_rag_queries", sa.Integer(), nullable=True))


def downgrade() -> None:
    op.drop_column("plan_limits", "max_daily_rag_queries")
    op.drop_index("ix_assistants_tenant_default", table_name="assistants")
    op.drop_index("ix_assistants_tenant_id", table_name="assistants")
    op.drop_table("assistants")
