"""create crm notes, activity log and idempotency keys

Revision ID: 202610160003
Revises: 202610160002
Create Date: 2026-10-16 00:03:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610160003"
down_revision: str | None = "202610160002"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_note",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("related_type", sa.String(length=32), nullable=False),
        sa.Column("related_id", sa.Uuid(), nullable=False),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("is_private", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_by", sa.String(length=128), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["tenant_id"], ["crm_tenant.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_note_related", "crm_note", ["related_type", "related_id"], unique=False)

    op.create_table(
        "crm_activity_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.Uuid(), nullable=True),
        sa.Column("actor_user_id", sa.String(length=128), nullable=False),
        sa.Column("event_name", sa.String(length=128), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_crm_activity_log_entity", "crm_activity_log", ["entity_type", "entity_id"], unique=False)
    op.create_index("ix_crm_activity_log_tenant_created", "crm_activity_log", ["tenant_id", "created_at"], unique=False)

    op.create_table(
        "crm_idempotency_key",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("endpoint", sa.String(length=128), nullable=False),
        sa.Column("key", sa.String(length=255), nullable=False),
        sa.Column("request_hash", sa.String(length=128), nullable=False),
        sa.Column("response_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("endpoint", "key", name="uq_crm_idempotency_endpoint_key"),
    )


def downgrade() -> None:
    op.drop_table("crm_idempotency_key")
    op.drop_index("ix_crm_activity_log_tenant_created", table_name="crm_activity_log")
    op.drop_index("ix_crm_activity_log_entity", table_name="crm_activity_log")
    op.drop_table("crm_activity_log")
    op.drop_index("ix_crm_note_related", table_name="crm_note")
    op.drop_table("crm_note")
