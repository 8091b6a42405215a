"""create crm shared entity grants

Revision ID: 202610180003
Revises: 202610180002
Create Date: 2026-10-18 00:03:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180003"
down_revision: str | None = "202610180002"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_shared_entity",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("shared_with_user_id", sa.String(length=255), nullable=False),
        sa.Column("granted_by", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "entity_type",
            "entity_id",
            "shared_with_user_id",
            name="uq_crm_shared_entity_grant",
        ),
    )
    op.create_index(
        "ix_crm_shared_entity_record",
        "crm_shared_entity",
        ["entity_type", "entity_id"],
        unique=False,
    )
    op.create_index(
        "ix_crm_shared_entity_shared_with_user_id",
        "crm_shared_entity",
        ["shared_with_user_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_crm_shared_entity_shared_with_user_id", table_name="crm_shared_entity")
    op.drop_index("ix_crm_shared_entity_record", table_name="crm_shared_entity")
    op.drop_table("crm_shared_entity")
