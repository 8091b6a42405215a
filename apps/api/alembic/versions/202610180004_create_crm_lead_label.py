"""create crm lead label link

Revision ID: 202610180004
Revises: 202610180003
Create Date: 2026-10-18 00:04:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180004"
down_revision: str | None = "202610180003"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_lead_label",
        sa.Column("lead_id", sa.Uuid(), nullable=False),
        sa.Column("label_id", sa.Uuid(), nullable=False),
        sa.ForeignKeyConstraint(["lead_id"], ["crm_lead.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["label_id"], ["crm_label.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("lead_id", "label_id"),
    )
    op.create_index("ix_crm_lead_label_label_id", "crm_lead_label", ["label_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_crm_lead_label_label_id", table_name="crm_lead_label")
    op.drop_table("crm_lead_label")
