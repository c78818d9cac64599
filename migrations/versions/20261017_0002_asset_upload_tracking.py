"""asset upload tracking and source cleanup columns

Revision ID: 20261017_0002
Revises: 20261017_0001
Create Date: 2026-10-17

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261017_0002"
down_revision = "20261017_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("assets", sa.Column("uploading_at", sa.DateTime(timezone=True), nullable=True))
    op.add_column("assets", sa.Column("source_ref", sa.String(length=1024), nullable=True))
    op.add_column("assets", sa.Column("source_cleaned_at", sa.DateTime(timezone=True), nullable=True))
    op.create_index("ix_assets_status_ready_at", "assets", ["status", "ready_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_assets_status_ready_at", table_name="assets")
    op.drop_column("assets", "source_cleaned_at")
    op.drop_column("assets", "source_ref")
    op.drop_column("assets", "uploading_at")
