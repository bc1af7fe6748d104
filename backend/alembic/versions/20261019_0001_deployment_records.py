"""add deployment records history

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 09:00:00

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "deployment_records",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("revision", sa.String(length=64), nullable=False),
        sa.Column("ref", sa.String(length=255), nullable=False),
        sa.Column("initiated_by", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("health_check_passed", sa.Boolean(), nullable=False),
        sa.Column("rollback_eligible", sa.Boolean(), nullable=False),
        sa.Column("previous_id", sa.String(length=64), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_deployment_records_revision", "deployment_records", ["revision"], unique=False)
    op.create_index("ix_deployment_records_status", "deployment_records", ["status"], unique=False)
    op.create_index("ix_deployment_records_created_at", "deployment_records", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_deployment_records_created_at", table_name="deployment_records")
    op.drop_index("ix_deployment_records_status", table_name="deployment_records")
    op.drop_index("ix_deployment_records_revision", table_name="deployment_records")
    op.drop_table("deployment_records")
