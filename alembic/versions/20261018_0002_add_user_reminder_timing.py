"""add per-user reminder timing

Revision ID: 20261018_0002
Revises: 20261018_0001
Create Date: 2026-10-18 12:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_0002"
down_revision: Union[str, None] = "20261018_0001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column("users", sa.Column("reminder_timing_minutes", sa.Integer(), nullable=True))
    op.create_check_constraint(
        "ck_users_reminder_timing_range",
        "users",
        "reminder_timing_minutes IS NULL OR reminder_timing_minutes BETWEEN 5 AND 120",
    )


def downgrade() -> None:
    op.drop_constraint("ck_users_reminder_timing_range", "users", type_="check")
    op.drop_column("users", "reminder_timing_minutes")
