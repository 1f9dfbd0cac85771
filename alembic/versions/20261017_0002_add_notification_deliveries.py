"""add per-recipient notification deliveries

Revision ID: 20261017_0002
Revises: 20260301_0001
Create Date: 2026-10-17 00:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261017_0002"
down_revision: Union[str, None] = "20260301_0001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "medication_notification_deliveries",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("dose_event_id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.Enum("reminder", "overdue", name="notification_kind"), nullable=False),
        sa.Column("scheduled_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["dose_event_id"], ["medication_dose_events.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "dose_event_id",
            "kind",
            "scheduled_time",
            "user_id",
            name="uq_notification_deliveries_event_kind_slot_user",
        ),
    )


def downgrade() -> None:
    op.drop_table("medication_notification_deliveries")
    op.execute("DROP TYPE IF EXISTS notification_kind")
