"""add household, pet medication and dose event tables

Revision ID: 20260301_0001
Revises:
Create Date: 2026-03-01 00:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20260301_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("email", sa.String(length=256), nullable=False),
        sa.Column("timezone", sa.String(length=64), nullable=False, server_default="UTC"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )

    op.create_table(
        "households",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["owner_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "household_members",
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("household_id", sa.Integer(), nullable=False),
        sa.Column(
            "role",
            sa.Enum("owner", "member", "sitter", name="household_role"),
            nullable=False,
            server_default="member",
        ),
        sa.Column("access_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("invited_email", sa.String(length=256), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["household_id"], ["households.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("user_id", "household_id"),
    )

    op.create_table(
        "pets",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("household_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("species", sa.String(length=64), nullable=False),
        sa.Column("birthdate", sa.Date(), nullable=True),
        sa.Column("weight_kg", sa.Numeric(precision=6, scale=3), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["household_id"], ["households.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "medications",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("pet_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("dosage_amount", sa.Numeric(precision=10, scale=3), nullable=False),
        sa.Column("dosage_unit", sa.String(length=64), nullable=False),
        sa.Column("interval_quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "interval_unit",
            sa.Enum("minute", "hour", "day", "week", "month", name="schedule_unit"),
            nullable=False,
            server_default="hour",
        ),
        sa.Column("times_of_day", sa.JSON(), nullable=True),
        sa.Column("weekday_filter", sa.JSON(), nullable=True),
        sa.Column("as_needed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("starts_on", sa.Date(), nullable=False),
        sa.Column("ends_on", sa.Date(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("interval_quantity >= 1", name="ck_medications_interval_quantity_positive"),
        sa.ForeignKeyConstraint(["pet_id"], ["pets.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_medications_pet_id", "medications", ["pet_id"], unique=False)

    op.create_table(
        "medication_log",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("medication_id", sa.Integer(), nullable=False),
        sa.Column("administering_user_id", sa.Integer(), nullable=True),
        sa.Column("administration_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("time_logged", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("amount_given", sa.Numeric(precision=10, scale=3), nullable=True),
        sa.Column("note", sa.String(length=2048), nullable=True),
        sa.ForeignKeyConstraint(["medication_id"], ["medications.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["administering_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_medication_log_medication_id", "medication_log", ["medication_id"], unique=False)
    op.create_index(
        "ix_medication_log_administration_time",
        "medication_log",
        ["administration_time"],
        unique=False,
    )

    op.create_table(
        "medication_dose_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("medication_id", sa.Integer(), nullable=False),
        sa.Column("occurrence_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("scheduled_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "status",
            sa.Enum("due", "taken", "skipped", name="dose_status"),
            nullable=False,
            server_default="due",
        ),
        sa.Column("resolution_log_id", sa.Integer(), nullable=True),
        sa.Column("reminded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("overdue_notified_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["medication_id"], ["medications.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["resolution_log_id"], ["medication_log.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("medication_id", "scheduled_time", name="uq_dose_events_medication_scheduled"),
        sa.UniqueConstraint("medication_id", "occurrence_time", name="uq_dose_events_medication_occurrence"),
    )
    op.create_index(
        "ix_dose_events_status_scheduled_time",
        "medication_dose_events",
        ["status", "scheduled_time"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_dose_events_status_scheduled_time", table_name="medication_dose_events")
    op.drop_table("medication_dose_events")

    op.drop_index("ix_medication_log_administration_time", table_name="medication_log")
    op.drop_index("ix_medication_log_medication_id", table_name="medication_log")
    op.drop_table("medication_log")

    op.drop_index("ix_medications_pet_id", table_name="medications")
    op.drop_table("medications")

    op.drop_table("pets")
    op.drop_table("household_members")
    op.drop_table("households")
    op.drop_table("users")

    op.execute("DROP TYPE IF EXISTS dose_status")
    op.execute("DROP TYPE IF EXISTS schedule_unit")
    op.execute("DROP TYPE IF EXISTS household_role")
