from __future__ import annotations

import enum
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from shared.contracts.enums import DoseStatus, IntervalUnit, NotificationKind
from shared.contracts.models import Schedule, build_schedule


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class Base(DeclarativeBase):
    """Declarative base for application models."""


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class HouseholdRole(enum.Enum):
    owner = "owner"
    member = "member"
    sitter = "sitter"


class User(TimestampMixin, Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    email: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")

    memberships: Mapped[list[HouseholdMember]] = relationship(back_populates="user")


class Household(TimestampMixin, Base):
    __tablename__ = "households"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    owner_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    owner: Mapped[User] = relationship()
    members: Mapped[list[HouseholdMember]] = relationship(back_populates="household")
    pets: Mapped[list[Pet]] = relationship(back_populates="household")


class HouseholdMember(Base):
    __tablename__ = "household_members"

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    household_id: Mapped[int] = mapped_column(ForeignKey("households.id", ondelete="CASCADE"), primary_key=True)
    role: Mapped[HouseholdRole] = mapped_column(
        Enum(HouseholdRole, name="household_role"), nullable=False, default=HouseholdRole.member
    )
    access_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    invited_email: Mapped[str | None] = mapped_column(String(256))

    user: Mapped[User] = relationship(back_populates="memberships")
    household: Mapped[Household] = relationship(back_populates="members")


class Pet(TimestampMixin, Base):
    __tablename__ = "pets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    household_id: Mapped[int] = mapped_column(ForeignKey("households.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    species: Mapped[str] = mapped_column(String(64), nullable=False)
    birthdate: Mapped[date | None] = mapped_column(Date)
    weight_kg: Mapped[Decimal | None] = mapped_column(Numeric(6, 3))

    household: Mapped[Household] = relationship(back_populates="pets")
    medications: Mapped[list[Medication]] = relationship(back_populates="pet", cascade="all, delete-orphan")


class Medication(TimestampMixin, Base):
    __tablename__ = "medications"
    __table_args__ = (CheckConstraint("interval_quantity >= 1", name="ck_medications_interval_quantity_positive"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    pet_id: Mapped[int] = mapped_column(ForeignKey("pets.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    dosage_amount: Mapped[Decimal] = mapped_column(Numeric(10, 3), nullable=False)
    dosage_unit: Mapped[str] = mapped_column(String(64), nullable=False)

    interval_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    interval_unit: Mapped[IntervalUnit] = mapped_column(
        Enum(IntervalUnit, name="schedule_unit", values_callable=_enum_values),
        nullable=False,
        default=IntervalUnit.HOUR,
    )
    times_of_day: Mapped[list[str] | None] = mapped_column(JSON)
    weekday_filter: Mapped[list[int] | None] = mapped_column(JSON)
    as_needed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    starts_on: Mapped[date] = mapped_column(Date, nullable=False)
    ends_on: Mapped[date | None] = mapped_column(Date)
    notes: Mapped[str | None] = mapped_column(Text)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    pet: Mapped[Pet] = relationship(back_populates="medications")
    dose_events: Mapped[list[DoseEvent]] = relationship(back_populates="medication", cascade="all, delete-orphan")

    def to_schedule(self, timezone: str = "UTC") -> Schedule:
        """Raises ``InvalidSchedule`` for rows that slipped past validation."""
        return build_schedule(
            interval_quantity=self.interval_quantity,
            interval_unit=self.interval_unit,
            times_of_day=self.times_of_day,
            weekday_filter=self.weekday_filter,
            active_window={"start": self.starts_on, "end": self.ends_on},
            as_needed=self.as_needed,
            timezone=timezone,
        )


class MedicationLog(Base):
    __tablename__ = "medication_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    medication_id: Mapped[int] = mapped_column(
        ForeignKey("medications.id", ondelete="CASCADE"), nullable=False, index=True
    )
    administering_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    administration_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    time_logged: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    amount_given: Mapped[Decimal | None] = mapped_column(Numeric(10, 3))
    note: Mapped[str | None] = mapped_column(String(2048))


class DoseEvent(Base):
    __tablename__ = "medication_dose_events"
    __table_args__ = (
        UniqueConstraint("medication_id", "scheduled_time", name="uq_dose_events_medication_scheduled"),
        UniqueConstraint("medication_id", "occurrence_time", name="uq_dose_events_medication_occurrence"),
        Index("ix_dose_events_status_scheduled_time", "status", "scheduled_time"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    medication_id: Mapped[int] = mapped_column(ForeignKey("medications.id", ondelete="CASCADE"), nullable=False)
    occurrence_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    scheduled_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[DoseStatus] = mapped_column(
        Enum(DoseStatus, name="dose_status", values_callable=_enum_values),
        nullable=False,
        default=DoseStatus.DUE,
    )
    resolution_log_id: Mapped[int | None] = mapped_column(ForeignKey("medication_log.id", ondelete="SET NULL"))
    reminded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    overdue_notified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    medication: Mapped[Medication] = relationship(back_populates="dose_events")


class NotificationDelivery(Base):
    """One recipient's push for one threshold of one scheduled slot."""

    __tablename__ = "medication_notification_deliveries"
    __table_args__ = (
        UniqueConstraint(
            "dose_event_id",
            "kind",
            "scheduled_time",
            "user_id",
            name="uq_notification_deliveries_event_kind_slot_user",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    dose_event_id: Mapped[int] = mapped_column(
        ForeignKey("medication_dose_events.id", ondelete="CASCADE"), nullable=False
    )
    kind: Mapped[NotificationKind] = mapped_column(
        Enum(NotificationKind, name="notification_kind", values_callable=_enum_values),
        nullable=False,
    )
    scheduled_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    claimed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
