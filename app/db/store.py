from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

from sqlalchemy import delete, insert, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from shared.contracts import models as contracts
from shared.contracts.enums import DoseStatus, NotificationKind
from shared.contracts.errors import IllegalTransition, InvalidSchedule, StoreUnavailable
from shared.contracts.models import as_utc

from .models import DoseEvent, HouseholdMember, Medication, MedicationLog, NotificationDelivery, Pet

logger = logging.getLogger(__name__)

_UPSERT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def _flag_column(kind: NotificationKind):
    return DoseEvent.reminded_at if kind == NotificationKind.REMINDER else DoseEvent.overdue_notified_at


class SqlStore:
    """Dose event store and medication provider over SQLAlchemy.

    Every public call runs in its own short transaction. Uniqueness of
    ``(medication_id, scheduled_time)`` and ``(medication_id, occurrence_time)``
    is left to the database constraints.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        try:
            with self.session_factory() as session, session.begin():
                yield session
        except (OperationalError, InterfaceError) as exc:
            raise StoreUnavailable(str(exc)) from exc

    # Medication provider

    def get_medication(self, medication_id: int) -> contracts.Medication:
        with self._transaction() as session:
            medication = session.get(Medication, medication_id)
            if medication is None:
                raise KeyError(medication_id)
            return self._medication_record(medication)

    def active_medications(self) -> list[contracts.Medication]:
        records = []
        with self._transaction() as session:
            statement = select(Medication).where(Medication.active.is_(True)).order_by(Medication.id)
            for medication in session.scalars(statement):
                try:
                    records.append(self._medication_record(medication))
                except InvalidSchedule as exc:
                    logger.error(f"Medication {medication.id} has an invalid schedule, skipping: {exc}")
        return records

    # Dose events

    def find_dose_event(self, medication_id: int, scheduled_time: datetime) -> contracts.DoseEvent | None:
        with self._transaction() as session:
            event = session.scalars(
                select(DoseEvent).where(
                    DoseEvent.medication_id == medication_id,
                    DoseEvent.scheduled_time == as_utc(scheduled_time),
                )
            ).first()
            return None if event is None else self._dose_record(event)

    def get_dose_event(self, dose_event_id: int) -> contracts.DoseEvent | None:
        with self._transaction() as session:
            event = session.get(DoseEvent, dose_event_id)
            return None if event is None else self._dose_record(event)

    def insert_dose_event_if_absent(self, medication_id: int, scheduled_time: datetime) -> bool:
        scheduled_time = as_utc(scheduled_time)
        values = {
            "medication_id": medication_id,
            "occurrence_time": scheduled_time,
            "scheduled_time": scheduled_time,
            "status": DoseStatus.DUE,
        }
        with self._transaction() as session:
            return self._insert_if_absent(session, DoseEvent.__table__, values)

    def list_dose_events(
        self,
        medication_id: int,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[contracts.DoseEvent]:
        statement = select(DoseEvent).where(DoseEvent.medication_id == medication_id)
        if start is not None:
            statement = statement.where(DoseEvent.scheduled_time >= as_utc(start))
        if end is not None:
            statement = statement.where(DoseEvent.scheduled_time <= as_utc(end))
        with self._transaction() as session:
            events = session.scalars(statement.order_by(DoseEvent.scheduled_time))
            return [self._dose_record(event) for event in events]

    def query_due(self, query: contracts.DueQuery) -> list[contracts.DueDose]:
        as_of = query.as_of or datetime.now(timezone.utc)
        statement = (
            select(DoseEvent, Medication.name, Pet.name, HouseholdMember.user_id)
            .join(Medication, DoseEvent.medication_id == Medication.id)
            .join(Pet, Medication.pet_id == Pet.id)
            .join(HouseholdMember, HouseholdMember.household_id == Pet.household_id)
            .where(
                DoseEvent.status == DoseStatus.DUE,
                Medication.active.is_(True),
                or_(HouseholdMember.access_expires_at.is_(None), HouseholdMember.access_expires_at > as_of),
            )
            .order_by(DoseEvent.scheduled_time, DoseEvent.id, HouseholdMember.user_id)
        )
        if query.start is not None:
            statement = statement.where(DoseEvent.scheduled_time >= query.start)
        if query.end is not None:
            if query.end_inclusive:
                statement = statement.where(DoseEvent.scheduled_time <= query.end)
            else:
                statement = statement.where(DoseEvent.scheduled_time < query.end)
        if query.not_notified is not None:
            statement = statement.where(_flag_column(query.not_notified).is_(None))

        grouped: dict[int, contracts.DueDose] = {}
        with self._transaction() as session:
            for event, medication_name, pet_name, user_id in session.execute(statement):
                due = grouped.get(event.id)
                if due is None:
                    due = grouped[event.id] = contracts.DueDose(
                        dose_event_id=event.id,
                        medication_id=event.medication_id,
                        scheduled_time=as_utc(event.scheduled_time),
                        medication_name=medication_name,
                        pet_name=pet_name,
                    )
                due.recipient_user_ids.append(user_id)
        return list(grouped.values())

    def update_dose_event_status(
        self, dose_event_id: int, status: DoseStatus, resolution_ref: int | None = None
    ) -> bool:
        statement = (
            update(DoseEvent)
            .where(DoseEvent.id == dose_event_id, DoseEvent.status == DoseStatus.DUE)
            .values(status=status, resolution_log_id=resolution_ref)
            .execution_options(synchronize_session=False)
        )
        with self._transaction() as session:
            return session.execute(statement).rowcount == 1

    def reschedule_dose_event(self, dose_event_id: int, new_time: datetime) -> contracts.DoseEvent | None:
        statement = (
            update(DoseEvent)
            .where(DoseEvent.id == dose_event_id, DoseEvent.status == DoseStatus.DUE)
            .values(scheduled_time=as_utc(new_time), reminded_at=None, overdue_notified_at=None)
            .execution_options(synchronize_session=False)
        )
        try:
            with self._transaction() as session:
                if session.execute(statement).rowcount != 1:
                    return None
                return self._dose_record(session.get(DoseEvent, dose_event_id))
        except IntegrityError as exc:
            raise IllegalTransition(
                f"another dose is already scheduled at {as_utc(new_time).isoformat()}",
                dose_event_id=dose_event_id,
                status=DoseStatus.DUE.value,
            ) from exc

    def mark_notified(
        self, dose_event_id: int, kind: NotificationKind, scheduled_time: datetime, at: datetime
    ) -> bool:
        column = _flag_column(kind)
        statement = (
            update(DoseEvent)
            .where(
                DoseEvent.id == dose_event_id,
                DoseEvent.status == DoseStatus.DUE,
                DoseEvent.scheduled_time == as_utc(scheduled_time),
                column.is_(None),
            )
            .values({column: as_utc(at)})
            .execution_options(synchronize_session=False)
        )
        with self._transaction() as session:
            return session.execute(statement).rowcount == 1

    def claim_delivery(
        self,
        dose_event_id: int,
        kind: NotificationKind,
        scheduled_time: datetime,
        user_id: int,
        at: datetime,
    ) -> bool:
        scheduled_time = as_utc(scheduled_time)
        still_due = select(DoseEvent.id).where(
            DoseEvent.id == dose_event_id,
            DoseEvent.status == DoseStatus.DUE,
            DoseEvent.scheduled_time == scheduled_time,
        )
        values = {
            "dose_event_id": dose_event_id,
            "kind": kind,
            "scheduled_time": scheduled_time,
            "user_id": user_id,
            "claimed_at": as_utc(at),
        }
        with self._transaction() as session:
            if session.scalar(still_due) is None:
                return False
            return self._insert_if_absent(session, NotificationDelivery.__table__, values)

    def release_delivery(
        self, dose_event_id: int, kind: NotificationKind, scheduled_time: datetime, user_id: int
    ) -> None:
        statement = delete(NotificationDelivery).where(
            NotificationDelivery.dose_event_id == dose_event_id,
            NotificationDelivery.kind == kind,
            NotificationDelivery.scheduled_time == as_utc(scheduled_time),
            NotificationDelivery.user_id == user_id,
        )
        with self._transaction() as session:
            session.execute(statement)

    # Medication log

    def append_medication_log(
        self,
        medication_id: int,
        administering_user_id: int | None,
        administration_time: datetime,
        note: str | None = None,
        *,
        resolves_dose_event_id: int | None = None,
    ) -> int:
        """Write a log entry, optionally taking ``resolves_dose_event_id`` in the same transaction.

        If that dose is no longer due the whole write is rolled back and
        ``IllegalTransition`` is raised.
        """
        with self._transaction() as session:
            entry = MedicationLog(
                medication_id=medication_id,
                administering_user_id=administering_user_id,
                administration_time=as_utc(administration_time),
                note=note,
            )
            session.add(entry)
            session.flush()
            if resolves_dose_event_id is not None:
                self._take_with_log(session, medication_id, resolves_dose_event_id, entry.id)
            return entry.id

    @staticmethod
    def _take_with_log(session: Session, medication_id: int, dose_event_id: int, log_id: int) -> None:
        statement = (
            update(DoseEvent)
            .where(
                DoseEvent.id == dose_event_id,
                DoseEvent.medication_id == medication_id,
                DoseEvent.status == DoseStatus.DUE,
            )
            .values(status=DoseStatus.TAKEN, resolution_log_id=log_id)
            .execution_options(synchronize_session=False)
        )
        if session.execute(statement).rowcount == 1:
            return
        current = session.scalar(
            select(DoseEvent.status).where(
                DoseEvent.id == dose_event_id, DoseEvent.medication_id == medication_id
            )
        )
        if current is None:
            raise KeyError(dose_event_id)
        raise IllegalTransition(
            f"dose event {dose_event_id} was already resolved",
            dose_event_id=dose_event_id,
            status=current.value,
        )

    @staticmethod
    def _insert_if_absent(session: Session, table, values: dict) -> bool:
        upsert = _UPSERT_INSERTS.get(session.get_bind().dialect.name)
        if upsert is not None:
            result = session.execute(upsert(table).values(**values).on_conflict_do_nothing())
            return result.rowcount == 1
        try:
            with session.begin_nested():
                session.execute(insert(table).values(**values))
        except IntegrityError:
            return False
        return True

    def _medication_record(self, medication: Medication) -> contracts.Medication:
        household = medication.pet.household
        return contracts.Medication(
            id=medication.id,
            name=medication.name,
            pet_name=medication.pet.name,
            active=medication.active,
            schedule=medication.to_schedule(household.owner.timezone),
            caregiver_user_ids=[member.user_id for member in household.members],
        )

    @staticmethod
    def _dose_record(event: DoseEvent) -> contracts.DoseEvent:
        return contracts.DoseEvent(
            id=event.id,
            medication_id=event.medication_id,
            occurrence_time=event.occurrence_time,
            scheduled_time=event.scheduled_time,
            status=event.status,
            resolution_ref=event.resolution_log_id,
            reminded_at=event.reminded_at,
            overdue_notified_at=event.overdue_notified_at,
        )
