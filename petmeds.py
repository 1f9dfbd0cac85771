from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from itertools import count
from typing import Dict, Iterator, List, Optional, Set, Tuple

from dateutil.relativedelta import relativedelta

from shared.contracts.enums import DoseAction, DoseStatus, NotificationKind, ScheduleMode
from shared.contracts.errors import IllegalTransition, NotificationDispatchFailure, StoreUnavailable
from shared.contracts.models import DoseEvent, DueDose, DueQuery, Medication, Schedule, as_utc

logger = logging.getLogger(__name__)

REMINDER_LEAD_TIME = timedelta(minutes=15)
OVERDUE_GRACE = timedelta(minutes=30)
SNOOZE_DELAY = timedelta(minutes=15)
MATERIALIZE_HORIZON = timedelta(days=30)
LOG_MATCH_TOLERANCE = timedelta(hours=12)


def _normalize_now(now: Optional[datetime]) -> datetime:
    return as_utc(now or datetime.now(timezone.utc))


# Occurrence generation


@dataclass(frozen=True)
class OccurrenceSeries:
    """Lazy, restartable sequence of scheduled instants.

    Every ``iter()`` recomputes the series from the schedule, so the same
    series object can be walked any number of times with identical results.
    """

    schedule: Schedule
    window_start: datetime
    window_end: datetime
    anchor: Optional[datetime] = None

    def __iter__(self) -> Iterator[datetime]:
        if self.schedule.as_needed or self.window_start > self.window_end:
            return iter(())
        if self.schedule.mode == ScheduleMode.FIXED_TIME:
            return _fixed_time_occurrences(self.schedule, self.window_start, self.window_end)
        return _interval_occurrences(self.schedule, self.window_start, self.window_end, self.anchor)


def occurrences(
    schedule: Schedule,
    window_start: datetime,
    window_end: datetime,
    *,
    anchor: Optional[datetime] = None,
) -> OccurrenceSeries:
    """Scheduled instants (UTC) of ``schedule`` inside ``[window_start, window_end]``.

    Interval series are phased from the first active day at midnight in the
    schedule's timezone. Pass ``anchor`` to phase the series from
    ``max(anchor, active start)`` instead.
    """
    return OccurrenceSeries(
        schedule=schedule,
        window_start=as_utc(window_start),
        window_end=as_utc(window_end),
        anchor=None if anchor is None else as_utc(anchor),
    )


def _fixed_time_occurrences(schedule: Schedule, window_start: datetime, window_end: datetime) -> Iterator[datetime]:
    zone = schedule.zone
    active = schedule.active_window
    day = max(window_start.astimezone(zone).date(), active.start)
    last_day = window_end.astimezone(zone).date()
    if active.end is not None:
        last_day = min(last_day, active.end)

    previous: Optional[datetime] = None
    while day <= last_day:
        if schedule.weekday_filter is None or day.weekday() in schedule.weekday_filter:
            instants = sorted(
                datetime.combine(day, at, tzinfo=zone).astimezone(timezone.utc) for at in schedule.times_of_day
            )
            for instant in instants:
                if instant < window_start or instant > window_end:
                    continue
                # two wall-clock times can land on one instant across a DST gap
                if previous is not None and instant <= previous:
                    continue
                previous = instant
                yield instant
        day += timedelta(days=1)


def _interval_occurrences(
    schedule: Schedule,
    window_start: datetime,
    window_end: datetime,
    anchor: Optional[datetime],
) -> Iterator[datetime]:
    active_start = schedule.active_start_instant()
    active_end = schedule.active_end_instant()
    current = active_start if anchor is None else max(anchor, active_start)
    step = schedule.interval_step()

    if isinstance(step, relativedelta):
        local = current.astimezone(schedule.zone)
        while True:
            instant = local.astimezone(timezone.utc)
            if instant > window_end or (active_end is not None and instant >= active_end):
                return
            if instant >= window_start:
                yield instant
            local = local + step

    if current < window_start:
        current += step * -((current - window_start) // step)
    while current <= window_end and (active_end is None or current < active_end):
        yield current
        current += step


# Dose status


DOSE_TRANSITIONS: Dict[DoseStatus, Dict[DoseAction, DoseStatus]] = {
    DoseStatus.DUE: {
        DoseAction.TAKE: DoseStatus.TAKEN,
        DoseAction.SKIP: DoseStatus.SKIPPED,
        DoseAction.SNOOZE: DoseStatus.DUE,
    },
    DoseStatus.TAKEN: {},
    DoseStatus.SKIPPED: {},
}


def transition(status: DoseStatus, action: DoseAction, dose_event_id: Optional[int] = None) -> DoseStatus:
    target = DOSE_TRANSITIONS.get(status, {}).get(action)
    if target is None:
        raise IllegalTransition(
            f"cannot {action.value} a dose that is already {status.value}",
            dose_event_id=dose_event_id,
            status=status.value,
        )
    return target


def is_terminal(status: DoseStatus) -> bool:
    return not DOSE_TRANSITIONS.get(status)


# Materialization


@dataclass
class MaterializationReport:
    medications_scanned: int = 0
    events_created: int = 0
    failed_medication_ids: List[int] = field(default_factory=list)


class DoseMaterializer:
    def __init__(self, store, horizon: timedelta = MATERIALIZE_HORIZON) -> None:
        self.store = store
        self.horizon = horizon

    def materialize(self, medication: Medication, window_start: datetime, window_end: datetime) -> int:
        """Insert missing ``due`` events for the window; returns how many were created.

        Existing events are never touched, whatever their status.
        """
        if not medication.active:
            logger.debug(f"Skipping materialization for inactive medication {medication.id}")
            return 0

        created = 0
        for occurrence in occurrences(medication.schedule, window_start, window_end):
            if self.store.insert_dose_event_if_absent(medication.id, occurrence):
                created += 1

        if created:
            logger.info(f"Materialized {created} dose events for medication {medication.id}")
        return created

    def materialize_active(self, now: datetime) -> MaterializationReport:
        now = as_utc(now)
        report = MaterializationReport()
        try:
            medications = list(self.store.active_medications())
        except StoreUnavailable as exc:
            logger.error(f"Materialization sweep deferred, store unavailable: {exc}")
            return report

        for medication in medications:
            report.medications_scanned += 1
            try:
                report.events_created += self.materialize(medication, now, now + self.horizon)
            except Exception as exc:
                report.failed_medication_ids.append(medication.id)
                logger.error(f"Dose materialization failed for medication {medication.id}: {exc}")

        logger.info(
            f"Materialization sweep: {report.medications_scanned} medications, "
            f"{report.events_created} new dose events, {len(report.failed_medication_ids)} failures"
        )
        return report


# Reminders


class ReminderScanner:
    """Notifies each due dose at most once per threshold crossing."""

    def __init__(
        self,
        store,
        notifier,
        lead_time: timedelta = REMINDER_LEAD_TIME,
        overdue_grace: timedelta = OVERDUE_GRACE,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.lead_time = lead_time
        self.overdue_grace = overdue_grace

    def sweep_upcoming(self, now: datetime) -> int:
        now = as_utc(now)
        query = DueQuery(
            start=now,
            end=now + self.lead_time,
            not_notified=NotificationKind.REMINDER,
            as_of=now,
        )
        return self._sweep(query, NotificationKind.REMINDER, now)

    def sweep_overdue(self, now: datetime) -> int:
        now = as_utc(now)
        query = DueQuery(
            end=now - self.overdue_grace,
            end_inclusive=False,
            not_notified=NotificationKind.OVERDUE,
            as_of=now,
        )
        return self._sweep(query, NotificationKind.OVERDUE, now)

    def _sweep(self, query: DueQuery, kind: NotificationKind, now: datetime) -> int:
        try:
            due_doses = self.store.query_due(query)
        except StoreUnavailable as exc:
            logger.error(f"{kind.value} sweep deferred, store unavailable: {exc}")
            return 0

        notified = 0
        for due in due_doses:
            try:
                if not self._dispatch(due, kind, now):
                    continue
                if self.store.mark_notified(due.dose_event_id, kind, due.scheduled_time, now):
                    notified += 1
            except StoreUnavailable as exc:
                logger.error(f"Could not record {kind.value} state for dose event {due.dose_event_id}: {exc}")

        if notified:
            logger.info(f"{kind.value} sweep notified {notified} dose events")
        return notified

    def _dispatch(self, due: DueDose, kind: NotificationKind, now: datetime) -> bool:
        """Send to every recipient without a delivery for this threshold yet.

        Returns ``True`` once no recipient is left to retry.
        """
        send = self.notifier.send_reminder if kind == NotificationKind.REMINDER else self.notifier.send_overdue
        complete = True
        for user_id in due.recipient_user_ids:
            # the delivery is claimed before the send; only the claimant sends
            if not self.store.claim_delivery(due.dose_event_id, kind, due.scheduled_time, user_id, now):
                continue
            try:
                send(user_id, due.pet_name, due.medication_name, due.scheduled_time)
            except Exception as exc:
                complete = False
                self.store.release_delivery(due.dose_event_id, kind, due.scheduled_time, user_id)
                logger.error(
                    f"{kind.value} dispatch failed for dose event {due.dose_event_id} to user {user_id}: {exc}"
                )
        return complete


# Flow


class DoseFlow:
    """Mutation entry points used by the API layer and the periodic sweeps."""

    def __init__(
        self,
        store,
        notifier,
        *,
        reminder_lead_time: timedelta = REMINDER_LEAD_TIME,
        overdue_grace: timedelta = OVERDUE_GRACE,
        snooze_delay: timedelta = SNOOZE_DELAY,
        horizon: timedelta = MATERIALIZE_HORIZON,
        log_match_tolerance: timedelta = LOG_MATCH_TOLERANCE,
    ) -> None:
        if snooze_delay <= timedelta(0):
            raise ValueError("snooze_delay must be positive")
        if log_match_tolerance < timedelta(0):
            raise ValueError("log_match_tolerance must not be negative")
        self.store = store
        self.materializer = DoseMaterializer(store, horizon=horizon)
        self.scanner = ReminderScanner(store, notifier, lead_time=reminder_lead_time, overdue_grace=overdue_grace)
        self.snooze_delay = snooze_delay
        self.log_match_tolerance = log_match_tolerance

    def materialize(self, medication: Medication, window_start: datetime, window_end: datetime) -> int:
        return self.materializer.materialize(medication, window_start, window_end)

    def materialize_medication(self, medication_id: int, now: Optional[datetime] = None) -> int:
        medication = self.store.get_medication(medication_id)
        now = _normalize_now(now)
        return self.materializer.materialize(medication, now, now + self.materializer.horizon)

    def materialize_active(self, now: Optional[datetime] = None) -> MaterializationReport:
        return self.materializer.materialize_active(_normalize_now(now))

    def sweep_reminders(self, now: Optional[datetime] = None) -> int:
        return self.scanner.sweep_upcoming(_normalize_now(now))

    def sweep_overdue(self, now: Optional[datetime] = None) -> int:
        return self.scanner.sweep_overdue(_normalize_now(now))

    def log_dose(
        self,
        medication_id: int,
        administration_time: datetime,
        *,
        dose_event_id: Optional[int] = None,
        log_ref: Optional[int] = None,
    ) -> Optional[DoseEvent]:
        """Mark the matching due event as taken.

        Without an explicit ``dose_event_id`` the event closest to
        ``administration_time`` (within ``log_match_tolerance``) is used,
        whatever its status. If that dose was already taken or skipped the
        log is a repeat and ``IllegalTransition`` is raised. Returns ``None``
        when no dose is scheduled near the administration.
        """
        event = self._match_event(medication_id, as_utc(administration_time), dose_event_id)
        if event is None:
            return None
        return self._resolve(event, DoseAction.TAKE, log_ref)

    def record_administration(
        self,
        medication_id: int,
        administration_time: datetime,
        *,
        dose_event_id: Optional[int] = None,
        administering_user_id: Optional[int] = None,
        note: Optional[str] = None,
    ) -> Tuple[int, Optional[DoseEvent]]:
        """Append the medication log entry and take the matching dose in one store write.

        A rejected match raises before anything is written, and a dose
        resolved concurrently rolls the log entry back with it.
        """
        self.store.get_medication(medication_id)
        administration_time = as_utc(administration_time)
        event = self._match_event(medication_id, administration_time, dose_event_id)
        if event is not None:
            transition(event.status, DoseAction.TAKE, event.id)

        log_id = self.store.append_medication_log(
            medication_id,
            administering_user_id,
            administration_time,
            note,
            resolves_dose_event_id=None if event is None else event.id,
        )
        if event is None:
            return log_id, None
        logger.info(f"Dose event {event.id} marked {DoseStatus.TAKEN.value} by log entry {log_id}")
        return log_id, self._require_event(event.id)

    def skip_dose(self, dose_event_id: int) -> DoseEvent:
        return self._resolve(self._require_event(dose_event_id), DoseAction.SKIP, None)

    def snooze_dose(self, dose_event_id: int) -> DoseEvent:
        event = self._require_event(dose_event_id)
        transition(event.status, DoseAction.SNOOZE, event.id)
        updated = self.store.reschedule_dose_event(event.id, event.scheduled_time + self.snooze_delay)
        if updated is None:
            raise IllegalTransition(f"dose event {event.id} is no longer due", dose_event_id=event.id)
        logger.info(f"Snoozed dose event {event.id} to {updated.scheduled_time.isoformat()}")
        return updated

    def _resolve(self, event: DoseEvent, action: DoseAction, log_ref: Optional[int]) -> DoseEvent:
        target = transition(event.status, action, event.id)
        if not self.store.update_dose_event_status(event.id, target, log_ref):
            current = self.store.get_dose_event(event.id)
            raise IllegalTransition(
                f"dose event {event.id} was already resolved",
                dose_event_id=event.id,
                status=None if current is None else current.status.value,
            )
        logger.info(f"Dose event {event.id} marked {target.value}")
        return self._require_event(event.id)

    def _require_event(self, dose_event_id: int) -> DoseEvent:
        event = self.store.get_dose_event(dose_event_id)
        if event is None:
            raise KeyError(dose_event_id)
        return event

    def _match_event(
        self, medication_id: int, at: datetime, dose_event_id: Optional[int]
    ) -> Optional[DoseEvent]:
        if dose_event_id is not None:
            event = self._require_event(dose_event_id)
            if event.medication_id != medication_id:
                raise KeyError(dose_event_id)
            return event

        # terminal events stay candidates: a repeat log never resolves a neighbouring dose
        candidates = self.store.list_dose_events(
            medication_id, at - self.log_match_tolerance, at + self.log_match_tolerance
        )
        if not candidates:
            logger.info(f"No scheduled dose for medication {medication_id} near {at.isoformat()}")
            return None
        return min(candidates, key=lambda e: (abs(e.scheduled_time - at), e.scheduled_time))


# In-memory collaborators


@dataclass
class InMemoryStore:
    medications: Dict[int, Medication] = field(default_factory=dict)
    dose_events: Dict[int, DoseEvent] = field(default_factory=dict)
    medication_log: List[Dict[str, object]] = field(default_factory=list)
    deliveries: Dict[Tuple[int, NotificationKind, datetime, int], datetime] = field(default_factory=dict)
    _ids: Iterator[int] = field(default_factory=lambda: count(1), repr=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def add_medication(self, medication: Medication) -> None:
        with self._lock:
            self.medications[medication.id] = medication

    def get_medication(self, medication_id: int) -> Medication:
        return self.medications[medication_id]

    def active_medications(self) -> List[Medication]:
        return [m for m in self.medications.values() if m.active]

    def find_dose_event(self, medication_id: int, scheduled_time: datetime) -> Optional[DoseEvent]:
        scheduled_time = as_utc(scheduled_time)
        with self._lock:
            for event in self.dose_events.values():
                if event.medication_id == medication_id and event.scheduled_time == scheduled_time:
                    return event.model_copy()
        return None

    def get_dose_event(self, dose_event_id: int) -> Optional[DoseEvent]:
        event = self.dose_events.get(dose_event_id)
        return None if event is None else event.model_copy()

    def insert_dose_event_if_absent(self, medication_id: int, scheduled_time: datetime) -> bool:
        scheduled_time = as_utc(scheduled_time)
        with self._lock:
            for event in self.dose_events.values():
                if event.medication_id != medication_id:
                    continue
                if scheduled_time in (event.scheduled_time, event.occurrence_time):
                    return False
            dose_event_id = next(self._ids)
            self.dose_events[dose_event_id] = DoseEvent(
                id=dose_event_id,
                medication_id=medication_id,
                occurrence_time=scheduled_time,
                scheduled_time=scheduled_time,
            )
            return True

    def list_dose_events(
        self,
        medication_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[DoseEvent]:
        query = DueQuery(start=start, end=end)
        with self._lock:
            events = [
                e.model_copy()
                for e in self.dose_events.values()
                if e.medication_id == medication_id and query.covers(e.scheduled_time)
            ]
        return sorted(events, key=lambda e: e.scheduled_time)

    def query_due(self, query: DueQuery) -> List[DueDose]:
        results: List[DueDose] = []
        with self._lock:
            for event in self.dose_events.values():
                medication = self.medications.get(event.medication_id)
                if medication is None or not medication.active or event.status != DoseStatus.DUE:
                    continue
                if not query.covers(event.scheduled_time):
                    continue
                if query.not_notified is not None and event.notified_at(query.not_notified) is not None:
                    continue
                results.append(
                    DueDose(
                        dose_event_id=event.id,
                        medication_id=medication.id,
                        scheduled_time=event.scheduled_time,
                        medication_name=medication.name,
                        pet_name=medication.pet_name,
                        recipient_user_ids=list(medication.caregiver_user_ids),
                    )
                )
        return sorted(results, key=lambda d: d.scheduled_time)

    def update_dose_event_status(
        self, dose_event_id: int, status: DoseStatus, resolution_ref: Optional[int] = None
    ) -> bool:
        with self._lock:
            event = self.dose_events.get(dose_event_id)
            if event is None or event.status != DoseStatus.DUE:
                return False
            self.dose_events[dose_event_id] = event.model_copy(
                update={"status": status, "resolution_ref": resolution_ref}
            )
            return True

    def reschedule_dose_event(self, dose_event_id: int, new_time: datetime) -> Optional[DoseEvent]:
        new_time = as_utc(new_time)
        with self._lock:
            event = self.dose_events.get(dose_event_id)
            if event is None or event.status != DoseStatus.DUE:
                return None
            for other in self.dose_events.values():
                if other.id != event.id and other.medication_id == event.medication_id and other.scheduled_time == new_time:
                    raise IllegalTransition(
                        f"another dose of medication {event.medication_id} is already scheduled at {new_time.isoformat()}",
                        dose_event_id=dose_event_id,
                        status=event.status.value,
                    )
            updated = event.model_copy(
                update={"scheduled_time": new_time, "reminded_at": None, "overdue_notified_at": None}
            )
            self.dose_events[dose_event_id] = updated
            return updated.model_copy()

    def mark_notified(
        self, dose_event_id: int, kind: NotificationKind, scheduled_time: datetime, at: datetime
    ) -> bool:
        with self._lock:
            event = self.dose_events.get(dose_event_id)
            if event is None or event.status != DoseStatus.DUE:
                return False
            if event.scheduled_time != as_utc(scheduled_time) or event.notified_at(kind) is not None:
                return False
            self.dose_events[dose_event_id] = event.model_copy(update={_flag_column(kind): as_utc(at)})
            return True

    def claim_delivery(
        self,
        dose_event_id: int,
        kind: NotificationKind,
        scheduled_time: datetime,
        user_id: int,
        at: datetime,
    ) -> bool:
        scheduled_time = as_utc(scheduled_time)
        key = (dose_event_id, kind, scheduled_time, user_id)
        with self._lock:
            event = self.dose_events.get(dose_event_id)
            if event is None or event.status != DoseStatus.DUE or event.scheduled_time != scheduled_time:
                return False
            if key in self.deliveries:
                return False
            self.deliveries[key] = as_utc(at)
            return True

    def release_delivery(
        self, dose_event_id: int, kind: NotificationKind, scheduled_time: datetime, user_id: int
    ) -> None:
        with self._lock:
            self.deliveries.pop((dose_event_id, kind, as_utc(scheduled_time), user_id), None)

    def append_medication_log(
        self,
        medication_id: int,
        administering_user_id: Optional[int],
        administration_time: datetime,
        note: Optional[str] = None,
        *,
        resolves_dose_event_id: Optional[int] = None,
    ) -> int:
        with self._lock:
            log_id = len(self.medication_log) + 1
            if resolves_dose_event_id is not None:
                event = self.dose_events.get(resolves_dose_event_id)
                if event is None or event.medication_id != medication_id:
                    raise KeyError(resolves_dose_event_id)
                transition(event.status, DoseAction.TAKE, event.id)
                self.dose_events[event.id] = event.model_copy(
                    update={"status": DoseStatus.TAKEN, "resolution_ref": log_id}
                )
            self.medication_log.append(
                {
                    "id": log_id,
                    "medication_id": medication_id,
                    "administering_user_id": administering_user_id,
                    "administration_time": as_utc(administration_time),
                    "note": note,
                }
            )
            return log_id


def _flag_column(kind: NotificationKind) -> str:
    return "reminded_at" if kind == NotificationKind.REMINDER else "overdue_notified_at"


@dataclass(frozen=True)
class SentNotification:
    kind: NotificationKind
    user_id: int
    pet_name: str
    medication_name: str
    scheduled_time: datetime


@dataclass
class FakeNotifier:
    sent: List[SentNotification] = field(default_factory=list)
    failing_user_ids: Set[int] = field(default_factory=set)

    def send_reminder(self, user_id: int, pet_name: str, medication_name: str, scheduled_time: datetime) -> None:
        self._send(NotificationKind.REMINDER, user_id, pet_name, medication_name, scheduled_time)

    def send_overdue(self, user_id: int, pet_name: str, medication_name: str, scheduled_time: datetime) -> None:
        self._send(NotificationKind.OVERDUE, user_id, pet_name, medication_name, scheduled_time)

    def of_kind(self, kind: NotificationKind) -> List[SentNotification]:
        return [n for n in self.sent if n.kind == kind]

    def _send(
        self,
        kind: NotificationKind,
        user_id: int,
        pet_name: str,
        medication_name: str,
        scheduled_time: datetime,
    ) -> None:
        if user_id in self.failing_user_ids:
            raise NotificationDispatchFailure(f"push transport rejected user {user_id}", user_id=user_id)
        self.sent.append(SentNotification(kind, user_id, pet_name, medication_name, scheduled_time))
