from datetime import date, datetime, timedelta, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from fastapi.testclient import TestClient

import services.scheduler.main as scheduler_main
from petmeds import DoseFlow, FakeNotifier, InMemoryStore
from shared.contracts.models import Medication, build_schedule


def _flow() -> DoseFlow:
    store = InMemoryStore()
    store.add_medication(
        Medication(
            id=1,
            name="Apoquel",
            pet_name="Biscuit",
            schedule=build_schedule(interval_quantity=4, interval_unit="hour", active_window={"start": date(2024, 1, 1)}),
            caregiver_user_ids=[10],
        )
    )
    return DoseFlow(store, FakeNotifier())


def test_register_jobs_installs_the_three_sweeps():
    target = BackgroundScheduler(timezone="UTC")

    scheduler_main.register_jobs(target, _flow())

    jobs = {job.id: job for job in target.get_jobs()}
    assert set(jobs) == {
        scheduler_main.REMINDER_JOB_ID,
        scheduler_main.OVERDUE_JOB_ID,
        scheduler_main.MATERIALIZE_JOB_ID,
    }
    assert jobs[scheduler_main.REMINDER_JOB_ID].trigger.interval == timedelta(seconds=60)
    assert jobs[scheduler_main.OVERDUE_JOB_ID].trigger.interval == timedelta(minutes=5)
    assert "hour='2'" in str(jobs[scheduler_main.MATERIALIZE_JOB_ID].trigger)


def test_describe_jobs_before_start_has_no_next_run():
    target = BackgroundScheduler(timezone="UTC")
    scheduler_main.register_jobs(target, _flow())

    described = scheduler_main.describe_jobs(target)

    assert len(described) == 3
    assert all(job["next_run_time"] is None for job in described)


def test_tick_and_materialize_endpoints_drive_the_flow(monkeypatch):
    flow = _flow()
    monkeypatch.setattr(scheduler_main, "flow", flow)
    client = TestClient(scheduler_main.app)

    materialized = client.post("/jobs/materialize")
    assert materialized.status_code == 200
    body = materialized.json()
    assert body["medications_scanned"] == 1
    assert body["events_created"] > 0
    assert body["failed_medication_ids"] == []

    # push the first event inside the reminder lead window
    first = min(flow.store.dose_events.values(), key=lambda e: e.scheduled_time)
    flow.store.dose_events[first.id] = first.model_copy(
        update={"scheduled_time": datetime.now(timezone.utc) + timedelta(minutes=5)}
    )

    ticked = client.post("/jobs/tick")
    assert ticked.status_code == 200
    assert ticked.json()["reminders_sent"] == 1
    assert ticked.json()["overdue_sent"] == 0


def test_health_reports_scheduler_state():
    client = TestClient(scheduler_main.app)

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["service"] == "scheduler"
    assert response.json()["scheduler_running"] is False
