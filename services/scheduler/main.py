import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import FastAPI

from app.config import Settings, settings
from app.factory import build_flow
from petmeds import DoseFlow, MaterializationReport

logger = logging.getLogger(__name__)

REMINDER_JOB_ID = "dose_reminder_sweep"
OVERDUE_JOB_ID = "dose_overdue_sweep"
MATERIALIZE_JOB_ID = "dose_materialization_sweep"

scheduler = BackgroundScheduler(timezone="UTC")
flow: DoseFlow | None = None


def get_flow() -> DoseFlow:
    global flow
    if flow is None:
        flow = build_flow()
    return flow


def run_reminder_sweep(active_flow: DoseFlow) -> int:
    return active_flow.sweep_reminders()


def run_overdue_sweep(active_flow: DoseFlow) -> int:
    return active_flow.sweep_overdue()


def run_materialization_sweep(active_flow: DoseFlow) -> MaterializationReport:
    return active_flow.materialize_active()


def register_jobs(target: BackgroundScheduler, active_flow: DoseFlow, config: Settings = settings) -> None:
    """Install the three dose sweeps on ``target``; re-registering replaces them."""
    target.add_job(
        run_reminder_sweep,
        IntervalTrigger(seconds=config.REMINDER_SWEEP_SECONDS),
        args=[active_flow],
        id=REMINDER_JOB_ID,
        name="Dose Reminder Sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    target.add_job(
        run_overdue_sweep,
        IntervalTrigger(minutes=config.OVERDUE_SWEEP_MINUTES),
        args=[active_flow],
        id=OVERDUE_JOB_ID,
        name="Dose Overdue Sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    target.add_job(
        run_materialization_sweep,
        CronTrigger(hour=config.MATERIALIZE_CRON_HOUR, minute=0, timezone="UTC"),
        args=[active_flow],
        id=MATERIALIZE_JOB_ID,
        name="Dose Event Materialization",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )


def describe_jobs(target: BackgroundScheduler) -> list[dict[str, Any]]:
    jobs = []
    for job in target.get_jobs():
        # pending jobs get a next run time only once the scheduler starts
        next_run_time = getattr(job, "next_run_time", None)
        jobs.append(
            {
                "id": job.id,
                "name": job.name,
                "next_run_time": next_run_time.isoformat() if next_run_time else None,
                "trigger": str(job.trigger),
            }
        )
    return jobs


@asynccontextmanager
async def lifespan(_: FastAPI):
    logging.basicConfig(level=settings.LOG_LEVEL)
    register_jobs(scheduler, get_flow())
    scheduler.start()
    logger.info("Dose scheduler started with reminder, overdue and materialization sweeps")
    try:
        yield
    finally:
        if scheduler.running:
            scheduler.shutdown(wait=False)
            logger.info("Dose scheduler stopped")


app = FastAPI(title="scheduler", lifespan=lifespan)


@app.get("/health")
def health() -> dict[str, Any]:
    return {
        "status": "ok",
        "service": "scheduler",
        "scheduler_running": scheduler.running,
        "jobs": describe_jobs(scheduler),
    }


@app.post("/jobs/tick")
def tick() -> dict[str, Any]:
    active_flow = get_flow()
    return {
        "status": "completed",
        "service": "scheduler",
        "reminders_sent": run_reminder_sweep(active_flow),
        "overdue_sent": run_overdue_sweep(active_flow),
    }


@app.post("/jobs/materialize")
def materialize() -> dict[str, Any]:
    report = run_materialization_sweep(get_flow())
    return {"status": "completed", "service": "scheduler", **asdict(report)}
