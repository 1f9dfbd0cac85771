import logging
from datetime import datetime, timedelta, timezone

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel, Field

from app.factory import build_flow
from petmeds import DoseFlow
from shared.contracts.enums import DoseStatus
from shared.contracts.errors import IllegalTransition, InvalidSchedule, StoreUnavailable
from shared.contracts.models import as_utc

logger = logging.getLogger(__name__)

app = FastAPI(title="api")
flow: DoseFlow | None = None


def get_flow() -> DoseFlow:
    global flow
    if flow is None:
        flow = build_flow()
    return flow


class MaterializeRequest(BaseModel):
    window_start: datetime | None = None
    window_end: datetime | None = None


class LogDoseRequest(BaseModel):
    administration_time: datetime
    dose_event_id: int | None = None
    administering_user_id: int | None = None
    note: str | None = Field(default=None, max_length=2000)


class DoseEventDTO(BaseModel):
    id: int
    medication_id: int
    occurrence_time: datetime
    scheduled_time: datetime
    status: DoseStatus
    resolution_ref: int | None = None


class LogDoseResponse(BaseModel):
    log_id: int
    dose_event: DoseEventDTO | None = None


def _dose_to_dto(event) -> DoseEventDTO:
    return DoseEventDTO(
        id=event.id,
        medication_id=event.medication_id,
        occurrence_time=event.occurrence_time,
        scheduled_time=event.scheduled_time,
        status=event.status,
        resolution_ref=event.resolution_ref,
    )


def _conflict(exc: IllegalTransition) -> HTTPException:
    if exc.status in (DoseStatus.TAKEN.value, DoseStatus.SKIPPED.value):
        detail = {"error": "dose_already_recorded", "message": "this dose was already recorded", "status": exc.status}
    else:
        detail = {"error": "dose_conflict", "message": str(exc), "status": exc.status}
    return HTTPException(status_code=409, detail=detail)


def _unavailable(exc: StoreUnavailable) -> HTTPException:
    logger.error(f"Store unavailable: {exc}")
    return HTTPException(status_code=503, detail="dose store unavailable, retry shortly")


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/medications/{medication_id}/materialize")
def materialize_medication(
    medication_id: int,
    payload: MaterializeRequest | None = None,
    active_flow: DoseFlow = Depends(get_flow),
) -> dict:
    payload = payload or MaterializeRequest()
    try:
        if payload.window_start is None and payload.window_end is None:
            created = active_flow.materialize_medication(medication_id)
        else:
            start = as_utc(payload.window_start or datetime.now(timezone.utc))
            end = as_utc(payload.window_end) if payload.window_end else start + active_flow.materializer.horizon
            if end < start:
                raise HTTPException(status_code=400, detail="window_end must not precede window_start")
            medication = active_flow.store.get_medication(medication_id)
            created = active_flow.materialize(medication, start, end)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Medication not found") from exc
    except InvalidSchedule as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except StoreUnavailable as exc:
        raise _unavailable(exc) from exc
    return {"medication_id": medication_id, "created": created}


@app.post("/medications/{medication_id}/log", response_model=LogDoseResponse, status_code=201)
def log_dose(medication_id: int, payload: LogDoseRequest, active_flow: DoseFlow = Depends(get_flow)) -> LogDoseResponse:
    try:
        # a rejected or concurrently resolved dose leaves no log entry behind
        log_id, event = active_flow.record_administration(
            medication_id,
            payload.administration_time,
            dose_event_id=payload.dose_event_id,
            administering_user_id=payload.administering_user_id,
            note=payload.note,
        )
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Medication or dose event not found") from exc
    except IllegalTransition as exc:
        raise _conflict(exc) from exc
    except InvalidSchedule as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except StoreUnavailable as exc:
        raise _unavailable(exc) from exc
    return LogDoseResponse(log_id=log_id, dose_event=None if event is None else _dose_to_dto(event))


@app.get("/medications/{medication_id}/doses", response_model=list[DoseEventDTO])
def list_doses(
    medication_id: int,
    start: datetime | None = None,
    end: datetime | None = None,
    active_flow: DoseFlow = Depends(get_flow),
) -> list[DoseEventDTO]:
    start = as_utc(start) if start else datetime.now(timezone.utc)
    end = as_utc(end) if end else start + timedelta(days=1)
    try:
        active_flow.store.get_medication(medication_id)
        events = active_flow.store.list_dose_events(medication_id, start, end)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Medication not found") from exc
    except InvalidSchedule as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except StoreUnavailable as exc:
        raise _unavailable(exc) from exc
    return [_dose_to_dto(event) for event in events]


@app.post("/doses/{dose_event_id}/snooze", response_model=DoseEventDTO)
def snooze_dose(dose_event_id: int, active_flow: DoseFlow = Depends(get_flow)) -> DoseEventDTO:
    try:
        event = active_flow.snooze_dose(dose_event_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Dose event not found") from exc
    except IllegalTransition as exc:
        raise _conflict(exc) from exc
    except StoreUnavailable as exc:
        raise _unavailable(exc) from exc
    return _dose_to_dto(event)


@app.post("/doses/{dose_event_id}/skip", response_model=DoseEventDTO)
def skip_dose(dose_event_id: int, active_flow: DoseFlow = Depends(get_flow)) -> DoseEventDTO:
    try:
        event = active_flow.skip_dose(dose_event_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Dose event not found") from exc
    except IllegalTransition as exc:
        raise _conflict(exc) from exc
    except StoreUnavailable as exc:
        raise _unavailable(exc) from exc
    return _dose_to_dto(event)
