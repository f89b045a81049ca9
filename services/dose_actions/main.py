from dataclasses import asdict
from datetime import datetime
from functools import lru_cache
from typing import Any, Callable, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from medledger import MedLedgerFlow, create_sql_flow
from shared.config import configure_logging
from shared.contracts.enums import ErrorCode
from shared.contracts.errors import MedLedgerError
from shared.contracts.models import (
    ActionResponse,
    CorrectionRequest,
    CreateCommandRequest,
    DoseActionRequest,
    ScheduleUpdateRequest,
    StatusChangeRequest,
    UndoRequest,
)

configure_logging()

app = FastAPI(title="dose-actions")

HTTP_STATUS_BY_CODE = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.STALE_VERSION: 409,
    ErrorCode.DUPLICATE_SUPPRESSED: 409,
    ErrorCode.EXPIRED_WINDOW: 410,
    ErrorCode.STORE_ERROR: 503,
}


@lru_cache()
def get_flow() -> MedLedgerFlow:
    return create_sql_flow()


def respond(action: Callable[[], dict[str, Any]]) -> JSONResponse:
    try:
        data = action()
    except MedLedgerError as exc:
        return JSONResponse(
            status_code=HTTP_STATUS_BY_CODE[exc.code],
            content=ActionResponse.fail(exc).model_dump(mode="json"),
        )
    return JSONResponse(content=ActionResponse.ok(data).model_dump(mode="json"))


@app.exception_handler(RequestValidationError)
def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(part) for part in first.get("loc", ())[1:]) or None
    body = ActionResponse(
        success=False,
        error=str(first.get("msg", "Invalid request")),
        error_code=ErrorCode.VALIDATION_ERROR,
        field=field,
    )
    return JSONResponse(status_code=400, content=body.model_dump(mode="json"))


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok", "service": "dose-actions"}


# ----- commands -----


@app.post("/commands")
def create_command(payload: CreateCommandRequest, flow: MedLedgerFlow = Depends(get_flow)) -> JSONResponse:
    return respond(lambda: {"command": flow.command_service.create_command(payload).model_dump(mode="json")})


@app.get("/commands/{command_id}")
def get_command(command_id: str, flow: MedLedgerFlow = Depends(get_flow)) -> JSONResponse:
    return respond(lambda: {"command": flow.commands.get(command_id).model_dump(mode="json")})


@app.patch("/commands/{command_id}/schedule")
def update_schedule(
    command_id: str, payload: ScheduleUpdateRequest, flow: MedLedgerFlow = Depends(get_flow)
) -> JSONResponse:
    return respond(
        lambda: {"command": flow.command_service.update_schedule(command_id, payload).model_dump(mode="json")}
    )


@app.post("/commands/{command_id}/status")
def change_status(
    command_id: str, payload: StatusChangeRequest, flow: MedLedgerFlow = Depends(get_flow)
) -> JSONResponse:
    return respond(
        lambda: {"command": flow.command_service.change_status(command_id, payload).model_dump(mode="json")}
    )


# ----- dose actions -----


@app.post("/doses/take")
def take_dose(payload: DoseActionRequest, flow: MedLedgerFlow = Depends(get_flow)) -> JSONResponse:
    return respond(
        lambda: {
            "event": flow.state_machine.mark_taken(
                payload.command_id,
                payload.scheduled_for,
                payload.actor,
                note=payload.note,
                actual_time=payload.actual_time,
            ).model_dump(mode="json")
        }
    )


@app.post("/doses/skip")
def skip_dose(payload: DoseActionRequest, flow: MedLedgerFlow = Depends(get_flow)) -> JSONResponse:
    return respond(
        lambda: {
            "event": flow.state_machine.mark_skipped(
                payload.command_id,
                payload.scheduled_for,
                payload.actor,
                note=payload.note,
                actual_time=payload.actual_time,
            ).model_dump(mode="json")
        }
    )


@app.post("/doses/snooze")
def snooze_dose(payload: DoseActionRequest, flow: MedLedgerFlow = Depends(get_flow)) -> JSONResponse:
    return respond(
        lambda: {
            "event": flow.state_machine.mark_snoozed(
                payload.command_id,
                payload.scheduled_for,
                payload.actor,
                note=payload.note,
                actual_time=payload.actual_time,
                snooze_minutes=payload.snooze_minutes,
            ).model_dump(mode="json")
        }
    )


@app.post("/events/{event_id}/undo")
def undo_event(event_id: str, payload: UndoRequest, flow: MedLedgerFlow = Depends(get_flow)) -> JSONResponse:
    return respond(
        lambda: {"event": flow.state_machine.undo(event_id, payload.actor, payload.reason).model_dump(mode="json")}
    )


@app.post("/events/{event_id}/correct")
def correct_event(
    event_id: str, payload: CorrectionRequest, flow: MedLedgerFlow = Depends(get_flow)
) -> JSONResponse:
    return respond(
        lambda: {
            "event": flow.state_machine.correct(
                event_id, payload.corrected_action, payload.reason, payload.actor
            ).model_dump(mode="json")
        }
    )


# ----- reads -----


@app.get("/occurrences/{command_id}")
def list_occurrences(
    command_id: str,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    flow: MedLedgerFlow = Depends(get_flow),
) -> JSONResponse:
    def load() -> dict[str, Any]:
        flow.commands.get(command_id)
        occurrences = flow.state_machine.occurrences_for_command(command_id, since=since, until=until)
        return {"occurrences": [o.model_dump(mode="json", exclude={"events"}) for o in occurrences]}

    return respond(load)


@app.get("/patients/{patient_id}/patterns")
def patient_patterns(
    patient_id: str,
    command_id: Optional[str] = None,
    record: bool = False,
    flow: MedLedgerFlow = Depends(get_flow),
) -> JSONResponse:
    def load() -> dict[str, Any]:
        patterns = flow.patterns.evaluate(patient_id, command_id=command_id, record=record)
        summaries = [
            {**asdict(summary), "rate": summary.rate}
            for summary in flow.patterns.summaries(patient_id, command_id=command_id)
        ]
        return {"patterns": [p.model_dump(mode="json") for p in patterns], "summaries": summaries}

    return respond(load)
