from datetime import datetime
from functools import lru_cache
from typing import Optional

from fastapi import Depends, FastAPI
from pydantic import BaseModel, Field

from medledger import MedLedgerFlow, create_sql_flow
from shared.config import configure_logging, get_settings
from shared.contracts.errors import MedLedgerError
from shared.contracts.models import GenerationResult, SweepResult
from shared.scheduling.timezones import ending_day, ensure_utc, patients_at_midnight, utcnow

configure_logging()

app = FastAPI(title="scheduler")


@lru_cache()
def get_flow() -> MedLedgerFlow:
    return create_sql_flow()


class JobRequest(BaseModel):
    now: Optional[datetime] = None


class HousekeepingRequest(BaseModel):
    now: Optional[datetime] = None
    window_minutes: Optional[int] = Field(default=None, ge=1, le=720)


@app.get("/health")
def health() -> dict[str, str | int]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": "scheduler",
        "sweep_interval_minutes": settings.MISSED_SWEEP_INTERVAL_MINUTES,
        "generation_horizon_days": settings.GENERATION_HORIZON_DAYS,
    }


@app.post("/jobs/generate")
def generate(payload: Optional[JobRequest] = None, flow: MedLedgerFlow = Depends(get_flow)) -> GenerationResult:
    now = payload.now if payload else None
    return flow.generator.run_daily_generation(now=now)


@app.post("/jobs/missed-sweep")
def missed_sweep(payload: Optional[JobRequest] = None, flow: MedLedgerFlow = Depends(get_flow)) -> SweepResult:
    now = payload.now if payload else None
    return flow.detector.run_sweep(now=now)


@app.post("/jobs/midnight-housekeeping")
def midnight_housekeeping(
    payload: Optional[HousekeepingRequest] = None, flow: MedLedgerFlow = Depends(get_flow)
) -> dict[str, object]:
    payload = payload or HousekeepingRequest()
    now = ensure_utc(payload.now or utcnow())
    window = payload.window_minutes or flow.settings.MIDNIGHT_WINDOW_MINUTES

    zones: dict[str, str] = {}
    for command in flow.commands.list_monitored():
        zones.setdefault(command.patient_id, command.schedule.timezone)
    patients = patients_at_midnight(zones, now=now, window_minutes=window)

    # A new local day extends each patient's horizon by one day.
    generated, errors = 0, []
    for command in flow.commands.list_schedulable():
        if command.patient_id not in patients:
            continue
        try:
            generated += flow.generator.generate_for_command(command, now)[0]
        except MedLedgerError as exc:
            errors.append(f"{command.id}: {exc.message}")

    summaries = []
    for patient_id in patients:
        tz = zones[patient_id]
        try:
            summary = flow.patterns.daily_summary(patient_id, ending_day(tz, now, window), tz)
        except MedLedgerError as exc:
            errors.append(f"summary {patient_id}: {exc.message}")
            continue
        summaries.append(summary.model_dump(mode="json"))

    return {
        "checked_at": now.isoformat(),
        "window_minutes": window,
        "patients": patients,
        "events_generated": generated,
        "daily_summaries": summaries,
        "errors": errors,
    }
