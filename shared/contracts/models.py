from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from shared.scheduling.timezones import TIME_OF_DAY_PATTERN, ensure_utc, is_valid_timezone

from .enums import (
    CommandStatus,
    CorrectedAction,
    ErrorCode,
    EventType,
    Frequency,
    GraceTier,
    OccurrenceState,
    PatternType,
    Severity,
)
from .errors import MedLedgerError


logger = logging.getLogger(__name__)

DEFAULT_TIMES: dict[Frequency, list[str]] = {
    Frequency.DAILY: ["08:00"],
    Frequency.TWICE_DAILY: ["08:00", "20:00"],
    Frequency.THREE_TIMES_DAILY: ["08:00", "14:00", "20:00"],
    Frequency.FOUR_TIMES_DAILY: ["08:00", "12:00", "17:00", "22:00"],
    Frequency.WEEKLY: ["08:00"],
    Frequency.MONTHLY: ["08:00"],
    Frequency.AS_NEEDED: [],
}

EXPECTED_TIME_COUNTS: dict[Frequency, int] = {
    Frequency.DAILY: 1,
    Frequency.TWICE_DAILY: 2,
    Frequency.THREE_TIMES_DAILY: 3,
    Frequency.FOUR_TIMES_DAILY: 4,
}

FREQUENCY_ALIASES: dict[str, Frequency] = {
    "once_daily": Frequency.DAILY,
    "qd": Frequency.DAILY,
    "bid": Frequency.TWICE_DAILY,
    "tid": Frequency.THREE_TIMES_DAILY,
    "qid": Frequency.FOUR_TIMES_DAILY,
    "prn": Frequency.AS_NEEDED,
}


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def new_command_id() -> str:
    return f"cmd_{uuid.uuid4().hex[:16]}"


def new_event_id() -> str:
    return f"evt_{uuid.uuid4().hex}"


def new_correlation_id() -> str:
    return f"corr_{uuid.uuid4().hex[:20]}"


def normalize_frequency(value: Any) -> Frequency:
    """Map free-form frequency labels onto the enum, falling back to daily."""
    if isinstance(value, Frequency):
        return value
    key = str(value or "").strip().lower().replace("-", "_").replace(" ", "_")
    try:
        return Frequency(key)
    except ValueError:
        pass
    if key in FREQUENCY_ALIASES:
        return FREQUENCY_ALIASES[key]
    logger.warning("Unknown frequency %r; defaulting to daily cadence", value)
    return Frequency.DAILY


# ----- MedicationCommand -----


class MedicationDescriptor(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    dosage: str = Field(min_length=1)
    route: str | None = None
    generic_name: str | None = None
    rxcui: str | None = None
    instructions: str | None = None


class Schedule(BaseModel):
    model_config = ConfigDict(extra="forbid")

    frequency: Frequency = Frequency.DAILY
    times: list[str] = Field(default_factory=list)
    days_of_week: list[int] = Field(default_factory=list)  # 0=Monday .. 6=Sunday
    day_of_month: int | None = Field(default=None, ge=1, le=31)
    start_date: date
    end_date: date | None = None
    is_indefinite: bool = True
    dosage_amount: str = Field(default="1 dose", min_length=1)
    timezone: str = "UTC"

    @field_validator("frequency", mode="before")
    @classmethod
    def coerce_frequency(cls, value: Any) -> Frequency:
        return normalize_frequency(value)

    @field_validator("times")
    @classmethod
    def validate_times(cls, value: list[str]) -> list[str]:
        cleaned = [t.strip() for t in value]
        invalid = [t for t in cleaned if not TIME_OF_DAY_PATTERN.match(t)]
        if invalid:
            raise ValueError(
                f"Invalid time format: {', '.join(invalid)}. Use 24-hour HH:MM (e.g. 07:00, 19:30)"
            )
        return sorted(set(cleaned))

    @field_validator("days_of_week")
    @classmethod
    def validate_days_of_week(cls, value: list[int]) -> list[int]:
        if any(day < 0 or day > 6 for day in value):
            raise ValueError("days_of_week entries must be 0 (Monday) to 6 (Sunday)")
        return sorted(set(value))

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        if not is_valid_timezone(value):
            raise ValueError(f"Unknown IANA timezone: {value}")
        return value

    @model_validator(mode="after")
    def validate_schedule(self) -> "Schedule":
        if self.end_date is not None and self.start_date > self.end_date:
            raise ValueError("start_date must be on or before end_date")
        if self.frequency != Frequency.AS_NEEDED and not self.times:
            raise ValueError("At least one schedule time is required for scheduled medications")
        if self.frequency == Frequency.WEEKLY and not self.days_of_week:
            raise ValueError("Weekly schedules require days_of_week")
        if self.frequency == Frequency.MONTHLY and self.day_of_month is None:
            self.day_of_month = 1
        if self.end_date is not None:
            if self.is_indefinite and "is_indefinite" in self.model_fields_set:
                raise ValueError("is_indefinite cannot be true when an end_date is set")
            self.is_indefinite = False

        expected = EXPECTED_TIME_COUNTS.get(self.frequency)
        if expected and len(self.times) != expected:
            logger.warning(
                "%s typically uses %d time(s), but %d provided",
                self.frequency.value,
                expected,
                len(self.times),
            )
        return self


class ReminderConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    minutes_before: list[int] = Field(default_factory=lambda: [15, 5])
    notification_methods: list[str] = Field(default_factory=lambda: ["browser", "push"])

    @field_validator("minutes_before")
    @classmethod
    def validate_offsets(cls, value: list[int]) -> list[int]:
        if any(offset < 0 for offset in value):
            raise ValueError("Reminder offsets must be non-negative minutes")
        return sorted(set(value), reverse=True)


class GracePeriodConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    medication_type: GraceTier = GraceTier.STANDARD
    override_minutes: int | None = Field(default=None, ge=0, le=480)


class CommandStatusBlock(BaseModel):
    model_config = ConfigDict(extra="forbid")

    current: CommandStatus = CommandStatus.ACTIVE
    last_status_change: datetime = Field(default_factory=_utcnow)
    status_changed_by: str = "system"
    reason: str | None = None


class MedicationCommand(BaseModel):
    """Current authoritative configuration of one prescribed medication."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=new_command_id)
    patient_id: str = Field(min_length=1)
    medication: MedicationDescriptor
    schedule: Schedule
    reminders: ReminderConfig = Field(default_factory=ReminderConfig)
    grace_period: GracePeriodConfig = Field(default_factory=GracePeriodConfig)
    status: CommandStatusBlock = Field(default_factory=CommandStatusBlock)
    version: int = Field(default=1, ge=1)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    created_by: str = "system"

    @model_validator(mode="after")
    def align_prn(self) -> "MedicationCommand":
        if self.schedule.frequency == Frequency.AS_NEEDED and self.grace_period.medication_type != GraceTier.PRN:
            self.grace_period = self.grace_period.model_copy(update={"medication_type": GraceTier.PRN})
        return self

    @property
    def is_prn(self) -> bool:
        return self.schedule.frequency == Frequency.AS_NEEDED

    @property
    def is_active(self) -> bool:
        return self.status.current == CommandStatus.ACTIVE

    @property
    def is_schedulable(self) -> bool:
        return self.is_active and not self.is_prn and self.reminders.enabled


# ----- MedicationEvent -----


class EventData(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    scheduled_time: datetime | None = None
    actual_time: datetime | None = None
    dosage_amount: str | None = None
    actor: str | None = None
    note: str | None = None
    reason: str | None = None
    snooze_minutes: int | None = None
    corrected_action: CorrectedAction | None = None
    original_event_id: str | None = None
    extra: dict[str, Any] = Field(default_factory=dict)


class EventTiming(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    event_timestamp: datetime = Field(default_factory=_utcnow)
    scheduled_for: datetime | None = None
    grace_period_end: datetime | None = None
    grace_period_minutes: int | None = None
    is_on_time: bool | None = None
    minutes_late: int | None = None

    @field_validator("event_timestamp", "scheduled_for", "grace_period_end")
    @classmethod
    def normalize_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None


class MedicationEvent(BaseModel):
    """Immutable fact in a command's history."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(default_factory=new_event_id)
    command_id: str = Field(min_length=1)
    patient_id: str = Field(min_length=1)
    event_type: EventType
    medication_name: str | None = None
    data: EventData = Field(default_factory=EventData)
    timing: EventTiming = Field(default_factory=EventTiming)
    correlation_id: str = Field(default_factory=new_correlation_id)
    created_by: str = "system"

    @property
    def scheduled_for(self) -> datetime | None:
        return self.timing.scheduled_for

    @property
    def occurrence_key(self) -> tuple[str, datetime] | None:
        if self.timing.scheduled_for is None:
            return None
        return (self.command_id, self.timing.scheduled_for)


class DoseOccurrence(BaseModel):
    """Derived view of one (command, scheduled instant) pairing."""

    command_id: str
    scheduled_for: datetime
    state: OccurrenceState
    effective_event_id: str | None = None
    grace_period_end: datetime | None = None
    events: list[MedicationEvent] = Field(default_factory=list)


# ----- Results and envelopes -----


class GenerationResult(BaseModel):
    processed: int = 0
    events_generated: int = 0
    skipped_duplicates: int = 0
    errors: list[str] = Field(default_factory=list)
    per_command: dict[str, int] = Field(default_factory=dict)
    timed_out: bool = False


class SweepResult(BaseModel):
    medications_processed: int = 0
    missed_detected: int = 0
    workflows_executed: int = 0
    notifications_sent: int = 0
    errors: list[str] = Field(default_factory=list)
    timed_out: bool = False


class MedicationDaySummary(BaseModel):
    command_id: str
    medication_name: str
    scheduled: int = 0
    taken: int = 0
    missed: int = 0
    skipped: int = 0


class DailySummary(BaseModel):
    """Read-only roll-up of one patient's local calendar day."""

    patient_id: str
    summary_date: date
    timezone: str
    total_scheduled: int = 0
    taken: int = 0
    missed: int = 0
    skipped: int = 0
    rescheduled: int = 0
    pending: int = 0
    snoozed: int = 0
    adherence_rate: float = 0.0  # percent of scheduled doses taken
    on_time_rate: float = 0.0  # percent of taken doses inside grace
    average_delay_minutes: float = 0.0
    medications: list[MedicationDaySummary] = Field(default_factory=list)


class ActionResponse(BaseModel):
    success: bool
    data: dict[str, Any] | None = None
    error: str | None = None
    error_code: ErrorCode | None = None
    field: str | None = None

    @classmethod
    def ok(cls, data: dict[str, Any]) -> "ActionResponse":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, exc: MedLedgerError) -> "ActionResponse":
        return cls(success=False, error=exc.message, error_code=exc.code, field=exc.field)


class PatternRecord(BaseModel):
    patient_id: str
    command_id: str | None = None
    pattern_type: PatternType
    severity: Severity
    description: str
    adherence_rate: float | None = None
    consecutive_missed: int = 0
    days_below_threshold: int = 0
    window_start: datetime
    window_end: datetime


class AdherenceAlert(BaseModel):
    patient_id: str
    pattern_type: PatternType
    severity: Severity
    description: str
    recipients: list[str] = Field(default_factory=list)
    command_id: str | None = None


# ----- Requests -----


class ScheduleInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    frequency: str = Frequency.DAILY.value
    times: list[str] | None = None
    days_of_week: list[int] = Field(default_factory=list)
    day_of_month: int | None = None
    start_date: date
    end_date: date | None = None
    is_indefinite: bool | None = None
    dosage_amount: str = "1 dose"
    timezone: str | None = None


class CreateCommandRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    patient_id: str = Field(min_length=1)
    medication: MedicationDescriptor
    schedule: ScheduleInput
    reminders: ReminderConfig = Field(default_factory=ReminderConfig)
    grace_override_minutes: int | None = None
    created_by: str = Field(default="system", min_length=1)


class ScheduleUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    expected_version: int = Field(ge=1)
    actor: str = Field(min_length=1)
    frequency: str | None = None
    times: list[str] | None = None
    days_of_week: list[int] | None = None
    day_of_month: int | None = None
    start_date: date | None = None
    end_date: date | None = None
    is_indefinite: bool | None = None
    dosage_amount: str | None = None
    reminders_enabled: bool | None = None
    grace_override_minutes: int | None = None


class StatusChangeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: CommandStatus
    actor: str = Field(min_length=1)
    expected_version: int = Field(ge=1)
    reason: str | None = None


class DoseActionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    command_id: str = Field(min_length=1)
    scheduled_for: datetime
    actor: str = Field(min_length=1)
    note: str | None = None
    actual_time: datetime | None = None
    snooze_minutes: int | None = None


class UndoRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    actor: str = Field(min_length=1)
    reason: str = ""


class CorrectionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    actor: str = Field(min_length=1)
    corrected_action: str
    reason: str = ""
