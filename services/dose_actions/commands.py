from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from shared.config import Settings, get_settings
from shared.contracts.enums import CommandStatus, EventType
from shared.contracts.errors import MedLedgerError, ValidationError
from shared.contracts.models import (
    DEFAULT_TIMES,
    CommandStatusBlock,
    CreateCommandRequest,
    EventData,
    EventTiming,
    GracePeriodConfig,
    MedicationCommand,
    MedicationEvent,
    Schedule,
    ScheduleUpdateRequest,
    StatusChangeRequest,
    normalize_frequency,
)
from shared.contracts.stores import CommandStore, EventLog, validation_error_from
from shared.retry import RetryPolicy
from shared.scheduling.grace_period import classify_medication
from shared.scheduling.timezones import ensure_utc, utcnow
from services.integrations.collaborators import Capability, PermissionChecker, require_capability
from services.integrations.drug_verification import RxNormVerifier
from services.scheduler.occurrence_generator import OccurrenceGenerator


logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    CommandStatus.ACTIVE: {CommandStatus.PAUSED, CommandStatus.HELD, CommandStatus.DISCONTINUED},
    CommandStatus.PAUSED: {CommandStatus.ACTIVE, CommandStatus.DISCONTINUED},
    CommandStatus.HELD: {CommandStatus.ACTIVE, CommandStatus.DISCONTINUED},
    CommandStatus.DISCONTINUED: set(),
}

STATUS_EVENT_TYPES = {
    CommandStatus.ACTIVE: EventType.MEDICATION_RESUMED,
    CommandStatus.PAUSED: EventType.MEDICATION_PAUSED,
    CommandStatus.HELD: EventType.MEDICATION_HELD,
    CommandStatus.DISCONTINUED: EventType.MEDICATION_DISCONTINUED,
}

SCHEDULE_FIELD_PATHS = {
    "frequency": "schedule.frequency",
    "times": "schedule.times",
    "days_of_week": "schedule.days_of_week",
    "day_of_month": "schedule.day_of_month",
    "start_date": "schedule.start_date",
    "end_date": "schedule.end_date",
    "is_indefinite": "schedule.is_indefinite",
    "dosage_amount": "schedule.dosage_amount",
    "reminders_enabled": "reminders.enabled",
    "grace_override_minutes": "grace_period.override_minutes",
}

# Fields an update may explicitly set back to null.
CLEARABLE_FIELDS = {"end_date", "day_of_month", "grace_override_minutes"}


class CommandService:
    """Creates medication commands and applies version-checked edits to them."""

    def __init__(
        self,
        commands: CommandStore,
        events: EventLog,
        generator: OccurrenceGenerator,
        permissions: PermissionChecker,
        verifier: Optional[RxNormVerifier] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        retry: Optional[RetryPolicy] = None,
    ) -> None:
        self.commands = commands
        self.events = events
        self.generator = generator
        self.permissions = permissions
        self.verifier = verifier
        self.settings = settings or get_settings()
        self.clock = clock
        self.retry = retry or RetryPolicy.from_settings(self.settings)

    def _lifecycle_event(
        self,
        command: MedicationCommand,
        event_type: EventType,
        actor: str,
        now: datetime,
        reason: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> MedicationEvent:
        event = MedicationEvent(
            command_id=command.id,
            patient_id=command.patient_id,
            event_type=event_type,
            medication_name=command.medication.name,
            data=EventData(actor=actor, reason=reason, extra={"version": command.version, **(extra or {})}),
            timing=EventTiming(event_timestamp=now),
            created_by=actor,
        )
        return self.retry.call(lambda: self.events.append(event), f"{event_type.value} append")

    def _regenerate(self, command: MedicationCommand, now: datetime) -> int:
        try:
            return self.generator.generate_for_command(command, now)[0]
        except MedLedgerError as exc:
            # The daily run picks the command up again.
            logger.warning("Occurrence generation deferred for %s: %s", command.id, exc.message)
            return 0

    def create_command(self, request: CreateCommandRequest, now: Optional[datetime] = None) -> MedicationCommand:
        now = ensure_utc(now or self.clock())
        require_capability(self.permissions, request.created_by, request.patient_id, Capability.MANAGE_MEDICATIONS)

        frequency = normalize_frequency(request.schedule.frequency)
        medication = request.medication
        verification = None
        if self.verifier is not None:
            match = self.verifier.verify(medication.name)
            verification = match.status.value
            if match.is_verified:
                medication = medication.model_copy(
                    update={
                        "rxcui": medication.rxcui or match.rxcui,
                        "generic_name": medication.generic_name or match.name,
                    }
                )

        try:
            schedule = Schedule(
                frequency=frequency,
                times=request.schedule.times if request.schedule.times else DEFAULT_TIMES[frequency],
                days_of_week=request.schedule.days_of_week,
                day_of_month=request.schedule.day_of_month,
                start_date=request.schedule.start_date,
                end_date=request.schedule.end_date,
                is_indefinite=(
                    request.schedule.is_indefinite
                    if request.schedule.is_indefinite is not None
                    else request.schedule.end_date is None
                ),
                dosage_amount=request.schedule.dosage_amount,
                timezone=request.schedule.timezone or self.settings.DEFAULT_TIMEZONE,
            )
            command = MedicationCommand(
                patient_id=request.patient_id,
                medication=medication,
                schedule=schedule,
                reminders=request.reminders,
                grace_period=GracePeriodConfig(
                    medication_type=classify_medication(medication.name, frequency, medication.generic_name),
                    override_minutes=request.grace_override_minutes,
                ),
                status=CommandStatusBlock(last_status_change=now, status_changed_by=request.created_by),
                created_at=now,
                updated_at=now,
                created_by=request.created_by,
            )
        except PydanticValidationError as exc:
            raise validation_error_from(exc) from exc

        stored = self.retry.call(lambda: self.commands.create(command), "command create")
        self._lifecycle_event(
            stored,
            EventType.MEDICATION_CREATED,
            request.created_by,
            now,
            extra={
                "grace_tier": stored.grace_period.medication_type.value,
                "verification": verification or "skipped",
            },
        )
        created = self._regenerate(stored, now)
        logger.info(
            "Created command %s (%s, %s) with %d scheduled occurrences",
            stored.id,
            stored.medication.name,
            stored.grace_period.medication_type.value,
            created,
        )
        return stored

    def update_schedule(
        self, command_id: str, request: ScheduleUpdateRequest, now: Optional[datetime] = None
    ) -> MedicationCommand:
        now = ensure_utc(now or self.clock())
        current = self.retry.call(lambda: self.commands.get(command_id), "command lookup")
        require_capability(self.permissions, request.actor, current.patient_id, Capability.MANAGE_MEDICATIONS)

        supplied = request.model_dump(exclude_unset=True, exclude={"expected_version", "actor"})
        for name, value in supplied.items():
            if value is None and name not in CLEARABLE_FIELDS:
                raise ValidationError(f"{name} cannot be cleared", field=name)
        changes = {SCHEDULE_FIELD_PATHS[name]: value for name, value in supplied.items()}
        if not changes:
            raise ValidationError("No schedule changes supplied")
        if "end_date" in supplied and "is_indefinite" not in supplied:
            changes["schedule.is_indefinite"] = supplied["end_date"] is None

        if "schedule.frequency" in changes:
            frequency = normalize_frequency(changes["schedule.frequency"])
            changes["schedule.frequency"] = frequency
            changes["grace_period.medication_type"] = classify_medication(
                current.medication.name, frequency, current.medication.generic_name
            )

        updated = self.retry.call(
            lambda: self.commands.patch(command_id, changes, request.expected_version), "command patch"
        )
        self._lifecycle_event(
            updated,
            EventType.MEDICATION_UPDATED,
            request.actor,
            now,
            extra={"changed_fields": sorted(changes)},
        )
        created = self._regenerate(updated, now)
        logger.info("Updated schedule of %s to version %d (%d new occurrences)", command_id, updated.version, created)
        return updated

    def change_status(
        self, command_id: str, request: StatusChangeRequest, now: Optional[datetime] = None
    ) -> MedicationCommand:
        now = ensure_utc(now or self.clock())
        current = self.retry.call(lambda: self.commands.get(command_id), "command lookup")
        require_capability(self.permissions, request.actor, current.patient_id, Capability.MANAGE_MEDICATIONS)

        previous = current.status.current
        if request.status == previous:
            raise ValidationError(f"Medication command is already {previous.value}", field="status")
        if request.status not in ALLOWED_TRANSITIONS[previous]:
            raise ValidationError(
                f"Cannot change status from {previous.value} to {request.status.value}", field="status"
            )

        updated = self.retry.call(
            lambda: self.commands.patch(
                command_id,
                {
                    "status.current": request.status,
                    "status.last_status_change": now,
                    "status.status_changed_by": request.actor,
                    "status.reason": request.reason,
                },
                request.expected_version,
            ),
            "command patch",
        )
        self._lifecycle_event(
            updated,
            STATUS_EVENT_TYPES[request.status],
            request.actor,
            now,
            reason=request.reason,
            extra={"previous_status": previous.value},
        )
        if request.status == CommandStatus.ACTIVE:
            self._regenerate(updated, now)
        logger.info("Command %s moved from %s to %s by %s", command_id, previous.value, request.status.value, request.actor)
        return updated
