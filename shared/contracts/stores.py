from __future__ import annotations

import copy
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping, Optional, Protocol, Sequence

from pydantic import ValidationError as PydanticValidationError

from .enums import SUPERSEDING_EVENT_TYPES, EventType
from .errors import ValidationError
from .models import MedicationCommand, MedicationEvent


IMMUTABLE_COMMAND_PATHS = frozenset({"id", "patient_id", "version", "created_at", "created_by"})


class CommandStore(Protocol):
    """Authoritative, replace-on-write record of medication configuration."""

    def create(self, command: MedicationCommand) -> MedicationCommand: ...

    def get(self, command_id: str) -> MedicationCommand: ...

    def list_for_patient(self, patient_id: str) -> list[MedicationCommand]: ...

    def list_schedulable(self) -> list[MedicationCommand]: ...

    def list_monitored(self) -> list[MedicationCommand]: ...

    def replace(self, command: MedicationCommand, expected_version: int) -> MedicationCommand: ...

    def patch(
        self, command_id: str, changes: Mapping[str, Any], expected_version: int
    ) -> MedicationCommand: ...


class EventLog(Protocol):
    """Append-only history of medication events.

    Appends raise ``DuplicateSuppressed`` for a second ``dose_scheduled`` on
    one occurrence and for a second undo or correction of one original event.
    """

    def append(self, event: MedicationEvent) -> MedicationEvent: ...

    def append_batch(self, events: Sequence[MedicationEvent]) -> list[MedicationEvent]: ...

    def append_unless(
        self, event: MedicationEvent, blocking_types: Iterable[EventType]
    ) -> MedicationEvent: ...

    def get(self, event_id: str) -> MedicationEvent: ...

    def for_occurrence(self, command_id: str, scheduled_for: datetime) -> list[MedicationEvent]: ...

    def correlated(self, event_id: str) -> list[MedicationEvent]: ...

    def scheduled_due(self, now: datetime, lookback: timedelta) -> list[MedicationEvent]: ...

    def query(
        self,
        *,
        patient_id: Optional[str] = None,
        command_id: Optional[str] = None,
        event_types: Optional[Iterable[EventType]] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        scheduled_since: Optional[datetime] = None,
        scheduled_until: Optional[datetime] = None,
    ) -> list[MedicationEvent]: ...


def blocking_event(
    existing: Sequence[MedicationEvent], blocking_types: Iterable[EventType]
) -> Optional[MedicationEvent]:
    """First event of ``blocking_types`` that no superseding event has reverted.

    A ``dose_taken`` that was later undone or corrected no longer blocks, so
    the occurrence can be marked again.
    """
    blocking = {EventType(t) for t in blocking_types}
    superseded = {
        e.data.original_event_id
        for e in existing
        if e.event_type in SUPERSEDING_EVENT_TYPES and e.data.original_event_id
    }
    for event in existing:
        if event.event_type in blocking and event.id not in superseded:
            return event
    return None


def apply_field_paths(command: MedicationCommand, changes: Mapping[str, Any]) -> MedicationCommand:
    """Return a validated copy of ``command`` with dotted-path ``changes`` applied.

    ``{"schedule.times": ["08:00"], "reminders.enabled": False}`` updates only
    the addressed leaves; the whole document is revalidated afterwards.
    """
    document = copy.deepcopy(command.model_dump())
    for path, value in changes.items():
        parts = path.split(".")
        if parts[0] in IMMUTABLE_COMMAND_PATHS:
            raise ValidationError(f"Field {path} cannot be updated", field=path)
        target = document
        for part in parts[:-1]:
            if not isinstance(target.get(part), dict):
                raise ValidationError(f"Unknown field path: {path}", field=path)
            target = target[part]
        if parts[-1] not in target:
            raise ValidationError(f"Unknown field path: {path}", field=path)
        target[parts[-1]] = value

    try:
        return MedicationCommand.model_validate(document)
    except PydanticValidationError as exc:
        raise validation_error_from(exc) from exc


def validation_error_from(exc: PydanticValidationError) -> ValidationError:
    first = exc.errors()[0]
    field = ".".join(str(part) for part in first.get("loc", ())) or None
    message = str(first.get("msg", "Invalid value"))
    if message.startswith("Value error, "):
        message = message[len("Value error, ") :]
    return ValidationError(message, field=field)
