"""SQLAlchemy implementations of the command store and the event log."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Iterable, Iterator, Mapping, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from shared.contracts.enums import CommandStatus, EventType, Frequency
from shared.contracts.errors import (
    DuplicateSuppressed,
    MedLedgerError,
    NotFound,
    StaleVersion,
    StoreError,
    ValidationError,
)
from shared.contracts.models import MedicationCommand, MedicationEvent
from shared.contracts.stores import apply_field_paths, blocking_event
from shared.scheduling.timezones import ensure_utc, utcnow

from .models import MedicationCommandRecord, MedicationEventRecord
from .session import transaction


logger = logging.getLogger(__name__)


@contextmanager
def _translate_errors(description: str) -> Iterator[None]:
    try:
        yield
    except MedLedgerError:
        raise
    except IntegrityError as exc:
        raise DuplicateSuppressed(f"{description}: constraint violation") from exc
    except SQLAlchemyError as exc:
        logger.warning("%s failed: %s", description, exc)
        raise StoreError(f"{description} failed: {exc.__class__.__name__}") from exc


def _command_values(command: MedicationCommand) -> dict[str, Any]:
    return {
        "patient_id": command.patient_id,
        "medication": command.medication.model_dump(mode="json"),
        "schedule": command.schedule.model_dump(mode="json"),
        "reminders": command.reminders.model_dump(mode="json"),
        "grace_period": command.grace_period.model_dump(mode="json"),
        "status": command.status.model_dump(mode="json"),
        "status_current": command.status.current,
        "frequency": command.schedule.frequency.value,
        "version": command.version,
        "created_by": command.created_by,
        "created_at": command.created_at,
        "updated_at": command.updated_at,
    }


def _to_command(record: MedicationCommandRecord) -> MedicationCommand:
    return MedicationCommand.model_validate(
        {
            "id": record.id,
            "patient_id": record.patient_id,
            "medication": record.medication,
            "schedule": record.schedule,
            "reminders": record.reminders,
            "grace_period": record.grace_period,
            "status": record.status,
            "version": record.version,
            "created_at": ensure_utc(record.created_at),
            "updated_at": ensure_utc(record.updated_at),
            "created_by": record.created_by,
        }
    )


def _to_record(event: MedicationEvent) -> MedicationEventRecord:
    return MedicationEventRecord(
        id=event.id,
        command_id=event.command_id,
        patient_id=event.patient_id,
        event_type=event.event_type,
        medication_name=event.medication_name,
        data=event.data.model_dump(mode="json"),
        timing=event.timing.model_dump(mode="json"),
        event_timestamp=event.timing.event_timestamp,
        scheduled_for=event.timing.scheduled_for,
        grace_period_end=event.timing.grace_period_end,
        original_event_id=event.data.original_event_id,
        correlation_id=event.correlation_id,
        created_by=event.created_by,
    )


def _to_event(record: MedicationEventRecord) -> MedicationEvent:
    return MedicationEvent.model_validate(
        {
            "id": record.id,
            "command_id": record.command_id,
            "patient_id": record.patient_id,
            "event_type": record.event_type,
            "medication_name": record.medication_name,
            "data": record.data,
            "timing": record.timing,
            "correlation_id": record.correlation_id,
            "created_by": record.created_by,
        }
    )


class SqlCommandStore:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    def create(self, command: MedicationCommand) -> MedicationCommand:
        with _translate_errors("create command"), transaction(self.session_factory) as session:
            if session.get(MedicationCommandRecord, command.id) is not None:
                raise ValidationError(f"Medication command {command.id} already exists", field="id")
            session.add(MedicationCommandRecord(id=command.id, **_command_values(command)))
        return command

    def get(self, command_id: str) -> MedicationCommand:
        with _translate_errors("get command"), transaction(self.session_factory) as session:
            record = session.get(MedicationCommandRecord, command_id)
            if record is None:
                raise NotFound(f"Medication command {command_id} not found", field="command_id")
            return _to_command(record)

    def _list(self, *criteria) -> list[MedicationCommand]:
        with _translate_errors("list commands"), transaction(self.session_factory) as session:
            stmt = select(MedicationCommandRecord).where(*criteria).order_by(MedicationCommandRecord.id)
            return [_to_command(record) for record in session.scalars(stmt)]

    def list_for_patient(self, patient_id: str) -> list[MedicationCommand]:
        return self._list(MedicationCommandRecord.patient_id == patient_id)

    def list_monitored(self) -> list[MedicationCommand]:
        return self._list(
            MedicationCommandRecord.status_current == CommandStatus.ACTIVE,
            MedicationCommandRecord.frequency != Frequency.AS_NEEDED.value,
        )

    def list_schedulable(self) -> list[MedicationCommand]:
        return [command for command in self.list_monitored() if command.reminders.enabled]

    def replace(self, command: MedicationCommand, expected_version: int) -> MedicationCommand:
        updated = command.model_copy(
            update={"version": expected_version + 1, "updated_at": utcnow()}
        )
        values = _command_values(updated)
        values.pop("created_at")
        values.pop("created_by")

        with _translate_errors("replace command"), transaction(self.session_factory) as session:
            result = session.execute(
                update(MedicationCommandRecord)
                .where(
                    MedicationCommandRecord.id == command.id,
                    MedicationCommandRecord.version == expected_version,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                current = session.get(MedicationCommandRecord, command.id)
                if current is None:
                    raise NotFound(f"Medication command {command.id} not found", field="command_id")
                raise StaleVersion(
                    f"Medication command {command.id} is at version {current.version}, "
                    f"expected {expected_version}",
                    field="version",
                )
        return updated

    def patch(
        self, command_id: str, changes: Mapping[str, Any], expected_version: int
    ) -> MedicationCommand:
        current = self.get(command_id)
        if current.version != expected_version:
            raise StaleVersion(
                f"Medication command {command_id} is at version {current.version}, "
                f"expected {expected_version}",
                field="version",
            )
        return self.replace(apply_field_paths(current, changes), expected_version)


class SqlEventLog:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    def append(self, event: MedicationEvent) -> MedicationEvent:
        with _translate_errors(f"append {event.event_type.value}"), transaction(self.session_factory) as session:
            session.add(_to_record(event))
        return event

    def append_batch(self, events: Sequence[MedicationEvent]) -> list[MedicationEvent]:
        if not events:
            return []
        with _translate_errors("append batch"), transaction(self.session_factory) as session:
            session.add_all([_to_record(event) for event in events])
        return list(events)

    def append_unless(
        self, event: MedicationEvent, blocking_types: Iterable[EventType]
    ) -> MedicationEvent:
        if event.timing.scheduled_for is None:
            raise ValidationError("Conditional appends require scheduled_for", field="scheduled_for")

        with _translate_errors(f"append {event.event_type.value}"), transaction(self.session_factory) as session:
            # Row locks on the occurrence serialize concurrent writers on PostgreSQL.
            stmt = (
                select(MedicationEventRecord)
                .where(
                    MedicationEventRecord.command_id == event.command_id,
                    MedicationEventRecord.scheduled_for == event.timing.scheduled_for,
                )
                .order_by(MedicationEventRecord.event_timestamp)
                .with_for_update()
            )
            existing = [_to_event(record) for record in session.scalars(stmt)]
            blocker = blocking_event(existing, blocking_types)
            if blocker is not None:
                raise DuplicateSuppressed(
                    f"{event.event_type.value} suppressed: occurrence already has "
                    f"{blocker.event_type.value} ({blocker.id})"
                )
            session.add(_to_record(event))
        return event

    def get(self, event_id: str) -> MedicationEvent:
        with _translate_errors("get event"), transaction(self.session_factory) as session:
            record = session.get(MedicationEventRecord, event_id)
            if record is None:
                raise NotFound(f"Event {event_id} not found", field="event_id")
            return _to_event(record)

    def _select(self, *criteria, order_by=None) -> list[MedicationEvent]:
        with _translate_errors("query events"), transaction(self.session_factory) as session:
            stmt = (
                select(MedicationEventRecord)
                .where(*criteria)
                .order_by(
                    order_by if order_by is not None else MedicationEventRecord.event_timestamp,
                    MedicationEventRecord.recorded_at,
                )
            )
            return [_to_event(record) for record in session.scalars(stmt)]

    def for_occurrence(self, command_id: str, scheduled_for: datetime) -> list[MedicationEvent]:
        return self._select(
            MedicationEventRecord.command_id == command_id,
            MedicationEventRecord.scheduled_for == ensure_utc(scheduled_for),
        )

    def correlated(self, event_id: str) -> list[MedicationEvent]:
        return self._select(MedicationEventRecord.original_event_id == event_id)

    def scheduled_due(self, now: datetime, lookback: timedelta) -> list[MedicationEvent]:
        now = ensure_utc(now)
        return self._select(
            MedicationEventRecord.event_type == EventType.DOSE_SCHEDULED,
            MedicationEventRecord.grace_period_end <= now,
            MedicationEventRecord.scheduled_for >= now - lookback,
            order_by=MedicationEventRecord.scheduled_for,
        )

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
    ) -> list[MedicationEvent]:
        criteria = []
        if patient_id is not None:
            criteria.append(MedicationEventRecord.patient_id == patient_id)
        if command_id is not None:
            criteria.append(MedicationEventRecord.command_id == command_id)
        if event_types is not None:
            criteria.append(MedicationEventRecord.event_type.in_([EventType(t) for t in event_types]))
        if since is not None:
            criteria.append(MedicationEventRecord.event_timestamp >= ensure_utc(since))
        if until is not None:
            criteria.append(MedicationEventRecord.event_timestamp < ensure_utc(until))
        if scheduled_since is not None:
            criteria.append(MedicationEventRecord.scheduled_for >= ensure_utc(scheduled_since))
        if scheduled_until is not None:
            criteria.append(MedicationEventRecord.scheduled_for < ensure_utc(scheduled_until))
        return self._select(*criteria)
