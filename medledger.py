from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from shared.config import Settings, get_settings
from shared.contracts.enums import SUPERSEDING_EVENT_TYPES, CommandStatus, EventType
from shared.contracts.errors import DuplicateSuppressed, NotFound, StaleVersion, ValidationError
from shared.contracts.models import AdherenceAlert, MedicationCommand, MedicationEvent
from shared.contracts.stores import apply_field_paths, blocking_event
from shared.retry import RetryPolicy
from shared.scheduling.grace_period import build_resolver
from shared.scheduling.timezones import ensure_utc, utcnow
from services.adherence.pattern_detector import AdherencePatternDetector
from services.dose_actions.commands import CommandService
from services.dose_actions.state_machine import DoseStateMachine
from services.integrations.drug_verification import RxNormVerifier
from services.scheduler.missed_detector import MissedDoseDetector
from services.scheduler.occurrence_generator import OccurrenceGenerator


OccurrenceKey = Tuple[str, datetime]


@dataclass
class InMemoryCommandStore:
    """Thread-safe command store with compare-and-swap replacement."""

    commands: Dict[str, MedicationCommand] = field(default_factory=dict)
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def create(self, command: MedicationCommand) -> MedicationCommand:
        with self._lock:
            if command.id in self.commands:
                raise ValidationError(f"Medication command {command.id} already exists", field="id")
            self.commands[command.id] = command
        return command

    def get(self, command_id: str) -> MedicationCommand:
        with self._lock:
            command = self.commands.get(command_id)
        if command is None:
            raise NotFound(f"Medication command {command_id} not found", field="command_id")
        return command

    def list_for_patient(self, patient_id: str) -> List[MedicationCommand]:
        with self._lock:
            return [c for c in self.commands.values() if c.patient_id == patient_id]

    def list_monitored(self) -> List[MedicationCommand]:
        with self._lock:
            return [c for c in self.commands.values() if c.status.current == CommandStatus.ACTIVE and not c.is_prn]

    def list_schedulable(self) -> List[MedicationCommand]:
        return [c for c in self.list_monitored() if c.reminders.enabled]

    def replace(self, command: MedicationCommand, expected_version: int) -> MedicationCommand:
        with self._lock:
            current = self.get(command.id)
            if current.version != expected_version:
                raise StaleVersion(
                    f"Medication command {command.id} is at version {current.version}, expected {expected_version}",
                    field="version",
                )
            updated = command.model_copy(update={"version": expected_version + 1, "updated_at": utcnow()})
            self.commands[command.id] = updated
        return updated

    def patch(self, command_id: str, changes: Mapping[str, Any], expected_version: int) -> MedicationCommand:
        with self._lock:
            current = self.get(command_id)
            if current.version != expected_version:
                raise StaleVersion(
                    f"Medication command {command_id} is at version {current.version}, expected {expected_version}",
                    field="version",
                )
            return self.replace(apply_field_paths(current, changes), expected_version)


@dataclass
class InMemoryEventLog:
    """Append-only event list with uniqueness indexes on scheduled occurrences
    and on the originals that undo or correction events supersede."""

    events: List[MedicationEvent] = field(default_factory=list)
    _ids: Set[str] = field(default_factory=set, repr=False)
    _scheduled: Set[OccurrenceKey] = field(default_factory=set, repr=False)
    _superseded: Set[str] = field(default_factory=set, repr=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def _check(self, event: MedicationEvent, pending_keys: Set[Any]) -> None:
        # pending_keys holds occurrence keys and superseded ids of the current batch.
        if event.id in self._ids:
            raise DuplicateSuppressed(f"Event {event.id} already recorded")
        if event.event_type == EventType.DOSE_SCHEDULED:
            key = event.occurrence_key
            if key in self._scheduled or key in pending_keys:
                raise DuplicateSuppressed(
                    f"Occurrence {event.command_id} at {event.scheduled_for.isoformat()} is already scheduled"
                )
            pending_keys.add(key)
        original_id = event.data.original_event_id
        if event.event_type in SUPERSEDING_EVENT_TYPES and original_id:
            if original_id in self._superseded or original_id in pending_keys:
                raise DuplicateSuppressed(f"Event {original_id} has already been undone or corrected")
            pending_keys.add(original_id)

    def _store(self, event: MedicationEvent) -> None:
        self.events.append(event)
        self._ids.add(event.id)
        if event.event_type == EventType.DOSE_SCHEDULED:
            self._scheduled.add(event.occurrence_key)
        if event.event_type in SUPERSEDING_EVENT_TYPES and event.data.original_event_id:
            self._superseded.add(event.data.original_event_id)

    def append(self, event: MedicationEvent) -> MedicationEvent:
        with self._lock:
            self._check(event, set())
            self._store(event)
        return event

    def append_batch(self, events: Sequence[MedicationEvent]) -> List[MedicationEvent]:
        with self._lock:
            pending: Set[Any] = set()
            for event in events:
                self._check(event, pending)
            for event in events:
                self._store(event)
        return list(events)

    def append_unless(self, event: MedicationEvent, blocking_types: Iterable[EventType]) -> MedicationEvent:
        if event.timing.scheduled_for is None:
            raise ValidationError("Conditional appends require scheduled_for", field="scheduled_for")
        with self._lock:
            blocker = blocking_event(self.for_occurrence(event.command_id, event.timing.scheduled_for), blocking_types)
            if blocker is not None:
                raise DuplicateSuppressed(
                    f"{event.event_type.value} suppressed: occurrence already has "
                    f"{blocker.event_type.value} ({blocker.id})"
                )
            self._check(event, set())
            self._store(event)
        return event

    def get(self, event_id: str) -> MedicationEvent:
        with self._lock:
            for event in self.events:
                if event.id == event_id:
                    return event
        raise NotFound(f"Event {event_id} not found", field="event_id")

    def _sorted(self, matches: List[MedicationEvent]) -> List[MedicationEvent]:
        return sorted(matches, key=lambda e: e.timing.event_timestamp)

    def for_occurrence(self, command_id: str, scheduled_for: datetime) -> List[MedicationEvent]:
        key = (command_id, ensure_utc(scheduled_for))
        with self._lock:
            return self._sorted([e for e in self.events if e.occurrence_key == key])

    def correlated(self, event_id: str) -> List[MedicationEvent]:
        with self._lock:
            return self._sorted([e for e in self.events if e.data.original_event_id == event_id])

    def scheduled_due(self, now: datetime, lookback: timedelta) -> List[MedicationEvent]:
        now = ensure_utc(now)
        with self._lock:
            due = [
                e
                for e in self.events
                if e.event_type == EventType.DOSE_SCHEDULED
                and e.timing.grace_period_end is not None
                and e.timing.grace_period_end <= now
                and e.scheduled_for >= now - lookback
            ]
        return sorted(due, key=lambda e: e.scheduled_for)

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
    ) -> List[MedicationEvent]:
        types = {EventType(t) for t in event_types} if event_types is not None else None

        def matches(e: MedicationEvent) -> bool:
            if patient_id is not None and e.patient_id != patient_id:
                return False
            if command_id is not None and e.command_id != command_id:
                return False
            if types is not None and e.event_type not in types:
                return False
            if since is not None and e.timing.event_timestamp < ensure_utc(since):
                return False
            if until is not None and e.timing.event_timestamp >= ensure_utc(until):
                return False
            if scheduled_since is not None and (e.scheduled_for is None or e.scheduled_for < ensure_utc(scheduled_since)):
                return False
            if scheduled_until is not None and (e.scheduled_for is None or e.scheduled_for >= ensure_utc(scheduled_until)):
                return False
            return True

        with self._lock:
            return self._sorted([e for e in self.events if matches(e)])


@dataclass
class AllowAllPermissions:
    """Grants every capability unless the actor is listed in ``denied``."""

    recipients: Dict[str, List[str]] = field(default_factory=dict)
    denied: Set[str] = field(default_factory=set)

    def has_capability(self, actor_id: str, patient_id: str, capability: str) -> bool:
        return actor_id not in self.denied

    def alert_recipients(self, patient_id: str) -> List[str]:
        return list(self.recipients.get(patient_id, [f"family:{patient_id}"]))


@dataclass
class FakeNotifier:
    sent: List[AdherenceAlert] = field(default_factory=list)
    accept: bool = True

    def dispatch(self, alert: AdherenceAlert) -> bool:
        if self.accept:
            self.sent.append(alert)
        return self.accept


class MedLedgerFlow:
    """Wires stores, collaborators and services into one object."""

    def __init__(
        self,
        commands=None,
        events=None,
        permissions=None,
        notifier=None,
        verifier: Optional[RxNormVerifier] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings or get_settings()
        self.commands = commands if commands is not None else InMemoryCommandStore()
        self.events = events if events is not None else InMemoryEventLog()
        self.permissions = permissions if permissions is not None else AllowAllPermissions()
        self.notifier = notifier if notifier is not None else FakeNotifier()

        retry = RetryPolicy.from_settings(self.settings, sleep=sleep)
        resolver = build_resolver(self.settings)
        self.generator = OccurrenceGenerator(
            self.commands, self.events, resolver=resolver, settings=self.settings, clock=clock, retry=retry
        )
        self.state_machine = DoseStateMachine(
            self.commands, self.events, self.permissions, resolver=resolver, settings=self.settings, clock=clock, retry=retry
        )
        self.patterns = AdherencePatternDetector(
            self.commands, self.events, settings=self.settings, clock=clock, retry=retry
        )
        self.detector = MissedDoseDetector(
            self.commands,
            self.events,
            self.patterns,
            self.permissions,
            self.notifier,
            resolver=resolver,
            settings=self.settings,
            clock=clock,
            retry=retry,
        )
        self.command_service = CommandService(
            self.commands,
            self.events,
            self.generator,
            self.permissions,
            verifier=verifier,
            settings=self.settings,
            clock=clock,
            retry=retry,
        )


def create_sql_flow(
    database_url: Optional[str] = None,
    settings: Optional[Settings] = None,
    verify_drugs: bool = True,
) -> MedLedgerFlow:
    """Flow backed by the SQL stores configured in ``Settings``."""
    from app.db.repositories import SqlCommandStore, SqlEventLog
    from app.db.session import build_engine, build_session_factory, init_schema

    settings = settings or get_settings()
    engine = build_engine(database_url or settings.DATABASE_URL)
    init_schema(engine)
    factory = build_session_factory(engine)
    return MedLedgerFlow(
        commands=SqlCommandStore(factory),
        events=SqlEventLog(factory),
        verifier=RxNormVerifier(settings=settings) if verify_drugs else None,
        settings=settings,
    )
