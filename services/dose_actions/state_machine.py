"""Dose actions, undo and correction over the event log.

An occurrence's state is never stored; it is derived from the events that
share its ``(command_id, scheduled_for)`` key. Undo and correction append a
superseding event that references the original through
``data.original_event_id`` and always outranks it, whatever the timestamps.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from shared.config import Settings, get_settings
from shared.contracts.enums import (
    SUPERSEDING_EVENT_TYPES,
    TERMINAL_EVENT_TYPES,
    CommandStatus,
    CorrectedAction,
    EventType,
    OccurrenceState,
)
from shared.contracts.errors import DuplicateSuppressed, ExpiredWindow, ValidationError
from shared.contracts.models import (
    DoseOccurrence,
    EventData,
    EventTiming,
    MedicationCommand,
    MedicationEvent,
    new_correlation_id,
)
from shared.contracts.stores import CommandStore, EventLog
from shared.retry import RetryPolicy
from shared.scheduling.grace_period import GracePeriodResolver, build_resolver
from shared.scheduling.timezones import ensure_utc, utcnow
from services.integrations.collaborators import Capability, PermissionChecker, require_capability
from services.scheduler.occurrence_generator import is_scheduled_instant


logger = logging.getLogger(__name__)

STATE_BY_EVENT_TYPE = {
    EventType.DOSE_SCHEDULED: OccurrenceState.SCHEDULED,
    EventType.DOSE_TAKEN: OccurrenceState.TAKEN,
    EventType.DOSE_MISSED: OccurrenceState.MISSED,
    EventType.DOSE_SKIPPED: OccurrenceState.SKIPPED,
    EventType.DOSE_SNOOZED: OccurrenceState.SNOOZED,
    EventType.DOSE_MISSED_CORRECTED: OccurrenceState.MISSED,
    EventType.DOSE_SKIPPED_CORRECTED: OccurrenceState.SKIPPED,
    EventType.DOSE_RESCHEDULED: OccurrenceState.RESCHEDULED,
}

CORRECTION_EVENT_TYPES = {
    CorrectedAction.MISSED: EventType.DOSE_MISSED_CORRECTED,
    CorrectedAction.SKIPPED: EventType.DOSE_SKIPPED_CORRECTED,
    CorrectedAction.RESCHEDULED: EventType.DOSE_RESCHEDULED,
}

# Events that close an occurrence to further patient actions.
ACTION_BLOCKING_TYPES = frozenset(
    {
        EventType.DOSE_TAKEN,
        EventType.DOSE_SKIPPED,
        EventType.DOSE_SKIPPED_CORRECTED,
        EventType.DOSE_RESCHEDULED,
    }
)
MISSED_BLOCKING_TYPES = TERMINAL_EVENT_TYPES | {
    EventType.DOSE_MISSED_CORRECTED,
    EventType.DOSE_SKIPPED_CORRECTED,
    EventType.DOSE_RESCHEDULED,
}

MARKABLE_STATES = {
    EventType.DOSE_TAKEN: {OccurrenceState.SCHEDULED, OccurrenceState.SNOOZED, OccurrenceState.MISSED},
    EventType.DOSE_SKIPPED: {OccurrenceState.SCHEDULED, OccurrenceState.SNOOZED, OccurrenceState.MISSED},
    EventType.DOSE_SNOOZED: {OccurrenceState.SCHEDULED, OccurrenceState.SNOOZED},
}

FUTURE_ACTION_TOLERANCE = timedelta(minutes=1)


def _ordering_key(event: MedicationEvent, by_id: Dict[str, MedicationEvent]) -> Tuple[datetime, int]:
    timestamp = event.timing.event_timestamp
    if event.event_type in SUPERSEDING_EVENT_TYPES:
        original = by_id.get(event.data.original_event_id or "")
        if original is not None and original.timing.event_timestamp >= timestamp:
            # Clamped onto the original's timestamp; rank keeps it after the original.
            return original.timing.event_timestamp, 1
    return timestamp, 0


def derive_occurrence(
    command_id: str, scheduled_for: datetime, events: Iterable[MedicationEvent]
) -> DoseOccurrence:
    """Fold an occurrence's events into its current state."""
    scheduled_for = ensure_utc(scheduled_for)
    relevant = [
        e
        for e in events
        if e.event_type in STATE_BY_EVENT_TYPE or e.event_type == EventType.DOSE_TAKEN_UNDONE
    ]
    by_id = {e.id: e for e in relevant}
    # Remaining ties keep log order.
    ordered = [
        e for _, e in sorted(enumerate(relevant), key=lambda item: (_ordering_key(item[1], by_id), item[0]))
    ]

    state = OccurrenceState.SCHEDULED
    effective: Optional[MedicationEvent] = None
    grace_end = None
    state_before: Dict[str, OccurrenceState] = {}

    for event in ordered:
        if event.event_type == EventType.DOSE_SCHEDULED:
            grace_end = event.timing.grace_period_end
            if effective is None:
                effective = event
            continue

        state_before[event.id] = state
        if event.event_type == EventType.DOSE_TAKEN_UNDONE:
            prior = state_before.get(event.data.original_event_id or "", OccurrenceState.SCHEDULED)
            state = OccurrenceState.MISSED if prior == OccurrenceState.MISSED else OccurrenceState.SCHEDULED
        else:
            state = STATE_BY_EVENT_TYPE[event.event_type]
        effective = event

    return DoseOccurrence(
        command_id=command_id,
        scheduled_for=scheduled_for,
        state=state,
        effective_event_id=effective.id if effective else None,
        grace_period_end=grace_end,
        events=ordered,
    )


def group_occurrences(events: Iterable[MedicationEvent]) -> List[DoseOccurrence]:
    grouped: Dict[Tuple[str, datetime], List[MedicationEvent]] = {}
    for event in events:
        key = event.occurrence_key
        if key is None:
            continue
        grouped.setdefault(key, []).append(event)
    return [
        derive_occurrence(command_id, scheduled_for, occurrence_events)
        for (command_id, scheduled_for), occurrence_events in sorted(grouped.items(), key=lambda item: item[0][1])
    ]


def lateness(scheduled_for: datetime, actual: datetime, grace_end: datetime) -> Tuple[bool, int]:
    """``(is_on_time, minutes_late)`` for a dose taken at ``actual``."""
    minutes_late = max(0, math.floor((actual - scheduled_for).total_seconds() / 60))
    return actual <= grace_end, minutes_late


class DoseStateMachine:
    def __init__(
        self,
        commands: CommandStore,
        events: EventLog,
        permissions: PermissionChecker,
        resolver: Optional[GracePeriodResolver] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        retry: Optional[RetryPolicy] = None,
    ) -> None:
        self.commands = commands
        self.events = events
        self.permissions = permissions
        self.settings = settings or get_settings()
        self.resolver = resolver or build_resolver(self.settings)
        self.clock = clock
        self.retry = retry or RetryPolicy.from_settings(self.settings)

    # ----- reads -----

    def _command(self, command_id: str) -> MedicationCommand:
        return self.retry.call(lambda: self.commands.get(command_id), "command lookup")

    def _event(self, event_id: str) -> MedicationEvent:
        return self.retry.call(lambda: self.events.get(event_id), "event lookup")

    def occurrence_state(self, command_id: str, scheduled_for: datetime) -> DoseOccurrence:
        scheduled_for = ensure_utc(scheduled_for)
        events = self.retry.call(
            lambda: self.events.for_occurrence(command_id, scheduled_for), "occurrence lookup"
        )
        return derive_occurrence(command_id, scheduled_for, events)

    def occurrences_for_command(
        self, command_id: str, since: Optional[datetime] = None, until: Optional[datetime] = None
    ) -> List[DoseOccurrence]:
        events = self.retry.call(
            lambda: self.events.query(command_id=command_id, scheduled_since=since, scheduled_until=until),
            "occurrence query",
        )
        return group_occurrences(events)

    # ----- actions -----

    def mark_taken(
        self,
        command_id: str,
        scheduled_for: datetime,
        actor: str,
        note: Optional[str] = None,
        actual_time: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> MedicationEvent:
        return self._mark(EventType.DOSE_TAKEN, command_id, scheduled_for, actor, note, actual_time, now)

    def mark_skipped(
        self,
        command_id: str,
        scheduled_for: datetime,
        actor: str,
        note: Optional[str] = None,
        actual_time: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> MedicationEvent:
        return self._mark(EventType.DOSE_SKIPPED, command_id, scheduled_for, actor, note, actual_time, now)

    def mark_snoozed(
        self,
        command_id: str,
        scheduled_for: datetime,
        actor: str,
        note: Optional[str] = None,
        actual_time: Optional[datetime] = None,
        snooze_minutes: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> MedicationEvent:
        minutes = self.settings.DEFAULT_SNOOZE_MINUTES if snooze_minutes is None else snooze_minutes
        if not 1 <= minutes <= self.settings.MAX_SNOOZE_MINUTES:
            raise ValidationError(
                f"Snooze must be between 1 and {self.settings.MAX_SNOOZE_MINUTES} minutes",
                field="snooze_minutes",
            )
        return self._mark(
            EventType.DOSE_SNOOZED, command_id, scheduled_for, actor, note, actual_time, now, minutes
        )

    def _mark(
        self,
        event_type: EventType,
        command_id: str,
        scheduled_for: datetime,
        actor: str,
        note: Optional[str],
        actual_time: Optional[datetime],
        now: Optional[datetime],
        snooze_minutes: Optional[int] = None,
    ) -> MedicationEvent:
        now = ensure_utc(now or self.clock())
        scheduled_for = ensure_utc(scheduled_for)
        actual = ensure_utc(actual_time) if actual_time is not None else now
        if actual > now + FUTURE_ACTION_TOLERANCE:
            raise ValidationError("actual_time cannot be in the future", field="actual_time")

        command = self._command(command_id)
        require_capability(self.permissions, actor, command.patient_id, Capability.RECORD_DOSES)
        if command.status.current == CommandStatus.DISCONTINUED:
            raise ValidationError(f"Medication command {command_id} is discontinued", field="command_id")

        occurrence = self.occurrence_state(command_id, scheduled_for)
        has_scheduled = any(e.event_type == EventType.DOSE_SCHEDULED for e in occurrence.events)
        if not command.is_prn and not has_scheduled and not is_scheduled_instant(command.schedule, scheduled_for):
            raise ValidationError(
                f"{scheduled_for.isoformat()} is not a scheduled time for command {command_id}",
                field="scheduled_for",
            )
        if occurrence.state not in MARKABLE_STATES[event_type]:
            raise ValidationError(
                f"Cannot record {event_type.value} for an occurrence that is {occurrence.state.value}",
                field="scheduled_for",
            )

        if command.is_prn:
            grace_end, grace_minutes = scheduled_for, 0
            is_on_time, minutes_late = True, 0
        else:
            grace = self.resolver.resolve(
                command.grace_period.medication_type,
                scheduled_for,
                command.schedule.timezone,
                command.grace_period.override_minutes,
            )
            grace_end, grace_minutes = grace.end, grace.minutes
            is_on_time, minutes_late = lateness(scheduled_for, actual, grace_end)

        scheduled_event = next(
            (e for e in occurrence.events if e.event_type == EventType.DOSE_SCHEDULED), None
        )
        event = MedicationEvent(
            command_id=command_id,
            patient_id=command.patient_id,
            event_type=event_type,
            medication_name=command.medication.name,
            data=EventData(
                scheduled_time=scheduled_for,
                actual_time=actual,
                dosage_amount=command.schedule.dosage_amount,
                actor=actor,
                note=note,
                snooze_minutes=snooze_minutes,
                extra={"previous_state": occurrence.state.value},
            ),
            timing=EventTiming(
                event_timestamp=now,
                scheduled_for=scheduled_for,
                grace_period_end=grace_end,
                grace_period_minutes=grace_minutes,
                is_on_time=is_on_time,
                minutes_late=minutes_late,
            ),
            correlation_id=scheduled_event.correlation_id if scheduled_event else new_correlation_id(),
            created_by=actor,
        )
        stored = self.retry.call(
            lambda: self.events.append_unless(event, ACTION_BLOCKING_TYPES), f"{event_type.value} append"
        )
        logger.info(
            "Recorded %s for %s at %s by %s (on_time=%s, minutes_late=%s)",
            event_type.value,
            command_id,
            scheduled_for.isoformat(),
            actor,
            is_on_time,
            minutes_late,
        )
        return stored

    # ----- undo / correction -----

    def _already_superseded(self, event: MedicationEvent) -> Optional[MedicationEvent]:
        related = self.retry.call(lambda: self.events.correlated(event.id), "correlated lookup")
        return next((e for e in related if e.event_type in SUPERSEDING_EVENT_TYPES), None)

    def _append_superseding(self, event: MedicationEvent, description: str) -> MedicationEvent:
        original_id = event.data.original_event_id
        try:
            return self.retry.call(lambda: self.events.append(event), description)
        except DuplicateSuppressed as exc:
            # Lost the race to a concurrent undo or correction of the same event.
            raise ValidationError(
                f"Event {original_id} has already been undone or corrected", field="event_id"
            ) from exc

    def undo(
        self, event_id: str, actor: str, reason: str, now: Optional[datetime] = None
    ) -> MedicationEvent:
        now = ensure_utc(now or self.clock())
        original = self._event(event_id)
        if original.event_type != EventType.DOSE_TAKEN:
            raise ValidationError("Only dose_taken events can be undone", field="event_id")

        command = self._command(original.command_id)
        require_capability(self.permissions, actor, command.patient_id, Capability.RECORD_DOSES)

        window = timedelta(seconds=self.settings.UNDO_WINDOW_SECONDS)
        elapsed = now - original.timing.event_timestamp
        if elapsed > window:
            raise ExpiredWindow(
                f"Undo window of {self.settings.UNDO_WINDOW_SECONDS} seconds has expired "
                f"({int(elapsed.total_seconds())}s elapsed). Use the correction workflow to amend this dose.",
                field="event_id",
            )
        if not (reason or "").strip():
            raise ValidationError("A reason is required to undo a dose", field="reason")
        if self._already_superseded(original) is not None:
            raise ValidationError(f"Event {event_id} has already been undone or corrected", field="event_id")

        event = MedicationEvent(
            command_id=original.command_id,
            patient_id=original.patient_id,
            event_type=EventType.DOSE_TAKEN_UNDONE,
            medication_name=original.medication_name,
            data=EventData(
                scheduled_time=original.scheduled_for,
                actor=actor,
                reason=reason.strip(),
                original_event_id=original.id,
                extra={"elapsed_seconds": round(max(elapsed.total_seconds(), 0.0), 3)},
            ),
            timing=EventTiming(
                event_timestamp=now,
                scheduled_for=original.scheduled_for,
                grace_period_end=original.timing.grace_period_end,
                grace_period_minutes=original.timing.grace_period_minutes,
            ),
            correlation_id=original.correlation_id,
            created_by=actor,
        )
        stored = self._append_superseding(event, "undo append")
        logger.info("Undid dose_taken %s for %s by %s", original.id, original.command_id, actor)
        return stored

    def correct(
        self,
        event_id: str,
        corrected_action: CorrectedAction | str,
        reason: str,
        actor: str,
        now: Optional[datetime] = None,
    ) -> MedicationEvent:
        now = ensure_utc(now or self.clock())
        try:
            action = CorrectedAction(corrected_action)
        except ValueError:
            raise ValidationError(
                f"corrected_action must be one of: {', '.join(a.value for a in CorrectedAction)}",
                field="corrected_action",
            ) from None
        if not (reason or "").strip():
            raise ValidationError("A reason is required to correct a dose record", field="reason")

        original = self._event(event_id)
        if original.event_type not in TERMINAL_EVENT_TYPES:
            raise ValidationError(
                "Only taken, missed or skipped events can be corrected", field="event_id"
            )

        command = self._command(original.command_id)
        require_capability(self.permissions, actor, command.patient_id, Capability.RECORD_DOSES)

        elapsed = now - original.timing.event_timestamp
        if original.event_type == EventType.DOSE_TAKEN and elapsed <= timedelta(
            seconds=self.settings.UNDO_WINDOW_SECONDS
        ):
            raise ValidationError(
                "This dose is still inside the undo window; undo it instead of correcting",
                field="event_id",
            )
        limit_hours = self.settings.CORRECTION_WINDOW_HOURS
        if limit_hours > 0 and elapsed > timedelta(hours=limit_hours):
            raise ExpiredWindow(
                f"Dose records can only be corrected within {limit_hours} hours", field="event_id"
            )
        if STATE_BY_EVENT_TYPE[original.event_type].value == action.value:
            raise ValidationError(
                f"Event {event_id} is already recorded as {action.value}", field="corrected_action"
            )
        if self._already_superseded(original) is not None:
            raise ValidationError(f"Event {event_id} has already been undone or corrected", field="event_id")
        occurrence = self.occurrence_state(original.command_id, original.scheduled_for)
        if occurrence.effective_event_id != original.id:
            raise ValidationError(
                f"Event {event_id} no longer determines this dose (now {occurrence.state.value}); "
                f"correct {occurrence.effective_event_id} instead",
                field="event_id",
            )

        event = MedicationEvent(
            command_id=original.command_id,
            patient_id=original.patient_id,
            event_type=CORRECTION_EVENT_TYPES[action],
            medication_name=original.medication_name,
            data=EventData(
                scheduled_time=original.scheduled_for,
                actor=actor,
                reason=reason.strip(),
                corrected_action=action,
                original_event_id=original.id,
                extra={"original_event_type": original.event_type.value},
            ),
            timing=EventTiming(
                event_timestamp=now,
                scheduled_for=original.scheduled_for,
                grace_period_end=original.timing.grace_period_end,
                grace_period_minutes=original.timing.grace_period_minutes,
            ),
            correlation_id=original.correlation_id,
            created_by=actor,
        )
        stored = self._append_superseding(event, "correction append")
        logger.info(
            "Corrected %s %s to %s for %s by %s",
            original.event_type.value,
            original.id,
            action.value,
            original.command_id,
            actor,
        )
        return stored
