from __future__ import annotations

import logging
import math
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from shared.config import Settings, get_settings
from shared.contracts.enums import EventType, OccurrenceState
from shared.contracts.errors import DuplicateSuppressed, MedLedgerError, NotFound
from shared.contracts.models import (
    AdherenceAlert,
    EventData,
    EventTiming,
    MedicationCommand,
    MedicationEvent,
    SweepResult,
)
from shared.contracts.stores import CommandStore, EventLog
from shared.retry import RetryPolicy
from shared.scheduling.grace_period import GracePeriodResolver, build_resolver
from shared.scheduling.timezones import ensure_utc, utcnow
from services.adherence.pattern_detector import AdherencePatternDetector
from services.dose_actions.state_machine import MISSED_BLOCKING_TYPES, derive_occurrence
from services.integrations.collaborators import NotificationDispatcher, PermissionChecker
from services.scheduler.occurrence_generator import is_scheduled_instant


logger = logging.getLogger(__name__)

OPEN_STATES = {OccurrenceState.SCHEDULED, OccurrenceState.SNOOZED}


class MissedDoseDetector:
    """Marks overdue occurrences as missed and hands new misses to pattern detection."""

    def __init__(
        self,
        commands: CommandStore,
        events: EventLog,
        pattern_detector: AdherencePatternDetector,
        permissions: PermissionChecker,
        notifier: NotificationDispatcher,
        resolver: Optional[GracePeriodResolver] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        timer: Callable[[], float] = time.monotonic,
        retry: Optional[RetryPolicy] = None,
    ) -> None:
        self.commands = commands
        self.events = events
        self.pattern_detector = pattern_detector
        self.permissions = permissions
        self.notifier = notifier
        self.settings = settings or get_settings()
        self.resolver = resolver or build_resolver(self.settings)
        self.clock = clock
        self.timer = timer
        self.retry = retry or RetryPolicy.from_settings(self.settings)

    def _command(self, command_id: str, cache: Dict[str, Optional[MedicationCommand]]) -> Optional[MedicationCommand]:
        if command_id not in cache:
            try:
                cache[command_id] = self.retry.call(lambda: self.commands.get(command_id), "command lookup")
            except NotFound:
                logger.warning("Scheduled events reference unknown command %s", command_id)
                cache[command_id] = None
        return cache[command_id]

    def deadline_for(self, command: MedicationCommand, scheduled: MedicationEvent, events: List[MedicationEvent]) -> datetime:
        """Grace end recomputed now, pushed out by the latest snooze if any."""
        grace = self.resolver.resolve(
            command.grace_period.medication_type,
            scheduled.scheduled_for,
            command.schedule.timezone,
            command.grace_period.override_minutes,
        )
        deadline = grace.end
        snoozes = [e for e in events if e.event_type == EventType.DOSE_SNOOZED and e.data.snooze_minutes]
        if snoozes:
            latest = max(snoozes, key=lambda e: e.timing.event_timestamp)
            deadline = max(deadline, latest.timing.event_timestamp + timedelta(minutes=latest.data.snooze_minutes))
        return deadline

    def process_occurrence(
        self,
        scheduled: MedicationEvent,
        now: datetime,
        cache: Optional[Dict[str, Optional[MedicationCommand]]] = None,
    ) -> Optional[MedicationEvent]:
        """Append ``dose_missed`` for one overdue occurrence, or return ``None`` when it is not due."""
        cache = {} if cache is None else cache
        command = self._command(scheduled.command_id, cache)
        if command is None or command.is_prn or not command.is_active:
            return None
        if not is_scheduled_instant(command.schedule, scheduled.scheduled_for):
            logger.debug("Ignoring %s at %s; no longer in the schedule", command.id, scheduled.scheduled_for)
            return None

        existing = self.retry.call(
            lambda: self.events.for_occurrence(command.id, scheduled.scheduled_for), "occurrence lookup"
        )
        occurrence = derive_occurrence(command.id, scheduled.scheduled_for, existing)
        if occurrence.state not in OPEN_STATES:
            return None

        deadline = self.deadline_for(command, scheduled, existing)
        if deadline > now:
            return None

        missed = MedicationEvent(
            command_id=command.id,
            patient_id=command.patient_id,
            event_type=EventType.DOSE_MISSED,
            medication_name=command.medication.name,
            data=EventData(
                scheduled_time=scheduled.scheduled_for,
                dosage_amount=command.schedule.dosage_amount,
                actor="system",
                reason="grace_period_expired",
                extra={"deadline": deadline.isoformat()},
            ),
            timing=EventTiming(
                event_timestamp=now,
                scheduled_for=scheduled.scheduled_for,
                grace_period_end=deadline,
                grace_period_minutes=scheduled.timing.grace_period_minutes,
                is_on_time=False,
                minutes_late=max(0, math.floor((now - scheduled.scheduled_for).total_seconds() / 60)),
            ),
            correlation_id=scheduled.correlation_id,
        )
        # Re-checked atomically: a taken or skipped that lands after the read above wins.
        return self.retry.call(lambda: self.events.append_unless(missed, MISSED_BLOCKING_TYPES), "missed append")

    def _notify(self, patient_id: str, now: datetime, result: SweepResult) -> None:
        # Patterns already recorded inside the dedup window were alerted on then.
        patterns = self.pattern_detector.record_new(patient_id, now=now)
        result.workflows_executed += 1
        if not patterns:
            return
        recipients = self.permissions.alert_recipients(patient_id)
        for pattern in patterns:
            alert = AdherenceAlert(
                patient_id=patient_id,
                pattern_type=pattern.pattern_type,
                severity=pattern.severity,
                description=pattern.description,
                recipients=recipients,
                command_id=pattern.command_id,
            )
            if self.notifier.dispatch(alert):
                result.notifications_sent += 1
            else:
                logger.warning("Alert dispatch declined for patient %s (%s)", patient_id, pattern.pattern_type.value)

    def run_sweep(self, now: Optional[datetime] = None) -> SweepResult:
        now = ensure_utc(now or self.clock())
        started = self.timer()
        result = SweepResult()
        lookback = timedelta(hours=self.settings.MISSED_LOOKBACK_HOURS)

        try:
            due = self.retry.call(lambda: self.events.scheduled_due(now, lookback), "due occurrence query")
        except MedLedgerError as exc:
            logger.error("Missed sweep could not load due occurrences: %s", exc.message)
            result.errors.append(f"scheduled_due: {exc.message}")
            return result

        cache: Dict[str, Optional[MedicationCommand]] = {}
        newly_missed: Dict[str, List[MedicationEvent]] = {}
        for scheduled in due:
            if self.timer() - started > self.settings.JOB_TIMEOUT_SECONDS:
                result.timed_out = True
                logger.warning("Missed sweep timed out after %d occurrences", result.medications_processed)
                break

            result.medications_processed += 1
            try:
                missed = self.process_occurrence(scheduled, now, cache)
            except DuplicateSuppressed as exc:
                logger.info("Skipped missed write for %s: %s", scheduled.command_id, exc.message)
                continue
            except MedLedgerError as exc:
                logger.error("Missed check failed for %s at %s: %s", scheduled.command_id, scheduled.scheduled_for, exc.message)
                result.errors.append(f"{scheduled.command_id}@{scheduled.scheduled_for.isoformat()}: {exc.message}")
                continue
            except Exception as exc:
                logger.exception("Unexpected missed-check failure for %s", scheduled.command_id)
                result.errors.append(f"{scheduled.command_id}@{scheduled.scheduled_for.isoformat()}: {exc}")
                continue

            if missed is not None:
                result.missed_detected += 1
                newly_missed.setdefault(missed.patient_id, []).append(missed)

        for patient_id, missed_events in newly_missed.items():
            logger.info("Patient %s has %d newly missed doses", patient_id, len(missed_events))
            try:
                self._notify(patient_id, now, result)
            except Exception as exc:
                logger.exception("Adherence evaluation failed for patient %s", patient_id)
                result.errors.append(f"patient {patient_id}: {exc}")

        logger.info(
            "Missed sweep finished: processed=%d missed=%d workflows=%d notifications=%d errors=%d",
            result.medications_processed,
            result.missed_detected,
            result.workflows_executed,
            result.notifications_sent,
            len(result.errors),
        )
        return result
