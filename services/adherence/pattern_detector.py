from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, Dict, List, Optional

from shared.config import Settings, get_settings
from shared.contracts.enums import DOSE_EVENT_TYPES, EventType, OccurrenceState, PatternType, Severity
from shared.contracts.models import (
    DailySummary,
    DoseOccurrence,
    EventData,
    EventTiming,
    MedicationCommand,
    MedicationDaySummary,
    MedicationEvent,
    PatternRecord,
)
from shared.contracts.stores import CommandStore, EventLog
from shared.retry import RetryPolicy
from shared.scheduling.timezones import day_bounds, ensure_utc, local_date, utcnow
from services.dose_actions.state_machine import group_occurrences


logger = logging.getLogger(__name__)

SEVERITY_ORDER = [Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]
RESOLVED_STATES = {OccurrenceState.TAKEN, OccurrenceState.MISSED, OccurrenceState.SKIPPED}


@dataclass(frozen=True)
class SeverityThresholds:
    low: float = 0.9
    medium: float = 0.7
    high: float = 0.5

    def severity_for(self, rate: float) -> Severity:
        if rate >= self.low:
            return Severity.LOW
        if rate >= self.medium:
            return Severity.MEDIUM
        if rate >= self.high:
            return Severity.HIGH
        return Severity.CRITICAL


def escalate(severity: Severity) -> Severity:
    index = SEVERITY_ORDER.index(severity)
    return SEVERITY_ORDER[min(index + 1, len(SEVERITY_ORDER) - 1)]


@dataclass
class CommandAdherence:
    command_id: str
    medication_name: str
    taken: int
    missed: int
    skipped: int
    consecutive_missed: int
    days_below_threshold: int

    @property
    def resolved(self) -> int:
        return self.taken + self.missed + self.skipped

    @property
    def rate(self) -> Optional[float]:
        return self.taken / self.resolved if self.resolved else None


def summarize(
    command: MedicationCommand, occurrences: List[DoseOccurrence], low_threshold: float
) -> CommandAdherence:
    resolved = [o for o in occurrences if o.state in RESOLVED_STATES]

    run = 0
    for occurrence in reversed(resolved):
        if occurrence.state != OccurrenceState.MISSED:
            break
        run += 1

    per_day: Dict[date, List[DoseOccurrence]] = {}
    for occurrence in resolved:
        per_day.setdefault(local_date(occurrence.scheduled_for, command.schedule.timezone), []).append(occurrence)
    days_below = sum(
        1
        for day_occurrences in per_day.values()
        if sum(o.state == OccurrenceState.TAKEN for o in day_occurrences) / len(day_occurrences) < low_threshold
    )

    return CommandAdherence(
        command_id=command.id,
        medication_name=command.medication.name,
        taken=sum(o.state == OccurrenceState.TAKEN for o in resolved),
        missed=sum(o.state == OccurrenceState.MISSED for o in resolved),
        skipped=sum(o.state == OccurrenceState.SKIPPED for o in resolved),
        consecutive_missed=run,
        days_below_threshold=days_below,
    )


class AdherencePatternDetector:
    """Turns a patient's recent dose history into adherence pattern records."""

    def __init__(
        self,
        commands: CommandStore,
        events: EventLog,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        retry: Optional[RetryPolicy] = None,
    ) -> None:
        self.commands = commands
        self.events = events
        self.settings = settings or get_settings()
        self.clock = clock
        self.retry = retry or RetryPolicy.from_settings(self.settings)
        self.thresholds = SeverityThresholds(
            low=self.settings.SEVERITY_LOW_THRESHOLD,
            medium=self.settings.SEVERITY_MEDIUM_THRESHOLD,
            high=self.settings.SEVERITY_HIGH_THRESHOLD,
        )

    def summaries(
        self, patient_id: str, command_id: Optional[str] = None, now: Optional[datetime] = None
    ) -> List[CommandAdherence]:
        now = ensure_utc(now or self.clock())
        window_start = now - timedelta(days=self.settings.PATTERN_WINDOW_DAYS)

        commands = self.retry.call(lambda: self.commands.list_for_patient(patient_id), "patient commands")
        if command_id is not None:
            commands = [c for c in commands if c.id == command_id]

        events = self.retry.call(
            lambda: self.events.query(
                patient_id=patient_id,
                command_id=command_id,
                event_types=DOSE_EVENT_TYPES,
                scheduled_since=window_start,
                scheduled_until=now,
            ),
            "adherence window query",
        )
        by_command: Dict[str, List[DoseOccurrence]] = {}
        for occurrence in group_occurrences(events):
            by_command.setdefault(occurrence.command_id, []).append(occurrence)

        return [
            summarize(command, by_command.get(command.id, []), self.thresholds.low)
            for command in commands
            if not command.is_prn
        ]

    def daily_summary(self, patient_id: str, day: date, tz: str) -> DailySummary:
        """Roll up the derived state of every scheduled dose on one local day.

        Nothing is written; the summary is recomputed from the log on request.
        """
        start, end = day_bounds(day, tz)
        commands = {
            c.id: c
            for c in self.retry.call(lambda: self.commands.list_for_patient(patient_id), "patient commands")
            if not c.is_prn
        }
        events = self.retry.call(
            lambda: self.events.query(
                patient_id=patient_id, event_types=DOSE_EVENT_TYPES, scheduled_since=start, scheduled_until=end
            ),
            "daily summary query",
        )

        summary = DailySummary(patient_id=patient_id, summary_date=day, timezone=tz)
        per_command: Dict[str, MedicationDaySummary] = {}
        on_time, delays = 0, []
        for occurrence in group_occurrences(events):
            command = commands.get(occurrence.command_id)
            if command is None:
                continue
            line = per_command.setdefault(
                command.id, MedicationDaySummary(command_id=command.id, medication_name=command.medication.name)
            )
            line.scheduled += 1
            summary.total_scheduled += 1
            if any(e.event_type == EventType.DOSE_SNOOZED for e in occurrence.events):
                summary.snoozed += 1

            state = occurrence.state
            if state == OccurrenceState.TAKEN:
                summary.taken += 1
                line.taken += 1
                taken = next(e for e in occurrence.events if e.id == occurrence.effective_event_id)
                if taken.timing.is_on_time:
                    on_time += 1
                if taken.timing.minutes_late:
                    delays.append(taken.timing.minutes_late)
            elif state == OccurrenceState.MISSED:
                summary.missed += 1
                line.missed += 1
            elif state == OccurrenceState.SKIPPED:
                summary.skipped += 1
                line.skipped += 1
            elif state == OccurrenceState.RESCHEDULED:
                summary.rescheduled += 1
            else:
                summary.pending += 1

        if summary.total_scheduled:
            summary.adherence_rate = round(summary.taken / summary.total_scheduled * 100, 2)
        if summary.taken:
            summary.on_time_rate = round(on_time / summary.taken * 100, 2)
        if delays:
            summary.average_delay_minutes = round(sum(delays) / len(delays), 2)
        summary.medications = list(per_command.values())
        logger.info(
            "Daily summary for patient %s on %s: %d/%d taken",
            patient_id,
            day.isoformat(),
            summary.taken,
            summary.total_scheduled,
        )
        return summary

    def evaluate(
        self,
        patient_id: str,
        command_id: Optional[str] = None,
        now: Optional[datetime] = None,
        record: bool = False,
    ) -> List[PatternRecord]:
        now = ensure_utc(now or self.clock())
        window_start = now - timedelta(days=self.settings.PATTERN_WINDOW_DAYS)
        patterns: List[PatternRecord] = []

        for summary in self.summaries(patient_id, command_id, now):
            rate = summary.rate
            if rate is None:
                continue
            severity = self.thresholds.severity_for(rate)
            on_streak = summary.consecutive_missed >= self.settings.CONSECUTIVE_MISSED_THRESHOLD
            if on_streak:
                severity = escalate(severity)

            if on_streak:
                patterns.append(
                    PatternRecord(
                        patient_id=patient_id,
                        command_id=summary.command_id,
                        pattern_type=PatternType.CONSECUTIVE_MISSED,
                        severity=severity,
                        description=(
                            f"{summary.consecutive_missed} consecutive missed doses of {summary.medication_name}"
                        ),
                        adherence_rate=round(rate, 4),
                        consecutive_missed=summary.consecutive_missed,
                        days_below_threshold=summary.days_below_threshold,
                        window_start=window_start,
                        window_end=now,
                    )
                )
            if rate < self.thresholds.low and summary.days_below_threshold >= self.settings.LOW_ADHERENCE_DAYS:
                patterns.append(
                    PatternRecord(
                        patient_id=patient_id,
                        command_id=summary.command_id,
                        pattern_type=PatternType.LOW_ADHERENCE,
                        severity=severity,
                        description=(
                            f"Adherence for {summary.medication_name} is {rate:.0%}, below "
                            f"{self.thresholds.low:.0%} on {summary.days_below_threshold} days"
                        ),
                        adherence_rate=round(rate, 4),
                        consecutive_missed=summary.consecutive_missed,
                        days_below_threshold=summary.days_below_threshold,
                        window_start=window_start,
                        window_end=now,
                    )
                )

        if record:
            self._record(patterns, now)
        return patterns

    def record_new(
        self, patient_id: str, command_id: Optional[str] = None, now: Optional[datetime] = None
    ) -> List[PatternRecord]:
        """Evaluate, record, and return only the patterns not already recorded recently."""
        now = ensure_utc(now or self.clock())
        return self._record(self.evaluate(patient_id, command_id, now), now)

    def _recently_recorded(self, pattern: PatternRecord, now: datetime) -> bool:
        since = now - timedelta(hours=self.settings.PATTERN_DEDUP_HOURS)
        recent = self.retry.call(
            lambda: self.events.query(
                patient_id=pattern.patient_id,
                command_id=pattern.command_id,
                event_types=[EventType.ADHERENCE_PATTERN_DETECTED],
                since=since,
            ),
            "pattern history query",
        )
        return any(
            e.data.extra.get("pattern_type") == pattern.pattern_type.value
            and e.data.extra.get("severity") == pattern.severity.value
            for e in recent
        )

    def _record(self, patterns: List[PatternRecord], now: datetime) -> List[PatternRecord]:
        recorded: List[PatternRecord] = []
        for pattern in patterns:
            if pattern.command_id is None or self._recently_recorded(pattern, now):
                continue
            event = MedicationEvent(
                command_id=pattern.command_id,
                patient_id=pattern.patient_id,
                event_type=EventType.ADHERENCE_PATTERN_DETECTED,
                data=EventData(actor="system", note=pattern.description, extra=pattern.model_dump(mode="json")),
                timing=EventTiming(event_timestamp=now),
            )
            self.retry.call(lambda: self.events.append(event), "pattern append")
            logger.info(
                "Recorded %s pattern (%s) for patient %s",
                pattern.pattern_type.value,
                pattern.severity.value,
                pattern.patient_id,
            )
            recorded.append(pattern)
        return recorded
