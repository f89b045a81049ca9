"""Materializes future ``dose_scheduled`` events from medication commands.

Days are walked in the patient's local timezone and each eligible day is
combined with every configured wall-clock time. Generation is idempotent: an
occurrence that already has a scheduled or terminal event is skipped, and the
event log rejects a second ``dose_scheduled`` for the same instant.
"""

from __future__ import annotations

import logging
import time
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional, Tuple

from shared.config import Settings, get_settings
from shared.contracts.enums import DAILY_FAMILY, TERMINAL_EVENT_TYPES, EventType, Frequency
from shared.contracts.errors import DuplicateSuppressed, MedLedgerError
from shared.contracts.models import (
    EventData,
    EventTiming,
    GenerationResult,
    MedicationCommand,
    MedicationEvent,
    Schedule,
)
from shared.contracts.stores import CommandStore, EventLog
from shared.retry import RetryPolicy
from shared.scheduling.grace_period import GracePeriodResolver, build_resolver
from shared.scheduling.timezones import (
    ensure_utc,
    iter_days,
    local_date,
    localize,
    parse_time_of_day,
    utcnow,
)


logger = logging.getLogger(__name__)

OCCUPIED_EVENT_TYPES = TERMINAL_EVENT_TYPES | {EventType.DOSE_SCHEDULED}


def is_eligible_day(schedule: Schedule, day: date) -> bool:
    if day < schedule.start_date:
        return False
    if schedule.end_date is not None and day > schedule.end_date:
        return False
    if schedule.frequency in DAILY_FAMILY:
        return True
    if schedule.frequency == Frequency.WEEKLY:
        return day.weekday() in schedule.days_of_week
    if schedule.frequency == Frequency.MONTHLY:
        # Months without the configured day are skipped, not clamped.
        return day.day == (schedule.day_of_month or 1)
    return False


def planned_instants(schedule: Schedule, first: date, last: date) -> List[datetime]:
    """UTC instants for every eligible day in ``[first, last]`` and every time."""
    times = [parse_time_of_day(value) for value in schedule.times]
    instants = []
    for day in iter_days(first, last):
        if not is_eligible_day(schedule, day):
            continue
        for time_of_day in times:
            instants.append(localize(day, time_of_day, schedule.timezone))
    return sorted(set(instants))


def is_scheduled_instant(schedule: Schedule, instant: datetime) -> bool:
    """Whether ``instant`` is produced by the schedule as it stands now."""
    if schedule.frequency == Frequency.AS_NEEDED:
        return False
    instant = ensure_utc(instant)
    day = local_date(instant, schedule.timezone)
    candidates = [day]
    # A gap-shifted 23:xx can land on the next local date; check the previous day too.
    candidates.append(day - timedelta(days=1))
    return any(instant in planned_instants(schedule, candidate, candidate) for candidate in candidates)


class OccurrenceGenerator:
    def __init__(
        self,
        commands: CommandStore,
        events: EventLog,
        resolver: Optional[GracePeriodResolver] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        timer: Callable[[], float] = time.monotonic,
        retry: Optional[RetryPolicy] = None,
    ) -> None:
        self.commands = commands
        self.events = events
        self.settings = settings or get_settings()
        self.resolver = resolver or build_resolver(self.settings)
        self.clock = clock
        self.timer = timer
        self.retry = retry or RetryPolicy.from_settings(self.settings)

    def window_for(self, command: MedicationCommand, now: datetime) -> Optional[Tuple[date, date]]:
        schedule = command.schedule
        today = local_date(now, schedule.timezone)
        first = max(today, schedule.start_date)
        last = today + timedelta(days=self.settings.GENERATION_HORIZON_DAYS)
        if schedule.end_date is not None:
            last = min(last, schedule.end_date)
        if first > last:
            return None
        return first, last

    def build_events(self, command: MedicationCommand, now: datetime) -> Tuple[List[MedicationEvent], int]:
        """Scheduled events still missing for ``command`` and the number of existing ones skipped."""
        window = self.window_for(command, now)
        if window is None:
            return [], 0

        pending: List[MedicationEvent] = []
        skipped = 0
        for instant in planned_instants(command.schedule, *window):
            if instant < now:
                continue
            if len(pending) >= self.settings.MAX_EVENTS_PER_COMMAND:
                logger.warning(
                    "Command %s reached the %d event cap; remaining occurrences wait for the next run",
                    command.id,
                    self.settings.MAX_EVENTS_PER_COMMAND,
                )
                break

            existing = self.retry.call(
                lambda: self.events.for_occurrence(command.id, instant), "occurrence lookup"
            )
            if any(event.event_type in OCCUPIED_EVENT_TYPES for event in existing):
                skipped += 1
                continue

            grace = self.resolver.resolve(
                command.grace_period.medication_type,
                instant,
                command.schedule.timezone,
                command.grace_period.override_minutes,
            )
            pending.append(
                MedicationEvent(
                    command_id=command.id,
                    patient_id=command.patient_id,
                    event_type=EventType.DOSE_SCHEDULED,
                    medication_name=command.medication.name,
                    data=EventData(
                        scheduled_time=instant,
                        dosage_amount=command.schedule.dosage_amount,
                        actor="system",
                        extra={
                            "local_date": local_date(instant, command.schedule.timezone).isoformat(),
                            "grace_rules": grace.applied_rules,
                        },
                    ),
                    timing=EventTiming(
                        event_timestamp=now,
                        scheduled_for=instant,
                        grace_period_end=grace.end,
                        grace_period_minutes=grace.minutes,
                    ),
                )
            )
        return pending, skipped

    def _write(self, pending: List[MedicationEvent]) -> Tuple[int, int]:
        try:
            self.retry.call(lambda: self.events.append_batch(pending), "scheduled batch append")
            return len(pending), 0
        except DuplicateSuppressed:
            logger.info("Batch collided with a concurrent run; appending %d events individually", len(pending))

        created = skipped = 0
        for event in pending:
            try:
                self.retry.call(lambda: self.events.append(event), "scheduled append")
                created += 1
            except DuplicateSuppressed:
                logger.info("Skipped duplicate occurrence %s at %s", event.command_id, event.scheduled_for)
                skipped += 1
        return created, skipped

    def generate_for_command(
        self, command: MedicationCommand, now: Optional[datetime] = None
    ) -> Tuple[int, int]:
        """Returns ``(created, skipped)`` for one command."""
        now = ensure_utc(now or self.clock())
        if not command.is_schedulable:
            logger.debug("Command %s is not schedulable; nothing to generate", command.id)
            return 0, 0

        pending, skipped = self.build_events(command, now)
        if not pending:
            return 0, skipped
        created, collided = self._write(pending)
        logger.info("Generated %d scheduled events for command %s", created, command.id)
        return created, skipped + collided

    def regenerate_for_command(self, command_id: str, now: Optional[datetime] = None) -> int:
        """Fill in occurrences after a schedule edit.

        Future events from the previous schedule stay in the log; the missed
        sweep ignores them because they no longer match the schedule.
        """
        command = self.retry.call(lambda: self.commands.get(command_id), "command lookup")
        created, _ = self.generate_for_command(command, now)
        return created

    def run_daily_generation(self, now: Optional[datetime] = None) -> GenerationResult:
        now = ensure_utc(now or self.clock())
        started = self.timer()
        result = GenerationResult()

        try:
            commands = self.retry.call(self.commands.list_schedulable, "list schedulable commands")
        except MedLedgerError as exc:
            logger.error("Daily generation could not list commands: %s", exc.message)
            result.errors.append(f"list_schedulable: {exc.message}")
            return result

        for command in commands:
            if self.timer() - started > self.settings.JOB_TIMEOUT_SECONDS:
                result.timed_out = True
                logger.warning(
                    "Daily generation stopped after %d of %d commands; the rest resume next run",
                    result.processed,
                    len(commands),
                )
                break

            result.processed += 1
            try:
                created, skipped = self.generate_for_command(command, now)
            except MedLedgerError as exc:
                logger.error("Generation failed for command %s: %s", command.id, exc.message)
                result.errors.append(f"{command.id}: {exc.message}")
                continue
            except Exception as exc:
                logger.exception("Unexpected generation failure for command %s", command.id)
                result.errors.append(f"{command.id}: {exc}")
                continue

            result.events_generated += created
            result.skipped_duplicates += skipped
            result.per_command[command.id] = created

        logger.info(
            "Daily generation finished: processed=%d generated=%d skipped=%d errors=%d",
            result.processed,
            result.events_generated,
            result.skipped_duplicates,
            len(result.errors),
        )
        return result
