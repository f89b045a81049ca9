from datetime import date, datetime, timezone

import pytest

from medledger import FakeNotifier, InMemoryEventLog, MedLedgerFlow
from shared.contracts.enums import EventType, OccurrenceState
from shared.contracts.models import (
    CreateCommandRequest,
    MedicationDescriptor,
    ScheduleInput,
    ScheduleUpdateRequest,
    StatusChangeRequest,
)


SCHEDULED_FOR = datetime(2026, 3, 4, 8, 0, tzinfo=timezone.utc)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def missed_events(flow):
    return [e for e in flow.events.events if e.event_type == EventType.DOSE_MISSED]


@pytest.fixture
def command(flow, make_command):
    stored = flow.commands.create(make_command(end_date=date(2026, 3, 6)))
    flow.generator.run_daily_generation(now=utc(2026, 3, 4, 7, 0))
    return stored


def test_twice_daily_day_with_one_dose_taken(settings):
    """Generation at 07:00 local, morning dose taken at 08:05, sweep at 20:31."""
    clock_now = {"now": utc(2026, 3, 4, 12, 0)}  # 07:00 in New York (EST)
    flow = MedLedgerFlow(settings=settings, clock=lambda: clock_now["now"], sleep=lambda s: None)
    command = flow.command_service.create_command(
        CreateCommandRequest(
            patient_id="patient-ny",
            medication=MedicationDescriptor(name="Amoxicillin", dosage="500mg"),
            schedule=ScheduleInput(
                frequency="twice_daily", start_date=date(2026, 3, 4), timezone="America/New_York"
            ),
            created_by="patient-ny",
        )
    )
    assert command.schedule.times == ["08:00", "20:00"]

    morning = utc(2026, 3, 4, 13, 0)
    clock_now["now"] = utc(2026, 3, 4, 13, 5)
    taken = flow.state_machine.mark_taken(command.id, morning, "patient-ny")
    assert taken.timing.is_on_time is True
    assert taken.timing.minutes_late == 5

    result = flow.detector.run_sweep(now=utc(2026, 3, 5, 1, 31))
    assert result.missed_detected == 1
    assert result.medications_processed == 2
    assert result.errors == []

    missed = missed_events(flow)
    assert len(missed) == 1
    assert missed[0].scheduled_for == utc(2026, 3, 5, 1, 0)
    assert missed[0].data.reason == "grace_period_expired"
    assert flow.state_machine.occurrence_state(command.id, morning).state == OccurrenceState.TAKEN

    again = flow.detector.run_sweep(now=utc(2026, 3, 5, 1, 46))
    assert again.missed_detected == 0
    assert len(missed_events(flow)) == 1


def test_nothing_is_missed_before_grace_ends(flow, command):
    result = flow.detector.run_sweep(now=utc(2026, 3, 4, 8, 29))
    assert result.medications_processed == 0
    assert missed_events(flow) == []


@pytest.mark.parametrize("action", ["mark_taken", "mark_skipped"])
def test_resolved_occurrence_is_never_missed(flow, command, action):
    getattr(flow.state_machine, action)(command.id, SCHEDULED_FOR, "patient-1", now=utc(2026, 3, 4, 8, 10))
    result = flow.detector.run_sweep(now=utc(2026, 3, 4, 9, 0))
    assert result.medications_processed == 1
    assert result.missed_detected == 0
    assert missed_events(flow) == []


def test_late_taken_before_sweep_prevents_missed(flow, command):
    flow.state_machine.mark_taken(command.id, SCHEDULED_FOR, "patient-1", now=utc(2026, 3, 4, 8, 50))
    flow.detector.run_sweep(now=utc(2026, 3, 4, 9, 0))
    assert missed_events(flow) == []


class StaleReadEventLog(InMemoryEventLog):
    """Hides dose_taken from the next occurrence read, as if it landed mid-sweep."""

    hide_next_read = False

    def for_occurrence(self, command_id, scheduled_for):
        events = super().for_occurrence(command_id, scheduled_for)
        if self.hide_next_read:
            self.hide_next_read = False
            return [e for e in events if e.event_type != EventType.DOSE_TAKEN]
        return events


def test_taken_racing_the_sweep_wins(settings, make_command):
    events = StaleReadEventLog()
    flow = MedLedgerFlow(events=events, settings=settings, sleep=lambda s: None)
    command = flow.commands.create(make_command(end_date=date(2026, 3, 4)))
    flow.generator.generate_for_command(command, now=utc(2026, 3, 4, 7, 0))
    flow.state_machine.mark_taken(command.id, SCHEDULED_FOR, "patient-1", now=utc(2026, 3, 4, 8, 10))

    events.hide_next_read = True
    result = flow.detector.run_sweep(now=utc(2026, 3, 4, 9, 0))
    assert result.missed_detected == 0
    assert result.errors == []
    assert missed_events(flow) == []


def test_snooze_extends_deadline(flow, command):
    flow.state_machine.mark_snoozed(command.id, SCHEDULED_FOR, "patient-1", snooze_minutes=30, now=utc(2026, 3, 4, 8, 20))

    assert flow.detector.run_sweep(now=utc(2026, 3, 4, 8, 45)).missed_detected == 0
    assert flow.detector.run_sweep(now=utc(2026, 3, 4, 8, 51)).missed_detected == 1


def test_undone_taken_becomes_missable(flow, command):
    taken = flow.state_machine.mark_taken(command.id, SCHEDULED_FOR, "patient-1", now=utc(2026, 3, 4, 8, 10))
    flow.state_machine.undo(taken.id, "patient-1", "wrong button", now=utc(2026, 3, 4, 8, 10, 20))

    assert flow.detector.run_sweep(now=utc(2026, 3, 4, 9, 0)).missed_detected == 1


def test_paused_command_is_not_swept(flow, command):
    flow.command_service.change_status(
        command.id,
        StatusChangeRequest(status="paused", actor="caregiver-1", expected_version=1, reason="hospital stay"),
        now=utc(2026, 3, 4, 7, 30),
    )
    result = flow.detector.run_sweep(now=utc(2026, 3, 4, 9, 0))
    assert result.medications_processed == 1
    assert result.missed_detected == 0


def test_edited_schedule_ignores_old_instants(flow, command):
    flow.command_service.update_schedule(
        command.id,
        ScheduleUpdateRequest(expected_version=1, actor="caregiver-1", times=["09:00"]),
        now=utc(2026, 3, 4, 7, 30),
    )
    result = flow.detector.run_sweep(now=utc(2026, 3, 4, 9, 10))
    assert result.missed_detected == 0

    result = flow.detector.run_sweep(now=utc(2026, 3, 4, 9, 31))
    assert result.missed_detected == 1
    assert missed_events(flow)[0].scheduled_for == utc(2026, 3, 4, 9, 0)


def test_old_occurrences_fall_outside_lookback(flow, command):
    result = flow.detector.run_sweep(now=utc(2026, 3, 8, 12, 0))
    assert result.medications_processed == 0
    assert missed_events(flow) == []


def test_streak_triggers_alert(flow, command):
    flow.detector.run_sweep(now=utc(2026, 3, 4, 9, 0))
    flow.detector.run_sweep(now=utc(2026, 3, 5, 9, 0))
    result = flow.detector.run_sweep(now=utc(2026, 3, 6, 9, 0))

    assert result.missed_detected == 1
    assert result.workflows_executed == 1
    assert result.notifications_sent == 2
    alerts = flow.notifier.sent
    assert {a.pattern_type.value for a in alerts} == {"consecutive_missed", "low_adherence"}
    assert all(a.recipients == ["family:patient-1"] for a in alerts)
    recorded = [e for e in flow.events.events if e.event_type == EventType.ADHERENCE_PATTERN_DETECTED]
    assert len(recorded) == 2


def test_repeat_pattern_inside_dedup_window_is_not_realerted(flow, make_command):
    command = flow.commands.create(
        make_command(frequency="twice_daily", times=("08:00", "20:00"), end_date=date(2026, 3, 5))
    )
    flow.generator.generate_for_command(command, now=utc(2026, 3, 4, 7, 0))
    flow.detector.run_sweep(now=utc(2026, 3, 4, 9, 0))
    flow.detector.run_sweep(now=utc(2026, 3, 4, 21, 0))

    third = flow.detector.run_sweep(now=utc(2026, 3, 5, 9, 0))
    assert third.notifications_sent == 1
    assert [a.pattern_type.value for a in flow.notifier.sent] == ["consecutive_missed"]

    fourth = flow.detector.run_sweep(now=utc(2026, 3, 5, 21, 0))
    assert fourth.missed_detected == 1
    assert fourth.workflows_executed == 1
    assert fourth.notifications_sent == 0
    assert len(flow.notifier.sent) == 1
    recorded = [e for e in flow.events.events if e.event_type == EventType.ADHERENCE_PATTERN_DETECTED]
    assert len(recorded) == 1


def test_declined_dispatch_is_not_counted(settings, make_command):
    flow = MedLedgerFlow(notifier=FakeNotifier(accept=False), settings=settings, sleep=lambda s: None)
    command = flow.commands.create(make_command(end_date=date(2026, 3, 6)))
    flow.generator.generate_for_command(command, now=utc(2026, 3, 4, 7, 0))
    for day in (4, 5, 6):
        result = flow.detector.run_sweep(now=utc(2026, 3, day, 9, 0))
    assert result.notifications_sent == 0
    assert result.workflows_executed == 1


def test_sweep_timeout(settings, flow, command):
    settings.JOB_TIMEOUT_SECONDS = 5
    ticks = iter([0.0, 10.0])
    flow.detector.timer = lambda: next(ticks)
    result = flow.detector.run_sweep(now=utc(2026, 3, 4, 9, 0))
    assert result.timed_out
    assert result.medications_processed == 0


def test_deadline_for_uses_latest_snooze(flow, command):
    scheduled = [e for e in flow.events.events if e.event_type == EventType.DOSE_SCHEDULED][0]
    flow.state_machine.mark_snoozed(command.id, SCHEDULED_FOR, "patient-1", snooze_minutes=5, now=utc(2026, 3, 4, 8, 0))
    existing = flow.events.for_occurrence(command.id, SCHEDULED_FOR)
    # A short early snooze never shortens the grace window.
    assert flow.detector.deadline_for(command, scheduled, existing) == utc(2026, 3, 4, 8, 30)
