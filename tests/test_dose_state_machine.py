from datetime import date, datetime, timedelta, timezone

import pytest

from medledger import AllowAllPermissions, InMemoryEventLog, MedLedgerFlow
from shared.contracts.enums import CommandStatus, EventType, OccurrenceState
from shared.contracts.errors import ExpiredWindow, Forbidden, StoreError, ValidationError
from shared.contracts.models import EventData, EventTiming, MedicationEvent
from services.dose_actions.state_machine import derive_occurrence, lateness


SCHEDULED_FOR = datetime(2026, 3, 4, 8, 0, tzinfo=timezone.utc)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def events_of(flow, event_type):
    return [e for e in flow.events.events if e.event_type == event_type]


@pytest.fixture
def command(flow, make_command):
    stored = flow.commands.create(make_command(end_date=date(2026, 3, 6)))
    flow.generator.run_daily_generation(now=utc(2026, 3, 4, 7, 0))
    return stored


def test_taken_on_time_within_grace(flow, command, clock):
    clock.now = utc(2026, 3, 4, 8, 20)
    event = flow.state_machine.mark_taken(command.id, SCHEDULED_FOR, "patient-1")

    assert event.timing.is_on_time is True
    assert event.timing.minutes_late == 20
    assert event.data.extra["previous_state"] == "scheduled"
    scheduled = events_of(flow, EventType.DOSE_SCHEDULED)[0]
    assert event.correlation_id == scheduled.correlation_id
    assert flow.state_machine.occurrence_state(command.id, SCHEDULED_FOR).state == OccurrenceState.TAKEN


def test_taken_after_grace_is_late(flow, command, clock):
    clock.now = utc(2026, 3, 4, 9, 5)
    event = flow.state_machine.mark_taken(command.id, SCHEDULED_FOR, "patient-1", actual_time=utc(2026, 3, 4, 8, 45))
    assert event.timing.is_on_time is False
    assert event.timing.minutes_late == 45
    assert event.data.actual_time == utc(2026, 3, 4, 8, 45)


def test_second_taken_is_rejected(flow, command, clock):
    clock.now = utc(2026, 3, 4, 8, 5)
    flow.state_machine.mark_taken(command.id, SCHEDULED_FOR, "patient-1")
    with pytest.raises(ValidationError):
        flow.state_machine.mark_taken(command.id, SCHEDULED_FOR, "patient-1")
    with pytest.raises(ValidationError):
        flow.state_machine.mark_skipped(command.id, SCHEDULED_FOR, "patient-1")
    assert len(events_of(flow, EventType.DOSE_TAKEN)) == 1


def test_future_actual_time_is_rejected(flow, command, clock):
    clock.now = utc(2026, 3, 4, 8, 5)
    with pytest.raises(ValidationError) as exc:
        flow.state_machine.mark_taken(command.id, SCHEDULED_FOR, "patient-1", actual_time=utc(2026, 3, 4, 8, 30))
    assert exc.value.field == "actual_time"


def test_instant_outside_schedule_is_rejected(flow, command, clock):
    clock.now = utc(2026, 3, 4, 9, 5)
    with pytest.raises(ValidationError) as exc:
        flow.state_machine.mark_taken(command.id, utc(2026, 3, 4, 9, 0), "patient-1")
    assert exc.value.field == "scheduled_for"


def test_discontinued_command_rejects_actions(flow, command, clock):
    flow.commands.patch(command.id, {"status.current": CommandStatus.DISCONTINUED}, 1)
    clock.now = utc(2026, 3, 4, 8, 5)
    with pytest.raises(ValidationError):
        flow.state_machine.mark_taken(command.id, SCHEDULED_FOR, "patient-1")


def test_permission_denied(flow, command, clock):
    flow.permissions.denied.add("stranger")
    clock.now = utc(2026, 3, 4, 8, 5)
    with pytest.raises(Forbidden):
        flow.state_machine.mark_taken(command.id, SCHEDULED_FOR, "stranger")
    assert events_of(flow, EventType.DOSE_TAKEN) == []


def test_snooze_then_take(flow, command, clock):
    clock.now = utc(2026, 3, 4, 8, 10)
    snoozed = flow.state_machine.mark_snoozed(command.id, SCHEDULED_FOR, "patient-1", snooze_minutes=15)
    assert snoozed.data.snooze_minutes == 15
    assert flow.state_machine.occurrence_state(command.id, SCHEDULED_FOR).state == OccurrenceState.SNOOZED

    clock.now = utc(2026, 3, 4, 8, 25)
    flow.state_machine.mark_snoozed(command.id, SCHEDULED_FOR, "patient-1")
    clock.now = utc(2026, 3, 4, 8, 30)
    flow.state_machine.mark_taken(command.id, SCHEDULED_FOR, "patient-1")
    assert flow.state_machine.occurrence_state(command.id, SCHEDULED_FOR).state == OccurrenceState.TAKEN


def test_snooze_bounds(flow, command, clock):
    clock.now = utc(2026, 3, 4, 8, 10)
    with pytest.raises(ValidationError):
        flow.state_machine.mark_snoozed(command.id, SCHEDULED_FOR, "patient-1", snooze_minutes=0)
    with pytest.raises(ValidationError):
        flow.state_machine.mark_snoozed(command.id, SCHEDULED_FOR, "patient-1", snooze_minutes=241)


def test_undo_inside_window(flow, command, clock):
    clock.now = utc(2026, 3, 4, 8, 5)
    taken = flow.state_machine.mark_taken(command.id, SCHEDULED_FOR, "patient-1")

    clock.advance(seconds=29)
    undone = flow.state_machine.undo(taken.id, "patient-1", "Tapped the wrong dose")
    assert undone.event_type == EventType.DOSE_TAKEN_UNDONE
    assert undone.data.original_event_id == taken.id
    assert undone.correlation_id == taken.correlation_id
    assert flow.state_machine.occurrence_state(command.id, SCHEDULED_FOR).state == OccurrenceState.SCHEDULED

    # The occurrence can be recorded again once the taken is reverted.
    flow.state_machine.mark_taken(command.id, SCHEDULED_FOR, "patient-1")
    assert flow.state_machine.occurrence_state(command.id, SCHEDULED_FOR).state == OccurrenceState.TAKEN


def test_undo_after_window_expires(flow, command, clock):
    clock.now = utc(2026, 3, 4, 8, 5)
    taken = flow.state_machine.mark_taken(command.id, SCHEDULED_FOR, "patient-1")
    before = len(flow.events.events)

    clock.advance(seconds=31)
    with pytest.raises(ExpiredWindow) as exc:
        flow.state_machine.undo(taken.id, "patient-1", "Tapped the wrong dose")
    assert "correction" in exc.value.message
    assert len(flow.events.events) == before


def test_undo_requires_reason_and_single_use(flow, command, clock):
    clock.now = utc(2026, 3, 4, 8, 5)
    taken = flow.state_machine.mark_taken(command.id, SCHEDULED_FOR, "patient-1")

    with pytest.raises(ValidationError) as exc:
        flow.state_machine.undo(taken.id, "patient-1", "   ")
    assert exc.value.field == "reason"

    flow.state_machine.undo(taken.id, "patient-1", "mistake")
    with pytest.raises(ValidationError):
        flow.state_machine.undo(taken.id, "patient-1", "mistake again")


def test_only_taken_can_be_undone(flow, command, clock):
    clock.now = utc(2026, 3, 4, 8, 5)
    skipped = flow.state_machine.mark_skipped(command.id, SCHEDULED_FOR, "patient-1")
    with pytest.raises(ValidationError):
        flow.state_machine.undo(skipped.id, "patient-1", "changed my mind")


def test_correct_missed_to_skipped(flow, command, clock):
    flow.detector.run_sweep(now=utc(2026, 3, 4, 8, 45))
    missed = events_of(flow, EventType.DOSE_MISSED)[0]

    clock.now = utc(2026, 3, 4, 12, 0)
    correction = flow.state_machine.correct(missed.id, "skipped", "Doctor said to hold this dose", "caregiver-1")
    assert correction.event_type == EventType.DOSE_SKIPPED_CORRECTED
    assert correction.data.corrected_action.value == "skipped"
    assert flow.state_machine.occurrence_state(command.id, SCHEDULED_FOR).state == OccurrenceState.SKIPPED

    with pytest.raises(ValidationError):
        flow.state_machine.correct(missed.id, "rescheduled", "second thoughts", "caregiver-1")


def test_correction_rules(flow, command, clock):
    clock.now = utc(2026, 3, 4, 8, 5)
    taken = flow.state_machine.mark_taken(command.id, SCHEDULED_FOR, "patient-1")

    with pytest.raises(ValidationError):
        flow.state_machine.correct(taken.id, "missed", "inside undo window", "patient-1")
    with pytest.raises(ValidationError):
        flow.state_machine.correct(taken.id, "forgotten", "bad action", "patient-1")

    clock.advance(hours=1)
    with pytest.raises(ValidationError):
        flow.state_machine.correct(taken.id, "missed", "", "patient-1")

    clock.advance(hours=24)
    with pytest.raises(ExpiredWindow):
        flow.state_machine.correct(taken.id, "missed", "too late", "patient-1")


def test_correct_taken_to_missed(flow, command, clock):
    clock.now = utc(2026, 3, 4, 8, 5)
    taken = flow.state_machine.mark_taken(command.id, SCHEDULED_FOR, "patient-1")
    clock.advance(minutes=10)
    flow.state_machine.correct(taken.id, "missed", "Pill was dropped", "caregiver-1")
    assert flow.state_machine.occurrence_state(command.id, SCHEDULED_FOR).state == OccurrenceState.MISSED
    assert [e.event_type for e in flow.events.correlated(taken.id)] == [EventType.DOSE_MISSED_CORRECTED]


def test_late_taken_supersedes_missed(flow, command, clock):
    flow.detector.run_sweep(now=utc(2026, 3, 4, 8, 45))
    clock.now = utc(2026, 3, 4, 10, 0)
    event = flow.state_machine.mark_taken(command.id, SCHEDULED_FOR, "patient-1")

    assert event.data.extra["previous_state"] == "missed"
    assert event.timing.is_on_time is False
    assert flow.state_machine.occurrence_state(command.id, SCHEDULED_FOR).state == OccurrenceState.TAKEN


def test_undo_restores_missed_when_taken_followed_missed(flow, command, clock):
    flow.detector.run_sweep(now=utc(2026, 3, 4, 8, 45))
    clock.now = utc(2026, 3, 4, 10, 0)
    taken = flow.state_machine.mark_taken(command.id, SCHEDULED_FOR, "patient-1")
    clock.advance(seconds=10)
    flow.state_machine.undo(taken.id, "patient-1", "not actually taken")
    assert flow.state_machine.occurrence_state(command.id, SCHEDULED_FOR).state == OccurrenceState.MISSED


def test_missed_replaced_by_late_taken_cannot_be_corrected(flow, command, clock):
    flow.detector.run_sweep(now=utc(2026, 3, 4, 9, 0))
    missed = events_of(flow, EventType.DOSE_MISSED)[0]
    clock.now = utc(2026, 3, 4, 10, 0)
    taken = flow.state_machine.mark_taken(command.id, SCHEDULED_FOR, "patient-1")

    clock.now = utc(2026, 3, 4, 12, 0)
    with pytest.raises(ValidationError) as exc:
        flow.state_machine.correct(missed.id, "skipped", "Doctor said to hold this dose", "caregiver-1")
    assert exc.value.field == "event_id"
    assert taken.id in exc.value.message
    assert flow.state_machine.occurrence_state(command.id, SCHEDULED_FOR).state == OccurrenceState.TAKEN
    assert events_of(flow, EventType.DOSE_SKIPPED_CORRECTED) == []

    flow.state_machine.correct(taken.id, "skipped", "Doctor said to hold this dose", "caregiver-1")
    assert flow.state_machine.occurrence_state(command.id, SCHEDULED_FOR).state == OccurrenceState.SKIPPED


def test_superseding_event_outranks_original_with_earlier_timestamp():
    taken = MedicationEvent(
        command_id="cmd_1",
        patient_id="patient-1",
        event_type=EventType.DOSE_TAKEN,
        timing=EventTiming(event_timestamp=utc(2026, 3, 4, 8, 5), scheduled_for=SCHEDULED_FOR),
    )
    # Clock skew on the writer put the undo before the taken.
    undone = MedicationEvent(
        command_id="cmd_1",
        patient_id="patient-1",
        event_type=EventType.DOSE_TAKEN_UNDONE,
        data=EventData(original_event_id=taken.id),
        timing=EventTiming(event_timestamp=utc(2026, 3, 4, 8, 4), scheduled_for=SCHEDULED_FOR),
    )
    occurrence = derive_occurrence("cmd_1", SCHEDULED_FOR, [undone, taken])
    assert occurrence.state == OccurrenceState.SCHEDULED
    assert occurrence.effective_event_id == undone.id


def test_prn_actions_are_always_on_time(flow, make_command, clock):
    prn = flow.commands.create(make_command(name="Ibuprofen", frequency="as_needed", times=()))
    clock.now = utc(2026, 3, 4, 15, 0)
    event = flow.state_machine.mark_taken(prn.id, utc(2026, 3, 4, 14, 37), "patient-1")
    assert event.timing.is_on_time is True
    assert event.timing.minutes_late == 0
    assert event.timing.grace_period_minutes == 0


def test_occurrences_for_command(flow, command, clock):
    clock.now = utc(2026, 3, 4, 8, 5)
    flow.state_machine.mark_taken(command.id, SCHEDULED_FOR, "patient-1")
    occurrences = flow.state_machine.occurrences_for_command(command.id)
    assert [o.state for o in occurrences] == [
        OccurrenceState.TAKEN,
        OccurrenceState.SCHEDULED,
        OccurrenceState.SCHEDULED,
    ]
    limited = flow.state_machine.occurrences_for_command(command.id, since=utc(2026, 3, 5), until=utc(2026, 3, 6))
    assert [o.scheduled_for for o in limited] == [utc(2026, 3, 5, 8, 0)]


def test_lateness_floors_minutes():
    assert lateness(SCHEDULED_FOR, SCHEDULED_FOR + timedelta(seconds=119), SCHEDULED_FOR + timedelta(minutes=30)) == (True, 1)
    assert lateness(SCHEDULED_FOR, SCHEDULED_FOR - timedelta(minutes=10), SCHEDULED_FOR) == (True, 0)


class FailingEventLog(InMemoryEventLog):
    def __init__(self):
        super().__init__()
        self.attempts = 0

    def append_unless(self, event, blocking_types):
        self.attempts += 1
        raise StoreError("connection reset")


def test_store_failure_is_retried_then_surfaced(settings, make_command):
    events = FailingEventLog()
    flow = MedLedgerFlow(events=events, permissions=AllowAllPermissions(), settings=settings, sleep=lambda s: None)
    command = flow.commands.create(make_command(end_date=date(2026, 3, 6)))
    flow.generator.generate_for_command(command, now=utc(2026, 3, 4, 7, 0))

    with pytest.raises(StoreError):
        flow.state_machine.mark_taken(command.id, SCHEDULED_FOR, "patient-1", now=utc(2026, 3, 4, 8, 5))
    assert events.attempts == 3
    assert not any(e.event_type == EventType.DOSE_TAKEN for e in events.events)


class BlindCorrelationEventLog(InMemoryEventLog):
    """Never sees earlier corrections, as a reader racing another writer would."""

    def correlated(self, event_id):
        return []


def test_concurrent_corrections_keep_one(settings, make_command):
    events = BlindCorrelationEventLog()
    flow = MedLedgerFlow(events=events, permissions=AllowAllPermissions(), settings=settings, sleep=lambda s: None)
    command = flow.commands.create(make_command(end_date=date(2026, 3, 6)))
    flow.generator.generate_for_command(command, now=utc(2026, 3, 4, 7, 0))
    taken = flow.state_machine.mark_taken(command.id, SCHEDULED_FOR, "patient-1", now=utc(2026, 3, 4, 8, 5))

    flow.state_machine.correct(taken.id, "missed", "Pill was dropped", "caregiver-1", now=utc(2026, 3, 4, 9, 0))
    with pytest.raises(ValidationError) as exc:
        flow.state_machine.correct(taken.id, "skipped", "Held by doctor", "caregiver-2", now=utc(2026, 3, 4, 9, 0))
    assert exc.value.field == "event_id"

    corrections = [e for e in events.events if e.data.original_event_id == taken.id]
    assert [e.event_type for e in corrections] == [EventType.DOSE_MISSED_CORRECTED]
    assert flow.state_machine.occurrence_state(command.id, SCHEDULED_FOR).state == OccurrenceState.MISSED


def test_concurrent_undos_keep_one(settings, make_command):
    events = BlindCorrelationEventLog()
    flow = MedLedgerFlow(events=events, permissions=AllowAllPermissions(), settings=settings, sleep=lambda s: None)
    command = flow.commands.create(make_command(end_date=date(2026, 3, 6)))
    flow.generator.generate_for_command(command, now=utc(2026, 3, 4, 7, 0))
    taken = flow.state_machine.mark_taken(command.id, SCHEDULED_FOR, "patient-1", now=utc(2026, 3, 4, 8, 5))

    flow.state_machine.undo(taken.id, "patient-1", "tapped by mistake", now=utc(2026, 3, 4, 8, 5, 10))
    with pytest.raises(ValidationError):
        flow.state_machine.undo(taken.id, "caregiver-1", "tapped by mistake", now=utc(2026, 3, 4, 8, 5, 12))
    assert len([e for e in events.events if e.event_type == EventType.DOSE_TAKEN_UNDONE]) == 1
