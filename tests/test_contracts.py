import unittest
from datetime import date, datetime, timezone

import pytest
from pydantic import ValidationError as PydanticValidationError

from shared.contracts.enums import ErrorCode, EventType, Frequency, GraceTier
from shared.contracts.errors import ExpiredWindow, ValidationError
from shared.contracts.models import (
    ActionResponse,
    EventTiming,
    MedicationCommand,
    MedicationDescriptor,
    MedicationEvent,
    Schedule,
    normalize_frequency,
)


class ScheduleContractTests(unittest.TestCase):
    def test_times_are_sorted_and_deduplicated(self):
        schedule = Schedule(frequency="twice_daily", times=["20:00", "08:00", "20:00"], start_date=date(2026, 3, 4))
        self.assertEqual(schedule.times, ["08:00", "20:00"])

    def test_invalid_time_rejected(self):
        with self.assertRaises(PydanticValidationError):
            Schedule(times=["8am"], start_date=date(2026, 3, 4))

    def test_weekly_requires_days(self):
        with self.assertRaises(PydanticValidationError):
            Schedule(frequency="weekly", times=["08:00"], start_date=date(2026, 3, 4))

    def test_monthly_defaults_to_first_day(self):
        schedule = Schedule(frequency="monthly", times=["08:00"], start_date=date(2026, 3, 4))
        self.assertEqual(schedule.day_of_month, 1)

    def test_end_date_must_follow_start(self):
        with self.assertRaises(PydanticValidationError):
            Schedule(times=["08:00"], start_date=date(2026, 3, 4), end_date=date(2026, 3, 1))

    def test_end_date_clears_indefinite(self):
        schedule = Schedule(times=["08:00"], start_date=date(2026, 3, 4), end_date=date(2026, 3, 10))
        self.assertFalse(schedule.is_indefinite)

    def test_explicit_indefinite_conflicts_with_end_date(self):
        with self.assertRaises(PydanticValidationError):
            Schedule(times=["08:00"], start_date=date(2026, 3, 4), end_date=date(2026, 3, 10), is_indefinite=True)

    def test_unknown_timezone_rejected(self):
        with self.assertRaises(PydanticValidationError):
            Schedule(times=["08:00"], start_date=date(2026, 3, 4), timezone="Nowhere/City")

    def test_scheduled_frequency_needs_times(self):
        with self.assertRaises(PydanticValidationError):
            Schedule(frequency="daily", times=[], start_date=date(2026, 3, 4))
        prn = Schedule(frequency="as_needed", times=[], start_date=date(2026, 3, 4))
        self.assertEqual(prn.frequency, Frequency.AS_NEEDED)


def test_frequency_aliases():
    assert normalize_frequency("BID") == Frequency.TWICE_DAILY
    assert normalize_frequency("three-times daily") == Frequency.THREE_TIMES_DAILY
    assert normalize_frequency("prn") == Frequency.AS_NEEDED
    assert normalize_frequency("every other fortnight") == Frequency.DAILY


def test_prn_command_forces_prn_tier():
    command = MedicationCommand(
        patient_id="patient-1",
        medication=MedicationDescriptor(name="Ibuprofen", dosage="200mg"),
        schedule=Schedule(frequency="as_needed", start_date=date(2026, 3, 4)),
    )
    assert command.grace_period.medication_type == GraceTier.PRN
    assert command.is_prn
    assert not command.is_schedulable


def test_event_timing_is_normalized_to_utc():
    timing = EventTiming(event_timestamp=datetime(2026, 3, 4, 8, 0), scheduled_for=datetime(2026, 3, 4, 8, 0))
    assert timing.event_timestamp.tzinfo == timezone.utc
    event = MedicationEvent(command_id="cmd_1", patient_id="patient-1", event_type="dose_scheduled", timing=timing)
    assert event.event_type == EventType.DOSE_SCHEDULED
    assert event.occurrence_key == ("cmd_1", datetime(2026, 3, 4, 8, 0, tzinfo=timezone.utc))


def test_events_are_immutable():
    event = MedicationEvent(command_id="cmd_1", patient_id="patient-1", event_type=EventType.DOSE_TAKEN)
    with pytest.raises(PydanticValidationError):
        event.command_id = "cmd_2"


def test_action_response_envelopes():
    ok = ActionResponse.ok({"event": {"id": "evt_1"}})
    assert ok.success and ok.error is None

    failed = ActionResponse.fail(ExpiredWindow("Undo window has expired", field="event_id"))
    assert not failed.success
    assert failed.error_code == ErrorCode.EXPIRED_WINDOW
    assert failed.model_dump(mode="json")["error_code"] == "ExpiredWindow"


def test_error_to_dict():
    assert ValidationError("bad", field="reason").to_dict() == {
        "code": "ValidationError",
        "message": "bad",
        "field": "reason",
    }
