from datetime import date, datetime, timedelta, timezone

import pytest

from medledger import AllowAllPermissions, FakeNotifier, InMemoryCommandStore, InMemoryEventLog, MedLedgerFlow
from shared.config import Settings
from shared.contracts.models import MedicationCommand, MedicationDescriptor, Schedule


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        GENERATION_HORIZON_DAYS=30,
        MAX_EVENTS_PER_COMMAND=100,
        UNDO_WINDOW_SECONDS=30,
        CORRECTION_WINDOW_HOURS=24,
        STORE_RETRY_ATTEMPTS=3,
        JOB_TIMEOUT_SECONDS=540,
    )


@pytest.fixture
def clock():
    # Wednesday, not a US federal holiday.
    return Clock(utc(2026, 3, 4, 7, 0))


@pytest.fixture
def flow(settings, clock):
    return MedLedgerFlow(
        commands=InMemoryCommandStore(),
        events=InMemoryEventLog(),
        permissions=AllowAllPermissions(),
        notifier=FakeNotifier(),
        settings=settings,
        clock=clock,
        sleep=lambda seconds: None,
    )


@pytest.fixture
def make_command():
    def factory(
        name: str = "Amoxicillin",
        frequency: str = "daily",
        times=("08:00",),
        tz: str = "UTC",
        start: date = date(2026, 3, 4),
        patient_id: str = "patient-1",
        **schedule,
    ) -> MedicationCommand:
        return MedicationCommand(
            patient_id=patient_id,
            medication=MedicationDescriptor(name=name, dosage="500mg"),
            schedule=Schedule(frequency=frequency, times=list(times), start_date=start, timezone=tz, **schedule),
        )

    return factory
