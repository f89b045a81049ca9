from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from functools import lru_cache
from typing import FrozenSet, List, Optional

from shared.contracts.enums import Frequency, GraceTier
from shared.contracts.errors import ValidationError
from shared.scheduling.timezones import ensure_utc, is_weekend, local_date


BASE_TOLERANCE_MINUTES = {
    GraceTier.CRITICAL: 15,
    GraceTier.STANDARD: 30,
    GraceTier.VITAMIN: 120,
    GraceTier.PRN: 0,
}

MAX_GRACE_MINUTES = 480
MIN_MULTIPLIER = 0.1
MAX_MULTIPLIER = 5.0

CRITICAL_KEYWORDS = (
    "insulin",
    "metformin",
    "lisinopril",
    "atorvastatin",
    "metoprolol",
    "warfarin",
    "digoxin",
    "levothyroxine",
    "prednisone",
    "amlodipine",
    "losartan",
    "carvedilol",
    "enalapril",
    "furosemide",
    "spironolactone",
    "diltiazem",
    "verapamil",
    "propranolol",
    "atenolol",
    "bisoprolol",
    "heart",
    "cardiac",
    "blood thinner",
    "anticoagulant",
)

VITAMIN_KEYWORDS = (
    "vitamin",
    "supplement",
    "calcium",
    "iron",
    "magnesium",
    "zinc",
    "multivitamin",
    "omega",
    "fish oil",
    "coq10",
    "biotin",
    "folic acid",
    "b12",
    "b6",
    "thiamine",
    "riboflavin",
    "niacin",
    "pantothenic",
)

OVERLAP_MAX = "max"
OVERLAP_MULTIPLY = "multiply"


def classify_medication(
    name: str,
    frequency: Optional[Frequency | str] = None,
    generic_name: Optional[str] = None,
) -> GraceTier:
    """Assign a grace tier from the medication name and schedule frequency."""
    if frequency is not None and str(getattr(frequency, "value", frequency)) == Frequency.AS_NEEDED.value:
        return GraceTier.PRN

    haystacks = [name.lower()]
    if generic_name:
        haystacks.append(generic_name.lower())

    if any(keyword in text for keyword in CRITICAL_KEYWORDS for text in haystacks):
        return GraceTier.CRITICAL
    if any(keyword in text for keyword in VITAMIN_KEYWORDS for text in haystacks):
        return GraceTier.VITAMIN
    return GraceTier.STANDARD


def _nth_weekday(year: int, month: int, weekday: int, n: int) -> date:
    first = date(year, month, 1)
    offset = (weekday - first.weekday()) % 7
    return first + timedelta(days=offset + 7 * (n - 1))


def _last_weekday(year: int, month: int, weekday: int) -> date:
    if month == 12:
        last = date(year, 12, 31)
    else:
        last = date(year, month + 1, 1) - timedelta(days=1)
    return last - timedelta(days=(last.weekday() - weekday) % 7)


@lru_cache(maxsize=32)
def us_holidays(year: int) -> FrozenSet[date]:
    """US federal holidays observed on their calendar date."""
    monday, thursday = 0, 3
    return frozenset(
        {
            date(year, 1, 1),
            _nth_weekday(year, 1, monday, 3),
            _nth_weekday(year, 2, monday, 3),
            _last_weekday(year, 5, monday),
            date(year, 7, 4),
            _nth_weekday(year, 9, monday, 1),
            _nth_weekday(year, 10, monday, 2),
            date(year, 11, 11),
            _nth_weekday(year, 11, thursday, 4),
            date(year, 12, 25),
        }
    )


def is_holiday(day: date) -> bool:
    return day in us_holidays(day.year)


def clear_holiday_cache() -> None:
    us_holidays.cache_clear()


@dataclass(frozen=True)
class GracePolicy:
    weekend_multiplier: float = 1.5
    holiday_multiplier: float = 2.0
    overlap: str = OVERLAP_MAX

    def __post_init__(self) -> None:
        for name in ("weekend_multiplier", "holiday_multiplier"):
            value = getattr(self, name)
            if not MIN_MULTIPLIER <= value <= MAX_MULTIPLIER:
                raise ValidationError(
                    f"{name} must be between {MIN_MULTIPLIER} and {MAX_MULTIPLIER}",
                    field=name,
                )
        if self.overlap not in {OVERLAP_MAX, OVERLAP_MULTIPLY}:
            raise ValidationError(f"Invalid overlap rule: {self.overlap}", field="overlap")

    def multiplier_for(self, weekend: bool, holiday: bool) -> float:
        if weekend and holiday:
            if self.overlap == OVERLAP_MULTIPLY:
                return self.weekend_multiplier * self.holiday_multiplier
            return max(self.weekend_multiplier, self.holiday_multiplier)
        if holiday:
            return self.holiday_multiplier
        if weekend:
            return self.weekend_multiplier
        return 1.0


@dataclass(frozen=True)
class GraceWindow:
    minutes: int
    end: datetime
    multiplier: float
    is_weekend: bool
    is_holiday: bool
    applied_rules: List[str] = field(default_factory=list)


class GracePeriodResolver:
    """Computes the tolerance window after a scheduled dose."""

    def __init__(self, policy: Optional[GracePolicy] = None) -> None:
        self.policy = policy or GracePolicy()

    def base_minutes(self, tier: GraceTier, override_minutes: Optional[int] = None) -> int:
        if override_minutes is not None:
            if not 0 <= override_minutes <= MAX_GRACE_MINUTES:
                raise ValidationError(
                    f"Grace period override must be between 0 and {MAX_GRACE_MINUTES} minutes",
                    field="grace_period.override_minutes",
                )
            return override_minutes
        return BASE_TOLERANCE_MINUTES[GraceTier(tier)]

    def resolve(
        self,
        tier: GraceTier,
        scheduled_for: datetime,
        tz: str,
        override_minutes: Optional[int] = None,
    ) -> GraceWindow:
        scheduled_for = ensure_utc(scheduled_for)
        tier = GraceTier(tier)
        base = self.base_minutes(tier, override_minutes)
        rules = ["medication_override" if override_minutes is not None else f"type_{tier.value}"]

        day = local_date(scheduled_for, tz)
        weekend = is_weekend(day)
        holiday = is_holiday(day)
        multiplier = 1.0
        if tier != GraceTier.PRN:
            multiplier = self.policy.multiplier_for(weekend, holiday)
            if weekend:
                rules.append("weekend_multiplier")
            if holiday:
                rules.append("holiday_multiplier")

        minutes = math.floor(base * multiplier)
        return GraceWindow(
            minutes=minutes,
            end=scheduled_for + timedelta(minutes=minutes),
            multiplier=multiplier,
            is_weekend=weekend,
            is_holiday=holiday,
            applied_rules=rules,
        )


def build_resolver(settings) -> GracePeriodResolver:
    """Resolver configured from ``Settings`` multipliers and overlap rule."""
    return GracePeriodResolver(
        GracePolicy(
            weekend_multiplier=settings.WEEKEND_MULTIPLIER,
            holiday_multiplier=settings.HOLIDAY_MULTIPLIER,
            overlap=settings.MULTIPLIER_OVERLAP,
        )
    )
