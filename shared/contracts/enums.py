from enum import Enum


class Frequency(str, Enum):
    DAILY = "daily"
    TWICE_DAILY = "twice_daily"
    THREE_TIMES_DAILY = "three_times_daily"
    FOUR_TIMES_DAILY = "four_times_daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    AS_NEEDED = "as_needed"


DAILY_FAMILY = frozenset(
    {
        Frequency.DAILY,
        Frequency.TWICE_DAILY,
        Frequency.THREE_TIMES_DAILY,
        Frequency.FOUR_TIMES_DAILY,
    }
)


class GraceTier(str, Enum):
    CRITICAL = "critical"
    STANDARD = "standard"
    VITAMIN = "vitamin"
    PRN = "prn"


class CommandStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    HELD = "held"
    DISCONTINUED = "discontinued"


class EventType(str, Enum):
    DOSE_SCHEDULED = "dose_scheduled"
    DOSE_TAKEN = "dose_taken"
    DOSE_MISSED = "dose_missed"
    DOSE_SKIPPED = "dose_skipped"
    DOSE_SNOOZED = "dose_snoozed"
    DOSE_RESCHEDULED = "dose_rescheduled"
    DOSE_TAKEN_UNDONE = "dose_taken_undone"
    DOSE_MISSED_CORRECTED = "dose_missed_corrected"
    DOSE_SKIPPED_CORRECTED = "dose_skipped_corrected"
    ADHERENCE_PATTERN_DETECTED = "adherence_pattern_detected"

    MEDICATION_CREATED = "medication_created"
    MEDICATION_UPDATED = "medication_updated"
    MEDICATION_PAUSED = "medication_paused"
    MEDICATION_RESUMED = "medication_resumed"
    MEDICATION_HELD = "medication_held"
    MEDICATION_DISCONTINUED = "medication_discontinued"


TERMINAL_EVENT_TYPES = frozenset(
    {EventType.DOSE_TAKEN, EventType.DOSE_MISSED, EventType.DOSE_SKIPPED}
)

# Events that supersede an earlier event they are correlated to.
SUPERSEDING_EVENT_TYPES = frozenset(
    {
        EventType.DOSE_TAKEN_UNDONE,
        EventType.DOSE_MISSED_CORRECTED,
        EventType.DOSE_SKIPPED_CORRECTED,
        EventType.DOSE_RESCHEDULED,
    }
)

DOSE_EVENT_TYPES = frozenset(
    {
        EventType.DOSE_SCHEDULED,
        EventType.DOSE_TAKEN,
        EventType.DOSE_MISSED,
        EventType.DOSE_SKIPPED,
        EventType.DOSE_SNOOZED,
        EventType.DOSE_RESCHEDULED,
        EventType.DOSE_TAKEN_UNDONE,
        EventType.DOSE_MISSED_CORRECTED,
        EventType.DOSE_SKIPPED_CORRECTED,
    }
)


class OccurrenceState(str, Enum):
    SCHEDULED = "scheduled"
    TAKEN = "taken"
    MISSED = "missed"
    SKIPPED = "skipped"
    SNOOZED = "snoozed"
    RESCHEDULED = "rescheduled"


class CorrectedAction(str, Enum):
    MISSED = "missed"
    SKIPPED = "skipped"
    RESCHEDULED = "rescheduled"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class PatternType(str, Enum):
    CONSECUTIVE_MISSED = "consecutive_missed"
    LOW_ADHERENCE = "low_adherence"


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "ValidationError"
    EXPIRED_WINDOW = "ExpiredWindow"
    STALE_VERSION = "StaleVersion"
    NOT_FOUND = "NotFound"
    STORE_ERROR = "StoreError"
    DUPLICATE_SUPPRESSED = "DuplicateSuppressed"
    FORBIDDEN = "Forbidden"
