from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, Enum, Index, Integer, String, func, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from shared.contracts.enums import SUPERSEDING_EVENT_TYPES, CommandStatus, EventType


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


# At most one undo, correction or reschedule per original event.
SUPERSEDING_WHERE = "event_type IN (" + ", ".join(sorted(f"'{t.value}'" for t in SUPERSEDING_EVENT_TYPES)) + ")"


class Base(DeclarativeBase):
    """Declarative base for application models."""


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class MedicationCommandRecord(TimestampMixin, Base):
    __tablename__ = "medication_commands"
    __table_args__ = (
        Index("ix_medication_commands_patient_status", "patient_id", "status_current"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    patient_id: Mapped[str] = mapped_column(String(128), nullable=False)

    medication: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    schedule: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    reminders: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    grace_period: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    # Denormalized from the JSON blocks for store-side filtering.
    status_current: Mapped[CommandStatus] = mapped_column(
        Enum(CommandStatus, name="command_status", values_callable=_enum_values),
        nullable=False,
        default=CommandStatus.ACTIVE,
    )
    frequency: Mapped[str] = mapped_column(String(32), nullable=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_by: Mapped[str] = mapped_column(String(128), nullable=False, default="system")


class MedicationEventRecord(Base):
    __tablename__ = "medication_events"
    __table_args__ = (
        Index("ix_medication_events_patient_timestamp", "patient_id", "event_timestamp"),
        Index("ix_medication_events_occurrence", "command_id", "scheduled_for"),
        Index(
            "uq_medication_events_scheduled_occurrence",
            "command_id",
            "scheduled_for",
            unique=True,
            sqlite_where=text("event_type = 'dose_scheduled'"),
            postgresql_where=text("event_type = 'dose_scheduled'"),
        ),
        Index("ix_medication_events_scheduled_grace_end", "event_type", "grace_period_end"),
        Index(
            "uq_medication_events_superseded_original",
            "original_event_id",
            unique=True,
            sqlite_where=text(SUPERSEDING_WHERE),
            postgresql_where=text(SUPERSEDING_WHERE),
        ),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    command_id: Mapped[str] = mapped_column(String(64), nullable=False)
    patient_id: Mapped[str] = mapped_column(String(128), nullable=False)
    event_type: Mapped[EventType] = mapped_column(
        Enum(EventType, name="medication_event_type", values_callable=_enum_values),
        nullable=False,
    )
    medication_name: Mapped[str | None] = mapped_column(String(255))

    data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    timing: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    event_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    scheduled_for: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    grace_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    original_event_id: Mapped[str | None] = mapped_column(String(64), index=True)

    correlation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    created_by: Mapped[str] = mapped_column(String(128), nullable=False, default="system")
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
