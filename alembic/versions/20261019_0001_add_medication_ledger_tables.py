"""add medication command and event ledger tables

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


COMMAND_STATUSES = ("active", "paused", "held", "discontinued")

EVENT_TYPES = (
    "dose_scheduled",
    "dose_taken",
    "dose_missed",
    "dose_skipped",
    "dose_snoozed",
    "dose_rescheduled",
    "dose_taken_undone",
    "dose_missed_corrected",
    "dose_skipped_corrected",
    "adherence_pattern_detected",
    "medication_created",
    "medication_updated",
    "medication_paused",
    "medication_resumed",
    "medication_held",
    "medication_discontinued",
)

SUPERSEDED_WHERE = (
    "event_type IN ('dose_missed_corrected', 'dose_rescheduled', "
    "'dose_skipped_corrected', 'dose_taken_undone')"
)


def upgrade() -> None:
    op.create_table(
        "medication_commands",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("patient_id", sa.String(length=128), nullable=False),
        sa.Column("medication", sa.JSON(), nullable=False),
        sa.Column("schedule", sa.JSON(), nullable=False),
        sa.Column("reminders", sa.JSON(), nullable=False),
        sa.Column("grace_period", sa.JSON(), nullable=False),
        sa.Column("status", sa.JSON(), nullable=False),
        sa.Column(
            "status_current",
            sa.Enum(*COMMAND_STATUSES, name="command_status"),
            nullable=False,
            server_default="active",
        ),
        sa.Column("frequency", sa.String(length=32), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_by", sa.String(length=128), nullable=False, server_default="system"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_medication_commands_patient_status",
        "medication_commands",
        ["patient_id", "status_current"],
    )

    op.create_table(
        "medication_events",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("command_id", sa.String(length=64), nullable=False),
        sa.Column("patient_id", sa.String(length=128), nullable=False),
        sa.Column("event_type", sa.Enum(*EVENT_TYPES, name="medication_event_type"), nullable=False),
        sa.Column("medication_name", sa.String(length=255), nullable=True),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("timing", sa.JSON(), nullable=False),
        sa.Column("event_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=True),
        sa.Column("grace_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("original_event_id", sa.String(length=64), nullable=True),
        sa.Column("correlation_id", sa.String(length=64), nullable=False),
        sa.Column("created_by", sa.String(length=128), nullable=False, server_default="system"),
        sa.Column("recorded_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_medication_events_patient_timestamp",
        "medication_events",
        ["patient_id", "event_timestamp"],
    )
    op.create_index(
        "ix_medication_events_occurrence",
        "medication_events",
        ["command_id", "scheduled_for"],
    )
    op.create_index(
        "uq_medication_events_scheduled_occurrence",
        "medication_events",
        ["command_id", "scheduled_for"],
        unique=True,
        postgresql_where=sa.text("event_type = 'dose_scheduled'"),
        sqlite_where=sa.text("event_type = 'dose_scheduled'"),
    )
    op.create_index(
        "ix_medication_events_scheduled_grace_end",
        "medication_events",
        ["event_type", "grace_period_end"],
    )
    op.create_index(
        "ix_medication_events_original_event_id",
        "medication_events",
        ["original_event_id"],
    )
    op.create_index(
        "uq_medication_events_superseded_original",
        "medication_events",
        ["original_event_id"],
        unique=True,
        postgresql_where=sa.text(SUPERSEDED_WHERE),
        sqlite_where=sa.text(SUPERSEDED_WHERE),
    )


def downgrade() -> None:
    op.drop_index("uq_medication_events_superseded_original", table_name="medication_events")
    op.drop_index("ix_medication_events_original_event_id", table_name="medication_events")
    op.drop_index("ix_medication_events_scheduled_grace_end", table_name="medication_events")
    op.drop_index("uq_medication_events_scheduled_occurrence", table_name="medication_events")
    op.drop_index("ix_medication_events_occurrence", table_name="medication_events")
    op.drop_index("ix_medication_events_patient_timestamp", table_name="medication_events")
    op.drop_table("medication_events")

    op.drop_index("ix_medication_commands_patient_status", table_name="medication_commands")
    op.drop_table("medication_commands")

    sa.Enum(name="medication_event_type").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="command_status").drop(op.get_bind(), checkfirst=True)
