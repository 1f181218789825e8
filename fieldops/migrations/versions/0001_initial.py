"""Initial field operations schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TICKET_STATUSES = (
    "OPEN",
    "ASSIGNED",
    "IN_PROGRESS",
    "WAITING_CUSTOMER",
    "ONSITE_VISIT",
    "ONSITE_VISIT_PLANNED",
    "ONSITE_VISIT_STARTED",
    "ONSITE_VISIT_REACHED",
    "ONSITE_VISIT_IN_PROGRESS",
    "ONSITE_VISIT_RESOLVED",
    "ONSITE_VISIT_PENDING",
    "ONSITE_VISIT_COMPLETED",
    "PO_NEEDED",
    "PO_REACHED",
    "PO_RECEIVED",
    "SPARE_PARTS_NEEDED",
    "SPARE_PARTS_BOOKED",
    "SPARE_PARTS_DELIVERED",
    "CLOSED_PENDING",
    "CLOSED",
    "CANCELLED",
    "REOPENED",
    "ON_HOLD",
    "ESCALATED",
    "RESOLVED",
    "PENDING",
)

user_role = postgresql.ENUM(
    "ADMIN",
    "ZONE_MANAGER",
    "ZONE_USER",
    "SERVICE_PERSON",
    "EXPERT_HELPDESK",
    "EXTERNAL_USER",
    name="user_role",
    create_type=False,
)
ticket_status = postgresql.ENUM(*TICKET_STATUSES, name="ticket_status", create_type=False)
ticket_priority = postgresql.ENUM("LOW", "MEDIUM", "HIGH", "CRITICAL", name="ticket_priority", create_type=False)
onsite_visit_event = postgresql.ENUM(
    "STARTED",
    "REACHED",
    "WORK_STARTED",
    "RESOLVED",
    "PENDING",
    "ENDED",
    name="onsite_visit_event",
    create_type=False,
)
attendance_status = postgresql.ENUM(
    "CHECKED_IN",
    "CHECKED_OUT",
    "EARLY_CHECKOUT",
    "LATE",
    "ABSENT",
    name="attendance_status",
    create_type=False,
)
activity_type = postgresql.ENUM(
    "TICKET_WORK",
    "BD_VISIT",
    "PO_DISCUSSION",
    "SPARE_REPLACEMENT",
    "TRAVEL",
    "TRAINING",
    "MEETING",
    "MAINTENANCE",
    "DOCUMENTATION",
    "WORK_FROM_HOME",
    "INSTALLATION",
    "MAINTENANCE_PLANNED",
    "REVIEW_MEETING",
    "RELOCATION",
    "OTHER",
    name="activity_type",
    create_type=False,
)
activity_stage_name = postgresql.ENUM(
    "STARTED",
    "TRAVELING",
    "ARRIVED",
    "PLANNING",
    "ASSESSMENT",
    "PREPARATION",
    "WORK_IN_PROGRESS",
    "EXECUTION",
    "TESTING",
    "CUSTOMER_HANDOVER",
    "DOCUMENTATION",
    "COMPLETED",
    name="activity_stage_name",
    create_type=False,
)
notification_job_status = postgresql.ENUM(
    "PENDING",
    "SENDING",
    "SENT",
    "FAILED",
    name="notification_job_status",
    create_type=False,
)

ALL_ENUMS = (
    user_role,
    ticket_status,
    ticket_priority,
    onsite_visit_event,
    attendance_status,
    activity_type,
    activity_stage_name,
    notification_job_status,
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in ALL_ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "service_zones",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.UniqueConstraint("name", name="uq_service_zones_name"),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("role", user_role, nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.UniqueConstraint("email", name="uq_users_email"),
    )

    op.create_table(
        "user_zones",
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("zone_id", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["zone_id"], ["service_zones.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("user_id", "zone_id"),
    )

    op.create_table(
        "tickets",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", ticket_status, nullable=False, server_default=sa.text("'OPEN'")),
        sa.Column("priority", ticket_priority, nullable=False, server_default=sa.text("'MEDIUM'")),
        sa.Column("customer_id", sa.Integer(), nullable=True),
        sa.Column("zone_id", sa.Integer(), nullable=True),
        sa.Column("owner_id", sa.Integer(), nullable=True),
        sa.Column("sub_owner_id", sa.Integer(), nullable=True),
        sa.Column("assigned_to_id", sa.Integer(), nullable=True),
        sa.Column("created_by_id", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.Column("last_status_change", sa.DateTime(timezone=True), nullable=True),
        sa.Column("time_in_status", sa.Integer(), nullable=True),
        sa.Column("total_time_open", sa.Integer(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolution_summary", sa.Text(), nullable=True),
        sa.Column("visit_planned_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("visit_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("visit_reached_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("visit_in_progress_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("visit_resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("visit_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("po_reached_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("onsite_start_location", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("onsite_end_location", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.ForeignKeyConstraint(["zone_id"], ["service_zones.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["owner_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["sub_owner_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["assigned_to_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["created_by_id"], ["users.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_tickets_status", "tickets", ["status"], unique=False)
    op.create_index("ix_tickets_customer_id", "tickets", ["customer_id"], unique=False)
    op.create_index("ix_tickets_zone_id", "tickets", ["zone_id"], unique=False)
    op.create_index("ix_tickets_assigned_to_id", "tickets", ["assigned_to_id"], unique=False)

    op.create_table(
        "ticket_status_history",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("ticket_id", sa.Integer(), nullable=False),
        sa.Column("status", ticket_status, nullable=False),
        sa.Column("previous_status", ticket_status, nullable=True),
        sa.Column("changed_by_id", sa.Integer(), nullable=True),
        sa.Column(
            "changed_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("time_in_status", sa.Integer(), nullable=True),
        sa.Column("total_time_open", sa.Integer(), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("accuracy", sa.Float(), nullable=True),
        sa.Column("location_source", sa.String(length=20), nullable=True),
        sa.Column(
            "photos",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.ForeignKeyConstraint(["ticket_id"], ["tickets.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["changed_by_id"], ["users.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_ticket_status_history_ticket_id", "ticket_status_history", ["ticket_id"], unique=False)
    op.create_index("ix_ticket_status_history_changed_at", "ticket_status_history", ["changed_at"], unique=False)

    op.create_table(
        "ticket_location_snapshots",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("ticket_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("status", ticket_status, nullable=False),
        sa.Column("event", onsite_visit_event, nullable=True),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("accuracy", sa.Float(), nullable=True),
        sa.Column("source", sa.String(length=20), nullable=False, server_default=sa.text("'gps'")),
        sa.Column(
            "captured_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["ticket_id"], ["tickets.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="SET NULL"),
    )
    op.create_index(
        "ix_ticket_location_snapshots_ticket_id",
        "ticket_location_snapshots",
        ["ticket_id"],
        unique=False,
    )

    op.create_table(
        "ticket_feedback",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("ticket_id", sa.Integer(), nullable=False),
        sa.Column("rating", sa.Integer(), nullable=False),
        sa.Column("feedback", sa.Text(), nullable=True),
        sa.Column("submitted_by_id", sa.Integer(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["ticket_id"], ["tickets.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["submitted_by_id"], ["users.id"], ondelete="SET NULL"),
        sa.CheckConstraint("rating BETWEEN 1 AND 5", name="ck_ticket_feedback_rating"),
    )
    op.create_index("ix_ticket_feedback_ticket_id", "ticket_feedback", ["ticket_id"], unique=False)

    op.create_table(
        "attendances",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("check_in_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("check_out_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("check_in_latitude", sa.Float(), nullable=True),
        sa.Column("check_in_longitude", sa.Float(), nullable=True),
        sa.Column("check_in_address", sa.Text(), nullable=True),
        sa.Column("check_out_latitude", sa.Float(), nullable=True),
        sa.Column("check_out_longitude", sa.Float(), nullable=True),
        sa.Column("check_out_address", sa.Text(), nullable=True),
        sa.Column("total_hours", sa.Float(), nullable=True),
        sa.Column("status", attendance_status, nullable=False, server_default=sa.text("'CHECKED_IN'")),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_attendances_check_in_at", "attendances", ["check_in_at"], unique=False)
    op.create_index("ix_attendances_user_check_in", "attendances", ["user_id", "check_in_at"], unique=False)
    op.create_index(
        "uq_attendances_user_open",
        "attendances",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("status = 'CHECKED_IN'"),
    )

    op.create_table(
        "daily_activity_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("ticket_id", sa.Integer(), nullable=True),
        sa.Column("activity_type", activity_type, nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration", sa.Integer(), nullable=True),
        sa.Column("location", sa.Text(), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column(
            "metadata",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["ticket_id"], ["tickets.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_daily_activity_logs_ticket_id", "daily_activity_logs", ["ticket_id"], unique=False)
    op.create_index(
        "ix_daily_activity_logs_user_start",
        "daily_activity_logs",
        ["user_id", "start_time"],
        unique=False,
    )

    op.create_table(
        "activity_stages",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("activity_id", sa.Integer(), nullable=False),
        sa.Column("stage", activity_stage_name, nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration", sa.Integer(), nullable=True),
        sa.Column("location", sa.Text(), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column(
            "photos",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column(
            "metadata",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.ForeignKeyConstraint(["activity_id"], ["daily_activity_logs.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_activity_stages_activity_id", "activity_stages", ["activity_id"], unique=False)
    op.create_index(
        "uq_activity_stages_activity_open",
        "activity_stages",
        ["activity_id"],
        unique=True,
        postgresql_where=sa.text("end_time IS NULL"),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "ts_utc",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column("actor_id", sa.String(length=64), nullable=False),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=True),
        sa.Column("entity_id", sa.String(length=64), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "details",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("request_id", sa.String(length=64), nullable=True),
    )
    op.create_index("ix_audit_logs_ts_utc", "audit_logs", ["ts_utc"], unique=False)
    op.create_index("ix_audit_logs_actor_id", "audit_logs", ["actor_id"], unique=False)
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"], unique=False)

    op.create_table(
        "notification_jobs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("event", sa.String(length=100), nullable=False),
        sa.Column(
            "payload",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column(
            "recipients",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("scheduled_at_utc", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", notification_job_status, nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("idempotency_key", sa.String(length=255), nullable=False),
        *_timestamps(),
    )
    op.create_index(
        "ix_notification_jobs_scheduled_at_utc",
        "notification_jobs",
        ["scheduled_at_utc"],
        unique=False,
    )
    op.create_index("ix_notification_jobs_status", "notification_jobs", ["status"], unique=False)
    op.create_index(
        "ix_notification_jobs_idempotency_key",
        "notification_jobs",
        ["idempotency_key"],
        unique=True,
    )


def downgrade() -> None:
    op.drop_index("ix_notification_jobs_idempotency_key", table_name="notification_jobs")
    op.drop_index("ix_notification_jobs_status", table_name="notification_jobs")
    op.drop_index("ix_notification_jobs_scheduled_at_utc", table_name="notification_jobs")
    op.drop_table("notification_jobs")
    op.drop_index("ix_audit_logs_action", table_name="audit_logs")
    op.drop_index("ix_audit_logs_actor_id", table_name="audit_logs")
    op.drop_index("ix_audit_logs_ts_utc", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("uq_activity_stages_activity_open", table_name="activity_stages")
    op.drop_index("ix_activity_stages_activity_id", table_name="activity_stages")
    op.drop_table("activity_stages")
    op.drop_index("ix_daily_activity_logs_user_start", table_name="daily_activity_logs")
    op.drop_index("ix_daily_activity_logs_ticket_id", table_name="daily_activity_logs")
    op.drop_table("daily_activity_logs")
    op.drop_index("uq_attendances_user_open", table_name="attendances")
    op.drop_index("ix_attendances_user_check_in", table_name="attendances")
    op.drop_index("ix_attendances_check_in_at", table_name="attendances")
    op.drop_table("attendances")
    op.drop_index("ix_ticket_feedback_ticket_id", table_name="ticket_feedback")
    op.drop_table("ticket_feedback")
    op.drop_index("ix_ticket_location_snapshots_ticket_id", table_name="ticket_location_snapshots")
    op.drop_table("ticket_location_snapshots")
    op.drop_index("ix_ticket_status_history_changed_at", table_name="ticket_status_history")
    op.drop_index("ix_ticket_status_history_ticket_id", table_name="ticket_status_history")
    op.drop_table("ticket_status_history")
    op.drop_index("ix_tickets_assigned_to_id", table_name="tickets")
    op.drop_index("ix_tickets_zone_id", table_name="tickets")
    op.drop_index("ix_tickets_customer_id", table_name="tickets")
    op.drop_index("ix_tickets_status", table_name="tickets")
    op.drop_table("tickets")
    op.drop_table("user_zones")
    op.drop_table("users")
    op.drop_table("service_zones")

    bind = op.get_bind()
    for enum_type in reversed(ALL_ENUMS):
        enum_type.drop(bind, checkfirst=True)
