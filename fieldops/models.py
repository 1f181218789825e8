from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fieldops.db import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


class UtcDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend, including SQLite."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:  # type: ignore[no-untyped-def]
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:  # type: ignore[no-untyped-def]
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, enum.Enum):
    ADMIN = "ADMIN"
    ZONE_MANAGER = "ZONE_MANAGER"
    ZONE_USER = "ZONE_USER"
    SERVICE_PERSON = "SERVICE_PERSON"
    EXPERT_HELPDESK = "EXPERT_HELPDESK"
    EXTERNAL_USER = "EXTERNAL_USER"


class TicketStatus(str, enum.Enum):
    OPEN = "OPEN"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    WAITING_CUSTOMER = "WAITING_CUSTOMER"
    ONSITE_VISIT = "ONSITE_VISIT"
    ONSITE_VISIT_PLANNED = "ONSITE_VISIT_PLANNED"
    ONSITE_VISIT_STARTED = "ONSITE_VISIT_STARTED"
    ONSITE_VISIT_REACHED = "ONSITE_VISIT_REACHED"
    ONSITE_VISIT_IN_PROGRESS = "ONSITE_VISIT_IN_PROGRESS"
    ONSITE_VISIT_RESOLVED = "ONSITE_VISIT_RESOLVED"
    ONSITE_VISIT_PENDING = "ONSITE_VISIT_PENDING"
    ONSITE_VISIT_COMPLETED = "ONSITE_VISIT_COMPLETED"
    PO_NEEDED = "PO_NEEDED"
    PO_REACHED = "PO_REACHED"
    PO_RECEIVED = "PO_RECEIVED"
    SPARE_PARTS_NEEDED = "SPARE_PARTS_NEEDED"
    SPARE_PARTS_BOOKED = "SPARE_PARTS_BOOKED"
    SPARE_PARTS_DELIVERED = "SPARE_PARTS_DELIVERED"
    CLOSED_PENDING = "CLOSED_PENDING"
    CLOSED = "CLOSED"
    CANCELLED = "CANCELLED"
    REOPENED = "REOPENED"
    ON_HOLD = "ON_HOLD"
    ESCALATED = "ESCALATED"
    RESOLVED = "RESOLVED"
    PENDING = "PENDING"


class Priority(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class OnsiteVisitEvent(str, enum.Enum):
    STARTED = "STARTED"
    REACHED = "REACHED"
    WORK_STARTED = "WORK_STARTED"
    RESOLVED = "RESOLVED"
    PENDING = "PENDING"
    ENDED = "ENDED"


class AttendanceStatus(str, enum.Enum):
    CHECKED_IN = "CHECKED_IN"
    CHECKED_OUT = "CHECKED_OUT"
    EARLY_CHECKOUT = "EARLY_CHECKOUT"
    LATE = "LATE"
    ABSENT = "ABSENT"


class ActivityType(str, enum.Enum):
    TICKET_WORK = "TICKET_WORK"
    BD_VISIT = "BD_VISIT"
    PO_DISCUSSION = "PO_DISCUSSION"
    SPARE_REPLACEMENT = "SPARE_REPLACEMENT"
    TRAVEL = "TRAVEL"
    TRAINING = "TRAINING"
    MEETING = "MEETING"
    MAINTENANCE = "MAINTENANCE"
    DOCUMENTATION = "DOCUMENTATION"
    WORK_FROM_HOME = "WORK_FROM_HOME"
    INSTALLATION = "INSTALLATION"
    MAINTENANCE_PLANNED = "MAINTENANCE_PLANNED"
    REVIEW_MEETING = "REVIEW_MEETING"
    RELOCATION = "RELOCATION"
    OTHER = "OTHER"


class ActivityStageName(str, enum.Enum):
    STARTED = "STARTED"
    TRAVELING = "TRAVELING"
    ARRIVED = "ARRIVED"
    PLANNING = "PLANNING"
    ASSESSMENT = "ASSESSMENT"
    PREPARATION = "PREPARATION"
    WORK_IN_PROGRESS = "WORK_IN_PROGRESS"
    EXECUTION = "EXECUTION"
    TESTING = "TESTING"
    CUSTOMER_HANDOVER = "CUSTOMER_HANDOVER"
    DOCUMENTATION = "DOCUMENTATION"
    COMPLETED = "COMPLETED"


class NotificationJobStatus(str, enum.Enum):
    PENDING = "PENDING"
    SENDING = "SENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class ServiceZone(Base):
    __tablename__ = "service_zones"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))

    user_links: Mapped[list[UserZone]] = relationship(back_populates="zone")


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    role: Mapped[UserRole] = mapped_column(Enum(UserRole, name="user_role"), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(UtcDateTime(), nullable=False, default=_utcnow)

    zone_links: Mapped[list[UserZone]] = relationship(back_populates="user", cascade="all, delete-orphan")
    attendances: Mapped[list[Attendance]] = relationship(back_populates="user")
    activity_logs: Mapped[list[DailyActivityLog]] = relationship(back_populates="user")

    @property
    def zone_ids(self) -> list[int]:
        return sorted(link.zone_id for link in self.zone_links)


class UserZone(Base):
    __tablename__ = "user_zones"

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    zone_id: Mapped[int] = mapped_column(ForeignKey("service_zones.id", ondelete="CASCADE"), primary_key=True)

    user: Mapped[User] = relationship(back_populates="zone_links")
    zone: Mapped[ServiceZone] = relationship(back_populates="user_links")


class Ticket(Base):
    __tablename__ = "tickets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[TicketStatus] = mapped_column(
        Enum(TicketStatus, name="ticket_status"),
        nullable=False,
        default=TicketStatus.OPEN,
        index=True,
    )
    priority: Mapped[Priority] = mapped_column(
        Enum(Priority, name="ticket_priority"),
        nullable=False,
        default=Priority.MEDIUM,
    )
    customer_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    zone_id: Mapped[int | None] = mapped_column(
        ForeignKey("service_zones.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    owner_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    sub_owner_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    assigned_to_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    created_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime(), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime(), nullable=False, default=_utcnow, onupdate=_utcnow)
    last_status_change: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    time_in_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_time_open: Mapped[int | None] = mapped_column(Integer, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    resolution_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    visit_planned_date: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    visit_started_at: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    visit_reached_at: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    visit_in_progress_at: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    visit_resolved_at: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    visit_completed_at: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    po_reached_at: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    onsite_start_location: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    onsite_end_location: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    status_history: Mapped[list[TicketStatusHistory]] = relationship(
        back_populates="ticket",
        order_by="TicketStatusHistory.id",
    )
    location_snapshots: Mapped[list[TicketLocationSnapshot]] = relationship(
        back_populates="ticket",
        order_by="TicketLocationSnapshot.id",
    )
    feedback: Mapped[list[TicketFeedback]] = relationship(back_populates="ticket")


class TicketStatusHistory(Base):
    __tablename__ = "ticket_status_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ticket_id: Mapped[int] = mapped_column(ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    status: Mapped[TicketStatus] = mapped_column(Enum(TicketStatus, name="ticket_status"), nullable=False)
    previous_status: Mapped[TicketStatus | None] = mapped_column(
        Enum(TicketStatus, name="ticket_status"),
        nullable=True,
    )
    changed_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    changed_at: Mapped[datetime] = mapped_column(UtcDateTime(), nullable=False, default=_utcnow, index=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    time_in_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_time_open: Mapped[int | None] = mapped_column(Integer, nullable=True)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    accuracy: Mapped[float | None] = mapped_column(Float, nullable=True)
    location_source: Mapped[str | None] = mapped_column(String(20), nullable=True)
    photos: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)

    ticket: Mapped[Ticket] = relationship(back_populates="status_history")


class TicketLocationSnapshot(Base):
    __tablename__ = "ticket_location_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ticket_id: Mapped[int] = mapped_column(ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    status: Mapped[TicketStatus] = mapped_column(Enum(TicketStatus, name="ticket_status"), nullable=False)
    event: Mapped[OnsiteVisitEvent | None] = mapped_column(
        Enum(OnsiteVisitEvent, name="onsite_visit_event"),
        nullable=True,
    )
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    accuracy: Mapped[float | None] = mapped_column(Float, nullable=True)
    source: Mapped[str] = mapped_column(String(20), nullable=False, default="gps")
    captured_at: Mapped[datetime] = mapped_column(UtcDateTime(), nullable=False, default=_utcnow)

    ticket: Mapped[Ticket] = relationship(back_populates="location_snapshots")


class TicketFeedback(Base):
    __tablename__ = "ticket_feedback"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ticket_id: Mapped[int] = mapped_column(ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    rating: Mapped[int] = mapped_column(Integer, nullable=False)
    feedback: Mapped[str | None] = mapped_column(Text, nullable=True)
    submitted_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime(), nullable=False, default=_utcnow)

    ticket: Mapped[Ticket] = relationship(back_populates="feedback")


class Attendance(Base):
    __tablename__ = "attendances"
    __table_args__ = (
        Index(
            "uq_attendances_user_open",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'CHECKED_IN'"),
            sqlite_where=text("status = 'CHECKED_IN'"),
        ),
        Index("ix_attendances_user_check_in", "user_id", "check_in_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    check_in_at: Mapped[datetime] = mapped_column(UtcDateTime(), nullable=False, index=True)
    check_out_at: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    check_in_latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    check_in_longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    check_in_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    check_out_latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    check_out_longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    check_out_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    status: Mapped[AttendanceStatus] = mapped_column(
        Enum(AttendanceStatus, name="attendance_status"),
        nullable=False,
        default=AttendanceStatus.CHECKED_IN,
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime(), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime(), nullable=False, default=_utcnow, onupdate=_utcnow)

    user: Mapped[User] = relationship(back_populates="attendances")


class DailyActivityLog(Base):
    __tablename__ = "daily_activity_logs"
    __table_args__ = (Index("ix_daily_activity_logs_user_start", "user_id", "start_time"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    ticket_id: Mapped[int | None] = mapped_column(
        ForeignKey("tickets.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    activity_type: Mapped[ActivityType] = mapped_column(Enum(ActivityType, name="activity_type"), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    start_time: Mapped[datetime] = mapped_column(UtcDateTime(), nullable=False)
    end_time: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    location: Mapped[str | None] = mapped_column(Text, nullable=True)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    extra: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime(), nullable=False, default=_utcnow)

    user: Mapped[User] = relationship(back_populates="activity_logs")
    stages: Mapped[list[ActivityStage]] = relationship(
        back_populates="activity",
        order_by="ActivityStage.start_time",
        cascade="all, delete-orphan",
    )


class ActivityStage(Base):
    __tablename__ = "activity_stages"
    __table_args__ = (
        Index(
            "uq_activity_stages_activity_open",
            "activity_id",
            unique=True,
            postgresql_where=text("end_time IS NULL"),
            sqlite_where=text("end_time IS NULL"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    activity_id: Mapped[int] = mapped_column(
        ForeignKey("daily_activity_logs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    stage: Mapped[ActivityStageName] = mapped_column(Enum(ActivityStageName, name="activity_stage_name"), nullable=False)
    start_time: Mapped[datetime] = mapped_column(UtcDateTime(), nullable=False)
    end_time: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    location: Mapped[str | None] = mapped_column(Text, nullable=True)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    photos: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    extra: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, nullable=False, default=dict)

    activity: Mapped[DailyActivityLog] = relationship(back_populates="stages")


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts_utc: Mapped[datetime] = mapped_column(UtcDateTime(), nullable=False, default=_utcnow, index=True)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    entity_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)


class NotificationJob(Base):
    __tablename__ = "notification_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    recipients: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    scheduled_at_utc: Mapped[datetime] = mapped_column(UtcDateTime(), nullable=False, index=True)
    status: Mapped[NotificationJobStatus] = mapped_column(
        Enum(NotificationJobStatus, name="notification_job_status"),
        nullable=False,
        default=NotificationJobStatus.PENDING,
        index=True,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime(), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime(), nullable=False, default=_utcnow, onupdate=_utcnow)
