from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from fieldops.audit import emit_audit_event, record_audit
from fieldops.db import commit_or_raise, flush_or_raise
from fieldops.errors import ConflictError, NotFoundError, ValidationError
from fieldops.models import (
    ActivityStage,
    ActivityStageName,
    ActivityType,
    Attendance,
    DailyActivityLog,
)
from fieldops.security import Actor
from fieldops.services.attendance import get_open_session, validate_coordinates
from fieldops.services.clock import local_day_bounds_utc, local_day_of, normalize_ts, rounded_minutes
from fieldops.services.geocoding import GeocodingService, resolve_address
from fieldops.services.photo_storage import PhotoStore, PhotoUpload, store_photos

logger = logging.getLogger("fieldops.activities")


def _step(stage: ActivityStageName, description: str, required: bool = True) -> dict[str, Any]:
    return {"stage": stage.value, "required": required, "description": description}


N = ActivityStageName

STAGE_TEMPLATES: dict[str, list[dict[str, Any]]] = {
    "PO_DISCUSSION": [
        _step(N.STARTED, "Begin PO discussion"),
        _step(N.TRAVELING, "Travel to location"),
        _step(N.ARRIVED, "Arrive at customer location"),
        _step(N.PLANNING, "Discuss PO requirements"),
        _step(N.DOCUMENTATION, "Document discussion outcomes"),
        _step(N.COMPLETED, "Complete PO discussion"),
    ],
    "SPARE_REPLACEMENT": [
        _step(N.STARTED, "Begin spare replacement"),
        _step(N.TRAVELING, "Travel to location"),
        _step(N.ARRIVED, "Arrive at customer location"),
        _step(N.ASSESSMENT, "Assess what needs replacement"),
        _step(N.EXECUTION, "Replace the spare part"),
        _step(N.TESTING, "Test the replacement"),
        _step(N.CUSTOMER_HANDOVER, "Customer handover", required=False),
        _step(N.COMPLETED, "Complete replacement"),
    ],
    "INSTALLATION": [
        _step(N.STARTED, "Begin installation"),
        _step(N.TRAVELING, "Travel to location"),
        _step(N.ARRIVED, "Arrive at installation site"),
        _step(N.ASSESSMENT, "Site assessment"),
        _step(N.PREPARATION, "Prepare for installation"),
        _step(N.EXECUTION, "Perform installation"),
        _step(N.TESTING, "Test installation"),
        _step(N.CUSTOMER_HANDOVER, "Customer training/handover"),
        _step(N.DOCUMENTATION, "Document installation"),
        _step(N.COMPLETED, "Complete installation"),
    ],
    "MAINTENANCE_PLANNED": [
        _step(N.STARTED, "Begin maintenance"),
        _step(N.TRAVELING, "Travel to location"),
        _step(N.ARRIVED, "Arrive at maintenance site"),
        _step(N.PREPARATION, "Prepare maintenance tools"),
        _step(N.EXECUTION, "Perform maintenance"),
        _step(N.TESTING, "Test after maintenance"),
        _step(N.DOCUMENTATION, "Document maintenance"),
        _step(N.COMPLETED, "Complete maintenance"),
    ],
    "DEFAULT": [
        _step(N.STARTED, "Begin activity"),
        _step(N.TRAVELING, "Travel to location", required=False),
        _step(N.ARRIVED, "Arrive at location", required=False),
        _step(N.WORK_IN_PROGRESS, "Work in progress"),
        _step(N.COMPLETED, "Complete activity"),
    ],
}


@dataclass(slots=True)
class StageChange:
    stage: ActivityStage
    activity: DailyActivityLog
    closed_stage_ids: list[int]
    activity_closed: bool


def get_stage_template(activity_type: str) -> dict[str, Any]:
    key = (activity_type or "").strip().upper()
    template = STAGE_TEMPLATES.get(key, STAGE_TEMPLATES["DEFAULT"])
    return {"activity_type": key or "DEFAULT", "stages": [dict(item) for item in template]}


def _require_checked_in(db: Session, actor: Actor) -> Attendance:
    session = get_open_session(db, actor.id)
    if session is None:
        raise ValidationError(
            "You must check in before logging activities.",
            code="CHECK_IN_REQUIRED",
        )
    return session


def _resolve_location(
    geocoder: GeocodingService | None,
    *,
    latitude: Any,
    longitude: Any,
    location: str | None,
    location_source: str | None,
) -> tuple[float | None, float | None, str | None]:
    if latitude is None and longitude is None:
        return None, None, (location or "").strip() or None
    lat, lng = validate_coordinates(latitude, longitude)
    return lat, lng, resolve_address(geocoder, lat, lng, address=location, location_source=location_source)


def _close_activity(activity: DailyActivityLog, end_at: datetime) -> None:
    end = max(normalize_ts(end_at), normalize_ts(activity.start_time))
    activity.end_time = end
    activity.duration = rounded_minutes(activity.start_time, end)


def _close_stage(stage: ActivityStage, end_at: datetime) -> None:
    end = max(normalize_ts(end_at), normalize_ts(stage.start_time))
    stage.end_time = end
    stage.duration = rounded_minutes(stage.start_time, end)


def _lock_own_activity(db: Session, actor: Actor, activity_id: int) -> DailyActivityLog:
    activity = db.scalar(
        select(DailyActivityLog)
        .where(DailyActivityLog.id == activity_id, DailyActivityLog.user_id == actor.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if activity is None:
        raise NotFoundError("Activity not found or access denied.", code="ACTIVITY_NOT_FOUND")
    return activity


def _open_stages(db: Session, activity_id: int) -> list[ActivityStage]:
    return list(
        db.scalars(
            select(ActivityStage)
            .where(ActivityStage.activity_id == activity_id, ActivityStage.end_time.is_(None))
            .order_by(ActivityStage.start_time.asc(), ActivityStage.id.asc())
            .execution_options(populate_existing=True)
        ).all()
    )


def create_activity(
    db: Session,
    actor: Actor,
    *,
    activity_type: ActivityType,
    title: str,
    description: str | None = None,
    start_time: datetime | None = None,
    end_time: datetime | None = None,
    ticket_id: int | None = None,
    latitude: Any = None,
    longitude: Any = None,
    location: str | None = None,
    location_source: str | None = None,
    metadata: dict[str, Any] | None = None,
    geocoder: GeocodingService | None = None,
    now: datetime | None = None,
    request_id: str | None = None,
) -> DailyActivityLog:
    reference = normalize_ts(now)
    session = _require_checked_in(db, actor)
    if local_day_of(session.check_in_at) != local_day_of(reference):
        raise ValidationError("You must check in today before logging activities.", code="CHECK_IN_REQUIRED")

    clean_title = (title or "").strip()
    if not clean_title:
        raise ValidationError("title is required.")

    start = normalize_ts(start_time) if start_time is not None else reference
    end = normalize_ts(end_time) if end_time is not None else None
    if end is not None and end < start:
        raise ValidationError("end_time must not be before start_time.")

    lat, lng, address = _resolve_location(
        geocoder,
        latitude=latitude,
        longitude=longitude,
        location=location,
        location_source=location_source,
    )

    activity = DailyActivityLog(
        user_id=actor.id,
        ticket_id=ticket_id,
        activity_type=activity_type,
        title=clean_title,
        description=description,
        start_time=start,
        end_time=end,
        duration=rounded_minutes(start, end) if end is not None else None,
        location=address,
        latitude=lat,
        longitude=lng,
        extra=dict(metadata or {}),
    )
    db.add(activity)
    flush_or_raise(db)
    audit = record_audit(
        db,
        actor_id=actor.id,
        action="ACTIVITY_LOG_ADDED",
        entity_type="daily_activity_log",
        entity_id=activity.id,
        details={
            "activity_type": activity_type.value,
            "title": clean_title,
            "start_time": start.isoformat(),
            "end_time": end.isoformat() if end else None,
            "location": address,
            "ticket_id": ticket_id,
        },
        request_id=request_id,
    )
    commit_or_raise(db)
    emit_audit_event(audit)
    return activity


def end_activity(
    db: Session,
    actor: Actor,
    activity_id: int,
    *,
    end_time: datetime | None = None,
    description: str | None = None,
    now: datetime | None = None,
    request_id: str | None = None,
) -> DailyActivityLog:
    end = normalize_ts(end_time if end_time is not None else now)
    activity = _lock_own_activity(db, actor, activity_id)
    if activity.end_time is not None:
        raise ConflictError("Activity is already closed.", code="ACTIVITY_ALREADY_CLOSED")
    if end < normalize_ts(activity.start_time):
        raise ValidationError("end_time must not be before start_time.")

    for stage in _open_stages(db, activity.id):
        _close_stage(stage, end)
    _close_activity(activity, end)
    if description is not None:
        activity.description = description

    audit = record_audit(
        db,
        actor_id=actor.id,
        action="ACTIVITY_LOG_UPDATED",
        entity_type="daily_activity_log",
        entity_id=activity.id,
        details={"end_time": activity.end_time.isoformat(), "duration": activity.duration},
        request_id=request_id,
    )
    commit_or_raise(db)
    emit_audit_event(audit)
    return activity


def create_stage(
    db: Session,
    actor: Actor,
    activity_id: int,
    *,
    stage: ActivityStageName,
    latitude: Any = None,
    longitude: Any = None,
    location: str | None = None,
    location_source: str | None = None,
    notes: str | None = None,
    photos: list[PhotoUpload] | None = None,
    geocoder: GeocodingService | None = None,
    photo_store: PhotoStore | None = None,
    now: datetime | None = None,
    request_id: str | None = None,
) -> StageChange:
    """Start ``stage`` on an activity, closing whichever stage is still open.

    Closing the previous stage and inserting the new one happen in one
    transaction under a lock on the activity row; the partial unique index
    on open stages backs this up across connections.
    """
    reference = normalize_ts(now)
    _require_checked_in(db, actor)

    lat, lng, address = _resolve_location(
        geocoder,
        latitude=latitude,
        longitude=longitude,
        location=location,
        location_source=location_source,
    )
    activity = _lock_own_activity(db, actor, activity_id)
    if activity.end_time is not None:
        raise ConflictError("Activity is already closed.", code="ACTIVITY_CLOSED")
    photo_outcome = store_photos(
        photo_store,
        list(photos or []),
        {"activity_id": activity_id, "user_id": actor.id, "type": "activity"},
    )

    closed_ids: list[int] = []
    for open_stage in _open_stages(db, activity.id):
        _close_stage(open_stage, reference)
        closed_ids.append(open_stage.id)
    flush_or_raise(db)

    new_stage = ActivityStage(
        activity_id=activity.id,
        stage=stage,
        start_time=reference,
        location=address,
        latitude=lat,
        longitude=lng,
        notes=notes,
        photos=photo_outcome.entries,
        extra={
            "created_by": actor.id,
            "location_source": location_source or "gps",
            **({"photo_summary": photo_outcome.summary} if photo_outcome.summary else {}),
        },
    )
    activity_closed = False
    if stage == ActivityStageName.COMPLETED:
        _close_stage(new_stage, reference)
        _close_activity(activity, reference)
        activity_closed = True

    db.add(new_stage)
    flush_or_raise(
        db,
        on_integrity_error=ConflictError("Another stage is already open for this activity.", code="STAGE_ALREADY_OPEN"),
    )
    audit = record_audit(
        db,
        actor_id=actor.id,
        action="ACTIVITY_STAGE_STARTED",
        entity_type="activity_stage",
        entity_id=new_stage.id,
        details={
            "activity_id": activity.id,
            "stage": stage.value,
            "closed_stage_ids": closed_ids,
            "activity_closed": activity_closed,
            "photos_stored": photo_outcome.stored,
        },
        request_id=request_id,
    )
    commit_or_raise(
        db,
        on_integrity_error=ConflictError("Another stage is already open for this activity.", code="STAGE_ALREADY_OPEN"),
    )
    emit_audit_event(audit)
    return StageChange(stage=new_stage, activity=activity, closed_stage_ids=closed_ids, activity_closed=activity_closed)


def end_stage(
    db: Session,
    actor: Actor,
    activity_id: int,
    stage_id: int,
    *,
    end_time: datetime | None = None,
    notes: str | None = None,
    now: datetime | None = None,
    request_id: str | None = None,
) -> StageChange:
    end = normalize_ts(end_time if end_time is not None else now)
    _require_checked_in(db, actor)

    activity = _lock_own_activity(db, actor, activity_id)
    stage = db.scalar(
        select(ActivityStage)
        .where(ActivityStage.id == stage_id, ActivityStage.activity_id == activity.id)
        .execution_options(populate_existing=True)
    )
    if stage is None:
        raise NotFoundError("Activity stage not found or access denied.", code="STAGE_NOT_FOUND")
    if stage.end_time is not None:
        raise ConflictError("Activity stage is already closed.", code="STAGE_ALREADY_CLOSED")

    remaining_open = [item for item in _open_stages(db, activity.id) if item.id != stage.id]
    _close_stage(stage, end)
    if notes is not None:
        stage.notes = notes

    activity_closed = False
    if activity.end_time is None and (stage.stage == ActivityStageName.COMPLETED or not remaining_open):
        _close_activity(activity, stage.end_time or end)
        activity_closed = True

    audit = record_audit(
        db,
        actor_id=actor.id,
        action="ACTIVITY_STAGE_ENDED",
        entity_type="activity_stage",
        entity_id=stage.id,
        details={
            "activity_id": activity.id,
            "stage": stage.stage.value,
            "duration": stage.duration,
            "activity_closed": activity_closed,
        },
        request_id=request_id,
    )
    commit_or_raise(db)
    emit_audit_event(audit)
    return StageChange(stage=stage, activity=activity, closed_stage_ids=[stage.id], activity_closed=activity_closed)


def list_stages(db: Session, actor: Actor, activity_id: int) -> list[ActivityStage]:
    activity = db.scalar(
        select(DailyActivityLog).where(DailyActivityLog.id == activity_id, DailyActivityLog.user_id == actor.id)
    )
    if activity is None:
        raise NotFoundError("Activity not found or access denied.", code="ACTIVITY_NOT_FOUND")
    return list(
        db.scalars(
            select(ActivityStage)
            .where(ActivityStage.activity_id == activity_id)
            .order_by(ActivityStage.start_time.asc(), ActivityStage.id.asc())
        ).all()
    )


def list_activities(
    db: Session,
    actor: Actor,
    *,
    start_date: date | None = None,
    end_date: date | None = None,
    activity_type: ActivityType | None = None,
    ticket_id: int | None = None,
    include_stages: bool = False,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[DailyActivityLog], int]:
    conditions = [DailyActivityLog.user_id == actor.id]
    if start_date is not None:
        conditions.append(DailyActivityLog.start_time >= local_day_bounds_utc(start_date)[0])
    if end_date is not None:
        conditions.append(DailyActivityLog.start_time < local_day_bounds_utc(end_date)[1])
    if activity_type is not None:
        conditions.append(DailyActivityLog.activity_type == activity_type)
    if ticket_id is not None:
        conditions.append(DailyActivityLog.ticket_id == ticket_id)

    page = max(1, page)
    limit = max(1, min(limit, 100))
    stmt = (
        select(DailyActivityLog)
        .where(*conditions)
        .order_by(DailyActivityLog.start_time.desc(), DailyActivityLog.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    if include_stages:
        stmt = stmt.options(selectinload(DailyActivityLog.stages))
    total = int(db.scalar(select(func.count(DailyActivityLog.id)).where(*conditions)) or 0)
    return list(db.scalars(stmt).all()), total


def admin_add_activity_log(
    db: Session,
    admin: Actor,
    attendance_id: int,
    *,
    activity_type: ActivityType,
    title: str,
    start_time: datetime,
    description: str | None = None,
    end_time: datetime | None = None,
    location: str | None = None,
    latitude: float | None = None,
    longitude: float | None = None,
    ticket_id: int | None = None,
    request_id: str | None = None,
) -> DailyActivityLog:
    attendance = db.get(Attendance, attendance_id)
    if attendance is None:
        raise NotFoundError("Attendance record not found.", code="ATTENDANCE_NOT_FOUND")

    clean_title = (title or "").strip()
    if not clean_title:
        raise ValidationError("title is required.")
    start = normalize_ts(start_time)
    end = normalize_ts(end_time) if end_time is not None else None
    if end is not None and end < start:
        raise ValidationError("end_time must not be before start_time.")
    if latitude is not None or longitude is not None:
        latitude, longitude = validate_coordinates(latitude, longitude)

    activity = DailyActivityLog(
        user_id=attendance.user_id,
        ticket_id=ticket_id,
        activity_type=activity_type,
        title=clean_title,
        description=f"{description} (Added by admin)" if description else "Added by admin",
        start_time=start,
        end_time=end,
        duration=rounded_minutes(start, end) if end is not None else None,
        location=location,
        latitude=latitude,
        longitude=longitude,
        extra={"added_by_admin": True, "added_by_id": admin.id},
    )
    db.add(activity)
    flush_or_raise(db)
    audit = record_audit(
        db,
        actor_id=admin.id,
        action="ACTIVITY_LOG_ADDED",
        entity_type="daily_activity_log",
        entity_id=activity.id,
        details={
            "attendance_id": attendance_id,
            "user_id": attendance.user_id,
            "activity_type": activity_type.value,
            "title": clean_title,
            "added_by_admin": True,
        },
        request_id=request_id,
    )
    commit_or_raise(db)
    emit_audit_event(audit)
    return activity
