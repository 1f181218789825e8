from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from fieldops.audit import emit_audit_event, record_audit
from fieldops.db import commit_or_raise, flush_or_raise
from fieldops.errors import ConflictError, NotFoundError, ValidationError
from fieldops.models import (
    ActivityStage,
    Attendance,
    AttendanceStatus,
    AuditLog,
    DailyActivityLog,
)
from fieldops.security import Actor
from fieldops.services.clock import (
    hours_between,
    local_day_bounds_utc,
    local_day_of,
    normalize_ts,
    rounded_minutes,
    to_local,
    workday_end_utc,
)
from fieldops.services.geocoding import GeocodingService, resolve_address
from fieldops.settings import get_settings

logger = logging.getLogger("fieldops.attendance")

SYSTEM_ACTOR_ID = "system"


def auto_checkout_note(end_hour: int | None = None) -> str:
    hour = get_settings().workday_end_hour if end_hour is None else end_hour
    return f"Auto-checkout at {hour:02d}:00"


class EarlyCheckoutConfirmationRequired(ConflictError):
    default_code = "EARLY_CHECKOUT_CONFIRMATION_REQUIRED"

    def __init__(self, attendance_id: int, checkout_at: datetime):
        end_hour = get_settings().workday_end_hour
        super().__init__(
            f"Checking out before {end_hour}:00 requires confirmation.",
            details={
                "requires_confirmation": True,
                "attendance_id": attendance_id,
                "checkout_local": to_local(checkout_at).isoformat(),
                "workday_end_hour": end_hour,
            },
        )


@dataclass(slots=True)
class CheckoutResult:
    attendance: Attendance
    auto_closed_activities: int
    early: bool


@dataclass(slots=True)
class AutoCheckoutSummary:
    local_day: date
    cutoff_utc: datetime
    processed: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    closed_activities: int = 0
    before_cutoff: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "local_day": self.local_day.isoformat(),
            "cutoff_utc": self.cutoff_utc.isoformat(),
            "processed": list(self.processed),
            "failed": list(self.failed),
            "processed_count": len(self.processed),
            "closed_activities": self.closed_activities,
            "before_cutoff": self.before_cutoff,
        }


def validate_coordinates(latitude: Any, longitude: Any) -> tuple[float, float]:
    errors: list[str] = []
    try:
        lat = float(latitude)
    except (TypeError, ValueError):
        lat = math.nan
    try:
        lng = float(longitude)
    except (TypeError, ValueError):
        lng = math.nan

    if not math.isfinite(lat) or not -90 <= lat <= 90:
        errors.append("latitude must be a finite number between -90 and 90")
    if not math.isfinite(lng) or not -180 <= lng <= 180:
        errors.append("longitude must be a finite number between -180 and 180")
    if errors:
        raise ValidationError("Invalid coordinates.", details={"errors": errors})
    return lat, lng


def get_open_session(db: Session, user_id: int, *, for_update: bool = False) -> Attendance | None:
    stmt = (
        select(Attendance)
        .where(Attendance.user_id == user_id, Attendance.status == AttendanceStatus.CHECKED_IN)
        .order_by(Attendance.check_in_at.desc(), Attendance.id.desc())
        .limit(1)
    )
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return db.scalar(stmt)


def _already_checked_in(attendance_id: int | None = None) -> ConflictError:
    details = {"attendance_id": attendance_id} if attendance_id is not None else None
    return ConflictError("Already checked in.", code="ALREADY_CHECKED_IN", details=details)


def close_open_activities(
    db: Session,
    *,
    user_id: int,
    local_day: date,
    end_at: datetime,
    through_day: date | None = None,
) -> list[DailyActivityLog]:
    """Close every open activity (and its open stage) the user started on ``local_day``.

    With ``through_day`` the window runs from the start of ``local_day`` to the
    end of ``through_day``, which covers sessions that cross midnight.
    """
    day_start, _ = local_day_bounds_utc(local_day)
    _, day_end = local_day_bounds_utc(max(local_day, through_day or local_day))
    activities = list(
        db.scalars(
            select(DailyActivityLog)
            .where(
                DailyActivityLog.user_id == user_id,
                DailyActivityLog.end_time.is_(None),
                DailyActivityLog.start_time >= day_start,
                DailyActivityLog.start_time < day_end,
            )
            .order_by(DailyActivityLog.start_time.asc(), DailyActivityLog.id.asc())
            .with_for_update()
        ).all()
    )
    for activity in activities:
        activity_end = max(normalize_ts(end_at), normalize_ts(activity.start_time))
        activity.end_time = activity_end
        activity.duration = rounded_minutes(activity.start_time, activity_end)
        open_stages = db.scalars(
            select(ActivityStage).where(
                ActivityStage.activity_id == activity.id,
                ActivityStage.end_time.is_(None),
            )
        ).all()
        for stage in open_stages:
            stage_end = max(activity_end, normalize_ts(stage.start_time))
            stage.end_time = stage_end
            stage.duration = rounded_minutes(stage.start_time, stage_end)
    return activities


def _audit_closed_activities(
    db: Session,
    *,
    actor_id: str | int,
    activities: list[DailyActivityLog],
    reason: str,
    request_id: str | None,
) -> list[AuditLog]:
    return [
        record_audit(
            db,
            actor_id=actor_id,
            action="ACTIVITY_LOG_UPDATED",
            entity_type="daily_activity_log",
            entity_id=activity.id,
            details={
                "activity_type": activity.activity_type.value,
                "end_time": activity.end_time.isoformat() if activity.end_time else None,
                "duration": activity.duration,
                "reason": reason,
            },
            request_id=request_id,
        )
        for activity in activities
    ]


def check_in(
    db: Session,
    actor: Actor,
    *,
    latitude: Any,
    longitude: Any,
    address: str | None = None,
    location_source: str | None = None,
    notes: str | None = None,
    geocoder: GeocodingService | None = None,
    now: datetime | None = None,
    request_id: str | None = None,
) -> Attendance:
    lat, lng = validate_coordinates(latitude, longitude)
    check_in_at = normalize_ts(now)

    existing = get_open_session(db, actor.id)
    if existing is not None:
        raise _already_checked_in(existing.id)

    resolved_address = resolve_address(
        geocoder,
        lat,
        lng,
        address=address,
        location_source=location_source,
    )

    attendance = Attendance(
        user_id=actor.id,
        check_in_at=check_in_at,
        check_in_latitude=lat,
        check_in_longitude=lng,
        check_in_address=resolved_address,
        status=AttendanceStatus.CHECKED_IN,
        notes=notes,
    )
    db.add(attendance)
    # The partial unique index turns a concurrent second check-in into an IntegrityError.
    flush_or_raise(db, on_integrity_error=_already_checked_in())
    audit = record_audit(
        db,
        actor_id=actor.id,
        action="ATTENDANCE_CHECKED_IN",
        entity_type="attendance",
        entity_id=attendance.id,
        details={
            "check_in_at": check_in_at.isoformat(),
            "latitude": lat,
            "longitude": lng,
            "address": resolved_address,
            "location_source": location_source or "gps",
        },
        request_id=request_id,
        ts_utc=check_in_at,
    )
    commit_or_raise(db, on_integrity_error=_already_checked_in())
    emit_audit_event(audit)
    logger.info("attendance_checked_in", extra={"attendance_id": attendance.id, "user_id": actor.id})
    return attendance


def _load_own_session(db: Session, actor: Actor, attendance_id: int, *, for_update: bool = False) -> Attendance:
    stmt = select(Attendance).where(Attendance.id == attendance_id, Attendance.user_id == actor.id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    attendance = db.scalar(stmt)
    if attendance is None:
        raise NotFoundError("Attendance record not found.", code="ATTENDANCE_NOT_FOUND")
    return attendance


def _ensure_checked_in(attendance: Attendance) -> None:
    if attendance.status != AttendanceStatus.CHECKED_IN:
        raise ConflictError(
            "Attendance session is not checked in.",
            code="NOT_CHECKED_IN",
            details={"attendance_id": attendance.id, "status": attendance.status.value},
        )


def check_out(
    db: Session,
    actor: Actor,
    *,
    attendance_id: int | None,
    latitude: Any = None,
    longitude: Any = None,
    address: str | None = None,
    location_source: str | None = None,
    notes: str | None = None,
    confirm_early_checkout: bool = False,
    geocoder: GeocodingService | None = None,
    now: datetime | None = None,
    request_id: str | None = None,
) -> CheckoutResult:
    if attendance_id is None:
        raise ValidationError("attendance_id is required.")

    lat: float | None = None
    lng: float | None = None
    if latitude is not None or longitude is not None:
        lat, lng = validate_coordinates(latitude, longitude)

    checkout_at = normalize_ts(now)
    attendance = _load_own_session(db, actor, attendance_id)
    _ensure_checked_in(attendance)

    session_day = local_day_of(attendance.check_in_at)
    early = checkout_at < workday_end_utc(session_day)
    if early and not confirm_early_checkout:
        db.rollback()
        raise EarlyCheckoutConfirmationRequired(attendance.id, checkout_at)

    resolved_address: str | None = None
    if lat is not None and lng is not None:
        resolved_address = resolve_address(
            geocoder,
            lat,
            lng,
            address=address,
            location_source=location_source,
        )
    elif address:
        resolved_address = address.strip() or None

    # Re-read under a row lock; a concurrent checkout or sweep may have won.
    attendance = _load_own_session(db, actor, attendance_id, for_update=True)
    _ensure_checked_in(attendance)

    closed = close_open_activities(
        db,
        user_id=actor.id,
        local_day=session_day,
        end_at=checkout_at,
        through_day=local_day_of(checkout_at),
    )

    attendance.check_out_at = checkout_at
    attendance.check_out_latitude = lat
    attendance.check_out_longitude = lng
    attendance.check_out_address = resolved_address
    attendance.total_hours = hours_between(attendance.check_in_at, checkout_at)
    attendance.status = AttendanceStatus.EARLY_CHECKOUT if early else AttendanceStatus.CHECKED_OUT
    attendance.notes = notes or attendance.notes

    audits = _audit_closed_activities(
        db,
        actor_id=actor.id,
        activities=closed,
        reason="Auto-completed on checkout",
        request_id=request_id,
    )
    audits.append(
        record_audit(
            db,
            actor_id=actor.id,
            action="ATTENDANCE_CHECKED_OUT",
            entity_type="attendance",
            entity_id=attendance.id,
            details={
                "check_out_at": checkout_at.isoformat(),
                "total_hours": attendance.total_hours,
                "status": attendance.status.value,
                "is_early_checkout": early,
                "address": resolved_address,
                "auto_closed_activities": len(closed),
            },
            request_id=request_id,
            ts_utc=checkout_at,
        )
    )
    commit_or_raise(db)
    for audit in audits:
        emit_audit_event(audit)
    logger.info(
        "attendance_checked_out",
        extra={
            "attendance_id": attendance.id,
            "user_id": actor.id,
            "early": early,
            "auto_closed_activities": len(closed),
        },
    )
    return CheckoutResult(attendance=attendance, auto_closed_activities=len(closed), early=early)


def re_check_in(
    db: Session,
    actor: Actor,
    *,
    attendance_id: int,
    latitude: Any = None,
    longitude: Any = None,
    address: str | None = None,
    location_source: str | None = None,
    notes: str | None = None,
    geocoder: GeocodingService | None = None,
    now: datetime | None = None,
    request_id: str | None = None,
) -> Attendance:
    reference = normalize_ts(now)
    lat: float | None = None
    lng: float | None = None
    if latitude is not None or longitude is not None:
        lat, lng = validate_coordinates(latitude, longitude)

    attendance = _load_own_session(db, actor, attendance_id, for_update=True)
    if attendance.status not in {AttendanceStatus.CHECKED_OUT, AttendanceStatus.EARLY_CHECKOUT}:
        raise NotFoundError(
            "Attendance record not found or not eligible for re-check-in.",
            code="ATTENDANCE_NOT_ELIGIBLE",
        )
    if local_day_of(attendance.check_in_at) != local_day_of(reference):
        raise ValidationError("Can only re-check-in for today's attendance.", code="NOT_TODAY")

    location_text = address
    if lat is not None and lng is not None:
        location_text = resolve_address(geocoder, lat, lng, address=address, location_source=location_source)

    attendance.check_out_at = None
    attendance.check_out_latitude = None
    attendance.check_out_longitude = None
    attendance.check_out_address = None
    attendance.total_hours = None
    attendance.status = AttendanceStatus.CHECKED_IN
    attendance.notes = notes or attendance.notes

    audit = record_audit(
        db,
        actor_id=actor.id,
        action="ATTENDANCE_RE_CHECKED_IN",
        entity_type="attendance",
        entity_id=attendance.id,
        details={
            "re_check_in_at": reference.isoformat(),
            "location": location_text,
            "latitude": lat,
            "longitude": lng,
            "notes": notes,
            "reason": "User re-checked in after mistaken checkout",
        },
        request_id=request_id,
        ts_utc=reference,
    )
    commit_or_raise(db, on_integrity_error=_already_checked_in())
    emit_audit_event(audit)
    return attendance


def _append_note(existing: str | None, note: str) -> str:
    return f"{existing} | {note}" if existing else note


def _auto_checkout_one(
    db: Session,
    *,
    attendance_id: int,
    cutoff: datetime,
    local_day: date,
    request_id: str | None,
) -> int | None:
    attendance = db.scalar(
        select(Attendance)
        .where(Attendance.id == attendance_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if attendance is None or attendance.status != AttendanceStatus.CHECKED_IN:
        db.rollback()
        return None

    closed = close_open_activities(db, user_id=attendance.user_id, local_day=local_day, end_at=cutoff)
    attendance.check_out_at = cutoff
    attendance.total_hours = hours_between(attendance.check_in_at, cutoff)
    attendance.status = AttendanceStatus.CHECKED_OUT
    attendance.notes = _append_note(attendance.notes, auto_checkout_note())

    audits = _audit_closed_activities(
        db,
        actor_id=SYSTEM_ACTOR_ID,
        activities=closed,
        reason="Auto-completed on auto-checkout",
        request_id=request_id,
    )
    audits.append(
        record_audit(
            db,
            actor_id=SYSTEM_ACTOR_ID,
            action="AUTO_CHECKOUT_PERFORMED",
            entity_type="attendance",
            entity_id=attendance.id,
            details={
                "user_id": attendance.user_id,
                "check_out_at": cutoff.isoformat(),
                "total_hours": attendance.total_hours,
                "auto_closed_activities": len(closed),
            },
            request_id=request_id,
        )
    )
    db.commit()
    for audit in audits:
        emit_audit_event(audit)
    return len(closed)


def run_auto_checkout(
    db: Session,
    *,
    now: datetime | None = None,
    request_id: str | None = None,
) -> AutoCheckoutSummary:
    """Check out every session still open at the end of the local workday.

    Each session is handled in its own transaction under a row lock, so a
    re-run after a partial failure only touches sessions that are still
    CHECKED_IN.
    """
    reference = normalize_ts(now)
    local_day = local_day_of(reference)
    cutoff = workday_end_utc(local_day)
    summary = AutoCheckoutSummary(local_day=local_day, cutoff_utc=cutoff)
    if reference < cutoff:
        summary.before_cutoff = True
        return summary

    day_start, _ = local_day_bounds_utc(local_day)
    candidate_ids = list(
        db.scalars(
            select(Attendance.id)
            .where(
                Attendance.status == AttendanceStatus.CHECKED_IN,
                Attendance.check_in_at >= day_start,
                Attendance.check_in_at < cutoff,
            )
            .order_by(Attendance.id.asc())
        ).all()
    )
    db.rollback()

    for attendance_id in candidate_ids:
        try:
            closed_count = _auto_checkout_one(
                db,
                attendance_id=attendance_id,
                cutoff=cutoff,
                local_day=local_day,
                request_id=request_id,
            )
        except Exception:
            db.rollback()
            summary.failed.append(attendance_id)
            logger.exception("auto_checkout_session_failed", extra={"attendance_id": attendance_id})
            continue
        if closed_count is None:
            continue
        summary.processed.append(attendance_id)
        summary.closed_activities += closed_count

    logger.info("auto_checkout_completed", extra=summary.to_dict())
    return summary


def get_current_status(
    db: Session,
    actor: Actor,
    *,
    now: datetime | None = None,
) -> tuple[Attendance | None, bool]:
    active = get_open_session(db, actor.id)
    if active is not None:
        return active, True

    day_start, day_end = local_day_bounds_utc(local_day_of(normalize_ts(now)))
    today = db.scalar(
        select(Attendance)
        .where(
            Attendance.user_id == actor.id,
            Attendance.check_in_at >= day_start,
            Attendance.check_in_at < day_end,
        )
        .order_by(Attendance.check_in_at.desc(), Attendance.id.desc())
        .limit(1)
    )
    return today, False


def get_attendance_history(
    db: Session,
    actor: Actor,
    *,
    start_date: date | None = None,
    end_date: date | None = None,
    page: int = 1,
    limit: int = 10,
) -> tuple[list[Attendance], int]:
    conditions = [Attendance.user_id == actor.id]
    if start_date is not None:
        conditions.append(Attendance.check_in_at >= local_day_bounds_utc(start_date)[0])
    if end_date is not None:
        conditions.append(Attendance.check_in_at < local_day_bounds_utc(end_date)[1])

    page = max(1, page)
    limit = max(1, min(limit, 100))
    total = int(db.scalar(select(func.count(Attendance.id)).where(*conditions)) or 0)
    rows = list(
        db.scalars(
            select(Attendance)
            .where(*conditions)
            .order_by(Attendance.check_in_at.desc(), Attendance.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()
    )
    return rows, total


_STATS_PERIODS = {"day", "week", "month", "year"}


def get_attendance_stats(
    db: Session,
    actor: Actor,
    *,
    period: str = "month",
    now: datetime | None = None,
) -> dict[str, Any]:
    if period not in _STATS_PERIODS:
        raise ValidationError(f"Unsupported period: {period}.", details={"allowed": sorted(_STATS_PERIODS)})

    reference = normalize_ts(now)
    today = local_day_of(reference)
    if period == "day":
        window_start, window_end = local_day_bounds_utc(today)
        statuses = [AttendanceStatus.CHECKED_OUT, AttendanceStatus.CHECKED_IN, AttendanceStatus.EARLY_CHECKOUT]
    else:
        days = {"week": 7, "month": 30, "year": 365}[period]
        window_start, window_end = reference - timedelta(days=days), reference + timedelta(seconds=1)
        statuses = [AttendanceStatus.CHECKED_OUT, AttendanceStatus.EARLY_CHECKOUT]

    rows = db.scalars(
        select(Attendance).where(
            Attendance.user_id == actor.id,
            Attendance.check_in_at >= window_start,
            Attendance.check_in_at < window_end,
            Attendance.status.in_(statuses),
        )
    ).all()

    total_hours = 0.0
    for row in rows:
        if row.total_hours is not None:
            total_hours += float(row.total_hours)
        elif period == "day" and row.status == AttendanceStatus.CHECKED_IN:
            total_hours += max(0.0, (reference - normalize_ts(row.check_in_at)).total_seconds() / 3600)

    days_worked = len({local_day_of(row.check_in_at) for row in rows})
    return {
        "period": period,
        "total_hours": round(total_hours, 2),
        "avg_hours_per_day": round(total_hours / days_worked, 2) if days_worked else 0.0,
        "total_days_worked": days_worked,
        "records": len(rows),
    }


def admin_update_session(
    db: Session,
    admin: Actor,
    *,
    attendance_id: int,
    check_in_at: datetime | None = None,
    check_out_at: datetime | None = None,
    status: AttendanceStatus | None = None,
    notes: str | None = None,
    admin_notes: str | None = None,
    request_id: str | None = None,
) -> Attendance:
    attendance = db.scalar(
        select(Attendance)
        .where(Attendance.id == attendance_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if attendance is None:
        raise NotFoundError("Attendance record not found.", code="ATTENDANCE_NOT_FOUND")

    before = {
        "check_in_at": attendance.check_in_at.isoformat(),
        "check_out_at": attendance.check_out_at.isoformat() if attendance.check_out_at else None,
        "status": attendance.status.value,
        "total_hours": attendance.total_hours,
        "notes": attendance.notes,
    }

    if check_in_at is not None:
        attendance.check_in_at = normalize_ts(check_in_at)
    if check_out_at is not None:
        attendance.check_out_at = normalize_ts(check_out_at)
    if status is not None:
        attendance.status = status
    if attendance.status == AttendanceStatus.CHECKED_IN:
        attendance.check_out_at = None
    elif attendance.check_out_at is None:
        db.rollback()
        raise ValidationError(
            f"check_out_at is required for a {attendance.status.value} session.",
            code="CHECK_OUT_REQUIRED",
            details={"attendance_id": attendance_id, "status": attendance.status.value},
        )

    if attendance.check_out_at is not None:
        if normalize_ts(attendance.check_out_at) < normalize_ts(attendance.check_in_at):
            db.rollback()
            raise ValidationError("check_out_at must not be before check_in_at.")
        attendance.total_hours = hours_between(attendance.check_in_at, attendance.check_out_at)
    else:
        attendance.total_hours = None

    base_notes = notes if notes is not None else attendance.notes
    if admin_notes:
        attendance.notes = f"{base_notes} | Admin: {admin_notes}" if base_notes else f"Admin: {admin_notes}"
    else:
        attendance.notes = base_notes

    audit = record_audit(
        db,
        actor_id=admin.id,
        action="ATTENDANCE_UPDATED",
        entity_type="attendance",
        entity_id=attendance.id,
        details={
            "user_id": attendance.user_id,
            "before": before,
            "after": {
                "check_in_at": attendance.check_in_at.isoformat(),
                "check_out_at": attendance.check_out_at.isoformat() if attendance.check_out_at else None,
                "status": attendance.status.value,
                "total_hours": attendance.total_hours,
                "notes": attendance.notes,
            },
            "admin_notes": admin_notes,
        },
        request_id=request_id,
    )
    commit_or_raise(db, on_integrity_error=_already_checked_in())
    emit_audit_event(audit)
    return attendance
