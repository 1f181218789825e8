from __future__ import annotations

import math
from collections import defaultdict
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.orm import Session, selectinload

from fieldops.errors import AuthorizationError, NotFoundError, ValidationError
from fieldops.models import (
    ActivityType,
    Attendance,
    AttendanceStatus,
    AuditLog,
    DailyActivityLog,
    User,
    UserRole,
    UserZone,
)
from fieldops.security import Actor
from fieldops.services.clock import local_day_bounds_utc, local_day_of, normalize_ts, rounded_minutes, to_local
from fieldops.settings import get_settings

ABSENT_PREFIX = "absent-"
AUTO_CHECKED_OUT_FILTER = "AUTO_CHECKED_OUT"
ABSENT_NOTE = "No attendance record for this date"
MAX_REPORT_DAYS = 93

STATUS_PRIORITY: dict[AttendanceStatus, int] = {
    AttendanceStatus.CHECKED_IN: 5,
    AttendanceStatus.LATE: 4,
    AttendanceStatus.EARLY_CHECKOUT: 3,
    AttendanceStatus.CHECKED_OUT: 2,
    AttendanceStatus.ABSENT: 1,
}

DETAIL_AUDIT_ACTIONS = (
    "ATTENDANCE_CHECKED_IN",
    "ATTENDANCE_CHECKED_OUT",
    "ATTENDANCE_RE_CHECKED_IN",
    "ATTENDANCE_UPDATED",
    "ACTIVITY_LOG_ADDED",
    "ACTIVITY_LOG_UPDATED",
    "ACTIVITY_STAGE_STARTED",
    "ACTIVITY_STAGE_ENDED",
    "TICKET_STATUS_CHANGED",
    "AUTO_CHECKOUT_PERFORMED",
)

_REPORT_ROLES = {UserRole.ADMIN, UserRole.ZONE_MANAGER, UserRole.ZONE_USER}


@dataclass(frozen=True)
class Flag:
    type: str
    message: str
    severity: str

    def to_dict(self) -> dict[str, str]:
        return {"type": self.type, "message": self.message, "severity": self.severity}


@dataclass(frozen=True)
class FlagRules:
    late_checkin_hour: int = 11
    early_checkout_hour: int = 16
    long_day_hours: float = 12.0

    @classmethod
    def from_settings(cls) -> FlagRules:
        settings = get_settings()
        return cls(
            late_checkin_hour=settings.late_checkin_hour,
            early_checkout_hour=settings.early_checkout_flag_hour,
            long_day_hours=settings.long_day_hours,
        )


@dataclass(frozen=True)
class SessionRow:
    id: int
    user_id: int
    check_in_at: datetime
    check_out_at: datetime | None
    status: AttendanceStatus
    total_hours: float | None = None
    notes: str | None = None
    check_in_latitude: float | None = None
    check_in_longitude: float | None = None
    check_in_address: str | None = None
    check_out_latitude: float | None = None
    check_out_longitude: float | None = None
    check_out_address: str | None = None

    @classmethod
    def from_model(cls, row: Attendance) -> SessionRow:
        return cls(
            id=row.id,
            user_id=row.user_id,
            check_in_at=normalize_ts(row.check_in_at),
            check_out_at=normalize_ts(row.check_out_at) if row.check_out_at is not None else None,
            status=AttendanceStatus(row.status),
            total_hours=row.total_hours,
            notes=row.notes,
            check_in_latitude=row.check_in_latitude,
            check_in_longitude=row.check_in_longitude,
            check_in_address=row.check_in_address,
            check_out_latitude=row.check_out_latitude,
            check_out_longitude=row.check_out_longitude,
            check_out_address=row.check_out_address,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "check_in_at": self.check_in_at,
            "check_out_at": self.check_out_at,
            "status": self.status.value,
            "total_hours": self.total_hours,
            "notes": self.notes,
        }


@dataclass(frozen=True)
class RosterUser:
    id: int
    name: str
    email: str
    zone_ids: tuple[int, ...] = ()

    @classmethod
    def from_model(cls, user: User) -> RosterUser:
        return cls(id=user.id, name=user.name, email=user.email, zone_ids=tuple(user.zone_ids))


@dataclass
class ConsolidatedRecord:
    id: str
    user: RosterUser
    day: date
    status: AttendanceStatus
    check_in_at: datetime | None = None
    check_out_at: datetime | None = None
    check_in_latitude: float | None = None
    check_in_longitude: float | None = None
    check_in_address: str | None = None
    check_out_latitude: float | None = None
    check_out_longitude: float | None = None
    check_out_address: str | None = None
    total_hours: float = 0.0
    has_hours: bool = False
    notes: str | None = None
    sessions: list[SessionRow] = field(default_factory=list)
    activity_count: int = 0
    flags: list[Flag] = field(default_factory=list)

    @property
    def session_count(self) -> int:
        return len(self.sessions)

    @property
    def is_absent_record(self) -> bool:
        return not self.sessions

    @property
    def auto_checked_out(self) -> bool:
        return mentions_auto_checkout(self.notes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user.id,
            "user": {
                "id": self.user.id,
                "name": self.user.name,
                "email": self.user.email,
                "zone_ids": list(self.user.zone_ids),
            },
            "date": self.day.isoformat(),
            "status": self.status.value,
            "check_in_at": self.check_in_at,
            "check_out_at": self.check_out_at,
            "check_in_latitude": self.check_in_latitude,
            "check_in_longitude": self.check_in_longitude,
            "check_in_address": self.check_in_address,
            "check_out_latitude": self.check_out_latitude,
            "check_out_longitude": self.check_out_longitude,
            "check_out_address": self.check_out_address,
            "total_hours": self.total_hours,
            "notes": self.notes,
            "session_count": self.session_count,
            "sessions": [session.to_dict() for session in self.sessions],
            "activity_count": self.activity_count,
            "flags": [flag.to_dict() for flag in self.flags],
        }


@dataclass(frozen=True)
class AttendanceScope:
    """Zones visible to the caller; ``zone_ids`` of None means organization-wide."""

    zone_ids: tuple[int, ...] | None = None

    @property
    def is_organization(self) -> bool:
        return self.zone_ids is None

    def allows_zone(self, zone_id: int) -> bool:
        return self.zone_ids is None or zone_id in self.zone_ids


@dataclass(frozen=True)
class ReportFilters:
    start_date: date | None = None
    end_date: date | None = None
    zone_id: int | None = None
    user_id: int | None = None
    search: str | None = None
    status: str | None = None
    activity_type: str | None = None
    page: int = 1
    limit: int = 20


def mentions_auto_checkout(notes: str | None) -> bool:
    return bool(notes) and "auto-checkout" in notes.lower()


def absent_record_id(user_id: int, day: date) -> str:
    return f"{ABSENT_PREFIX}{user_id}-{day.strftime('%Y%m%d')}"


def parse_absent_record_id(record_id: str) -> tuple[int, date]:
    parts = record_id[len(ABSENT_PREFIX):].split("-")
    if not record_id.startswith(ABSENT_PREFIX) or len(parts) != 2:
        raise ValidationError("Invalid absent record id.", code="INVALID_RECORD_ID")
    try:
        user_id = int(parts[0])
        day = datetime.strptime(parts[1], "%Y%m%d").date()
    except ValueError as exc:
        raise ValidationError("Invalid absent record id.", code="INVALID_RECORD_ID") from exc
    return user_id, day


def _merge_notes(sessions: Sequence[SessionRow]) -> str | None:
    merged: list[str] = []
    for session in sessions:
        note = (session.notes or "").strip()
        if note and not any(note in existing for existing in merged):
            merged.append(note)
    return "; ".join(merged) or None


def _merge_group(user: RosterUser, day: date, sessions: list[SessionRow]) -> ConsolidatedRecord:
    ordered = sorted(sessions, key=lambda item: (item.check_in_at, item.id))
    first = ordered[0]
    record = ConsolidatedRecord(
        id=str(first.id),
        user=user,
        day=day,
        status=max((item.status for item in ordered), key=lambda status: STATUS_PRIORITY[status]),
        check_in_at=first.check_in_at,
        check_in_latitude=first.check_in_latitude,
        check_in_longitude=first.check_in_longitude,
        check_in_address=first.check_in_address,
        notes=_merge_notes(ordered),
        sessions=ordered,
    )

    checked_out = [item for item in ordered if item.check_out_at is not None]
    if checked_out:
        last = max(checked_out, key=lambda item: (item.check_out_at, item.id))
        record.check_out_at = last.check_out_at
        record.check_out_latitude = last.check_out_latitude
        record.check_out_longitude = last.check_out_longitude
        record.check_out_address = last.check_out_address

    hours = [item.total_hours for item in ordered if item.total_hours is not None]
    record.has_hours = bool(hours)
    record.total_hours = round(sum(hours), 2)
    return record


def _absent_record(user: RosterUser, day: date) -> ConsolidatedRecord:
    return ConsolidatedRecord(
        id=absent_record_id(user.id, day),
        user=user,
        day=day,
        status=AttendanceStatus.ABSENT,
        notes=ABSENT_NOTE,
        flags=[Flag("ABSENT", "No attendance record", "error")],
    )


def compute_flags(record: ConsolidatedRecord, *, today: date, rules: FlagRules | None = None) -> list[Flag]:
    if record.is_absent_record:
        return [Flag("ABSENT", "No attendance record", "error")]

    rules = rules or FlagRules()
    flags: list[Flag] = []

    if record.session_count > 1:
        flags.append(Flag("MULTIPLE_SESSIONS", f"{record.session_count} check-in sessions", "info"))

    if record.check_in_at is not None and to_local(record.check_in_at).hour >= rules.late_checkin_hour:
        flags.append(Flag("LATE", f"Late check-in (after {rules.late_checkin_hour}:00)", "warning"))

    if record.check_out_at is not None and to_local(record.check_out_at).hour < rules.early_checkout_hour:
        flags.append(Flag("EARLY_CHECKOUT", f"Early checkout (before {rules.early_checkout_hour}:00)", "warning"))

    if record.total_hours > rules.long_day_hours:
        flags.append(Flag("LONG_DAY", f"Long day ({record.total_hours:.1f}h)", "warning"))

    if record.auto_checked_out:
        flags.append(Flag("AUTO_CHECKOUT", "Auto-checkout at workday end", "info"))

    if record.activity_count == 0 and record.status in (AttendanceStatus.CHECKED_IN, AttendanceStatus.CHECKED_OUT):
        flags.append(Flag("NO_ACTIVITY", "No activities logged", "error"))

    if record.status == AttendanceStatus.CHECKED_IN and record.day < today:
        flags.append(Flag("MISSING_CHECKOUT", "Missing checkout from a previous day", "error"))

    return flags


def _record_sort_key(record: ConsolidatedRecord) -> tuple[Any, ...]:
    check_in = -record.check_in_at.timestamp() if record.check_in_at is not None else 0.0
    return (-record.day.toordinal(), record.is_absent_record, check_in, record.user.name.lower(), record.user.id)


def consolidate(
    sessions: Iterable[SessionRow],
    roster: Iterable[RosterUser],
    days: Sequence[date],
    *,
    today: date,
    activity_counts: Mapping[tuple[int, date], int] | None = None,
    rules: FlagRules | None = None,
) -> list[ConsolidatedRecord]:
    """Merge raw sessions into one record per (user, local day) and synthesize absences.

    ``roster`` lists the users expected on every day in ``days``. Sessions of
    users outside the roster are still consolidated when their day is in range.
    Records come back ordered newest day first, present before absent.
    """
    activity_counts = activity_counts or {}
    wanted_days = set(days)
    users: dict[int, RosterUser] = {user.id: user for user in roster}

    groups: dict[tuple[int, date], list[SessionRow]] = defaultdict(list)
    for session in sessions:
        day = local_day_of(session.check_in_at)
        if day in wanted_days:
            groups[(session.user_id, day)].append(session)

    records: list[ConsolidatedRecord] = []
    for (user_id, day), group in groups.items():
        user = users.get(user_id) or RosterUser(id=user_id, name=f"User {user_id}", email="")
        record = _merge_group(user, day, group)
        record.activity_count = int(activity_counts.get((user_id, day), 0))
        records.append(record)

    for day in days:
        for user in users.values():
            if (user.id, day) not in groups:
                records.append(_absent_record(user, day))

    for record in records:
        record.flags = compute_flags(record, today=today, rules=rules)

    records.sort(key=_record_sort_key)
    return records


def filter_by_status(records: Iterable[ConsolidatedRecord], status: str | None) -> list[ConsolidatedRecord]:
    if not status:
        return list(records)
    if status == AUTO_CHECKED_OUT_FILTER:
        return [record for record in records if record.auto_checked_out]
    return [record for record in records if record.status.value == status]


def paginate(records: Sequence[ConsolidatedRecord], *, page: int, limit: int) -> tuple[list[ConsolidatedRecord], dict[str, int]]:
    page = max(1, page)
    limit = max(1, limit)
    total = len(records)
    offset = (page - 1) * limit
    return list(records[offset : offset + limit]), {
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": math.ceil(total / limit),
    }


def summarize_records(records: Iterable[ConsolidatedRecord]) -> dict[str, Any]:
    breakdown = {
        "CHECKED_IN": 0,
        "CHECKED_OUT": 0,
        "EARLY_CHECKOUT": 0,
        "LATE": 0,
        "ABSENT": 0,
        "AUTO_CHECKOUT": 0,
    }
    total = 0
    hours: list[float] = []
    for record in records:
        total += 1
        breakdown[record.status.value] += 1
        if record.auto_checked_out:
            breakdown["AUTO_CHECKOUT"] += 1
        if record.has_hours:
            hours.append(record.total_hours)

    return {
        "total_records": total,
        "status_breakdown": breakdown,
        "average_hours": round(sum(hours) / len(hours), 2) if hours else 0.0,
    }


def find_activity_gaps(
    activities: Sequence[DailyActivityLog],
    *,
    threshold_minutes: int | None = None,
) -> list[dict[str, Any]]:
    """Idle stretches longer than the threshold between consecutive activities."""
    if threshold_minutes is None:
        threshold_minutes = get_settings().activity_gap_minutes

    ordered = sorted(activities, key=lambda item: (normalize_ts(item.start_time), item.id))
    gaps: list[dict[str, Any]] = []
    for previous, current in zip(ordered, ordered[1:]):
        gap_start = normalize_ts(previous.end_time or previous.start_time)
        gap_end = normalize_ts(current.start_time)
        if (gap_end - gap_start).total_seconds() > threshold_minutes * 60:
            gaps.append(
                {
                    "start": gap_start,
                    "end": gap_end,
                    "duration": rounded_minutes(gap_start, gap_end),
                    "after_activity_id": previous.id,
                    "before_activity_id": current.id,
                }
            )
    return gaps


def resolve_scope(actor: Actor, zone_id: int | None = None) -> AttendanceScope:
    if actor.role not in _REPORT_ROLES:
        raise AuthorizationError("Attendance reports require an administrator or zone role.")

    if actor.is_admin:
        return AttendanceScope(zone_ids=(zone_id,) if zone_id is not None else None)

    if not actor.zone_ids:
        raise AuthorizationError("No service zone is assigned to this user.", code="ZONE_NOT_ASSIGNED")
    if zone_id is not None:
        if zone_id not in actor.zone_ids:
            raise AuthorizationError("Zone is outside your assignment.", code="ZONE_ACCESS_DENIED")
        return AttendanceScope(zone_ids=(zone_id,))
    return AttendanceScope(zone_ids=tuple(actor.zone_ids))


def report_days(start_date: date | None, end_date: date | None, *, today: date) -> list[date]:
    start = start_date or end_date or today
    end = min(end_date or today, today)
    if start_date and end_date and start_date > end_date:
        raise ValidationError("start_date must not be after end_date.", code="INVALID_DATE_RANGE")
    if start > end:
        return []
    if (end - start).days + 1 > MAX_REPORT_DAYS:
        raise ValidationError(
            f"Date range cannot exceed {MAX_REPORT_DAYS} days.",
            code="INVALID_DATE_RANGE",
            details={"max_days": MAX_REPORT_DAYS},
        )
    return [start + timedelta(days=offset) for offset in range((end - start).days + 1)]


def _user_conditions(scope: AttendanceScope, filters: ReportFilters) -> list[Any]:
    conditions: list[Any] = [User.role == UserRole.SERVICE_PERSON]
    if scope.zone_ids is not None:
        conditions.append(
            User.id.in_(select(UserZone.user_id).where(UserZone.zone_id.in_(scope.zone_ids)))
        )
    if filters.user_id is not None:
        conditions.append(User.id == filters.user_id)
    if filters.search:
        pattern = f"%{filters.search.strip()}%"
        conditions.append(or_(User.name.ilike(pattern), User.email.ilike(pattern)))
    return conditions


def _load_roster(db: Session, conditions: list[Any]) -> list[RosterUser]:
    users = db.scalars(
        select(User)
        .options(selectinload(User.zone_links))
        .where(User.is_active.is_(True), *conditions)
        .order_by(User.name, User.id)
    ).all()
    return [RosterUser.from_model(user) for user in users]


def _load_sessions(
    db: Session,
    conditions: list[Any],
    window_start: datetime,
    window_end: datetime,
) -> tuple[list[SessionRow], dict[int, RosterUser]]:
    rows = db.scalars(
        select(Attendance)
        .join(User, User.id == Attendance.user_id)
        .options(selectinload(Attendance.user).selectinload(User.zone_links))
        .where(
            Attendance.check_in_at >= window_start,
            Attendance.check_in_at < window_end,
            *conditions,
        )
        .order_by(Attendance.check_in_at, Attendance.id)
    ).all()
    owners = {row.user_id: RosterUser.from_model(row.user) for row in rows}
    return [SessionRow.from_model(row) for row in rows], owners


def _activity_counts(
    db: Session,
    user_ids: Iterable[int],
    window_start: datetime,
    window_end: datetime,
    activity_type: str | None,
) -> dict[tuple[int, date], int]:
    user_ids = list(user_ids)
    if not user_ids:
        return {}
    conditions = [
        DailyActivityLog.user_id.in_(user_ids),
        DailyActivityLog.start_time >= window_start,
        DailyActivityLog.start_time < window_end,
    ]
    if activity_type:
        conditions.append(DailyActivityLog.activity_type == ActivityType(activity_type))

    counts: dict[tuple[int, date], int] = defaultdict(int)
    for user_id, start_time in db.execute(
        select(DailyActivityLog.user_id, DailyActivityLog.start_time).where(*conditions)
    ).all():
        counts[(user_id, local_day_of(start_time))] += 1
    return counts


def _validate_filters(filters: ReportFilters) -> None:
    if filters.status and filters.status != AUTO_CHECKED_OUT_FILTER:
        allowed = {status.value for status in AttendanceStatus}
        if filters.status not in allowed:
            raise ValidationError(
                f"Unsupported status filter: {filters.status}.",
                details={"allowed": sorted(allowed | {AUTO_CHECKED_OUT_FILTER})},
            )
    if filters.activity_type and filters.activity_type not in {item.value for item in ActivityType}:
        raise ValidationError(f"Unsupported activity type: {filters.activity_type}.")
    if filters.limit < 1 or filters.limit > 500:
        raise ValidationError("limit must be between 1 and 500.")


def consolidated_records_for(
    db: Session,
    actor: Actor,
    filters: ReportFilters,
    *,
    now: datetime | None = None,
    rules: FlagRules | None = None,
) -> list[ConsolidatedRecord]:
    """Scope-checked consolidation of every record matching ``filters`` (status filter applied)."""
    _validate_filters(filters)
    scope = resolve_scope(actor, filters.zone_id)
    today = local_day_of(normalize_ts(now))
    days = report_days(filters.start_date, filters.end_date, today=today)
    if not days:
        return []

    window_start = local_day_bounds_utc(days[0])[0]
    window_end = local_day_bounds_utc(days[-1])[1]
    conditions = _user_conditions(scope, filters)

    roster = _load_roster(db, conditions)
    sessions, owners = _load_sessions(db, conditions, window_start, window_end)
    owners.update({user.id: user for user in roster})
    counts = _activity_counts(db, owners.keys(), window_start, window_end, filters.activity_type)

    records = consolidate(
        sessions,
        roster,
        days,
        today=today,
        activity_counts=counts,
        rules=rules or FlagRules.from_settings(),
    )
    for record in records:
        if record.user.id in owners:
            record.user = owners[record.user.id]
    return filter_by_status(records, filters.status)


def build_attendance_report(
    db: Session,
    actor: Actor,
    filters: ReportFilters,
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    records = consolidated_records_for(db, actor, filters, now=now)
    page_rows, pagination = paginate(records, page=filters.page, limit=filters.limit)
    return {
        "attendance": [record.to_dict() for record in page_rows],
        "pagination": pagination,
    }


def build_attendance_summary(
    db: Session,
    actor: Actor,
    filters: ReportFilters,
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    records = consolidated_records_for(db, actor, filters, now=now)
    summary = summarize_records(records)
    summary["period"] = "custom" if filters.start_date or filters.end_date else "today"
    return summary


def _ensure_user_visible(db: Session, actor: Actor, user_id: int) -> User:
    scope = resolve_scope(actor)
    user = db.scalar(select(User).options(selectinload(User.zone_links)).where(User.id == user_id))
    if user is None:
        raise NotFoundError("User not found.", code="USER_NOT_FOUND")
    if not scope.is_organization and not any(scope.allows_zone(zone_id) for zone_id in user.zone_ids):
        raise AuthorizationError("Attendance record is outside your zones.", code="ZONE_ACCESS_DENIED")
    return user


def _activity_payload(activity: DailyActivityLog) -> dict[str, Any]:
    return {
        "id": activity.id,
        "ticket_id": activity.ticket_id,
        "activity_type": activity.activity_type.value,
        "title": activity.title,
        "description": activity.description,
        "start_time": activity.start_time,
        "end_time": activity.end_time,
        "duration": activity.duration,
        "location": activity.location,
        "latitude": activity.latitude,
        "longitude": activity.longitude,
        "metadata": activity.extra,
        "stages": [
            {
                "id": stage.id,
                "stage": stage.stage.value,
                "start_time": stage.start_time,
                "end_time": stage.end_time,
                "duration": stage.duration,
                "location": stage.location,
                "latitude": stage.latitude,
                "longitude": stage.longitude,
                "notes": stage.notes,
                "photos": stage.photos,
            }
            for stage in activity.stages
        ],
    }


def _audit_payload(row: AuditLog) -> dict[str, Any]:
    return {
        "id": row.id,
        "ts_utc": row.ts_utc,
        "actor_id": row.actor_id,
        "action": row.action,
        "entity_type": row.entity_type,
        "entity_id": row.entity_id,
        "success": row.success,
        "details": row.details,
    }


def get_attendance_detail(
    db: Session,
    actor: Actor,
    record_id: str,
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Consolidated day view for a session id or a synthetic absent id."""
    session_id: int | None = None
    if record_id.startswith(ABSENT_PREFIX):
        user_id, day = parse_absent_record_id(record_id)
    else:
        try:
            session_id = int(record_id)
        except ValueError as exc:
            raise ValidationError("Invalid attendance record id.", code="INVALID_RECORD_ID") from exc
        anchor = db.get(Attendance, session_id)
        if anchor is None:
            raise NotFoundError("Attendance record not found.", code="ATTENDANCE_NOT_FOUND")
        user_id, day = anchor.user_id, local_day_of(anchor.check_in_at)

    user = _ensure_user_visible(db, actor, user_id)
    roster_user = RosterUser.from_model(user)
    day_start, day_end = local_day_bounds_utc(day)

    sessions = [
        SessionRow.from_model(row)
        for row in db.scalars(
            select(Attendance)
            .where(
                Attendance.user_id == user_id,
                Attendance.check_in_at >= day_start,
                Attendance.check_in_at < day_end,
            )
            .order_by(Attendance.check_in_at, Attendance.id)
        ).all()
    ]
    activities = list(
        db.scalars(
            select(DailyActivityLog)
            .options(selectinload(DailyActivityLog.stages))
            .where(
                DailyActivityLog.user_id == user_id,
                DailyActivityLog.start_time >= day_start,
                DailyActivityLog.start_time < day_end,
            )
            .order_by(DailyActivityLog.start_time, DailyActivityLog.id)
        ).all()
    )

    today = local_day_of(normalize_ts(now))
    records = consolidate(
        sessions,
        [roster_user],
        [day],
        today=today,
        activity_counts={(user_id, day): len(activities)},
        rules=FlagRules.from_settings(),
    )
    record = records[0]

    session_ids = [str(item.id) for item in sessions]
    audit_conditions: list[Any] = [
        (AuditLog.actor_id == str(user_id))
        & (AuditLog.ts_utc >= day_start)
        & (AuditLog.ts_utc < day_end)
        & AuditLog.action.in_(DETAIL_AUDIT_ACTIONS)
    ]
    if session_ids:
        audit_conditions.append((AuditLog.entity_type == "attendance") & AuditLog.entity_id.in_(session_ids))
    audit_rows = db.scalars(
        select(AuditLog).where(or_(*audit_conditions)).order_by(AuditLog.ts_utc.desc(), AuditLog.id.desc())
    ).all()

    payload = record.to_dict()
    payload["requested_id"] = record_id
    payload["activities"] = [_activity_payload(activity) for activity in activities]
    payload["gaps"] = find_activity_gaps(activities) if sessions else []
    payload["audit_logs"] = [_audit_payload(row) for row in audit_rows]
    return payload
