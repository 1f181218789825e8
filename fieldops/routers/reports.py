from datetime import date, datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from fieldops.db import get_db
from fieldops.deps import get_now
from fieldops.models import UserRole
from fieldops.schemas import AttendanceDetailRead, AttendanceReportRead, AttendanceSummaryRead
from fieldops.security import Actor, require_roles
from fieldops.services.consolidation import (
    ReportFilters,
    build_attendance_report,
    build_attendance_summary,
    get_attendance_detail,
)

router = APIRouter(tags=["attendance-reports"])

require_admin = require_roles(UserRole.ADMIN)
require_zone_viewer = require_roles(UserRole.ADMIN, UserRole.ZONE_MANAGER, UserRole.ZONE_USER)


def report_filters(
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    zone_id: int | None = Query(default=None, ge=1),
    user_id: int | None = Query(default=None, ge=1),
    search: str | None = Query(default=None, max_length=255),
    status: str | None = Query(default=None),
    activity_type: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=500),
) -> ReportFilters:
    return ReportFilters(
        start_date=start_date,
        end_date=end_date,
        zone_id=zone_id,
        user_id=user_id,
        search=search.strip() if search and search.strip() else None,
        status=status.strip().upper() if status and status.strip() and status.strip().lower() != "all" else None,
        activity_type=activity_type.strip().upper() if activity_type and activity_type.strip() else None,
        page=page,
        limit=limit,
    )


def _report(db: Session, actor: Actor, filters: ReportFilters, now: datetime) -> AttendanceReportRead:
    return AttendanceReportRead.model_validate(build_attendance_report(db, actor, filters, now=now))


def _summary(db: Session, actor: Actor, filters: ReportFilters, now: datetime) -> AttendanceSummaryRead:
    return AttendanceSummaryRead.model_validate(build_attendance_summary(db, actor, filters, now=now))


def _detail(db: Session, actor: Actor, record_id: str, now: datetime) -> AttendanceDetailRead:
    return AttendanceDetailRead.model_validate(get_attendance_detail(db, actor, record_id, now=now))


@router.get("/api/admin/attendance", response_model=AttendanceReportRead)
def admin_attendance_report(
    filters: ReportFilters = Depends(report_filters),
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
) -> AttendanceReportRead:
    return _report(db, actor, filters, now)


@router.get("/api/zone/attendance", response_model=AttendanceReportRead)
def zone_attendance_report(
    filters: ReportFilters = Depends(report_filters),
    actor: Actor = Depends(require_zone_viewer),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
) -> AttendanceReportRead:
    return _report(db, actor, filters, now)


@router.get("/api/admin/attendance/stats", response_model=AttendanceSummaryRead)
def admin_attendance_summary(
    filters: ReportFilters = Depends(report_filters),
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
) -> AttendanceSummaryRead:
    return _summary(db, actor, filters, now)


@router.get("/api/zone/attendance/stats", response_model=AttendanceSummaryRead)
def zone_attendance_summary(
    filters: ReportFilters = Depends(report_filters),
    actor: Actor = Depends(require_zone_viewer),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
) -> AttendanceSummaryRead:
    return _summary(db, actor, filters, now)


@router.get("/api/admin/attendance/{record_id}", response_model=AttendanceDetailRead)
def admin_attendance_detail(
    record_id: str,
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
) -> AttendanceDetailRead:
    return _detail(db, actor, record_id, now)


@router.get("/api/zone/attendance/{record_id}", response_model=AttendanceDetailRead)
def zone_attendance_detail(
    record_id: str,
    actor: Actor = Depends(require_zone_viewer),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
) -> AttendanceDetailRead:
    return _detail(db, actor, record_id, now)
