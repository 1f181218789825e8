from datetime import date, datetime

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from fieldops.db import get_db
from fieldops.deps import geocoder_dependency, get_now
from fieldops.errors import get_request_id
from fieldops.schemas import (
    AttendanceHistoryRead,
    AttendanceRead,
    AttendanceStatsRead,
    AttendanceStatusRead,
    CheckInRequest,
    CheckOutRead,
    CheckOutRequest,
    ReCheckInRequest,
)
from fieldops.security import Actor, require_actor
from fieldops.services.attendance import (
    check_in,
    check_out,
    get_attendance_history,
    get_attendance_stats,
    get_current_status,
    re_check_in,
)
from fieldops.services.geocoding import GeocodingService

router = APIRouter(tags=["attendance"])


@router.post("/api/attendance/check-in", response_model=AttendanceRead, status_code=status.HTTP_201_CREATED)
def check_in_endpoint(
    payload: CheckInRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
    geocoder: GeocodingService = Depends(geocoder_dependency),
    now: datetime = Depends(get_now),
) -> AttendanceRead:
    attendance = check_in(
        db,
        actor,
        latitude=payload.latitude,
        longitude=payload.longitude,
        address=payload.address,
        location_source=payload.location_source,
        notes=payload.notes,
        geocoder=geocoder,
        now=now,
        request_id=get_request_id(request),
    )
    request.state.attendance_id = attendance.id
    return AttendanceRead.model_validate(attendance)


@router.post("/api/attendance/check-out", response_model=CheckOutRead)
def check_out_endpoint(
    payload: CheckOutRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
    geocoder: GeocodingService = Depends(geocoder_dependency),
    now: datetime = Depends(get_now),
) -> CheckOutRead:
    result = check_out(
        db,
        actor,
        attendance_id=payload.attendance_id,
        latitude=payload.latitude,
        longitude=payload.longitude,
        address=payload.address,
        location_source=payload.location_source,
        notes=payload.notes,
        confirm_early_checkout=payload.confirm_early_checkout,
        geocoder=geocoder,
        now=now,
        request_id=get_request_id(request),
    )
    request.state.attendance_id = result.attendance.id
    return CheckOutRead(
        attendance=AttendanceRead.model_validate(result.attendance),
        auto_closed_activities=result.auto_closed_activities,
        early_checkout=result.early,
    )


@router.post("/api/attendance/re-check-in", response_model=AttendanceRead)
def re_check_in_endpoint(
    payload: ReCheckInRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
    geocoder: GeocodingService = Depends(geocoder_dependency),
    now: datetime = Depends(get_now),
) -> AttendanceRead:
    attendance = re_check_in(
        db,
        actor,
        attendance_id=payload.attendance_id,
        latitude=payload.latitude,
        longitude=payload.longitude,
        address=payload.address,
        location_source=payload.location_source,
        notes=payload.notes,
        geocoder=geocoder,
        now=now,
        request_id=get_request_id(request),
    )
    return AttendanceRead.model_validate(attendance)


@router.get("/api/attendance/status", response_model=AttendanceStatusRead)
def attendance_status_endpoint(
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
) -> AttendanceStatusRead:
    attendance, is_checked_in = get_current_status(db, actor, now=now)
    return AttendanceStatusRead(
        is_checked_in=is_checked_in,
        attendance=AttendanceRead.model_validate(attendance) if attendance is not None else None,
    )


@router.get("/api/attendance/history", response_model=AttendanceHistoryRead)
def attendance_history_endpoint(
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> AttendanceHistoryRead:
    rows, total = get_attendance_history(
        db,
        actor,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
    )
    return AttendanceHistoryRead(
        items=[AttendanceRead.model_validate(row) for row in rows],
        page=page,
        limit=limit,
        total=total,
    )


@router.get("/api/attendance/stats", response_model=AttendanceStatsRead)
def attendance_stats_endpoint(
    period: str = Query(default="month"),
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
) -> AttendanceStatsRead:
    return AttendanceStatsRead.model_validate(get_attendance_stats(db, actor, period=period, now=now))
