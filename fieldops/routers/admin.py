from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from fieldops.audit import log_audit
from fieldops.db import get_db
from fieldops.deps import get_now
from fieldops.errors import get_request_id
from fieldops.models import UserRole
from fieldops.schemas import (
    ActivityRead,
    AdminActivityLogRequest,
    AdminAttendanceUpdateRequest,
    AttendanceRead,
    AutoCheckoutRunRead,
)
from fieldops.security import Actor, require_roles
from fieldops.services.activities import admin_add_activity_log
from fieldops.services.attendance import admin_update_session, run_auto_checkout
from fieldops.services.notifications import send_pending_notifications

router = APIRouter(tags=["admin"])

require_admin = require_roles(UserRole.ADMIN)


@router.put("/api/admin/attendance/{attendance_id}", response_model=AttendanceRead)
def update_attendance_session(
    attendance_id: int,
    payload: AdminAttendanceUpdateRequest,
    request: Request,
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db),
) -> AttendanceRead:
    attendance = admin_update_session(
        db,
        actor,
        attendance_id=attendance_id,
        check_in_at=payload.check_in_at,
        check_out_at=payload.check_out_at,
        status=payload.status,
        notes=payload.notes,
        admin_notes=payload.admin_notes,
        request_id=get_request_id(request),
    )
    return AttendanceRead.model_validate(attendance)


@router.post(
    "/api/admin/attendance/{attendance_id}/activities",
    response_model=ActivityRead,
    status_code=status.HTTP_201_CREATED,
)
def add_activity_log(
    attendance_id: int,
    payload: AdminActivityLogRequest,
    request: Request,
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db),
) -> ActivityRead:
    activity = admin_add_activity_log(
        db,
        actor,
        attendance_id,
        activity_type=payload.activity_type,
        title=payload.title,
        start_time=payload.start_time,
        description=payload.description,
        end_time=payload.end_time,
        location=payload.location,
        latitude=payload.latitude,
        longitude=payload.longitude,
        ticket_id=payload.ticket_id,
        request_id=get_request_id(request),
    )
    return ActivityRead.model_validate(activity)


@router.post("/api/admin/attendance/auto-checkout", response_model=AutoCheckoutRunRead)
def trigger_auto_checkout(
    request: Request,
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
) -> AutoCheckoutRunRead:
    summary = run_auto_checkout(db, now=now, request_id=get_request_id(request))
    log_audit(
        db,
        actor_id=str(actor.id),
        action="AUTO_CHECKOUT_TRIGGERED",
        success=True,
        entity_type="attendance",
        entity_id=None,
        details=summary.to_dict(),
        request_id=get_request_id(request),
    )
    return AutoCheckoutRunRead(
        local_day=summary.local_day,
        cutoff_utc=summary.cutoff_utc,
        before_cutoff=summary.before_cutoff,
        processed=summary.processed,
        failed=summary.failed,
        closed_activities=summary.closed_activities,
    )


@router.post("/api/admin/notifications/dispatch")
def dispatch_notifications(
    limit: int = Query(default=50, ge=1, le=500),
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
) -> dict[str, Any]:
    jobs = send_pending_notifications(limit=limit, now_utc=now, db=db)
    return {
        "processed": len(jobs),
        "jobs": [{"id": job.id, "event": job.event, "status": job.status.value, "attempts": job.attempts} for job in jobs],
    }
