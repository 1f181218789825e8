from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from fieldops.models import AuditLog

logger = logging.getLogger("fieldops.audit")


def record_audit(
    db: Session,
    *,
    actor_id: str | int,
    action: str,
    entity_type: str | None = None,
    entity_id: str | int | None = None,
    success: bool = True,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
    ts_utc: datetime | None = None,
) -> AuditLog:
    """Stage an audit row in the caller's transaction; the caller commits."""
    audit = AuditLog(
        ts_utc=ts_utc or datetime.now(timezone.utc),
        actor_id=str(actor_id),
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        success=success,
        details=details or {},
        request_id=request_id,
    )
    db.add(audit)
    return audit


def emit_audit_event(audit: AuditLog) -> None:
    logger.info(
        "audit_event",
        extra={
            "request_id": audit.request_id,
            "action": audit.action,
            "actor_id": audit.actor_id,
            "entity_type": audit.entity_type,
            "entity_id": audit.entity_id,
            "success": audit.success,
            "details": audit.details,
        },
    )


def log_audit(
    db: Session,
    *,
    actor_id: str | int,
    action: str,
    success: bool,
    entity_type: str | None = None,
    entity_id: str | int | None = None,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> None:
    audit = record_audit(
        db,
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        success=success,
        details=details,
        request_id=request_id,
    )
    try:
        db.commit()
    except Exception:
        db.rollback()
        logger.exception(
            "audit_log_write_failed",
            extra={
                "request_id": request_id,
                "action": action,
                "actor_id": str(actor_id),
                "success": success,
            },
        )
        return

    emit_audit_event(audit)
