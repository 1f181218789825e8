from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from fieldops.audit import emit_audit_event, record_audit
from fieldops.db import commit_or_raise, flush_or_raise
from fieldops.errors import AuthorizationError, NotFoundError, PersistenceError, ValidationError
from fieldops.models import (
    ActivityType,
    DailyActivityLog,
    OnsiteVisitEvent,
    Priority,
    Ticket,
    TicketFeedback,
    TicketLocationSnapshot,
    TicketStatus,
    TicketStatusHistory,
    UserRole,
)
from fieldops.security import Actor
from fieldops.services.attendance import validate_coordinates
from fieldops.services.clock import floor_minutes, normalize_ts
from fieldops.services.geocoding import GeocodingService, resolve_address
from fieldops.services.notifications import (
    EVENT_TICKET_CLOSED_PENDING,
    EVENT_TICKET_OPENED,
    build_idempotency_key,
    enqueue_notification,
)
from fieldops.services.photo_storage import PhotoStore, PhotoUpload, store_photos
from fieldops.services.transitions import (
    allowed_next_for_role,
    ensure_role_may_enter,
    ensure_valid_transition,
)

logger = logging.getLogger("fieldops.tickets")

ACCURATE_LOCATION_METERS = 100.0

ONSITE_EVENTS: dict[TicketStatus, OnsiteVisitEvent] = {
    TicketStatus.ONSITE_VISIT_STARTED: OnsiteVisitEvent.STARTED,
    TicketStatus.ONSITE_VISIT_REACHED: OnsiteVisitEvent.REACHED,
    TicketStatus.ONSITE_VISIT_IN_PROGRESS: OnsiteVisitEvent.WORK_STARTED,
    TicketStatus.ONSITE_VISIT_RESOLVED: OnsiteVisitEvent.RESOLVED,
    TicketStatus.ONSITE_VISIT_PENDING: OnsiteVisitEvent.PENDING,
    TicketStatus.ONSITE_VISIT_COMPLETED: OnsiteVisitEvent.ENDED,
}

_STATUS_TIMESTAMP_FIELDS: dict[TicketStatus, str] = {
    TicketStatus.ONSITE_VISIT_STARTED: "visit_started_at",
    TicketStatus.ONSITE_VISIT_REACHED: "visit_reached_at",
    TicketStatus.ONSITE_VISIT_IN_PROGRESS: "visit_in_progress_at",
    TicketStatus.ONSITE_VISIT_RESOLVED: "visit_resolved_at",
    TicketStatus.ONSITE_VISIT_COMPLETED: "visit_completed_at",
    TicketStatus.PO_REACHED: "po_reached_at",
    TicketStatus.RESOLVED: "resolved_at",
}

_NOTIFY_EVENTS: dict[TicketStatus, str] = {
    TicketStatus.OPEN: EVENT_TICKET_OPENED,
    TicketStatus.CLOSED_PENDING: EVENT_TICKET_CLOSED_PENDING,
}


@dataclass(frozen=True, slots=True)
class LocationInput:
    latitude: float
    longitude: float
    address: str | None = None
    accuracy: float | None = None
    source: str = "gps"
    timestamp: datetime | None = None


@dataclass(slots=True)
class ResolvedLocation:
    latitude: float
    longitude: float
    address: str
    accuracy: float | None
    source: str
    captured_at: datetime

    @property
    def should_persist(self) -> bool:
        return self.source == "manual" or (self.accuracy is not None and self.accuracy <= ACCURATE_LOCATION_METERS)

    def as_dict(self) -> dict[str, Any]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "address": self.address,
            "accuracy": self.accuracy,
            "source": self.source,
            "timestamp": self.captured_at.isoformat(),
        }

    def summary(self) -> str:
        lines = [f"Location: {self.address}", f"Coordinates: {self.latitude:.6f}, {self.longitude:.6f}"]
        if self.source == "manual":
            lines.append("Source: Manual")
        elif self.accuracy is not None and self.accuracy <= ACCURATE_LOCATION_METERS:
            lines.append(f"Source: Accurate ({self.accuracy:.0f}m)")
        elif self.accuracy is not None:
            lines.append(f"Source: Low accuracy ({self.accuracy:.0f}m)")
        return "\n".join(lines)


@dataclass(slots=True)
class TransitionResult:
    ticket: Ticket
    history: TicketStatusHistory
    previous_status: TicketStatus


def can_access_ticket(actor: Actor, ticket: Ticket) -> bool:
    if actor.role in {UserRole.ADMIN, UserRole.EXPERT_HELPDESK}:
        return True
    if actor.role in {UserRole.ZONE_USER, UserRole.ZONE_MANAGER}:
        if actor.id in {ticket.assigned_to_id, ticket.owner_id, ticket.sub_owner_id, ticket.created_by_id}:
            return True
        if ticket.zone_id is None:
            return False
        return ticket.zone_id in actor.zone_ids
    if actor.role == UserRole.SERVICE_PERSON:
        return actor.id in {ticket.assigned_to_id, ticket.sub_owner_id, ticket.created_by_id}
    if actor.role == UserRole.EXTERNAL_USER:
        return ticket.created_by_id == actor.id
    return actor.id in {ticket.owner_id, ticket.sub_owner_id}


def check_ticket_access(actor: Actor, ticket: Ticket) -> None:
    if not can_access_ticket(actor, ticket):
        raise AuthorizationError("You do not have access to this ticket.", code="TICKET_ACCESS_DENIED")


def compute_time_metrics(ticket: Ticket, now: datetime) -> tuple[int, int]:
    """Minutes in the current status and since creation, floored."""
    time_in_status = floor_minutes(ticket.last_status_change, now)
    total_time_open = floor_minutes(ticket.created_at, now)
    return time_in_status, total_time_open


def _load_ticket(db: Session, ticket_id: int, *, for_update: bool = False) -> Ticket:
    stmt = select(Ticket).where(Ticket.id == ticket_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    ticket = db.scalar(stmt)
    if ticket is None:
        raise NotFoundError("Ticket not found.", code="TICKET_NOT_FOUND")
    return ticket


def get_ticket(db: Session, actor: Actor, ticket_id: int) -> Ticket:
    ticket = _load_ticket(db, ticket_id)
    check_ticket_access(actor, ticket)
    return ticket


def get_ticket_history(db: Session, actor: Actor, ticket_id: int) -> list[TicketStatusHistory]:
    get_ticket(db, actor, ticket_id)
    return list(
        db.scalars(
            select(TicketStatusHistory)
            .where(TicketStatusHistory.ticket_id == ticket_id)
            .order_by(TicketStatusHistory.changed_at.asc(), TicketStatusHistory.id.asc())
        ).all()
    )


def get_location_snapshots(db: Session, actor: Actor, ticket_id: int) -> list[TicketLocationSnapshot]:
    get_ticket(db, actor, ticket_id)
    return list(
        db.scalars(
            select(TicketLocationSnapshot)
            .where(TicketLocationSnapshot.ticket_id == ticket_id)
            .order_by(TicketLocationSnapshot.captured_at.asc(), TicketLocationSnapshot.id.asc())
        ).all()
    )


def allowed_transitions_for(db: Session, actor: Actor, ticket_id: int) -> dict[str, Any]:
    ticket = get_ticket(db, actor, ticket_id)
    return {
        "ticket_id": ticket.id,
        "current": ticket.status.value,
        "allowed": [item.value for item in allowed_next_for_role(ticket.status, actor.role)],
    }


def _enqueue_status_notification(
    db: Session,
    *,
    ticket: Ticket,
    status: TicketStatus,
    history_id: int,
    actor: Actor,
    comments: str | None,
) -> None:
    event = _NOTIFY_EVENTS.get(status)
    if event is None:
        return
    try:
        enqueue_notification(
            db,
            entity_type="ticket",
            entity_id=ticket.id,
            event=event,
            payload={
                "ticket_id": ticket.id,
                "title": ticket.title,
                "status": status.value,
                "priority": ticket.priority.value,
                "assigned_to_id": ticket.assigned_to_id,
                "changed_by_id": actor.id,
                "comments": comments,
            },
            idempotency_key=build_idempotency_key(
                entity_type="ticket",
                entity_id=ticket.id,
                event=event,
                discriminator=str(history_id),
            ),
        )
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception(
            "ticket_notification_enqueue_failed",
            extra={"ticket_id": ticket.id, "status": status.value},
        )
        raise PersistenceError() from exc


def _log_status_activity(
    db: Session,
    *,
    ticket: Ticket,
    actor: Actor,
    previous: TicketStatus,
    status: TicketStatus,
    location: ResolvedLocation | None,
    changed_at: datetime,
) -> None:
    details: dict[str, Any] = {
        "source": "ticket_status_change",
        "old_status": previous.value,
        "new_status": status.value,
    }
    if location is not None:
        details["location"] = location.as_dict()
    try:
        db.add(
            DailyActivityLog(
                user_id=actor.id,
                ticket_id=ticket.id,
                activity_type=ActivityType.TICKET_WORK,
                title=f"Ticket #{ticket.id}: {previous.value} to {status.value}",
                description=ticket.title,
                start_time=changed_at,
                end_time=changed_at,
                duration=0,
                location=location.address if location else None,
                latitude=location.latitude if location else None,
                longitude=location.longitude if location else None,
                extra=details,
            )
        )
        db.commit()
    except Exception:
        db.rollback()
        logger.exception(
            "ticket_status_activity_log_failed",
            extra={"ticket_id": ticket.id, "status": status.value},
        )


def _resolve_location(
    geocoder: GeocodingService | None,
    location: LocationInput | None,
    reference: datetime,
) -> ResolvedLocation | None:
    if location is None:
        return None
    lat, lng = validate_coordinates(location.latitude, location.longitude)
    if location.accuracy is not None and location.accuracy < 0:
        raise ValidationError("accuracy must not be negative.")
    source = "manual" if location.source == "manual" else "gps"
    address = resolve_address(geocoder, lat, lng, address=location.address, location_source=source)
    return ResolvedLocation(
        latitude=lat,
        longitude=lng,
        address=address,
        accuracy=location.accuracy,
        source=source,
        captured_at=normalize_ts(location.timestamp) if location.timestamp else reference,
    )


def create_ticket(
    db: Session,
    actor: Actor,
    *,
    title: str,
    description: str | None = None,
    priority: Priority = Priority.MEDIUM,
    zone_id: int | None = None,
    customer_id: int | None = None,
    owner_id: int | None = None,
    sub_owner_id: int | None = None,
    assigned_to_id: int | None = None,
    now: datetime | None = None,
    request_id: str | None = None,
) -> Ticket:
    reference = normalize_ts(now)
    clean_title = (title or "").strip()
    if not clean_title:
        raise ValidationError("title is required.")
    if actor.role in {UserRole.ZONE_USER, UserRole.ZONE_MANAGER} and zone_id is not None:
        if zone_id not in actor.zone_ids:
            raise AuthorizationError("You cannot create tickets outside your zones.", code="ZONE_ACCESS_DENIED")

    ticket = Ticket(
        title=clean_title,
        description=description,
        status=TicketStatus.OPEN,
        priority=priority,
        zone_id=zone_id,
        customer_id=customer_id,
        owner_id=owner_id if owner_id is not None else actor.id,
        sub_owner_id=sub_owner_id,
        assigned_to_id=assigned_to_id,
        created_by_id=actor.id,
        created_at=reference,
        updated_at=reference,
        last_status_change=reference,
        time_in_status=0,
        total_time_open=0,
    )
    db.add(ticket)
    flush_or_raise(db)
    history = TicketStatusHistory(
        ticket_id=ticket.id,
        status=TicketStatus.OPEN,
        previous_status=None,
        changed_by_id=actor.id,
        changed_at=reference,
        notes="Ticket created",
        time_in_status=0,
        total_time_open=0,
        photos=[],
    )
    db.add(history)
    flush_or_raise(db)
    audit = record_audit(
        db,
        actor_id=actor.id,
        action="TICKET_CREATED",
        entity_type="ticket",
        entity_id=ticket.id,
        details={"title": clean_title, "priority": priority.value, "zone_id": zone_id},
        request_id=request_id,
        ts_utc=reference,
    )
    _enqueue_status_notification(
        db,
        ticket=ticket,
        status=TicketStatus.OPEN,
        history_id=history.id,
        actor=actor,
        comments=description,
    )
    commit_or_raise(db)
    emit_audit_event(audit)
    return ticket


def change_ticket_status(
    db: Session,
    actor: Actor,
    ticket_id: int,
    *,
    status: TicketStatus | str,
    comments: str | None = None,
    location: LocationInput | None = None,
    photos: list[PhotoUpload] | None = None,
    feedback: str | None = None,
    rating: int | None = None,
    geocoder: GeocodingService | None = None,
    photo_store: PhotoStore | None = None,
    now: datetime | None = None,
    request_id: str | None = None,
) -> TransitionResult:
    """Apply one validated status transition.

    The ticket update, its history entry, the location snapshot, feedback,
    the audit row and the outbox job commit together; a failure staging the
    outbox job rolls the transition back. Photos are stored only after the
    transition has been re-checked under the row lock. The derived activity
    log runs afterwards in its own transaction and its failure is logged
    without undoing the transition.
    """
    try:
        target = TicketStatus(status)
    except ValueError as exc:
        raise ValidationError("Invalid status.", code="INVALID_STATUS", details={"status": str(status)}) from exc

    reference = normalize_ts(now)
    ticket = _load_ticket(db, ticket_id)
    check_ticket_access(actor, ticket)
    ensure_role_may_enter(actor.role, target)
    ensure_valid_transition(ticket.status, target)
    if target != TicketStatus.CLOSED and (feedback is not None or rating is not None):
        raise ValidationError("Feedback and rating can only be submitted when closing a ticket.")
    if rating is not None and not 1 <= rating <= 5:
        raise ValidationError("rating must be between 1 and 5.")
    if feedback and rating is None:
        raise ValidationError("rating is required when submitting feedback.")

    resolved = _resolve_location(geocoder, location, reference)

    ticket = _load_ticket(db, ticket_id, for_update=True)
    previous = ticket.status
    ensure_valid_transition(previous, target)
    photo_outcome = store_photos(
        photo_store,
        list(photos or []),
        {"ticket_id": ticket_id, "user_id": actor.id, "type": "ticket"},
    )

    time_in_status, total_time_open = compute_time_metrics(ticket, reference)
    ticket.status = target
    ticket.last_status_change = reference
    ticket.time_in_status = time_in_status
    ticket.total_time_open = total_time_open
    ticket.updated_at = reference

    timestamp_field = _STATUS_TIMESTAMP_FIELDS.get(target)
    if timestamp_field is not None:
        setattr(ticket, timestamp_field, reference)
    if resolved is not None:
        if target == TicketStatus.ONSITE_VISIT_STARTED:
            ticket.onsite_start_location = resolved.as_dict()
        elif target == TicketStatus.ONSITE_VISIT_COMPLETED:
            ticket.onsite_end_location = resolved.as_dict()
        db.add(
            TicketLocationSnapshot(
                ticket_id=ticket.id,
                user_id=actor.id,
                status=target,
                event=ONSITE_EVENTS.get(target),
                latitude=resolved.latitude,
                longitude=resolved.longitude,
                address=resolved.address,
                accuracy=resolved.accuracy,
                source=resolved.source,
                captured_at=resolved.captured_at,
            )
        )

    note_parts = [part for part in [(comments or "").strip()] if part]
    if resolved is not None:
        note_parts.append(resolved.summary())
    if photo_outcome.summary:
        note_parts.append(photo_outcome.summary)
    keep_location = resolved is not None and resolved.should_persist

    history = TicketStatusHistory(
        ticket_id=ticket.id,
        status=target,
        previous_status=previous,
        changed_by_id=actor.id,
        changed_at=reference,
        notes="\n\n".join(note_parts) or None,
        time_in_status=time_in_status,
        total_time_open=total_time_open,
        latitude=resolved.latitude if keep_location else None,
        longitude=resolved.longitude if keep_location else None,
        address=resolved.address if keep_location else None,
        accuracy=resolved.accuracy if keep_location else None,
        location_source=resolved.source if keep_location else None,
        photos=photo_outcome.entries,
    )
    db.add(history)

    if target == TicketStatus.CLOSED and rating is not None:
        db.add(
            TicketFeedback(
                ticket_id=ticket.id,
                rating=rating,
                feedback=feedback,
                submitted_by_id=actor.id,
                created_at=reference,
            )
        )

    flush_or_raise(db)
    audit = record_audit(
        db,
        actor_id=actor.id,
        action="TICKET_STATUS_CHANGED",
        entity_type="ticket",
        entity_id=ticket.id,
        details={
            "from": previous.value,
            "to": target.value,
            "time_in_status": time_in_status,
            "total_time_open": total_time_open,
            "history_id": history.id,
            "has_location": resolved is not None,
            "photo_count": len(photo_outcome.entries),
        },
        request_id=request_id,
        ts_utc=reference,
    )
    _enqueue_status_notification(
        db,
        ticket=ticket,
        status=target,
        history_id=history.id,
        actor=actor,
        comments=comments,
    )
    commit_or_raise(db)
    emit_audit_event(audit)
    logger.info(
        "ticket_status_changed",
        extra={"ticket_id": ticket.id, "from": previous.value, "to": target.value, "actor_id": actor.id},
    )

    _log_status_activity(
        db,
        ticket=ticket,
        actor=actor,
        previous=previous,
        status=target,
        location=resolved,
        changed_at=reference,
    )
    return TransitionResult(ticket=ticket, history=history, previous_status=previous)


def close_ticket(
    db: Session,
    actor: Actor,
    ticket_id: int,
    *,
    rating: int | None = None,
    feedback: str | None = None,
    comments: str | None = None,
    now: datetime | None = None,
    request_id: str | None = None,
) -> TransitionResult:
    return change_ticket_status(
        db,
        actor,
        ticket_id,
        status=TicketStatus.CLOSED,
        comments=comments,
        rating=rating,
        feedback=feedback,
        now=now,
        request_id=request_id,
    )
