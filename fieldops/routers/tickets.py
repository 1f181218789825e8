from datetime import datetime

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from fieldops.db import get_db
from fieldops.deps import geocoder_dependency, get_now, photo_store_dependency
from fieldops.errors import get_request_id
from fieldops.schemas import (
    AllowedTransitionsRead,
    LocationPayload,
    PhotoPayload,
    TicketCloseRequest,
    TicketCreateRequest,
    TicketLocationSnapshotRead,
    TicketRead,
    TicketStatusChangeRequest,
    TicketStatusHistoryRead,
    TicketTransitionRead,
)
from fieldops.security import Actor, require_actor
from fieldops.services.geocoding import GeocodingService
from fieldops.services.photo_storage import PhotoStore, PhotoUpload
from fieldops.services.tickets import (
    LocationInput,
    TransitionResult,
    allowed_transitions_for,
    change_ticket_status,
    close_ticket,
    create_ticket,
    get_location_snapshots,
    get_ticket,
    get_ticket_history,
)

router = APIRouter(tags=["tickets"])


def _location_input(payload: LocationPayload | None) -> LocationInput | None:
    if payload is None:
        return None
    return LocationInput(
        latitude=payload.latitude,
        longitude=payload.longitude,
        address=payload.address,
        accuracy=payload.accuracy,
        source=payload.source,
        timestamp=payload.timestamp,
    )


def _photo_uploads(photos: list[PhotoPayload]) -> list[PhotoUpload]:
    return [
        PhotoUpload(data=item.data, filename=item.filename, content_type=item.content_type, size=item.size)
        for item in photos
    ]


def _transition_read(result: TransitionResult) -> TicketTransitionRead:
    return TicketTransitionRead(
        ticket=TicketRead.model_validate(result.ticket),
        history=TicketStatusHistoryRead.model_validate(result.history),
        previous_status=result.previous_status,
    )


@router.post("/api/tickets", response_model=TicketRead, status_code=status.HTTP_201_CREATED)
def create_ticket_endpoint(
    payload: TicketCreateRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
) -> TicketRead:
    ticket = create_ticket(
        db,
        actor,
        title=payload.title,
        description=payload.description,
        priority=payload.priority,
        zone_id=payload.zone_id,
        customer_id=payload.customer_id,
        owner_id=payload.owner_id,
        sub_owner_id=payload.sub_owner_id,
        assigned_to_id=payload.assigned_to_id,
        now=now,
        request_id=get_request_id(request),
    )
    return TicketRead.model_validate(ticket)


@router.get("/api/tickets/{ticket_id}", response_model=TicketRead)
def get_ticket_endpoint(
    ticket_id: int,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> TicketRead:
    return TicketRead.model_validate(get_ticket(db, actor, ticket_id))


@router.get("/api/tickets/{ticket_id}/history", response_model=list[TicketStatusHistoryRead])
def get_ticket_history_endpoint(
    ticket_id: int,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> list[TicketStatusHistoryRead]:
    return [TicketStatusHistoryRead.model_validate(row) for row in get_ticket_history(db, actor, ticket_id)]


@router.get("/api/tickets/{ticket_id}/locations", response_model=list[TicketLocationSnapshotRead])
def get_ticket_locations_endpoint(
    ticket_id: int,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> list[TicketLocationSnapshotRead]:
    return [TicketLocationSnapshotRead.model_validate(row) for row in get_location_snapshots(db, actor, ticket_id)]


@router.get("/api/tickets/{ticket_id}/transitions", response_model=AllowedTransitionsRead)
def get_allowed_transitions_endpoint(
    ticket_id: int,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> AllowedTransitionsRead:
    return AllowedTransitionsRead.model_validate(allowed_transitions_for(db, actor, ticket_id))


@router.patch("/api/tickets/{ticket_id}/status", response_model=TicketTransitionRead)
def change_ticket_status_endpoint(
    ticket_id: int,
    payload: TicketStatusChangeRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
    geocoder: GeocodingService = Depends(geocoder_dependency),
    photo_store: PhotoStore = Depends(photo_store_dependency),
    now: datetime = Depends(get_now),
) -> TicketTransitionRead:
    result = change_ticket_status(
        db,
        actor,
        ticket_id,
        status=payload.status,
        comments=payload.comments,
        location=_location_input(payload.location),
        photos=_photo_uploads(payload.photos),
        feedback=payload.feedback,
        rating=payload.rating,
        geocoder=geocoder,
        photo_store=photo_store,
        now=now,
        request_id=get_request_id(request),
    )
    return _transition_read(result)


@router.post("/api/tickets/{ticket_id}/close", response_model=TicketTransitionRead)
def close_ticket_endpoint(
    ticket_id: int,
    payload: TicketCloseRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
) -> TicketTransitionRead:
    result = close_ticket(
        db,
        actor,
        ticket_id,
        rating=payload.rating,
        feedback=payload.feedback,
        comments=payload.comments,
        now=now,
        request_id=get_request_id(request),
    )
    return _transition_read(result)
