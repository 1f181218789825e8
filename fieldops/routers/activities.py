from datetime import date, datetime

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from fieldops.db import get_db
from fieldops.deps import geocoder_dependency, get_now, photo_store_dependency
from fieldops.errors import get_request_id
from fieldops.models import ActivityType
from fieldops.schemas import (
    ActivityCreateRequest,
    ActivityEndRequest,
    ActivityListRead,
    ActivityRead,
    ActivityStageRead,
    ActivityWithStagesRead,
    StageChangeRead,
    StageCreateRequest,
    StageEndRequest,
    StageTemplateRead,
)
from fieldops.security import Actor, require_actor
from fieldops.services.activities import (
    StageChange,
    create_activity,
    create_stage,
    end_activity,
    end_stage,
    get_stage_template,
    list_activities,
    list_stages,
)
from fieldops.services.geocoding import GeocodingService
from fieldops.services.photo_storage import PhotoStore, PhotoUpload

router = APIRouter(tags=["activities"])


def _stage_change_read(change: StageChange) -> StageChangeRead:
    return StageChangeRead(
        stage=ActivityStageRead.model_validate(change.stage),
        activity=ActivityRead.model_validate(change.activity),
        closed_stage_ids=change.closed_stage_ids,
        activity_closed=change.activity_closed,
    )


@router.get("/api/activities/templates/{activity_type}", response_model=StageTemplateRead)
def stage_template_endpoint(
    activity_type: str,
    actor: Actor = Depends(require_actor),
) -> StageTemplateRead:
    return StageTemplateRead.model_validate(get_stage_template(activity_type))


@router.post("/api/activities", response_model=ActivityRead, status_code=status.HTTP_201_CREATED)
def create_activity_endpoint(
    payload: ActivityCreateRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
    geocoder: GeocodingService = Depends(geocoder_dependency),
    now: datetime = Depends(get_now),
) -> ActivityRead:
    activity = create_activity(
        db,
        actor,
        activity_type=payload.activity_type,
        title=payload.title,
        description=payload.description,
        start_time=payload.start_time,
        end_time=payload.end_time,
        ticket_id=payload.ticket_id,
        latitude=payload.latitude,
        longitude=payload.longitude,
        location=payload.location,
        location_source=payload.location_source,
        metadata=payload.metadata,
        geocoder=geocoder,
        now=now,
        request_id=get_request_id(request),
    )
    return ActivityRead.model_validate(activity)


@router.get("/api/activities", response_model=ActivityListRead)
def list_activities_endpoint(
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    activity_type: ActivityType | None = Query(default=None),
    ticket_id: int | None = Query(default=None, ge=1),
    include_stages: bool = Query(default=False),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> ActivityListRead:
    rows, total = list_activities(
        db,
        actor,
        start_date=start_date,
        end_date=end_date,
        activity_type=activity_type,
        ticket_id=ticket_id,
        include_stages=include_stages,
        page=page,
        limit=limit,
    )
    read_model = ActivityWithStagesRead if include_stages else ActivityRead
    return ActivityListRead(
        items=[read_model.model_validate(row) for row in rows],
        page=page,
        limit=limit,
        total=total,
    )


@router.post("/api/activities/{activity_id}/end", response_model=ActivityRead)
def end_activity_endpoint(
    activity_id: int,
    payload: ActivityEndRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
) -> ActivityRead:
    activity = end_activity(
        db,
        actor,
        activity_id,
        end_time=payload.end_time,
        description=payload.description,
        now=now,
        request_id=get_request_id(request),
    )
    return ActivityRead.model_validate(activity)


@router.get("/api/activities/{activity_id}/stages", response_model=list[ActivityStageRead])
def list_stages_endpoint(
    activity_id: int,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> list[ActivityStageRead]:
    return [ActivityStageRead.model_validate(row) for row in list_stages(db, actor, activity_id)]


@router.post(
    "/api/activities/{activity_id}/stages",
    response_model=StageChangeRead,
    status_code=status.HTTP_201_CREATED,
)
def create_stage_endpoint(
    activity_id: int,
    payload: StageCreateRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
    geocoder: GeocodingService = Depends(geocoder_dependency),
    photo_store: PhotoStore = Depends(photo_store_dependency),
    now: datetime = Depends(get_now),
) -> StageChangeRead:
    change = create_stage(
        db,
        actor,
        activity_id,
        stage=payload.stage,
        latitude=payload.latitude,
        longitude=payload.longitude,
        location=payload.location,
        location_source=payload.location_source,
        notes=payload.notes,
        photos=[
            PhotoUpload(data=item.data, filename=item.filename, content_type=item.content_type, size=item.size)
            for item in payload.photos
        ],
        geocoder=geocoder,
        photo_store=photo_store,
        now=now,
        request_id=get_request_id(request),
    )
    return _stage_change_read(change)


@router.post("/api/activities/{activity_id}/stages/{stage_id}/end", response_model=StageChangeRead)
def end_stage_endpoint(
    activity_id: int,
    stage_id: int,
    payload: StageEndRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
) -> StageChangeRead:
    change = end_stage(
        db,
        actor,
        activity_id,
        stage_id,
        end_time=payload.end_time,
        notes=payload.notes,
        now=now,
        request_id=get_request_id(request),
    )
    return _stage_change_read(change)
