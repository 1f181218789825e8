from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from fieldops.models import (
    ActivityStageName,
    ActivityType,
    AttendanceStatus,
    OnsiteVisitEvent,
    Priority,
    TicketStatus,
)

LocationSource = Literal["gps", "manual", "network"]


class PhotoPayload(BaseModel):
    data: str = Field(min_length=1)
    filename: str | None = Field(default=None, max_length=255)
    content_type: str | None = Field(default=None, max_length=100)
    size: int | None = Field(default=None, ge=0)


class LocationPayload(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    address: str | None = None
    accuracy: float | None = Field(default=None, ge=0)
    source: LocationSource = "gps"
    timestamp: datetime | None = None


class TicketCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    priority: Priority = Priority.MEDIUM
    zone_id: int | None = Field(default=None, ge=1)
    customer_id: int | None = Field(default=None, ge=1)
    owner_id: int | None = Field(default=None, ge=1)
    sub_owner_id: int | None = Field(default=None, ge=1)
    assigned_to_id: int | None = Field(default=None, ge=1)


class TicketStatusChangeRequest(BaseModel):
    status: str = Field(min_length=1)
    comments: str | None = None
    location: LocationPayload | None = None
    photos: list[PhotoPayload] = Field(default_factory=list, max_length=10)
    feedback: str | None = None
    rating: int | None = Field(default=None, ge=1, le=5)


class TicketCloseRequest(BaseModel):
    rating: int | None = Field(default=None, ge=1, le=5)
    feedback: str | None = None
    comments: str | None = None


class TicketRead(BaseModel):
    id: int
    title: str
    description: str | None
    status: TicketStatus
    priority: Priority
    customer_id: int | None
    zone_id: int | None
    owner_id: int | None
    sub_owner_id: int | None
    assigned_to_id: int | None
    created_by_id: int | None
    created_at: datetime
    updated_at: datetime
    last_status_change: datetime | None
    time_in_status: int | None
    total_time_open: int | None
    resolved_at: datetime | None
    visit_started_at: datetime | None
    visit_reached_at: datetime | None
    visit_in_progress_at: datetime | None
    visit_resolved_at: datetime | None
    visit_completed_at: datetime | None
    po_reached_at: datetime | None
    onsite_start_location: dict[str, Any] | None
    onsite_end_location: dict[str, Any] | None

    model_config = ConfigDict(from_attributes=True)


class TicketStatusHistoryRead(BaseModel):
    id: int
    ticket_id: int
    status: TicketStatus
    previous_status: TicketStatus | None
    changed_by_id: int | None
    changed_at: datetime
    notes: str | None
    time_in_status: int | None
    total_time_open: int | None
    latitude: float | None
    longitude: float | None
    address: str | None
    accuracy: float | None
    location_source: str | None
    photos: list[dict[str, Any]] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class TicketLocationSnapshotRead(BaseModel):
    id: int
    ticket_id: int
    user_id: int | None
    status: TicketStatus
    event: OnsiteVisitEvent | None
    latitude: float
    longitude: float
    address: str | None
    accuracy: float | None
    source: str
    captured_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TicketTransitionRead(BaseModel):
    ticket: TicketRead
    history: TicketStatusHistoryRead
    previous_status: TicketStatus


class AllowedTransitionsRead(BaseModel):
    ticket_id: int
    current: TicketStatus
    allowed: list[TicketStatus]


class CheckInRequest(BaseModel):
    latitude: float
    longitude: float
    address: str | None = None
    location_source: LocationSource | None = None
    notes: str | None = None


class CheckOutRequest(BaseModel):
    attendance_id: int | None = Field(default=None, ge=1)
    latitude: float | None = None
    longitude: float | None = None
    address: str | None = None
    location_source: LocationSource | None = None
    notes: str | None = None
    confirm_early_checkout: bool = False


class ReCheckInRequest(BaseModel):
    attendance_id: int = Field(ge=1)
    latitude: float | None = None
    longitude: float | None = None
    address: str | None = None
    location_source: LocationSource | None = None
    notes: str | None = None


class AttendanceRead(BaseModel):
    id: int
    user_id: int
    check_in_at: datetime
    check_out_at: datetime | None
    check_in_latitude: float | None
    check_in_longitude: float | None
    check_in_address: str | None
    check_out_latitude: float | None
    check_out_longitude: float | None
    check_out_address: str | None
    total_hours: float | None
    status: AttendanceStatus
    notes: str | None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CheckOutRead(BaseModel):
    attendance: AttendanceRead
    auto_closed_activities: int
    early_checkout: bool


class AttendanceStatusRead(BaseModel):
    is_checked_in: bool
    attendance: AttendanceRead | None = None


class AttendanceHistoryRead(BaseModel):
    items: list[AttendanceRead]
    page: int
    limit: int
    total: int


class AttendanceStatsRead(BaseModel):
    period: str
    total_hours: float
    avg_hours_per_day: float
    total_days_worked: int
    records: int


class AdminAttendanceUpdateRequest(BaseModel):
    check_in_at: datetime | None = None
    check_out_at: datetime | None = None
    status: AttendanceStatus | None = None
    notes: str | None = None
    admin_notes: str | None = None

    @model_validator(mode="after")
    def validate_times(self) -> "AdminAttendanceUpdateRequest":
        if self.check_in_at and self.check_out_at and self.check_out_at < self.check_in_at:
            raise ValueError("check_out_at must be after check_in_at")
        return self


class AutoCheckoutRunRead(BaseModel):
    local_day: date
    cutoff_utc: datetime
    before_cutoff: bool
    processed: list[int]
    failed: list[int]
    closed_activities: int


class ActivityCreateRequest(BaseModel):
    activity_type: ActivityType
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    ticket_id: int | None = Field(default=None, ge=1)
    latitude: float | None = None
    longitude: float | None = None
    location: str | None = None
    location_source: LocationSource | None = None
    metadata: dict[str, Any] | None = None

    @model_validator(mode="after")
    def validate_window(self) -> "ActivityCreateRequest":
        if self.start_time and self.end_time and self.end_time < self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class ActivityEndRequest(BaseModel):
    end_time: datetime | None = None
    description: str | None = None


class AdminActivityLogRequest(BaseModel):
    activity_type: ActivityType
    title: str = Field(min_length=1, max_length=255)
    start_time: datetime
    end_time: datetime | None = None
    description: str | None = None
    location: str | None = None
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    ticket_id: int | None = Field(default=None, ge=1)


class StageCreateRequest(BaseModel):
    stage: ActivityStageName
    latitude: float | None = None
    longitude: float | None = None
    location: str | None = None
    location_source: LocationSource | None = None
    notes: str | None = None
    photos: list[PhotoPayload] = Field(default_factory=list, max_length=10)


class StageEndRequest(BaseModel):
    end_time: datetime | None = None
    notes: str | None = None


class ActivityStageRead(BaseModel):
    id: int
    activity_id: int
    stage: ActivityStageName
    start_time: datetime
    end_time: datetime | None
    duration: int | None
    location: str | None
    latitude: float | None
    longitude: float | None
    notes: str | None
    photos: list[dict[str, Any]] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class ActivityRead(BaseModel):
    id: int
    user_id: int
    ticket_id: int | None
    activity_type: ActivityType
    title: str
    description: str | None
    start_time: datetime
    end_time: datetime | None
    duration: int | None
    location: str | None
    latitude: float | None
    longitude: float | None
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="extra")
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ActivityWithStagesRead(ActivityRead):
    stages: list[ActivityStageRead] = Field(default_factory=list)


class ActivityListRead(BaseModel):
    items: list[ActivityWithStagesRead | ActivityRead]
    page: int
    limit: int
    total: int


class StageChangeRead(BaseModel):
    stage: ActivityStageRead
    activity: ActivityRead
    closed_stage_ids: list[int]
    activity_closed: bool


class StageTemplateStep(BaseModel):
    stage: ActivityStageName
    description: str
    required: bool


class StageTemplateRead(BaseModel):
    activity_type: str
    stages: list[StageTemplateStep]


class FlagRead(BaseModel):
    type: str
    message: str
    severity: Literal["info", "warning", "error"]


class ConsolidatedSessionRead(BaseModel):
    id: int
    check_in_at: datetime
    check_out_at: datetime | None
    status: AttendanceStatus
    total_hours: float | None
    notes: str | None


class ReportUserRead(BaseModel):
    id: int
    name: str
    email: str
    zone_ids: list[int]


class ConsolidatedRecordRead(BaseModel):
    id: str
    user_id: int
    user: ReportUserRead
    date: date
    status: AttendanceStatus
    check_in_at: datetime | None
    check_out_at: datetime | None
    check_in_latitude: float | None
    check_in_longitude: float | None
    check_in_address: str | None
    check_out_latitude: float | None
    check_out_longitude: float | None
    check_out_address: str | None
    total_hours: float
    notes: str | None
    session_count: int
    sessions: list[ConsolidatedSessionRead]
    activity_count: int
    flags: list[FlagRead]


class PaginationRead(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class AttendanceReportRead(BaseModel):
    attendance: list[ConsolidatedRecordRead]
    pagination: PaginationRead


class AttendanceSummaryRead(BaseModel):
    total_records: int
    status_breakdown: dict[str, int]
    average_hours: float
    period: str


class ActivityGapRead(BaseModel):
    start: datetime
    end: datetime
    duration: int
    after_activity_id: int
    before_activity_id: int


class AuditLogRead(BaseModel):
    id: int
    ts_utc: datetime
    actor_id: str
    action: str
    entity_type: str | None
    entity_id: str | None
    success: bool
    details: dict[str, Any]


class DetailStageRead(BaseModel):
    id: int
    stage: ActivityStageName
    start_time: datetime
    end_time: datetime | None
    duration: int | None
    location: str | None
    latitude: float | None
    longitude: float | None
    notes: str | None
    photos: list[dict[str, Any]]


class DetailActivityRead(BaseModel):
    id: int
    ticket_id: int | None
    activity_type: ActivityType
    title: str
    description: str | None
    start_time: datetime
    end_time: datetime | None
    duration: int | None
    location: str | None
    latitude: float | None
    longitude: float | None
    metadata: dict[str, Any]
    stages: list[DetailStageRead]


class AttendanceDetailRead(ConsolidatedRecordRead):
    requested_id: str
    activities: list[DetailActivityRead]
    gaps: list[ActivityGapRead]
    audit_logs: list[AuditLogRead]
