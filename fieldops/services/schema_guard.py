from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine

from fieldops.models import AttendanceStatus, TicketStatus
from fieldops.services.transitions import TRANSITIONS, find_table_gaps


@dataclass(frozen=True, slots=True)
class SchemaGuardResult:
    ok: bool
    checked_at_utc: datetime
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "checked_at_utc": self.checked_at_utc.isoformat(),
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "issue_count": len(self.issues),
            "warning_count": len(self.warnings),
        }


REQUIRED_TABLE_COLUMNS: dict[str, set[str]] = {
    "users": {"id", "role", "is_active"},
    "user_zones": {"user_id", "zone_id"},
    "tickets": {"id", "status", "last_status_change", "time_in_status", "total_time_open"},
    "ticket_status_history": {"id", "ticket_id", "status", "previous_status", "changed_at", "photos"},
    "ticket_location_snapshots": {"id", "ticket_id", "event", "latitude", "longitude"},
    "attendances": {"id", "user_id", "check_in_at", "check_out_at", "status", "total_hours"},
    "daily_activity_logs": {"id", "user_id", "start_time", "end_time", "duration", "metadata"},
    "activity_stages": {"id", "activity_id", "stage", "start_time", "end_time"},
    "audit_logs": {"id", "actor_id", "action", "ts_utc"},
    "notification_jobs": {"id", "status", "attempts", "idempotency_key", "scheduled_at_utc"},
}

REQUIRED_INDEXES: dict[str, str] = {
    "attendances": "uq_attendances_user_open",
    "activity_stages": "uq_activity_stages_activity_open",
}

REQUIRED_ENUM_VALUES: dict[str, set[str]] = {
    "ticket_status": {item.value for item in TicketStatus},
    "attendance_status": {item.value for item in AttendanceStatus},
}


def transition_table_issues() -> list[str]:
    return [f"TRANSITION_TABLE:{problem}" for problem in find_table_gaps(TRANSITIONS)]


def _column_issues(inspector: Any) -> list[str]:
    issues: list[str] = []
    for table_name, required_columns in REQUIRED_TABLE_COLUMNS.items():
        try:
            present = {str(column.get("name")) for column in inspector.get_columns(table_name)}
        except Exception as exc:  # pragma: no cover
            issues.append(f"TABLE_UNREADABLE:{table_name}:{exc.__class__.__name__}")
            continue
        missing = sorted(required_columns - present)
        if missing:
            issues.append(f"MISSING_COLUMNS:{table_name}:{','.join(missing)}")
    return issues


def _index_issues(inspector: Any, warnings: list[str]) -> list[str]:
    issues: list[str] = []
    for table_name, index_name in REQUIRED_INDEXES.items():
        try:
            present = {str(index.get("name")) for index in inspector.get_indexes(table_name)}
        except Exception as exc:  # pragma: no cover
            warnings.append(f"INDEX_INSPECTION_FAILED:{table_name}:{exc.__class__.__name__}")
            continue
        if index_name not in present:
            issues.append(f"MISSING_INDEX:{table_name}:{index_name}")
    return issues


def _enum_labels(inspector: Any, warnings: list[str]) -> dict[str, set[str]]:
    # Only PostgreSQL inspectors expose get_enums; SQLite stores enums as VARCHAR.
    get_enums = getattr(inspector, "get_enums", None)
    if get_enums is None:
        return {}
    try:
        enums = get_enums() or []
    except Exception as exc:
        warnings.append(f"ENUM_INSPECTION_FAILED:{exc.__class__.__name__}")
        return {}

    labels_by_name: dict[str, set[str]] = {}
    for item in enums:
        name = str(item.get("name") or "").strip()
        labels = item.get("labels")
        if name and isinstance(labels, list):
            labels_by_name[name] = {str(label) for label in labels}
    return labels_by_name


def _enum_issues(labels_by_name: dict[str, set[str]], warnings: list[str]) -> list[str]:
    if not labels_by_name:
        return []
    issues: list[str] = []
    for enum_name, required_values in REQUIRED_ENUM_VALUES.items():
        if enum_name not in labels_by_name:
            warnings.append(f"ENUM_NOT_FOUND:{enum_name}")
            continue
        missing = sorted(required_values - labels_by_name[enum_name])
        if missing:
            issues.append(f"MISSING_ENUM_VALUES:{enum_name}:{','.join(missing)}")
    return issues


def _alembic_issues(engine: Engine) -> list[str]:
    try:
        with engine.connect() as connection:
            version = connection.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).scalar()
    except Exception as exc:  # pragma: no cover
        return [f"ALEMBIC_VERSION_CHECK_FAILED:{exc.__class__.__name__}"]
    if version is None or not str(version).strip():
        return ["ALEMBIC_VERSION_EMPTY"]
    return []


def verify_runtime_schema(engine: Engine, *, require_alembic_version: bool = True) -> SchemaGuardResult:
    """Compare the live database against the tables, partial indexes and enums the services rely on."""
    warnings: list[str] = []
    inspector = inspect(engine)

    issues = transition_table_issues()
    issues += _column_issues(inspector)
    issues += _index_issues(inspector, warnings)
    issues += _enum_issues(_enum_labels(inspector, warnings), warnings)
    if require_alembic_version:
        issues += _alembic_issues(engine)

    return SchemaGuardResult(
        ok=not issues,
        checked_at_utc=datetime.now(timezone.utc),
        issues=issues,
        warnings=warnings,
    )
