#!/usr/bin/env python
"""Pre-deploy checks: migrations, transition table, runtime settings and the live schema.

Prints one JSON report and exits non-zero when any check fails.
"""
from __future__ import annotations

import json
import re
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from alembic.config import Config
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine, text

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from fieldops.services.schema_guard import REQUIRED_INDEXES, transition_table_issues, verify_runtime_schema  # noqa: E402
from fieldops.settings import Settings, get_settings  # noqa: E402

VERSIONS_DIR = ROOT_DIR / "fieldops" / "migrations" / "versions"
MAX_REVISION_ID_LENGTH = 32
DEFAULT_JWT_SECRET = "dev-only-change-me"


@dataclass(slots=True)
class CheckResult:
    name: str
    problems: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def status(self) -> str:
        if self.problems:
            return "fail"
        return "warn" if self.warnings else "ok"

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "problems": self.problems,
            "warnings": self.warnings,
            "details": self.details,
        }


def _migration_sources() -> dict[str, str]:
    return {
        path.name: path.read_text(encoding="utf-8")
        for path in sorted(VERSIONS_DIR.glob("*.py"))
        if not path.name.startswith("__")
    }


def check_migrations(sources: dict[str, str] | None = None) -> CheckResult:
    sources = _migration_sources() if sources is None else sources
    result = CheckResult(name="migrations", details={"files": sorted(sources)})
    pattern = re.compile(r'^\s*revision\s*:\s*str\s*=\s*"([^"]+)"\s*$', re.MULTILINE)
    for filename, content in sources.items():
        match = pattern.search(content)
        if match is None:
            result.problems.append(f"REVISION_ID_MISSING:{filename}")
        elif len(match.group(1)) > MAX_REVISION_ID_LENGTH:
            result.problems.append(f"REVISION_ID_TOO_LONG:{match.group(1)}")

    combined = "\n".join(sources.values())
    for index_name in REQUIRED_INDEXES.values():
        if index_name not in combined:
            result.problems.append(f"INDEX_NOT_MIGRATED:{index_name}")
    return result


def check_transition_table() -> CheckResult:
    return CheckResult(name="ticket_transition_table", problems=transition_table_issues())


def check_runtime_config(settings: Settings | None = None) -> CheckResult:
    settings = settings or get_settings()
    result = CheckResult(name="runtime_config")
    if settings.jwt_secret == DEFAULT_JWT_SECRET:
        result.problems.append("JWT_SECRET_DEFAULT")
    try:
        ZoneInfo(settings.attendance_timezone)
    except (ZoneInfoNotFoundError, ValueError):
        result.problems.append(f"UNKNOWN_TIMEZONE:{settings.attendance_timezone}")
    if not 0 <= settings.workday_end_hour <= 23:
        result.problems.append("WORKDAY_END_HOUR_OUT_OF_RANGE")
    if not settings.late_checkin_hour < settings.early_checkout_flag_hour <= settings.workday_end_hour:
        result.warnings.append("FLAG_HOURS_OUT_OF_ORDER")
    if not (settings.geocoding_api_key or "").strip():
        result.warnings.append("GEOCODING_NOT_CONFIGURED")
    if settings.notification_email_enabled and not (settings.smtp_host or "").strip():
        result.problems.append("SMTP_HOST_MISSING")
    result.details = {
        "timezone": settings.attendance_timezone,
        "workday_end_hour": settings.workday_end_hour,
        "worker_enabled": settings.worker_enabled,
    }
    return result


def _expected_alembic_heads() -> list[str]:
    script = ScriptDirectory.from_config(Config(str(ROOT_DIR / "alembic.ini")))
    return sorted(script.get_heads())


def check_database(settings: Settings | None = None) -> CheckResult:
    settings = settings or get_settings()
    result = CheckResult(name="database_schema_guard")
    if settings.database_url.startswith("sqlite"):
        result.warnings.append("SQLITE_DATABASE")

    engine = create_engine(settings.database_url, pool_pre_ping=True)
    try:
        with engine.connect() as connection:
            current_versions = sorted(
                str(row[0]).strip()
                for row in connection.execute(text("SELECT version_num FROM alembic_version")).fetchall()
                if row[0] is not None
            )
        schema_result = verify_runtime_schema(engine)
    except Exception as exc:
        result.problems.append(f"DATABASE_UNREACHABLE:{exc.__class__.__name__}")
        return result
    finally:
        engine.dispose()

    expected_heads = _expected_alembic_heads()
    result.problems += [f"MISSING_HEAD:{head}" for head in expected_heads if head not in current_versions]
    result.problems += schema_result.issues
    result.warnings += schema_result.warnings
    result.details = {"expected_heads": expected_heads, "current_versions": current_versions}
    return result


def main() -> int:
    checks = [
        check_migrations(),
        check_transition_table(),
        check_runtime_config(),
        check_database(),
    ]
    ok = all(check.status != "fail" for check in checks)
    report = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "ok": ok,
        "checks": [check.to_dict() for check in checks],
    }
    print(json.dumps(report, ensure_ascii=False, indent=2))
    return 0 if ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
