from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from fieldops import models  # noqa: F401
from fieldops.db import Base
from fieldops.errors import ExternalServiceDegraded
from fieldops.models import ServiceZone, User, UserRole, UserZone
from fieldops.security import Actor
from fieldops.services.geocoding import ReverseGeocodeResult
from fieldops.services.photo_storage import PhotoUpload

IST = ZoneInfo("Asia/Kolkata")


def ist(year: int, month: int, day: int, hour: int, minute: int = 0) -> datetime:
    """UTC instant for a wall-clock time in the attendance timezone."""
    return datetime(year, month, day, hour, minute, tzinfo=IST).astimezone(timezone.utc)


def make_session_factory() -> sessionmaker[Session]:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def add_zone(db: Session, name: str) -> ServiceZone:
    zone = ServiceZone(name=name, is_active=True)
    db.add(zone)
    db.commit()
    return zone


def add_user(
    db: Session,
    name: str,
    *,
    role: UserRole = UserRole.SERVICE_PERSON,
    zone_ids: tuple[int, ...] = (),
    is_active: bool = True,
) -> User:
    user = User(
        name=name,
        email=f"{name.lower().replace(' ', '.')}@example.com",
        role=role,
        is_active=is_active,
    )
    user.zone_links = [UserZone(zone_id=zone_id) for zone_id in zone_ids]
    db.add(user)
    db.commit()
    return user


def actor_for(user: User) -> Actor:
    return Actor(id=user.id, role=user.role, zone_ids=tuple(user.zone_ids), name=user.name)


class FakeGeocoder:
    def __init__(self, address: str | None = "221B Baker Street", source: str = "provider"):
        self.address = address
        self.source = source
        self.calls: list[tuple[float, float]] = []

    def reverse_geocode(self, latitude: float, longitude: float) -> ReverseGeocodeResult:
        self.calls.append((latitude, longitude))
        return ReverseGeocodeResult(address=self.address, source=self.source)  # type: ignore[arg-type]


class FakePhotoStore:
    def __init__(self, *, fail: bool = False):
        self.fail = fail
        self.calls: list[tuple[list[PhotoUpload], dict[str, Any]]] = []

    def store(self, photos: list[PhotoUpload], context: dict[str, Any]) -> list[dict[str, Any]]:
        self.calls.append((photos, context))
        if self.fail:
            raise ExternalServiceDegraded("photo_storage", "write_failed")
        return [
            {"id": f"p{index}", "url": f"/photos/p{index}.jpg", "size": 2048, "filename": photo.filename}
            for index, photo in enumerate(photos)
        ]
