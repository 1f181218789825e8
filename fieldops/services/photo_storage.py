from __future__ import annotations

import base64
import binascii
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol
from uuid import uuid4

from fieldops.errors import ExternalServiceDegraded
from fieldops.settings import get_settings

logger = logging.getLogger("fieldops.photo_storage")

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w/+.-]+);base64,(?P<data>.*)$", re.DOTALL)
_SAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]+")
_EXTENSIONS = {"image/jpeg": ".jpg", "image/png": ".png", "image/webp": ".webp", "image/heic": ".heic"}


@dataclass(frozen=True, slots=True)
class PhotoUpload:
    data: str
    filename: str | None = None
    content_type: str | None = None
    size: int | None = None


@dataclass(slots=True)
class PhotoStorageOutcome:
    entries: list[dict[str, Any]] = field(default_factory=list)
    summary: str | None = None
    stored: bool = False


class PhotoStore(Protocol):
    def store(self, photos: list[PhotoUpload], context: dict[str, Any]) -> list[dict[str, Any]]: ...


def format_size(size_bytes: int) -> str:
    if size_bytes >= 1024 * 1024:
        return f"{size_bytes / (1024 * 1024):.1f} MB"
    return f"{size_bytes / 1024:.1f} KB"


def _decode(photo: PhotoUpload) -> tuple[bytes, str | None]:
    raw = photo.data
    content_type = photo.content_type
    match = _DATA_URL_RE.match(raw)
    if match:
        content_type = content_type or match.group("mime")
        raw = match.group("data")
    try:
        return base64.b64decode(raw, validate=True), content_type
    except (binascii.Error, ValueError) as exc:
        raise ExternalServiceDegraded("photo_storage", "invalid_base64") from exc


class LocalPhotoStore:
    """Writes photos under ``base_dir/<ticket or activity>/`` and serves them from ``public_base_url``."""

    def __init__(self, base_dir: str | None = None, public_base_url: str | None = None):
        settings = get_settings()
        self.base_dir = Path(base_dir or settings.photo_storage_dir)
        self.public_base_url = (public_base_url or settings.photo_public_base_url).rstrip("/")

    def _folder(self, context: dict[str, Any]) -> str:
        if context.get("ticket_id") is not None:
            return f"tickets/{int(context['ticket_id'])}"
        if context.get("activity_id") is not None:
            return f"activities/{int(context['activity_id'])}"
        return "misc"

    def store(self, photos: list[PhotoUpload], context: dict[str, Any]) -> list[dict[str, Any]]:
        folder = self._folder(context)
        target_dir = self.base_dir / folder
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ExternalServiceDegraded("photo_storage", "mkdir_failed") from exc

        stored: list[dict[str, Any]] = []
        for photo in photos:
            content, content_type = _decode(photo)
            photo_id = uuid4().hex
            extension = _EXTENSIONS.get(content_type or "", ".bin")
            stem = _SAFE_NAME_RE.sub("_", Path(photo.filename).stem) if photo.filename else "photo"
            name = f"{photo_id}_{stem}{extension}"
            try:
                (target_dir / name).write_bytes(content)
            except OSError as exc:
                raise ExternalServiceDegraded("photo_storage", "write_failed") from exc
            stored.append(
                {
                    "id": photo_id,
                    "url": f"{self.public_base_url}/{folder}/{name}",
                    "size": len(content),
                    "filename": photo.filename,
                    "content_type": content_type,
                }
            )
        return stored


def store_photos(
    store: PhotoStore | None,
    photos: list[PhotoUpload],
    context: dict[str, Any],
) -> PhotoStorageOutcome:
    """Store photos, degrading to metadata-only entries when the store fails."""
    if not photos:
        return PhotoStorageOutcome()

    count = len(photos)
    plural = "s" if count > 1 else ""
    if store is not None:
        try:
            entries = store.store(photos, context)
        except ExternalServiceDegraded as exc:
            logger.warning("photo_storage_degraded", extra={"reason": exc.reason, **context})
        else:
            total = sum(int(item.get("size") or 0) for item in entries)
            return PhotoStorageOutcome(
                entries=entries,
                summary=f"Photos: {count} verification photo{plural} stored ({format_size(total)})",
                stored=True,
            )

    entries = [
        {
            "id": None,
            "url": None,
            "size": photo.size if photo.size is not None else (len(photo.data) * 3) // 4,
            "filename": photo.filename,
            "content_type": photo.content_type,
            "metadata_only": True,
        }
        for photo in photos
    ]
    total = sum(int(item["size"] or 0) for item in entries)
    return PhotoStorageOutcome(
        entries=entries,
        summary=f"Photos: {count} verification photo{plural} captured ({format_size(total)}) - storage failed, metadata only",
        stored=False,
    )


def get_photo_store() -> PhotoStore:
    return LocalPhotoStore()
