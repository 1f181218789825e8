from __future__ import annotations

from datetime import datetime, timezone

from fieldops.services.geocoding import GeocodingService, get_geocoder
from fieldops.services.photo_storage import PhotoStore, get_photo_store


def get_now() -> datetime:
    return datetime.now(timezone.utc)


def geocoder_dependency() -> GeocodingService:
    return get_geocoder()


def photo_store_dependency() -> PhotoStore:
    return get_photo_store()
