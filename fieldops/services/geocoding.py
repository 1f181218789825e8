from __future__ import annotations

import logging
import math
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Literal, Protocol

import httpx

from fieldops.errors import ExternalServiceDegraded
from fieldops.settings import get_settings

logger = logging.getLogger("fieldops.geocoding")

GeocodeSource = Literal["provider", "fallback"]


@dataclass(frozen=True, slots=True)
class ReverseGeocodeResult:
    address: str | None
    source: GeocodeSource
    error: str | None = None


class GeocodeCache(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, address: str) -> None: ...


class InMemoryGeocodeCache:
    """Bounded LRU cache; swap for a shared store when running several workers."""

    def __init__(self, max_entries: int = 500):
        self.max_entries = max(1, max_entries)
        self._items: OrderedDict[str, str] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            value = self._items.get(key)
            if value is not None:
                self._items.move_to_end(key)
            return value

    def set(self, key: str, address: str) -> None:
        with self._lock:
            self._items[key] = address
            self._items.move_to_end(key)
            while len(self._items) > self.max_entries:
                self._items.popitem(last=False)

    def __len__(self) -> int:
        return len(self._items)


def cache_key(latitude: float, longitude: float) -> str:
    return f"{latitude:.5f},{longitude:.5f}"


def coordinate_fallback(latitude: float, longitude: float) -> str:
    return f"{latitude:.6f}, {longitude:.6f}"


class GeocodingService:
    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout_seconds: float | None = None,
        cache: GeocodeCache | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        settings = get_settings()
        self.api_key = (api_key if api_key is not None else settings.geocoding_api_key).strip()
        self.base_url = base_url or settings.geocoding_base_url
        self.timeout_seconds = timeout_seconds or settings.geocoding_timeout_seconds
        self.cache = cache if cache is not None else InMemoryGeocodeCache(settings.geocoding_cache_size)
        self._transport = transport

    def _fetch(self, latitude: float, longitude: float) -> str:
        params = {
            "key": self.api_key,
            "lat": f"{latitude}",
            "lon": f"{longitude}",
            "format": "json",
            "addressdetails": "1",
        }
        try:
            with httpx.Client(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = client.get(self.base_url, params=params)
                response.raise_for_status()
                payload = response.json()
        except httpx.TimeoutException as exc:
            raise ExternalServiceDegraded("geocoding", "timeout") from exc
        except httpx.HTTPStatusError as exc:
            raise ExternalServiceDegraded("geocoding", f"http_{exc.response.status_code}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise ExternalServiceDegraded("geocoding", exc.__class__.__name__) from exc

        address = payload.get("display_name") if isinstance(payload, dict) else None
        if not isinstance(address, str) or not address.strip():
            raise ExternalServiceDegraded("geocoding", "empty_address")
        return address.strip()

    def reverse_geocode(self, latitude: float, longitude: float) -> ReverseGeocodeResult:
        if not (math.isfinite(latitude) and math.isfinite(longitude)):
            return ReverseGeocodeResult(address=None, source="fallback", error="invalid_coordinates")

        if not self.api_key:
            return ReverseGeocodeResult(
                address=coordinate_fallback(latitude, longitude),
                source="fallback",
                error="not_configured",
            )

        key = cache_key(latitude, longitude)
        cached = self.cache.get(key)
        if cached:
            return ReverseGeocodeResult(address=cached, source="provider")

        try:
            address = self._fetch(latitude, longitude)
        except ExternalServiceDegraded as exc:
            logger.warning(
                "geocoding_degraded",
                extra={"reason": exc.reason, "latitude": latitude, "longitude": longitude},
            )
            return ReverseGeocodeResult(
                address=coordinate_fallback(latitude, longitude),
                source="fallback",
                error=exc.reason,
            )

        self.cache.set(key, address)
        return ReverseGeocodeResult(address=address, source="provider")


def resolve_address(
    geocoder: GeocodingService | None,
    latitude: float,
    longitude: float,
    *,
    address: str | None = None,
    location_source: str | None = None,
) -> str:
    """Address stored with a location; manual entries are used verbatim."""
    supplied = (address or "").strip()
    if location_source == "manual" and supplied:
        return supplied

    if geocoder is not None:
        result = geocoder.reverse_geocode(latitude, longitude)
        if result.source == "provider" and result.address:
            return result.address

    return supplied or f"{latitude}, {longitude}"


_default_geocoder: GeocodingService | None = None
_default_lock = threading.Lock()


def get_geocoder() -> GeocodingService:
    global _default_geocoder
    with _default_lock:
        if _default_geocoder is None:
            _default_geocoder = GeocodingService()
        return _default_geocoder
