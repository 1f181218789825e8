from __future__ import annotations

import unittest

import httpx

from fieldops.services.geocoding import (
    GeocodingService,
    InMemoryGeocodeCache,
    coordinate_fallback,
    resolve_address,
)


def _service(handler, **kwargs) -> GeocodingService:  # type: ignore[no-untyped-def]
    return GeocodingService(
        api_key="test-key",
        base_url="https://geo.example.test/reverse",
        timeout_seconds=1.0,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class GeocodingServiceTests(unittest.TestCase):
    def test_provider_address_is_cached(self) -> None:
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={"display_name": " Church Street, Bengaluru "})

        service = _service(handler)

        first = service.reverse_geocode(12.975, 77.605)
        second = service.reverse_geocode(12.975, 77.605)

        self.assertEqual(first.address, "Church Street, Bengaluru")
        self.assertEqual(first.source, "provider")
        self.assertEqual(second.address, "Church Street, Bengaluru")
        self.assertEqual(len(calls), 1)
        self.assertEqual(calls[0].url.params["key"], "test-key")
        self.assertEqual(calls[0].url.params["lat"], "12.975")

    def test_http_error_degrades_to_coordinates(self) -> None:
        service = _service(lambda request: httpx.Response(503, json={}))

        result = service.reverse_geocode(12.5, 77.25)

        self.assertEqual(result.source, "fallback")
        self.assertEqual(result.error, "http_503")
        self.assertEqual(result.address, coordinate_fallback(12.5, 77.25))
        self.assertEqual(result.address, "12.500000, 77.250000")

    def test_timeout_degrades_to_coordinates(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        result = _service(handler).reverse_geocode(1.0, 2.0)

        self.assertEqual(result.error, "timeout")
        self.assertEqual(result.source, "fallback")

    def test_empty_provider_answer_is_not_cached(self) -> None:
        cache = InMemoryGeocodeCache(max_entries=10)
        service = _service(lambda request: httpx.Response(200, json={"display_name": ""}), cache=cache)

        result = service.reverse_geocode(1.0, 2.0)

        self.assertEqual(result.error, "empty_address")
        self.assertEqual(len(cache), 0)

    def test_missing_api_key_skips_the_provider(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("provider must not be called")

        service = GeocodingService(api_key="", transport=httpx.MockTransport(handler))

        result = service.reverse_geocode(10.0, 20.0)

        self.assertEqual(result.error, "not_configured")
        self.assertEqual(result.source, "fallback")


class GeocodeCacheTests(unittest.TestCase):
    def test_least_recently_used_entry_is_evicted(self) -> None:
        cache = InMemoryGeocodeCache(max_entries=2)
        cache.set("a", "A")
        cache.set("b", "B")
        cache.get("a")
        cache.set("c", "C")

        self.assertEqual(cache.get("a"), "A")
        self.assertIsNone(cache.get("b"))
        self.assertEqual(cache.get("c"), "C")


class ResolveAddressTests(unittest.TestCase):
    def test_manual_address_wins(self) -> None:
        service = _service(lambda request: httpx.Response(200, json={"display_name": "Provider"}))

        self.assertEqual(
            resolve_address(service, 1.0, 2.0, address=" Gate 4 ", location_source="manual"),
            "Gate 4",
        )

    def test_supplied_address_is_kept_when_provider_degrades(self) -> None:
        service = _service(lambda request: httpx.Response(500))

        self.assertEqual(resolve_address(service, 1.0, 2.0, address="Depot"), "Depot")
        self.assertEqual(resolve_address(service, 1.0, 2.0), "1.0, 2.0")

    def test_no_geocoder(self) -> None:
        self.assertEqual(resolve_address(None, 1.5, 2.5), "1.5, 2.5")


if __name__ == "__main__":
    unittest.main()
