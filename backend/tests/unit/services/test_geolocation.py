from datetime import timedelta
from unittest.mock import AsyncMock

import httpx
import pytest

from trustgate.exceptions import ResolutionUnavailableError
from trustgate.services.geolocation import (
    GeoLocation,
    GeoLocationCache,
    GeoLocationResolver,
    IpApiProvider,
    calculate_distance,
    is_local_ip,
    local_location,
)

from support import NEW_YORK, SAN_FRANCISCO, FakeClock, StaticGeoProvider

IP_API_SUCCESS = {
    "status": "success",
    "country": "United States",
    "countryCode": "US",
    "region": "CA",
    "regionName": "California",
    "city": "Mountain View",
    "zip": "94043",
    "lat": 37.4223,
    "lon": -122.085,
    "timezone": "America/Los_Angeles",
    "isp": "Google LLC",
    "org": "Google Public DNS",
    "as": "AS15169 Google LLC",
    "proxy": False,
    "hosting": True,
    "query": "8.8.8.8",
}


def _provider(handler) -> IpApiProvider:
    return IpApiProvider(timeout=1.0, transport=httpx.MockTransport(handler))


# --- Distance ---


def test_distance_to_same_point_is_zero():
    assert calculate_distance(37.7749, -122.4194, 37.7749, -122.4194) == 0


def test_distance_is_symmetric():
    forward = calculate_distance(37.7749, -122.4194, 40.7128, -74.0060)
    backward = calculate_distance(40.7128, -74.0060, 37.7749, -122.4194)
    assert forward == pytest.approx(backward)


def test_distance_san_francisco_to_new_york():
    distance = calculate_distance(
        SAN_FRANCISCO.latitude, SAN_FRANCISCO.longitude, NEW_YORK.latitude, NEW_YORK.longitude
    )
    assert 4100 < distance < 4140


# --- Local addresses ---


@pytest.mark.parametrize(
    "ip",
    [
        "127.0.0.1",
        "10.1.2.3",
        "172.16.0.1",
        "172.31.255.254",
        "192.168.1.10",
        "169.254.10.20",
        "::1",
        "fe80::1",
        "fd12:3456:789a::1",
        "::ffff:192.168.1.10",
    ],
)
def test_is_local_ip_true(ip):
    assert is_local_ip(ip)


@pytest.mark.parametrize("ip", ["8.8.8.8", "1.1.1.1", "172.32.0.1", "2001:4860:4860::8888", "junk"])
def test_is_local_ip_false(ip):
    assert not is_local_ip(ip)


@pytest.mark.asyncio
async def test_resolver_returns_local_location_without_provider_call():
    provider = StaticGeoProvider()
    resolver = GeoLocationResolver(provider, GeoLocationCache())

    location = await resolver.resolve("192.168.1.10")

    assert location == local_location("192.168.1.10")
    assert location.country_code == "LOCAL"
    assert provider.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize("ip", [None, "", "999.1.1.1", "not-an-ip"])
async def test_resolver_returns_none_for_missing_or_malformed_ip(ip):
    provider = StaticGeoProvider()
    resolver = GeoLocationResolver(provider, GeoLocationCache())
    assert await resolver.resolve(ip) is None
    assert provider.calls == []


# --- Caching ---


@pytest.mark.asyncio
async def test_resolver_caches_successful_lookups():
    provider = StaticGeoProvider({SAN_FRANCISCO.ip: SAN_FRANCISCO})
    resolver = GeoLocationResolver(provider, GeoLocationCache())

    first = await resolver.resolve(SAN_FRANCISCO.ip)
    second = await resolver.resolve(SAN_FRANCISCO.ip)

    assert first == second == SAN_FRANCISCO
    assert provider.calls == [SAN_FRANCISCO.ip]


@pytest.mark.asyncio
async def test_resolver_does_not_cache_failures():
    provider = StaticGeoProvider()
    resolver = GeoLocationResolver(provider, GeoLocationCache())

    assert await resolver.resolve("1.1.1.1") is None
    assert await resolver.resolve("1.1.1.1") is None
    assert provider.calls == ["1.1.1.1", "1.1.1.1"]


@pytest.mark.asyncio
async def test_resolver_soft_fails_when_provider_is_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    cache = GeoLocationCache()
    resolver = GeoLocationResolver(_provider(handler), cache)

    assert await resolver.resolve("8.8.8.8") is None
    assert cache.stats()["size"] == 0


@pytest.mark.asyncio
async def test_resolver_swallows_provider_exceptions():
    provider = AsyncMock()
    provider.lookup.side_effect = RuntimeError("boom")
    resolver = GeoLocationResolver(provider, GeoLocationCache())
    assert await resolver.resolve("8.8.8.8") is None


def test_cache_entry_expires_after_ttl():
    clock = FakeClock()
    cache = GeoLocationCache(ttl=timedelta(hours=24), clock=clock)
    cache.set(SAN_FRANCISCO.ip, SAN_FRANCISCO)

    clock.advance(hours=23, minutes=59)
    assert cache.get(SAN_FRANCISCO.ip) == SAN_FRANCISCO

    clock.advance(minutes=1)
    assert cache.get(SAN_FRANCISCO.ip) is None
    assert cache.stats()["size"] == 0


def test_cache_clear_and_stats():
    cache = GeoLocationCache()
    cache.set(SAN_FRANCISCO.ip, SAN_FRANCISCO)
    cache.set(NEW_YORK.ip, NEW_YORK)

    stats = cache.stats()
    assert stats["size"] == 2
    assert set(stats["keys"]) == {SAN_FRANCISCO.ip, NEW_YORK.ip}

    cache.clear()
    assert cache.stats() == {"size": 0, "keys": []}


# --- ip-api provider ---


@pytest.mark.asyncio
async def test_ip_api_provider_maps_fields():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=IP_API_SUCCESS)

    location = await _provider(handler).lookup("8.8.8.8")

    assert requests[0].url.path == "/json/8.8.8.8"
    assert "fields" in requests[0].url.params
    assert location == GeoLocation(
        ip="8.8.8.8",
        country="United States",
        country_code="US",
        region="California",
        region_code="CA",
        city="Mountain View",
        zip="94043",
        latitude=37.4223,
        longitude=-122.085,
        timezone="America/Los_Angeles",
        isp="Google LLC",
        org="Google Public DNS",
        as_number="AS15169 Google LLC",
        proxy=False,
        hosting=True,
        vpn=False,
        tor=False,
    )


@pytest.mark.asyncio
async def test_ip_api_provider_proxy_flag_sets_vpn():
    body = {**IP_API_SUCCESS, "proxy": True}
    location = await _provider(lambda request: httpx.Response(200, json=body)).lookup("8.8.8.8")
    assert location.proxy
    assert location.vpn
    assert not location.tor


@pytest.mark.asyncio
async def test_ip_api_provider_fail_status_returns_none():
    body = {"status": "fail", "message": "reserved range", "query": "8.8.8.8"}
    provider = _provider(lambda request: httpx.Response(200, json=body))
    assert await provider.lookup("8.8.8.8") is None


@pytest.mark.asyncio
async def test_ip_api_provider_http_error_is_unavailable():
    provider = _provider(lambda request: httpx.Response(429, text="slow down"))
    with pytest.raises(ResolutionUnavailableError, match="429"):
        await provider.lookup("8.8.8.8")


@pytest.mark.asyncio
async def test_ip_api_provider_timeout_is_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(ResolutionUnavailableError, match="timed out"):
        await _provider(handler).lookup("8.8.8.8")


@pytest.mark.asyncio
async def test_ip_api_provider_connection_error_is_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ResolutionUnavailableError):
        await _provider(handler).lookup("8.8.8.8")


@pytest.mark.asyncio
async def test_ip_api_provider_invalid_json_is_unavailable():
    provider = _provider(lambda request: httpx.Response(200, text="<html>oops</html>"))
    with pytest.raises(ResolutionUnavailableError, match="invalid JSON"):
        await provider.lookup("8.8.8.8")


def test_geolocation_defaults_and_to_dict():
    location = GeoLocation(ip="8.8.8.8")
    data = location.to_dict()
    assert data["country"] == "Unknown"
    assert data["country_code"] == "XX"
    assert data["timezone"] == "UTC"
    assert data["proxy"] is False
