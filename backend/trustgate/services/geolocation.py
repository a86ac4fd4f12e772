# backend/trustgate/services/geolocation.py
"""
IP geolocation: provider client, TTL cache and resolver.

Resolution fails soft. Provider errors, timeouts and malformed input all
resolve to None and are logged, never raised to the caller.
"""

import dataclasses
import ipaddress
import logging
import math
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import httpx

from trustgate.exceptions import ResolutionUnavailableError

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0

IP_API_FIELDS = (
    "status,message,country,countryCode,region,regionName,city,zip,lat,lon,"
    "timezone,isp,org,as,proxy,hosting,mobile,query"
)

LOCAL_NETWORKS = [
    ipaddress.ip_network(net)
    for net in (
        "127.0.0.0/8",
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "169.254.0.0/16",
        "::1/128",
        "fe80::/10",
        "fc00::/7",
    )
]


@dataclass(frozen=True)
class GeoLocation:
    ip: str
    country: str = "Unknown"
    country_code: str = "XX"
    region: str = "Unknown"
    region_code: str = "XX"
    city: str = "Unknown"
    zip: str = ""
    latitude: float = 0.0
    longitude: float = 0.0
    timezone: str = "UTC"
    isp: str = "Unknown"
    org: str = "Unknown"
    as_number: str = "Unknown"
    proxy: bool = False
    hosting: bool = False
    vpn: bool = False
    tor: bool = False

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


def local_location(ip: str) -> GeoLocation:
    """Synthetic location for loopback and private-network addresses."""
    return GeoLocation(
        ip=ip,
        country="Local",
        country_code="LOCAL",
        region="Local Network",
        region_code="LOCAL",
        city="Local",
        isp="Local Network",
        org="Local Network",
        as_number="Local",
    )


def _parse_ip(ip: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address:
    addr = ipaddress.ip_address(ip.strip())
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        return addr.ipv4_mapped
    return addr


def is_local_ip(ip: str) -> bool:
    """True for loopback, RFC1918, link-local and IPv6 loopback/link-local/ULA addresses."""
    try:
        addr = _parse_ip(ip)
    except ValueError:
        return False
    return any(addr.version == net.version and addr in net for net in LOCAL_NETWORKS)


def calculate_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometres (haversine)."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def _utcnow() -> datetime:
    return datetime.now(UTC)


class GeoLocationCache:
    """Per-IP cache of resolved locations with a fixed TTL."""

    def __init__(
        self,
        ttl: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, tuple[GeoLocation, datetime]] = {}
        self._lock = threading.Lock()

    def get(self, ip: str) -> GeoLocation | None:
        entry = self._entries.get(ip)
        if entry is None:
            return None
        location, stored_at = entry
        if self._clock() - stored_at < self.ttl:
            return location
        with self._lock:
            # Only evict if no fresher value was stored meanwhile
            if self._entries.get(ip) is entry:
                del self._entries[ip]
        return None

    def set(self, ip: str, location: GeoLocation) -> None:
        with self._lock:
            self._entries[ip] = (location, self._clock())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> dict[str, Any]:
        with self._lock:
            keys = list(self._entries)
        return {"size": len(keys), "keys": keys}


class GeoLocationProvider(Protocol):
    async def lookup(self, ip: str) -> GeoLocation | None: ...


class IpApiProvider:
    """ip-api.com JSON client."""

    def __init__(
        self,
        url_template: str = "http://ip-api.com/json/{ip}",
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url_template = url_template
        self.timeout = timeout
        self._transport = transport

    async def lookup(self, ip: str) -> GeoLocation | None:
        """
        Look up ``ip``; None when the provider has no location for it.

        Raises ResolutionUnavailableError when the provider cannot be reached
        or answers with something unusable.
        """
        url = self.url_template.format(ip=ip)
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.get(url, params={"fields": IP_API_FIELDS})
                response.raise_for_status()
                data = response.json()
            except httpx.TimeoutException as e:
                raise ResolutionUnavailableError(f"Geolocation lookup for {ip} timed out") from e
            except httpx.HTTPStatusError as e:
                raise ResolutionUnavailableError(
                    f"Geolocation provider returned {e.response.status_code} for {ip}"
                ) from e
            except httpx.TransportError as e:
                raise ResolutionUnavailableError(
                    f"Geolocation provider connection error for {ip}: {e}"
                ) from e
            except ValueError as e:
                raise ResolutionUnavailableError(
                    f"Geolocation provider sent invalid JSON for {ip}"
                ) from e

        if data.get("status") != "success":
            logger.warning(
                f"Geolocation lookup failed for {ip}: {data.get('message', 'unknown error')}"
            )
            return None
        return self._to_location(ip, data)

    @staticmethod
    def _to_location(ip: str, data: dict[str, Any]) -> GeoLocation:
        proxy = bool(data.get("proxy", False))
        return GeoLocation(
            ip=data.get("query") or ip,
            country=data.get("country") or "Unknown",
            country_code=data.get("countryCode") or "XX",
            region=data.get("regionName") or "Unknown",
            region_code=data.get("region") or "XX",
            city=data.get("city") or "Unknown",
            zip=data.get("zip") or "",
            latitude=float(data.get("lat") or 0.0),
            longitude=float(data.get("lon") or 0.0),
            timezone=data.get("timezone") or "UTC",
            isp=data.get("isp") or "Unknown",
            org=data.get("org") or "Unknown",
            as_number=data.get("as") or "Unknown",
            proxy=proxy,
            hosting=bool(data.get("hosting", False)),
            # ip-api has no separate VPN or Tor flags
            vpn=proxy,
            tor=False,
        )


class GeoLocationResolver:
    def __init__(self, provider: GeoLocationProvider, cache: GeoLocationCache):
        self.provider = provider
        self.cache = cache

    async def resolve(self, ip: str | None) -> GeoLocation | None:
        """Resolve an IP to a location; returns None when nothing can be asserted."""
        if not ip:
            return None
        try:
            addr = str(_parse_ip(ip))
        except ValueError:
            logger.debug(f"Not resolving malformed IP {ip!r}")
            return None

        if is_local_ip(addr):
            return local_location(addr)

        cached = self.cache.get(addr)
        if cached is not None:
            return cached

        try:
            location = await self.provider.lookup(addr)
        except ResolutionUnavailableError as e:
            logger.warning(f"Geolocation unavailable for {addr}: {e}")
            return None
        except Exception as e:
            logger.warning(f"Geolocation provider raised for {addr}: {e}", exc_info=True)
            return None

        if location is not None:
            self.cache.set(addr, location)
        return location
