import ipaddress

from slowapi import Limiter
from starlette.requests import Request

from trustgate.core.config import settings


def _valid_ip(value: str | None) -> str | None:
    if not value:
        return None
    value = value.strip()
    try:
        return str(ipaddress.ip_address(value))
    except ValueError:
        return None


def get_real_client_ip(request: Request) -> str | None:
    """
    Client IP: first X-Forwarded-For hop, then X-Real-IP, then the socket peer.

    Returns None when no usable address is available.
    """
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        first_hop = _valid_ip(forwarded_for.split(",")[0])
        if first_hop:
            return first_hop

    real_ip = _valid_ip(request.headers.get("X-Real-IP"))
    if real_ip:
        return real_ip

    if request.client and request.client.host:
        return _valid_ip(request.client.host) or request.client.host
    return None


def rate_limit_key(request: Request) -> str:
    return get_real_client_ip(request) or "unknown"


# Identifies clients by their real IP address
limiter = Limiter(key_func=rate_limit_key, enabled=settings.ENVIRONMENT != "test")
