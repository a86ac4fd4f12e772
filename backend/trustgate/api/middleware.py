# backend/trustgate/api/middleware.py
"""
IP blacklist gate.

Runs before any router so a blacklisted client is rejected before token
checks or anomaly detection. The lookup is a synchronous in-memory read.
"""

import logging

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse, Response

from trustgate.core.rate_limit import get_real_client_ip
from trustgate.core.risk_policy import ActivityType, Severity
from trustgate.core.security_logger import security_log

logger = logging.getLogger(__name__)

BLOCKED_MESSAGE = "Your IP address has been blocked due to suspicious activity"


class IPBlacklistMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        services = getattr(request.app.state, "services", None)
        if services is None:
            return await call_next(request)

        ip = get_real_client_ip(request)
        if ip is None:
            logger.warning(f"Rejecting request to {request.url.path}: client IP unknown")
            return JSONResponse(
                status_code=400,
                content={
                    "error": "Bad request",
                    "message": "Unable to determine client IP address",
                },
            )

        reason = services.blacklist.reason_for(ip)
        if reason is None:
            return await call_next(request)

        services.audit.log_security_event(
            action=ActivityType.UNAUTHORIZED_ACCESS.value,
            severity=Severity.MEDIUM,
            ip_address=ip,
            user_agent=request.headers.get("User-Agent"),
            details={
                "reason": "blacklisted_ip",
                "blacklist_reason": reason,
                "path": request.url.path,
                "method": request.method,
            },
        )
        security_log.blacklist_hit(ip, request.url.path, reason)
        return JSONResponse(
            status_code=403,
            content={"error": "Access denied", "message": BLOCKED_MESSAGE, "reason": reason},
        )
