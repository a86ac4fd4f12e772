# backend/trustgate/api/routers/admin_security.py
"""
Administrative security endpoints.

Blacklist management, security log browsing, audit statistics, and the
login-event hook the identity service calls after each login attempt.
"""

import logging
import uuid
from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Query, Request, Response, status
from pydantic import BaseModel, ConfigDict, Field, IPvAnyAddress

from trustgate.api.deps import AdminClaims, Services
from trustgate.core.rate_limit import get_real_client_ip
from trustgate.core.risk_policy import ActivityType, Severity
from trustgate.core.security_logger import security_log
from trustgate.db.models.ip_blacklist import BlacklistSource
from trustgate.exceptions import PersistenceError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/security", tags=["Admin - Security"])

LOGIN_ACTION = "LOGIN"


# --- Schemas ---


class BlacklistEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    ip_address: str
    reason: str
    source: BlacklistSource
    expires_at: datetime | None
    details: dict[str, Any] | None
    created_at: datetime | None


class BlacklistPage(BaseModel):
    items: list[BlacklistEntryResponse]
    total: int
    limit: int
    offset: int


class BlacklistAddRequest(BaseModel):
    ip_address: IPvAnyAddress
    reason: str = Field(..., min_length=1, max_length=500)
    duration_minutes: int | None = Field(
        default=None, ge=1, description="Omit for a permanent block"
    )


class BlacklistStatsResponse(BaseModel):
    total: int
    permanent: int
    temporary: int
    recent_24h: int
    cache_size: int


class SecurityLogItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str | None
    action: str
    severity: str
    details: dict[str, Any] | None
    ip_address: str | None
    user_agent: str | None
    timestamp: datetime


class AuditStatsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    window_days: int
    total_actions: int
    failed_actions: int
    security_events: int
    success_rate: float


class GeoCacheStatsResponse(BaseModel):
    size: int
    keys: list[str]


class LoginEventRequest(BaseModel):
    user_id: uuid.UUID | None = None
    ip_address: IPvAnyAddress
    user_agent: str | None = Field(default=None, max_length=512)
    success: bool
    error_message: str | None = Field(default=None, max_length=255)


class AnomalyItem(BaseModel):
    type: str
    severity: str
    description: str
    risk_score: float


class LoginEventResponse(BaseModel):
    anomalies: list[AnomalyItem]
    blacklisted: bool


# --- Blacklist ---


@router.get("/blacklist", response_model=BlacklistPage, summary="List blacklist entries")
async def list_blacklist(
    _admin: AdminClaims,
    services: Services,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> BlacklistPage:
    entries, total = await services.blacklist.list_entries(limit=limit, offset=offset)
    return BlacklistPage(
        items=[BlacklistEntryResponse.model_validate(e) for e in entries],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post(
    "/blacklist",
    response_model=BlacklistStatsResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Blacklist an IP",
)
async def add_to_blacklist(
    body: BlacklistAddRequest, admin: AdminClaims, services: Services
) -> BlacklistStatsResponse:
    ip_address = str(body.ip_address)
    added = await services.blacklist.add(
        ip_address,
        body.reason,
        duration_minutes=body.duration_minutes,
        source=BlacklistSource.MANUAL,
        details={"added_by": str(admin.user_id)},
    )
    if not added:
        raise PersistenceError("Blacklist entry could not be saved")
    services.audit.log_user_action(
        user_id=str(admin.user_id),
        action="IP_BLACKLISTED",
        resource="IP_BLACKLIST",
        resource_id=ip_address,
        details={"reason": body.reason, "duration_minutes": body.duration_minutes},
    )
    return BlacklistStatsResponse(**await services.blacklist.stats())


@router.delete(
    "/blacklist/{ip_address}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Remove an IP from the blacklist",
)
async def remove_from_blacklist(ip_address: str, admin: AdminClaims, services: Services) -> Response:
    if not await services.blacklist.remove(ip_address):
        raise PersistenceError("Blacklist entry could not be removed")
    services.audit.log_user_action(
        user_id=str(admin.user_id),
        action="IP_UNBLACKLISTED",
        resource="IP_BLACKLIST",
        resource_id=ip_address,
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/blacklist/stats", response_model=BlacklistStatsResponse, summary="Blacklist stats")
async def blacklist_stats(_admin: AdminClaims, services: Services) -> BlacklistStatsResponse:
    return BlacklistStatsResponse(**await services.blacklist.stats())


# --- Logs ---


@router.get("/logs", response_model=list[SecurityLogItem], summary="Security events")
async def list_security_logs(
    _admin: AdminClaims,
    services: Services,
    severity: Severity | None = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> list[SecurityLogItem]:
    entries = await services.audit.query_security(severity=severity, limit=limit, offset=offset)
    return [SecurityLogItem.model_validate(e) for e in entries]


@router.get("/audit/stats", response_model=AuditStatsResponse, summary="Audit statistics")
async def audit_stats(
    _admin: AdminClaims,
    services: Services,
    window_days: Annotated[int, Query(ge=1, le=365)] = 30,
) -> AuditStatsResponse:
    stats = await services.audit.stats(window_days=window_days)
    return AuditStatsResponse(
        window_days=window_days,
        total_actions=stats.total_actions,
        failed_actions=stats.failed_actions,
        security_events=stats.security_events,
        success_rate=stats.success_rate,
    )


# --- Geolocation cache ---


@router.get("/geo-cache", response_model=GeoCacheStatsResponse, summary="Geolocation cache stats")
async def geo_cache_stats(_admin: AdminClaims, services: Services) -> GeoCacheStatsResponse:
    return GeoCacheStatsResponse(**services.geo_cache.stats())


@router.delete(
    "/geo-cache", status_code=status.HTTP_204_NO_CONTENT, summary="Clear the geolocation cache"
)
async def clear_geo_cache(admin: AdminClaims, services: Services) -> Response:
    cleared = services.geo_cache.stats()["size"]
    services.geo_cache.clear()
    logger.info(f"Geolocation cache cleared ({cleared} entries) by admin {admin.user_id}")
    services.audit.log_user_action(
        user_id=str(admin.user_id),
        action="GEO_CACHE_CLEARED",
        resource="GEO_CACHE",
        details={"entries": cleared},
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --- Login hook ---


@router.post("/login-events", response_model=LoginEventResponse, summary="Report a login attempt")
async def report_login_event(
    body: LoginEventRequest, request: Request, _admin: AdminClaims, services: Services
) -> LoginEventResponse:
    """
    Called by the identity service after every login attempt.

    Attempts from blacklisted IPs are recorded as denied and nothing else
    runs. Otherwise successful logins run anomaly detection before the
    LOGIN entry is recorded; failed ones count towards LOGIN_FAILED
    escalation.
    """
    ip_address = str(body.ip_address)
    user_id = str(body.user_id) if body.user_id else None
    reported_by = get_real_client_ip(request)

    reason = services.blacklist.reason_for(ip_address)
    if reason is not None:
        services.audit.log_auth_event(
            action=LOGIN_ACTION,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=body.user_agent,
            success=False,
            error_message="IP address is blacklisted",
            details={"reported_by": reported_by, "blacklist_reason": reason},
        )
        services.audit.log_security_event(
            action=ActivityType.UNAUTHORIZED_ACCESS.value,
            severity=Severity.MEDIUM,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=body.user_agent,
            details={
                "reason": "blacklisted_ip",
                "blacklist_reason": reason,
                "path": request.url.path,
                "reported_success": body.success,
            },
        )
        security_log.blacklist_hit(ip_address, request.url.path, reason)
        return LoginEventResponse(anomalies=[], blacklisted=True)

    anomalies = []
    blacklisted = False
    if body.success and body.user_id is not None:
        anomalies = await services.detector.check_login(str(body.user_id), ip_address)
        blacklisted = services.blacklist.is_blacklisted(ip_address)
    elif not body.success:
        blacklisted = await services.tracker.record(
            ip_address, ActivityType.LOGIN_FAILED.value
        )

    services.audit.log_auth_event(
        action=LOGIN_ACTION,
        user_id=user_id,
        ip_address=ip_address,
        user_agent=body.user_agent,
        success=body.success,
        error_message=body.error_message,
        details={"reported_by": reported_by},
    )
    return LoginEventResponse(
        anomalies=[
            AnomalyItem(
                type=a.type.value,
                severity=a.severity.value,
                description=a.description,
                risk_score=a.risk_score,
            )
            for a in anomalies
        ],
        blacklisted=blacklisted,
    )
