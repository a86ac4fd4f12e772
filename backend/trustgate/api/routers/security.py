# backend/trustgate/api/routers/security.py
"""
Account security endpoints for the authenticated user.

Provides endpoints for:
- TOTP 2FA setup, enable, disable and verification
- Backup code regeneration
- Security settings and score
- Personal activity log
"""

import logging
from datetime import UTC, datetime
from typing import Annotated, Any

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel, ConfigDict, Field

from trustgate.api.deps import CurrentUser, Services
from trustgate.core.config import settings
from trustgate.core.rate_limit import get_real_client_ip, limiter
from trustgate.core.risk_policy import ActivityType
from trustgate.db.stores import AuditQuery
from trustgate.exceptions import InvalidCodeError
from trustgate.services.security_score import calculate_security_score

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/security", tags=["Security - 2FA & Settings"])

SETTINGS_RESOURCE = "SECURITY"


# --- Schemas ---


class TwoFactorSetupResponse(BaseModel):
    secret: str = Field(..., description="TOTP secret for manual entry")
    qr_code_url: str = Field(..., description="otpauth:// provisioning URI")
    qr_code: str = Field(..., description="QR code as a base64 PNG data URI")
    backup_codes: list[str]


class EnableTwoFactorRequest(BaseModel):
    secret: str = Field(..., min_length=16, max_length=128)
    code: str = Field(..., min_length=6, max_length=10, description="Code from authenticator")


class BackupCodesResponse(BaseModel):
    backup_codes: list[str] = Field(..., description="Shown once; store them securely")


class TwoFactorStatusResponse(BaseModel):
    two_factor_enabled: bool


class VerifyTwoFactorRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=12, description="TOTP or backup code")


class VerifyTwoFactorResponse(BaseModel):
    success: bool
    is_backup_code: bool


class GeoLocationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    ip: str
    country: str
    country_code: str
    region: str
    region_code: str
    city: str
    latitude: float
    longitude: float
    timezone: str
    isp: str
    proxy: bool
    vpn: bool


class LocationStatsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total_logins: int
    unique_countries: int
    unique_cities: int
    most_frequent_country: str
    most_frequent_city: str
    last_login_location: GeoLocationResponse | None = None
    anomalies_detected: int


class SecuritySettingsResponse(BaseModel):
    two_factor_enabled: bool
    two_factor_enabled_at: datetime | None
    email_verified: bool
    last_login_at: datetime | None
    account_created_at: datetime | None
    account_age_days: int
    location_stats: LocationStatsResponse
    remaining_backup_codes: int
    email_notifications: bool
    session_timeout_minutes: int | None
    security_score: int = Field(..., ge=0, le=100)


class SecuritySettingsUpdate(BaseModel):
    email_notifications: bool | None = None
    session_timeout_minutes: int | None = Field(default=None, ge=5, le=1440)


class ActivityItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    action: str
    resource: str
    resource_id: str | None
    details: dict[str, Any] | None
    ip_address: str | None
    user_agent: str | None
    success: bool
    error_message: str | None
    timestamp: datetime


class ActivityResponse(BaseModel):
    items: list[ActivityItem]
    limit: int
    offset: int


# --- Endpoints ---


@router.get("/2fa/setup", response_model=TwoFactorSetupResponse, summary="Start 2FA setup")
async def get_two_factor_setup(
    request: Request, current_user: CurrentUser, services: Services
) -> TwoFactorSetupResponse:
    """
    Generate a secret, QR code and backup codes.

    Nothing is stored until the user confirms with POST /2fa/enable.
    """
    setup = await services.two_factor.get_setup_info(
        current_user, ip_address=get_real_client_ip(request)
    )
    return TwoFactorSetupResponse(
        secret=setup.secret,
        qr_code_url=setup.qr_code_url,
        qr_code=setup.qr_code,
        backup_codes=setup.backup_codes,
    )


@router.post("/2fa/enable", response_model=BackupCodesResponse, summary="Enable 2FA")
async def enable_two_factor(
    body: EnableTwoFactorRequest,
    request: Request,
    current_user: CurrentUser,
    services: Services,
) -> BackupCodesResponse:
    backup_codes = await services.two_factor.enable(
        current_user, body.secret, body.code, ip_address=get_real_client_ip(request)
    )
    return BackupCodesResponse(backup_codes=backup_codes)


@router.post("/2fa/disable", response_model=TwoFactorStatusResponse, summary="Disable 2FA")
async def disable_two_factor(
    request: Request, current_user: CurrentUser, services: Services
) -> TwoFactorStatusResponse:
    await services.two_factor.disable(current_user, ip_address=get_real_client_ip(request))
    return TwoFactorStatusResponse(two_factor_enabled=False)


@router.post("/2fa/verify", response_model=VerifyTwoFactorResponse, summary="Verify a 2FA code")
@limiter.limit(settings.RATE_LIMIT_2FA_VERIFY)
async def verify_two_factor(
    request: Request,
    body: VerifyTwoFactorRequest,
    current_user: CurrentUser,
    services: Services,
) -> VerifyTwoFactorResponse:
    ip = get_real_client_ip(request)
    try:
        result = await services.two_factor.verify(current_user, body.code, ip_address=ip)
    except InvalidCodeError:
        if ip:
            await services.tracker.record(ip, ActivityType.LOGIN_FAILED.value)
        raise
    return VerifyTwoFactorResponse(success=result.success, is_backup_code=result.is_backup_code)


@router.post(
    "/2fa/backup-codes/regenerate",
    response_model=BackupCodesResponse,
    summary="Replace all backup codes",
)
async def regenerate_backup_codes(
    request: Request, current_user: CurrentUser, services: Services
) -> BackupCodesResponse:
    backup_codes = await services.two_factor.regenerate_backup_codes(
        current_user, ip_address=get_real_client_ip(request)
    )
    return BackupCodesResponse(backup_codes=backup_codes)


async def _settings_response(current_user, services) -> SecuritySettingsResponse:
    user_id = current_user.id
    two_factor_enabled = await services.two_factor.is_enabled(user_id)
    remaining = await services.two_factor.remaining_backup_codes(user_id)
    location_stats = await services.detector.get_user_location_stats(str(user_id))
    preferences = await services.user_store.get_settings(user_id)

    now = datetime.now(UTC)
    account_age_days = (now - current_user.created_at).days if current_user.created_at else 0

    return SecuritySettingsResponse(
        two_factor_enabled=two_factor_enabled,
        two_factor_enabled_at=await services.two_factor.enabled_at(user_id),
        email_verified=current_user.email_verified,
        last_login_at=current_user.last_login_at,
        account_created_at=current_user.created_at,
        account_age_days=account_age_days,
        location_stats=LocationStatsResponse.model_validate(location_stats),
        remaining_backup_codes=remaining,
        email_notifications=preferences.email_notifications if preferences else True,
        session_timeout_minutes=preferences.session_timeout_minutes if preferences else None,
        security_score=calculate_security_score(
            current_user, two_factor_enabled, location_stats, remaining, now=now
        ),
    )


@router.get("/settings", response_model=SecuritySettingsResponse, summary="Security overview")
async def get_security_settings(
    current_user: CurrentUser, services: Services
) -> SecuritySettingsResponse:
    return await _settings_response(current_user, services)


@router.put("/settings", response_model=SecuritySettingsResponse, summary="Update preferences")
async def update_security_settings(
    body: SecuritySettingsUpdate,
    request: Request,
    current_user: CurrentUser,
    services: Services,
) -> SecuritySettingsResponse:
    updates = body.model_dump(exclude_unset=True, exclude_none=True)
    await services.user_store.save_settings(current_user.id, **updates)
    services.audit.log_user_action(
        user_id=str(current_user.id),
        action="SECURITY_SETTINGS_UPDATED",
        resource=SETTINGS_RESOURCE,
        details={"updated_fields": sorted(updates)},
        ip_address=get_real_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    return await _settings_response(current_user, services)


@router.get("/activity", response_model=ActivityResponse, summary="My recent activity")
async def get_activity(
    current_user: CurrentUser,
    services: Services,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> ActivityResponse:
    entries = await services.audit.query(
        AuditQuery(user_id=str(current_user.id)), limit=limit, offset=offset
    )
    return ActivityResponse(
        items=[ActivityItem.model_validate(entry) for entry in entries],
        limit=limit,
        offset=offset,
    )
