# backend/trustgate/services/security_score.py
from datetime import UTC, datetime, timedelta

from trustgate.db.stores import UserRecord
from trustgate.services.anomaly_detector import LocationStats

TWO_FACTOR_POINTS = 40
EMAIL_VERIFIED_POINTS = 20
ACCOUNT_AGE_POINTS = 10
FEW_COUNTRIES_POINTS = 15
BACKUP_CODES_POINTS = 10
RECENT_LOGIN_POINTS = 5

ACCOUNT_AGE_THRESHOLD = timedelta(days=30)
RECENT_LOGIN_THRESHOLD = timedelta(days=7)
MAX_COUNTRIES = 2


def calculate_security_score(
    user: UserRecord,
    two_factor_enabled: bool,
    location_stats: LocationStats,
    remaining_backup_codes: int,
    now: datetime | None = None,
) -> int:
    """Derived 0-100 account hardening score shown on the settings page."""
    now = now or datetime.now(UTC)
    score = 0

    if two_factor_enabled:
        score += TWO_FACTOR_POINTS
    if user.email_verified:
        score += EMAIL_VERIFIED_POINTS
    if user.created_at and now - user.created_at > ACCOUNT_AGE_THRESHOLD:
        score += ACCOUNT_AGE_POINTS
    if location_stats.unique_countries <= MAX_COUNTRIES:
        score += FEW_COUNTRIES_POINTS
    if remaining_backup_codes > 0:
        score += BACKUP_CODES_POINTS
    if user.last_login_at and now - user.last_login_at <= RECENT_LOGIN_THRESHOLD:
        score += RECENT_LOGIN_POINTS

    return min(score, 100)
