# backend/tests/support.py
"""In-memory stores, a settable clock and reference locations shared by the tests."""

import dataclasses
import uuid
from datetime import UTC, datetime, timedelta

import jwt

from trustgate.core.config import settings
from trustgate.db.stores import (
    AuditQuery,
    AuditRecord,
    BlacklistRecord,
    CredentialRecord,
    SecurityRecord,
    SecuritySettingsRecord,
    UserRecord,
)
from trustgate.services.geolocation import GeoLocation

LOGIN_ACTION = "LOGIN"


class FakeClock:
    """Settable clock; returns aware UTC datetimes, or epoch seconds via timestamp()."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 15, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def timestamp(self) -> float:
        return self.now.timestamp()

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# --- In-memory stores ---


class InMemoryBlacklistStore:
    def __init__(self):
        self.entries: dict[str, BlacklistRecord] = {}

    async def upsert(self, record: BlacklistRecord) -> BlacklistRecord:
        self.entries[record.ip_address] = record
        return record

    async def delete(self, ip_address: str) -> bool:
        return self.entries.pop(ip_address, None) is not None

    async def load_active(self, now: datetime) -> list[BlacklistRecord]:
        return [r for r in self.entries.values() if not r.is_expired(now)]

    async def delete_expired(self, now: datetime) -> int:
        expired = [ip for ip, r in self.entries.items() if r.is_expired(now)]
        for ip in expired:
            del self.entries[ip]
        return len(expired)

    async def list_entries(self, limit: int, offset: int) -> tuple[list[BlacklistRecord], int]:
        ordered = sorted(
            self.entries.values(),
            key=lambda r: r.created_at or datetime.min.replace(tzinfo=UTC),
            reverse=True,
        )
        return ordered[offset : offset + limit], len(ordered)

    async def counts(self, now: datetime) -> dict[str, int]:
        records = list(self.entries.values())
        return {
            "total": len(records),
            "permanent": sum(1 for r in records if r.is_permanent),
            "temporary": sum(1 for r in records if r.expires_at and r.expires_at > now),
            "recent_24h": sum(
                1 for r in records if r.created_at and r.created_at >= now - timedelta(hours=24)
            ),
        }


class InMemoryAuditStore:
    def __init__(self):
        self.audit: list[AuditRecord] = []
        self.security: list[SecurityRecord] = []

    async def add_audit(self, record: AuditRecord) -> None:
        self.audit.append(record)

    async def add_security(self, record: SecurityRecord) -> None:
        self.security.append(record)

    def _logins(self, user_id: str) -> list[AuditRecord]:
        logins = [
            r
            for r in self.audit
            if r.user_id == user_id and r.action == LOGIN_ACTION and r.success and r.ip_address
        ]
        return sorted(logins, key=lambda r: r.timestamp, reverse=True)

    async def recent_login_ips(self, user_id: str, limit: int) -> list[str]:
        ips = list(dict.fromkeys(r.ip_address for r in self._logins(user_id)))
        return ips[:limit]

    async def login_ips(self, user_id: str, limit: int | None = None) -> list[str]:
        ips = [r.ip_address for r in self._logins(user_id)]
        return ips if limit is None else ips[:limit]

    async def list_audit(self, query: AuditQuery, limit: int, offset: int) -> list[AuditRecord]:
        def matches(r: AuditRecord) -> bool:
            return (
                (query.user_id is None or r.user_id == query.user_id)
                and (query.action is None or r.action == query.action)
                and (query.resource is None or r.resource == query.resource)
                and (query.success is None or r.success == query.success)
                and (query.since is None or r.timestamp >= query.since)
                and (query.until is None or r.timestamp < query.until)
            )

        rows = sorted(filter(matches, self.audit), key=lambda r: r.timestamp, reverse=True)
        return rows[offset : offset + limit]

    async def list_security(
        self, severity: str | None, limit: int, offset: int
    ) -> list[SecurityRecord]:
        rows = [r for r in self.security if severity is None or r.severity == severity]
        rows.sort(key=lambda r: r.timestamp, reverse=True)
        return rows[offset : offset + limit]

    async def count_audit(self, since: datetime, failed_only: bool = False) -> int:
        return sum(
            1 for r in self.audit if r.timestamp >= since and (not failed_only or not r.success)
        )

    async def count_security(
        self,
        since: datetime | None = None,
        user_id: str | None = None,
        action: str | None = None,
        ip_address: str | None = None,
        details_key: tuple[str, str] | None = None,
    ) -> int:
        def matches(r: SecurityRecord) -> bool:
            if since is not None and r.timestamp < since:
                return False
            if user_id is not None and r.user_id != user_id:
                return False
            if action is not None and r.action != action:
                return False
            if ip_address is not None and r.ip_address != ip_address:
                return False
            if details_key is not None:
                key, expected = details_key
                return (r.details or {}).get(key) == expected
            return True

        return sum(1 for r in self.security if matches(r))

    async def delete_older_than(self, cutoff: datetime) -> tuple[int, int]:
        audit_before, security_before = len(self.audit), len(self.security)
        self.audit = [r for r in self.audit if r.timestamp >= cutoff]
        self.security = [r for r in self.security if r.timestamp >= cutoff]
        return audit_before - len(self.audit), security_before - len(self.security)


class InMemoryCredentialStore:
    def __init__(self):
        self.credentials: dict[uuid.UUID, CredentialRecord] = {}

    @staticmethod
    def _copy(record: CredentialRecord) -> CredentialRecord:
        return dataclasses.replace(record, backup_codes=list(record.backup_codes))

    async def get(self, user_id: uuid.UUID) -> CredentialRecord | None:
        record = self.credentials.get(user_id)
        return self._copy(record) if record else None

    async def save(self, record: CredentialRecord) -> None:
        self.credentials[record.user_id] = self._copy(record)

    async def replace_backup_codes(self, user_id: uuid.UUID, hashed_codes: list[str]) -> None:
        self.credentials[user_id].backup_codes = list(hashed_codes)

    async def consume_backup_code(self, user_id: uuid.UUID, hashed_code: str) -> bool:
        record = self.credentials.get(user_id)
        if record is None or hashed_code not in record.backup_codes:
            return False
        record.backup_codes.remove(hashed_code)
        return True


class InMemoryUserStore:
    def __init__(self):
        self.users: dict[uuid.UUID, UserRecord] = {}
        self.settings: dict[uuid.UUID, SecuritySettingsRecord] = {}

    def add(self, user: UserRecord) -> UserRecord:
        self.users[user.id] = user
        return user

    async def get(self, user_id: uuid.UUID) -> UserRecord | None:
        return self.users.get(user_id)

    async def get_settings(self, user_id: uuid.UUID) -> SecuritySettingsRecord | None:
        return self.settings.get(user_id)

    async def save_settings(
        self,
        user_id: uuid.UUID,
        email_notifications: bool | None = None,
        session_timeout_minutes: int | None = None,
    ) -> SecuritySettingsRecord:
        current = self.settings.get(user_id) or SecuritySettingsRecord(user_id=user_id)
        updated = dataclasses.replace(
            current,
            email_notifications=(
                current.email_notifications if email_notifications is None else email_notifications
            ),
            session_timeout_minutes=(
                current.session_timeout_minutes
                if session_timeout_minutes is None
                else session_timeout_minutes
            ),
            updated_at=datetime.now(UTC),
        )
        self.settings[user_id] = updated
        return updated


class StaticGeoProvider:
    """Provider answering from a fixed table; counts lookups per IP."""

    def __init__(self, locations: dict[str, GeoLocation] | None = None):
        self.locations = dict(locations or {})
        self.calls: list[str] = []

    async def lookup(self, ip: str) -> GeoLocation | None:
        self.calls.append(ip)
        return self.locations.get(ip)


# --- Reference locations (public resolver IPs, never in a local range) ---

SAN_FRANCISCO = GeoLocation(
    ip="8.8.8.8",
    country="United States",
    country_code="US",
    region="California",
    region_code="CA",
    city="San Francisco",
    latitude=37.7749,
    longitude=-122.4194,
    timezone="America/Los_Angeles",
)
LOS_ANGELES = dataclasses.replace(
    SAN_FRANCISCO, ip="8.8.4.4", city="Los Angeles", latitude=34.0522, longitude=-118.2437
)
NEW_YORK = GeoLocation(
    ip="1.1.1.1",
    country="United States",
    country_code="US",
    region="New York",
    region_code="NY",
    city="New York",
    latitude=40.7128,
    longitude=-74.0060,
    timezone="America/New_York",
)
BERLIN = GeoLocation(
    ip="9.9.9.9",
    country="Germany",
    country_code="DE",
    region="Berlin",
    region_code="BE",
    city="Berlin",
    latitude=52.52,
    longitude=13.405,
    timezone="Europe/Berlin",
)
PYONGYANG = GeoLocation(
    ip="175.45.176.1",
    country="North Korea",
    country_code="KP",
    region="Pyongyang",
    region_code="01",
    city="Pyongyang",
    latitude=39.0392,
    longitude=125.7625,
    timezone="Asia/Pyongyang",
)
SF_PROXY = dataclasses.replace(SAN_FRANCISCO, ip="8.26.56.26", proxy=True, vpn=True)

ALL_LOCATIONS = [SAN_FRANCISCO, LOS_ANGELES, NEW_YORK, BERLIN, PYONGYANG, SF_PROXY]


def make_login(user_id: str, ip: str, timestamp: datetime, success: bool = True) -> AuditRecord:
    return AuditRecord(
        user_id=user_id,
        action=LOGIN_ACTION,
        resource="AUTH",
        ip_address=ip,
        success=success,
        timestamp=timestamp,
    )


def make_token(user_id: uuid.UUID, is_admin: bool = False, expires_in: int = 3600) -> str:
    payload = {
        "sub": str(user_id),
        "is_admin": is_admin,
        "exp": datetime.now(UTC) + timedelta(seconds=expires_in),
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


