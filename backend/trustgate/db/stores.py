# backend/trustgate/db/stores.py
"""
Persistence interfaces and their SQLAlchemy implementations.

Services depend on the Protocol classes only; the application wires in the
SQLAlchemy stores and tests wire in in-memory fakes. Every SQLAlchemy store
call runs under a bounded timeout and surfaces failures as PersistenceError.
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol, TypeVar

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trustgate.db.models.audit_log import AuditLog, SecurityLog
from trustgate.db.models.ip_blacklist import BlacklistEntry, BlacklistSource
from trustgate.db.models.two_factor import TwoFactorCredential, UserSecuritySettings
from trustgate.db.models.user import User
from trustgate.exceptions import PersistenceError

logger = logging.getLogger(__name__)

T = TypeVar("T")

LOGIN_ACTION = "LOGIN"


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo on read; all stored timestamps are UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


# --- Records ---


@dataclass(frozen=True)
class BlacklistRecord:
    ip_address: str
    reason: str
    source: BlacklistSource = BlacklistSource.MANUAL
    expires_at: datetime | None = None
    details: dict[str, Any] | None = None
    created_at: datetime | None = None

    @property
    def is_permanent(self) -> bool:
        return self.expires_at is None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


@dataclass(frozen=True)
class AuditRecord:
    user_id: str
    action: str
    resource: str
    resource_id: str | None = None
    details: dict[str, Any] | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    success: bool = True
    error_message: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class SecurityRecord:
    action: str
    severity: str
    user_id: str | None = None
    details: dict[str, Any] | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class AuditQuery:
    """Filter for user audit log listing. Unset fields do not filter."""

    user_id: str | None = None
    action: str | None = None
    resource: str | None = None
    success: bool | None = None
    since: datetime | None = None
    until: datetime | None = None


@dataclass
class CredentialRecord:
    user_id: uuid.UUID
    secret_encrypted: str | None = None
    backup_codes: list[str] = field(default_factory=list)
    enabled: bool = False
    enabled_at: datetime | None = None
    disabled_at: datetime | None = None


@dataclass(frozen=True)
class UserRecord:
    id: uuid.UUID
    email: str
    is_active: bool = True
    email_verified: bool = False
    created_at: datetime | None = None
    last_login_at: datetime | None = None


@dataclass(frozen=True)
class SecuritySettingsRecord:
    user_id: uuid.UUID
    email_notifications: bool = True
    session_timeout_minutes: int | None = None
    updated_at: datetime | None = None


# --- Interfaces ---


class BlacklistStore(Protocol):
    async def upsert(self, record: BlacklistRecord) -> BlacklistRecord: ...

    async def delete(self, ip_address: str) -> bool: ...

    async def load_active(self, now: datetime) -> list[BlacklistRecord]: ...

    async def delete_expired(self, now: datetime) -> int: ...

    async def list_entries(self, limit: int, offset: int) -> tuple[list[BlacklistRecord], int]: ...

    async def counts(self, now: datetime) -> dict[str, int]: ...


class AuditStore(Protocol):
    async def add_audit(self, record: AuditRecord) -> None: ...

    async def add_security(self, record: SecurityRecord) -> None: ...

    async def recent_login_ips(self, user_id: str, limit: int) -> list[str]: ...

    async def login_ips(self, user_id: str, limit: int | None = None) -> list[str]: ...

    async def list_audit(self, query: AuditQuery, limit: int, offset: int) -> list[AuditRecord]: ...

    async def list_security(
        self, severity: str | None, limit: int, offset: int
    ) -> list[SecurityRecord]: ...

    async def count_audit(self, since: datetime, failed_only: bool = False) -> int: ...

    async def count_security(
        self,
        since: datetime | None = None,
        user_id: str | None = None,
        action: str | None = None,
        ip_address: str | None = None,
        details_key: tuple[str, str] | None = None,
    ) -> int: ...

    async def delete_older_than(self, cutoff: datetime) -> tuple[int, int]: ...


class CredentialStore(Protocol):
    async def get(self, user_id: uuid.UUID) -> CredentialRecord | None: ...

    async def save(self, record: CredentialRecord) -> None: ...

    async def replace_backup_codes(self, user_id: uuid.UUID, hashed_codes: list[str]) -> None: ...

    async def consume_backup_code(self, user_id: uuid.UUID, hashed_code: str) -> bool: ...


class UserStore(Protocol):
    async def get(self, user_id: uuid.UUID) -> UserRecord | None: ...

    async def get_settings(self, user_id: uuid.UUID) -> SecuritySettingsRecord | None: ...

    async def save_settings(
        self,
        user_id: uuid.UUID,
        email_notifications: bool | None = None,
        session_timeout_minutes: int | None = None,
    ) -> SecuritySettingsRecord: ...


# --- SQLAlchemy implementations ---


class _SQLAlchemyStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], timeout: float = 5.0):
        self._session_factory = session_factory
        self._timeout = timeout

    async def _run(self, operation: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async def _in_session() -> T:
            async with self._session_factory() as session:
                return await operation(session)

        try:
            return await asyncio.wait_for(_in_session(), timeout=self._timeout)
        except TimeoutError as e:
            raise PersistenceError(f"Store operation timed out after {self._timeout}s") from e
        except SQLAlchemyError as e:
            logger.error(f"Store operation failed: {e}")
            raise PersistenceError("Store operation failed") from e


def _to_blacklist_record(row: BlacklistEntry) -> BlacklistRecord:
    return BlacklistRecord(
        ip_address=row.ip_address,
        reason=row.reason,
        source=BlacklistSource(row.source),
        expires_at=as_utc(row.expires_at),
        details=row.details,
        created_at=as_utc(row.created_at),
    )


class SQLAlchemyBlacklistStore(_SQLAlchemyStore):
    async def upsert(self, record: BlacklistRecord) -> BlacklistRecord:
        async def op(session: AsyncSession) -> BlacklistRecord:
            result = await session.execute(
                select(BlacklistEntry).where(BlacklistEntry.ip_address == record.ip_address)
            )
            row = result.scalar_one_or_none()
            if row is None:
                row = BlacklistEntry(ip_address=record.ip_address)
                session.add(row)
            row.reason = record.reason
            row.source = record.source
            row.expires_at = record.expires_at
            row.details = record.details
            await session.commit()
            await session.refresh(row)
            return _to_blacklist_record(row)

        return await self._run(op)

    async def delete(self, ip_address: str) -> bool:
        async def op(session: AsyncSession) -> bool:
            result = await session.execute(
                delete(BlacklistEntry).where(BlacklistEntry.ip_address == ip_address)
            )
            await session.commit()
            return (result.rowcount or 0) > 0

        return await self._run(op)

    async def load_active(self, now: datetime) -> list[BlacklistRecord]:
        async def op(session: AsyncSession) -> list[BlacklistRecord]:
            result = await session.execute(
                select(BlacklistEntry).where(
                    (BlacklistEntry.expires_at.is_(None)) | (BlacklistEntry.expires_at > now)
                )
            )
            return [_to_blacklist_record(row) for row in result.scalars().all()]

        return await self._run(op)

    async def delete_expired(self, now: datetime) -> int:
        async def op(session: AsyncSession) -> int:
            result = await session.execute(
                delete(BlacklistEntry).where(
                    BlacklistEntry.expires_at.is_not(None), BlacklistEntry.expires_at <= now
                )
            )
            await session.commit()
            return result.rowcount or 0

        return await self._run(op)

    async def list_entries(self, limit: int, offset: int) -> tuple[list[BlacklistRecord], int]:
        async def op(session: AsyncSession) -> tuple[list[BlacklistRecord], int]:
            total = await session.scalar(select(func.count()).select_from(BlacklistEntry))
            result = await session.execute(
                select(BlacklistEntry)
                .order_by(BlacklistEntry.created_at.desc())
                .limit(limit)
                .offset(offset)
            )
            return [_to_blacklist_record(row) for row in result.scalars().all()], total or 0

        return await self._run(op)

    async def counts(self, now: datetime) -> dict[str, int]:
        async def op(session: AsyncSession) -> dict[str, int]:
            def count(*criteria) -> Any:
                return select(func.count()).select_from(BlacklistEntry).where(*criteria)

            total = await session.scalar(select(func.count()).select_from(BlacklistEntry))
            permanent = await session.scalar(count(BlacklistEntry.expires_at.is_(None)))
            temporary = await session.scalar(
                count(BlacklistEntry.expires_at.is_not(None), BlacklistEntry.expires_at > now)
            )
            recent = await session.scalar(
                count(BlacklistEntry.created_at >= now - timedelta(hours=24))
            )
            return {
                "total": total or 0,
                "permanent": permanent or 0,
                "temporary": temporary or 0,
                "recent_24h": recent or 0,
            }

        return await self._run(op)


def _to_audit_record(row: AuditLog) -> AuditRecord:
    return AuditRecord(
        user_id=row.user_id,
        action=row.action,
        resource=row.resource,
        resource_id=row.resource_id,
        details=row.details,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        success=row.success,
        error_message=row.error_message,
        timestamp=as_utc(row.timestamp),
    )


def _to_security_record(row: SecurityLog) -> SecurityRecord:
    return SecurityRecord(
        action=row.action,
        severity=row.severity,
        user_id=row.user_id,
        details=row.details,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        timestamp=as_utc(row.timestamp),
    )


class SQLAlchemyAuditStore(_SQLAlchemyStore):
    async def add_audit(self, record: AuditRecord) -> None:
        async def op(session: AsyncSession) -> None:
            session.add(
                AuditLog(
                    user_id=record.user_id,
                    action=record.action,
                    resource=record.resource,
                    resource_id=record.resource_id,
                    details=record.details,
                    ip_address=record.ip_address,
                    user_agent=record.user_agent,
                    success=record.success,
                    error_message=record.error_message,
                    timestamp=record.timestamp,
                )
            )
            await session.commit()

        await self._run(op)

    async def add_security(self, record: SecurityRecord) -> None:
        async def op(session: AsyncSession) -> None:
            session.add(
                SecurityLog(
                    user_id=record.user_id,
                    action=record.action,
                    severity=record.severity,
                    details=record.details,
                    ip_address=record.ip_address,
                    user_agent=record.user_agent,
                    timestamp=record.timestamp,
                )
            )
            await session.commit()

        await self._run(op)

    def _login_query(self, user_id: str):
        return (
            select(AuditLog.ip_address, AuditLog.timestamp)
            .where(
                AuditLog.user_id == user_id,
                AuditLog.action == LOGIN_ACTION,
                AuditLog.success.is_(True),
                AuditLog.ip_address.is_not(None),
            )
            .order_by(AuditLog.timestamp.desc())
        )

    async def recent_login_ips(self, user_id: str, limit: int) -> list[str]:
        async def op(session: AsyncSession) -> list[str]:
            # Distinct on IP while keeping newest-first order
            result = await session.execute(
                select(AuditLog.ip_address, func.max(AuditLog.timestamp).label("last_seen"))
                .where(
                    AuditLog.user_id == user_id,
                    AuditLog.action == LOGIN_ACTION,
                    AuditLog.success.is_(True),
                    AuditLog.ip_address.is_not(None),
                )
                .group_by(AuditLog.ip_address)
                .order_by(func.max(AuditLog.timestamp).desc())
                .limit(limit)
            )
            return [row.ip_address for row in result]

        return await self._run(op)

    async def login_ips(self, user_id: str, limit: int | None = None) -> list[str]:
        async def op(session: AsyncSession) -> list[str]:
            stmt = self._login_query(user_id)
            if limit is not None:
                stmt = stmt.limit(limit)
            result = await session.execute(stmt)
            return [row.ip_address for row in result]

        return await self._run(op)

    async def list_audit(self, query: AuditQuery, limit: int, offset: int) -> list[AuditRecord]:
        async def op(session: AsyncSession) -> list[AuditRecord]:
            stmt = select(AuditLog)
            if query.user_id is not None:
                stmt = stmt.where(AuditLog.user_id == query.user_id)
            if query.action is not None:
                stmt = stmt.where(AuditLog.action == query.action)
            if query.resource is not None:
                stmt = stmt.where(AuditLog.resource == query.resource)
            if query.success is not None:
                stmt = stmt.where(AuditLog.success.is_(query.success))
            if query.since is not None:
                stmt = stmt.where(AuditLog.timestamp >= query.since)
            if query.until is not None:
                stmt = stmt.where(AuditLog.timestamp < query.until)
            stmt = stmt.order_by(AuditLog.timestamp.desc()).limit(limit).offset(offset)
            result = await session.execute(stmt)
            return [_to_audit_record(row) for row in result.scalars().all()]

        return await self._run(op)

    async def list_security(
        self, severity: str | None, limit: int, offset: int
    ) -> list[SecurityRecord]:
        async def op(session: AsyncSession) -> list[SecurityRecord]:
            stmt = select(SecurityLog)
            if severity is not None:
                stmt = stmt.where(SecurityLog.severity == severity)
            stmt = stmt.order_by(SecurityLog.timestamp.desc()).limit(limit).offset(offset)
            result = await session.execute(stmt)
            return [_to_security_record(row) for row in result.scalars().all()]

        return await self._run(op)

    async def count_audit(self, since: datetime, failed_only: bool = False) -> int:
        async def op(session: AsyncSession) -> int:
            stmt = select(func.count()).select_from(AuditLog).where(AuditLog.timestamp >= since)
            if failed_only:
                stmt = stmt.where(AuditLog.success.is_(False))
            return await session.scalar(stmt) or 0

        return await self._run(op)

    async def count_security(
        self,
        since: datetime | None = None,
        user_id: str | None = None,
        action: str | None = None,
        ip_address: str | None = None,
        details_key: tuple[str, str] | None = None,
    ) -> int:
        async def op(session: AsyncSession) -> int:
            stmt = select(SecurityLog)
            if since is not None:
                stmt = stmt.where(SecurityLog.timestamp >= since)
            if user_id is not None:
                stmt = stmt.where(SecurityLog.user_id == user_id)
            if action is not None:
                stmt = stmt.where(SecurityLog.action == action)
            if ip_address is not None:
                stmt = stmt.where(SecurityLog.ip_address == ip_address)
            if details_key is None:
                return (
                    await session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
                )
            # JSON path filtering differs per dialect; match in Python
            key, expected = details_key
            result = await session.execute(stmt)
            return sum(
                1 for row in result.scalars().all() if (row.details or {}).get(key) == expected
            )

        return await self._run(op)

    async def delete_older_than(self, cutoff: datetime) -> tuple[int, int]:
        async def op(session: AsyncSession) -> tuple[int, int]:
            audit_result = await session.execute(delete(AuditLog).where(AuditLog.timestamp < cutoff))
            security_result = await session.execute(
                delete(SecurityLog).where(SecurityLog.timestamp < cutoff)
            )
            await session.commit()
            return audit_result.rowcount or 0, security_result.rowcount or 0

        return await self._run(op)


def _to_credential_record(row: TwoFactorCredential) -> CredentialRecord:
    return CredentialRecord(
        user_id=row.user_id,
        secret_encrypted=row.secret_encrypted,
        backup_codes=list(row.backup_codes or []),
        enabled=row.enabled,
        enabled_at=as_utc(row.enabled_at),
        disabled_at=as_utc(row.disabled_at),
    )


class SQLAlchemyCredentialStore(_SQLAlchemyStore):
    async def get(self, user_id: uuid.UUID) -> CredentialRecord | None:
        async def op(session: AsyncSession) -> CredentialRecord | None:
            result = await session.execute(
                select(TwoFactorCredential).where(TwoFactorCredential.user_id == user_id)
            )
            row = result.scalar_one_or_none()
            return _to_credential_record(row) if row else None

        return await self._run(op)

    async def save(self, record: CredentialRecord) -> None:
        async def op(session: AsyncSession) -> None:
            result = await session.execute(
                select(TwoFactorCredential).where(TwoFactorCredential.user_id == record.user_id)
            )
            row = result.scalar_one_or_none()
            if row is None:
                row = TwoFactorCredential(user_id=record.user_id)
                session.add(row)
            row.secret_encrypted = record.secret_encrypted
            row.backup_codes = list(record.backup_codes)
            row.enabled = record.enabled
            row.enabled_at = record.enabled_at
            row.disabled_at = record.disabled_at
            await session.commit()

        await self._run(op)

    async def replace_backup_codes(self, user_id: uuid.UUID, hashed_codes: list[str]) -> None:
        async def op(session: AsyncSession) -> None:
            result = await session.execute(
                select(TwoFactorCredential)
                .where(TwoFactorCredential.user_id == user_id)
                .with_for_update()
            )
            row = result.scalar_one_or_none()
            if row is None:
                raise PersistenceError(f"No 2FA credential for user {user_id}")
            row.backup_codes = list(hashed_codes)
            await session.commit()

        await self._run(op)

    async def consume_backup_code(self, user_id: uuid.UUID, hashed_code: str) -> bool:
        async def op(session: AsyncSession) -> bool:
            result = await session.execute(
                select(TwoFactorCredential)
                .where(TwoFactorCredential.user_id == user_id)
                .with_for_update()
            )
            row = result.scalar_one_or_none()
            if row is None or hashed_code not in (row.backup_codes or []):
                await session.rollback()
                return False
            # Reassign so the JSON column is flagged dirty
            row.backup_codes = [code for code in row.backup_codes if code != hashed_code]
            await session.commit()
            return True

        return await self._run(op)


class SQLAlchemyUserStore(_SQLAlchemyStore):
    async def get(self, user_id: uuid.UUID) -> UserRecord | None:
        async def op(session: AsyncSession) -> UserRecord | None:
            row = await session.get(User, user_id)
            if row is None:
                return None
            return UserRecord(
                id=row.id,
                email=row.email,
                is_active=row.is_active,
                email_verified=row.email_verified,
                created_at=as_utc(row.created_at),
                last_login_at=as_utc(row.last_login_at),
            )

        return await self._run(op)

    async def get_settings(self, user_id: uuid.UUID) -> SecuritySettingsRecord | None:
        async def op(session: AsyncSession) -> SecuritySettingsRecord | None:
            result = await session.execute(
                select(UserSecuritySettings).where(UserSecuritySettings.user_id == user_id)
            )
            row = result.scalar_one_or_none()
            if row is None:
                return None
            return SecuritySettingsRecord(
                user_id=row.user_id,
                email_notifications=row.email_notifications,
                session_timeout_minutes=row.session_timeout_minutes,
                updated_at=as_utc(row.updated_at),
            )

        return await self._run(op)

    async def save_settings(
        self,
        user_id: uuid.UUID,
        email_notifications: bool | None = None,
        session_timeout_minutes: int | None = None,
    ) -> SecuritySettingsRecord:
        async def op(session: AsyncSession) -> SecuritySettingsRecord:
            result = await session.execute(
                select(UserSecuritySettings).where(UserSecuritySettings.user_id == user_id)
            )
            row = result.scalar_one_or_none()
            if row is None:
                row = UserSecuritySettings(user_id=user_id, email_notifications=True)
                session.add(row)
            if email_notifications is not None:
                row.email_notifications = email_notifications
            if session_timeout_minutes is not None:
                row.session_timeout_minutes = session_timeout_minutes
            row.updated_at = datetime.now(UTC)
            await session.commit()
            await session.refresh(row)
            return SecuritySettingsRecord(
                user_id=row.user_id,
                email_notifications=row.email_notifications,
                session_timeout_minutes=row.session_timeout_minutes,
                updated_at=as_utc(row.updated_at),
            )

        return await self._run(op)
