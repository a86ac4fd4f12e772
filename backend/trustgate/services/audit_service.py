# backend/trustgate/services/audit_service.py
"""
Append-only audit and security event log.

Provides:
- record()/log_*(): fire-and-forget writes onto a bounded queue
- a consumer worker that drains the queue into the AuditStore
- paginated queries, aggregate stats and retention cleanup
- details sanitising (secret masking and size caps)

A slow or failing store never adds latency or errors to the audited
operation: failures are captured in the application log only.
"""

import asyncio
import dataclasses
import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from trustgate.core.risk_policy import Severity
from trustgate.db.stores import AuditQuery, AuditRecord, AuditStore, SecurityRecord

logger = logging.getLogger(__name__)

# Maximum size for details JSON (32KB)
MAX_DETAILS_SIZE = 32 * 1024
MAX_PAGE_SIZE = 100

SENSITIVE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r".*token.*",
        r".*secret.*",
        r".*password.*",
        r".*api_key.*",
        r".*session_id.*",
        r"^(backup_)?codes?$",
    )
]

# Application log level per security severity
SEVERITY_LOG_LEVEL = {
    Severity.CRITICAL.value: logging.ERROR,
    Severity.HIGH.value: logging.WARNING,
    Severity.MEDIUM.value: logging.INFO,
    Severity.LOW.value: logging.INFO,
}

ANONYMOUS_USER = "anonymous"
AUTH_RESOURCE = "AUTH"

AuditEntry = AuditRecord | SecurityRecord


@dataclass(frozen=True)
class AuditStats:
    total_actions: int
    failed_actions: int
    security_events: int
    success_rate: float


@dataclass(frozen=True)
class CleanupResult:
    audit_logs_deleted: int
    security_logs_deleted: int


def _mask(value: Any, key: str) -> Any:
    if isinstance(value, dict):
        return {k: _mask(v, k) for k, v in value.items()}
    if isinstance(value, str) and any(p.match(key) for p in SENSITIVE_PATTERNS):
        return "[REDACTED]"
    return value


def sanitize_details(details: dict[str, Any] | None) -> dict[str, Any] | None:
    """
    Mask secret-looking values and cap the serialized size.

    String values under keys such as ``secret``, ``token`` or ``password`` are
    replaced with ``[REDACTED]``, including inside nested dicts. If the JSON
    exceeds MAX_DETAILS_SIZE the largest values are dropped and
    ``_truncated`` is set.
    """
    if not details:
        return None

    sanitized = {k: _mask(v, k) for k, v in details.items()}

    serialized = json.dumps(sanitized, default=str)
    if len(serialized) > MAX_DETAILS_SIZE:
        sanitized["_truncated"] = True
        while len(json.dumps(sanitized, default=str)) > MAX_DETAILS_SIZE:
            largest_key = max(
                (k for k in sanitized if k != "_truncated"),
                key=lambda k: len(json.dumps(sanitized[k], default=str)),
                default=None,
            )
            if largest_key is None:
                break
            del sanitized[largest_key]

    # Round-trip through JSON so datetimes and enums are stored as strings
    return json.loads(json.dumps(sanitized, default=str)) if sanitized else None


def _utcnow() -> datetime:
    return datetime.now(UTC)


class AuditService:
    def __init__(
        self,
        store: AuditStore,
        max_queue_size: int = 1000,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self._clock = clock
        self._queue: asyncio.Queue[AuditEntry] = asyncio.Queue(maxsize=max_queue_size)
        self._worker: asyncio.Task | None = None
        self.dropped_count = 0
        self.failed_writes = 0

    # --- Producers ---

    def record(self, entry: AuditEntry) -> bool:
        """
        Enqueue an entry for persistence. Never raises.

        Returns False when the queue is full and the entry was dropped.
        """
        entry = dataclasses.replace(entry, details=sanitize_details(entry.details))
        try:
            self._queue.put_nowait(entry)
        except asyncio.QueueFull:
            self.dropped_count += 1
            if self.dropped_count == 1 or self.dropped_count % 100 == 0:
                logger.error(f"Audit queue full: dropped {self.dropped_count} events total.")
            return False

        self._emit(entry)
        return True

    def log_user_action(
        self,
        user_id: str,
        action: str,
        resource: str,
        resource_id: str | None = None,
        details: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        success: bool = True,
        error_message: str | None = None,
    ) -> bool:
        return self.record(
            AuditRecord(
                user_id=str(user_id),
                action=action,
                resource=resource,
                resource_id=resource_id,
                details=details,
                ip_address=ip_address,
                user_agent=user_agent,
                success=success,
                error_message=error_message,
                timestamp=self._clock(),
            )
        )

    def log_auth_event(
        self,
        action: str,
        user_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        success: bool = True,
        error_message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> bool:
        """Authentication event; unauthenticated attempts are attributed to 'anonymous'."""
        return self.log_user_action(
            user_id=str(user_id) if user_id else ANONYMOUS_USER,
            action=action,
            resource=AUTH_RESOURCE,
            details=details,
            ip_address=ip_address,
            user_agent=user_agent,
            success=success,
            error_message=error_message,
        )

    def log_security_event(
        self,
        action: str,
        severity: Severity | str,
        user_id: str | None = None,
        details: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> bool:
        return self.record(
            SecurityRecord(
                action=action,
                severity=Severity(severity).value,
                user_id=str(user_id) if user_id else None,
                details=details,
                ip_address=ip_address,
                user_agent=user_agent,
                timestamp=self._clock(),
            )
        )

    def _emit(self, entry: AuditEntry) -> None:
        if isinstance(entry, SecurityRecord):
            level = SEVERITY_LOG_LEVEL.get(entry.severity, logging.INFO)
            logger.log(
                level,
                f"Security event {entry.action} [{entry.severity}] "
                f"user={entry.user_id or '-'} ip={entry.ip_address or '-'}",
            )
        else:
            level = logging.INFO if entry.success else logging.WARNING
            logger.log(
                level,
                f"Audit {entry.action} on {entry.resource} by {entry.user_id} "
                f"success={entry.success}",
            )

    # --- Consumer ---

    async def _write(self, entry: AuditEntry) -> None:
        try:
            if isinstance(entry, SecurityRecord):
                await self.store.add_security(entry)
            else:
                await self.store.add_audit(entry)
        except Exception as e:
            self.failed_writes += 1
            logger.error(f"Failed to persist audit entry {entry.action}: {e} entry={entry!r}")

    async def _run(self) -> None:
        while True:
            entry = await self._queue.get()
            try:
                await self._write(entry)
            finally:
                self._queue.task_done()

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="audit-writer")
            logger.info("Audit writer started.")

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def flush(self) -> None:
        """Wait until every accepted entry has been handed to the store."""
        if self.running:
            await self._queue.join()
            return
        while not self._queue.empty():
            entry = self._queue.get_nowait()
            try:
                await self._write(entry)
            finally:
                self._queue.task_done()

    async def stop(self) -> None:
        await self.flush()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
            logger.info("Audit writer stopped.")

    # --- Queries ---

    async def query(
        self, filter: AuditQuery, limit: int = 50, offset: int = 0
    ) -> list[AuditRecord]:
        """User audit log, newest first."""
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        return await self.store.list_audit(filter, limit, max(0, offset))

    async def query_security(
        self, severity: Severity | str | None = None, limit: int = 50, offset: int = 0
    ) -> list[SecurityRecord]:
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        severity_value = Severity(severity).value if severity else None
        return await self.store.list_security(severity_value, limit, max(0, offset))

    async def stats(self, window_days: int = 30) -> AuditStats:
        since = self._clock() - timedelta(days=window_days)
        total = await self.store.count_audit(since)
        failed = await self.store.count_audit(since, failed_only=True)
        security_events = await self.store.count_security(since=since)
        success_rate = round((total - failed) / total * 100, 2) if total else 0.0
        return AuditStats(
            total_actions=total,
            failed_actions=failed,
            security_events=security_events,
            success_rate=success_rate,
        )

    async def cleanup(self, retention_days: int = 90) -> CleanupResult:
        """Delete entries older than the retention window. Store errors propagate."""
        cutoff = self._clock() - timedelta(days=retention_days)
        audit_deleted, security_deleted = await self.store.delete_older_than(cutoff)
        logger.info(
            f"Audit retention cleanup: removed {audit_deleted} audit and "
            f"{security_deleted} security entries older than {cutoff.isoformat()}"
        )
        return CleanupResult(
            audit_logs_deleted=audit_deleted, security_logs_deleted=security_deleted
        )
