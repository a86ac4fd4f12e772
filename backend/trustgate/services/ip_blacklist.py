# backend/trustgate/services/ip_blacklist.py
"""
IP reputation (blacklist) cache with automatic escalation.

The in-memory map is a rebuildable projection of the BlacklistStore. Lookups
are synchronous dict reads on the request hot path; writes go to the store
first and only touch the map once the store accepted them.
"""

import asyncio
import ipaddress
import logging
import threading
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from trustgate.core.risk_policy import RiskPolicy, Severity
from trustgate.core.security_logger import security_log
from trustgate.db.models.ip_blacklist import BlacklistSource
from trustgate.db.stores import BlacklistRecord, BlacklistStore
from trustgate.exceptions import PersistenceError, ValidationError
from trustgate.services.audit_service import AuditService

logger = logging.getLogger(__name__)

SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def normalize_ip(ip: str) -> str:
    try:
        return str(ipaddress.ip_address(ip.strip()))
    except (AttributeError, ValueError) as e:
        raise ValidationError(f"Invalid IP address: {ip!r}") from e


class IPBlacklistCache:
    def __init__(
        self,
        store: BlacklistStore,
        audit: AuditService | None = None,
        policy: RiskPolicy | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.audit = audit
        self.policy = policy or RiskPolicy()
        self._clock = clock
        self._entries: dict[str, BlacklistRecord] = {}
        self._lock = threading.Lock()
        self.initialized = False

    async def initialize(self) -> int:
        """Replace the map with every non-expired entry in the store."""
        records = await self.store.load_active(self._clock())
        with self._lock:
            self._entries = {record.ip_address: record for record in records}
            self.initialized = True
        logger.info(f"IP blacklist cache initialized with {len(records)} entries.")
        return len(records)

    def _live_entry(self, ip: str) -> BlacklistRecord | None:
        entry = self._entries.get(ip)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            with self._lock:
                if self._entries.get(ip) is entry:
                    del self._entries[ip]
            return None
        return entry

    def is_blacklisted(self, ip: str) -> bool:
        return self._live_entry(ip) is not None

    def reason_for(self, ip: str) -> str | None:
        entry = self._live_entry(ip)
        return entry.reason if entry else None

    @property
    def size(self) -> int:
        return len(self._entries)

    async def add(
        self,
        ip: str,
        reason: str,
        duration_minutes: int | None = None,
        source: BlacklistSource = BlacklistSource.MANUAL,
        details: dict[str, Any] | None = None,
    ) -> bool:
        """
        Blacklist an IP. ``duration_minutes=None`` means permanent.

        Returns False (map untouched) if the store write failed.
        """
        ip = normalize_ip(ip)
        if duration_minutes is not None and duration_minutes <= 0:
            raise ValidationError("duration_minutes must be positive or omitted")

        now = self._clock()
        expires_at = now + timedelta(minutes=duration_minutes) if duration_minutes else None
        record = BlacklistRecord(
            ip_address=ip,
            reason=reason,
            source=BlacklistSource(source),
            expires_at=expires_at,
            details=details,
            created_at=now,
        )
        try:
            stored = await self.store.upsert(record)
        except PersistenceError as e:
            logger.error(f"Failed to blacklist {ip}: {e}")
            return False

        with self._lock:
            self._entries[ip] = stored
        security_log.ip_blacklisted(ip, reason, record.source.value, duration_minutes)
        logger.info(
            f"IP {ip} blacklisted ({record.source.value}) until "
            f"{expires_at.isoformat() if expires_at else 'permanent'}: {reason}"
        )
        return True

    async def remove(self, ip: str) -> bool:
        """Returns False (map untouched) if the store delete failed."""
        ip = normalize_ip(ip)
        try:
            existed = await self.store.delete(ip)
        except PersistenceError as e:
            logger.error(f"Failed to remove {ip} from blacklist: {e}")
            return False

        with self._lock:
            self._entries.pop(ip, None)
        security_log.ip_unblacklisted(ip)
        logger.info(f"IP {ip} removed from blacklist (existed={existed}).")
        return True

    async def handle_suspicious_activity(
        self,
        ip: str,
        activity: str,
        count: int,
        threshold: int,
        details: dict[str, Any] | None = None,
    ) -> bool:
        """
        Escalate to an automatic blacklist entry once ``count`` reaches ``threshold``.

        The block duration is looked up per activity in the risk policy.
        """
        if count < threshold:
            return False

        ip = normalize_ip(ip)
        activity = str(activity).upper()
        duration = self.policy.duration_for(activity)
        event_details = {
            "activity": activity,
            "count": count,
            "threshold": threshold,
            "duration_minutes": duration,
            **(details or {}),
        }

        # An existing block that outlasts the escalation stays as it is
        existing = self._live_entry(ip)
        if existing is not None and (
            existing.expires_at is None
            or existing.expires_at >= self._clock() + timedelta(minutes=duration)
        ):
            logger.info(
                f"Escalation of {ip} for {activity} kept the existing "
                f"{existing.source.value} entry."
            )
            blacklisted = True
            event_details["existing_entry_kept"] = True
        else:
            blacklisted = await self.add(
                ip,
                reason=f"Automatic: {activity} threshold exceeded ({count}/{threshold})",
                duration_minutes=duration,
                source=BlacklistSource.AUTOMATIC,
                details=event_details,
            )

        security_log.escalation(ip, activity, count, threshold)
        if self.audit is not None:
            self.audit.log_security_event(
                action=SUSPICIOUS_ACTIVITY,
                severity=Severity.HIGH,
                details={**event_details, "blacklisted": blacklisted},
                ip_address=ip,
            )
        return blacklisted

    async def cleanup_expired(self) -> int:
        """Purge expired entries from the store and the map."""
        now = self._clock()
        with self._lock:
            expired = [ip for ip, entry in self._entries.items() if entry.is_expired(now)]
            for ip in expired:
                del self._entries[ip]

        try:
            purged = await self.store.delete_expired(now)
        except PersistenceError as e:
            logger.error(f"Blacklist expiry sweep could not reach the store: {e}")
            return len(expired)

        if purged or expired:
            logger.info(f"Blacklist sweep purged {purged} stored and {len(expired)} cached entries.")
        return purged

    async def stats(self) -> dict[str, int]:
        counts = await self.store.counts(self._clock())
        return {**counts, "cache_size": self.size}

    async def list_entries(self, limit: int = 50, offset: int = 0) -> tuple[list[BlacklistRecord], int]:
        return await self.store.list_entries(max(1, min(limit, 100)), max(0, offset))


class BlacklistSweeper:
    """Background loop that periodically purges expired blacklist entries."""

    def __init__(
        self,
        cache: IPBlacklistCache,
        interval_seconds: float = 3600,
        tracker: "ActivityTracker | None" = None,
    ):
        self.cache = cache
        self.interval_seconds = interval_seconds
        self.tracker = tracker
        self._task: asyncio.Task | None = None

    async def run_once(self) -> int:
        if not self.cache.initialized:
            await self.cache.initialize()
        if self.tracker is not None:
            self.tracker.prune()
        return await self.cache.cleanup_expired()

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.run_once()
            except PersistenceError as e:
                logger.error(f"Blacklist sweep failed: {e}")

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name="blacklist-sweeper")
            logger.info(f"Blacklist sweeper started (interval {self.interval_seconds}s).")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None


class ActivityTracker:
    """
    Sliding-window counters of suspicious activity per IP.

    When an activity's count within the window reaches its threshold, the IP
    is escalated through IPBlacklistCache.handle_suspicious_activity and the
    counter restarts.
    """

    def __init__(
        self,
        cache: IPBlacklistCache,
        policy: RiskPolicy | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.cache = cache
        self.policy = policy or cache.policy
        self._clock = clock
        self._events: dict[tuple[str, str], deque[datetime]] = {}
        self._lock = threading.Lock()

    def count(self, ip: str, activity: str, window: timedelta | None = None) -> int:
        try:
            ip = normalize_ip(ip)
        except ValidationError:
            return 0
        key = (ip, str(activity).upper())
        cutoff = self._clock() - (window or self.policy.activity_window)
        with self._lock:
            events = self._events.get(key)
            if not events:
                return 0
            return sum(1 for ts in events if ts > cutoff)

    async def record(
        self,
        ip: str,
        activity: str,
        threshold: int | None = None,
        window: timedelta | None = None,
        details: dict[str, Any] | None = None,
    ) -> bool:
        """Count one occurrence; returns True if it escalated the IP."""
        try:
            ip = normalize_ip(ip)
        except ValidationError:
            logger.warning(f"Not tracking {activity} for non-IP client key {ip!r}")
            return False
        activity = str(activity).upper()
        threshold = threshold if threshold is not None else self.policy.threshold_for(activity)
        window = window or self.policy.activity_window
        now = self._clock()
        key = (ip, activity)

        with self._lock:
            events = self._events.setdefault(key, deque())
            while events and events[0] <= now - window:
                events.popleft()
            events.append(now)
            count = len(events)
            if threshold is None or count < threshold:
                return False
            del self._events[key]

        return await self.cache.handle_suspicious_activity(ip, activity, count, threshold, details)

    def prune(self) -> None:
        """Drop counters whose events have all aged out of the window."""
        cutoff = self._clock() - self.policy.activity_window
        with self._lock:
            for key in [k for k, events in self._events.items() if not events or events[-1] <= cutoff]:
                del self._events[key]
