# backend/trustgate/services/registry.py
"""
Wiring of the trust services for one process.

The API lifespan builds a SecurityServices instance and hangs it on
``app.state.services``; tests build their own around in-memory stores.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trustgate.core.config import Settings
from trustgate.core.risk_policy import RiskPolicy
from trustgate.db.stores import (
    AuditStore,
    BlacklistStore,
    CredentialStore,
    SQLAlchemyAuditStore,
    SQLAlchemyBlacklistStore,
    SQLAlchemyCredentialStore,
    SQLAlchemyUserStore,
    UserStore,
)
from trustgate.exceptions import PersistenceError
from trustgate.services.anomaly_detector import AnomalyDetector
from trustgate.services.audit_service import AuditService
from trustgate.services.geolocation import (
    GeoLocationCache,
    GeoLocationProvider,
    GeoLocationResolver,
    IpApiProvider,
)
from trustgate.services.ip_blacklist import ActivityTracker, BlacklistSweeper, IPBlacklistCache
from trustgate.services.totp import TOTPEngine
from trustgate.services.two_factor_service import TwoFactorService

logger = logging.getLogger(__name__)


@dataclass
class SecurityServices:
    policy: RiskPolicy
    audit: AuditService
    blacklist: IPBlacklistCache
    tracker: ActivityTracker
    sweeper: BlacklistSweeper
    geo_cache: GeoLocationCache
    resolver: GeoLocationResolver
    detector: AnomalyDetector
    two_factor: TwoFactorService
    user_store: UserStore

    async def start(self) -> None:
        self.audit.start()
        try:
            await self.blacklist.initialize()
        except PersistenceError as e:
            # The sweeper retries initialization on its next run
            logger.error(f"IP blacklist cache could not be loaded at startup: {e}")
        self.sweeper.start()

    async def stop(self) -> None:
        await self.sweeper.stop()
        await self.audit.stop()


def build_services(
    settings: Settings,
    *,
    blacklist_store: BlacklistStore,
    audit_store: AuditStore,
    credential_store: CredentialStore,
    user_store: UserStore,
    provider: GeoLocationProvider | None = None,
    engine: TOTPEngine | None = None,
) -> SecurityServices:
    policy = RiskPolicy.from_settings(settings)
    audit = AuditService(audit_store, max_queue_size=settings.AUDIT_QUEUE_MAX_SIZE)
    blacklist = IPBlacklistCache(blacklist_store, audit=audit, policy=policy)
    tracker = ActivityTracker(blacklist, policy=policy)
    geo_cache = GeoLocationCache(ttl=timedelta(hours=settings.GEOLOCATION_CACHE_TTL_HOURS))
    resolver = GeoLocationResolver(
        provider
        or IpApiProvider(settings.GEOLOCATION_API_URL, timeout=settings.GEOLOCATION_TIMEOUT_SECONDS),
        geo_cache,
    )
    engine = engine or TOTPEngine(time_step=settings.TOTP_TIME_STEP_SECONDS)
    return SecurityServices(
        policy=policy,
        audit=audit,
        blacklist=blacklist,
        tracker=tracker,
        sweeper=BlacklistSweeper(
            blacklist, interval_seconds=settings.BLACKLIST_SWEEP_INTERVAL_SECONDS, tracker=tracker
        ),
        geo_cache=geo_cache,
        resolver=resolver,
        detector=AnomalyDetector(resolver, audit_store, audit, policy=policy, escalation=tracker),
        two_factor=TwoFactorService(
            credential_store,
            engine,
            audit,
            issuer=settings.TWO_FACTOR_ISSUER,
            window=settings.TOTP_VALID_WINDOW,
            backup_code_count=settings.BACKUP_CODE_COUNT,
        ),
        user_store=user_store,
    )


def build_sqlalchemy_services(
    settings: Settings, session_factory: async_sessionmaker[AsyncSession]
) -> SecurityServices:
    timeout = settings.STORE_TIMEOUT_SECONDS
    return build_services(
        settings,
        blacklist_store=SQLAlchemyBlacklistStore(session_factory, timeout),
        audit_store=SQLAlchemyAuditStore(session_factory, timeout),
        credential_store=SQLAlchemyCredentialStore(session_factory, timeout),
        user_store=SQLAlchemyUserStore(session_factory, timeout),
    )
