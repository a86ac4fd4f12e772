# backend/trustgate/tasks/maintenance.py
"""
Periodic retention tasks.

The API process sweeps its in-memory blacklist cache on its own; these
tasks keep the database tables bounded even when no API process runs.
"""

import asyncio
import logging
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trustgate.core.config import settings
from trustgate.db.session import get_worker_session_factory, initialize_worker_db_resources
from trustgate.db.stores import SQLAlchemyAuditStore, SQLAlchemyBlacklistStore
from trustgate.services.audit_service import AuditService
from trustgate.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


async def cleanup_audit_logs(
    session_factory: async_sessionmaker[AsyncSession], retention_days: int
) -> dict[str, int]:
    store = SQLAlchemyAuditStore(session_factory, settings.STORE_TIMEOUT_SECONDS)
    result = await AuditService(store).cleanup(retention_days=retention_days)
    return {
        "audit_logs_deleted": result.audit_logs_deleted,
        "security_logs_deleted": result.security_logs_deleted,
    }


async def purge_expired_blacklist(session_factory: async_sessionmaker[AsyncSession]) -> int:
    store = SQLAlchemyBlacklistStore(session_factory, settings.STORE_TIMEOUT_SECONDS)
    removed = await store.delete_expired(datetime.now(UTC))
    logger.info(f"Maintenance: purged {removed} expired blacklist entries.")
    return removed


@celery_app.task(name="trustgate.tasks.maintenance.cleanup_audit_logs")
def cleanup_audit_logs_task(retention_days: int | None = None) -> dict[str, int]:
    days = retention_days or settings.AUDIT_RETENTION_DAYS
    logger.info(f"Maintenance: running audit retention cleanup ({days} days).")
    initialize_worker_db_resources()
    return asyncio.run(cleanup_audit_logs(get_worker_session_factory(), days))


@celery_app.task(name="trustgate.tasks.maintenance.purge_expired_blacklist")
def purge_expired_blacklist_task() -> int:
    initialize_worker_db_resources()
    return asyncio.run(purge_expired_blacklist(get_worker_session_factory()))
