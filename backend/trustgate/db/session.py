# backend/trustgate/db/session.py
import asyncio
import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from trustgate.core.config import settings
from trustgate.db.base import Base

logger = logging.getLogger(__name__)

# --- Asynchronous Engine and Session Setup (for FastAPI) ---
fastapi_async_engine: AsyncEngine | None = None
FastAPISessionLocal: async_sessionmaker[AsyncSession] | None = None


def build_session_factory(
    database_url: str, echo: bool = False
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Create an async engine and a matching session factory."""
    engine_kwargs: dict = {"echo": echo}
    if not database_url.startswith("sqlite"):
        engine_kwargs["pool_pre_ping"] = True
    engine = create_async_engine(database_url, **engine_kwargs)
    session_factory = async_sessionmaker(
        bind=engine,
        autoflush=False,
        expire_on_commit=False,
        class_=AsyncSession,
    )
    return engine, session_factory


def _initialize_fastapi_db_resources_sync() -> None:
    """
    Initialize the API's async database engine and session maker.
    Called by the lifespan manager.
    """
    global fastapi_async_engine, FastAPISessionLocal

    if fastapi_async_engine is not None:
        logger.info("FastAPI: Asynchronous database resources already initialized.")
        return

    logger.info("FastAPI: Initializing asynchronous database engine and session maker.")
    try:
        db_url = str(settings.ASYNC_SQLALCHEMY_DATABASE_URL)
        if not db_url:
            raise ValueError("ASYNC_SQLALCHEMY_DATABASE_URL is empty.")
        fastapi_async_engine, FastAPISessionLocal = build_session_factory(
            db_url, echo=settings.DB_ECHO
        )
        logger.info(
            f"FastAPI: Asynchronous database engine ({db_url.split('@')[0]}@...) configured."
        )
    except Exception as e:
        logger.critical(
            f"CRITICAL: FastAPI: Failed to initialize asynchronous database engine: {e}",
            exc_info=True,
        )
        fastapi_async_engine = None
        FastAPISessionLocal = None
        raise RuntimeError(
            f"FastAPI: Failed to initialize asynchronous database engine during startup: {e}"
        ) from e


async def _dispose_fastapi_db_resources_async() -> None:
    global fastapi_async_engine, FastAPISessionLocal
    if fastapi_async_engine:
        logger.info("FastAPI: Disposing asynchronous database engine.")
        await fastapi_async_engine.dispose()
        fastapi_async_engine = None
        FastAPISessionLocal = None
    else:
        logger.info("FastAPI: No asynchronous database engine to dispose.")


async def create_tables(engine: AsyncEngine) -> None:
    """Create any missing tables. Existing tables are left untouched."""
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if FastAPISessionLocal is None:
        logger.critical("FastAPI: FastAPISessionLocal is not initialized.")
        raise RuntimeError(
            "FastAPI: FastAPISessionLocal is not initialized. "
            "Ensure DB resources are initialized via lifespan."
        )
    return FastAPISessionLocal


# --- Resources for Celery Worker ---
worker_async_engine: AsyncEngine | None = None
WorkerSessionLocal: async_sessionmaker[AsyncSession] | None = None


def initialize_worker_db_resources() -> None:
    global worker_async_engine, WorkerSessionLocal
    if worker_async_engine is not None:
        logger.info("CELERY_WORKER: Database engine already initialized for this process.")
        return

    logger.info("CELERY_WORKER: Initializing database engine and session factory.")
    try:
        worker_async_engine, WorkerSessionLocal = build_session_factory(
            str(settings.ASYNC_SQLALCHEMY_DATABASE_URL), echo=settings.DB_ECHO
        )
    except Exception as e:
        logger.critical(
            f"CRITICAL: CELERY_WORKER: Failed to initialize database engine: {e}", exc_info=True
        )
        worker_async_engine = None
        WorkerSessionLocal = None
        raise RuntimeError(f"CELERY_WORKER: Failed to initialize database engine: {e}") from e


def dispose_worker_db_resources_sync() -> None:
    global worker_async_engine, WorkerSessionLocal
    if not worker_async_engine:
        logger.info("CELERY_WORKER: No database engine to dispose for this worker process.")
        return

    logger.info("CELERY_WORKER: Disposing database engine (sync call).")
    try:
        asyncio.run(worker_async_engine.dispose())
    except RuntimeError as e:
        logger.warning(
            f"CELERY_WORKER: asyncio.run() failed during dispose: {e}. Common during shutdown."
        )
    finally:
        worker_async_engine = None
        WorkerSessionLocal = None


def get_worker_session_factory() -> async_sessionmaker[AsyncSession]:
    if WorkerSessionLocal is None:
        logger.critical(
            "CELERY_WORKER: WorkerSessionLocal not initialized! DB init failed or signal not handled."
        )
        raise RuntimeError(
            "Database session factory (WorkerSessionLocal) not initialized for Celery worker."
        )
    return WorkerSessionLocal


# --- FastAPI Lifespan Event Handler Integration ---
async def lifespan_db_manager(_app_instance, event_type: str) -> None:
    lifespan_logger = logging.getLogger("trustgate.db.lifespan")

    if event_type == "startup":
        lifespan_logger.info("FastAPI Lifespan: Startup event - Initializing DB resources.")
        _initialize_fastapi_db_resources_sync()
        if fastapi_async_engine is None:
            raise RuntimeError("FastAPI engine failed to initialize during startup.")

        try:
            async with fastapi_async_engine.connect() as connection:
                await connection.execute(text("SELECT 1"))
            await create_tables(fastapi_async_engine)
            lifespan_logger.info("FastAPI Lifespan: Database connection successful on startup.")
        except Exception as e:
            lifespan_logger.error(
                f"FastAPI Lifespan: Database connection test failed: {e}", exc_info=True
            )
            await _dispose_fastapi_db_resources_async()
            raise RuntimeError(f"FastAPI: Database connection test failed on startup: {e}") from e

    elif event_type == "shutdown":
        lifespan_logger.info("FastAPI Lifespan: Shutdown event - Disposing DB resources.")
        await _dispose_fastapi_db_resources_async()
