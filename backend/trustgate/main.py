# backend/trustgate/main.py
import logging
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text

from trustgate.api.middleware import IPBlacklistMiddleware
from trustgate.api.routers.admin_security import router as admin_security_router
from trustgate.api.routers.security import router as security_router
from trustgate.core.config import settings
from trustgate.core.rate_limit import get_real_client_ip, limiter
from trustgate.core.risk_policy import ActivityType
from trustgate.core.security_logger import security_log

# Import all models to ensure they are registered in the metadata
from trustgate.db import base  # noqa: F401
from trustgate.db import session as db_session_module
from trustgate.db.session import get_session_factory, lifespan_db_manager
from trustgate.exceptions import BlacklistedError, RateExceededError, TrustGateError
from trustgate.services.registry import build_sqlalchemy_services

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


# --- Lifespan Management ---
@asynccontextmanager
async def lifespan(_app_instance: FastAPI):
    logger.info(f"Starting up {settings.APP_NAME} v{settings.APP_VERSION}...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")

    try:
        await lifespan_db_manager(_app_instance, "startup")
        logger.info("LIFESPAN_HOOK: Database resources initialized via lifespan_db_manager.")
    except Exception as e:
        logger.critical(
            f"LIFESPAN_HOOK: CRITICAL - Failed to initialize database resources: {e}", exc_info=True
        )
        raise

    services = build_sqlalchemy_services(settings, get_session_factory())
    await services.start()
    _app_instance.state.services = services
    logger.info(
        f"LIFESPAN_HOOK: Security services started "
        f"({services.blacklist.size} blacklisted IPs loaded)."
    )

    yield

    logger.info(f"Shutting down {settings.APP_NAME}...")
    _app_instance.state.services = None
    try:
        await services.stop()
    except Exception as e:
        logger.error(f"LIFESPAN_HOOK: Error while stopping security services: {e}", exc_info=True)
    try:
        await lifespan_db_manager(_app_instance, "shutdown")
        logger.info("LIFESPAN_HOOK: Database resources disposed via lifespan_db_manager.")
    except Exception as e:
        logger.error(f"LIFESPAN_HOOK: Error during database resource disposal: {e}", exc_info=True)


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=settings.APP_DESCRIPTION,
    lifespan=lifespan,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    docs_url=f"{settings.API_V1_STR}/docs",
    redoc_url=f"{settings.API_V1_STR}/redoc",
)


# --- Rate Limiting Setup ---
app.state.limiter = limiter


@app.exception_handler(RateLimitExceeded)
async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    ip = get_real_client_ip(request)
    services = getattr(request.app.state, "services", None)
    if ip:
        security_log.rate_limited(ip, request.url.path)
        if services is not None:
            await services.tracker.record(
                ip,
                ActivityType.RATE_LIMIT_EXCEEDED.value,
                details={"path": request.url.path, "limit": str(exc.detail)},
            )

    response = await trustgate_exception_handler(
        request, RateExceededError(f"Rate limit exceeded: {exc.detail}")
    )
    # Retry-After and X-RateLimit-* headers
    return request.app.state.limiter._inject_headers(response, request.state.view_rate_limit)


# --- Middleware ---
# Added last so it runs first: blacklisted clients never reach CORS or routing
if settings.BACKEND_CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.BACKEND_CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    logger.info(f"CORS enabled for origins: {settings.BACKEND_CORS_ORIGINS}")
else:
    logger.info("CORS disabled (BACKEND_CORS_ORIGINS not configured).")

app.add_middleware(IPBlacklistMiddleware)


# --- Exception Handlers ---
@app.exception_handler(TrustGateError)
async def trustgate_exception_handler(request: Request, exc: TrustGateError):
    log_message = (
        f"{type(exc).__name__}: Status={exc.status_code}, Detail='{exc.message}' "
        f"for {request.method} {request.url.path}"
    )
    if exc.status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.error(log_message)
    else:
        logger.warning(log_message)

    content = {"detail": exc.message}
    if isinstance(exc, BlacklistedError) and exc.reason:
        content["reason"] = exc.reason
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    error_details = exc.errors()
    logger.warning(
        f"Request validation error: {request.method} {request.url.path} - Errors: {error_details}"
    )
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": jsonable_encoder(error_details)},
    )


@app.exception_handler(HTTPException)
async def http_exception_handler_custom(request: Request, exc: HTTPException):
    log_message = (
        f"HTTPException: Status={exc.status_code}, Detail='{exc.detail}' "
        f"for {request.method} {request.url.path}"
    )
    if exc.status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.error(log_message, exc_info=True)
    else:
        logger.warning(log_message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
        headers=getattr(exc, "headers", None),
    )


# --- API Routers ---
api_v1_router = APIRouter()
api_v1_router.include_router(security_router)
api_v1_router.include_router(admin_security_router)


@api_v1_router.get("/healthz", tags=["System Health"], summary="Dependency health check")
async def health_check_dependencies():
    dependencies_status = {"database": "unknown", "blacklist_cache": "unknown"}
    overall_status = "healthy"

    session_factory = db_session_module.FastAPISessionLocal
    if session_factory is None:
        dependencies_status["database"] = "unavailable"
        overall_status = "unhealthy"
    else:
        try:
            async with session_factory() as session:
                await session.execute(text("SELECT 1"))
            dependencies_status["database"] = "healthy"
        except Exception as e:
            logger.error(f"Health check: database unreachable: {e}")
            dependencies_status["database"] = "unhealthy"
            overall_status = "unhealthy"

    services = getattr(app.state, "services", None)
    if services is not None and services.blacklist.initialized:
        dependencies_status["blacklist_cache"] = "loaded"
    else:
        dependencies_status["blacklist_cache"] = "not_loaded"
        overall_status = "unhealthy"

    if overall_status == "healthy":
        return {"status": overall_status, "dependencies": dependencies_status}
    raise HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"status": overall_status, "dependencies": dependencies_status},
    )


app.include_router(api_v1_router, prefix=settings.API_V1_STR)


# --- Health Check Endpoint (at app root) ---
@app.get(
    "/health",
    tags=["System Health"],
    summary="Basic System Liveness Check",
    status_code=status.HTTP_200_OK,
    include_in_schema=False,
)
async def health_check_basic_system():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn

    logger.info(f"Starting Uvicorn server directly for {settings.APP_NAME} (local debugging)...")
    uvicorn.run(
        "trustgate.main:app",
        host=settings.SERVER_HOST,
        port=settings.SERVER_PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
