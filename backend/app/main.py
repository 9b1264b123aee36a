"""
Merchant subscription backend.

Routers: public storefront, merchant dashboard (subscription, payment
requests, balance, notifications, orders), super-admin and the cron
endpoints called by the external scheduler. Nothing runs in-process on a
timer.
"""
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.api import admin, cron, merchant, public, subscriptions
from backend.app.api.admin import require_admin_token
from backend.app.api.deps import get_session
from backend.app.core.exceptions import ErrorCategory, ServiceError
from backend.app.core.limiter import limiter
from backend.app.core.logging import setup_logging, get_logger
from backend.app.core.metrics import PrometheusMiddleware, get_metrics_response
from backend.app.core.settings import get_settings
from backend.app.services.cache import CacheService

VERSION = "1.0.0"

try:
    settings = get_settings()
except ValueError as e:
    print(f"Configuration error: {e}", file=sys.stderr)
    sys.exit(1)

setup_logging(log_level=settings.LOG_LEVEL, json_format=settings.is_production)
logger = get_logger(__name__)
logger.info(
    "Application configuration loaded",
    environment=settings.ENVIRONMENT,
    db_host=settings.DB_HOST,
    redis_host=settings.REDIS_HOST,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up", version=VERSION)
    yield
    logger.info("Application shutting down")
    await CacheService.close()


app = FastAPI(title="Merchant Subscriptions Backend", version=VERSION, lifespan=lifespan)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.error("Service error", path=request.url.path, code=exc.code, message=exc.message)
    else:
        logger.info("Request rejected", path=request.url.path, code=exc.code, status=exc.status_code)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Body/query validation failures share the VALIDATION_ERROR envelope."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{field}: {first.get('msg')}" if field else str(first.get("msg", "Invalid request"))
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": ErrorCategory.VALIDATION_ERROR,
            "code": ErrorCategory.VALIDATION_ERROR,
            "message": message,
        },
    )


allowed_origins = settings.allowed_origins_list
if not allowed_origins:
    # Production refuses to start without ALLOWED_ORIGINS
    allowed_origins = ["*"]
    logger.warning("CORS: allowing all origins (development mode)")

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "OPTIONS"],
    allow_headers=["*"],
)
app.add_middleware(PrometheusMiddleware)

app.include_router(public.router, prefix="/public", tags=["public"])
app.include_router(subscriptions.router, prefix="/subscription", tags=["subscription"])
app.include_router(merchant.router, prefix="/merchant", tags=["merchant"])
app.include_router(cron.router, prefix="/cron", tags=["cron"])
app.include_router(
    admin.router,
    prefix="/admin",
    tags=["admin"],
    dependencies=[Depends(require_admin_token)],
)


@app.get("/")
async def root():
    return {"status": "ok"}


@app.get("/health")
async def health_check(session: AsyncSession = Depends(get_session)):
    """Database and Redis reachability for the orchestrator."""
    checks = {"database": "ok", "redis": "ok"}

    try:
        await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("Database health check failed", error=str(e))
        checks["database"] = f"error: {e}"

    try:
        redis = await CacheService.get_redis()
        await redis.ping()
    except Exception as e:
        logger.error("Redis health check failed", error=str(e))
        checks["redis"] = f"error: {e}"

    healthy = all(v == "ok" for v in checks.values())
    return {"status": "healthy" if healthy else "unhealthy", "version": VERSION, "checks": checks}


@app.get("/metrics")
async def metrics_endpoint(openmetrics: bool = False):
    return get_metrics_response(openmetrics=openmetrics)
