"""
Curator Bot - Main FastAPI Application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.webhooks import telegram, whatsapp
from app.core.config import settings
from app.core.logging import get_logger, setup_logging
from app.core.middleware import setup_exception_handlers, setup_middleware
from app.db.database import engine, init_db

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


def _parse_allowed_origins(raw: str) -> list[str]:
    """Parse comma-separated CORS origins string into a clean list."""
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


_OPENAPI_TAGS = [
    {"name": "Webhooks", "description": "Inbound messages from Telegram and WhatsApp."},
    {"name": "Health", "description": "Liveness and readiness probes."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description=(
        "Conversational content organiser for Telegram and WhatsApp. "
        "Each user has one open conversation that closes itself after a quiet period."
    ),
    openapi_tags=_OPENAPI_TAGS,
)

setup_middleware(app)
setup_exception_handlers(app)

allowed_origins = _parse_allowed_origins(settings.ALLOWED_ORIGINS)
if allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Correlation-ID"],
    )

app.include_router(telegram.router, prefix="/webhook")
app.include_router(whatsapp.router, prefix="/webhook")


@app.on_event("startup")
async def startup() -> None:
    """Initialize database tables on startup"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    await init_db()
    logger.info("Database tables initialized")


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    from app.core.redis_client import close_redis
    await close_redis()
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="Liveness probe",
    description="The process is up. No dependency checks, so a DB outage does not trigger restarts.",
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="Readiness probe",
    description=(
        "Checks DB, Redis and the Celery broker. Returns 503 with status=degraded "
        "when DB or broker is down. Also reports the closure backlog and circuit breakers."
    ),
    responses={
        200: {"description": "Required dependencies reachable"},
        503: {"description": "At least one required dependency unavailable"},
    },
    tags=["Health"],
)
async def readiness_check() -> JSONResponse:
    from app.domain.services.health_service import check_readiness

    result = await check_readiness()
    status_code = 200 if result["status"] == "healthy" else 503
    return JSONResponse(content=result, status_code=status_code)
