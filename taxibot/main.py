"""
Mi Chame Taxi Bot - FastAPI application
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from taxibot.api.routes import router as api_router
from taxibot.core.config import settings
from taxibot.core.logging import get_logger, setup_logging
from taxibot.core.middleware import setup_exception_handlers, setup_middleware
from taxibot.core.redis_client import close_redis
from taxibot.db.database import Base, engine
from taxibot.domain.services.health_service import check_readiness

setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME,
)

logger = get_logger(__name__)

DEV_ORIGINS = ["http://localhost", "http://localhost:3000", "http://127.0.0.1:3000"]

OPENAPI_TAGS = [
    {"name": "Webhooks", "description": "WhatsApp Cloud API e callbacks da Machine Global."},
    {"name": "Rides", "description": "Corridas: consulta, trilha de eventos, atualização e cancelamento pela central."},
    {"name": "Conversations", "description": "Conversas de reserva e histórico de mensagens."},
    {"name": "Health", "description": "Liveness e readiness."},
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")

    yield

    logger.info("Shutting down application")
    await close_redis()
    await engine.dispose()


def allowed_origins() -> list[str]:
    origins = [origin.strip() for origin in settings.ALLOWED_ORIGINS.split(",") if origin.strip()]
    if not origins and settings.DEBUG:
        return DEV_ORIGINS
    return origins


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="Bot de reserva de corridas Mi Chame via WhatsApp.",
    openapi_tags=OPENAPI_TAGS,
    lifespan=lifespan,
)

setup_middleware(app)
setup_exception_handlers(app)

if origins := allowed_origins():
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Admin-API-Key", "X-Correlation-ID"],
    )

app.include_router(api_router, prefix="/api")


@app.get("/health", summary="Liveness probe", tags=["Health"])
async def health_check() -> dict[str, str]:
    """Processo vivo; não olha dependências para não provocar restart à toa."""
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="Readiness probe",
    responses={200: {"description": "Todas as dependências ok"}, 503: {"description": "Alguma dependência indisponível"}},
    tags=["Health"],
)
async def readiness_check() -> JSONResponse:
    result = await check_readiness()
    return JSONResponse(content=result, status_code=200 if result["status"] == "healthy" else 503)
