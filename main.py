"""API Antrikuy - punto de entrada (eventos de servicio y colas)"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
import asyncio
import logging
from contextlib import asynccontextmanager

from app.core.config import settings
from shared.database.connection import init_db, close_db, get_session_maker
from shared.cache.redis_client import init_redis, close_redis, get_redis
from shared.exception_handlers import register_exception_handlers
from shared.utils.rate_limiter import limiter, rate_limit_exceeded_handler

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def start_scheduler():
    """Barrido en el mismo proceso; con SCHEDULER_MODE=celery lo hace beat"""
    if settings.SCHEDULER_MODE != "inprocess":
        logger.info(f"Scheduler en proceso deshabilitado (SCHEDULER_MODE={settings.SCHEDULER_MODE})")
        return None

    from services.notifications.services.push_service import get_notifier
    from services.queue.services.scheduler_service import scheduler_loop
    return asyncio.create_task(scheduler_loop(get_session_maker(), get_notifier()))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Iniciando Antrikuy API (env={settings.APP_ENV})")
    await init_db()
    await init_redis()
    scheduler_task = start_scheduler()

    yield

    if scheduler_task is not None:
        scheduler_task.cancel()
        try:
            await scheduler_task
        except asyncio.CancelledError:
            logger.info("Scheduler detenido")
    await close_db()
    await close_redis()
    logger.info("Antrikuy API detenida")


app = FastAPI(
    title="Antrikuy API",
    description="Backend de antrean layanan sekolah (tiket, pemanggilan, dan penjadwal otomatis)",
    version="1.0.0",
    lifespan=lifespan
)

# CORS antes que el rate limiting
if settings.APP_ENV == "development":
    # "*" no admite credenciales
    cors_kwargs = {"allow_origins": ["*"], "allow_credentials": False}
else:
    origins = [origin.strip() for origin in settings.CORS_ORIGINS.split(",") if origin.strip()]
    cors_kwargs = {"allow_origins": origins, "allow_credentials": True}
    logger.info(f"CORS origins: {origins}")

app.add_middleware(
    CORSMiddleware,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    max_age=3600,
    **cors_kwargs,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

# Errores de dominio -> status + {"message"}; cualquier otro -> 500 opaco
register_exception_handlers(app)

from services.event_management.routes.events import router as events_router
from services.queue.routes.queue import router as queue_router

app.include_router(events_router, prefix="/api/v1/events", tags=["events"])
app.include_router(queue_router, prefix="/api/v1/queue", tags=["queue"])


@app.get("/health")
async def health():
    return {"status": "ok", "service": "antrikuy-api"}


@app.get("/ready")
async def ready():
    """Verifica base de datos y Redis"""
    from sqlalchemy import text
    try:
        async with get_session_maker()() as session:
            await session.execute(text("SELECT 1"))
        await (await get_redis()).ping()
    except Exception as e:
        logger.error(f"Ready check falló: {e}")
        return JSONResponse(status_code=503, content={"status": "not ready", "error": str(e)})
    return {"status": "ready", "database": "connected", "redis": "connected"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=settings.APP_DEBUG)
