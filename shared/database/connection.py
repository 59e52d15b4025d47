"""Conexión a la base de datos (PostgreSQL en producción, SQLite en tests)"""
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool
from sqlalchemy.orm import declarative_base
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional
import logging
import asyncio

from app.core.config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()

engine = None
async_session_maker = None

LOCAL_HOSTS = ("localhost", "127.0.0.1", "db:5432")


def build_async_url(database_url: str) -> str:
    """DATABASE_URL -> URL con driver async (asyncpg / aiosqlite)"""
    if database_url.startswith("postgresql") and "?" in database_url:
        # sslmode y compañía no los entiende asyncpg; SSL va en connect_args
        database_url = database_url.split("?")[0]

    for prefix in ("postgresql://", "postgresql+psycopg://"):
        if database_url.startswith(prefix):
            return database_url.replace(prefix, "postgresql+asyncpg://", 1)
    if database_url.startswith("sqlite://"):
        return database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return database_url


def _postgres_kwargs(database_url: str) -> dict:
    connect_args = {}
    is_local = any(host in database_url for host in LOCAL_HOSTS)
    if settings.DATABASE_SSL and not is_local:
        import ssl
        ssl_context = ssl.create_default_context()
        ssl_context.check_hostname = False
        ssl_context.verify_mode = ssl.CERT_NONE
        connect_args = {"ssl": ssl_context, "command_timeout": 60, "timeout": 60}

    # Los contadores de la cola se tocan con UPDATE atómicos cortos
    return {
        "connect_args": connect_args,
        "pool_pre_ping": True,
        "pool_recycle": 300,
        "pool_timeout": 30,
        "pool_use_lifo": True,
        "pool_size": settings.DATABASE_POOL_SIZE,
        "max_overflow": settings.DATABASE_MAX_OVERFLOW,
    }


async def init_db(database_url: Optional[str] = None, create_all: bool = False):
    """Crear el engine global (idempotente)"""
    global engine, async_session_maker

    if engine is not None:
        logger.warning("Engine ya inicializado, se omite")
        return

    if database_url is None:
        database_url = settings.DATABASE_URL
        create_all = create_all or settings.DB_CREATE_ALL

    database_url = build_async_url(database_url)
    logger.info(f"Conectando a la base de datos: {database_url.split('@')[-1]}")

    engine_kwargs = {"echo": settings.APP_DEBUG}
    if database_url.startswith("postgresql+asyncpg"):
        engine_kwargs.update(_postgres_kwargs(database_url))
        logger.info(f"Pool: size={settings.DATABASE_POOL_SIZE}, overflow={settings.DATABASE_MAX_OVERFLOW}")

    engine = create_async_engine(database_url, **engine_kwargs)
    async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    if create_all:
        await create_tables()


async def create_tables():
    """Crear tablas (desarrollo y tests)"""
    import shared.database.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Tablas creadas/verificadas")


async def _open_session(retries: int = 3, delay: float = 0.5) -> AsyncSession:
    """Abre una sesión con conexión ya establecida; reintenta errores de red/DNS"""
    for attempt in range(retries):
        session = async_session_maker()
        try:
            await session.connection()
            return session
        except OSError as e:
            await session.close()
            if attempt == retries - 1:
                logger.error(f"Base de datos inaccesible tras {retries} intentos: {e}")
                raise
            wait = delay * (2 ** attempt)
            logger.warning(f"Error de conexión ({attempt + 1}/{retries}): {e}. Reintentando en {wait:.1f}s")
            await asyncio.sleep(wait)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency FastAPI: una sesión por request"""
    if async_session_maker is None:
        raise RuntimeError("Database not initialized. Please check application startup.")

    session = await _open_session()
    try:
        yield session
    finally:
        await session.close()


def get_session_maker() -> async_sessionmaker:
    """Session factory para trabajos en segundo plano (scheduler)"""
    if async_session_maker is None:
        raise RuntimeError("Database not initialized. Please check application startup.")
    return async_session_maker


async def close_db():
    global engine, async_session_maker
    if engine is not None:
        await engine.dispose()
        engine = None
        async_session_maker = None
        logger.info("Conexiones a la base de datos cerradas")


@asynccontextmanager
async def isolated_session(database_url: Optional[str] = None) -> AsyncGenerator[AsyncSession, None]:
    """
    Sesión con engine propio y sin pool

    Para tareas Celery: cada tarea corre en un event loop nuevo y las
    conexiones de asyncpg no pueden compartirse entre loops.
    """
    task_engine = create_async_engine(build_async_url(database_url or settings.DATABASE_URL), poolclass=NullPool)
    session_maker = async_sessionmaker(task_engine, class_=AsyncSession, expire_on_commit=False)
    try:
        async with session_maker() as session:
            yield session
    finally:
        await task_engine.dispose()
