"""Redis compartido: pool de conexiones y locks entre workers del scheduler"""
import asyncio
import logging
import uuid
from typing import Optional

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from app.core.config import settings

logger = logging.getLogger(__name__)

_client: Optional[redis.Redis] = None
_pool: Optional[ConnectionPool] = None

# Solo el dueño del token puede borrar la llave
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


async def init_redis():
    """Crear el pool y verificar la conexión (un fallo solo se registra)"""
    global _client, _pool
    if _client is not None:
        return

    _pool = ConnectionPool.from_url(
        settings.REDIS_URL,
        max_connections=settings.REDIS_MAX_CONNECTIONS,
        decode_responses=True,
        socket_connect_timeout=5,
        retry_on_timeout=True,
        health_check_interval=30,
    )
    _client = redis.Redis(connection_pool=_pool)

    try:
        await _client.ping()
        logger.info(f"Redis conectado ({settings.REDIS_URL}, max_connections={settings.REDIS_MAX_CONNECTIONS})")
    except Exception as e:
        logger.error(f"Redis no disponible: {e}")


async def get_redis() -> redis.Redis:
    if _client is None:
        await init_redis()
    return _client


async def close_redis():
    global _client, _pool
    if _client is not None:
        await _client.close()
        _client = None
    if _pool is not None:
        await _pool.disconnect()
        _pool = None
    logger.info("Redis desconectado")


class LockNotAcquired(Exception):
    """Otro worker tiene la llave"""


class DistributedLock:
    """Lock con SET NX + expiración

    wait=0 hace un solo intento: el scheduler usa eso para saltarse el tick
    cuando otro worker ya está barriendo las sesiones.
    """

    PREFIX = "antrikuy:lock:"

    def __init__(self, name: str, wait: float = 10, ttl: int = 30):
        self.key = self.PREFIX + name
        self.wait = wait
        self.ttl = ttl
        self.token: Optional[str] = None

    async def acquire(self) -> bool:
        conn = await get_redis()
        token = uuid.uuid4().hex
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.wait

        while not await conn.set(self.key, token, nx=True, ex=self.ttl):
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(0.1)

        self.token = token
        return True

    async def release(self):
        if self.token is None:
            return
        conn = await get_redis()
        await conn.eval(_RELEASE_SCRIPT, 1, self.key, self.token)
        self.token = None

    async def __aenter__(self):
        if not await self.acquire():
            raise LockNotAcquired(self.key)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.release()
