"""Tareas Celery beat del scheduler de la cola"""
import logging

from shared.cache.celery_app import celery_app, run_async
from shared.cache.redis_client import DistributedLock, LockNotAcquired, init_redis, close_redis
from shared.database.connection import isolated_session

logger = logging.getLogger(__name__)

SWEEP_LOCK_KEY = "queue:scheduler-sweep"
RECONCILE_LOCK_KEY = "queue:reconcile"


async def _sweep():
    from services.notifications.services.push_service import get_notifier
    from services.queue.services.scheduler_service import run_global_scheduler

    await init_redis()
    try:
        # wait=0: si otro worker ya está barriendo, este tick se salta
        async with DistributedLock(SWEEP_LOCK_KEY, wait=0, ttl=60):
            async with isolated_session() as db:
                return await run_global_scheduler(db, get_notifier())
    except LockNotAcquired:
        logger.info("[SCHEDULER] Otro barrido en curso, tick omitido")
        return {"skipped": True}
    finally:
        await close_redis()


async def _reconcile():
    from services.queue.services.scheduler_service import reconcile_all

    await init_redis()
    try:
        async with DistributedLock(RECONCILE_LOCK_KEY, wait=0, ttl=300):
            async with isolated_session() as db:
                return await reconcile_all(db)
    except LockNotAcquired:
        logger.info("[RECONCILE] Otra reconciliación en curso, omitida")
        return {"skipped": True}
    finally:
        await close_redis()


@celery_app.task(name="queue_scheduler_sweep", bind=True, ignore_result=True)
def queue_scheduler_sweep_task(self):
    """
    Barrido periódico (auto-skip y cierre de sesiones)

    Sin reintentos: el siguiente tick de beat hace el mismo trabajo.
    """
    try:
        summary = run_async(_sweep())
        logger.debug(f"[CELERY] Barrido completado: {summary}")
        return summary
    except Exception as e:
        logger.error(f"[CELERY] Error en queue_scheduler_sweep: {e}", exc_info=True)
        raise


@celery_app.task(name="queue_reconcile_counters", bind=True)
def queue_reconcile_counters_task(self):
    """Reconciliar slots_taken / last_number_issued contra los tickets reales"""
    try:
        summary = run_async(_reconcile())
        logger.info(f"[CELERY] Reconciliación completada: {summary}")
        return summary
    except Exception as e:
        logger.error(f"[CELERY] Error en queue_reconcile_counters: {e}", exc_info=True)
        raise
