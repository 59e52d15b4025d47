"""
Celery de Antrikuy: push notifications y barrido periódico de la cola (beat)

Worker:  celery -A shared.cache.celery_app worker -Q high_priority,default,low_priority
Beat:    celery -A shared.cache.celery_app beat   (con SCHEDULER_MODE=celery)
"""
from celery import Celery
from kombu import Queue, Exchange
import asyncio
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)

celery_app = Celery(
    "antrikuy",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=[
        "services.notifications.tasks.push_tasks",
        "services.queue.tasks.scheduler_tasks",
    ]
)

default_exchange = Exchange("default", type="direct")
priority_exchange = Exchange("priority", type="direct")

celery_app.conf.task_queues = (
    # El barrido no debe esperar detrás de las notificaciones
    Queue("high_priority", priority_exchange, routing_key="high"),
    Queue("default", default_exchange, routing_key="default"),
    Queue("low_priority", default_exchange, routing_key="low"),
)

celery_app.conf.task_routes = {
    "queue_scheduler_sweep": {"queue": "high_priority"},
    "send_push_notification": {"queue": "default"},
    "send_topic_notification": {"queue": "default"},
    "queue_reconcile_counters": {"queue": "low_priority"},
}

sweep_every = float(settings.SCHEDULER_INTERVAL_SECONDS)

celery_app.conf.beat_schedule = {
    "queue-scheduler-sweep": {
        "task": "queue_scheduler_sweep",
        "schedule": sweep_every,
        # Un barrido atrasado ya no sirve; el siguiente tick lo reemplaza
        "options": {"expires": sweep_every},
    },
    "queue-reconcile-counters": {
        "task": "queue_reconcile_counters",
        "schedule": float(settings.RECONCILE_INTERVAL_SECONDS),
    },
}

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Un barrido nunca debería pasar del minuto
    task_time_limit=2 * 60,
    task_soft_time_limit=90,

    worker_prefetch_multiplier=1,
    broker_connection_retry_on_startup=True,
    redis_max_connections=settings.REDIS_MAX_CONNECTIONS,
    result_expires=3600,

    task_default_queue="default",
    task_default_exchange="default",
    task_default_routing_key="default",

    task_annotations={
        "send_push_notification": {"rate_limit": "600/m"},
        "send_topic_notification": {"rate_limit": "60/m"},
    },
)

logger.info(
    "Celery configurado - broker: %s, barrido cada %ss",
    settings.REDIS_URL.split("@")[-1],
    settings.SCHEDULER_INTERVAL_SECONDS,
)


def run_async(coro):
    """Ejecuta una coroutine desde una tarea Celery (síncrona)"""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()
