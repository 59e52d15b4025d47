"""Tareas asíncronas para envío de push notifications"""
from typing import Dict, Optional
import logging
from shared.cache.celery_app import celery_app, run_async

logger = logging.getLogger(__name__)


@celery_app.task(
    name="send_push_notification",
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=60,
    retry_kwargs={"max_retries": 2},
)
def send_push_notification_task(self, token: str, title: str, body: str, data: Optional[Dict] = None):
    """
    Tarea Celery para enviar push a un dispositivo

    Un envío rechazado por el gateway no se reintenta; solo errores de red.
    """
    from services.notifications.services.push_service import PushService

    logger.info(f"[CELERY] Enviando push '{title}'")
    sent = run_async(PushService().send_to_token(token, title, body, data))
    return {"status": "sent" if sent else "skipped", "title": title}


@celery_app.task(
    name="send_topic_notification",
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=60,
    retry_kwargs={"max_retries": 2},
)
def send_topic_notification_task(self, topic: str, title: str, body: str, data: Optional[Dict] = None):
    """Tarea Celery para enviar push a un topic"""
    from services.notifications.services.push_service import PushService

    logger.info(f"[CELERY] Enviando push a topic {topic}: '{title}'")
    sent = run_async(PushService().send_to_topic(topic, title, body, data))
    return {"status": "sent" if sent else "skipped", "topic": topic}
