"""Servicio de push notifications (FCM) y dispatcher fire-and-forget"""
import logging
from typing import Dict, Optional

import httpx

from app.core.config import settings

logger = logging.getLogger(__name__)


def _stringify(data: Optional[Dict]) -> Dict[str, str]:
    # FCM solo acepta valores string en el bloque data
    return {str(k): str(v) for k, v in (data or {}).items() if v is not None}


class PushService:
    """Envío HTTP al gateway de push (formato FCM legacy: `to` + notification + data)"""

    def __init__(
        self,
        gateway_url: Optional[str] = None,
        server_key: Optional[str] = None,
        timeout: Optional[float] = None
    ):
        self.gateway_url = gateway_url or settings.PUSH_GATEWAY_URL
        self.server_key = server_key if server_key is not None else settings.PUSH_SERVER_KEY
        self.timeout = timeout or settings.PUSH_TIMEOUT_SECONDS
        self.configured = bool(self.server_key)

        if not self.configured:
            logger.warning("PUSH_SERVER_KEY no configurado. Las notificaciones solo se registrarán en log.")

    async def _post(self, message: Dict) -> bool:
        if not self.configured:
            logger.info(f"[PUSH] (no configurado) {message.get('to')}: {message['notification']['title']}")
            return False

        headers = {
            "Authorization": f"key={self.server_key}",
            "Content-Type": "application/json",
        }
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.gateway_url, json=message, headers=headers)

        if response.status_code >= 400:
            logger.error(f"[PUSH] Gateway respondió {response.status_code}: {response.text[:200]}")
            return False
        return True

    async def send_to_token(self, token: str, title: str, body: str, data: Optional[Dict] = None) -> bool:
        """Enviar a un dispositivo"""
        if not token:
            logger.warning("[PUSH] Token vacío, notificación cancelada")
            return False
        message = {
            "to": token,
            "notification": {"title": title, "body": body},
            "data": _stringify(data),
        }
        return await self._post(message)

    async def send_to_topic(self, topic: str, title: str, body: str, data: Optional[Dict] = None) -> bool:
        """Enviar a un topic (p.ej. school_<id>)"""
        message = {
            "to": f"/topics/{topic}",
            "notification": {"title": title, "body": body},
            "data": _stringify(data),
        }
        return await self._post(message)


class Notifier:
    """
    Contrato de notificación que usa el motor de la cola

    Nunca lanza excepciones: un fallo de notificación se registra y la
    operación que lo originó continúa normalmente.
    """

    def notify_user(self, token: Optional[str], title: str, body: str, data: Optional[Dict] = None) -> None:
        raise NotImplementedError

    def notify_topic(self, topic: str, title: str, body: str, data: Optional[Dict] = None) -> None:
        raise NotImplementedError


class CeleryNotifier(Notifier):
    """Encola el envío en Celery (cola default)"""

    def notify_user(self, token: Optional[str], title: str, body: str, data: Optional[Dict] = None) -> None:
        if not token:
            logger.debug(f"[PUSH] Usuario sin token, se omite: {title}")
            return
        try:
            from services.notifications.tasks.push_tasks import send_push_notification_task
            send_push_notification_task.delay(token=token, title=title, body=body, data=_stringify(data))
        except Exception as e:
            logger.error(f"[PUSH] Error encolando notificación '{title}': {e}")

    def notify_topic(self, topic: str, title: str, body: str, data: Optional[Dict] = None) -> None:
        try:
            from services.notifications.tasks.push_tasks import send_topic_notification_task
            send_topic_notification_task.delay(topic=topic, title=title, body=body, data=_stringify(data))
        except Exception as e:
            logger.error(f"[PUSH] Error encolando notificación a topic {topic}: {e}")


_default_notifier: Optional[Notifier] = None


def get_notifier() -> Notifier:
    """Dependency / accesor del notifier por defecto"""
    global _default_notifier
    if _default_notifier is None:
        _default_notifier = CeleryNotifier()
    return _default_notifier
