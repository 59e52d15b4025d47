"""Estado derivado de una sesión de servicio"""
from datetime import datetime, timedelta
from typing import Optional

from app.core.config import settings
from shared.database.models import DynamicStatus, Event, EventStage, utcnow


def derive_status(event: Event, now: Optional[datetime] = None) -> DynamicStatus:
    """
    Calcular el estado dinámico de un evento en `now`

    El orden de evaluación es FINISHED > CLOSING > PRE_ORDER > FULL > OPEN y
    no debe cambiarse: una sesión cerrada sigue cerrada aunque todavía tenga cupo.
    """
    now = now or utcnow()

    if event.stage == EventStage.finished.value or (event.end_at and now > event.end_at):
        return DynamicStatus.finished

    pre_close = event.end_at - timedelta(minutes=settings.CLOSING_WINDOW_MINUTES) if event.end_at else None
    if event.stage == EventStage.closing.value or (pre_close and now > pre_close):
        return DynamicStatus.closing

    if event.start_at and now < event.start_at:
        return DynamicStatus.pre_order

    if event.capacity and (event.slots_taken or 0) >= event.capacity:
        return DynamicStatus.full

    return DynamicStatus.open


def is_over_capacity(event: Event) -> bool:
    """True si el último incremento dejó más tickets que cupos"""
    return bool(event.capacity) and (event.slots_taken or 0) > event.capacity


def validate_schedule(start_at: Optional[datetime], end_at: Optional[datetime]) -> Optional[str]:
    """Mensaje de error si el horario no cumple la duración mínima, None si es válido"""
    if start_at and end_at:
        duration_minutes = (end_at - start_at).total_seconds() / 60
        if duration_minutes < settings.MIN_SESSION_MINUTES:
            return f"Jadwal pelayanan minimal harus {settings.MIN_SESSION_MINUTES} menit."
    return None


# Etiquetas que ve el usuario final
STATUS_LABELS = {
    DynamicStatus.pre_order: "PRE-ORDER",
    DynamicStatus.open: "TERBUKA",
    DynamicStatus.full: "PENUH",
    DynamicStatus.closing: "DITUTUP",
    DynamicStatus.finished: "SELESAI",
}
