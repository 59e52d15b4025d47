"""
Operaciones atómicas compartidas por el motor de la cola y el scheduler

Todos los contadores del evento se modifican con UPDATE ... SET col = col + n,
nunca con load -> mutate -> save. Las llamadas a "siguiente" usan un UPDATE
condicionado a status = WAITING para que dos llamadas concurrentes no puedan
llamar al mismo ticket.
"""
import logging
import math
from datetime import datetime, timedelta
from typing import Dict, Iterable, Optional, Tuple
from uuid import UUID

from sqlalchemy import select, update, func, case
from sqlalchemy.ext.asyncio import AsyncSession

from shared.auth.jwt_handler import create_ticket_token
from shared.database.models import (
    Event, QueueEntry, QueueStatus, User, UserRole, ACTIVE_STATUSES, IN_SERVICE_STATUSES, utcnow
)
from shared.exceptions import ForbiddenError, NotFoundError, ValidationError
from services.notifications.services.push_service import Notifier

logger = logging.getLogger(__name__)

# Intentos máximos de find-and-update cuando otro proceso gana la carrera
MAX_CALL_ATTEMPTS = 5


def parse_uuid(value, message: str = "ID tidak valid.") -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (ValueError, TypeError):
        raise ValidationError(message)


def format_wait_time(minutes: float) -> str:
    """Etiqueta corta de espera: 'Segera', '12 m', '1 j 5 m'"""
    if minutes < 1:
        return "Segera"
    minutes = int(round(minutes))
    if minutes < 60:
        return f"{minutes} m"
    hours, rest = divmod(minutes, 60)
    return f"{hours} j {rest} m" if rest else f"{hours} j"


def can_manage_event(current_user: Dict, event: Event) -> bool:
    role = current_user.get("role")
    if role == UserRole.super_admin.value:
        return True
    return role == UserRole.admin.value and str(current_user.get("school_id")) == str(event.school_id)


def ensure_can_manage(current_user: Dict, event: Event) -> None:
    """Admin de la escuela dueña del evento o super admin"""
    if not can_manage_event(current_user, event):
        raise ForbiddenError("Akses ditolak: layanan ini bukan milik sekolah Anda.")


async def get_event_or_404(db: AsyncSession, event_id, refresh: bool = False) -> Event:
    stmt = select(Event).where(Event.id == parse_uuid(event_id, "ID Layanan tidak valid."))
    if refresh:
        stmt = stmt.execution_options(populate_existing=True)
    event = (await db.execute(stmt)).scalar_one_or_none()
    if event is None:
        raise NotFoundError("Layanan tidak ditemukan")
    return event


async def get_entry_or_404(db: AsyncSession, queue_id) -> QueueEntry:
    stmt = (
        select(QueueEntry)
        .where(QueueEntry.id == parse_uuid(queue_id, "ID Antrean tidak valid."))
        .execution_options(populate_existing=True)
    )
    entry = (await db.execute(stmt)).scalar_one_or_none()
    if entry is None:
        raise NotFoundError("Antrean tidak ditemukan")
    return entry


async def increment_counters(db: AsyncSession, event_id: UUID) -> Optional[Event]:
    """+1 a last_number_issued y slots_taken en un solo UPDATE; devuelve el evento ya incrementado"""
    stmt = (
        update(Event)
        .where(Event.id == event_id)
        .values(
            last_number_issued=Event.last_number_issued + 1,
            slots_taken=Event.slots_taken + 1,
        )
        .returning(Event)
        .execution_options(populate_existing=True, synchronize_session=False)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def release_slots(db: AsyncSession, event_id: UUID, count: int = 1) -> None:
    """Liberar `count` cupos sin bajar de cero"""
    if count <= 0:
        return
    await db.execute(
        update(Event)
        .where(Event.id == event_id, Event.slots_taken > 0)
        .values(
            slots_taken=case(
                (Event.slots_taken >= count, Event.slots_taken - count),
                else_=0,
            )
        )
        .execution_options(synchronize_session=False)
    )


async def rollback_last_number(db: AsyncSession, event_id: UUID, ticket_number: int) -> bool:
    """Devolver el número solo si sigue siendo el último emitido"""
    result = await db.execute(
        update(Event)
        .where(Event.id == event_id, Event.last_number_issued == ticket_number)
        .values(last_number_issued=Event.last_number_issued - 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


def issue_access_token(entry: QueueEntry, now: Optional[datetime] = None) -> str:
    """Firmar un token de acceso nuevo para el ticket y guardarlo en la entrada"""
    token, expires_at = create_ticket_token(entry.id, entry.event_id, now=now)
    entry.access_token = token
    entry.access_token_expires_at = expires_at
    return token


async def get_in_service_entry(db: AsyncSession, event: Event) -> Optional[QueueEntry]:
    """Ticket actualmente CALLED o SERVING del batch activo"""
    stmt = (
        select(QueueEntry)
        .where(
            QueueEntry.event_id == event.id,
            QueueEntry.batch == event.current_batch,
            QueueEntry.status.in_(IN_SERVICE_STATUSES),
        )
        .order_by(QueueEntry.ticket_number.asc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def next_waiting_entry(db: AsyncSession, event: Event, after_number: int = 0) -> Optional[QueueEntry]:
    stmt = (
        select(QueueEntry)
        .where(
            QueueEntry.event_id == event.id,
            QueueEntry.batch == event.current_batch,
            QueueEntry.status == QueueStatus.waiting.value,
            QueueEntry.ticket_number > after_number,
        )
        .order_by(QueueEntry.ticket_number.asc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def call_next_waiting(
    db: AsyncSession,
    event: Event,
    window_minutes: int,
    now: Optional[datetime] = None
) -> Optional[QueueEntry]:
    """
    Llamar al WAITING con menor número del batch actual

    Find-and-update condicionado: si otro proceso llamó al candidato primero,
    el UPDATE no afecta filas y se prueba con el siguiente.
    """
    now = now or utcnow()
    after_number = 0

    for _ in range(MAX_CALL_ATTEMPTS):
        candidate_stmt = (
            select(QueueEntry.id, QueueEntry.ticket_number)
            .where(
                QueueEntry.event_id == event.id,
                QueueEntry.batch == event.current_batch,
                QueueEntry.status == QueueStatus.waiting.value,
                QueueEntry.ticket_number > after_number,
            )
            .order_by(QueueEntry.ticket_number.asc())
            .limit(1)
        )
        candidate = (await db.execute(candidate_stmt)).first()
        if candidate is None:
            return None

        stmt = (
            update(QueueEntry)
            .where(
                QueueEntry.id == candidate.id,
                QueueEntry.status == QueueStatus.waiting.value,
            )
            .values(
                status=QueueStatus.called.value,
                called_at=now,
                call_expires_at=now + timedelta(minutes=window_minutes),
            )
            .returning(QueueEntry)
            .execution_options(populate_existing=True, synchronize_session=False)
        )
        called = (await db.execute(stmt)).scalar_one_or_none()
        if called is not None:
            logger.info(f"[QUEUE] Evento {event.code}: llamado #{called.ticket_number} (batch {called.batch})")
            return called

        logger.debug(f"[QUEUE] Ticket #{candidate.ticket_number} ya fue tomado, probando el siguiente")
        after_number = candidate.ticket_number

    logger.warning(f"[QUEUE] Evento {event.code}: demasiada contención al llamar al siguiente")
    return None


async def mark_missed(
    db: AsyncSession,
    entry_id: UUID,
    reason: str,
    now: Optional[datetime] = None,
    from_statuses: Iterable[str] = ACTIVE_STATUSES
) -> Optional[QueueEntry]:
    """Pasar un ticket a MISSED solo si sigue en uno de `from_statuses`"""
    now = now or utcnow()
    stmt = (
        update(QueueEntry)
        .where(QueueEntry.id == entry_id, QueueEntry.status.in_(tuple(from_statuses)))
        .values(
            status=QueueStatus.missed.value,
            missed_reason=reason,
            ended_at=now,
            call_expires_at=None,
        )
        .returning(QueueEntry)
        .execution_options(populate_existing=True, synchronize_session=False)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def archive_active_entries(
    db: AsyncSession,
    event_id: UUID,
    reason: str,
    now: Optional[datetime] = None
) -> int:
    """Pasar a MISSED todos los tickets activos del evento (todos los batches)"""
    now = now or utcnow()
    result = await db.execute(
        update(QueueEntry)
        .where(QueueEntry.event_id == event_id, QueueEntry.status.in_(ACTIVE_STATUSES))
        .values(
            status=QueueStatus.missed.value,
            missed_reason=reason,
            ended_at=now,
            call_expires_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def get_push_tokens(db: AsyncSession, user_ids: Iterable[UUID]) -> Dict[UUID, Optional[str]]:
    ids = [user_id for user_id in user_ids if user_id]
    if not ids:
        return {}
    result = await db.execute(select(User.id, User.push_token).where(User.id.in_(ids)))
    return {row.id: row.push_token for row in result.all()}


async def notify_call(
    db: AsyncSession,
    notifier: Optional[Notifier],
    event: Event,
    called: QueueEntry,
    window_minutes: int
) -> None:
    """Avisar al llamado y al siguiente en la fila (fire-and-forget)"""
    if notifier is None:
        return
    try:
        upcoming = await next_waiting_entry(db, event, after_number=called.ticket_number)
        tokens = await get_push_tokens(db, [called.user_id, upcoming.user_id if upcoming else None])

        notifier.notify_user(
            tokens.get(called.user_id),
            "Giliran Anda!",
            f"Nomor #{called.ticket_number} dipanggil di {event.name}. Segera hadir dalam {window_minutes} menit.",
            {"type": "QUEUE_CALLED", "queueId": str(called.id), "eventId": str(event.id)},
        )
        if upcoming is not None:
            notifier.notify_user(
                tokens.get(upcoming.user_id),
                "Bersiap, Anda berikutnya",
                f"Nomor #{upcoming.ticket_number}, giliran Anda setelah ini di {event.name}.",
                {"type": "QUEUE_NEXT", "queueId": str(upcoming.id), "eventId": str(event.id)},
            )
    except Exception as e:
        logger.error(f"[PUSH] Error preparando notificación de llamada para {event.code}: {e}")


def recompute_average(total_seconds: int, total_served: int) -> int:
    """Promedio en minutos redondeado hacia arriba"""
    if not total_served:
        return 0
    return math.ceil(total_seconds / 60 / total_served)


async def count_by_status(db: AsyncSession, event: Event) -> Dict[str, int]:
    """Cantidad de tickets del batch actual agrupados por estado"""
    result = await db.execute(
        select(QueueEntry.status, func.count(QueueEntry.id))
        .where(QueueEntry.event_id == event.id, QueueEntry.batch == event.current_batch)
        .group_by(QueueEntry.status)
    )
    return {status: count for status, count in result.all()}


def waiting_estimate(people_ahead: int, avg_service_minutes: int, now: Optional[datetime] = None) -> Tuple[int, datetime]:
    now = now or utcnow()
    minutes = people_ahead * (avg_service_minutes or 0)
    return minutes, now + timedelta(minutes=minutes)


async def get_event_by_ref(db: AsyncSession, ref: str) -> Event:
    """Buscar por UUID o por código legible del evento"""
    if not ref:
        raise ValidationError("ID Layanan diperlukan.")
    try:
        condition = Event.id == UUID(str(ref))
    except ValueError:
        condition = Event.code == str(ref)
    event = (await db.execute(select(Event).where(condition))).scalar_one_or_none()
    if event is None:
        raise NotFoundError("Layanan tidak ditemukan")
    return event
