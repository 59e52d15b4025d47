"""Operaciones de la cola del lado del usuario (tomar ticket, cancelar, tunda, consultar)"""
import logging
import uuid
from datetime import datetime
from typing import Dict, Optional, Tuple

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database.models import (
    Event, QueueEntry, QueueStatus, User, DynamicStatus,
    ACTIVE_STATUSES, CANCELLABLE_STATUSES, TERMINAL_STATUSES, utcnow
)
from shared.exceptions import (
    DomainError, BusyError, ConflictError, ForbiddenError, NotFoundError
)
from services.event_management.models.event import EventResponse
from services.event_management.services.status import derive_status, is_over_capacity, STATUS_LABELS
from services.queue.models.queue import (
    QueueEntryResponse, QueueEntryWithEvent, MyQueuesResponse, QueueDetailResponse,
    QueueListItem, QueueListResponse, CheckEventResponse
)
from services.queue.services.lifecycle import (
    parse_uuid, can_manage_event, ensure_can_manage, get_event_or_404, get_entry_or_404,
    get_event_by_ref, increment_counters, release_slots, rollback_last_number,
    issue_access_token, count_by_status, waiting_estimate, format_wait_time
)
from services.queue.services.qr_service import render_ticket_qr_png

logger = logging.getLogger(__name__)


def _entry_with_event(entry: QueueEntry, event: Event, now: datetime) -> QueueEntryWithEvent:
    data = QueueEntryResponse.model_validate(entry).model_dump()
    return QueueEntryWithEvent(**data, event=EventResponse.from_event(event, now))


def _ensure_owner(entry: QueueEntry, current_user: Dict) -> None:
    if str(entry.user_id) != str(current_user.get("user_id")):
        raise ForbiddenError("Akses ditolak.")


async def _compensate(db: AsyncSession, event_id) -> None:
    """Deshacer el incremento de contadores de un join rechazado"""
    try:
        await db.rollback()
    except Exception as e:
        # El contador queda inflado; la reconciliación periódica lo corrige
        logger.error(f"[QUEUE] Error revirtiendo contadores del evento {event_id}: {e}", exc_info=True)


class QueueService:
    """Servicio de tickets para el usuario final"""

    @staticmethod
    async def join_queue(
        db: AsyncSession,
        event_id: str,
        current_user: Dict,
        now: Optional[datetime] = None
    ) -> QueueEntry:
        """
        Tomar un ticket

        El incremento atómico ocurre primero; todas las validaciones se hacen
        sobre el evento ya incrementado. Cualquier rechazo revierte la
        transacción completa, lo que actúa como decremento compensatorio.
        """
        now = now or utcnow()
        event_uuid = parse_uuid(event_id, "ID Layanan tidak valid.")
        user_uuid = parse_uuid(current_user.get("user_id"), "User tidak valid.")

        try:
            event = await increment_counters(db, event_uuid)
            if event is None:
                raise NotFoundError("Layanan tidak ditemukan")

            school_id = current_user.get("school_id")
            if not school_id:
                raise ForbiddenError("Gagal: Anda tidak terdaftar di sekolah manapun.")
            if str(school_id) != str(event.school_id):
                raise ForbiddenError("Gagal: Anda bukan anggota sekolah penyelenggara ini.")

            status = derive_status(event, now)
            if is_over_capacity(event):
                raise ForbiddenError("Gagal! Kuota pendaftaran sudah penuh.")
            if status in (DynamicStatus.closing, DynamicStatus.finished):
                raise ForbiddenError(f"Gagal! Pendaftaran sedang {STATUS_LABELS[status]}.")

            existing = await db.execute(
                select(QueueEntry.id).where(
                    QueueEntry.event_id == event.id,
                    QueueEntry.user_id == user_uuid,
                    QueueEntry.batch == event.current_batch,
                    QueueEntry.status.in_(ACTIVE_STATUSES),
                ).limit(1)
            )
            if existing.first() is not None:
                raise ConflictError("Anda sudah memiliki antrean aktif.")

            entry = QueueEntry(
                id=uuid.uuid4(),
                event_id=event.id,
                user_id=user_uuid,
                ticket_number=event.last_number_issued,
                batch=event.current_batch,
                status=QueueStatus.waiting.value,
                requested_at=now,
            )
            issue_access_token(entry, now=now)
            db.add(entry)
            await db.flush()
        except DomainError:
            await _compensate(db, event_uuid)
            raise
        except IntegrityError as e:
            logger.warning(f"[QUEUE] Colisión de número en evento {event_uuid}: {e.orig}")
            await _compensate(db, event_uuid)
            raise BusyError()

        await db.commit()
        logger.info(f"[QUEUE] Usuario {user_uuid} tomó #{entry.ticket_number} en {event.code} (batch {entry.batch})")
        return entry

    @staticmethod
    async def get_my_queues(
        db: AsyncSession,
        current_user: Dict,
        now: Optional[datetime] = None
    ) -> MyQueuesResponse:
        """Tickets activos e historial del usuario, más recientes primero"""
        now = now or utcnow()
        user_uuid = parse_uuid(current_user.get("user_id"), "User tidak valid.")

        result = await db.execute(
            select(QueueEntry, Event)
            .join(Event, QueueEntry.event_id == Event.id)
            .where(QueueEntry.user_id == user_uuid)
            .order_by(QueueEntry.requested_at.desc())
            .execution_options(populate_existing=True)
        )

        response = MyQueuesResponse()
        for entry, event in result.all():
            item = _entry_with_event(entry, event, now)
            if entry.status in ACTIVE_STATUSES:
                response.current.append(item)
            else:
                response.history.append(item)
        return response

    @staticmethod
    async def get_queue_detail(
        db: AsyncSession,
        queue_id: str,
        current_user: Dict,
        now: Optional[datetime] = None
    ) -> QueueDetailResponse:
        """Detalle del ticket con posición y estimación de espera"""
        now = now or utcnow()
        entry = await get_entry_or_404(db, queue_id)
        event = await get_event_or_404(db, entry.event_id, refresh=True)

        if str(entry.user_id) != str(current_user.get("user_id")) and not can_manage_event(current_user, event):
            raise ForbiddenError("Akses ditolak.")

        people_ahead = 0
        if entry.status in (QueueStatus.waiting.value, QueueStatus.postpone_requested.value):
            people_ahead = (await db.execute(
                select(func.count(QueueEntry.id)).where(
                    QueueEntry.event_id == entry.event_id,
                    QueueEntry.batch == entry.batch,
                    QueueEntry.status == QueueStatus.waiting.value,
                    QueueEntry.ticket_number < entry.ticket_number,
                )
            )).scalar_one()

        minutes, estimated_time = waiting_estimate(people_ahead, event.avg_service_minutes, now)
        return QueueDetailResponse(
            entry=QueueEntryResponse.model_validate(entry),
            event=EventResponse.from_event(event, now),
            people_ahead=people_ahead,
            estimated_minutes=minutes,
            estimated_time=estimated_time,
            estimated_wait_label=format_wait_time(minutes),
        )

    @staticmethod
    async def cancel_queue(
        db: AsyncSession,
        queue_id: str,
        current_user: Dict,
        reason: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Tuple[str, Optional[QueueEntry]]:
        """
        Cancelación por el propio usuario

        En PRE_ORDER el ticket se borra y, si era el último emitido, el número
        se devuelve. En sesión activa se marca CANCELLED. En ambos casos se
        libera un cupo.
        """
        now = now or utcnow()
        entry = await get_entry_or_404(db, queue_id)
        _ensure_owner(entry, current_user)

        if entry.status not in CANCELLABLE_STATUSES:
            raise ConflictError(f"Antrean dengan status {entry.status} tidak dapat dibatalkan.")

        event = await get_event_or_404(db, entry.event_id, refresh=True)
        is_pre_order = derive_status(event, now) == DynamicStatus.pre_order

        await release_slots(db, event.id)

        if is_pre_order:
            ticket_number = entry.ticket_number
            await db.delete(entry)
            await db.flush()
            number_returned = await rollback_last_number(db, event.id, ticket_number)
            await db.commit()
            logger.info(
                f"[QUEUE] Pre-order #{ticket_number} en {event.code} eliminado "
                f"(número devuelto: {number_returned})"
            )
            return "Pendaftaran Pre-Order berhasil dibatalkan. Slot dikembalikan.", None

        entry.status = QueueStatus.cancelled.value
        entry.cancel_reason = reason or "Dibatalkan oleh pengguna"
        entry.ended_at = now
        entry.call_expires_at = None
        entry.access_token = None
        entry.access_token_expires_at = None
        await db.commit()

        logger.info(f"[QUEUE] Ticket #{entry.ticket_number} en {event.code} cancelado por el usuario")
        return "Antrean aktif berhasil dibatalkan. Slot dikembalikan.", entry

    @staticmethod
    async def request_postpone(
        db: AsyncSession,
        queue_id: str,
        current_user: Dict,
        reason: Optional[str] = None
    ) -> QueueEntry:
        """Solicitar tunda (solo desde WAITING)"""
        entry = await get_entry_or_404(db, queue_id)
        _ensure_owner(entry, current_user)

        if entry.status != QueueStatus.waiting.value:
            raise ConflictError("Hanya status MENUNGGU yang bisa tunda.")

        entry.status = QueueStatus.postpone_requested.value
        entry.postpone_reason = reason or "Tanpa alasan"
        await db.commit()

        logger.info(f"[QUEUE] Ticket {entry.id} solicitó tunda")
        return entry

    @staticmethod
    async def refresh_ticket_token(
        db: AsyncSession,
        queue_id: str,
        current_user: Dict,
        now: Optional[datetime] = None
    ) -> QueueEntry:
        """Firmar un nuevo token QR (5 minutos)"""
        entry = await get_entry_or_404(db, queue_id)
        _ensure_owner(entry, current_user)

        if entry.status in TERMINAL_STATUSES:
            raise ConflictError(f"Antrean sudah {entry.status}")

        issue_access_token(entry, now=now)
        await db.commit()
        return entry

    @staticmethod
    async def check_event(
        db: AsyncSession,
        event_ref: str,
        now: Optional[datetime] = None
    ) -> CheckEventResponse:
        """Información pública de la sesión antes de tomar ticket"""
        now = now or utcnow()
        event = await get_event_by_ref(db, event_ref)
        counts = await count_by_status(db, event)

        serving_number = (await db.execute(
            select(QueueEntry.ticket_number).where(
                QueueEntry.event_id == event.id,
                QueueEntry.batch == event.current_batch,
                QueueEntry.status == QueueStatus.serving.value,
            ).limit(1)
        )).scalar_one_or_none()

        return CheckEventResponse(
            event=EventResponse.from_event(event, now),
            total_waiting=counts.get(QueueStatus.waiting.value, 0) + counts.get(QueueStatus.called.value, 0),
            current_number=serving_number or 0,
        )

    @staticmethod
    async def list_event_queue(
        db: AsyncSession,
        event_ref: str,
        current_user: Dict,
        now: Optional[datetime] = None
    ) -> QueueListResponse:
        """Todos los tickets de un evento ordenados por batch y número"""
        now = now or utcnow()
        event = await get_event_by_ref(db, event_ref)
        ensure_can_manage(current_user, event)

        result = await db.execute(
            select(QueueEntry, User.name)
            .outerjoin(User, QueueEntry.user_id == User.id)
            .where(QueueEntry.event_id == event.id)
            .order_by(QueueEntry.batch.asc(), QueueEntry.ticket_number.asc())
            .execution_options(populate_existing=True)
        )
        entries = [
            QueueListItem(**QueueEntryResponse.model_validate(entry).model_dump(), user_name=user_name)
            for entry, user_name in result.all()
        ]
        return QueueListResponse(
            event=EventResponse.from_event(event, now),
            total=len(entries),
            entries=entries,
        )

    @staticmethod
    async def get_ticket_qr(
        db: AsyncSession,
        queue_id: str,
        current_user: Dict,
        now: Optional[datetime] = None
    ) -> bytes:
        """PNG del QR del ticket; si el token ya venció se firma uno nuevo"""
        now = now or utcnow()
        entry = await get_entry_or_404(db, queue_id)
        _ensure_owner(entry, current_user)

        if entry.status in TERMINAL_STATUSES:
            raise ConflictError(f"Antrean sudah {entry.status}")

        if not entry.access_token or not entry.access_token_expires_at or entry.access_token_expires_at <= now:
            issue_access_token(entry, now=now)
            await db.commit()

        return render_ticket_qr_png(entry.access_token)
