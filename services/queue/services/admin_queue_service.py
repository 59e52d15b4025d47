"""Operaciones de la cola del lado del petugas (admin de la escuela)"""
import logging
import math
import uuid
from collections import Counter
from datetime import datetime
from typing import Any, Dict, Optional

from jose import JWTError
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.auth.jwt_handler import verify_ticket_token
from shared.database.models import (
    Event, QueueEntry, QueueStatus, User, UserRole, DynamicStatus, EventStage,
    CANCELLABLE_STATUSES, IN_SERVICE_STATUSES, TERMINAL_STATUSES, utcnow
)
from shared.exceptions import (
    BusyError, ConflictError, ForbiddenError, NotFoundError, ValidationError
)
from services.event_management.models.event import EventResponse
from services.event_management.services.status import derive_status
from services.notifications.services.push_service import Notifier
from services.queue.models.queue import (
    QueueEntryResponse, QueueListItem, DashboardResponse, DashboardSummary
)
from services.queue.services.lifecycle import (
    parse_uuid, ensure_can_manage, get_event_or_404, get_entry_or_404,
    get_in_service_entry, call_next_waiting, notify_call, mark_missed,
    increment_counters, release_slots, archive_active_entries,
    issue_access_token, recompute_average, count_by_status, get_push_tokens
)
from services.queue.services.scheduler_service import reconcile_counters

logger = logging.getLogger(__name__)

SKIP_REASON = "Dilewati petugas"
NEW_BATCH_REASON = "Admin memulai Sesi/Batch Baru"
BULK_CANCEL_REASON = "Dibatalkan Admin Sekolah (Bulk Action)"
MIN_SERVICE_SECONDS = 60


class AdminQueueService:
    """Servicio de control de la cola para petugas"""

    @staticmethod
    async def call_next(
        db: AsyncSession,
        event_id: str,
        current_user: Dict,
        notifier: Optional[Notifier] = None,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Llamar al siguiente ticket WAITING

        Si ya hay un ticket CALLED o SERVING se devuelve ese ticket (no es error):
        el petugas debe terminarlo primero.
        """
        now = now or utcnow()
        event = await get_event_or_404(db, event_id, refresh=True)
        ensure_can_manage(current_user, event)

        if derive_status(event, now) == DynamicStatus.finished:
            raise ForbiddenError("Sesi sudah berakhir, tidak bisa memanggil lagi.")

        if not event.locked and event.stage != EventStage.closing.value:
            raise ForbiddenError(
                "Kunci pendaftaran atau tutup sesi terlebih dahulu sebelum mulai memanggil pendaftar."
            )

        in_service = await get_in_service_entry(db, event)
        if in_service is not None:
            return {
                "message": f"Selesaikan antrean nomor #{in_service.ticket_number} terlebih dahulu.",
                "data": in_service,
                "called": False,
            }

        window = event.grace_period_minutes
        called = await call_next_waiting(db, event, window, now)
        if called is None:
            await db.rollback()
            raise NotFoundError("Antrean sedang kosong.")

        await db.commit()
        await notify_call(db, notifier, event, called, window)

        return {
            "message": f"Memanggil #{called.ticket_number}. Batas hadir {window} menit.",
            "data": called,
            "called": True,
        }

    @staticmethod
    async def skip(
        db: AsyncSession,
        event_id: str,
        queue_id: str,
        current_user: Dict,
        notifier: Optional[Notifier] = None,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Marcar un ticket como MISSED y llamar al siguiente (ventana = promedio de servicio)"""
        now = now or utcnow()
        event = await get_event_or_404(db, event_id, refresh=True)
        ensure_can_manage(current_user, event)

        if not event.locked:
            raise ForbiddenError("Event harus dikunci.")

        entry = await get_entry_or_404(db, queue_id)
        if entry.event_id != event.id:
            raise NotFoundError("Antrean tidak ditemukan")
        if entry.status in TERMINAL_STATUSES:
            raise ConflictError(f"Antrean sudah {entry.status}")

        skipped = await mark_missed(db, entry.id, SKIP_REASON, now)
        if skipped is None:
            # Otro proceso lo cerró entre la lectura y el UPDATE
            await db.rollback()
            raise ConflictError("Status antrean berubah, silakan muat ulang.")

        # Saltar un WAITING no libera la ventana si otro ticket sigue en servicio
        window = event.avg_service_minutes
        next_called = None
        if await get_in_service_entry(db, event) is None:
            next_called = await call_next_waiting(db, event, window, now)
        await db.commit()

        logger.info(f"[QUEUE] Evento {event.code}: #{skipped.ticket_number} saltado por el petugas")
        if next_called is None:
            return {"message": "Antrean dilewatkan.", "skipped": skipped, "next_called": None}

        await notify_call(db, notifier, event, next_called, window)
        return {
            "message": "Antrean dilewatkan. Memanggil berikutnya.",
            "skipped": skipped,
            "next_called": next_called,
        }

    @staticmethod
    async def complete(
        db: AsyncSession,
        queue_id: str,
        current_user: Dict,
        now: Optional[datetime] = None
    ) -> QueueEntry:
        """
        Terminar el servicio (DONE)

        El cupo no se libera: un ticket atendido sigue contando como ocupado.
        Si se conoce el inicio del servicio, la duración alimenta el promedio.
        """
        now = now or utcnow()
        entry = await get_entry_or_404(db, queue_id)
        event = await get_event_or_404(db, entry.event_id, refresh=True)
        ensure_can_manage(current_user, event)

        if entry.status not in IN_SERVICE_STATUSES:
            raise ConflictError(f"Status {entry.status}, tidak dapat diselesaikan.")

        entry.status = QueueStatus.done.value
        entry.service_ended_at = now
        entry.ended_at = now
        entry.call_expires_at = None
        entry.access_token = None
        entry.access_token_expires_at = None

        if entry.service_started_at:
            elapsed = math.floor((now - entry.service_started_at).total_seconds())
            duration = max(MIN_SERVICE_SECONDS, elapsed)

            result = await db.execute(
                update(Event)
                .where(Event.id == event.id)
                .values(
                    total_served=Event.total_served + 1,
                    total_service_duration_seconds=Event.total_service_duration_seconds + duration,
                )
                .returning(Event.total_service_duration_seconds, Event.total_served)
                .execution_options(synchronize_session=False)
            )
            total_seconds, total_served = result.one()
            await db.execute(
                update(Event)
                .where(Event.id == event.id)
                .values(avg_service_minutes=recompute_average(total_seconds, total_served))
                .execution_options(synchronize_session=False)
            )
            logger.info(f"[QUEUE] Evento {event.code}: servicio de {duration}s, promedio recalculado")

        await db.commit()
        logger.info(f"[QUEUE] Evento {event.code}: #{entry.ticket_number} DONE")
        return entry

    @staticmethod
    async def respond_postpone(
        db: AsyncSession,
        queue_id: str,
        action: str,
        current_user: Dict,
        notifier: Optional[Notifier] = None,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Aprobar o rechazar una solicitud de tunda

        APPROVE: el ticket original pasa a MISSED y el usuario recibe un número
        nuevo al final de la fila (incremento atómico de contadores).
        REJECT: el ticket vuelve a WAITING con su número original.
        """
        now = now or utcnow()
        action = (action or "").upper()
        if action not in ("APPROVE", "REJECT"):
            raise ValidationError("Aksi harus APPROVE atau REJECT.")

        entry = await get_entry_or_404(db, queue_id)
        event = await get_event_or_404(db, entry.event_id, refresh=True)
        ensure_can_manage(current_user, event)

        if entry.status != QueueStatus.postpone_requested.value:
            raise ConflictError(f"Status {entry.status}, bukan permintaan tunda.")

        if action == "REJECT":
            entry.status = QueueStatus.waiting.value
            await db.commit()
            await _notify_owner(
                db, notifier, entry,
                "Permintaan tunda ditolak",
                f"Anda tetap di nomor #{entry.ticket_number} pada {event.name}.",
            )
            return {"message": "Permintaan tunda ditolak. User kembali ke daftar tunggu.", "data": entry}

        postpone_reason = f"{entry.postpone_reason or ''} (Tunda disetujui)".strip()
        old_number = entry.ticket_number
        try:
            entry.status = QueueStatus.missed.value
            entry.postpone_reason = postpone_reason
            entry.missed_reason = "Tunda disetujui"
            entry.ended_at = now
            await db.flush()

            updated = await increment_counters(db, event.id)
            new_entry = QueueEntry(
                id=uuid.uuid4(),
                event_id=updated.id,
                user_id=entry.user_id,
                ticket_number=updated.last_number_issued,
                batch=updated.current_batch,
                status=QueueStatus.waiting.value,
                postponed=True,
                postpone_reason=postpone_reason,
                requested_at=now,
            )
            issue_access_token(new_entry, now=now)
            db.add(new_entry)
            await db.flush()
        except IntegrityError as e:
            logger.warning(f"[QUEUE] Colisión de número al aprobar tunda en {event.code}: {e.orig}")
            await db.rollback()
            raise BusyError()

        await db.commit()
        logger.info(f"[QUEUE] Evento {event.code}: tunda aprobada #{old_number} -> #{new_entry.ticket_number}")

        await _notify_owner(
            db, notifier, new_entry,
            "Permintaan tunda disetujui",
            f"Nomor baru Anda #{new_entry.ticket_number} pada {event.name}.",
        )
        return {
            "message": f"Berhasil. Nomor #{old_number} dilewatkan, User kini di nomor #{new_entry.ticket_number}.",
            "data": new_entry,
        }

    @staticmethod
    async def validate_and_start_service(
        db: AsyncSession,
        event_id: str,
        token: str,
        current_user: Dict,
        now: Optional[datetime] = None
    ) -> QueueEntry:
        """
        Escanear el QR del ticket y empezar el servicio

        FIFO: un ticket que aún no está SERVING solo pasa si no queda ningún
        WAITING o CALLED con número menor en su batch.
        """
        now = now or utcnow()
        event = await get_event_or_404(db, event_id, refresh=True)
        ensure_can_manage(current_user, event)

        status = derive_status(event, now)
        if status == DynamicStatus.pre_order:
            raise ForbiddenError("Gagal! Sesi pelayanan belum dimulai (Masih masa Pre-Order).")
        if status == DynamicStatus.finished:
            raise ForbiddenError("Gagal! Sesi pelayanan untuk kegiatan ini sudah berakhir.")

        try:
            payload = verify_ticket_token(token, now=now)
        except JWTError:
            raise ValidationError("QR Code kedaluwarsa atau tidak valid")

        entry = (await db.execute(
            select(QueueEntry)
            .where(
                QueueEntry.id == parse_uuid(payload.get("qid"), "QR Code kedaluwarsa atau tidak valid"),
                QueueEntry.event_id == event.id,
            )
            .execution_options(populate_existing=True)
        )).scalar_one_or_none()
        if entry is None:
            raise NotFoundError("QR tidak ditemukan di kegiatan ini")

        if entry.status in TERMINAL_STATUSES:
            raise ConflictError(f"Antrean sudah {entry.status}")

        if entry.status == QueueStatus.serving.value:
            return entry

        people_ahead = (await db.execute(
            select(QueueEntry.id).where(
                QueueEntry.event_id == event.id,
                QueueEntry.batch == entry.batch,
                QueueEntry.status.in_((QueueStatus.waiting.value, QueueStatus.called.value)),
                QueueEntry.ticket_number < entry.ticket_number,
            )
        )).all()
        if people_ahead:
            raise ConflictError(f"Belum giliran. Ada {len(people_ahead)} orang di depan.")

        in_service = await get_in_service_entry(db, event)
        if in_service is not None and in_service.id != entry.id:
            raise ConflictError(f"Selesaikan antrean nomor #{in_service.ticket_number} terlebih dahulu.")

        started = (await db.execute(
            update(QueueEntry)
            .where(QueueEntry.id == entry.id, QueueEntry.status == entry.status)
            .values(
                status=QueueStatus.serving.value,
                service_started_at=now,
                call_expires_at=None,
            )
            .returning(QueueEntry)
            .execution_options(populate_existing=True, synchronize_session=False)
        )).scalar_one_or_none()
        if started is None:
            await db.rollback()
            raise ConflictError("Status antrean berubah, silakan pindai ulang.")

        await db.commit()
        logger.info(f"[QUEUE] Evento {event.code}: #{started.ticket_number} SERVING (QR)")
        return started

    @staticmethod
    async def serve_manual(
        db: AsyncSession,
        token: str,
        current_user: Dict,
        now: Optional[datetime] = None
    ) -> QueueEntry:
        """Empezar el servicio buscando el ticket por su token guardado (sin verificar firma)"""
        now = now or utcnow()
        if not token:
            raise ValidationError("QR Code tidak valid.")

        entry = (await db.execute(
            select(QueueEntry)
            .where(QueueEntry.access_token == token)
            .execution_options(populate_existing=True)
        )).scalar_one_or_none()
        if entry is None:
            raise NotFoundError("QR Code tidak valid.")

        event = await get_event_or_404(db, entry.event_id)
        ensure_can_manage(current_user, event)

        if entry.status != QueueStatus.called.value:
            raise ConflictError(f"Status {entry.status}, harus DIPANGGIL.")

        entry.status = QueueStatus.serving.value
        entry.service_started_at = now
        entry.call_expires_at = None
        await db.commit()

        logger.info(f"[QUEUE] Evento {event.code}: #{entry.ticket_number} SERVING (manual)")
        return entry

    @staticmethod
    async def reset_counter(
        db: AsyncSession,
        event_id: str,
        current_user: Dict,
        new_avg_time: Any = None,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Reabrir la sesión o empezar un batch nuevo

        Sin tickets emitidos solo se reabre el batch actual. En otro caso todos
        los tickets activos pasan a MISSED, el batch se incrementa y los
        contadores vuelven a cero.
        """
        now = now or utcnow()
        avg_minutes = _parse_avg_time(new_avg_time)

        event = await get_event_or_404(db, event_id, refresh=True)
        ensure_can_manage(current_user, event)

        reopen_values = {
            "stage": EventStage.open.value,
            "locked": False,
            "start_at": None,
            "end_at": None,
        }
        if avg_minutes is not None:
            reopen_values["avg_service_minutes"] = avg_minutes

        if not event.slots_taken and not event.last_number_issued:
            batch = (await db.execute(
                update(Event)
                .where(Event.id == event.id)
                .values(**reopen_values)
                .returning(Event.current_batch)
                .execution_options(synchronize_session=False)
            )).scalar_one()
            await db.commit()
            logger.info(f"[QUEUE] Evento {event.code}: reabierto (batch {batch})")
            return {
                "message": f"Layanan dibuka kembali (Melanjutkan Batch #{batch}).",
                "current_batch": batch,
                "archived": 0,
            }

        archived = await archive_active_entries(db, event.id, NEW_BATCH_REASON, now)
        batch = (await db.execute(
            update(Event)
            .where(Event.id == event.id)
            .values(
                current_batch=Event.current_batch + 1,
                last_number_issued=0,
                slots_taken=0,
                total_served=0,
                total_service_duration_seconds=0,
                **reopen_values,
            )
            .returning(Event.current_batch)
            .execution_options(synchronize_session=False)
        )).scalar_one()
        await db.commit()

        logger.info(f"[QUEUE] Evento {event.code}: nuevo batch #{batch}, {archived} tickets archivados")
        return {
            "message": f"Sesi Baru Batch #{batch} dimulai!",
            "current_batch": batch,
            "archived": archived,
        }

    @staticmethod
    async def cancel_all_by_user(
        db: AsyncSession,
        user_id: str,
        current_user: Dict,
        now: Optional[datetime] = None
    ) -> int:
        """
        Cancelar todos los tickets cancelables de un usuario

        Un ADMIN solo alcanza los eventos de su escuela; se libera un cupo por
        ticket en el evento correspondiente.
        """
        now = now or utcnow()
        if not user_id:
            raise ValidationError("User ID wajib dikirim.")
        user_uuid = parse_uuid(user_id, "User ID tidak valid.")

        stmt = (
            select(QueueEntry.id, QueueEntry.event_id)
            .join(Event, QueueEntry.event_id == Event.id)
            .where(
                QueueEntry.user_id == user_uuid,
                QueueEntry.status.in_(CANCELLABLE_STATUSES),
            )
        )
        if current_user.get("role") != UserRole.super_admin.value:
            if not current_user.get("school_id"):
                raise ForbiddenError("Akses ditolak.")
            stmt = stmt.where(Event.school_id == parse_uuid(current_user.get("school_id"), "Akses ditolak."))

        rows = (await db.execute(stmt)).all()
        if not rows:
            return 0

        result = await db.execute(
            update(QueueEntry)
            .where(
                QueueEntry.id.in_([row.id for row in rows]),
                QueueEntry.status.in_(CANCELLABLE_STATUSES),
            )
            .values(
                status=QueueStatus.cancelled.value,
                cancel_reason=BULK_CANCEL_REASON,
                ended_at=now,
                call_expires_at=None,
                access_token=None,
                access_token_expires_at=None,
            )
            .execution_options(synchronize_session=False)
        )

        for event_uuid, count in Counter(row.event_id for row in rows).items():
            await release_slots(db, event_uuid, count)

        await db.commit()
        cancelled = result.rowcount or 0
        logger.info(f"[QUEUE] {cancelled} tickets del usuario {user_uuid} cancelados por admin")
        return cancelled

    @staticmethod
    async def get_dashboard(
        db: AsyncSession,
        event_id: str,
        current_user: Dict,
        now: Optional[datetime] = None
    ) -> DashboardResponse:
        """Vista en vivo del batch actual para el petugas"""
        now = now or utcnow()
        event = await get_event_or_404(db, event_id, refresh=True)
        ensure_can_manage(current_user, event)

        result = await db.execute(
            select(QueueEntry, User.name)
            .outerjoin(User, QueueEntry.user_id == User.id)
            .where(
                QueueEntry.event_id == event.id,
                QueueEntry.batch == event.current_batch,
                QueueEntry.status.in_((
                    QueueStatus.waiting.value,
                    QueueStatus.postpone_requested.value,
                    QueueStatus.called.value,
                    QueueStatus.serving.value,
                )),
            )
            .order_by(QueueEntry.ticket_number.asc())
            .execution_options(populate_existing=True)
        )

        serving = called = None
        waiting = []
        for entry, user_name in result.all():
            item = QueueListItem(**QueueEntryResponse.model_validate(entry).model_dump(), user_name=user_name)
            if entry.status == QueueStatus.serving.value:
                serving = item
            elif entry.status == QueueStatus.called.value:
                called = item
            else:
                waiting.append(item)

        counts = await count_by_status(db, event)
        summary = DashboardSummary(
            waiting=counts.get(QueueStatus.waiting.value, 0),
            postpone_requested=counts.get(QueueStatus.postpone_requested.value, 0),
            called=counts.get(QueueStatus.called.value, 0),
            serving=counts.get(QueueStatus.serving.value, 0),
            done=counts.get(QueueStatus.done.value, 0),
            missed=counts.get(QueueStatus.missed.value, 0),
            cancelled=counts.get(QueueStatus.cancelled.value, 0),
            total=event.slots_taken or 0,
            entries=sum(counts.values()),
        )

        return DashboardResponse(
            event=EventResponse.from_event(event, now),
            current_batch=event.current_batch,
            last_number_issued=event.last_number_issued or 0,
            serving=serving,
            called=called,
            waiting=waiting,
            summary=summary,
        )

    @staticmethod
    async def reconcile(
        db: AsyncSession,
        event_id: str,
        current_user: Dict
    ) -> Event:
        """Recalcular contadores del evento a partir de los tickets reales"""
        event = await get_event_or_404(db, event_id)
        ensure_can_manage(current_user, event)
        event = await reconcile_counters(db, event.id)
        await db.commit()
        return event


def _parse_avg_time(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        minutes = float(value)
    except (TypeError, ValueError):
        raise ValidationError("Input 'new_avg_time' harus berupa angka valid.")
    if not math.isfinite(minutes) or minutes <= 0:
        raise ValidationError("Input 'new_avg_time' harus lebih dari 0.")
    return math.ceil(minutes)


async def _notify_owner(
    db: AsyncSession,
    notifier: Optional[Notifier],
    entry: QueueEntry,
    title: str,
    body: str
) -> None:
    if notifier is None:
        return
    try:
        tokens = await get_push_tokens(db, [entry.user_id])
        notifier.notify_user(
            tokens.get(entry.user_id), title, body,
            {"type": "QUEUE_UPDATE", "queueId": str(entry.id), "eventId": str(entry.event_id)},
        )
    except Exception as e:
        logger.error(f"[PUSH] Error notificando al dueño del ticket {entry.id}: {e}")
