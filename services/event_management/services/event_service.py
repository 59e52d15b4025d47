"""Servicio de gestión de eventos (sesiones de servicio de la escuela)"""
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete, func, case, and_
from sqlalchemy.exc import IntegrityError
from typing import Any, Dict, List, Optional
from datetime import datetime, timedelta, timezone
import logging

from app.core.config import settings
from shared.database.models import (
    Event, EventStage, QueueEntry, QueueStatus, UserRole, IN_SERVICE_STATUSES, utcnow
)
from shared.exceptions import ForbiddenError, ValidationError
from services.event_management.models.event import EventCreate, EventUpdate, EventWithStatsResponse
from services.event_management.services.status import validate_schedule
from services.notifications.services.push_service import Notifier
from services.queue.services.lifecycle import (
    parse_uuid, ensure_can_manage, get_event_or_404, archive_active_entries
)

logger = logging.getLogger(__name__)

FINISHED_REASON = "Sesi pelayanan berakhir."


def _parse_int(field: str, value: Any) -> Optional[int]:
    """Acepta int o string numérico; None si no viene"""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"Input '{field}' harus berupa angka valid.")
    try:
        return int(str(value).strip())
    except ValueError:
        raise ValidationError(f"Input '{field}' harus berupa angka valid.")


def _parse_datetime(value: Any, message: str) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(message)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_stage(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    stage = value.upper()
    if stage not in {s.value for s in EventStage}:
        raise ValidationError(f"Status kegiatan '{value}' tidak dikenal.")
    return stage


class EventService:
    """Servicio para gestionar eventos"""

    @staticmethod
    async def create_event(
        db: AsyncSession,
        data: EventCreate,
        current_user: Dict
    ) -> Event:
        """
        Crear evento

        Requiere: role ADMIN con escuela asignada
        """
        capacity = _parse_int("capacity", data.capacity)
        avg_minutes = _parse_int("avg_service_minutes", data.avg_service_minutes)
        grace_minutes = _parse_int("grace_period_minutes", data.grace_period_minutes)

        if current_user.get("role") != UserRole.admin.value:
            raise ForbiddenError("Hanya ADMIN yang boleh membuat event")
        if not current_user.get("school_id"):
            raise ValidationError("Admin sekolah belum terkait data sekolah")
        if not data.code or not data.name:
            raise ValidationError("ID Kegiatan dan nama kegiatan wajib diisi")

        start_at = _parse_datetime(data.start_at, "Waktu mulai tidak valid")
        end_at = _parse_datetime(data.end_at, "Waktu selesai tidak valid")
        schedule_error = validate_schedule(start_at, end_at)
        if schedule_error:
            raise ValidationError(schedule_error)

        existing = await db.execute(select(Event.id).where(Event.code == data.code))
        if existing.first() is not None:
            raise ValidationError("ID Kegiatan sudah terdaftar")

        event = Event(
            school_id=parse_uuid(current_user["school_id"]),
            code=data.code,
            name=data.name,
            category=data.category or "LAINNYA",
            description=data.description,
            location=data.location,
            thumbnail_url=data.thumbnail_url,
            start_at=start_at,
            end_at=end_at,
            capacity=capacity or None,
            avg_service_minutes=avg_minutes or settings.DEFAULT_AVG_SERVICE_MINUTES,
            grace_period_minutes=grace_minutes or settings.DEFAULT_GRACE_PERIOD_MINUTES,
            stage=_parse_stage(data.stage) or EventStage.open.value,
        )

        db.add(event)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise ValidationError("ID Kegiatan sudah terdaftar")
        await db.refresh(event)

        logger.info(f"Evento creado: {event.code} ({event.id}) por {current_user.get('user_id')}")
        return event

    @staticmethod
    async def get_events(
        db: AsyncSession,
        current_user: Dict,
        school_id: Optional[str] = None,
        code: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> List[EventWithStatsResponse]:
        """
        Listar eventos con estadísticas del batch actual

        Usuarios con escuela solo ven su escuela; SUPER_ADMIN ve todo y puede
        filtrar por school_id.
        """
        now = now or utcnow()
        stmt = select(Event)

        if current_user.get("role") != UserRole.super_admin.value and current_user.get("school_id"):
            stmt = stmt.where(Event.school_id == parse_uuid(current_user["school_id"]))
        elif school_id:
            stmt = stmt.where(Event.school_id == parse_uuid(school_id, "School ID tidak valid."))

        if code:
            stmt = stmt.where(Event.code == code)

        stmt = stmt.order_by(Event.created_at.desc())
        events = (await db.execute(stmt)).scalars().all()
        if not events:
            return []

        # Eventos de la escuela: WAITING + CALLED y número en atención, solo batch actual
        stats_stmt = (
            select(
                QueueEntry.event_id,
                func.count(QueueEntry.id).filter(
                    QueueEntry.status.in_((QueueStatus.waiting.value, QueueStatus.called.value))
                ),
                func.max(case((QueueEntry.status.in_(IN_SERVICE_STATUSES), QueueEntry.ticket_number), else_=None)),
            )
            .join(Event, and_(QueueEntry.event_id == Event.id, QueueEntry.batch == Event.current_batch))
            .where(QueueEntry.event_id.in_([event.id for event in events]))
            .group_by(QueueEntry.event_id)
        )
        stats = {
            event_id: (total_waiting, current_number)
            for event_id, total_waiting, current_number in (await db.execute(stats_stmt)).all()
        }

        response = []
        for event in events:
            total_waiting, current_number = stats.get(event.id, (0, None))
            response.append(EventWithStatsResponse.from_event(
                event,
                now,
                total_waiting=total_waiting,
                current_number=current_number,
                estimated_wait_minutes=total_waiting * (event.avg_service_minutes or settings.DEFAULT_AVG_SERVICE_MINUTES),
            ))
        return response

    @staticmethod
    async def get_event_by_id(db: AsyncSession, event_id: str) -> Event:
        return await get_event_or_404(db, event_id)

    @staticmethod
    async def update_event(
        db: AsyncSession,
        event_id: str,
        data: EventUpdate,
        current_user: Dict,
        notifier: Optional[Notifier] = None,
        now: Optional[datetime] = None
    ) -> Event:
        """
        Actualizar evento y aplicar transiciones de estado

        - OPEN: limpia horario y desbloquea
        - CLOSING (desde otro estado): cierra en 15 minutos y bloquea
        - FINISHED: bloquea y pasa a MISSED todos los tickets activos
        """
        now = now or utcnow()
        event = await get_event_or_404(db, event_id, refresh=True)
        ensure_can_manage(current_user, event)

        changes = data.model_dump(exclude_unset=True)
        stage = _parse_stage(changes.pop("stage", None))

        # Columnas NOT NULL: un null explícito se ignora
        for field in ("name", "category", "locked"):
            if field in changes and changes[field] is None:
                changes.pop(field)

        for field in ("capacity", "avg_service_minutes", "grace_period_minutes"):
            if field in changes:
                changes[field] = _parse_int(field, changes[field])
        if "capacity" in changes:
            changes["capacity"] = changes["capacity"] or None
        for field in ("avg_service_minutes", "grace_period_minutes"):
            if field in changes and not changes[field]:
                changes.pop(field)
        if "start_at" in changes:
            changes["start_at"] = _parse_datetime(changes["start_at"], "Waktu mulai tidak valid")
        if "end_at" in changes:
            changes["end_at"] = _parse_datetime(changes["end_at"], "Waktu selesai tidak valid")

        # La duración mínima aplica al horario enviado, no al cierre que fija CLOSING
        if "start_at" in changes or "end_at" in changes:
            schedule_error = validate_schedule(
                changes.get("start_at", event.start_at),
                changes.get("end_at", event.end_at),
            )
            if schedule_error:
                raise ValidationError(schedule_error)

        if stage == EventStage.open.value:
            changes.update(start_at=None, end_at=None, locked=False)
        elif stage == EventStage.closing.value and event.stage != EventStage.closing.value:
            changes.update(end_at=now + timedelta(minutes=settings.CLOSING_WINDOW_MINUTES), locked=True)
        elif stage == EventStage.finished.value:
            changes["locked"] = True

        for field, value in changes.items():
            setattr(event, field, value)
        if stage:
            event.stage = stage

        archived = 0
        if stage == EventStage.finished.value:
            archived = await archive_active_entries(db, event.id, FINISHED_REASON, now)

        await db.commit()
        await db.refresh(event)
        logger.info(f"Evento {event.code} actualizado (stage={event.stage}, archivados={archived})")

        if stage and notifier is not None:
            notifier.notify_topic(
                f"school_{event.school_id}",
                "Update Layanan",
                f"Layanan {event.name} kini berstatus: {stage}",
                {"eventId": str(event.id), "status": stage},
            )

        return event

    @staticmethod
    async def toggle_lock(
        db: AsyncSession,
        event_id: str,
        locked: Optional[bool],
        current_user: Dict
    ) -> Event:
        """Bloquear / desbloquear inscripciones; sin valor explícito se invierte"""
        event = await get_event_or_404(db, event_id, refresh=True)
        ensure_can_manage(current_user, event)

        event.locked = (not event.locked) if locked is None else bool(locked)
        await db.commit()
        await db.refresh(event)

        logger.info(f"Evento {event.code} {'bloqueado' if event.locked else 'desbloqueado'}")
        return event

    @staticmethod
    async def delete_event(
        db: AsyncSession,
        event_id: str,
        current_user: Dict
    ) -> None:
        """Eliminar evento y todos sus tickets"""
        event = await get_event_or_404(db, event_id)
        ensure_can_manage(current_user, event)

        result = await db.execute(
            delete(QueueEntry)
            .where(QueueEntry.event_id == event.id)
            .execution_options(synchronize_session=False)
        )
        await db.delete(event)
        await db.commit()

        logger.info(f"Evento {event.code} eliminado junto con {result.rowcount} tickets")
