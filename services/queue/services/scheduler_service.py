"""
Barrido automático de la cola

Cada barrido recorre los eventos abiertos o en cierre que están bloqueados y
aplica dos reglas independientes: auto-skip de llamadas vencidas y cierre de
la sesión cuando termina el horario. Un evento que falla se registra y se
salta; el resto del barrido continúa.
"""
import asyncio
import logging
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import select, update, func, case
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from shared.database.models import Event, EventStage, QueueEntry, QueueStatus, utcnow
from services.notifications.services.push_service import Notifier
from services.queue.services.lifecycle import (
    get_event_or_404, call_next_waiting, mark_missed, archive_active_entries, notify_call
)

logger = logging.getLogger(__name__)

AUTO_SKIP_REASON = "Tidak hadir (Auto-Skip)"
MANUAL_END_REASON = "Sesi diakhiri petugas"
AUTO_END_REASON = "Waktu layanan berakhir otomatis"


async def process_auto_actions(
    db: AsyncSession,
    event_id,
    notifier: Optional[Notifier] = None,
    now: Optional[datetime] = None
) -> Dict[str, int]:
    """Aplicar auto-skip y cierre de sesión a un evento"""
    now = now or utcnow()
    event = await get_event_or_404(db, event_id, refresh=True)
    stats = {"auto_skipped": 0, "called": 0, "archived": 0, "finished": 0}

    # 1. Auto-skip: llamada vencida -> MISSED y se llama al siguiente una vez
    expired = (await db.execute(
        select(QueueEntry.id)
        .where(
            QueueEntry.event_id == event.id,
            QueueEntry.status == QueueStatus.called.value,
            QueueEntry.call_expires_at < now,
        )
        .order_by(QueueEntry.ticket_number.asc())
    )).scalars().all()

    called = None
    for entry_id in expired:
        skipped = await mark_missed(db, entry_id, AUTO_SKIP_REASON, now, from_statuses=(QueueStatus.called.value,))
        if skipped is not None:
            stats["auto_skipped"] += 1
            logger.info(f"[SCHEDULER] Evento {event.code}: #{skipped.ticket_number} auto-skip")

    if stats["auto_skipped"]:
        called = await call_next_waiting(db, event, event.avg_service_minutes, now)
        if called is not None:
            stats["called"] = 1

    # 2. Cierre de sesión
    time_over = bool(event.end_at and now > event.end_at)
    manually_finished = event.stage == EventStage.finished.value

    if time_over or manually_finished:
        if not manually_finished:
            await db.execute(
                update(Event)
                .where(Event.id == event.id)
                .values(stage=EventStage.finished.value, locked=True)
                .execution_options(synchronize_session=False)
            )
            stats["finished"] = 1

        reason = MANUAL_END_REASON if manually_finished else AUTO_END_REASON
        stats["archived"] = await archive_active_entries(db, event.id, reason, now)
        if stats["archived"] or stats["finished"]:
            logger.info(
                f"[SCHEDULER] Evento {event.code}: sesión terminada, "
                f"{stats['archived']} tickets archivados ({reason})"
            )

    await db.commit()

    # Si la sesión terminó en este mismo barrido, el recién llamado ya quedó MISSED
    if called is not None and not (time_over or manually_finished):
        await notify_call(db, notifier, event, called, event.avg_service_minutes)

    return stats


async def run_global_scheduler(
    db: AsyncSession,
    notifier: Optional[Notifier] = None,
    now: Optional[datetime] = None
) -> Dict[str, int]:
    """Un barrido completo sobre los eventos bloqueados en OPEN o CLOSING"""
    now = now or utcnow()
    event_ids = (await db.execute(
        select(Event.id).where(
            Event.stage.in_((EventStage.open.value, EventStage.closing.value)),
            Event.locked.is_(True),
        )
    )).scalars().all()

    summary = {"events": len(event_ids), "failed": 0, "auto_skipped": 0, "archived": 0, "finished": 0}
    for event_id in event_ids:
        try:
            stats = await process_auto_actions(db, event_id, notifier, now)
        except Exception as e:
            summary["failed"] += 1
            logger.error(f"[SCHEDULER] Error procesando evento {event_id}: {e}", exc_info=True)
            await db.rollback()
            continue

        for key in ("auto_skipped", "archived", "finished"):
            summary[key] += stats[key]

    if summary["failed"]:
        logger.warning(f"[SCHEDULER] Barrido con {summary['failed']} eventos fallidos de {summary['events']}")
    return summary


async def reconcile_counters(db: AsyncSession, event_id) -> Event:
    """
    Recalcular contadores a partir de los tickets del batch actual

    slots_taken = tickets no cancelados del batch; last_number_issued nunca
    baja y sube al menos al número más alto emitido. No hace commit.
    """
    event = await get_event_or_404(db, event_id, refresh=True)

    occupied, highest = (await db.execute(
        select(
            func.count(QueueEntry.id).filter(QueueEntry.status != QueueStatus.cancelled.value),
            func.coalesce(func.max(QueueEntry.ticket_number), 0),
        ).where(
            QueueEntry.event_id == event.id,
            QueueEntry.batch == event.current_batch,
        )
    )).one()

    if occupied != event.slots_taken or highest > event.last_number_issued:
        logger.warning(
            f"[RECONCILE] Evento {event.code}: slots_taken {event.slots_taken} -> {occupied}, "
            f"last_number_issued {event.last_number_issued} -> max({highest})"
        )

    return (await db.execute(
        update(Event)
        .where(Event.id == event.id, Event.current_batch == event.current_batch)
        .values(
            slots_taken=occupied,
            last_number_issued=case(
                (Event.last_number_issued < highest, highest),
                else_=Event.last_number_issued,
            ),
        )
        .returning(Event)
        .execution_options(populate_existing=True, synchronize_session=False)
    )).scalar_one_or_none() or event


async def reconcile_all(db: AsyncSession) -> Dict[str, int]:
    """Reconciliar todos los eventos que no han terminado"""
    event_ids = (await db.execute(
        select(Event.id).where(Event.stage != EventStage.finished.value)
    )).scalars().all()

    summary = {"events": len(event_ids), "failed": 0}
    for event_id in event_ids:
        try:
            await reconcile_counters(db, event_id)
            await db.commit()
        except Exception as e:
            summary["failed"] += 1
            logger.error(f"[RECONCILE] Error reconciliando evento {event_id}: {e}", exc_info=True)
            await db.rollback()
    return summary


async def scheduler_loop(session_maker, notifier: Optional[Notifier] = None, interval: Optional[int] = None):
    """Loop en proceso: un barrido cada `interval` segundos hasta que se cancele la tarea"""
    interval = interval or settings.SCHEDULER_INTERVAL_SECONDS
    logger.info(f"[SCHEDULER] Loop en proceso iniciado (cada {interval}s)")

    while True:
        try:
            async with session_maker() as db:
                await run_global_scheduler(db, notifier)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[SCHEDULER] Error en barrido global: {e}", exc_info=True)
        await asyncio.sleep(interval)
