"""Rutas de la cola (tickets)"""
from fastapi import APIRouter, Depends, Request, Response, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Dict, Optional
from shared.database.connection import get_db
from shared.auth.dependencies import get_current_user, get_current_admin
from shared.utils.rate_limiter import limiter, RATE_LIMITS
from shared.exceptions import ValidationError
from services.notifications.services.push_service import Notifier, get_notifier
from services.queue.models.queue import (
    JoinRequest,
    CancelRequest,
    PostponeRequest,
    CallNextRequest,
    SkipRequest,
    CompleteRequest,
    RespondPostponeRequest,
    ValidateQrRequest,
    ServeManualRequest,
    ResetCounterRequest,
    CancelUserAllRequest,
    QueueEntryResponse,
    QueueActionResponse,
    QueueDetailResponse,
    QueueListResponse,
    MyQueuesResponse,
    CheckEventResponse,
    DashboardResponse,
    SkipResponse,
    ResetCounterResponse,
    BulkCancelResponse,
    ReconcileResponse,
)
from services.queue.services.queue_service import QueueService
from services.queue.services.admin_queue_service import AdminQueueService


router = APIRouter()


def _action(message: str, entry=None) -> QueueActionResponse:
    return QueueActionResponse(
        message=message,
        data=QueueEntryResponse.model_validate(entry) if entry is not None else None,
    )


async def _join(db: AsyncSession, event_id: Optional[str], current_user: Dict) -> QueueActionResponse:
    if not event_id:
        raise ValidationError("ID Layanan tidak valid.")
    entry = await QueueService.join_queue(db, event_id, current_user)
    return _action(f"Berhasil! Nomor antrean Anda #{entry.ticket_number}.", entry)


# ============ USUARIO ============

@router.post("/join", response_model=QueueActionResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(RATE_LIMITS["join"])
async def join_queue(
    request: Request,
    payload: JoinRequest,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_user)
):
    """Tomar ticket (event_id en el body)"""
    return await _join(db, payload.event_id, current_user)


@router.post("/join/{event_id}", response_model=QueueActionResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(RATE_LIMITS["join"])
async def join_queue_by_path(
    request: Request,
    event_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_user)
):
    """Tomar ticket (event_id en la ruta)"""
    return await _join(db, event_id, current_user)


@router.get("/my", response_model=MyQueuesResponse)
async def get_my_queues(
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_user)
):
    """Tickets activos e historial del usuario"""
    return await QueueService.get_my_queues(db, current_user)


@router.get("/check-event/{event_ref}", response_model=CheckEventResponse)
async def check_event(
    event_ref: str,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_user)
):
    """Estado de la sesión antes de tomar ticket (por id o código)"""
    return await QueueService.check_event(db, event_ref)


@router.post("/cancel/{queue_id}", response_model=QueueActionResponse)
async def cancel_queue(
    queue_id: str,
    payload: Optional[CancelRequest] = None,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_user)
):
    """Cancelar el propio ticket"""
    message, entry = await QueueService.cancel_queue(
        db, queue_id, current_user, reason=payload.reason if payload else None
    )
    return _action(message, entry)


@router.post("/validate-qr", response_model=QueueActionResponse)
@limiter.limit(RATE_LIMITS["validation"])
async def validate_qr(
    request: Request,
    payload: ValidateQrRequest,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_admin)
):
    """
    Escanear QR del ticket y empezar el servicio

    Requiere admin de la escuela (dispositivo del petugas / kiosko)
    """
    entry = await AdminQueueService.validate_and_start_service(db, payload.event_id, payload.token, current_user)
    return _action("Berhasil memuat data layanan", entry)


# ============ PETUGAS ============

@router.get("/list", response_model=QueueListResponse)
async def list_event_queue(
    event: str = Query(..., description="ID o código del evento"),
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_admin)
):
    """Todos los tickets de un evento"""
    return await QueueService.list_event_queue(db, event, current_user)


@router.get("/event/{event_id}/dashboard", response_model=DashboardResponse)
async def get_dashboard(
    event_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_admin)
):
    """Vista en vivo del batch actual"""
    return await AdminQueueService.get_dashboard(db, event_id, current_user)


@router.post("/admin/call-next", response_model=QueueActionResponse)
async def call_next(
    payload: CallNextRequest,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_admin),
    notifier: Notifier = Depends(get_notifier)
):
    """Llamar al siguiente ticket WAITING"""
    result = await AdminQueueService.call_next(db, payload.event_id, current_user, notifier)
    return _action(result["message"], result["data"])


@router.api_route("/admin/skip", methods=["POST", "PUT"], response_model=SkipResponse)
async def skip_queue(
    payload: SkipRequest,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_admin),
    notifier: Notifier = Depends(get_notifier)
):
    """Saltar un ticket y llamar al siguiente"""
    result = await AdminQueueService.skip(db, payload.event_id, payload.queue_id, current_user, notifier)
    return SkipResponse(
        message=result["message"],
        skipped=QueueEntryResponse.model_validate(result["skipped"]),
        next_called=QueueEntryResponse.model_validate(result["next_called"]) if result["next_called"] else None,
    )


@router.api_route("/admin/finish", methods=["POST", "PUT"], response_model=QueueActionResponse)
async def complete_queue(
    payload: CompleteRequest,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_admin)
):
    """Terminar el servicio del ticket"""
    entry = await AdminQueueService.complete(db, payload.queue_id, current_user)
    return _action("Layanan selesai, kuota pendaftaran tetap terisi.", entry)


@router.post("/admin/serve-manual", response_model=QueueActionResponse)
async def serve_manual(
    payload: ServeManualRequest,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_admin)
):
    """Empezar el servicio sin escanear (búsqueda por token)"""
    entry = await AdminQueueService.serve_manual(db, payload.token, current_user)
    return _action("Layanan dimulai secara manual.", entry)


@router.put("/admin/{queue_id}/respond-postpone", response_model=QueueActionResponse)
async def respond_postpone(
    queue_id: str,
    payload: RespondPostponeRequest,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_admin),
    notifier: Notifier = Depends(get_notifier)
):
    """Aprobar o rechazar una solicitud de tunda"""
    result = await AdminQueueService.respond_postpone(db, queue_id, payload.action, current_user, notifier)
    return _action(result["message"], result["data"])


@router.post("/admin/reset-counter", response_model=ResetCounterResponse)
async def reset_counter(
    payload: ResetCounterRequest,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_admin)
):
    """Reabrir la sesión o iniciar un batch nuevo"""
    result = await AdminQueueService.reset_counter(db, payload.event_id, current_user, payload.new_avg_time)
    return ResetCounterResponse(**result)


@router.post("/admin/cancel-user-all", response_model=BulkCancelResponse)
async def cancel_user_all(
    payload: CancelUserAllRequest,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_admin)
):
    """Cancelar todos los tickets activos de un usuario"""
    cancelled = await AdminQueueService.cancel_all_by_user(db, payload.user_id, current_user)
    if not cancelled:
        return BulkCancelResponse(message="Tidak ada antrean aktif untuk dibatalkan.", cancelled=0)
    return BulkCancelResponse(message=f"Berhasil membatalkan {cancelled} antrian aktif.", cancelled=cancelled)


@router.post("/admin/reconcile/{event_id}", response_model=ReconcileResponse)
async def reconcile_event(
    event_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_admin)
):
    """Recalcular contadores a partir de los tickets reales"""
    event = await AdminQueueService.reconcile(db, event_id, current_user)
    return ReconcileResponse(
        message="Penghitung layanan berhasil disinkronkan.",
        slots_taken=event.slots_taken,
        last_number_issued=event.last_number_issued,
    )


# ============ TICKET (rutas con parámetro al final) ============

@router.put("/{queue_id}/postpone", response_model=QueueActionResponse)
async def request_postpone(
    queue_id: str,
    payload: Optional[PostponeRequest] = None,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_user)
):
    """Solicitar tunda"""
    entry = await QueueService.request_postpone(db, queue_id, current_user, reason=payload.reason if payload else None)
    return _action("Permintaan tunda berhasil dikirim.", entry)


@router.api_route("/{queue_id}/refresh-qr", methods=["GET", "POST"], response_model=QueueActionResponse)
async def refresh_qr(
    queue_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_user)
):
    """Firmar un nuevo QR para el ticket"""
    entry = await QueueService.refresh_ticket_token(db, queue_id, current_user)
    return _action("QR Token diperbarui.", entry)


@router.get("/{queue_id}/qr", response_class=Response)
async def get_ticket_qr(
    queue_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_user)
):
    """Imagen PNG del QR del ticket"""
    png = await QueueService.get_ticket_qr(db, queue_id, current_user)
    return Response(content=png, media_type="image/png", headers={"Cache-Control": "no-store"})


@router.get("/{queue_id}", response_model=QueueDetailResponse)
async def get_queue_detail(
    queue_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_user)
):
    """Detalle del ticket con posición y estimación"""
    return await QueueService.get_queue_detail(db, queue_id, current_user)
