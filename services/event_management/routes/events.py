"""Rutas de gestión de eventos"""
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional, Dict
from shared.database.connection import get_db
from shared.auth.dependencies import get_current_user, get_current_admin
from services.event_management.models.event import (
    EventCreate,
    EventUpdate,
    EventResponse,
    EventWithStatsResponse,
    EventActionResponse,
    LockRequest,
)
from services.event_management.services.event_service import EventService
from services.notifications.services.push_service import Notifier, get_notifier


router = APIRouter()


@router.get("", response_model=List[EventWithStatsResponse])
async def get_events(
    school_id: Optional[str] = Query(None, description="Solo SUPER_ADMIN"),
    code: Optional[str] = Query(None, description="Código del evento (idKegiatan)"),
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_user)
):
    """
    Listar eventos de la escuela con estadísticas del batch actual

    SUPER_ADMIN ve todas las escuelas
    """
    return await EventService.get_events(db, current_user, school_id=school_id, code=code)


@router.post("", response_model=EventResponse, status_code=status.HTTP_201_CREATED)
async def create_event(
    payload: EventCreate,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_admin)
):
    """
    Crear evento

    Requiere: role ADMIN con escuela
    """
    event = await EventService.create_event(db, payload, current_user)
    return EventResponse.from_event(event)


@router.get("/{event_id}", response_model=EventResponse)
async def get_event(
    event_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_user)
):
    """Obtener evento por ID"""
    event = await EventService.get_event_by_id(db, event_id)
    return EventResponse.from_event(event)


@router.put("/{event_id}", response_model=EventActionResponse)
async def update_event(
    event_id: str,
    payload: EventUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_admin),
    notifier: Notifier = Depends(get_notifier)
):
    """Actualizar evento / cambiar estado (OPEN, CLOSING, FINISHED)"""
    event = await EventService.update_event(db, event_id, payload, current_user, notifier)
    return EventActionResponse(message="Berhasil diperbarui", event=EventResponse.from_event(event))


@router.put("/{event_id}/lock", response_model=EventActionResponse)
async def toggle_lock(
    event_id: str,
    payload: Optional[LockRequest] = None,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_admin)
):
    """Bloquear / desbloquear inscripciones"""
    event = await EventService.toggle_lock(db, event_id, payload.locked if payload else None, current_user)
    return EventActionResponse(
        message=f"Layanan {'DIKUNCI' if event.locked else 'DIBUKA'}.",
        event=EventResponse.from_event(event),
    )


@router.delete("/{event_id}", response_model=EventActionResponse)
async def delete_event(
    event_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_admin)
):
    """Eliminar evento y todos sus tickets"""
    await EventService.delete_event(db, event_id, current_user)
    return EventActionResponse(message="Kegiatan dan semua antrean terkait berhasil dihapus")
