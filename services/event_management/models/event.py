"""Modelos Pydantic para eventos (sesiones de servicio)"""
from pydantic import BaseModel
from typing import Optional, Any, Union
from datetime import datetime
from uuid import UUID

from shared.database.models import Event
from services.event_management.services.status import derive_status


# Campos numéricos aceptan int o string numérico ("10"); se validan en el servicio
NumericInput = Optional[Union[int, str]]


class EventCreate(BaseModel):
    code: Optional[str] = None  # idKegiatan, único
    name: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    thumbnail_url: Optional[str] = None
    start_at: Optional[Any] = None
    end_at: Optional[Any] = None
    capacity: NumericInput = None
    avg_service_minutes: NumericInput = None
    grace_period_minutes: NumericInput = None
    stage: Optional[str] = None


class EventUpdate(BaseModel):
    name: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    thumbnail_url: Optional[str] = None
    start_at: Optional[Any] = None
    end_at: Optional[Any] = None
    capacity: NumericInput = None
    avg_service_minutes: NumericInput = None
    grace_period_minutes: NumericInput = None
    stage: Optional[str] = None  # OPEN | CLOSING | FINISHED
    locked: Optional[bool] = None


class LockRequest(BaseModel):
    locked: Optional[bool] = None  # None = invertir


class EventResponse(BaseModel):
    id: UUID
    school_id: UUID
    code: str
    name: str
    category: str
    description: Optional[str] = None
    location: Optional[str] = None
    thumbnail_url: Optional[str] = None
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    capacity: Optional[int] = None
    last_number_issued: int
    slots_taken: int
    current_batch: int
    total_served: int
    avg_service_minutes: int
    grace_period_minutes: int
    stage: str
    locked: bool
    dynamic_status: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @classmethod
    def from_event(cls, event: Event, now: Optional[datetime] = None, **extra):
        """Construir respuesta calculando el estado dinámico en `now`"""
        data = {
            column: getattr(event, column)
            for column in cls.model_fields
            if column not in ("dynamic_status",) and column not in extra and hasattr(event, column)
        }
        return cls(dynamic_status=derive_status(event, now).value, **data, **extra)


class EventWithStatsResponse(EventResponse):
    total_waiting: int = 0
    current_number: Optional[int] = None
    estimated_wait_minutes: int = 0


class EventActionResponse(BaseModel):
    message: str
    event: Optional[EventResponse] = None
