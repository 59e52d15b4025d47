"""Modelos Pydantic para la cola (tickets)"""
from pydantic import BaseModel, Field, AliasChoices
from typing import Optional, List, Any
from datetime import datetime
from uuid import UUID

from services.event_management.models.event import EventResponse


class JoinRequest(BaseModel):
    # La app móvil original envía eventIdKegiatan
    event_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("event_id", "eventIdKegiatan"))


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class PostponeRequest(BaseModel):
    reason: Optional[str] = None


class CallNextRequest(BaseModel):
    event_id: str


class SkipRequest(BaseModel):
    event_id: str
    queue_id: str


class CompleteRequest(BaseModel):
    queue_id: str


class RespondPostponeRequest(BaseModel):
    action: str  # APPROVE | REJECT


class ValidateQrRequest(BaseModel):
    event_id: str
    token: str = Field(validation_alias=AliasChoices("token", "qr_token"))


class ServeManualRequest(BaseModel):
    token: str


class ResetCounterRequest(BaseModel):
    event_id: str
    new_avg_time: Optional[Any] = None


class CancelUserAllRequest(BaseModel):
    user_id: str


class QueueEntryResponse(BaseModel):
    id: UUID
    event_id: UUID
    user_id: UUID
    ticket_number: int
    batch: int
    status: str
    requested_at: Optional[datetime] = None
    called_at: Optional[datetime] = None
    call_expires_at: Optional[datetime] = None
    service_started_at: Optional[datetime] = None
    service_ended_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    postponed: bool = False
    postpone_reason: Optional[str] = None
    cancel_reason: Optional[str] = None
    missed_reason: Optional[str] = None
    access_token: Optional[str] = None
    access_token_expires_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class QueueEntryWithEvent(QueueEntryResponse):
    event: Optional[EventResponse] = None


class MyQueuesResponse(BaseModel):
    current: List[QueueEntryWithEvent] = []
    history: List[QueueEntryWithEvent] = []


class QueueDetailResponse(BaseModel):
    entry: QueueEntryResponse
    event: EventResponse
    people_ahead: int
    estimated_minutes: int
    estimated_time: datetime
    estimated_wait_label: str


class QueueActionResponse(BaseModel):
    message: str
    data: Optional[QueueEntryResponse] = None


class QueueListItem(QueueEntryResponse):
    user_name: Optional[str] = None


class QueueListResponse(BaseModel):
    event: EventResponse
    total: int
    entries: List[QueueListItem] = []


class CheckEventResponse(BaseModel):
    event: EventResponse
    total_waiting: int
    current_number: int


class DashboardSummary(BaseModel):
    waiting: int = 0
    postpone_requested: int = 0
    called: int = 0
    serving: int = 0
    done: int = 0
    missed: int = 0
    cancelled: int = 0
    total: int = 0  # slots_taken
    entries: int = 0  # tickets del batch actual


class DashboardResponse(BaseModel):
    event: EventResponse
    current_batch: int
    last_number_issued: int
    serving: Optional[QueueListItem] = None
    called: Optional[QueueListItem] = None
    waiting: List[QueueListItem] = []
    summary: DashboardSummary


class ResetCounterResponse(BaseModel):
    message: str
    current_batch: int
    archived: int = 0


class BulkCancelResponse(BaseModel):
    message: str
    cancelled: int


class ReconcileResponse(BaseModel):
    message: str
    slots_taken: int
    last_number_issued: int


class SkipResponse(BaseModel):
    message: str
    skipped: QueueEntryResponse
    next_called: Optional[QueueEntryResponse] = None
