"""Modelos SQLAlchemy: escuelas, usuarios, eventos (sesiones de servicio) y tickets de la cola"""
from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, ForeignKey, Text, Uuid,
    UniqueConstraint, Index
)
from sqlalchemy.orm import relationship
from sqlalchemy.types import TypeDecorator
from datetime import datetime, timezone
from enum import Enum
import uuid
from shared.database.connection import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """DateTime que siempre devuelve valores aware en UTC.

    PostgreSQL guarda `timestamptz`; SQLite (tests) no conoce zonas horarias,
    así que ahí se guarda el valor UTC sin tzinfo.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            value = value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class UserRole(str, Enum):
    user = "USER"
    admin = "ADMIN"
    super_admin = "SUPER_ADMIN"


class EventStage(str, Enum):
    """Estado explícito de la sesión (lo fija el admin o el scheduler)"""

    open = "OPEN"
    closing = "CLOSING"
    finished = "FINISHED"


class DynamicStatus(str, Enum):
    """Estado derivado; se calcula en cada lectura, nunca se persiste"""

    pre_order = "PRE_ORDER"
    open = "OPEN"
    full = "FULL"
    closing = "CLOSING"
    finished = "FINISHED"


class QueueStatus(str, Enum):
    waiting = "WAITING"
    called = "CALLED"
    serving = "SERVING"
    done = "DONE"
    cancelled = "CANCELLED"
    missed = "MISSED"
    postpone_requested = "POSTPONE_REQUESTED"


ACTIVE_STATUSES = (
    QueueStatus.waiting.value,
    QueueStatus.called.value,
    QueueStatus.serving.value,
    QueueStatus.postpone_requested.value,
)
CANCELLABLE_STATUSES = (
    QueueStatus.waiting.value,
    QueueStatus.called.value,
    QueueStatus.postpone_requested.value,
)
TERMINAL_STATUSES = (
    QueueStatus.done.value,
    QueueStatus.cancelled.value,
    QueueStatus.missed.value,
)
IN_SERVICE_STATUSES = (QueueStatus.called.value, QueueStatus.serving.value)


class School(Base):
    __tablename__ = "schools"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    code = Column(String, unique=True, nullable=False, index=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)

    # Relaciones
    users = relationship("User", back_populates="school")
    events = relationship("Event", back_populates="school", cascade="all, delete-orphan")


class User(Base):
    __tablename__ = "users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    school_id = Column(Uuid(as_uuid=True), ForeignKey("schools.id", ondelete="SET NULL"), nullable=True, index=True)
    name = Column(String, nullable=True)
    email = Column(String, unique=True, nullable=True, index=True)
    role = Column(String, nullable=False, default=UserRole.user.value)  # USER, ADMIN, SUPER_ADMIN
    push_token = Column(String, nullable=True)  # token FCM del dispositivo
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Relaciones
    school = relationship("School", back_populates="users")
    queue_entries = relationship("QueueEntry", back_populates="user")


class Event(Base):
    __tablename__ = "events"
    __table_args__ = (
        Index("ix_events_school_stage", "school_id", "stage"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    school_id = Column(Uuid(as_uuid=True), ForeignKey("schools.id", ondelete="CASCADE"), nullable=False)
    code = Column(String, unique=True, nullable=False, index=True)  # código legible (idKegiatan)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String, nullable=False, default="LAINNYA")
    location = Column(String, nullable=True)
    thumbnail_url = Column(String, nullable=True)

    start_at = Column(UTCDateTime, nullable=True)
    end_at = Column(UTCDateTime, nullable=True)
    capacity = Column(Integer, nullable=True)  # NULL = sin límite

    # Contadores: solo se modifican con UPDATE atómicos (col = col + n)
    last_number_issued = Column(Integer, nullable=False, default=0)
    slots_taken = Column(Integer, nullable=False, default=0)
    current_batch = Column(Integer, nullable=False, default=1)
    total_served = Column(Integer, nullable=False, default=0)
    total_service_duration_seconds = Column(Integer, nullable=False, default=0)

    avg_service_minutes = Column(Integer, nullable=False, default=5)
    grace_period_minutes = Column(Integer, nullable=False, default=5)

    stage = Column(String, nullable=False, default=EventStage.open.value)  # OPEN, CLOSING, FINISHED
    locked = Column(Boolean, nullable=False, default=False)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Relaciones
    school = relationship("School", back_populates="events")
    entries = relationship("QueueEntry", back_populates="event", cascade="all, delete-orphan", passive_deletes=True)


class QueueEntry(Base):
    __tablename__ = "queue_entries"
    __table_args__ = (
        UniqueConstraint("event_id", "batch", "ticket_number", name="uq_queue_entries_event_batch_number"),
        Index("ix_queue_entries_event_batch_status", "event_id", "batch", "status"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_id = Column(Uuid(as_uuid=True), ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    ticket_number = Column(Integer, nullable=False)
    batch = Column(Integer, nullable=False, default=1)
    status = Column(String, nullable=False, default=QueueStatus.waiting.value)

    requested_at = Column(UTCDateTime, default=utcnow, nullable=False)
    called_at = Column(UTCDateTime, nullable=True)
    call_expires_at = Column(UTCDateTime, nullable=True)
    service_started_at = Column(UTCDateTime, nullable=True)
    service_ended_at = Column(UTCDateTime, nullable=True)
    ended_at = Column(UTCDateTime, nullable=True)  # cierre genérico (cancelado, perdido, terminado)

    postponed = Column(Boolean, nullable=False, default=False)
    postpone_reason = Column(String, nullable=True)
    cancel_reason = Column(String, nullable=True)
    missed_reason = Column(String, nullable=True)  # auto-skip, skip manual, fin de sesión, nuevo batch

    access_token = Column(String, nullable=True, index=True)
    access_token_expires_at = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Relaciones
    event = relationship("Event", back_populates="entries")
    user = relationship("User", back_populates="queue_entries")
