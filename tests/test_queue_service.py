"""Toma de tickets, cancelación y consultas del lado del alumno"""
import asyncio
import uuid
from datetime import timedelta

import pytest
import pytest_asyncio
from jose import JWTError
from sqlalchemy import event as sa_event, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from shared.auth.dependencies import user_to_identity
from shared.auth.jwt_handler import verify_ticket_token
from shared.database.connection import Base
from shared.database.models import Event, QueueEntry, QueueStatus, School, User
from shared.exceptions import BusyError, ConflictError, ForbiddenError, NotFoundError, ValidationError
from services.queue.services.queue_service import QueueService
from services.queue.services.admin_queue_service import AdminQueueService, BULK_CANCEL_REASON
from conftest import load_event


async def load_entry(db, entry_id) -> QueueEntry:
    return await db.get(QueueEntry, entry_id, populate_existing=True)


@pytest.mark.asyncio
async def test_join_issues_sequential_numbers(db, make_student, make_event):
    event_id = await make_event()

    numbers = []
    for _ in range(3):
        entry = await QueueService.join_queue(db, str(event_id), await make_student())
        numbers.append(entry.ticket_number)

    assert numbers == [1, 2, 3]
    event = await load_event(db, event_id)
    assert event.last_number_issued == 3
    assert event.slots_taken == 3


@pytest.mark.asyncio
async def test_join_signs_ticket_token(db, make_student, make_event):
    event_id = await make_event()
    entry = await QueueService.join_queue(db, str(event_id), await make_student())

    payload = verify_ticket_token(entry.access_token)
    assert payload["qid"] == str(entry.id)
    assert payload["eid"] == str(event_id)
    assert entry.status == QueueStatus.waiting.value
    assert entry.batch == 1


@pytest.mark.asyncio
async def test_ticket_token_expiry_follows_operation_clock(db, make_student, make_event, now):
    event_id = await make_event()
    entry = await QueueService.join_queue(db, str(event_id), await make_student(), now=now)

    assert entry.access_token_expires_at == now + timedelta(minutes=5)
    assert verify_ticket_token(entry.access_token, now=now + timedelta(minutes=4))["qid"] == str(entry.id)
    with pytest.raises(JWTError):
        verify_ticket_token(entry.access_token, now=now + timedelta(minutes=6))


@pytest.mark.asyncio
async def test_join_rejected_when_capacity_exceeded(db, make_student, make_event):
    event_id = await make_event(capacity=2)
    first, second, third = [await make_student() for _ in range(3)]

    await QueueService.join_queue(db, str(event_id), first)
    await QueueService.join_queue(db, str(event_id), second)
    with pytest.raises(ForbiddenError) as exc:
        await QueueService.join_queue(db, str(event_id), third)

    assert exc.value.message == "Gagal! Kuota pendaftaran sudah penuh."
    event = await load_event(db, event_id)
    assert event.slots_taken == 2
    assert event.last_number_issued == 2
    count = (await db.execute(select(QueueEntry.id).where(QueueEntry.event_id == event_id))).all()
    assert len(count) == 2


@pytest.mark.asyncio
async def test_join_rejects_duplicate_active_ticket(db, make_student, make_event):
    event_id = await make_event()
    student = await make_student()
    await QueueService.join_queue(db, str(event_id), student)

    with pytest.raises(ConflictError) as exc:
        await QueueService.join_queue(db, str(event_id), student)

    assert exc.value.message == "Anda sudah memiliki antrean aktif."
    event = await load_event(db, event_id)
    assert event.last_number_issued == 1
    assert event.slots_taken == 1


@pytest.mark.asyncio
async def test_join_rejects_other_school(db, other_school, make_student, make_event):
    event_id = await make_event()
    outsider = await make_student(school_id=other_school.id)

    with pytest.raises(ForbiddenError):
        await QueueService.join_queue(db, str(event_id), outsider)

    event = await load_event(db, event_id)
    assert event.slots_taken == 0


@pytest.mark.asyncio
async def test_join_rejected_while_closing(db, make_student, make_event):
    event_id = await make_event(stage="CLOSING")

    with pytest.raises(ForbiddenError) as exc:
        await QueueService.join_queue(db, str(event_id), await make_student())
    assert exc.value.message == "Gagal! Pendaftaran sedang DITUTUP."


@pytest.mark.asyncio
async def test_join_unknown_event(db, make_student):
    with pytest.raises(ValidationError):
        await QueueService.join_queue(db, "bukan-uuid", await make_student())
    with pytest.raises(NotFoundError):
        await QueueService.join_queue(db, "00000000-0000-0000-0000-000000000000", await make_student())


@pytest.mark.asyncio
async def test_join_number_collision_is_busy_and_rolls_back(db, make_student, make_event):
    event_id = await make_event()
    holder = await make_student()
    # El número #1 ya existe en el batch sin que el contador lo refleje
    db.add(QueueEntry(
        event_id=event_id,
        user_id=uuid.UUID(holder["user_id"]),
        ticket_number=1,
        batch=1,
        status=QueueStatus.cancelled.value,
    ))
    await db.commit()
    student = await make_student()

    with pytest.raises(BusyError) as exc:
        await QueueService.join_queue(db, str(event_id), student)

    assert exc.value.status_code == 409
    assert exc.value.message == "Sistem sibuk, silakan klik daftar kembali."
    event = await load_event(db, event_id)
    assert event.last_number_issued == 0
    assert event.slots_taken == 0


@pytest_asyncio.fixture
async def immediate_engine(tmp_path):
    """SQLite con BEGIN IMMEDIATE: dos escritores concurrentes se esperan en vez de fallar"""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'concurrent.db'}")

    @sa_event.listens_for(engine.sync_engine, "connect")
    def _driver_autocommit(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @sa_event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.mark.asyncio
async def test_concurrent_joins_get_distinct_numbers(immediate_engine):
    session_maker = async_sessionmaker(immediate_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_maker() as setup:
        school = School(name="SMA Negeri 9", code="SMAN9")
        setup.add(school)
        await setup.flush()
        users = [
            User(school_id=school.id, name=f"Siswa {i}", email=f"siswa{i}@sman9.sch.id")
            for i in range(1, 4)
        ]
        kegiatan = Event(school_id=school.id, code="BK-SERBU", name="Konseling BK")
        setup.add_all(users + [kegiatan])
        await setup.commit()
        identities = [user_to_identity(user) for user in users]
        event_id = kegiatan.id

    async def join(identity):
        async with session_maker() as session:
            entry = await QueueService.join_queue(session, str(event_id), identity)
            return entry.ticket_number

    numbers = await asyncio.gather(*(join(identity) for identity in identities))

    assert sorted(numbers) == [1, 2, 3]
    async with session_maker() as check:
        stored = await check.get(Event, event_id)
        assert stored.last_number_issued == 3
        assert stored.slots_taken == 3


@pytest.mark.asyncio
async def test_pre_order_cancel_deletes_and_returns_number(db, make_student, make_event, now):
    event_id = await make_event(start_at=now + timedelta(hours=1), end_at=now + timedelta(hours=3))
    student = await make_student()
    entry = await QueueService.join_queue(db, str(event_id), student, now=now)
    entry_id = entry.id

    message, cancelled = await QueueService.cancel_queue(db, str(entry_id), student, now=now)

    assert cancelled is None
    assert "Pre-Order" in message
    assert await load_entry(db, entry_id) is None
    event = await load_event(db, event_id)
    assert event.last_number_issued == 0
    assert event.slots_taken == 0


@pytest.mark.asyncio
async def test_pre_order_cancel_keeps_number_when_not_last(db, make_student, make_event, now):
    event_id = await make_event(start_at=now + timedelta(hours=1), end_at=now + timedelta(hours=3))
    first, second = await make_student(), await make_student()
    entry = await QueueService.join_queue(db, str(event_id), first, now=now)
    await QueueService.join_queue(db, str(event_id), second, now=now)

    await QueueService.cancel_queue(db, str(entry.id), first, now=now)

    event = await load_event(db, event_id)
    assert event.last_number_issued == 2
    assert event.slots_taken == 1


@pytest.mark.asyncio
async def test_active_cancel_marks_cancelled_and_frees_slot(db, make_student, make_event, now):
    event_id = await make_event(capacity=1)
    first, second = await make_student(), await make_student()
    entry = await QueueService.join_queue(db, str(event_id), first, now=now)

    message, cancelled = await QueueService.cancel_queue(db, str(entry.id), first, reason="Sakit", now=now)

    assert cancelled.status == QueueStatus.cancelled.value
    assert cancelled.cancel_reason == "Sakit"
    assert cancelled.access_token is None
    event = await load_event(db, event_id)
    assert event.slots_taken == 0
    assert event.last_number_issued == 1

    # El cupo liberado se puede volver a tomar; el número sigue creciendo
    replacement = await QueueService.join_queue(db, str(event_id), second, now=now)
    assert replacement.ticket_number == 2


@pytest.mark.asyncio
async def test_cancel_requires_owner_and_cancellable_status(db, admin, make_student, make_event):
    event_id = await make_event(locked=True)
    owner, stranger = await make_student(), await make_student()
    entry = await QueueService.join_queue(db, str(event_id), owner)
    entry_id = entry.id

    with pytest.raises(ForbiddenError):
        await QueueService.cancel_queue(db, str(entry_id), stranger)

    await AdminQueueService.call_next(db, str(event_id), admin)
    await AdminQueueService.complete(db, str(entry_id), admin)
    with pytest.raises(ConflictError):
        await QueueService.cancel_queue(db, str(entry_id), owner)


@pytest.mark.asyncio
async def test_request_postpone_only_from_waiting(db, make_student, make_event):
    event_id = await make_event()
    student = await make_student()
    entry = await QueueService.join_queue(db, str(event_id), student)

    postponed = await QueueService.request_postpone(db, str(entry.id), student, reason="Ke toilet")
    assert postponed.status == QueueStatus.postpone_requested.value
    assert postponed.postpone_reason == "Ke toilet"

    with pytest.raises(ConflictError) as exc:
        await QueueService.request_postpone(db, str(entry.id), student)
    assert exc.value.message == "Hanya status MENUNGGU yang bisa tunda."


@pytest.mark.asyncio
async def test_queue_detail_counts_people_ahead(db, make_student, make_event, now):
    event_id = await make_event(avg_service_minutes=5)
    students = [await make_student() for _ in range(3)]
    entries = [await QueueService.join_queue(db, str(event_id), s, now=now) for s in students]

    detail = await QueueService.get_queue_detail(db, str(entries[2].id), students[2], now=now)

    assert detail.people_ahead == 2
    assert detail.estimated_minutes == 10
    assert detail.estimated_wait_label == "10 m"
    assert detail.estimated_time == now + timedelta(minutes=10)

    with pytest.raises(ForbiddenError):
        await QueueService.get_queue_detail(db, str(entries[2].id), students[0], now=now)


@pytest.mark.asyncio
async def test_my_queues_split_current_and_history(db, make_student, make_event):
    first_event, second_event = await make_event(), await make_event()
    student = await make_student()
    old = await QueueService.join_queue(db, str(first_event), student)
    await QueueService.cancel_queue(db, str(old.id), student)
    await QueueService.join_queue(db, str(second_event), student)

    result = await QueueService.get_my_queues(db, student)

    assert [item.event_id for item in result.current] == [second_event]
    assert [item.status for item in result.history] == [QueueStatus.cancelled.value]
    assert result.current[0].event.dynamic_status == "OPEN"


@pytest.mark.asyncio
async def test_check_event_by_code(db, make_student, make_event):
    event_id = await make_event(code="BK-LANTAI-2")
    await QueueService.join_queue(db, str(event_id), await make_student())

    result = await QueueService.check_event(db, "BK-LANTAI-2")

    assert result.event.id == event_id
    assert result.total_waiting == 1
    assert result.current_number == 0


@pytest.mark.asyncio
async def test_refresh_token_and_qr_png(db, make_student, make_event):
    event_id = await make_event()
    student = await make_student()
    entry = await QueueService.join_queue(db, str(event_id), student)

    refreshed = await QueueService.refresh_ticket_token(db, str(entry.id), student)
    assert verify_ticket_token(refreshed.access_token)["qid"] == str(entry.id)

    png = await QueueService.get_ticket_qr(db, str(entry.id), student)
    assert png.startswith(b"\x89PNG")


@pytest.mark.asyncio
async def test_list_event_queue_for_manager_only(db, admin, other_admin, make_student, make_event):
    event_id = await make_event()
    for _ in range(2):
        await QueueService.join_queue(db, str(event_id), await make_student())

    listing = await QueueService.list_event_queue(db, str(event_id), admin)
    assert listing.total == 2
    assert [item.ticket_number for item in listing.entries] == [1, 2]
    assert listing.entries[0].user_name.startswith("Siswa")

    with pytest.raises(ForbiddenError):
        await QueueService.list_event_queue(db, str(event_id), other_admin)


@pytest.mark.asyncio
async def test_bulk_cancel_by_admin(db, admin, other_admin, make_student, make_event):
    first_event, second_event = await make_event(), await make_event()
    student = await make_student()
    await QueueService.join_queue(db, str(first_event), student)
    await QueueService.join_queue(db, str(second_event), student)

    assert await AdminQueueService.cancel_all_by_user(db, student["user_id"], other_admin) == 0
    assert await AdminQueueService.cancel_all_by_user(db, student["user_id"], admin) == 2

    entries = (await db.execute(
        select(QueueEntry).where(QueueEntry.event_id.in_([first_event, second_event]))
        .execution_options(populate_existing=True)
    )).scalars().all()
    assert {e.status for e in entries} == {QueueStatus.cancelled.value}
    assert {e.cancel_reason for e in entries} == {BULK_CANCEL_REASON}
    for event_id in (first_event, second_event):
        assert (await load_event(db, event_id)).slots_taken == 0
