"""Fixtures compartidos: SQLite async en archivo temporal, usuarios y eventos de prueba"""
import os

# Configuración antes de importar la app (Settings se lee al importar)
os.environ.setdefault("DATABASE_URL", "sqlite:///./antrikuy-test.db")
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["RATE_LIMIT_STORAGE_URI"] = "memory://"
os.environ["SCHEDULER_MODE"] = "off"
os.environ["PUSH_SERVER_KEY"] = ""
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from shared.database.connection import Base
from shared.database.models import School, User, Event, UserRole
from shared.auth.dependencies import user_to_identity
from services.notifications.services.push_service import Notifier


class FakeNotifier(Notifier):
    """Registra las notificaciones en memoria"""

    def __init__(self):
        self.user_messages = []
        self.topic_messages = []

    def notify_user(self, token, title, body, data=None):
        self.user_messages.append({"token": token, "title": title, "body": body, "data": data or {}})

    def notify_topic(self, topic, title, body, data=None):
        self.topic_messages.append({"topic": topic, "title": title, "body": body, "data": data or {}})


@pytest.fixture
def now():
    return datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'antrikuy.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def db(engine):
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_maker() as session:
        yield session


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest_asyncio.fixture
async def school(db):
    school = School(name="SMA Negeri 1", code="SMAN1")
    db.add(school)
    await db.commit()
    return school


@pytest_asyncio.fixture
async def other_school(db):
    school = School(name="SMA Negeri 2", code="SMAN2")
    db.add(school)
    await db.commit()
    return school


@pytest_asyncio.fixture
async def admin(db, school):
    user = User(school_id=school.id, name="Petugas TU", email="admin@sman1.sch.id", role=UserRole.admin.value)
    db.add(user)
    await db.commit()
    return user_to_identity(user)


@pytest_asyncio.fixture
async def other_admin(db, other_school):
    user = User(school_id=other_school.id, name="Petugas Lain", email="admin@sman2.sch.id", role=UserRole.admin.value)
    db.add(user)
    await db.commit()
    return user_to_identity(user)


@pytest_asyncio.fixture
async def make_student(db, school):
    """Factory: crea un alumno y devuelve su identidad (dict)"""
    counter = {"n": 0}
    default_school_id = school.id

    async def _make(school_id=None, push_token=None):
        counter["n"] += 1
        n = counter["n"]
        user = User(
            school_id=school_id if school_id is not None else default_school_id,
            name=f"Siswa {n}",
            email=f"siswa{n}@sman1.sch.id",
            push_token=push_token if push_token is not None else f"device-{n}",
        )
        db.add(user)
        await db.commit()
        return user_to_identity(user)

    return _make


@pytest_asyncio.fixture
async def make_event(db, school):
    """Factory: crea un evento de la escuela y devuelve su id"""
    counter = {"n": 0}
    school_id = school.id

    async def _make(**overrides):
        counter["n"] += 1
        values = {
            "school_id": school_id,
            "code": f"KONSELING-{counter['n']}",
            "name": f"Konseling BK {counter['n']}",
            "capacity": None,
            "avg_service_minutes": 5,
            "grace_period_minutes": 5,
        }
        values.update(overrides)
        event = Event(**values)
        db.add(event)
        await db.commit()
        return event.id

    return _make


async def load_event(db, event_id) -> Event:
    """Releer el evento desde la base (los objetos quedan expirados tras un rollback)"""
    return await db.get(Event, event_id, populate_existing=True)


def at(base: datetime, minutes: float) -> datetime:
    return base + timedelta(minutes=minutes)
