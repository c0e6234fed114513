"""
Shared fixtures: an isolated SQLite database per test, an HTTP client bound
to the app, and fakes for the display side (clock, audio output, backend).
"""

import os

# Must be set before the app modules read their configuration
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-for-testing-only")

from datetime import datetime, timedelta
from typing import Optional

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import database
from database import Base, get_db
from auth.jwt import create_access_token
from models.kds import KitchenOrderLine, ItemMaster, Department, Category
from models.user import User
from services.errors import PlaybackError
from services.sound_storage import SoundStorage
from services.timer_store import MemoryStore


# ========== Display-side fakes ==========

class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now_ms = (start or datetime(2026, 3, 1, 12, 0, 0)).timestamp() * 1000

    def __call__(self) -> float:
        return self.now_ms

    def seconds(self) -> float:
        return self.now_ms / 1000

    def advance(self, seconds: float):
        self.now_ms += seconds * 1000

    @property
    def now(self) -> datetime:
        return datetime.fromtimestamp(self.now_ms / 1000)


class FakeAudioOutput:
    def __init__(self, failures: int = 0):
        self.failures = failures
        self.plays: list[tuple[str, bool]] = []
        self.attempts = 0
        self.stops = 0
        self.current_source: Optional[str] = None
        self.playing = False
        self.looping = False

    def is_playing(self) -> bool:
        return self.playing

    async def play(self, source: str, volume: float = 1.0, loop: bool = False) -> None:
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise PlaybackError("blocked")
        self.plays.append((source, loop))
        self.current_source = source
        self.playing = True
        self.looping = loop

    async def stop(self) -> None:
        self.stops += 1
        self.current_source = None
        self.playing = False
        self.looping = False

    def finish_sound(self):
        """The current single-shot sound ran to its end."""
        if not self.looping:
            self.playing = False


async def no_sleep(_seconds):
    return None


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def audio():
    return FakeAudioOutput()


# ========== Database and app ==========

@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'kds.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def sound_storage(tmp_path):
    return SoundStorage(str(tmp_path / "custom"))


@pytest_asyncio.fixture
async def client(db_engine, session_factory, sound_storage, monkeypatch, tmp_path):
    from main import app
    from api.audio import get_sound_storage

    monkeypatch.setattr(database, "engine", db_engine)
    monkeypatch.setattr(database, "AsyncSessionLocal", session_factory)
    monkeypatch.setattr(database, "CONFIG_PATH", str(tmp_path / "config.json"))

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_sound_storage] = lambda: sound_storage

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    token = create_access_token(data={"sub": "1001", "name": "Chef Sam"})
    return {"Authorization": f"Bearer {token}"}


# ========== Seed data ==========

async def seed_kitchen(session: AsyncSession, now: Optional[datetime] = None) -> datetime:
    """
    Two KDS categories and three active orders:

        101  burger (+ no onions, + extra cheese), fries       category 1
        102  salad                                              category 1
        201  cake                                               category 2
    """
    now = now or datetime.now()
    session.add_all([
        Category(cat_code=1, cat_name="Grill", kds=True),
        Category(cat_code=2, cat_name="Pastry", kds=True),
        Category(cat_code=3, cat_name="Bar", kds=False),
        Department(dept_code="D1", dept_name="Dining", dept_name_ar="صالة"),
        ItemMaster(item_code="BURGER", item_name="Burger", item_name2="برجر", time_to_finish=15),
        ItemMaster(item_code="NOONION", item_name="No onions", time_to_finish=0),
        ItemMaster(item_code="CHEESE", item_name="Extra cheese", time_to_finish=0),
        ItemMaster(item_code="FRIES", item_name="Fries", time_to_finish=5),
        ItemMaster(item_code="SALAD", item_name="Salad", time_to_finish=30),
        ItemMaster(item_code="CAKE", item_name="Cake", time_to_finish=10),
        User(casher_key="1234", user_name="Chef Sam"),
    ])

    ordered = now - timedelta(minutes=20)
    lines = [
        (101, "BURGER", "I", 1, ordered),
        (101, "NOONION", "M", 1, ordered),
        (101, "CHEESE", "M", 1, ordered),
        (101, "FRIES", "I", 2, ordered),
        (102, "SALAD", "I", 1, now - timedelta(minutes=5)),
    ]
    for order_no, item_code, item_type, qty, order_time in lines:
        session.add(KitchenOrderLine(
            cat_code=1, main_order_no=order_no, order_no=order_no, item_code=item_code,
            item_type=item_type, qty=qty, order_time=order_time, table_id=7,
            table_description="Table 7", dep_code="D1",
        ))
    session.add(KitchenOrderLine(
        cat_code=2, main_order_no=201, order_no=201, item_code="CAKE", item_type="I",
        qty=1, order_time=now - timedelta(minutes=2), dep_code="D1",
    ))
    await session.commit()
    return now
