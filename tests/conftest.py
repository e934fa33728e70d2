import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool


ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from gateway_app.db_models import Base
from key_rotator.types import KeyEvent, KeyEventType


class FakeClock:
    """Controllable clock returning aware datetimes in a fixed timezone."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)

    @property
    def naive_utc(self) -> datetime:
        return self.current.astimezone(timezone.utc).replace(tzinfo=None)


class RecordingUsageLogger:
    def __init__(self):
        self.events: list[KeyEvent] = []

    def emit(self, event: KeyEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: KeyEventType) -> list[KeyEvent]:
        return [e for e in self.events if e.type is event_type]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def usage_logger() -> RecordingUsageLogger:
    return RecordingUsageLogger()


@pytest_asyncio.fixture
async def session_maker() -> async_sessionmaker:
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    maker = async_sessionmaker(engine, expire_on_commit=False)
    try:
        yield maker
    finally:
        await engine.dispose()
