"""Pytest config: temp SQLite database, recording transport and a controllable clock."""
import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest

root = Path(__file__).resolve().parent.parent
if str(root) not in sys.path:
    sys.path.insert(0, str(root))

from database.db import db  # noqa: E402
from orchestrator.config import Config  # noqa: E402
from orchestrator.container import ServiceContainer  # noqa: E402


class FakeClock:
    """Naive-UTC clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2024, 1, 15, 12, 0, 30)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingTransport:
    """Transport that keeps every delivered SMS in memory."""

    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.fail_for: set[str] = set()

    async def deliver(self, message_id: int, to_phone: str, content: str) -> str:
        if to_phone in self.fail_for:
            raise RuntimeError("carrier rejected the message")
        self.sent.append((to_phone, content))
        return "sent"

    async def health(self) -> bool:
        return True

    async def close(self) -> None:
        return None

    def to(self, phone: str) -> list[str]:
        return [content for to_phone, content in self.sent if to_phone == phone]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
async def database(tmp_path):
    db.database_url = f"sqlite+aiosqlite:///{tmp_path}/test.db"
    await db.connect()
    await db.create_tables()
    yield db
    await db.disconnect()


@pytest.fixture
async def services(database, transport, clock):
    container = await ServiceContainer.create(Config(), transport=transport, clock=clock)

    async def no_sleep(seconds):
        return None

    container.broadcast_dispatcher.sleep = no_sleep
    yield container
    await container.broadcast_dispatcher.stop()
