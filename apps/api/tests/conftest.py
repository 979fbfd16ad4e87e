import json
from typing import Any, Dict, List, Tuple
from unittest.mock import patch

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from main import app
from models.user import User
from routers import rate_limit


class FakeRedis:
    """Records PUBLISH calls; ``receivers`` maps channel -> subscriber count."""

    def __init__(self) -> None:
        self.published: List[Tuple[str, Dict[str, Any]]] = []
        self.receivers: Dict[str, int] = {}
        self.fail = False

    async def publish(self, channel: str, message: str) -> int:
        if self.fail:
            raise ConnectionError("redis unavailable")
        self.published.append((channel, json.loads(message)))
        return self.receivers.get(channel, 1)

    async def aclose(self) -> None:
        return None

    def events(self, channel_suffix: str = "") -> List[str]:
        return [message["event"] for channel, message in self.published if channel.endswith(channel_suffix)]


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture(autouse=True)
def fake_redis():
    """Route realtime publishes into memory instead of a Redis server."""
    client = FakeRedis()
    with patch("services.broadcaster.redis.from_url", return_value=client):
        yield client


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "licence_ledger.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def make_user(db_session):
    async def _make_user(username: str = "alice", credits: int = 0) -> str:
        user_id = f"user-{username}"
        db_session.add(User(id=user_id, username=username, email=f"{username}@example.com", credit_balance=credits))
        await db_session.commit()
        return user_id

    return _make_user
