from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator, Callable, List, Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from assessment_engine.db.deps import Base
from assessment_engine.services.attempt_manager import AttemptManager
from assessment_engine.services.record_store import (
    ASSESSMENTS,
    ASSIGNED_ASSESSMENTS,
    SqlRecordStore,
)


class FakeClock:
    """Wall clock the tests move by hand."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Ensure pytest-anyio uses asyncio for all async tests."""
    return "asyncio"


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture()
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'assessments.sqlite'}", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture()
def store(session_factory) -> SqlRecordStore:
    return SqlRecordStore(session_factory)


@pytest.fixture()
def seed(store) -> Callable[..., Any]:
    async def _seed(
        questions: Any,
        allowed_attempts: int = 1,
        time_limit_minutes: int = 0,
        deadline: Optional[datetime] = None,
        kind: str = "Quiz",
    ) -> int:
        assessment = await store.insert(ASSESSMENTS, {
            "title": "Week 3 check-in",
            "type": kind,
            "questions": questions,
        })
        assigned = await store.insert(ASSIGNED_ASSESSMENTS, {
            "assessment_id": assessment["id"],
            "section_id": 1,
            "allowed_attempts": allowed_attempts,
            "time_limit_minutes": time_limit_minutes,
            "deadline": deadline,
        })
        return assigned["id"]

    return _seed


@pytest.fixture()
async def make_manager(store, clock) -> AsyncGenerator[Callable[..., AttemptManager], None]:
    managers: List[AttemptManager] = []

    def _make(assigned_id: int, user_id: str = "student-1", **options) -> AttemptManager:
        options.setdefault("store", store)
        options.setdefault("clock", clock)
        # Tests drive the countdown with tick(); keep the background loop idle
        options.setdefault("tick_interval", 3600)
        manager = AttemptManager(user_id=user_id, assigned_assessment_id=assigned_id, **options)
        managers.append(manager)
        return manager

    yield _make

    for manager in managers:
        await manager.close()
