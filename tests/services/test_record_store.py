from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from assessment_engine.core.exceptions import ConfigurationError, PersistenceError, TransientFetchError
from assessment_engine.services.record_store import (
    ANSWERS,
    ASSESSMENTS,
    ASSIGNED_ASSESSMENTS,
    ATTEMPTS,
    SqlRecordStore,
)


pytestmark = pytest.mark.anyio


async def _assignment(store) -> int:
    assessment = await store.insert(ASSESSMENTS, {"title": "Cells", "questions": []})
    assigned = await store.insert(ASSIGNED_ASSESSMENTS, {"assessment_id": assessment["id"], "section_id": 4})
    return assigned["id"]


async def test_insert_returns_the_stored_record_with_defaults(store):
    assessment = await store.insert(ASSESSMENTS, {"title": "Cells", "questions": [{"activityType": "Matching"}]})

    assert assessment["id"] is not None
    assert assessment["type"] == "Quiz"
    assert assessment["questions"] == [{"activityType": "Matching"}]

    fetched = await store.fetch_one(ASSESSMENTS, {"id": assessment["id"]})
    assert fetched == assessment


async def test_datetimes_come_back_in_utc(store):
    assigned_id = await _assignment(store)
    started = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    attempt = await store.insert(ATTEMPTS, {
        "assigned_assessment_id": assigned_id,
        "user_id": "student-1",
        "started_at": started,
    })

    assert attempt["started_at"] == started
    assert attempt["started_at"].tzinfo is not None
    assert attempt["score"] is None


async def test_fetch_many_filters_and_orders(store):
    assigned_id = await _assignment(store)
    for user_id in ("student-1", "student-2", "student-1"):
        await store.insert(ATTEMPTS, {"assigned_assessment_id": assigned_id, "user_id": user_id})

    mine = await store.fetch_many(ATTEMPTS, {"user_id": "student-1"}, order="-id")
    assert [row["user_id"] for row in mine] == ["student-1", "student-1"]
    assert mine[0]["id"] > mine[1]["id"]

    both = await store.fetch_many(ATTEMPTS, {"user_id": ["student-1", "student-2"]})
    assert len(both) == 3

    unscored = await store.fetch_many(ATTEMPTS, {"score": None})
    assert len(unscored) == 3


async def test_insert_many_and_update(store):
    assigned_id = await _assignment(store)
    attempt = await store.insert(ATTEMPTS, {"assigned_assessment_id": assigned_id, "user_id": "student-1"})

    answers = await store.insert_many(ANSWERS, [
        {"attempt_id": attempt["id"], "user_id": "student-1", "question_index": 0, "answer": "B"},
        {"attempt_id": attempt["id"], "user_id": "student-1", "question_index": 1, "answer": ["1", "2"]},
    ])
    assert [row["answer"] for row in answers] == ["B", ["1", "2"]]
    assert await store.insert_many(ANSWERS, []) == []

    updated = await store.update(ATTEMPTS, {"id": attempt["id"]}, {"score": 1.5})
    assert updated["score"] == 1.5


async def test_update_without_a_match_fails(store):
    with pytest.raises(PersistenceError):
        await store.update(ATTEMPTS, {"id": 12345}, {"score": 1})


async def test_unknown_collection_or_column_is_a_configuration_error(store):
    with pytest.raises(ConfigurationError):
        await store.fetch_many("gradebook", {})
    with pytest.raises(ConfigurationError):
        await store.fetch_many(ATTEMPTS, {"grade": 1})


async def test_subscribers_see_matching_committed_changes(store):
    assigned_id = await _assignment(store)
    seen = []

    async def on_change(change):
        seen.append((change["event"], change["record"]["user_id"]))

    unsubscribe = store.subscribe(ATTEMPTS, {"user_id": "student-1"}, on_change)
    first = await store.insert(ATTEMPTS, {"assigned_assessment_id": assigned_id, "user_id": "student-1"})
    await store.insert(ATTEMPTS, {"assigned_assessment_id": assigned_id, "user_id": "student-2"})
    await store.update(ATTEMPTS, {"id": first["id"]}, {"score": 3})

    unsubscribe()
    await store.update(ATTEMPTS, {"id": first["id"]}, {"score": 4})

    assert seen == [("INSERT", "student-1"), ("UPDATE", "student-1")]


async def test_failing_subscriber_does_not_undo_the_write(store):
    assigned_id = await _assignment(store)

    def on_change(change):
        raise RuntimeError("listener crashed")

    store.subscribe(ATTEMPTS, {}, on_change)
    attempt = await store.insert(ATTEMPTS, {"assigned_assessment_id": assigned_id, "user_id": "student-1"})

    assert await store.fetch_one(ATTEMPTS, {"id": attempt["id"]}) is not None


async def test_database_failures_map_to_engine_errors(tmp_path):
    # The tables were never created
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.sqlite'}")
    store = SqlRecordStore(sessionmaker(engine, class_=AsyncSession, expire_on_commit=False))
    try:
        with pytest.raises(TransientFetchError):
            await store.fetch_many(ATTEMPTS, {"user_id": "student-1"})
        with pytest.raises(PersistenceError):
            await store.insert(ATTEMPTS, {"assigned_assessment_id": 1, "user_id": "student-1"})
    finally:
        await engine.dispose()
