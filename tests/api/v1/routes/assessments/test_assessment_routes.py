from __future__ import annotations

import httpx
import pytest

from assessment_engine.main import app
from assessment_engine.services.session_registry import SessionRegistry, get_session_registry


pytestmark = pytest.mark.anyio


QUESTIONS = [
    {"activityType": "True or False", "question": "Cells have walls", "correctAnswer": "False"},
    {
        "activityType": "Matching",
        "question": "Match the organelle",
        "matchingPairs": [
            {"left": "Mitochondria", "right": "Energy"},
            {"left": "Ribosome", "right": "Protein"},
        ],
    },
]
HEADERS = {"X-User-Id": "student-42"}


@pytest.fixture()
async def registry(store, clock):
    registry = SessionRegistry(store=store, clock=clock, tick_interval=3600)
    app.dependency_overrides[get_session_registry] = lambda: registry
    try:
        yield registry
    finally:
        app.dependency_overrides.pop(get_session_registry, None)
        await registry.close_all()


@pytest.fixture()
async def client(registry):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def test_untimed_quiz_over_http(client, seed):
    assigned_id = await seed(QUESTIONS, allowed_attempts=2)
    base = f"/api/v1/assessments/{assigned_id}"

    session = await client.get(f"{base}/session", headers=HEADERS)
    assert session.status_code == 200
    assert session.json()["data"]["state"] == "in_progress"
    assert session.json()["data"]["question_count"] == 2

    r = await client.put(f"{base}/answers/0", json={"answer": "false"}, headers=HEADERS)
    assert r.status_code == 200
    r = await client.put(f"{base}/answers/1", json={"answer": ["Energy", "Protein"]}, headers=HEADERS)
    assert r.status_code == 200

    submitted = await client.post(f"{base}/submit", headers=HEADERS)
    body = submitted.json()
    assert submitted.status_code == 200
    assert body["status"] == "success"
    assert body["data"]["state"] == "viewing_results"
    assert body["data"]["results"]["score"] == 2
    assert body["data"]["can_reattempt"] is True

    again = await client.post(f"{base}/reattempt", headers=HEADERS)
    assert again.status_code == 200
    assert again.json()["data"]["state"] == "in_progress"


async def test_incomplete_submission_returns_conflict(client, seed):
    assigned_id = await seed(QUESTIONS)
    base = f"/api/v1/assessments/{assigned_id}"
    await client.put(f"{base}/answers/0", json={"answer": "True"}, headers=HEADERS)

    r = await client.post(f"{base}/submit", headers=HEADERS)

    assert r.status_code == 409
    body = r.json()
    assert body["status"] == "error"
    assert body["error_code"] == "POLICY_VIOLATION"
    assert body["data"] == {"unanswered": [1]}


async def test_timed_attempt_start_and_leave(client, registry, seed):
    assigned_id = await seed(QUESTIONS, time_limit_minutes=5)
    base = f"/api/v1/assessments/{assigned_id}"

    session = await client.get(f"{base}/session", headers=HEADERS)
    assert session.json()["data"]["state"] == "not_started"

    started = await client.post(f"{base}/start", headers=HEADERS)
    assert started.status_code == 200
    assert started.json()["data"]["remaining_seconds"] == 300

    left = await client.post(f"{base}/leave", headers=HEADERS)
    assert left.status_code == 200

    resumed = await client.get(f"{base}/session", headers=HEADERS)
    assert resumed.json()["data"]["state"] == "in_progress"
    assert resumed.json()["data"]["remaining_seconds"] == 300


async def test_view_last_requires_a_previous_attempt(client, seed):
    assigned_id = await seed(QUESTIONS)

    r = await client.post(f"/api/v1/assessments/{assigned_id}/view-last", headers=HEADERS)

    assert r.status_code == 409
    assert r.json()["error_code"] == "POLICY_VIOLATION"


async def test_unknown_assignment_is_not_found(client):
    r = await client.get("/api/v1/assessments/404/session", headers=HEADERS)

    assert r.status_code == 404
    assert r.json()["error_code"] == "NOT_FOUND"
    assert r.json()["msg"] == "This assessment is not assigned."


async def test_missing_user_header_is_a_validation_error(client, seed):
    assigned_id = await seed(QUESTIONS)

    r = await client.get(f"/api/v1/assessments/{assigned_id}/session")

    assert r.status_code == 422
    body = r.json()
    assert body["error_code"] == "VALIDATION_ERROR"
    assert body["details"][0]["field"] == "header.X-User-Id"


async def test_unknown_route_uses_the_error_shape(client):
    r = await client.get("/api/v1/nowhere", headers=HEADERS)

    assert r.status_code == 404
    assert r.json() == {"status": "error", "msg": "Not Found"}
