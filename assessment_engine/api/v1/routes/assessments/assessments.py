# Standard library imports
from typing import Any

# Third-party imports
from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel

# Local imports
from assessment_engine.core.logging_config import get_logger
from assessment_engine.core.response import Outcome
from assessment_engine.services.attempt_manager import AttemptManager
from assessment_engine.services.session_registry import SessionRegistry, get_session_registry

# Initialize logger and router
logger = get_logger("routes.assessments")
router = APIRouter(prefix="/assessments", tags=["assessments"])


# Data models
class AnswerPayload(BaseModel):
    answer: Any = None


async def _loaded_manager(
    assigned_id: int, user_id: str, registry: SessionRegistry
) -> tuple[AttemptManager, Outcome | None]:
    """Return the caller's manager, loading it on first use."""
    manager = await registry.get(user_id, assigned_id)
    if manager.policy is None:
        outcome = await manager.load()
        if not outcome.ok:
            return manager, outcome
    return manager, None


# Resolve session
@router.get("/{assigned_id}/session")
async def get_session(
    assigned_id: int,
    user_id: str = Header(..., alias="X-User-Id"),
    registry: SessionRegistry = Depends(get_session_registry),
):
    """Resolve which view to show for this assignment"""
    manager, failed = await _loaded_manager(assigned_id, user_id, registry)
    if failed is not None:
        return failed.to_response()
    outcome = await manager.refresh()
    return outcome.to_response()


# Start attempt
@router.post("/{assigned_id}/start")
async def start_attempt(
    assigned_id: int,
    user_id: str = Header(..., alias="X-User-Id"),
    registry: SessionRegistry = Depends(get_session_registry),
):
    """Start a new (possibly timed) attempt"""
    manager, failed = await _loaded_manager(assigned_id, user_id, registry)
    if failed is not None:
        return failed.to_response()
    outcome = await manager.start_attempt()
    return outcome.to_response()


# Record answer
@router.put("/{assigned_id}/answers/{question_index}")
async def record_answer(
    assigned_id: int,
    question_index: int,
    payload: AnswerPayload,
    user_id: str = Header(..., alias="X-User-Id"),
    registry: SessionRegistry = Depends(get_session_registry),
):
    """Keep an answer for the attempt in progress"""
    manager, failed = await _loaded_manager(assigned_id, user_id, registry)
    if failed is not None:
        return failed.to_response()
    return manager.record_answer(question_index, payload.answer).to_response()


# Submit attempt
@router.post("/{assigned_id}/submit")
async def submit_attempt(
    assigned_id: int,
    user_id: str = Header(..., alias="X-User-Id"),
    registry: SessionRegistry = Depends(get_session_registry),
):
    """Submit and grade the attempt in progress"""
    manager, failed = await _loaded_manager(assigned_id, user_id, registry)
    if failed is not None:
        return failed.to_response()
    outcome = await manager.submit()
    return outcome.to_response()


# Reattempt
@router.post("/{assigned_id}/reattempt")
async def reattempt(
    assigned_id: int,
    user_id: str = Header(..., alias="X-User-Id"),
    registry: SessionRegistry = Depends(get_session_registry),
):
    """Prepare a fresh attempt if the policy allows another one"""
    manager, failed = await _loaded_manager(assigned_id, user_id, registry)
    if failed is not None:
        return failed.to_response()
    outcome = await manager.reattempt()
    return outcome.to_response()


# View last attempt
@router.post("/{assigned_id}/view-last")
async def view_last_attempt(
    assigned_id: int,
    user_id: str = Header(..., alias="X-User-Id"),
    registry: SessionRegistry = Depends(get_session_registry),
):
    """Show the answers of the latest completed attempt"""
    manager, failed = await _loaded_manager(assigned_id, user_id, registry)
    if failed is not None:
        return failed.to_response()
    outcome = await manager.view_last_attempt()
    return outcome.to_response()


# Leave assessment
@router.post("/{assigned_id}/leave")
async def leave_assessment(
    assigned_id: int,
    user_id: str = Header(..., alias="X-User-Id"),
    registry: SessionRegistry = Depends(get_session_registry),
):
    """Stop the countdown; a timed attempt stays resumable until it expires"""
    await registry.release(user_id, assigned_id)
    return Outcome(status="success", msg="Left assessment").to_response()
