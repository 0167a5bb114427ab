"""Lifecycle of one student's attempts at one assigned assessment.

`resolve_session` derives the session state from persisted attempts;
`AttemptManager` drives start / answer / submit / reattempt on top of it and
owns the countdown of the active timed attempt. Every public operation
returns an `Outcome`; engine errors never escape to the caller.
"""

import functools
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from assessment_engine.core.config import settings
from assessment_engine.core.exceptions import (
    AssessmentError,
    ConfigurationError,
    PersistenceError,
    PolicyViolation,
    RecordNotFound,
    TransientFetchError,
)
from assessment_engine.core.logging_config import get_logger
from assessment_engine.core.response import Outcome, outcome_from_error, success_outcome
from assessment_engine.schemas.assessment import (
    AnswerRecord,
    AssessmentDefinition,
    AssignmentPolicy,
    AttemptRecord,
    Question,
    parse_questions,
)
from assessment_engine.services import grading
from assessment_engine.services.countdown import Countdown, TickCallback
from assessment_engine.services.record_store import (
    ANSWERS,
    ASSESSMENTS,
    ASSIGNED_ASSESSMENTS,
    ATTEMPTS,
    RecordStore,
    Unsubscribe,
)
from assessment_engine.utils.datetime_utils import ensure_utc, get_current_utc_datetime
from assessment_engine.utils.enums import SessionState


logger = get_logger("attempt_manager")


class SessionResolution(BaseModel):
    state: SessionState
    is_timed: bool
    attempt_count: int
    allowed_attempts: int
    active_attempt: Optional[AttemptRecord] = None
    latest_attempt: Optional[AttemptRecord] = None
    completed_attempts: List[AttemptRecord] = Field(default_factory=list)
    offer_view_last: bool = False


def is_timed(policy: AssignmentPolicy, questions: Sequence[Question]) -> bool:
    # File submissions are never timed, whatever the policy says
    return policy.time_limit_minutes > 0 and not grading.is_file_submission_only(questions)


def is_attempt_active(attempt: AttemptRecord, policy: AssignmentPolicy, now: datetime) -> bool:
    expires_at = attempt.expires_at(policy.time_limit)
    return expires_at is not None and attempt.score is None and now < expires_at


def is_attempt_completed(
    attempt: AttemptRecord,
    policy: AssignmentPolicy,
    questions: Sequence[Question],
    now: datetime,
) -> bool:
    if attempt.is_scored:
        return True
    if grading.is_file_submission_only(questions):
        return True
    if is_timed(policy, questions):
        expires_at = attempt.expires_at(policy.time_limit)
        return expires_at is not None and now >= expires_at
    return False


def resolve_session(
    policy: AssignmentPolicy,
    questions: Sequence[Question],
    attempts: Sequence[AttemptRecord],
    now: datetime,
) -> SessionResolution:
    """Decide which view to present from the persisted attempts alone."""
    timed = is_timed(policy, questions)
    file_only = grading.is_file_submission_only(questions)
    ordered = sorted(attempts, key=lambda a: a.id)

    completed = [a for a in ordered if is_attempt_completed(a, policy, questions, now)]
    attempt_count = len(completed)
    latest = completed[-1] if completed else None
    base = dict(
        is_timed=timed,
        attempt_count=attempt_count,
        allowed_attempts=policy.allowed_attempts,
        latest_attempt=latest,
        completed_attempts=completed,
    )

    if timed:
        active = [a for a in ordered if is_attempt_active(a, policy, now)]
        if active:
            return SessionResolution(state=SessionState.in_progress, active_attempt=active[-1], **base)

    if attempt_count == 0:
        state = SessionState.not_started if timed else SessionState.in_progress
        return SessionResolution(state=state, **base)

    if attempt_count < policy.allowed_attempts:
        # Every file submission is itself a reviewable submission
        return SessionResolution(
            state=SessionState.awaiting_choice, offer_view_last=not file_only, **base
        )

    return SessionResolution(state=SessionState.viewing_results, **base)


def _recovers(action: str):
    """Turn engine errors raised by an operation into an error Outcome."""
    def decorator(fn):
        @functools.wraps(fn)
        async def wrapper(self: "AttemptManager", *args, **kwargs) -> Outcome:
            try:
                return await fn(self, *args, **kwargs)
            except AssessmentError as e:
                logger.warning(
                    f"{action} failed user_id={self.user_id} "
                    f"assigned_assessment_id={self.assigned_assessment_id}: [{e.error_code}] {e.msg}"
                )
                self.last_error = e.msg
                return outcome_from_error(e)
        return wrapper
    return decorator


class AttemptManager:
    """One assessment-taking session for one (student, assigned assessment) pair."""

    def __init__(
        self,
        store: RecordStore,
        user_id: str,
        assigned_assessment_id: int,
        clock: Callable[[], datetime] = get_current_utc_datetime,
        on_tick: Optional[TickCallback] = None,
        tick_interval: Optional[float] = None,
        require_complete: Optional[bool] = None,
    ):
        self.store = store
        self.user_id = str(user_id)
        self.assigned_assessment_id = assigned_assessment_id
        self._clock = clock
        self._on_tick = on_tick
        self._tick_interval = tick_interval
        self._require_complete = (
            settings.REQUIRE_COMPLETE_SUBMISSION if require_complete is None else require_complete
        )

        self.definition: Optional[AssessmentDefinition] = None
        self.policy: Optional[AssignmentPolicy] = None
        self.questions: List[Question] = []

        # None until the first successful resolution
        self.state: Optional[SessionState] = None
        self.resolution: Optional[SessionResolution] = None
        self.attempt_count = 0
        self.answers: Dict[int, Any] = {}
        self.active_attempt: Optional[AttemptRecord] = None
        self.countdown: Optional[Countdown] = None
        self.results: Optional[Dict[str, Any]] = None
        self.last_error: Optional[str] = None

        self._submitting = False
        self._mutating = False
        self._answers_saved_for: Optional[int] = None
        # Answers of a submission that could not be finished; retries grade these
        self._frozen_answers: Optional[Dict[int, Any]] = None
        self._unsubscribe: Optional[Unsubscribe] = None

    # Derived properties

    @property
    def is_timed(self) -> bool:
        return self.policy is not None and is_timed(self.policy, self.questions)

    @property
    def file_submission_only(self) -> bool:
        return grading.is_file_submission_only(self.questions)

    @property
    def submitting(self) -> bool:
        return self._submitting

    @property
    def can_reattempt(self) -> bool:
        if self.policy is None or self.state not in (
            SessionState.awaiting_choice, SessionState.viewing_results
        ):
            return False
        if self.attempt_count >= self.policy.allowed_attempts:
            return False
        return not self._graded_file_submission()

    def _graded_file_submission(self) -> bool:
        if not self.file_submission_only or self.resolution is None:
            return False
        return any(a.is_scored for a in self.resolution.completed_attempts)

    def remaining_seconds(self) -> Optional[int]:
        if self.countdown is None or self.countdown.stopped:
            return None
        return self.countdown.remaining_seconds()

    def snapshot(self) -> Dict[str, Any]:
        """Everything the UI needs to render the current view."""
        policy = self.policy
        now = self._now()
        return {
            "state": self.state.value if self.state else None,
            "assigned_assessment_id": self.assigned_assessment_id,
            "title": self.definition.title if self.definition else None,
            "question_count": len(self.questions),
            "is_timed": self.is_timed,
            "time_limit_minutes": policy.time_limit_minutes if policy else None,
            "deadline": policy.deadline.isoformat() if policy and policy.deadline else None,
            "deadline_passed": policy.deadline_passed(now) if policy else False,
            "attempt_count": self.attempt_count,
            "allowed_attempts": policy.allowed_attempts if policy else None,
            "can_reattempt": self.can_reattempt,
            "offer_view_last": bool(self.resolution and self.resolution.offer_view_last),
            "active_attempt_id": self.active_attempt.id if self.active_attempt else None,
            "started_at": (
                self.active_attempt.started_at.isoformat()
                if self.active_attempt and self.active_attempt.started_at else None
            ),
            "remaining_seconds": self.remaining_seconds(),
            "answers": {str(k): v for k, v in sorted(self.answers.items())},
            "results": self.results,
        }

    # Loading & resolution

    @_recovers("load")
    async def load(self) -> Outcome:
        """Fetch the definition and policy, then resolve the session."""
        assigned = await self.store.fetch_one(ASSIGNED_ASSESSMENTS, {"id": self.assigned_assessment_id})
        if assigned is None:
            raise RecordNotFound("This assessment is not assigned.")
        assessment = await self.store.fetch_one(ASSESSMENTS, {"id": assigned["assessment_id"]})
        if assessment is None:
            raise RecordNotFound("Assessment not found.")

        policy = AssignmentPolicy.model_validate(assigned)
        questions = self._parse_questions(assessment)
        attempts = await self._fetch_attempts()

        self.policy = policy
        self.questions = questions
        self.definition = AssessmentDefinition(
            id=assessment["id"],
            title=assessment.get("title") or "",
            type=assessment.get("type"),
            description=assessment.get("description"),
            questions=questions,
        )
        return await self._resolve(attempts)

    @_recovers("refresh")
    async def refresh(self) -> Outcome:
        """Re-read attempts and recompute the session state."""
        self._require_loaded()
        attempts = await self._fetch_attempts()
        return await self._resolve(attempts)

    def _parse_questions(self, assessment: Dict[str, Any]) -> List[Question]:
        try:
            return parse_questions(assessment.get("questions"))
        except ConfigurationError as e:
            logger.error(f"Assessment {assessment.get('id')} has unusable questions: {e.msg}")
            return []

    async def _fetch_attempts(self) -> List[AttemptRecord]:
        rows = await self.store.fetch_many(
            ATTEMPTS,
            {"user_id": self.user_id, "assigned_assessment_id": self.assigned_assessment_id},
            order="id",
        )
        return [AttemptRecord.model_validate(row) for row in rows]

    async def _resolve(self, attempts: Sequence[AttemptRecord]) -> Outcome:
        resolution = resolve_session(self.policy, self.questions, attempts, self._now())

        # Reads first so a failure keeps the last known-good state
        results = None
        if resolution.state == SessionState.viewing_results and resolution.latest_attempt is not None:
            results = await self._load_results(resolution.latest_attempt)

        self.resolution = resolution
        self.attempt_count = resolution.attempt_count
        if resolution.active_attempt is not None:
            self._resume(resolution.active_attempt)
        else:
            self._stop_countdown()
            self.active_attempt = None
        if resolution.state != SessionState.in_progress:
            self.answers = {}
            self._answers_saved_for = None
            self._frozen_answers = None
        self.results = results
        self.state = resolution.state
        self.last_error = None

        logger.debug(
            f"Session resolved user_id={self.user_id} assigned_assessment_id={self.assigned_assessment_id} "
            f"state={resolution.state.value} attempts={resolution.attempt_count}/{resolution.allowed_attempts}"
        )
        return success_outcome("Session resolved", data=self.snapshot())

    async def _load_results(self, attempt: AttemptRecord) -> Dict[str, Any]:
        rows = await self.store.fetch_many(ANSWERS, {"attempt_id": attempt.id}, order="question_index")
        answers = {}
        for row in rows:
            record = AnswerRecord.model_validate(row)
            answers[record.question_index] = record.answer
        return self._results_payload(attempt, answers)

    def _results_payload(self, attempt: AttemptRecord, answers: Dict[int, Any]) -> Dict[str, Any]:
        result = grading.score(self.questions, answers)
        return {
            "attempt_id": attempt.id,
            "score": attempt.score,
            "pending_manual_grade": attempt.score is None and result.pending_manual,
            "submitted_at": attempt.created_at.isoformat() if attempt.created_at else None,
            "summary": {
                "total_questions": len(self.questions),
                "graded_questions": result.graded_count,
                "manual_questions": result.manual_count,
                "correct": result.correct_count,
                "incorrect": result.incorrect_count,
                "points": result.points,
                "total_possible": result.total_possible,
                "percent": result.percent,
            },
            "answers": {str(k): v for k, v in sorted(answers.items())},
            "review": grading.review(self.questions, answers),
        }

    # Countdown

    def _resume(self, attempt: AttemptRecord) -> None:
        if (
            self.active_attempt is not None
            and self.active_attempt.id == attempt.id
            and self.countdown is not None
            and not self.countdown.stopped
        ):
            return
        if self.active_attempt is None or self.active_attempt.id != attempt.id:
            self.answers = {}
            self._answers_saved_for = None
            self._frozen_answers = None
        self.active_attempt = attempt
        self._start_countdown(attempt)
        logger.info(
            f"Resumed timed attempt {attempt.id} user_id={self.user_id} "
            f"remaining={self.countdown.remaining}s"
        )

    def _start_countdown(self, attempt: AttemptRecord) -> None:
        self._stop_countdown()
        self.countdown = Countdown(
            started_at=attempt.started_at,
            duration_seconds=self.policy.time_limit_minutes * 60,
            on_expire=self._on_expire,
            clock=self._clock,
            on_tick=self._on_tick,
            interval=self._tick_interval,
        )
        self.countdown.start()

    def _stop_countdown(self) -> None:
        if self.countdown is not None:
            self.countdown.stop()

    async def _on_expire(self) -> None:
        logger.info(f"Time is up for attempt {self.active_attempt.id if self.active_attempt else None}; auto-submitting")
        outcome = await self.submit(is_auto_submit=True)
        if not outcome.ok:
            logger.error(f"Auto-submission failed: {outcome.msg}")

    # Operations

    @_recovers("start attempt")
    async def start_attempt(self) -> Outcome:
        """Begin a new attempt; timed attempts are persisted with their start time."""
        self._require_loaded()
        if self._submitting:
            raise PolicyViolation("A submission is already in progress.")
        now = self._now()
        if self.policy.deadline_passed(now):
            raise PolicyViolation("The deadline for this assessment has passed.")

        attempts = await self._fetch_attempts()
        resolution = resolve_session(self.policy, self.questions, attempts, now)
        if resolution.active_attempt is not None:
            # Started on another device; carry on with that one
            return await self._resolve(attempts)
        if resolution.attempt_count >= self.policy.allowed_attempts:
            raise PolicyViolation(
                f"You have used all {self.policy.allowed_attempts} attempt(s) for this assessment."
            )

        if resolution.is_timed:
            self._mutating = True
            try:
                record = await self.store.insert(ATTEMPTS, {
                    "assigned_assessment_id": self.assigned_assessment_id,
                    "user_id": self.user_id,
                    "started_at": now,
                    "created_at": now,
                })
            finally:
                self._mutating = False
            attempt = AttemptRecord.model_validate(record)
            self.active_attempt = attempt
            self._start_countdown(attempt)
            logger.info(
                f"Started timed attempt {attempt.id} user_id={self.user_id} "
                f"limit={self.policy.time_limit_minutes}min"
            )
        else:
            self._stop_countdown()
            self.active_attempt = None

        self.resolution = resolution
        self.attempt_count = resolution.attempt_count
        self.answers = {}
        self.results = None
        self._answers_saved_for = None
        self._frozen_answers = None
        self.state = SessionState.in_progress
        return success_outcome("Attempt started", data=self.snapshot())

    def record_answer(self, question_index: int, answer: Any) -> Outcome:
        """Keep an answer in memory until submission."""
        if self.state != SessionState.in_progress or self._submitting:
            return outcome_from_error(PolicyViolation("There is no attempt in progress."))
        if not 0 <= question_index < len(self.questions):
            return outcome_from_error(PolicyViolation(f"Question {question_index + 1} does not exist."))
        if self._frozen_answers is not None:
            return outcome_from_error(PolicyViolation(
                "Your answers have already been submitted. Retry the submission to finish."
            ))
        if self._attempt_expired(self._now()):
            return outcome_from_error(PolicyViolation("Time is up. Answers can no longer be changed."))
        self.answers[question_index] = answer
        return success_outcome("Answer recorded", data={"question_index": question_index})

    @_recovers("submit")
    async def submit(self, is_auto_submit: bool = False) -> Outcome:
        """Persist the answers, grade them and move to the results view.

        Only one submission runs at a time; a second call while one is in
        flight is a no-op. Once a timed attempt has run out of time, or its
        answers are already stored, a retry submits that frozen set as is.
        """
        self._require_loaded()
        if self._submitting:
            logger.info(f"Submission already in flight user_id={self.user_id}; ignoring duplicate")
            return success_outcome("Submission already in progress", data={"duplicate": True})
        if self.state != SessionState.in_progress:
            raise PolicyViolation("There is no attempt in progress to submit.")

        now = self._now()
        frozen = self._frozen_answers is not None
        timed_out = is_auto_submit or self._attempt_expired(now)
        if not (timed_out or frozen):
            if self.policy.deadline_passed(now):
                raise PolicyViolation(
                    "The deadline for this assessment has passed. You can no longer submit your answers."
                )
            if self._require_complete:
                missing = grading.unanswered_indices(self.questions, self.answers)
                if missing:
                    raise PolicyViolation(
                        "Please answer all questions before submitting.",
                        data={"unanswered": missing},
                    )

        self._submitting = True
        self._mutating = True
        countdown_was_running = self.countdown is not None and not self.countdown.stopped
        # Cancellation precedes persistence
        self._stop_countdown()
        answers = dict(self._frozen_answers if frozen else self.answers)
        try:
            return await self._persist_submission(answers, now, timed_out)
        except PersistenceError:
            self.answers = answers
            if timed_out or self._answers_saved_for is not None:
                self._frozen_answers = answers
            attempt = self.active_attempt
            if (
                countdown_was_running
                and attempt is not None
                and is_attempt_active(attempt, self.policy, self._now())
            ):
                self._start_countdown(attempt)
            raise
        finally:
            self._submitting = False
            self._mutating = False

    async def _persist_submission(self, answers: Dict[int, Any], now: datetime, is_auto_submit: bool) -> Outcome:
        attempt = self.active_attempt
        if attempt is None:
            attempts = await self._fetch_attempts()
            resolution = resolve_session(self.policy, self.questions, attempts, now)
            if resolution.attempt_count >= self.policy.allowed_attempts:
                raise PolicyViolation(
                    f"You have used all {self.policy.allowed_attempts} attempt(s) for this assessment."
                )
            record = await self.store.insert(ATTEMPTS, {
                "assigned_assessment_id": self.assigned_assessment_id,
                "user_id": self.user_id,
                "created_at": now,
            })
            attempt = AttemptRecord.model_validate(record)
            # Reused if a later step fails and the user retries
            self.active_attempt = attempt

        rows = [
            {
                "attempt_id": attempt.id,
                "user_id": self.user_id,
                "question_index": index,
                "answer": answer,
            }
            for index, answer in sorted(answers.items())
        ]
        if rows and self._answers_saved_for != attempt.id:
            await self.store.insert_many(ANSWERS, rows)
            self._answers_saved_for = attempt.id

        patch: Dict[str, Any] = {"score": grading.final_score(self.questions, answers)}
        # A resumed timed attempt keeps its creation time; started_at marks the session
        if attempt.started_at is None:
            patch["created_at"] = now
        updated = AttemptRecord.model_validate(
            await self.store.update(ATTEMPTS, {"id": attempt.id}, patch)
        )
        logger.info(
            f"Submitted attempt {updated.id} user_id={self.user_id} score={updated.score} "
            f"auto={is_auto_submit} answers={len(rows)}"
        )

        self.active_attempt = None
        self.answers = {}
        self._answers_saved_for = None
        self._frozen_answers = None
        self.results = self._results_payload(updated, answers)
        self.state = SessionState.viewing_results

        # Fresh count; other devices may have submitted too
        try:
            attempts = await self._fetch_attempts()
            self.resolution = resolve_session(self.policy, self.questions, attempts, self._now())
            self.attempt_count = self.resolution.attempt_count
        except TransientFetchError:
            logger.warning(
                f"Submitted attempt {updated.id} but could not re-read attempts; count may be stale"
            )

        msg = (
            "Time is up. Your answers were submitted automatically."
            if is_auto_submit else "Assessment submitted successfully!"
        )
        return success_outcome(msg, data=self.snapshot())

    @_recovers("reattempt")
    async def reattempt(self) -> Outcome:
        """Discard the previous view and prepare a fresh attempt."""
        self._require_loaded()
        if self._submitting:
            raise PolicyViolation("A submission is already in progress.")
        if self.state == SessionState.in_progress:
            raise PolicyViolation("An attempt is already in progress.")

        attempts = await self._fetch_attempts()
        resolution = resolve_session(self.policy, self.questions, attempts, self._now())
        if resolution.active_attempt is not None:
            return await self._resolve(attempts)

        self.resolution = resolution
        self.attempt_count = resolution.attempt_count
        if resolution.attempt_count >= self.policy.allowed_attempts:
            raise PolicyViolation(
                f"You have used all {self.policy.allowed_attempts} attempt(s) for this assessment."
            )
        if self._graded_file_submission():
            raise PolicyViolation("This submission has already been graded.")

        self._stop_countdown()
        self.active_attempt = None
        self.answers = {}
        self.results = None
        self._answers_saved_for = None
        self._frozen_answers = None
        self.state = SessionState.not_started if resolution.is_timed else SessionState.in_progress
        return success_outcome("Ready for a new attempt", data=self.snapshot())

    @_recovers("view last attempt")
    async def view_last_attempt(self) -> Outcome:
        """Show the latest completed attempt without using up an attempt."""
        self._require_loaded()
        if self.state not in (SessionState.awaiting_choice, SessionState.viewing_results):
            raise PolicyViolation("There is no previous attempt to view right now.")
        resolution = self.resolution
        if resolution is None or resolution.latest_attempt is None:
            raise PolicyViolation("There is no previous attempt to view.")
        if not resolution.offer_view_last and resolution.state == SessionState.awaiting_choice:
            raise PolicyViolation("Previous submissions cannot be viewed here; start a new attempt instead.")

        self.results = await self._load_results(resolution.latest_attempt)
        self.state = SessionState.viewing_results
        return success_outcome("Last attempt loaded", data=self.snapshot())

    # Realtime

    def watch(self) -> None:
        """Refresh in the background when this student's attempts change elsewhere."""
        if self._unsubscribe is not None:
            return
        self._unsubscribe = self.store.subscribe(
            ATTEMPTS,
            {"user_id": self.user_id, "assigned_assessment_id": self.assigned_assessment_id},
            self._on_attempts_changed,
        )

    async def _on_attempts_changed(self, change: Dict[str, Any]) -> None:
        if self._mutating or self._submitting or self.policy is None:
            return
        if self.state == SessionState.in_progress:
            return
        logger.debug(f"Attempts changed ({change.get('event')}); refreshing session")
        await self.refresh()

    async def close(self) -> None:
        """Stop the countdown and the change feed; the attempt stays resumable."""
        self._stop_countdown()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    # Internals

    def _now(self) -> datetime:
        return ensure_utc(self._clock())

    def _attempt_expired(self, now: datetime) -> bool:
        attempt = self.active_attempt
        if attempt is None or attempt.started_at is None or self.policy is None:
            return False
        return not is_attempt_active(attempt, self.policy, now)

    def _require_loaded(self) -> None:
        if self.policy is None:
            raise PolicyViolation("The assessment has not been loaded yet.")
