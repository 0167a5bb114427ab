"""Auto-grading for the six question kinds.

Every function here is pure and total: malformed questions or answers grade
as incorrect instead of raising.
"""

from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from pydantic import BaseModel

from assessment_engine.schemas.assessment import (
    MatchingQuestion,
    Question,
)
from assessment_engine.utils.enums import QuestionType


Answers = Union[Mapping[int, Any], Sequence[Any]]

AUTO_GRADED_TYPES = frozenset({
    QuestionType.multiple_choice,
    QuestionType.true_false,
    QuestionType.short_answer,
    QuestionType.fill_in_blank,
    QuestionType.matching,
})


class ScoreResult(BaseModel):
    points: float = 0
    total_possible: float = 0
    correct_count: int = 0
    graded_count: int = 0
    manual_count: int = 0
    # Every question is graded by hand; the attempt score stays null
    pending_manual: bool = False

    @property
    def incorrect_count(self) -> int:
        return self.graded_count - self.correct_count

    @property
    def percent(self) -> int:
        if not self.total_possible:
            return 0
        return int(round(self.points / self.total_possible * 100))


def _kind_of(question: Any) -> Optional[QuestionType]:
    try:
        return QuestionType(getattr(question, "activity_type", None))
    except ValueError:
        return None


def _normalize(value: Any) -> Optional[str]:
    """Lower-cased, trimmed text of a scalar answer; None when blank or not scalar."""
    if value is None:
        return None
    if isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, (str, int, float)):
        text = str(value).strip().lower()
    else:
        return None
    return text or None


def _grade_scalar(question: Any, answer: Any) -> bool:
    expected = _normalize(getattr(question, "correct_answer", None))
    got = _normalize(answer)
    return expected is not None and got is not None and got == expected


def _matching_slots(answer: Any) -> Optional[List[Optional[str]]]:
    if isinstance(answer, (list, tuple)):
        return [_normalize(slot) for slot in answer]
    if isinstance(answer, str):
        # Legacy rows persisted the slots joined with ", "
        return [_normalize(slot) for slot in answer.split(",")]
    return None


def _grade_matching(question: MatchingQuestion, answer: Any) -> bool:
    expected = [_normalize(pair.right) for pair in getattr(question, "matching_pairs", None) or []]
    if not expected or any(value is None for value in expected):
        return False
    slots = _matching_slots(answer)
    if slots is None or len(slots) != len(expected):
        return False
    return all(slot is not None and slot == value for slot, value in zip(slots, expected))


def _grade_manual(question: Any, answer: Any) -> bool:
    return False


_GRADERS: Dict[QuestionType, Callable[[Any, Any], bool]] = {
    QuestionType.multiple_choice: _grade_scalar,
    QuestionType.true_false: _grade_scalar,
    QuestionType.short_answer: _grade_scalar,
    QuestionType.fill_in_blank: _grade_scalar,
    QuestionType.matching: _grade_matching,
    QuestionType.file_submission: _grade_manual,
}


def is_correct(question: Question, answer: Any) -> bool:
    """Decide whether `answer` is correct for `question`."""
    kind = _kind_of(question)
    if kind is None:
        return False
    return _GRADERS[kind](question, answer)


def is_auto_gradable(question: Question) -> bool:
    return _kind_of(question) in AUTO_GRADED_TYPES


def is_file_submission_only(questions: Sequence[Question]) -> bool:
    return bool(questions) and all(
        _kind_of(q) == QuestionType.file_submission for q in questions
    )


def answer_at(answers: Optional[Answers], index: int) -> Any:
    if answers is None:
        return None
    if isinstance(answers, Mapping):
        return answers.get(index)
    if 0 <= index < len(answers):
        return answers[index]
    return None


def score(questions: Sequence[Question], answers_by_index: Optional[Answers]) -> ScoreResult:
    """Sum weighted points over auto-gradable questions only."""
    result = ScoreResult()
    for index, question in enumerate(questions):
        if not is_auto_gradable(question):
            result.manual_count += 1
            continue
        weight = getattr(question, "points", 1)
        result.graded_count += 1
        result.total_possible += weight
        if is_correct(question, answer_at(answers_by_index, index)):
            result.correct_count += 1
            result.points += weight
    result.pending_manual = is_file_submission_only(questions)
    return result


def final_score(questions: Sequence[Question], answers_by_index: Optional[Answers]) -> Optional[float]:
    """Value stored on the attempt: None while a file-submission-only set awaits manual grading."""
    result = score(questions, answers_by_index)
    if result.pending_manual:
        return None
    return result.points


def _is_blank(answer: Any) -> bool:
    if answer is None:
        return True
    if isinstance(answer, str):
        return not answer.strip()
    if isinstance(answer, (list, tuple)):
        return not answer or any(_is_blank(item) for item in answer)
    return False


def unanswered_indices(questions: Sequence[Question], answers_by_index: Optional[Answers]) -> List[int]:
    """Indices of questions with no answer, or a matching answer with an empty slot."""
    return [
        index for index in range(len(questions))
        if _is_blank(answer_at(answers_by_index, index))
    ]


def correct_answer_display(question: Question) -> Optional[str]:
    """Human-readable correct answer for the results view."""
    kind = _kind_of(question)
    if kind == QuestionType.matching:
        pairs = getattr(question, "matching_pairs", None) or []
        if not pairs:
            return None
        return ", ".join(f"{pair.left} → {pair.right}" for pair in pairs)
    if kind == QuestionType.file_submission:
        return None
    return getattr(question, "correct_answer", None)


def review(questions: Sequence[Question], answers_by_index: Optional[Answers]) -> List[Dict[str, Any]]:
    """Per-question breakdown; `is_correct` is None for manually graded items."""
    items = []
    for index, question in enumerate(questions):
        answer = answer_at(answers_by_index, index)
        items.append({
            "question_index": index,
            "question_type": getattr(question, "activity_type", None),
            "question": getattr(question, "question", ""),
            "answer": answer,
            "correct_answer": correct_answer_display(question),
            "is_correct": is_correct(question, answer) if is_auto_gradable(question) else None,
        })
    return items
