import json
from datetime import datetime, timedelta
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    ValidationError,
    field_validator,
)

from assessment_engine.core.config import settings
from assessment_engine.core.exceptions import ConfigurationError
from assessment_engine.utils.datetime_utils import ensure_utc
from assessment_engine.utils.enums import QuestionType


# Questions

class _QuestionBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    question: str = ""
    points: float = Field(1, ge=0, description="Weight of the question in the score")

    @field_validator("points", mode="before")
    @classmethod
    def _default_points(cls, v):
        return 1 if v is None else v

    @property
    def kind(self) -> QuestionType:
        return QuestionType(self.activity_type)


class _ScalarQuestion(_QuestionBase):
    # Authoring data uses "correctAnswer" and older rows use "answer"
    correct_answer: Optional[str] = Field(
        None, validation_alias=AliasChoices("correctAnswer", "correct_answer", "answer")
    )

    @field_validator("correct_answer", mode="before")
    @classmethod
    def _stringify(cls, v):
        if v is None or isinstance(v, str):
            return v
        return str(v)


class MultipleChoiceQuestion(_ScalarQuestion):
    activity_type: Literal["Multiple Choice"] = Field("Multiple Choice", alias="activityType")
    choices: List[str] = Field(default_factory=list)


class TrueFalseQuestion(_ScalarQuestion):
    activity_type: Literal["True or False"] = Field("True or False", alias="activityType")
    choices: List[str] = Field(default_factory=lambda: ["True", "False"])


class ShortAnswerQuestion(_ScalarQuestion):
    activity_type: Literal["Short Answer"] = Field("Short Answer", alias="activityType")


class FillInBlankQuestion(_ScalarQuestion):
    activity_type: Literal["Fill in the Blanks"] = Field("Fill in the Blanks", alias="activityType")


class MatchingPair(BaseModel):
    model_config = ConfigDict(frozen=True)

    left: Optional[str] = None
    right: Optional[str] = None


class MatchingQuestion(_QuestionBase):
    activity_type: Literal["Matching"] = Field("Matching", alias="activityType")
    matching_pairs: List[MatchingPair] = Field(
        default_factory=list, validation_alias=AliasChoices("matchingPairs", "matching_pairs")
    )


class FileSubmissionQuestion(_QuestionBase):
    activity_type: Literal["File Submission"] = Field("File Submission", alias="activityType")


def _question_kind(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("activityType") or value.get("activity_type")
    return getattr(value, "activity_type", None)


Question = Annotated[
    Union[
        Annotated[MultipleChoiceQuestion, Tag(QuestionType.multiple_choice.value)],
        Annotated[TrueFalseQuestion, Tag(QuestionType.true_false.value)],
        Annotated[ShortAnswerQuestion, Tag(QuestionType.short_answer.value)],
        Annotated[FillInBlankQuestion, Tag(QuestionType.fill_in_blank.value)],
        Annotated[MatchingQuestion, Tag(QuestionType.matching.value)],
        Annotated[FileSubmissionQuestion, Tag(QuestionType.file_submission.value)],
    ],
    Discriminator(_question_kind),
]

_question_list = TypeAdapter(List[Question])


def parse_questions(raw: Any) -> List[Question]:
    """Parse a stored questions payload (JSON text or list) into typed questions.

    Raises ConfigurationError when the payload cannot be parsed.
    """
    if raw is None:
        return []
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Questions payload is not valid JSON: {e}") from e
    if not isinstance(raw, list):
        raise ConfigurationError("Questions payload must be a list")
    try:
        return _question_list.validate_python(raw)
    except ValidationError as e:
        raise ConfigurationError(
            f"Questions payload is malformed ({e.error_count()} error(s))"
        ) from e


# Definitions & policy

class AssessmentDefinition(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str = ""
    type: Optional[str] = None
    description: Optional[str] = None
    questions: List[Question] = Field(default_factory=list)


class AssignmentPolicy(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    assessment_id: int
    section_id: Optional[int] = None
    allowed_attempts: int = Field(default_factory=lambda: settings.DEFAULT_ALLOWED_ATTEMPTS)
    time_limit_minutes: int = 0
    deadline: Optional[datetime] = None

    @field_validator("allowed_attempts", mode="before")
    @classmethod
    def _positive_attempts(cls, v):
        if v is None or int(v) < 1:
            return settings.DEFAULT_ALLOWED_ATTEMPTS
        return v

    @field_validator("time_limit_minutes", mode="before")
    @classmethod
    def _untimed_when_missing(cls, v):
        if v is None or int(v) < 0:
            return 0
        return v

    @field_validator("deadline")
    @classmethod
    def _deadline_utc(cls, v):
        return ensure_utc(v)

    @property
    def time_limit(self) -> timedelta:
        return timedelta(minutes=self.time_limit_minutes)

    def deadline_passed(self, now: datetime) -> bool:
        return self.deadline is not None and now > self.deadline


# Attempts & answers

class AttemptRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    assigned_assessment_id: int
    user_id: str
    started_at: Optional[datetime] = None
    score: Optional[float] = None
    created_at: Optional[datetime] = None

    @field_validator("started_at", "created_at")
    @classmethod
    def _utc(cls, v):
        return ensure_utc(v)

    @property
    def is_scored(self) -> bool:
        return self.score is not None

    def expires_at(self, time_limit: timedelta) -> Optional[datetime]:
        if self.started_at is None:
            return None
        return self.started_at + time_limit


class AnswerRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    attempt_id: int
    user_id: str
    question_index: int
    answer: Any = None
