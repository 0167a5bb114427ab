# assessment_engine/core/exceptions.py
from typing import Any, Optional


class AssessmentError(Exception):
    """Base error recovered at the attempt manager boundary."""

    error_code = "ASSESSMENT_ERROR"
    default_msg = "Something went wrong with this assessment"

    def __init__(self, msg: Optional[str] = None, data: Any = None):
        self.msg = msg or self.default_msg
        self.data = data
        super().__init__(self.msg)


class TransientFetchError(AssessmentError):
    """Backend read failed while resolving a session or loading definitions."""

    error_code = "FETCH_FAILED"
    default_msg = "Failed to load assessment data. Please try again."


class PersistenceError(AssessmentError):
    """Writing answers or the attempt score failed."""

    error_code = "PERSISTENCE_FAILED"
    default_msg = "Failed to save answers. Please try again."


class ConfigurationError(AssessmentError):
    """Question data is malformed or missing."""

    error_code = "CONFIGURATION_ERROR"
    default_msg = "This assessment is not configured correctly"


class RecordNotFound(AssessmentError):
    """The assessment or its assignment does not exist."""

    error_code = "NOT_FOUND"
    default_msg = "Assessment not found"


class PolicyViolation(AssessmentError):
    """The action is not allowed by the assignment policy or session state."""

    error_code = "POLICY_VIOLATION"
    default_msg = "This action is not allowed for this assessment"
