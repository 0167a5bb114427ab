# assessment_engine/models/__init__.py

from .assessment import Assessment, AssignedAssessment
from .attempt import AssessmentTake, AssessmentAnswer

__all__ = [
    "Assessment",
    "AssignedAssessment",
    "AssessmentTake",
    "AssessmentAnswer",
]
