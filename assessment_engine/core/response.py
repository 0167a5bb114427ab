# assessment_engine/core/response.py
from typing import Any, Optional, Literal, Dict
from pydantic import BaseModel
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder

from assessment_engine.core.exceptions import AssessmentError


class ErrorDetail(BaseModel):
    """Detailed error information for debugging"""
    field: Optional[str] = None
    message: str
    code: Optional[str] = None


class Outcome(BaseModel):
    """Result of an attempt manager operation, rendered by the UI as-is."""
    status: Literal["success", "error"]
    msg: str
    error_code: Optional[str] = None
    details: Optional[list[ErrorDetail]] = None
    data: Optional[Any] = None

    @property
    def ok(self) -> bool:
        return self.status == "success"

    def to_response(self, status_code: Optional[int] = None) -> JSONResponse:
        if status_code is None:
            status_code = 200 if self.ok else _status_for(self.error_code)
        payload = jsonable_encoder(self.model_dump(exclude_none=True))
        return JSONResponse(status_code=status_code, content=payload)


_ERROR_STATUS: Dict[str, int] = {
    "FETCH_FAILED": 503,
    "PERSISTENCE_FAILED": 503,
    "CONFIGURATION_ERROR": 422,
    "POLICY_VIOLATION": 409,
    "NOT_FOUND": 404,
    "VALIDATION_ERROR": 422,
}


def _status_for(error_code: Optional[str]) -> int:
    return _ERROR_STATUS.get(error_code or "", 400)


def success_outcome(msg: str = "OK", data: Any = None) -> Outcome:
    return Outcome(status="success", msg=msg, data=data)


def error_outcome(
    msg: str,
    data: Any = None,
    error_code: Optional[str] = None,
    details: Optional[list[ErrorDetail]] = None,
) -> Outcome:
    return Outcome(status="error", msg=msg, error_code=error_code, details=details, data=data)


def outcome_from_error(exc: AssessmentError) -> Outcome:
    """Convert a recovered engine error into a user-facing outcome."""
    return error_outcome(exc.msg, data=exc.data, error_code=exc.error_code)


def error_response(
    msg: str,
    data: Any = None,
    status_code: int = 400,
    error_code: Optional[str] = None,
    details: Optional[list[ErrorDetail]] = None,
) -> JSONResponse:
    """Error JSON in the same {status, msg, ...} shape as outcomes."""
    return error_outcome(msg, data=data, error_code=error_code, details=details).to_response(status_code)


def validation_error_response(
    errors: list[Dict[str, Any]],
    status_code: int = 422,
) -> JSONResponse:
    """Create a standardized validation error response"""
    details = []
    for err in errors:
        loc = err.get("loc", [])
        field = ".".join(str(x) for x in loc if x != "body")
        details.append(ErrorDetail(
            field=field or (str(loc[-1]) if loc else None),
            message=err.get("msg", "Validation error"),
            code="VALIDATION_ERROR",
        ))

    return error_response(
        msg="Invalid request parameters",
        details=details,
        status_code=status_code,
        error_code="VALIDATION_ERROR",
    )
