"""API error response schemas."""

from typing import Any
from typing import Literal

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class TransitionErrorDetails(BaseModel):
    current_status: str
    attempted_status: str
    allowed_next_statuses: list[str] | None = None


class FsmTransitionError(BaseModel):
    code: Literal["FSM_TRANSITION_INVALID"]
    message: str
    details: TransitionErrorDetails


class PreconditionFailedError(BaseModel):
    code: Literal["PRECONDITION_FAILED"]
    message: str
    details: dict[str, Any] | None = None


class NoLeakNotFoundError(BaseModel):
    code: Literal["RESOURCE_NOT_FOUND"]
    message: str


class UpstreamError(BaseModel):
    code: Literal["UPSTREAM_FAILED", "UPSTREAM_TIMEOUT", "STORAGE_UNAVAILABLE"]
    message: str
    details: dict[str, Any] | None = None
