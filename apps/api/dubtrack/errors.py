"""Application exception types."""

from dubtrack.schemas.error import ErrorResponse


class ApiError(Exception):
    """Structured API error that maps directly to contract error payloads."""

    def __init__(self, status_code: int, code: str, message: str, details: dict | None = None) -> None:
        self.status_code = status_code
        self.payload = ErrorResponse(code=code, message=message, details=details)
        super().__init__(message)


def not_found() -> ApiError:
    return ApiError(status_code=404, code="RESOURCE_NOT_FOUND", message="Resource not found")


def forbidden(message: str = "Not allowed to act on this resource") -> ApiError:
    return ApiError(status_code=403, code="UNAUTHORIZED", message=message)


def invalid_input(message: str, details: dict | None = None) -> ApiError:
    return ApiError(status_code=400, code="INVALID_INPUT", message=message, details=details)


def invalid_format(message: str, details: dict | None = None) -> ApiError:
    return ApiError(status_code=400, code="INVALID_FORMAT", message=message, details=details)


def precondition_failed(message: str, details: dict | None = None) -> ApiError:
    return ApiError(status_code=409, code="PRECONDITION_FAILED", message=message, details=details)


__all__ = [
    "ApiError",
    "forbidden",
    "invalid_format",
    "invalid_input",
    "not_found",
    "precondition_failed",
]
