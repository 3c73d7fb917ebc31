from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class AlreadyResolvedError(ApiError):
    def __init__(self, anomaly_id: int):
        super().__init__(
            status_code=409,
            code="ANOMALY_ALREADY_RESOLVED",
            message=f"Anomaly {anomaly_id} is no longer pending.",
        )
        self.anomaly_id = anomaly_id


class StoreUnavailableError(ApiError):
    """Primary write failed; nothing was persisted and the call may be retried."""

    def __init__(self, message: str = "Attendance store is unavailable. Please retry."):
        super().__init__(status_code=503, code="STORE_UNAVAILABLE", message=message)


class InvalidPhotoError(ApiError):
    def __init__(self, issues: list[str]):
        super().__init__(
            status_code=422,
            code="INVALID_PHOTO",
            message="; ".join(issues) or "Captured photo is invalid.",
        )
        self.issues = list(issues)


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(request: Request, *, status_code: int, code: str, message: str) -> JSONResponse:
    payload = {
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
        }
    }
    return JSONResponse(status_code=status_code, content=payload)
