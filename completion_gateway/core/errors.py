"""Gateway errors and the JSON envelope every error response uses."""

from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from fastapi import Request
from fastapi.responses import JSONResponse

REQUEST_ID_HEADER = "x-request-id"


@dataclass(frozen=True)
class ErrorEnvelope:
    code: str
    message: str
    type: str
    request_id: str
    detail: str | None = None

    def as_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "type": self.type,
            "request_id": self.request_id,
        }
        if self.detail:
            body["detail"] = self.detail
        return {"error": body}

    def to_response(self, status_code: int) -> JSONResponse:
        response = JSONResponse(status_code=status_code, content=self.as_dict())
        response.headers[REQUEST_ID_HEADER] = self.request_id
        return response


class AppError(Exception):
    """Gateway-level failure carrying the HTTP status it is reported with."""

    def __init__(
        self,
        status_code: int,
        code: str,
        error_type: str,
        message: str,
        detail: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.error_type = error_type
        self.message = message
        self.detail = detail


class ThreadAccessError(AppError):
    """Raised when a referenced conversation is missing or owned by someone else."""

    def __init__(self, thread_ref: str):
        super().__init__(
            404,
            "thread_not_found",
            "thread",
            f"Thread {thread_ref} not found or access denied",
        )
        self.thread_ref = thread_ref


def request_id_from_request(request: Request) -> str:
    """Return the id bound to ``request``, binding one on first use.

    A caller-supplied ``x-request-id`` wins over a minted id. Once bound, the
    same id is returned for the rest of the request.
    """
    request_id = getattr(request.state, "request_id", None)
    if not request_id:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
        request.state.request_id = request_id
    return request_id


def app_error_response(
    status_code: int,
    code: str,
    error_type: str,
    message: str,
    request_id: str,
    detail: str | None = None,
) -> JSONResponse:
    envelope = ErrorEnvelope(
        code=code, message=message, type=error_type, request_id=request_id, detail=detail
    )
    return envelope.to_response(status_code)
