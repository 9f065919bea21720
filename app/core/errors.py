from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from fastapi import Request
from fastapi.responses import JSONResponse


@dataclass
class ErrorEnvelope:
    message: str

    def as_dict(self) -> dict[str, Any]:
        return {"error": self.message}


class AppError(Exception):
    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


VALIDATION_MESSAGES = {
    "missing_messages": "Messages array is required",
    "no_user_message": "No user message found",
    "malformed_message": "Each message must be an object with string content",
}

HANDLER_ERROR_MESSAGE = "Failed to process chat request. Check server logs for details."


class ChatValidationError(AppError):
    """Client-caused rejection of a chat payload."""

    def __init__(self, kind: str):
        super().__init__(400, kind, VALIDATION_MESSAGES[kind])
        self.kind = kind


class HandlerError(AppError):
    """Failure before the response stream was opened."""

    def __init__(self) -> None:
        super().__init__(500, "handler_error", HANDLER_ERROR_MESSAGE)


def request_id_from_request(request: Request) -> str:
    state_id = getattr(request.state, "request_id", None)
    return state_id or str(uuid4())


def app_error_response(status_code: int, message: str, request_id: str) -> JSONResponse:
    envelope = ErrorEnvelope(message=message)
    response = JSONResponse(status_code=status_code, content=envelope.as_dict())
    response.headers["x-request-id"] = request_id
    return response
