import json as json_mod
from typing import Any, NoReturn

from app.core.errors import ChatValidationError
from app.models.chat import InboundMessage, ValidatedChat
from app.telemetry.events import ChatTelemetry


def validate_chat_body(
    raw_body: bytes, request_id: str, telemetry: ChatTelemetry
) -> ValidatedChat:
    """Parse a chat payload and pick out the most recent user turn.

    Undecodable JSON is not a client validation failure here: the decode
    error propagates and the caller treats it as a handler error.
    """
    body = json_mod.loads(raw_body)
    raw_messages = body.get("messages") if isinstance(body, dict) else None
    if not isinstance(raw_messages, list):
        _reject(telemetry, request_id, "missing_messages")

    if not any(_is_user_turn(item) for item in raw_messages):
        _reject(telemetry, request_id, "no_user_message")

    # any role other than "user" is rendered as an assistant turn
    if not all(
        isinstance(item, dict) and isinstance(item.get("content"), str) for item in raw_messages
    ):
        _reject(telemetry, request_id, "malformed_message")

    messages = tuple(
        InboundMessage(
            role="user" if _is_user_turn(item) else "assistant",
            content=item["content"],
        )
        for item in raw_messages
    )
    last_user_message = next(message for message in reversed(messages) if message.role == "user")
    return ValidatedChat(messages=messages, last_user_message=last_user_message)


def _is_user_turn(item: Any) -> bool:
    return isinstance(item, dict) and item.get("role") == "user"


def _reject(telemetry: ChatTelemetry, request_id: str, kind: str) -> NoReturn:
    telemetry.validation_failed(request_id, kind)
    raise ChatValidationError(kind)
