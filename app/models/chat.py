from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, StrictStr


class InboundMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant"]
    content: StrictStr


class ValidatedChat(BaseModel):
    model_config = ConfigDict(frozen=True)

    messages: tuple[InboundMessage, ...]
    last_user_message: InboundMessage


class TextDeltaFrame(BaseModel):
    type: Literal["text_delta"] = "text_delta"
    text: StrictStr


# tool names and elapsed times are forwarded exactly as upstream sent them
class ToolStartFrame(BaseModel):
    type: Literal["tool_start"] = "tool_start"
    tool: Any


class ToolProgressFrame(BaseModel):
    type: Literal["tool_progress"] = "tool_progress"
    tool: Any
    elapsed: Any


class DoneFrame(BaseModel):
    type: Literal["done"] = "done"


class ErrorFrame(BaseModel):
    type: Literal["error"] = "error"
    message: str


OutboundFrame = TextDeltaFrame | ToolStartFrame | ToolProgressFrame | DoneFrame | ErrorFrame
