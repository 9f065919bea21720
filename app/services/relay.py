import json as json_mod
import logging
from collections.abc import AsyncIterator, Callable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from time import perf_counter
from typing import Any
from uuid import uuid4

from app.agent.base import AgentClient, AgentOptions
from app.metrics import record_frame, record_stream_outcome
from app.models.chat import (
    DoneFrame,
    ErrorFrame,
    OutboundFrame,
    TextDeltaFrame,
    ToolProgressFrame,
    ToolStartFrame,
)
from app.telemetry.events import ChatTelemetry

logger = logging.getLogger("relay.stream")

DONE_SENTINEL = b"data: [DONE]\n\n"
STREAM_ERROR_MESSAGE = "Stream error occurred"
RESULT_ERROR_MESSAGE = "Query did not complete successfully"


class FrameEncodingError(Exception):
    """A single outbound frame could not be serialized."""


@dataclass
class RequestContext:
    request_id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    chunk_count: int = 0
    text_delta_count: int = 0
    tools_used_count: int = 0
    parse_error_count: int = 0

    def counters(self) -> dict[str, int]:
        return {
            "chunk_count": self.chunk_count,
            "text_delta_count": self.text_delta_count,
            "tools_used_count": self.tools_used_count,
            "parse_error_count": self.parse_error_count,
        }


def encode_frame(frame: OutboundFrame) -> bytes:
    payload = json_mod.dumps(frame.model_dump(), separators=(",", ":"), ensure_ascii=False)
    return f"data: {payload}\n\n".encode()


def _encode_text_delta(text: Any) -> bytes:
    try:
        return encode_frame(TextDeltaFrame(text=text))
    except (TypeError, ValueError) as exc:
        raise FrameEncodingError(str(exc)) from exc


class StreamRelay:
    """Relay one upstream agent run to an SSE byte stream.

    The stream always ends with ``data: [DONE]``.  A failure while pulling
    or handling upstream events yields a single generic ``error`` frame
    before the sentinel; the exception itself only goes to telemetry.
    """

    def __init__(
        self,
        agent: AgentClient,
        prompt: str,
        options: AgentOptions,
        context: RequestContext,
        telemetry: ChatTelemetry,
    ):
        self._agent = agent
        self._prompt = prompt
        self._options = options
        self._context = context
        self._telemetry = telemetry
        self._handlers: dict[str, Callable[[Mapping[str, Any]], Iterator[bytes]]] = {
            "stream_event": self._on_stream_event,
            "assistant": self._on_assistant,
            "tool_progress": self._on_tool_progress,
            "result": self._on_result,
        }
        self._upstream = agent.query(prompt, options)

    @property
    def context(self) -> RequestContext:
        return self._context

    async def frames(self) -> AsyncIterator[bytes]:
        ctx = self._context
        started = perf_counter()
        try:
            async for event in self._upstream:
                ctx.chunk_count += 1
                for frame in self._dispatch(event):
                    yield frame
        except Exception as exc:
            logger.warning(
                "stream_failed",
                extra={
                    "request_id": ctx.request_id,
                    "error": f"{type(exc).__name__}: {exc}",
                    **ctx.counters(),
                },
            )
            self._telemetry.stream_error(ctx.request_id, exc, ctx.counters())
            record_stream_outcome("error", perf_counter() - started)
            yield self._emit(ErrorFrame(message=STREAM_ERROR_MESSAGE))
            yield DONE_SENTINEL
            return
        finally:
            await self._close_upstream()

        self._telemetry.done_marker_sent(ctx.request_id)
        duration = perf_counter() - started
        record_stream_outcome("completed", duration)
        self._telemetry.stream_summary(ctx.request_id, ctx.counters(), round(duration, 3))
        logger.info(
            "stream_completed",
            extra={
                "request_id": ctx.request_id,
                "duration_seconds": round(duration, 3),
                **ctx.counters(),
            },
        )
        yield DONE_SENTINEL

    def _dispatch(self, event: Any) -> Iterator[bytes]:
        tag = event.get("type") if isinstance(event, Mapping) else None
        handler = self._handlers.get(tag) if isinstance(tag, str) else None
        if handler is None:
            return iter(())
        return handler(event)

    def _on_stream_event(self, event: Mapping[str, Any]) -> Iterator[bytes]:
        inner = event.get("event")
        if not isinstance(inner, Mapping) or inner.get("type") != "content_block_delta":
            return
        delta = inner.get("delta")
        if not isinstance(delta, Mapping) or delta.get("type") != "text_delta":
            return
        ctx = self._context
        ctx.text_delta_count += 1
        try:
            frame = _encode_text_delta(delta.get("text"))
        except FrameEncodingError as exc:
            ctx.parse_error_count += 1
            self._telemetry.text_delta_encoding_failed(ctx.request_id, exc)
            return
        record_frame("text_delta")
        yield frame

    def _on_assistant(self, event: Mapping[str, Any]) -> Iterator[bytes]:
        message = event.get("message")
        content = message.get("content") if isinstance(message, Mapping) else None
        if not isinstance(content, list):
            return
        ctx = self._context
        for block in content:
            if not isinstance(block, Mapping) or block.get("type") != "tool_use":
                continue
            ctx.tools_used_count += 1
            name = block.get("name")
            self._telemetry.tool_started(ctx.request_id, name, block.get("id"))
            yield self._emit(ToolStartFrame(tool=name))

    def _on_tool_progress(self, event: Mapping[str, Any]) -> Iterator[bytes]:
        name = event.get("tool_name")
        elapsed = event.get("elapsed_time_seconds")
        self._telemetry.tool_progress(self._context.request_id, name, elapsed)
        yield self._emit(ToolProgressFrame(tool=name, elapsed=elapsed))

    def _on_result(self, event: Mapping[str, Any]) -> Iterator[bytes]:
        subtype = event.get("subtype")
        if subtype == "success":
            # upstream may still send bookkeeping events; keep draining
            yield self._emit(DoneFrame())
            return
        self._telemetry.result_error(self._context.request_id, subtype)
        yield self._emit(ErrorFrame(message=RESULT_ERROR_MESSAGE))

    def _emit(self, frame: OutboundFrame) -> bytes:
        record_frame(frame.type)
        return encode_frame(frame)

    async def _close_upstream(self) -> None:
        aclose = getattr(self._upstream, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as exc:
            logger.warning(
                "upstream_close_failed",
                extra={
                    "request_id": self._context.request_id,
                    "error": f"{type(exc).__name__}: {exc}",
                },
            )
