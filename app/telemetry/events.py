"""Named telemetry emission points for the chat lifecycle.

Every call is best-effort: a failing backend is logged and swallowed so it
never reaches the request path.
"""

import logging
from typing import Any

from app.telemetry.breadcrumbs import TelemetryBackend

logger = logging.getLogger("relay.telemetry")


class NoopTelemetryBackend:
    def add_breadcrumb(
        self, category: str, message: str, level: str, data: dict[str, Any]
    ) -> None:
        _ = category, message, level, data

    def capture_exception(
        self,
        error: BaseException,
        tags: dict[str, str],
        contexts: dict[str, dict[str, Any]],
    ) -> None:
        _ = error, tags, contexts


def _error_name(error: BaseException) -> str:
    return type(error).__name__


class ChatTelemetry:
    def __init__(self, backend: TelemetryBackend):
        self._backend = backend

    def request_received(self, request_id: str, timestamp: str) -> None:
        self._breadcrumb(
            "chat",
            "Chat request received",
            "info",
            {"request_id": request_id, "timestamp": timestamp},
        )

    def validation_failed(self, request_id: str, kind: str) -> None:
        self._breadcrumb(
            "chat.validation",
            f"Validation error: {kind.replace('_', ' ')}",
            "warning",
            {"request_id": request_id, "error_type": kind},
        )

    def stream_started(
        self, request_id: str, message_count: int, last_message_length: int
    ) -> None:
        self._breadcrumb(
            "chat.stream",
            "Chat stream started",
            "info",
            {
                "request_id": request_id,
                "message_count": message_count,
                "last_message_length": last_message_length,
            },
        )

    def text_delta_encoding_failed(self, request_id: str, error: BaseException) -> None:
        self._breadcrumb(
            "chat.stream",
            "Parse error during text delta encoding",
            "warning",
            {
                "request_id": request_id,
                "error_type": "text_delta_encoding",
                "error": str(error) or _error_name(error),
            },
        )

    def tool_started(self, request_id: str, tool_name: Any, tool_id: Any) -> None:
        self._breadcrumb(
            "chat.tool",
            f"Tool started: {tool_name}",
            "info",
            {"request_id": request_id, "tool_name": tool_name, "tool_id": tool_id},
        )

    def tool_progress(self, request_id: str, tool_name: Any, elapsed_seconds: Any) -> None:
        self._breadcrumb(
            "chat.tool",
            f"Tool progress: {tool_name}",
            "info",
            {
                "request_id": request_id,
                "tool_name": tool_name,
                "elapsed_seconds": elapsed_seconds,
            },
        )

    def result_error(self, request_id: str, subtype: Any) -> None:
        self._breadcrumb(
            "chat.stream",
            "Stream result error",
            "error",
            {"request_id": request_id, "subtype": subtype},
        )

    def done_marker_sent(self, request_id: str) -> None:
        self._breadcrumb(
            "chat.stream", "Stream [DONE] marker sent", "info", {"request_id": request_id}
        )

    def stream_summary(
        self, request_id: str, counters: dict[str, int], duration_seconds: float
    ) -> None:
        self._breadcrumb(
            "chat.stream",
            "Chat stream completed",
            "info",
            {"request_id": request_id, **counters, "duration_seconds": duration_seconds},
        )

    def stream_error(
        self, request_id: str, error: BaseException, counters: dict[str, int]
    ) -> None:
        self._breadcrumb(
            "chat.stream",
            "Stream error",
            "error",
            {
                "request_id": request_id,
                "error_name": _error_name(error),
                "error_message": str(error),
                **counters,
            },
        )
        self._capture(
            error,
            tags={"request_id": request_id, "error_location": "stream_processing"},
            contexts={"stream": dict(counters)},
        )

    def api_error(self, request_id: str, error: BaseException) -> None:
        self._breadcrumb(
            "chat.api",
            "API error",
            "error",
            {
                "request_id": request_id,
                "error_name": _error_name(error),
                "error_message": str(error),
            },
        )
        self._capture(
            error,
            tags={"request_id": request_id, "error_location": "api_handler"},
            contexts={},
        )

    def request_completed(self, request_id: str, total_duration_seconds: float) -> None:
        self._breadcrumb(
            "chat",
            "Request completed",
            "info",
            {"request_id": request_id, "total_duration_seconds": total_duration_seconds},
        )

    def _breadcrumb(
        self, category: str, message: str, level: str, data: dict[str, Any]
    ) -> None:
        try:
            self._backend.add_breadcrumb(category, message, level, data)
        except Exception as exc:
            logger.warning(
                "telemetry_breadcrumb_failed",
                extra={"category": category, "error": f"{type(exc).__name__}: {exc}"},
            )

    def _capture(
        self,
        error: BaseException,
        tags: dict[str, str],
        contexts: dict[str, dict[str, Any]],
    ) -> None:
        try:
            self._backend.capture_exception(error, tags, contexts)
        except Exception as exc:
            logger.warning(
                "telemetry_capture_failed",
                extra={"error": f"{type(exc).__name__}: {exc}"},
            )
