from collections.abc import AsyncIterator, Sequence
from typing import Any
from uuid import uuid4

from app.agent.base import AgentOptions


def text_delta_event(text: str) -> dict[str, Any]:
    return {
        "type": "stream_event",
        "event": {
            "type": "content_block_delta",
            "index": 0,
            "delta": {"type": "text_delta", "text": text},
        },
    }


def tool_use_event(name: str, tool_id: str | None = None) -> dict[str, Any]:
    return {
        "type": "assistant",
        "message": {
            "content": [
                {
                    "type": "tool_use",
                    "id": tool_id or f"toolu_{uuid4().hex[:12]}",
                    "name": name,
                    "input": {},
                }
            ]
        },
    }


def tool_progress_event(name: str, elapsed_seconds: float) -> dict[str, Any]:
    return {
        "type": "tool_progress",
        "tool_name": name,
        "elapsed_time_seconds": elapsed_seconds,
    }


def result_event(subtype: str = "success") -> dict[str, Any]:
    return {"type": "result", "subtype": subtype, "is_error": subtype != "success"}


class StubAgent:
    """Deterministic agent used for local runs and tests.

    Without a script it echoes the final user turn back as text deltas and a
    success result.  With a script it replays the given events and, when
    ``fail_after`` is set, raises ``error`` once that many events were sent.
    """

    name = "stub"

    def __init__(
        self,
        script: Sequence[dict[str, Any]] | None = None,
        fail_after: int | None = None,
        error: Exception | None = None,
        chunk_size: int = 32,
    ):
        self._script = list(script) if script is not None else None
        self._fail_after = fail_after
        self._error = error or RuntimeError("stub agent failure")
        self._chunk_size = chunk_size
        self.calls: list[tuple[str, AgentOptions]] = []
        self.closed = False

    async def query(
        self, prompt: str, options: AgentOptions
    ) -> AsyncIterator[dict[str, Any]]:
        self.calls.append((prompt, options))
        events = self._script if self._script is not None else self._echo(prompt)
        try:
            for index, event in enumerate(events):
                if self._fail_after is not None and index >= self._fail_after:
                    raise self._error
                yield event
            if self._fail_after is not None and self._fail_after >= len(events):
                raise self._error
        finally:
            self.closed = True

    def _echo(self, prompt: str) -> list[dict[str, Any]]:
        last_turn = prompt.rsplit("\n\nUser: ", 1)[-1]
        answer = f"Stub response: {last_turn[:120]}"
        pieces = [
            answer[idx : idx + self._chunk_size]
            for idx in range(0, len(answer), self._chunk_size)
        ]
        events = [text_delta_event(piece) for piece in pieces]
        events.append(
            {
                "type": "assistant",
                "message": {"content": [{"type": "text", "text": answer}]},
            }
        )
        events.append(result_event("success"))
        return events
