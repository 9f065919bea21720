"""Claude Agent SDK adapter."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import asdict, is_dataclass
from typing import Any

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ResultMessage,
    StreamEvent,
    SystemMessage,
    TextBlock,
    ToolUseBlock,
    UserMessage,
    query as sdk_query,
)

from app.agent.base import AgentOptions

logger = logging.getLogger("relay.agent")


def _normalize_block(block: Any) -> dict[str, Any]:
    if isinstance(block, ToolUseBlock):
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, dict):
        return block
    return {"type": type(block).__name__}


def normalize_message(message: Any) -> dict[str, Any]:
    """Map an SDK message object onto the tagged event shape the relay reads."""
    if isinstance(message, dict):
        return message
    if isinstance(message, StreamEvent):
        return {
            "type": "stream_event",
            "event": message.event,
            "session_id": message.session_id,
        }
    if isinstance(message, AssistantMessage):
        return {
            "type": "assistant",
            "message": {
                "model": message.model,
                "content": [_normalize_block(block) for block in message.content],
            },
        }
    if isinstance(message, ResultMessage):
        return {
            "type": "result",
            "subtype": message.subtype,
            "is_error": message.is_error,
            "num_turns": message.num_turns,
            "duration_ms": message.duration_ms,
        }
    if isinstance(message, SystemMessage):
        return {"type": "system", "subtype": message.subtype, "data": message.data}
    if isinstance(message, UserMessage):
        return {"type": "user"}
    if is_dataclass(message) and not isinstance(message, type):
        payload = asdict(message)
        payload.setdefault("type", type(message).__name__)
        return payload
    return {"type": type(message).__name__}


class ClaudeAgentClient:
    name = "claude"

    async def query(
        self, prompt: str, options: AgentOptions
    ) -> AsyncIterator[dict[str, Any]]:
        sdk_options = self.build_options(options)
        logger.info(
            "agent_query_started",
            extra={"agent_backend": self.name, "data": {"max_turns": options.max_turns}},
        )
        upstream = sdk_query(prompt=prompt, options=sdk_options)
        try:
            async for message in upstream:
                yield normalize_message(message)
        finally:
            aclose = getattr(upstream, "aclose", None)
            if aclose is not None:
                await aclose()

    @staticmethod
    def build_options(options: AgentOptions) -> ClaudeAgentOptions:
        return ClaudeAgentOptions(
            max_turns=options.max_turns,
            tools={"type": "preset", "preset": options.tool_preset},
            permission_mode="bypassPermissions" if options.bypass_permissions else "default",
            include_partial_messages=options.include_partial_messages,
            cwd=options.cwd,
        )
