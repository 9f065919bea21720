from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol


class AgentError(Exception):
    """Raised when an agent backend cannot be built or started."""


@dataclass(frozen=True)
class AgentOptions:
    max_turns: int = 10
    tool_preset: str = "claude_code"
    bypass_permissions: bool = True
    include_partial_messages: bool = True
    cwd: Path | None = None


class AgentClient(Protocol):
    name: str

    def query(self, prompt: str, options: AgentOptions) -> AsyncIterator[dict[str, Any]]:
        """Yield upstream agent events as ``{"type": ...}`` mappings."""
