import json
from collections.abc import Callable, Sequence
from typing import Any

import pytest
from fastapi.testclient import TestClient

from app import metrics
from app.agent.stub import StubAgent
from app.config.settings import clear_settings_cache
from app.main import create_app
from app.services.chat_service import ChatService
from app.telemetry.events import ChatTelemetry


class RecordingBackend:
    """Telemetry backend that keeps every call for assertions."""

    def __init__(self) -> None:
        self.breadcrumbs: list[dict[str, Any]] = []
        self.exceptions: list[dict[str, Any]] = []

    def add_breadcrumb(
        self, category: str, message: str, level: str, data: dict[str, Any]
    ) -> None:
        self.breadcrumbs.append(
            {"category": category, "message": message, "level": level, "data": dict(data)}
        )

    def capture_exception(
        self,
        error: BaseException,
        tags: dict[str, str],
        contexts: dict[str, dict[str, Any]],
    ) -> None:
        self.exceptions.append({"error": error, "tags": tags, "contexts": contexts})

    def messages(self) -> list[str]:
        return [crumb["message"] for crumb in self.breadcrumbs]


@pytest.fixture(autouse=True)
def _reset_metrics() -> None:
    metrics.reset_metrics()


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch) -> TestClient:
    monkeypatch.setenv("RELAY_AGENT_BACKEND", "stub")
    monkeypatch.setenv("RELAY_TELEMETRY_EXPORT_ENDPOINT", "")
    clear_settings_cache()
    app = create_app()
    return TestClient(app)


@pytest.fixture
def telemetry_backend() -> RecordingBackend:
    return RecordingBackend()


@pytest.fixture
def scripted_client(
    client: TestClient, telemetry_backend: RecordingBackend
) -> Callable[..., tuple[TestClient, StubAgent]]:
    """Swap the app's chat service for one driven by a scripted stub agent."""

    def _build(
        script: Sequence[dict[str, Any]] | None = None,
        fail_after: int | None = None,
        error: Exception | None = None,
    ) -> tuple[TestClient, StubAgent]:
        agent = StubAgent(script=script, fail_after=fail_after, error=error)
        current: ChatService = client.app.state.chat_service
        client.app.state.chat_service = ChatService(
            settings=current.settings,
            agent=agent,
            telemetry=ChatTelemetry(telemetry_backend),
        )
        return client, agent

    return _build


@pytest.fixture
def sse_frames() -> Callable[[str], list[Any]]:
    """Split an SSE body into decoded frames; the sentinel stays a string."""

    def _parse(body: str) -> list[Any]:
        frames: list[Any] = []
        for block in body.split("\n\n"):
            if not block:
                continue
            assert block.startswith("data: ")
            payload = block.removeprefix("data: ")
            frames.append("[DONE]" if payload == "[DONE]" else json.loads(payload))
        return frames

    return _parse
