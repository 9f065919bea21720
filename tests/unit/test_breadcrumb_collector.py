import asyncio
import logging
from time import perf_counter

import httpx

from app.telemetry.breadcrumbs import (
    REDACTED,
    BreadcrumbCollector,
    ExceptionEvent,
    HTTPTelemetryExporter,
    scrub,
)
from app.telemetry.events import ChatTelemetry, NoopTelemetryBackend


def test_collector_keeps_breadcrumbs_per_request() -> None:
    collector = BreadcrumbCollector()

    collector.add_breadcrumb("chat", "Chat request received", "info", {"request_id": "req-1"})
    collector.add_breadcrumb("chat.tool", "Tool started: Bash", "info", {"request_id": "req-2"})

    trail = collector.get_breadcrumbs("req-1")
    assert len(trail) == 1
    assert trail[0]["category"] == "chat"
    assert trail[0]["message"] == "Chat request received"
    assert trail[0]["level"] == "info"
    assert trail[0]["timestamp"]
    assert collector.request_count() == 2


def test_collector_evicts_oldest_request() -> None:
    collector = BreadcrumbCollector(max_requests=1)

    collector.add_breadcrumb("chat", "first", "info", {"request_id": "req-1"})
    collector.add_breadcrumb("chat", "second", "info", {"request_id": "req-2"})

    assert collector.get_breadcrumbs("req-1") == []
    assert len(collector.get_breadcrumbs("req-2")) == 1


def test_collector_caps_breadcrumbs_per_request() -> None:
    collector = BreadcrumbCollector(max_breadcrumbs=2)

    for index in range(5):
        collector.add_breadcrumb("chat", f"crumb-{index}", "info", {"request_id": "req-1"})

    assert [c["message"] for c in collector.get_breadcrumbs("req-1")] == ["crumb-3", "crumb-4"]


def test_captured_exception_carries_trail_and_global_tags() -> None:
    collector = BreadcrumbCollector(global_tags={"app_name": "assistant-relay"})
    collector.add_breadcrumb("chat.stream", "Chat stream started", "info", {"request_id": "req-1"})

    try:
        raise RuntimeError("boom")
    except RuntimeError as exc:
        collector.capture_exception(
            exc,
            tags={"request_id": "req-1", "error_location": "stream_processing"},
            contexts={"stream": {"chunk_count": 3}},
        )

    events = collector.get_events("req-1")
    assert len(events) == 1
    event = events[0]
    assert event["exception_type"] == "RuntimeError"
    assert event["exception_message"] == "boom"
    assert event["tags"] == {
        "app_name": "assistant-relay",
        "request_id": "req-1",
        "error_location": "stream_processing",
    }
    assert event["contexts"] == {"stream": {"chunk_count": 3}}
    assert [c["message"] for c in event["breadcrumbs"]] == ["Chat stream started"]


def test_sensitive_keys_are_scrubbed() -> None:
    collector = BreadcrumbCollector()

    collector.add_breadcrumb(
        "chat",
        "headers",
        "info",
        {
            "request_id": "req-1",
            "headers": {"Authorization": "Bearer abc", "x-api-key": "k", "accept": "*/*"},
            "env": [{"SECRET_VALUE": "s", "HOME": "/root"}],
        },
    )

    data = collector.get_breadcrumbs("req-1")[0]["data"]
    assert data["headers"] == {"Authorization": REDACTED, "x-api-key": REDACTED, "accept": "*/*"}
    assert data["env"] == [{"SECRET_VALUE": REDACTED, "HOME": "/root"}]


def test_scrub_respects_custom_keys() -> None:
    assert scrub({"session": "abc", "user": "u"}, {"session"}) == {
        "session": REDACTED,
        "user": "u",
    }


def test_collector_forwards_events_to_exporter() -> None:
    exported: list[ExceptionEvent] = []

    class _Exporter:
        def export_event(self, event: ExceptionEvent) -> None:
            exported.append(event)

    collector = BreadcrumbCollector(exporter=_Exporter())
    collector.capture_exception(ValueError("bad"), tags={"request_id": "req-9"}, contexts={})

    assert len(exported) == 1
    assert exported[0].exception_type == "ValueError"


def test_http_exporter_posts_inline_without_a_loop(monkeypatch) -> None:
    captured: dict[str, object] = {}

    class _Response:
        status_code = 202
        text = ""

    def fake_post(url, *, headers, json, timeout):  # type: ignore[no-untyped-def]
        captured.update(url=url, headers=headers, json=json, timeout=timeout)
        return _Response()

    monkeypatch.setattr("app.telemetry.breadcrumbs.httpx.post", fake_post)

    exporter = HTTPTelemetryExporter(
        endpoint="http://collector:9000/events",
        timeout_s=1.5,
        headers={"Authorization": "Bearer x"},
    )
    event = ExceptionEvent(
        event_id="evt-1",
        timestamp="2026-01-01T00:00:00+00:00",
        exception_type="RuntimeError",
        exception_message="boom",
        tags={"request_id": "req-1"},
    )
    exporter.export_event(event)

    assert captured["url"] == "http://collector:9000/events"
    assert captured["timeout"] == 1.5
    headers = captured["headers"]
    assert isinstance(headers, dict)
    assert headers["Authorization"] == "Bearer x"
    body = captured["json"]
    assert isinstance(body, dict)
    assert body["event_id"] == "evt-1"
    assert body["tags"] == {"request_id": "req-1"}


def test_http_exporter_swallows_transport_errors(monkeypatch) -> None:
    def fake_post(url, *, headers, json, timeout):  # type: ignore[no-untyped-def]
        raise httpx.ConnectError("refused")

    monkeypatch.setattr("app.telemetry.breadcrumbs.httpx.post", fake_post)

    exporter = HTTPTelemetryExporter(endpoint="http://collector:9000/events")
    exporter.export_event(
        ExceptionEvent(
            event_id="evt-2",
            timestamp="2026-01-01T00:00:00+00:00",
            exception_type="RuntimeError",
            exception_message="boom",
        )
    )


class _AcceptedResponse:
    status_code = 202
    text = ""


def _slow_async_client(delay_s: float, delivered: list[str]):  # type: ignore[no-untyped-def]
    class _SlowClient:
        def __init__(self, timeout: float) -> None:
            self.timeout = timeout

        async def __aenter__(self) -> "_SlowClient":
            return self

        async def __aexit__(self, *exc_info: object) -> None:
            return None

        async def post(self, url, *, headers, json):  # type: ignore[no-untyped-def]
            await asyncio.sleep(delay_s)
            delivered.append(json["event_id"])
            return _AcceptedResponse()

    return _SlowClient


def test_capture_inside_loop_does_not_block_the_loop(monkeypatch) -> None:
    delivered: list[str] = []
    monkeypatch.setattr(
        "app.telemetry.breadcrumbs.httpx.AsyncClient", _slow_async_client(0.3, delivered)
    )
    exporter = HTTPTelemetryExporter(endpoint="http://collector:9000/events")
    collector = BreadcrumbCollector(exporter=exporter)

    async def _scenario() -> tuple[float, int, float]:
        ticks: list[float] = []

        async def _ticker() -> None:
            for _ in range(10):
                ticks.append(perf_counter())
                await asyncio.sleep(0.01)

        ticker = asyncio.create_task(_ticker())
        await asyncio.sleep(0)
        started = perf_counter()
        collector.capture_exception(RuntimeError("boom"), tags={"request_id": "req-1"}, contexts={})
        capture_s = perf_counter() - started
        in_flight = exporter.pending_count
        await ticker
        max_gap = max(later - earlier for earlier, later in zip(ticks, ticks[1:]))
        await collector.flush()
        return capture_s, in_flight, max_gap

    capture_s, in_flight, max_gap = asyncio.run(_scenario())

    assert capture_s < 0.1
    assert in_flight == 1
    assert max_gap < 0.2
    assert len(delivered) == 1
    assert exporter.pending_count == 0


def test_background_export_failure_is_logged(monkeypatch, caplog) -> None:
    class _RefusingClient:
        def __init__(self, timeout: float) -> None:
            pass

        async def __aenter__(self) -> "_RefusingClient":
            return self

        async def __aexit__(self, *exc_info: object) -> None:
            return None

        async def post(self, url, *, headers, json):  # type: ignore[no-untyped-def]
            raise httpx.ConnectError("refused")

    monkeypatch.setattr("app.telemetry.breadcrumbs.httpx.AsyncClient", _RefusingClient)
    exporter = HTTPTelemetryExporter(endpoint="http://collector:9000/events")

    async def _scenario() -> None:
        exporter.export_event(
            ExceptionEvent(
                event_id="evt-3",
                timestamp="2026-01-01T00:00:00+00:00",
                exception_type="RuntimeError",
                exception_message="boom",
            )
        )
        await exporter.drain()

    with caplog.at_level(logging.WARNING, logger="relay.telemetry"):
        asyncio.run(_scenario())

    assert exporter.pending_count == 0
    assert "telemetry_export_failed" in [record.getMessage() for record in caplog.records]


def test_chat_telemetry_emission_points(telemetry_backend) -> None:
    telemetry = ChatTelemetry(telemetry_backend)

    telemetry.validation_failed("req-1", "no_user_message")
    telemetry.tool_started("req-1", "WebSearch", "toolu_1")
    telemetry.tool_progress("req-1", "WebSearch", 3.2)
    telemetry.api_error("req-1", KeyError("messages"))

    assert telemetry_backend.messages() == [
        "Validation error: no user message",
        "Tool started: WebSearch",
        "Tool progress: WebSearch",
        "API error",
    ]
    assert telemetry_backend.breadcrumbs[2]["data"]["elapsed_seconds"] == 3.2
    assert telemetry_backend.exceptions[0]["tags"] == {
        "request_id": "req-1",
        "error_location": "api_handler",
    }


def test_noop_backend_accepts_everything() -> None:
    telemetry = ChatTelemetry(NoopTelemetryBackend())

    telemetry.request_received("req-1", "2026-01-01T00:00:00+00:00")
    telemetry.stream_error("req-1", RuntimeError("x"), {"chunk_count": 0})
