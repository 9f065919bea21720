import json
import logging

from app.core.logging import JsonFormatter


def test_request_id_is_added(client) -> None:
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.headers.get("x-request-id")


def test_request_id_is_generated_per_request(client) -> None:
    first = client.get("/healthz", headers={"x-request-id": "client-chosen"})
    second = client.get("/healthz", headers={"x-request-id": "client-chosen"})

    assert first.headers["x-request-id"] != "client-chosen"
    assert first.headers["x-request-id"] != second.headers["x-request-id"]


def test_client_request_id_is_logged_as_correlation_id(client, caplog) -> None:
    caplog.set_level(logging.INFO, logger="relay.chat")

    response = client.post(
        "/api/chat",
        json={"messages": [{"role": "user", "content": "hi"}]},
        headers={"x-request-id": "client-chosen"},
    )

    opened = [r for r in caplog.records if r.getMessage() == "chat_stream_opened"]
    assert len(opened) == 1
    assert opened[0].correlation_id == "client-chosen"
    assert opened[0].request_id == response.headers["x-request-id"]


def test_correlation_id_is_rendered_in_json_logs() -> None:
    record = logging.LogRecord("relay.chat", logging.INFO, __file__, 1, "opened", None, None)
    record.correlation_id = "client-chosen"

    payload = json.loads(JsonFormatter().format(record))

    assert payload["correlation_id"] == "client-chosen"
