"""In-process breadcrumb and exception collector.

Breadcrumbs are lightweight structured records (category, message, level,
data) appended along a request's lifecycle.  Captured exceptions become
events that carry the request's breadcrumb trail, so an error report shows
what led up to it.  Both are kept in memory per request id, with bounded
retention, and can be read back through the ``/v1/telemetry`` diagnostics
endpoint.  When an exporter is configured, each captured exception event is
also forwarded to it.

Sensitive values are scrubbed before storage: any data key containing one of
the configured fragments (``key``, ``token``, ``secret``...) is replaced with
``[REDACTED]``.

Thread-safe: all state is guarded by a single lock.
"""

import asyncio
import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol
from uuid import uuid4

import httpx

logger = logging.getLogger("relay.telemetry")

REDACTED = "[REDACTED]"
DEFAULT_REDACT_KEYS = frozenset({"key", "token", "secret", "authorization", "password"})

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
}


class TelemetryBackend(Protocol):
    def add_breadcrumb(
        self, category: str, message: str, level: str, data: dict[str, Any]
    ) -> None:
        """Record a breadcrumb."""

    def capture_exception(
        self,
        error: BaseException,
        tags: dict[str, str],
        contexts: dict[str, dict[str, Any]],
    ) -> None:
        """Record an exception event."""


class TelemetryExporter(Protocol):
    def export_event(self, event: "ExceptionEvent") -> None:
        """Forward a captured exception event."""


def scrub(value: Any, redact_keys: frozenset[str] | set[str]) -> Any:
    """Return a copy of ``value`` with sensitive mapping keys redacted."""
    if isinstance(value, dict):
        scrubbed: dict[str, Any] = {}
        for key, item in value.items():
            lowered = str(key).lower()
            if any(fragment in lowered for fragment in redact_keys):
                scrubbed[key] = REDACTED
            else:
                scrubbed[key] = scrub(item, redact_keys)
        return scrubbed
    if isinstance(value, list | tuple):
        return [scrub(item, redact_keys) for item in value]
    return value


@dataclass
class Breadcrumb:
    category: str
    message: str
    level: str
    timestamp: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ExceptionEvent:
    event_id: str
    timestamp: str
    exception_type: str
    exception_message: str
    tags: dict[str, str] = field(default_factory=dict)
    contexts: dict[str, dict[str, Any]] = field(default_factory=dict)
    breadcrumbs: list[Breadcrumb] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class HTTPTelemetryExporter:
    """Best-effort JSON exporter for captured exception events.

    Inside a running event loop each event is posted from a background task
    so capture never waits on the network; ``drain()`` awaits whatever is
    still in flight.  Without a loop the post is made inline.
    """

    def __init__(
        self,
        endpoint: str,
        timeout_s: float = 2.0,
        headers: dict[str, str] | None = None,
    ) -> None:
        self._endpoint = endpoint
        self._timeout_s = timeout_s
        self._headers = {
            "Content-Type": "application/json",
            "User-Agent": "AssistantRelay/telemetry-exporter",
            **(headers or {}),
        }
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def export_event(self, event: ExceptionEvent) -> None:
        payload = event.to_dict()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._deliver_inline(event.event_id, payload)
            return
        task = loop.create_task(self._deliver(event.event_id, payload))
        self._pending.add(task)
        task.add_done_callback(self._forget)

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _deliver(self, event_id: str, payload: dict[str, Any]) -> None:
        try:
            async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                response = await client.post(self._endpoint, headers=self._headers, json=payload)
        except httpx.HTTPError as exc:
            self._log_failure(event_id, exc)
            return
        self._check_response(event_id, response)

    def _deliver_inline(self, event_id: str, payload: dict[str, Any]) -> None:
        try:
            response = httpx.post(
                self._endpoint,
                headers=self._headers,
                json=payload,
                timeout=self._timeout_s,
            )
        except httpx.HTTPError as exc:
            self._log_failure(event_id, exc)
            return
        self._check_response(event_id, response)

    def _forget(self, task: "asyncio.Task[None]") -> None:
        self._pending.discard(task)
        if task.cancelled() or task.exception() is None:
            return
        exc = task.exception()
        logger.warning(
            "telemetry_export_unhandled_error",
            extra={"error": f"{type(exc).__name__}: {exc}"},
        )

    def _log_failure(self, event_id: str, exc: Exception) -> None:
        logger.warning(
            "telemetry_export_failed",
            extra={
                "data": {"event_id": event_id, "endpoint": self._endpoint},
                "error": f"{type(exc).__name__}: {exc}",
            },
        )

    def _check_response(self, event_id: str, response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        logger.warning(
            "telemetry_export_rejected",
            extra={
                "data": {
                    "event_id": event_id,
                    "endpoint": self._endpoint,
                    "status_code": response.status_code,
                    "response_body": response.text[:500],
                }
            },
        )


class BreadcrumbCollector:
    """Per-request breadcrumb trail and exception store.

    Parameters
    ----------
    max_requests : int
        Number of request trails to retain.  The oldest is evicted first.
    max_breadcrumbs : int
        Breadcrumbs kept per request; older ones roll off.
    """

    def __init__(
        self,
        max_requests: int = 1000,
        max_breadcrumbs: int = 100,
        redact_keys: frozenset[str] | set[str] = DEFAULT_REDACT_KEYS,
        global_tags: dict[str, str] | None = None,
        exporter: TelemetryExporter | None = None,
    ) -> None:
        self._max_requests = max_requests
        self._max_breadcrumbs = max_breadcrumbs
        self._redact_keys = frozenset(redact_keys)
        self._global_tags = dict(global_tags or {})
        self._exporter = exporter
        self._breadcrumbs: dict[str, deque[Breadcrumb]] = {}
        self._events: dict[str, list[ExceptionEvent]] = {}
        self._order: list[str] = []
        self._lock = threading.Lock()

    def add_breadcrumb(
        self, category: str, message: str, level: str, data: dict[str, Any]
    ) -> None:
        crumb = Breadcrumb(
            category=category,
            message=message,
            level=level,
            timestamp=datetime.now(tz=UTC).isoformat(),
            data=scrub(dict(data), self._redact_keys),
        )
        request_id = str(crumb.data.get("request_id", ""))
        with self._lock:
            self._touch(request_id)
            trail = self._breadcrumbs.setdefault(
                request_id, deque(maxlen=self._max_breadcrumbs)
            )
            trail.append(crumb)
        logger.log(
            _LEVELS.get(level, logging.INFO),
            message,
            extra={"request_id": request_id or None, "category": category, "data": crumb.data},
        )

    def capture_exception(
        self,
        error: BaseException,
        tags: dict[str, str],
        contexts: dict[str, dict[str, Any]],
    ) -> None:
        merged_tags = {**self._global_tags, **tags}
        request_id = merged_tags.get("request_id", "")
        with self._lock:
            self._touch(request_id)
            trail = list(self._breadcrumbs.get(request_id, ()))
            event = ExceptionEvent(
                event_id=uuid4().hex,
                timestamp=datetime.now(tz=UTC).isoformat(),
                exception_type=type(error).__name__,
                exception_message=str(error)[:500],
                tags=merged_tags,
                contexts=scrub(dict(contexts), self._redact_keys),
                breadcrumbs=trail,
            )
            self._events.setdefault(request_id, []).append(event)
        logger.error(
            "exception_captured",
            exc_info=(type(error), error, error.__traceback__),
            extra={"request_id": request_id or None, "data": merged_tags},
        )
        if self._exporter is not None:
            try:
                self._exporter.export_event(event)
            except Exception as exc:  # pragma: no cover - defensive runtime guard
                logger.warning(
                    "telemetry_export_unhandled_error",
                    extra={"error": f"{type(exc).__name__}: {exc}"},
                )

    async def flush(self) -> None:
        """Wait for exporter deliveries that are still in flight."""
        drain = getattr(self._exporter, "drain", None)
        if drain is not None:
            await drain()

    def get_breadcrumbs(self, request_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return [crumb.to_dict() for crumb in self._breadcrumbs.get(request_id, ())]

    def get_events(self, request_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return [event.to_dict() for event in self._events.get(request_id, [])]

    def request_count(self) -> int:
        with self._lock:
            return len(self._order)

    def clear(self) -> None:
        with self._lock:
            self._breadcrumbs.clear()
            self._events.clear()
            self._order.clear()

    def _touch(self, request_id: str) -> None:
        # caller holds the lock
        if request_id in self._order:
            return
        self._order.append(request_id)
        while len(self._order) > self._max_requests:
            oldest = self._order.pop(0)
            self._breadcrumbs.pop(oldest, None)
            self._events.pop(oldest, None)
