from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app import metrics
from app.agent.base import AgentClient, AgentError
from app.agent.claude import ClaudeAgentClient
from app.agent.stub import StubAgent
from app.api.routes import router
from app.config.settings import Settings, get_settings
from app.core.errors import AppError, app_error_response, request_id_from_request
from app.core.logging import configure_logging
from app.middleware.request_id import RequestIDMiddleware
from app.services.chat_service import ChatService
from app.telemetry.breadcrumbs import BreadcrumbCollector, HTTPTelemetryExporter
from app.telemetry.events import ChatTelemetry, NoopTelemetryBackend


def _build_agent(settings: Settings) -> AgentClient:
    backend = settings.agent_backend_normalized
    if backend == "stub":
        return StubAgent()
    if backend == "claude":
        return ClaudeAgentClient()
    raise AgentError(f"Unsupported RELAY_AGENT_BACKEND value: {backend}")


def _build_collector(settings: Settings) -> BreadcrumbCollector | None:
    if not settings.telemetry_enabled:
        return None
    exporter = None
    if settings.telemetry_export_endpoint:
        exporter = HTTPTelemetryExporter(
            endpoint=settings.telemetry_export_endpoint,
            timeout_s=settings.telemetry_export_timeout_s,
            headers=settings.telemetry_export_header_map,
        )
    return BreadcrumbCollector(
        max_requests=settings.telemetry_max_requests,
        max_breadcrumbs=settings.telemetry_max_breadcrumbs,
        redact_keys=settings.telemetry_redact_key_set,
        global_tags={
            "app_name": settings.app_name,
            "app_version": settings.app_version,
            "environment": settings.env,
        },
        exporter=exporter,
    )


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)
    metrics.set_enabled(settings.metrics_enabled)

    collector = _build_collector(settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        if collector is not None:
            await collector.flush()

    app = FastAPI(title="Assistant Relay", version=settings.app_version, lifespan=lifespan)
    app.add_middleware(RequestIDMiddleware)

    telemetry = ChatTelemetry(collector if collector is not None else NoopTelemetryBackend())
    app.state.chat_service = ChatService(
        settings=settings,
        agent=_build_agent(settings),
        telemetry=telemetry,
        collector=collector,
    )

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        return app_error_response(exc.status_code, exc.message, request_id_from_request(request))

    @app.exception_handler(Exception)
    async def unhandled_handler(request: Request, _: Exception) -> JSONResponse:
        return app_error_response(500, "Internal server error", request_id_from_request(request))

    app.include_router(router)
    return app


app = create_app()
