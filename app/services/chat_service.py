import logging
from collections.abc import AsyncIterator
from time import perf_counter

from fastapi import Request

from app.agent.base import AgentClient, AgentOptions
from app.config.settings import Settings
from app.core.errors import AppError, HandlerError
from app.metrics import record_request
from app.services.prompt import DEFAULT_PREAMBLE, assemble_prompt
from app.services.relay import RequestContext, StreamRelay
from app.services.validation import validate_chat_body
from app.telemetry.breadcrumbs import BreadcrumbCollector
from app.telemetry.events import ChatTelemetry

logger = logging.getLogger("relay.chat")


class ChatService:
    def __init__(
        self,
        settings: Settings,
        agent: AgentClient,
        telemetry: ChatTelemetry,
        collector: BreadcrumbCollector | None = None,
    ):
        self._settings = settings
        self._agent = agent
        self._telemetry = telemetry
        self._collector = collector
        self._preamble = settings.assistant_preamble or DEFAULT_PREAMBLE

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def agent(self) -> AgentClient:
        return self._agent

    def agent_options(self) -> AgentOptions:
        return AgentOptions(
            max_turns=self._settings.agent_max_turns,
            tool_preset=self._settings.agent_tool_preset,
            bypass_permissions=self._settings.agent_bypass_permissions,
            include_partial_messages=self._settings.agent_include_partial_messages,
            cwd=self._settings.agent_working_directory,
        )

    async def handle_chat_stream(self, request: Request) -> AsyncIterator[bytes]:
        """Validate the payload and open the relay.

        Anything raised before the stream is returned surfaces as a 400
        (validation) or a generic 500; later failures stay inside the stream.
        """
        started = perf_counter()
        context = RequestContext(request_id=request.state.request_id)
        request_id = context.request_id
        self._telemetry.request_received(request_id, context.created_at.isoformat())

        try:
            chat = validate_chat_body(await request.body(), request_id, self._telemetry)
            prompt = assemble_prompt(chat, self._preamble)
            self._telemetry.stream_started(
                request_id,
                message_count=len(chat.messages),
                last_message_length=len(chat.last_user_message.content),
            )
            relay = StreamRelay(
                agent=self._agent,
                prompt=prompt,
                options=self.agent_options(),
                context=context,
                telemetry=self._telemetry,
            )
        except AppError as exc:
            record_request(exc.status_code)
            raise
        except Exception as exc:
            logger.exception(
                "chat_request_failed",
                extra={"request_id": request_id, "agent_backend": self._agent.name},
            )
            self._telemetry.api_error(request_id, exc)
            record_request(500)
            raise HandlerError() from exc

        record_request(200)
        self._telemetry.request_completed(request_id, round(perf_counter() - started, 3))
        logger.info(
            "chat_stream_opened",
            extra={
                "request_id": request_id,
                "correlation_id": getattr(request.state, "correlation_id", None),
                "agent_backend": self._agent.name,
            },
        )
        return relay.frames()

    def readiness(self) -> dict[str, str]:
        return {
            "agent": "ok",
            "telemetry": "ok" if self._settings.telemetry_enabled else "disabled",
        }

    def get_telemetry(self, request_id: str) -> dict[str, object]:
        if self._collector is None:
            return {"request_id": request_id, "breadcrumbs": [], "events": []}
        return {
            "request_id": request_id,
            "breadcrumbs": self._collector.get_breadcrumbs(request_id),
            "events": self._collector.get_events(request_id),
        }
