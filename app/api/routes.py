from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

from app.metrics import metrics_router
from app.services.chat_service import ChatService

router = APIRouter()
router.include_router(metrics_router)


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz")
def readyz(request: Request) -> dict[str, object]:
    service: ChatService = request.app.state.chat_service
    dependencies = service.readiness()
    status = "ready" if all(value == "ok" for value in dependencies.values()) else "degraded"
    return {"status": status, "dependencies": dependencies}


@router.get("/v1/telemetry/{request_id}")
def get_telemetry(request: Request, request_id: str) -> dict[str, object]:
    service: ChatService = request.app.state.chat_service
    return service.get_telemetry(request_id)


@router.post("/api/chat")
async def chat(request: Request) -> StreamingResponse:
    service: ChatService = request.app.state.chat_service
    frames = await service.handle_chat_stream(request)
    return StreamingResponse(
        frames,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
