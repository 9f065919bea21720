from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Assign every request a fresh id; a client-supplied id is kept as correlation only."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = str(uuid4())
        request.state.request_id = request_id
        request.state.correlation_id = request.headers.get("x-request-id")
        response = await call_next(request)
        response.headers["x-request-id"] = request_id
        return response
