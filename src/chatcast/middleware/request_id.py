"""Request ID middleware — correlate a publish with the request that made it.

Learn: The chat app usually sends its own X-Request-ID with
POST /messages. We reuse it (or mint a UUID), bind it to structlog's
contextvars together with the method and path, and echo it back. The
gateway's "broadcast.published" entry then carries the same request_id
as the chat app's log line for the stored message.
"""

import time
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = structlog.get_logger()

HEADER = "X-Request-ID"


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a request id for the duration of each HTTP request."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(HEADER) or uuid.uuid4().hex

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        started = time.perf_counter()
        response: Response = await call_next(request)
        logger.debug(
            "http.request_done",
            status=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        response.headers[HEADER] = request_id
        return response
