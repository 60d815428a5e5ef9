"""Request context middleware.

Plain ASGI rather than ``BaseHTTPMiddleware`` so the same context is bound
for the long-lived WebSocket streams as for ordinary requests.
"""

import time
import uuid

from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from call_signaling.utils.logging import get_logger, set_actor_id, set_request_id

logger = get_logger("middleware")


class RequestContextMiddleware:
    """Bind the request id and acting user to the logging context.

    HTTP responses get ``X-Request-ID`` and ``X-Process-Time`` headers. One
    line is logged per request, or per WebSocket session when it closes.
    """

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] not in ("http", "websocket"):
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        request_id = headers.get("x-request-id") or str(uuid.uuid4())
        set_request_id(request_id)
        set_actor_id(headers.get("x-user-id"))

        start = time.perf_counter()
        status_code = None

        async def send_with_headers(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
                response_headers = MutableHeaders(scope=message)
                response_headers["X-Request-ID"] = request_id
                response_headers["X-Process-Time"] = f"{(time.perf_counter() - start) * 1000:.2f}ms"
            await send(message)

        try:
            await self.app(scope, receive, send_with_headers)
        finally:
            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            path = scope.get("path", "")
            if scope["type"] == "http":
                logger.info(
                    f"{scope.get('method')} {path} - {status_code} ({duration_ms:.2f}ms)",
                    extra={
                        "method": scope.get("method"),
                        "path": path,
                        "status_code": status_code,
                        "duration_ms": duration_ms,
                    },
                )
            else:
                logger.info(
                    f"WebSocket {path} closed after {duration_ms:.0f}ms",
                    extra={"path": path, "duration_ms": duration_ms},
                )


def setup_middleware(app) -> None:
    """Set up all middleware for the FastAPI application."""
    app.add_middleware(RequestContextMiddleware)
    logger.info("Middleware configured: RequestContext")
