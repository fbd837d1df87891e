import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from companion.core.logging import request_id_ctx_var, latency_bucket_ms, log_event


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a request_id for the whole chat turn and log one line per request."""

    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next):
        rid = request.headers.get(self.header_name) or str(uuid4())
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)
        start = time.perf_counter()
        try:
            response = await call_next(request)
            response.headers[self.header_name] = rid
            log_event(
                "info",
                "request.complete",
                request_id=rid,
                user_id=request.headers.get("x-user-id"),
                event_type="http.request",
                extra={
                    "path": request.url.path,
                    "method": request.method,
                    "status": response.status_code,
                    "latency_bucket": latency_bucket_ms((time.perf_counter() - start) * 1000),
                },
            )
            return response
        finally:
            request_id_ctx_var.reset(token)
