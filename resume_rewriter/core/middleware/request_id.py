import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from resume_rewriter.core.logging import LOGGER_NAME, latency_bucket_ms, request_id_ctx_var

REQUEST_ID_HEADER = "x-request-id"
MAX_INCOMING_ID_LENGTH = 128

logger = logging.getLogger(LOGGER_NAME)


def _accept_incoming(value):
    """Reuse a caller-supplied id only if it is short and printable."""
    if value and len(value) <= MAX_INCOMING_ID_LENGTH and value.isprintable():
        return value
    return None


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Correlate every request with an id and log one line when it finishes."""

    def __init__(self, app, header_name: str = REQUEST_ID_HEADER):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next):
        rid = _accept_incoming(request.headers.get(self.header_name)) or uuid4().hex
        request.state.request_id = rid
        ctx_token = request_id_ctx_var.set(rid)

        started = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(ctx_token)
        elapsed_ms = (time.perf_counter() - started) * 1000

        response.headers[self.header_name] = rid
        logger.info(
            "request.complete",
            extra={
                "request_id": rid,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_bucket": latency_bucket_ms(elapsed_ms),
                "user_id": getattr(request.state, "user_id", None),
            },
        )
        return response
