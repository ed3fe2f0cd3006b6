from starlette.middleware.base import BaseHTTPMiddleware
from fastapi import Request

from core.logging.correlation import CorrelationIdManager

CORRELATION_HEADER = "X-Correlation-ID"


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Run each request under a correlation ID.

    An incoming X-Correlation-ID header is honoured; otherwise one is
    generated. The ID is echoed back on the response.
    """

    async def dispatch(self, request: Request, call_next):
        incoming = request.headers.get(CORRELATION_HEADER)
        if incoming:
            correlation_id = CorrelationIdManager.set_correlation_id(incoming)
        else:
            CorrelationIdManager.clear_correlation()
            correlation_id = CorrelationIdManager.ensure_correlation_id()
        request.state.correlation_id = correlation_id

        try:
            response = await call_next(request)
        finally:
            CorrelationIdManager.clear_correlation()
        response.headers[CORRELATION_HEADER] = correlation_id
        return response
