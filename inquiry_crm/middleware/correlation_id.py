from __future__ import annotations

import re
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from inquiry_crm.context import reset_correlation_id, set_correlation_id

_HEADER = "x-correlation-id"
_ALLOWED_RE = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def _resolve_correlation_id(raw: str | None) -> str:
    if raw and _ALLOWED_RE.match(raw):
        return raw
    return str(uuid.uuid4())


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = _resolve_correlation_id(request.headers.get(_HEADER))
        request.state.correlation_id = correlation_id
        token = set_correlation_id(correlation_id)
        span = trace.get_current_span()
        if span is not None and span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers[_HEADER] = correlation_id
        return response
