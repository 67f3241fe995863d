from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from inquiry_crm.metrics import observe_http_request, resolve_http_path_label
from inquiry_crm.middleware.rate_limit import resolve_route_group


logger = logging.getLogger("inquiry_crm.request")

# Probes hit these constantly; they are still measured but only logged at debug.
_QUIET_PATHS = {"/health", "/metrics"}


def _level_for(path: str, status_code: int) -> int:
    if status_code >= 500:
        return logging.WARNING
    if path in _QUIET_PATHS:
        return logging.DEBUG
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        method = request.method
        path = resolve_http_path_label(request)
        fields = {
            "method": method,
            "path": path,
            "route_group": resolve_route_group(request.url.path),
        }

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            observe_http_request(method=method, path=path, status=500, duration=duration_ms / 1000)
            logger.error("http.error", exc_info=True, extra={**fields, "status_code": 500, "duration_ms": duration_ms})
            raise

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        observe_http_request(method=method, path=path, status=response.status_code, duration=duration_ms / 1000)
        logger.log(
            _level_for(path, response.status_code),
            "http.request",
            extra={
                **fields,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
                "user_id": getattr(request.state, "user_id", None),
            },
        )
        return response
