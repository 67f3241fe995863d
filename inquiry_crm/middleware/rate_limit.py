from __future__ import annotations

import math
import threading
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any

from fastapi.responses import JSONResponse
from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from inquiry_crm.context import get_correlation_id
from inquiry_crm.core.config import get_settings
from inquiry_crm.metrics import observe_rate_limited


@dataclass
class _BucketState:
    tokens: float
    last_refill: float


class TokenBucketLimiter:
    """Per (client, route group) token buckets, bounded by least-recently-used eviction."""

    def __init__(self, max_entries: int = 10000) -> None:
        self._lock = threading.Lock()
        self._buckets: OrderedDict[tuple[str, str], _BucketState] = OrderedDict()
        self.max_entries = max_entries

    def __len__(self) -> int:
        return len(self._buckets)

    def take(self, client_id: str, route_group: str, capacity: int, window_seconds: int) -> tuple[bool, int]:
        if capacity <= 0:
            return False, window_seconds

        now = time.monotonic()
        refill_rate = capacity / float(window_seconds)
        key = (client_id, route_group)

        with self._lock:
            current = self._buckets.get(key)
            if current is None:
                current = _BucketState(tokens=float(capacity), last_refill=now)
                self._buckets[key] = current
                while len(self._buckets) > max(1, self.max_entries):
                    self._buckets.popitem(last=False)
            else:
                self._buckets.move_to_end(key)

            elapsed = max(0.0, now - current.last_refill)
            current.tokens = min(float(capacity), current.tokens + (elapsed * refill_rate))
            current.last_refill = now

            if current.tokens < 1.0:
                retry_after = max(1, math.ceil((1.0 - current.tokens) / refill_rate))
                return False, retry_after

            current.tokens -= 1.0
            return True, 0

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = TokenBucketLimiter()


class MutationRateLimitMiddleware(BaseHTTPMiddleware):
    mutating_methods = {"POST", "PUT", "PATCH", "DELETE"}

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if settings.rate_limit_disabled:
            return await call_next(request)

        path = request.url.path
        if not path.startswith("/api/") or request.method.upper() not in self.mutating_methods:
            return await call_next(request)

        client_id = _resolve_client_id(request)
        route_group = resolve_route_group(path)
        _limiter.max_entries = settings.rate_limit_max_tracked_clients
        allowed, retry_after = _limiter.take(
            client_id=client_id,
            route_group=route_group,
            capacity=settings.rate_limit_mutations_per_minute,
            window_seconds=60,
        )
        if allowed:
            return await call_next(request)

        observe_rate_limited(route_group)
        correlation_id = (
            get_correlation_id()
            or getattr(request.state, "correlation_id", None)
            or request.headers.get("x-correlation-id")
            or str(uuid.uuid4())
        )
        response = JSONResponse(
            status_code=429,
            content={
                "code": "rate_limited",
                "message": "Too many requests",
                "details": {"retry_after": retry_after},
                "correlation_id": correlation_id,
            },
        )
        response.headers["Retry-After"] = str(retry_after)
        response.headers["x-correlation-id"] = correlation_id
        return response


def resolve_route_group(path: str) -> str:
    parts = [part for part in path.split("/") if part]
    if len(parts) < 2:
        return "api"
    return parts[1]


def _resolve_client_id(request: Request) -> str:
    fallback = f"ip:{request.client.host}" if request.client is not None else "anonymous"
    auth_header = request.headers.get("authorization", "")
    token = auth_header[len("Bearer ") :] if auth_header.startswith("Bearer ") else ""
    if not token:
        return fallback

    settings = get_settings()
    try:
        payload: dict[str, Any] = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return fallback

    subject = payload.get("sub")
    if subject is None:
        return fallback
    return f"user:{subject}"


def get_rate_limiter() -> TokenBucketLimiter:
    return _limiter


def reset_rate_limiter() -> None:
    _limiter.clear()
