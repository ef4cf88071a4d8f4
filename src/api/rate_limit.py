"""Rate limiting configuration using slowapi."""

import time
from collections import deque

from opentelemetry import metrics
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from settings import APISettings

meter = metrics.get_meter("dispatch")

rate_limit_hits = meter.create_counter(
    name="api_rate_limit_hits_total",
    description="Total API requests rejected by rate limiting",
    unit="1",
)


def get_api_key_or_ip(request: Request) -> str:
    """Rate limit per API key and caller, otherwise by IP.

    Many users share one API key, so the caller's user id is part of the key.
    """
    api_key = request.headers.get("X-API-Key")
    if api_key:
        user_id = request.headers.get("X-User-Id", "-")
        return f"key:{api_key}:user:{user_id}"
    return f"ip:{get_remote_address(request)}"


limiter = Limiter(key_func=get_api_key_or_ip)


_rates: dict[str, str] = {
    "ride_request": APISettings.model_fields["ride_request_rate"].default,
    "location_update": APISettings.model_fields["location_update_rate"].default,
}


def ride_request_rate() -> str:
    return _rates["ride_request"]


def location_update_rate() -> str:
    return _rates["location_update"]


def configure_rates(settings: APISettings) -> None:
    """Point the dynamic limits at the configured values."""
    _rates["ride_request"] = settings.ride_request_rate
    _rates["location_update"] = settings.location_update_rate


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> Response:
    """429 in the engine's error envelope; Retry-After is the limit's window."""
    rate_limit_hits.add(1, {"endpoint": request.url.path, "method": request.method})
    window = exc.limit.limit.get_expiry()
    return JSONResponse(
        status_code=429,
        content={"error": "rate_limited", "message": str(exc.detail), "details": {}, "ride": None},
        headers={"Retry-After": str(window)},
    )


class WebSocketRateLimiter:
    """Sliding-window cap on WebSocket handshakes per caller."""

    def __init__(self, max_connections: int, window_seconds: int) -> None:
        self.max_connections = max_connections
        self.window_seconds = window_seconds
        self._handshakes: dict[str, deque[float]] = {}

    def is_limited(self, key: str) -> bool:
        """Record a handshake for key unless the window is already full."""
        now = time.monotonic()
        recent = self._handshakes.setdefault(key, deque())
        while recent and recent[0] <= now - self.window_seconds:
            recent.popleft()
        if len(recent) >= self.max_connections:
            return True
        recent.append(now)
        return False

    def reset(self) -> None:
        self._handshakes.clear()


ws_limiter = WebSocketRateLimiter(max_connections=10, window_seconds=60)
