"""FastAPI application factory for the dispatch engine."""

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from api.middleware.security_headers import SecurityHeadersMiddleware
from api.models.rides import ErrorResponse, RideResponse
from api.rate_limit import configure_rates, limiter, rate_limit_exceeded_handler
from api.redis_subscriber import RideEventSubscriber
from api.routes import rides
from api.websocket import router as websocket_router
from core.exceptions import (
    AuthorizationError,
    ConflictError,
    DispatchError,
    InvalidTransitionError,
    NotFoundError,
    OtpMismatchError,
    TransientError,
    ValidationError,
)
from matching.dispatch_coordinator import DispatchCoordinator
from realtime.gateway import RealtimeGateway
from settings import Settings, get_settings

logger = logging.getLogger(__name__)

# Checked in order; the first matching class wins.
ERROR_STATUS_CODES: list[tuple[type[DispatchError], int]] = [
    (ValidationError, 422),
    (NotFoundError, 404),
    (ConflictError, 409),
    (InvalidTransitionError, 409),
    (OtpMismatchError, 400),
    (AuthorizationError, 403),
    (TransientError, 503),
]


def status_code_for(error: DispatchError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


async def dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")

    viewer_id = request.headers.get("X-User-Id")
    body = ErrorResponse(
        error=exc.code,
        message=exc.message,
        details=exc.details,
        ride=RideResponse.for_viewer(exc.ride, viewer_id) if exc.ride is not None else None,
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


class PresenceEvictor:
    """Periodically drops driver presences that stopped pinging."""

    def __init__(self, coordinator: DispatchCoordinator, interval_seconds: float) -> None:
        self._coordinator = coordinator
        self._interval = interval_seconds
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        self._task = asyncio.create_task(self._evict_loop())

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task

    async def _evict_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._interval)
                self._coordinator.evict_stale_presence()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in presence eviction loop")


def create_app(
    coordinator: DispatchCoordinator,
    redis_client: Any = None,
    gateway: RealtimeGateway | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """Create FastAPI application with injected dependencies.

    Args:
        coordinator: DispatchCoordinator serving every ride operation
        redis_client: Async Redis client for the ride event channel; without
            one, events are not fanned out to WebSocket clients
        gateway: RealtimeGateway (created over coordinator when omitted)
        settings: Settings (loaded from the environment when omitted)
    """
    settings = settings or get_settings()
    gateway = gateway or RealtimeGateway(coordinator)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> Any:
        """Manage application startup and shutdown."""
        evictor = PresenceEvictor(coordinator, settings.dispatch.staleness_threshold_seconds)
        app.state.evictor = evictor
        subscriber = None
        if redis_client is not None:
            subscriber = RideEventSubscriber(redis_client, gateway, settings.redis.channel)
            app.state.subscriber = subscriber
            await subscriber.start()
        await evictor.start()
        yield
        await evictor.stop()
        if subscriber is not None:
            await subscriber.stop()
        await gateway.close_all()

    app = FastAPI(
        title="Ride Dispatch Engine API",
        version="1.0.0",
        description="Ride matching, lifecycle and real-time tracking",
        lifespan=lifespan,
    )

    configure_rates(settings.api)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)  # type: ignore[arg-type]
    app.add_exception_handler(DispatchError, dispatch_error_handler)  # type: ignore[arg-type]

    # Set core dependencies immediately (not in lifespan) so they're available for testing
    app.state.settings = settings
    app.state.coordinator = coordinator
    app.state.gateway = gateway
    app.state.redis_client = redis_client

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors.origin_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(SecurityHeadersMiddleware)

    app.include_router(rides.router, prefix="/rides", tags=["rides"])
    app.include_router(websocket_router)

    @app.get("/health")
    def health_check() -> dict[str, Any]:
        """Health check endpoint for monitoring (unauthenticated for infrastructure)."""
        return {
            "status": "healthy",
            "connections": gateway.session_count,
            "rides_in_flight": coordinator.count_in_flight(),
        }

    return app
