"""
Ride Dispatch Engine - Entry Point

Runs the FastAPI HTTP/WebSocket surface over one DispatchCoordinator.
Ride events are published to Redis and read back by the same process (and
any other replicas) for WebSocket fan-out.
"""

import logging
import os

import uvicorn
from redis.asyncio import Redis

from api.app import create_app
from db.database import init_database
from engine_logging import setup_logging
from matching.dispatch_coordinator import DispatchCoordinator
from matching.geo_index import GeoIndex
from redis_client.publisher import RideEventPublisher
from settings import Settings, get_settings

logger = logging.getLogger(__name__)


def create_async_redis_client(settings: Settings) -> "Redis":
    """Create async Redis client for the WebSocket fan-out."""
    return Redis(
        host=settings.redis.host,
        port=settings.redis.port,
        db=settings.redis.db,
        password=settings.redis.password or None,
        ssl=settings.redis.ssl,
        decode_responses=True,
    )


def build_coordinator(settings: Settings) -> DispatchCoordinator:
    session_factory = init_database(
        settings.database.url,
        lock_timeout_seconds=settings.database.lock_timeout_seconds,
        echo=settings.database.echo,
    )
    geo_index = GeoIndex(
        h3_resolution=settings.dispatch.h3_resolution,
        staleness_threshold_seconds=settings.dispatch.staleness_threshold_seconds,
    )
    return DispatchCoordinator(
        session_factory=session_factory,
        geo_index=geo_index,
        publisher=RideEventPublisher.from_settings(settings.redis),
        settings=settings.dispatch,
    )


def main() -> None:
    """Main entry point - initializes and runs the dispatch service."""
    settings = get_settings()

    # LOG_FORMAT env var takes precedence, then settings.dispatch.log_format
    log_format = os.environ.get("LOG_FORMAT") or settings.dispatch.log_format
    setup_logging(
        level=settings.dispatch.log_level,
        json_output=log_format == "json",
    )
    logger.info("Starting ride dispatch engine...")

    coordinator = build_coordinator(settings)
    app = create_app(
        coordinator=coordinator,
        redis_client=create_async_redis_client(settings),
        settings=settings,
    )

    uvicorn.run(app, host=settings.api.host, port=settings.api.port, log_config=None)


if __name__ == "__main__":
    main()
