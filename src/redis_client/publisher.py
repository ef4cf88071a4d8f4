import logging
import time
from typing import TYPE_CHECKING

import redis
from opentelemetry import metrics, trace
from redis.exceptions import RedisError

from events.schemas import DriverLocationEvent, RideStatusChangedEvent

if TYPE_CHECKING:
    from settings import RedisSettings

logger = logging.getLogger(__name__)

_tracer = trace.get_tracer(__name__)
_meter = metrics.get_meter("dispatch")

publish_failures = _meter.create_counter(
    name="dispatch_event_publish_failures_total",
    description="Ride events dropped because the fan-out channel was unreachable",
    unit="1",
)


class RideEventPublisher:
    """Synchronous Redis publisher for ride events.

    Uses the sync Redis client so it can be called from request worker
    threads as well as from the event loop thread.
    """

    def __init__(self, client: "redis.Redis", channel: str = "ride-events"):
        self._client = client
        self.channel = channel

    @classmethod
    def from_settings(cls, settings: "RedisSettings") -> "RideEventPublisher":
        client = redis.Redis(
            host=settings.host,
            port=settings.port,
            db=settings.db,
            password=settings.password,
            ssl=settings.ssl,
            decode_responses=True,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
        )
        return cls(client, settings.channel)

    def publish(self, event: DriverLocationEvent | RideStatusChangedEvent) -> bool:
        """Publish one event; returns False when it was dropped.

        Fan-out is best effort: the ride state is already committed, so a
        failure is logged and counted but never raised to the caller.
        """
        with _tracer.start_as_current_span("redis.publish") as span:
            span.set_attribute("db.system", "redis")
            span.set_attribute("db.redis.channel", self.channel)
            span.set_attribute("ride_id", event.ride_id)
            if event.correlation_id:
                span.set_attribute("correlation_id", event.correlation_id)

            start_time = time.perf_counter()
            try:
                self._client.publish(self.channel, event.model_dump_json())
            except RedisError as e:
                span.record_exception(e)
                publish_failures.add(1, {"event_type": event.type})
                logger.error(
                    "Failed to publish %s for ride %s: %s", event.type, event.ride_id, e
                )
                return False

            latency_ms = (time.perf_counter() - start_time) * 1000
            span.set_attribute("latency_ms", latency_ms)
            return True

    def close(self) -> None:
        self._client.close()
