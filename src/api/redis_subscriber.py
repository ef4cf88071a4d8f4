"""Redis pub/sub subscriber for WebSocket fan-out."""

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING, Any

import redis.asyncio as redis

from core.exceptions import ValidationError
from events.schemas import parse_server_event

if TYPE_CHECKING:
    from realtime.gateway import RealtimeGateway

logger = logging.getLogger(__name__)


class RideEventSubscriber:
    """Subscribes to the ride event channel and hands each event to the gateway."""

    def __init__(
        self,
        redis_client: Any,
        gateway: "RealtimeGateway",
        channel: str = "ride-events",
        reconnect_delay: float = 5.0,
    ):
        self.redis_client = redis_client
        self.gateway = gateway
        self.channel = channel
        self.task: asyncio.Task[None] | None = None
        self.reconnect_delay = reconnect_delay
        self._subscribed = asyncio.Event()

    async def start(self) -> None:
        """Start the subscriber and wait for subscription to be established."""
        self.task = asyncio.create_task(self._subscribe_and_fanout())
        try:
            await asyncio.wait_for(self._subscribed.wait(), timeout=10.0)
            logger.info(f"Redis subscriber ready on channel {self.channel}")
        except TimeoutError:
            logger.warning("Redis subscription timeout - proceeding anyway")

    async def stop(self) -> None:
        if self.task:
            self.task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self.task

    async def handle_message(self, message: dict[str, Any]) -> None:
        """Decode one pub/sub message and deliver it."""
        if message.get("type") != "message":
            return
        try:
            event = parse_server_event(message["data"])
        except ValidationError as e:
            logger.warning(f"Invalid event from Redis: {e.message} {e.details}")
            return
        await self.gateway.deliver(event)

    async def _subscribe_and_fanout(self) -> None:
        while True:
            try:
                pubsub = self.redis_client.pubsub()
                await pubsub.subscribe(self.channel)
                self._subscribed.set()
                logger.info(f"Subscribed to Redis channel: {self.channel}")

                async for message in pubsub.listen():
                    try:
                        await self.handle_message(message)
                    except Exception:
                        logger.exception("Failed to deliver ride event")

            except redis.RedisError as e:
                logger.error(
                    f"Redis subscription failed ({type(e).__name__}: {e}), "
                    f"reconnecting in {self.reconnect_delay}s..."
                )
                await asyncio.sleep(self.reconnect_delay)
            except asyncio.CancelledError:
                break
