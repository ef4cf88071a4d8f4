"""Room-scoped real-time session manager.

Each WebSocket connection is a RealtimeSession. A room is the set of
connections watching one ride. Sessions are owned here and never touch
ride state directly; mutations requested over the socket go through the
DispatchCoordinator on a worker thread.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel

from core.clock import utc_now
from core.exceptions import AuthorizationError, DispatchError
from events.schemas import (
    AckMessage,
    DriverLocationEvent,
    ErrorMessage,
    JoinRideMessage,
    LeaveRideMessage,
    LocationUpdateMessage,
    RideStatusChangedEvent,
    ServerEvent,
    parse_client_message,
)
from matching.dispatch_coordinator import DispatchCoordinator
from ride import DriverLocation

logger = logging.getLogger(__name__)

Sender = Callable[[dict[str, Any]], Awaitable[None]]
Role = Literal["customer", "driver"]


@dataclass
class RealtimeSession:
    connection_id: str
    user_id: str
    role: Role
    send: Sender
    ride_ids: set[str] = field(default_factory=set)


class RealtimeGateway:
    """Delivers ride events to the connections that may see them.

    All methods run on the event loop thread, so the bookkeeping dicts need
    no lock. Status events for one ride are serialized by a per-room
    ``asyncio.Lock`` so every connection sees them in emission order.
    """

    def __init__(self, coordinator: DispatchCoordinator, send_timeout_seconds: float = 5.0):
        self._coordinator = coordinator
        self._send_timeout = send_timeout_seconds
        self._sessions: dict[str, RealtimeSession] = {}
        self._user_connections: dict[str, set[str]] = {}
        self._rooms: dict[str, set[str]] = {}
        self._room_locks: dict[str, asyncio.Lock] = {}

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def connect(
        self, connection_id: str, user_id: str, role: Role, sender: Sender
    ) -> RealtimeSession:
        session = RealtimeSession(connection_id, user_id, role, sender)
        self._sessions[connection_id] = session
        self._user_connections.setdefault(user_id, set()).add(connection_id)
        logger.info(f"Connection {connection_id} opened for {role} {user_id}")
        return session

    def disconnect(self, connection_id: str) -> None:
        """Forget the connection and leave every room it joined."""
        session = self._sessions.pop(connection_id, None)
        if session is None:
            return
        for ride_id in list(session.ride_ids):
            self._remove_from_room(ride_id, connection_id)
        connections = self._user_connections.get(session.user_id)
        if connections is not None:
            connections.discard(connection_id)
            if not connections:
                del self._user_connections[session.user_id]
        logger.info(f"Connection {connection_id} closed")

    def get_session(self, connection_id: str) -> RealtimeSession | None:
        return self._sessions.get(connection_id)

    def room_members(self, ride_id: str) -> set[str]:
        return set(self._rooms.get(ride_id, ()))

    async def join_room(self, connection_id: str, ride_id: str) -> None:
        """Subscribe a connection to a ride's events.

        Raises:
            NotFoundError: unknown ride
            AuthorizationError: the connection's user is not on the ride
        """
        session = self._require_session(connection_id)
        participants = await asyncio.to_thread(self._coordinator.get_ride_participants, ride_id)
        if not participants.includes(session.user_id):
            raise AuthorizationError(
                "Only the ride's customer or assigned driver can join its room",
                details={"ride_id": ride_id},
            )
        # The connection may have closed while the lookup ran
        if connection_id not in self._sessions:
            return
        self._rooms.setdefault(ride_id, set()).add(connection_id)
        session.ride_ids.add(ride_id)

    def leave_room(self, connection_id: str, ride_id: str) -> None:
        session = self._sessions.get(connection_id)
        if session is not None:
            session.ride_ids.discard(ride_id)
        self._remove_from_room(ride_id, connection_id)

    async def broadcast_location(
        self, ride_id: str, event: DriverLocationEvent, sender_user_id: str
    ) -> int:
        """Send to the room, skipping every connection of the reporting driver."""
        recipients = [
            cid
            for cid in self._rooms.get(ride_id, ())
            if cid in self._sessions and self._sessions[cid].user_id != sender_user_id
        ]
        return await self._send_many(recipients, event)

    async def broadcast_status(self, ride_id: str, event: RideStatusChangedEvent) -> int:
        """Send to the room and to both participants' connections, one copy each."""
        lock = self._room_locks.setdefault(ride_id, asyncio.Lock())
        async with lock:
            recipients = set(self._rooms.get(ride_id, ()))
            for user_id in (event.customer_id, event.driver_id):
                if user_id is not None:
                    recipients |= self._user_connections.get(user_id, set())
            delivered = await self._send_many(sorted(recipients), event)
        # A terminal status is the last event a ride emits
        if event.status.is_terminal and not lock.locked():
            self._room_locks.pop(ride_id, None)
        return delivered

    async def deliver(self, event: ServerEvent) -> int:
        """Route an event read from the fan-out channel."""
        if isinstance(event, DriverLocationEvent):
            return await self.broadcast_location(event.ride_id, event, event.driver_id)
        return await self.broadcast_status(event.ride_id, event)

    async def handle_client_message(self, connection_id: str, payload: str | bytes | dict) -> None:
        """Validate and act on one inbound message; errors go back to this connection only."""
        session = self._sessions.get(connection_id)
        if session is None:
            logger.debug(f"Message for unknown connection {connection_id} dropped")
            return

        ride_id: str | None = None
        try:
            message = parse_client_message(payload)
            ride_id = getattr(message, "ride_id", None)

            if isinstance(message, JoinRideMessage):
                await self.join_room(connection_id, message.ride_id)
                reply: BaseModel = AckMessage(action=message.type, ride_id=message.ride_id)

            elif isinstance(message, LeaveRideMessage):
                self.leave_room(connection_id, message.ride_id)
                reply = AckMessage(action=message.type, ride_id=message.ride_id)

            elif isinstance(message, LocationUpdateMessage):
                self._require_driver(session, message.type)
                location = DriverLocation(
                    latitude=message.latitude,
                    longitude=message.longitude,
                    heading=message.heading,
                    speed=message.speed,
                    timestamp=message.timestamp or utc_now(),
                )
                ack = await asyncio.to_thread(
                    self._coordinator.update_driver_location,
                    session.user_id,
                    location,
                    message.ride_id,
                )
                reply = AckMessage(action=message.type, ride_id=ack.ride_id, applied=ack.applied)

            else:
                self._require_driver(session, message.type)
                ride = await asyncio.to_thread(
                    self._coordinator.update_status,
                    session.user_id,
                    message.ride_id,
                    message.status,
                    message.otp,
                    message.final_fare,
                )
                reply = AckMessage(action=message.type, ride_id=ride.ride_id)

        except DispatchError as e:
            logger.info(f"Rejected message on {connection_id}: {e.code} {e.message}")
            reply = ErrorMessage(code=e.code, message=e.message, ride_id=ride_id, details=e.details)

        await self._send(connection_id, reply)

    async def close_all(self) -> None:
        for connection_id in list(self._sessions):
            self.disconnect(connection_id)

    def _require_session(self, connection_id: str) -> RealtimeSession:
        session = self._sessions.get(connection_id)
        if session is None:
            raise AuthorizationError("Connection is not registered")
        return session

    @staticmethod
    def _require_driver(session: RealtimeSession, action: str) -> None:
        if session.role != "driver":
            raise AuthorizationError(f"Only drivers may send {action}", details={"action": action})

    def _remove_from_room(self, ride_id: str, connection_id: str) -> None:
        members = self._rooms.get(ride_id)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self._rooms[ride_id]

    async def _send_many(self, connection_ids: list[str], message: BaseModel) -> int:
        delivered = 0
        for connection_id in connection_ids:
            if await self._send(connection_id, message):
                delivered += 1
        return delivered

    async def _send(self, connection_id: str, message: BaseModel) -> bool:
        session = self._sessions.get(connection_id)
        if session is None:
            return False
        try:
            await asyncio.wait_for(
                session.send(message.model_dump(mode="json")), self._send_timeout
            )
        except Exception as e:
            logger.warning(f"Send to {connection_id} failed, dropping connection: {e}")
            self.disconnect(connection_id)
            return False
        return True
