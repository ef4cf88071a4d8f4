import logging
import uuid

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from api.auth import api_key_matches
from api.rate_limit import ws_limiter

logger = logging.getLogger(__name__)

router = APIRouter()

ROLES = ("customer", "driver")


def extract_api_key_and_protocol(websocket: WebSocket) -> tuple[str | None, str | None]:
    """Extract API key and full protocol from Sec-WebSocket-Protocol header.

    Expected format: apikey.<key>
    Returns: (api_key, full_protocol) - both needed for proper handshake
    """
    protocol_header = websocket.headers.get("sec-websocket-protocol")
    if protocol_header:
        protocols = [p.strip() for p in protocol_header.split(",")]
        for protocol in protocols:
            if protocol.startswith("apikey."):
                return protocol.split(".", 1)[1], protocol
    return None, None


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    user_id: str | None = None,
    role: str | None = None,
) -> None:
    api_key, subprotocol = extract_api_key_and_protocol(websocket)
    settings = websocket.app.state.settings

    if not api_key_matches(api_key, settings.api.key):
        await websocket.close(code=1008)
        return

    if not user_id or role not in ROLES:
        await websocket.close(code=1008)
        return

    if ws_limiter.is_limited(f"key:{api_key}:user:{user_id}"):
        await websocket.close(code=1008)
        return

    gateway = websocket.app.state.gateway
    await websocket.accept(subprotocol=subprotocol)
    connection_id = uuid.uuid4().hex
    gateway.connect(connection_id, user_id, role, websocket.send_json)

    try:
        while True:
            payload = await websocket.receive_text()
            await gateway.handle_client_message(connection_id, payload)
    except WebSocketDisconnect:
        logger.debug(f"Client {connection_id} disconnected")
    finally:
        gateway.disconnect(connection_id)
