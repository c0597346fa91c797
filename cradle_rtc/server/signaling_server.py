"""WebSocket pairing and signaling server.

Each websocket connection is one unit (monitor or viewer). Pairing events are
answered by the PairingRegistry; session-scoped events are forwarded verbatim
to the other member of the sender's session. Plain HTTP GETs on the same port
(anything that is not a websocket upgrade) get a static liveness response.

Usage:
    cradle-rtc server [--host HOST] [--port PORT]
"""

import asyncio
import logging
from http import HTTPStatus
from typing import Optional

from websockets.asyncio.server import ServerConnection, serve
from websockets.exceptions import ConnectionClosed
from websockets.http11 import Request, Response

from cradle_rtc.exceptions import CodeSpaceExhaustedError, MalformedMessageError
from cradle_rtc.protocol import (
    MSG_GENERATE_CODE,
    MSG_HEARTBEAT,
    MSG_JOIN_WITH_CODE,
    MSG_REQUEST_MONITORING_STATUS,
    RELAYED_EVENTS,
    parse_message,
)
from cradle_rtc.server.registry import PairingRegistry

logger = logging.getLogger(__name__)

HEALTH_BODY = "OK\n"


class SignalingServer:
    """Accepts unit connections and dispatches their frames to the registry.

    Attributes:
        registry: Shared PairingRegistry for this process.
        host: Interface to bind.
        port: Port to bind (websocket and liveness share it).
    """

    def __init__(
        self,
        registry: Optional[PairingRegistry] = None,
        host: str = "0.0.0.0",
        port: int = 8080,
    ):
        self.registry = registry or PairingRegistry()
        self.host = host
        self.port = port

    def process_request(
        self, connection: ServerConnection, request: Request
    ) -> Optional[Response]:
        """Answer plain HTTP requests with the liveness body.

        Websocket upgrades return None and continue the handshake.
        """
        if request.headers.get("Upgrade", "").lower() == "websocket":
            return None
        return connection.respond(HTTPStatus.OK, HEALTH_BODY)

    async def handler(self, websocket: ServerConnection):
        """Handle a WebSocket connection."""
        connection_id = str(websocket.id)
        await self.registry.attach(connection_id, websocket)
        logger.info(f"New connection: {connection_id} from {websocket.remote_address}")

        try:
            async for message in websocket:
                await self.dispatch(connection_id, message)
        except ConnectionClosed:
            logger.info(f"Connection closed: {connection_id}")
        finally:
            await self.registry.on_disconnect(connection_id)

    async def dispatch(self, connection_id: str, raw) -> None:
        """Route one frame from connection_id.

        Malformed frames are logged and dropped; nothing a single client sends
        may take the server down.
        """
        try:
            event, args = parse_message(raw)
        except MalformedMessageError as e:
            logger.warning(f"Dropping malformed frame from {connection_id}: {e}")
            return

        if event == MSG_HEARTBEAT:
            logger.debug(f"Heartbeat from {connection_id}")

        elif event == MSG_GENERATE_CODE:
            try:
                await self.registry.generate_code(connection_id)
            except CodeSpaceExhaustedError as e:
                logger.error(f"Cannot pair {connection_id}: {e}")

        elif event == MSG_JOIN_WITH_CODE:
            code = args[0] if args else None
            # Some clients send the code as a number
            if isinstance(code, int) and not isinstance(code, bool):
                code = str(code)
            if not isinstance(code, str):
                logger.warning(f"Dropping {event} from {connection_id}: missing code")
                return
            await self.registry.join(code, connection_id)

        elif event == MSG_REQUEST_MONITORING_STATUS:
            await self.registry.request_monitoring_status(connection_id)

        elif event in RELAYED_EVENTS:
            payload = args[-1] if args else None
            await self.registry.relay(connection_id, event, raw, payload)

        else:
            logger.warning(f"Unknown event {event!r} from {connection_id}")

    async def serve_forever(self):
        """Start the signaling server and run until cancelled."""
        async with serve(
            self.handler,
            self.host,
            self.port,
            process_request=self.process_request,
        ):
            logger.info(f"Signaling server running on ws://{self.host}:{self.port}")
            await asyncio.Future()  # Run forever
