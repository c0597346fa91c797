"""Pairing registry for monitor/viewer sessions.

The registry maps six-digit pairing codes to sessions of at most two
connections (one monitor, one viewer) and forwards session-scoped signaling
frames from one member to the other.

All operations are serialized by a single asyncio.Lock so no caller ever
observes a half-updated session. Outbound frames are collected while the lock
is held and written after it is released, so a slow socket never stalls other
pairings.
"""

import asyncio
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from cradle_rtc.exceptions import CodeSpaceExhaustedError
from cradle_rtc.protocol import (
    MSG_CODE_GENERATED,
    MSG_MONITORING_STATUS,
    MSG_PAIRING_FAILED,
    MSG_PAIRING_SUCCESS,
    MSG_PEER_DISCONNECTED,
    MSG_VIEWER_JOINED,
    format_message,
)

logger = logging.getLogger(__name__)

CODE_MIN = 100000
CODE_MAX = 999999
MAX_CODE_ATTEMPTS = 100


class OutboundChannel(Protocol):
    """Anything frames can be written to (a websocket connection in production)."""

    async def send(self, message: str) -> None: ...


def random_code() -> str:
    """Return a uniformly random six-digit code."""
    return str(CODE_MIN + secrets.randbelow(CODE_MAX - CODE_MIN + 1))


@dataclass
class Session:
    """One pairing: a monitor and, once joined, a viewer.

    Attributes:
        code: Pairing code naming the session.
        monitor_id: Connection that generated the code.
        viewer_id: Connection that joined with the code, if any.
        monitoring_active: Last monitoringStatus relayed within the session.
    """

    code: str
    monitor_id: str
    viewer_id: Optional[str] = None
    monitoring_active: bool = False

    def members(self) -> List[str]:
        return [m for m in (self.monitor_id, self.viewer_id) if m is not None]

    def counterpart(self, connection_id: str) -> Optional[str]:
        if connection_id == self.monitor_id:
            return self.viewer_id
        if connection_id == self.viewer_id:
            return self.monitor_id
        return None


Delivery = Tuple[str, str]  # (connection_id, frame)


class PairingRegistry:
    """Holds active sessions and routes frames between their members.

    Attributes:
        max_code_attempts: Collisions tolerated before giving up on a code.
    """

    def __init__(
        self,
        code_factory: Optional[Callable[[], str]] = None,
        max_code_attempts: int = MAX_CODE_ATTEMPTS,
    ):
        """Initialize an empty registry.

        Args:
            code_factory: Callable producing candidate codes (default random_code).
            max_code_attempts: Collisions tolerated before giving up.
        """
        self._code_factory = code_factory or random_code
        self.max_code_attempts = max_code_attempts

        self._sessions: Dict[str, Session] = {}  # code -> session
        self._membership: Dict[str, str] = {}  # connection_id -> code
        self._channels: Dict[str, OutboundChannel] = {}  # connection_id -> channel
        self._lock = asyncio.Lock()

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    @property
    def connections(self) -> int:
        return len(self._channels)

    def session_for(self, connection_id: str) -> Optional[Session]:
        """Return the session containing connection_id, if any."""
        code = self._membership.get(connection_id)
        return self._sessions.get(code) if code is not None else None

    def has_code(self, code: str) -> bool:
        return code in self._sessions

    # ===== Connection lifecycle =====

    async def attach(self, connection_id: str, channel: OutboundChannel) -> None:
        """Register the outbound channel of a newly accepted connection."""
        async with self._lock:
            self._channels[connection_id] = channel
        logger.info(f"Connection attached: {connection_id} (total: {self.connections})")

    async def on_disconnect(self, connection_id: str) -> None:
        """Forget a connection and tear down the session it belonged to.

        The surviving member, if any, is told with peerDisconnected.
        """
        async with self._lock:
            self._channels.pop(connection_id, None)
            deliveries = self._leave_session(connection_id)
        logger.info(
            f"Connection detached: {connection_id} "
            f"(connections: {self.connections}, sessions: {self.active_sessions})"
        )
        await self._deliver(deliveries)

    # ===== Pairing =====

    async def generate_code(self, requester_id: str) -> str:
        """Create a session owned by requester_id and reply with its code.

        A requester already in a session leaves it first.

        Returns:
            The new pairing code.

        Raises:
            CodeSpaceExhaustedError: If no free code was found within
                max_code_attempts draws.
        """
        async with self._lock:
            deliveries = self._leave_session(requester_id)

            code = None
            for _ in range(self.max_code_attempts):
                candidate = self._code_factory()
                if candidate not in self._sessions:
                    code = candidate
                    break
                logger.debug(f"Pairing code collision on {candidate}, retrying")

            if code is not None:
                self._sessions[code] = Session(code=code, monitor_id=requester_id)
                self._membership[requester_id] = code
                deliveries.append((requester_id, format_message(MSG_CODE_GENERATED, code)))

        await self._deliver(deliveries)
        if code is None:
            raise CodeSpaceExhaustedError(
                f"No free pairing code after {self.max_code_attempts} attempts"
            )

        logger.info(f"Code {code} assigned to monitor {requester_id}")
        return code

    async def join(self, code: str, requester_id: str) -> bool:
        """Bind requester_id as the viewer of code.

        Fails when the code is unknown, already has a viewer, or is the
        requester's own code. On success the requester gets pairingSuccess
        and the monitor gets viewerJoined; on failure the requester gets
        pairingFailed.

        Returns:
            True if the requester is now the session's viewer.
        """
        async with self._lock:
            session = self._sessions.get(code)
            if (
                session is None
                or session.viewer_id is not None
                or session.monitor_id == requester_id
            ):
                deliveries = [(requester_id, format_message(MSG_PAIRING_FAILED))]
                joined = False
            else:
                deliveries = self._leave_session(requester_id)
                session.viewer_id = requester_id
                self._membership[requester_id] = code
                deliveries.append((requester_id, format_message(MSG_PAIRING_SUCCESS)))
                deliveries.append((session.monitor_id, format_message(MSG_VIEWER_JOINED)))
                joined = True

        if joined:
            logger.info(f"Viewer {requester_id} joined monitor {session.monitor_id} on {code}")
        else:
            logger.info(f"Join with code {code} by {requester_id} failed")

        await self._deliver(deliveries)
        return joined

    # ===== Relay =====

    async def relay(
        self, sender_id: str, event: str, raw: str, payload: Any = None
    ) -> bool:
        """Forward raw unchanged to the other member of sender_id's session.

        Frames from connections with no session or no counterpart yet are
        dropped; that is the normal pre-join window, not an error.

        Args:
            sender_id: Connection the frame arrived on.
            event: Event name of the frame.
            raw: The frame exactly as received.
            payload: Parsed payload; recorded when event is monitoringStatus.

        Returns:
            True if the frame was handed to a counterpart.
        """
        async with self._lock:
            session = self.session_for(sender_id)
            target = session.counterpart(sender_id) if session else None

            if session is not None and event == MSG_MONITORING_STATUS and isinstance(payload, bool):
                session.monitoring_active = payload

            if target is None:
                logger.debug(f"Dropping {event} from {sender_id}: no counterpart")
                return False

        await self._deliver([(target, raw)])
        logger.debug(f"Relayed {event} from {sender_id} to {target}")
        return True

    async def request_monitoring_status(self, requester_id: str) -> bool:
        """Reply to requester_id with its session's stored monitoring flag.

        Returns:
            The flag sent (False when the requester has no session).
        """
        async with self._lock:
            session = self.session_for(requester_id)
            status = session.monitoring_active if session else False

        await self._deliver(
            [(requester_id, format_message(MSG_MONITORING_STATUS, status))]
        )
        return status

    # ===== Internals =====

    def _leave_session(self, connection_id: str) -> List[Delivery]:
        """Delete the session containing connection_id. Caller holds the lock."""
        code = self._membership.pop(connection_id, None)
        if code is None:
            return []

        session = self._sessions.pop(code, None)
        if session is None:
            return []

        deliveries = []
        for member in session.members():
            if member == connection_id:
                continue
            self._membership.pop(member, None)
            deliveries.append((member, format_message(MSG_PEER_DISCONNECTED)))

        logger.info(f"Session {code} removed after {connection_id} left")
        return deliveries

    async def _deliver(self, deliveries: List[Delivery]) -> None:
        for connection_id, frame in deliveries:
            channel = self._channels.get(connection_id)
            if channel is None:
                logger.debug(f"No channel for {connection_id}, dropping frame")
                continue
            try:
                await channel.send(frame)
            except Exception as e:
                logger.warning(f"Failed to deliver frame to {connection_id}: {e}")
