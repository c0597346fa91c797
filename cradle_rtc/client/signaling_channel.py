"""Client side of the signaling websocket.

SignalingChannel owns one websocket to the pairing server and turns it into
named events. It keeps the connection alive with periodic heartbeats and
reconnects a bounded number of times when the socket drops. Sends never raise:
a send while disconnected is logged and reported as False, and callers decide
whether to retry.

Handlers registered with on() run in registration order on the event loop
that reads the socket; coroutine handlers are awaited before the next frame
is read, so every handler observes events in arrival order.
"""

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from cradle_rtc.exceptions import MalformedMessageError
from cradle_rtc.protocol import (
    MSG_AUDIO_LEVEL,
    MSG_CANDIDATE,
    MSG_CODE_GENERATED,
    MSG_GENERATE_CODE,
    MSG_HEARTBEAT,
    MSG_JOIN_WITH_CODE,
    MSG_MONITORING_STATUS,
    MSG_PAIRING_FAILED,
    MSG_PAIRING_SUCCESS,
    MSG_PEER_DISCONNECTED,
    MSG_REQUEST_MONITORING_STATUS,
    IceCandidatePayload,
    SessionDescriptionPayload,
    format_message,
    parse_message,
)

logger = logging.getLogger(__name__)

# Global constants
HEARTBEAT_INTERVAL = 5.0  # seconds
MAX_RECONNECT_ATTEMPTS = 5
RETRY_DELAY = 2.0  # seconds

# Events sent at telemetry rate; drops are logged at debug level only
QUIET_EVENTS = frozenset({MSG_AUDIO_LEVEL, MSG_HEARTBEAT})


class ChannelState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


Handler = Callable[..., Any]


class SignalingChannel:
    """Event-oriented connection to the pairing server.

    Attributes:
        url: Websocket URL of the signaling server.
        state: Current ChannelState.
        session_code: Pairing code of the session this unit belongs to, set by
            codeGenerated (monitor) or a successful join (viewer).
        reconnect_exhausted: True once reconnection gave up.
    """

    def __init__(
        self,
        url: str,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS,
        reconnect_delay: float = RETRY_DELAY,
        connector: Optional[Callable] = None,
    ):
        """Initialize a disconnected channel.

        Args:
            url: Websocket URL, e.g. "ws://localhost:8080".
            heartbeat_interval: Seconds between heartbeat ticks.
            max_reconnect_attempts: Reconnect attempts before giving up.
            reconnect_delay: Seconds to wait before each reconnect attempt.
            connector: Coroutine function opening the websocket
                (default websockets.asyncio.client.connect).
        """
        self.url = url
        self.heartbeat_interval = heartbeat_interval
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_delay = reconnect_delay
        self._connector = connector or connect

        self.websocket: Optional[ClientConnection] = None
        self.state = ChannelState.DISCONNECTED
        self.session_code: Optional[str] = None
        self.reconnect_exhausted = False

        self._handlers: Dict[str, List[Handler]] = {}
        self._state_listeners: List[Callable[[ChannelState], Any]] = []
        self._pending_join_code: Optional[str] = None

        self._reader_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._background_tasks: Set[asyncio.Future] = set()
        self._closing = False
        self._closed: Optional[asyncio.Event] = None

    # ===== Subscription =====

    def on(self, event: str, handler: Handler) -> None:
        """Subscribe handler to event. Handlers run in registration order."""
        self._handlers.setdefault(event, []).append(handler)

    def off(self, event: str, handler: Handler) -> None:
        """Remove one subscription of handler from event, if present."""
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def add_state_listener(self, listener: Callable[[ChannelState], Any]) -> None:
        """Call listener(state) after every state change."""
        self._state_listeners.append(listener)

    @property
    def is_connected(self) -> bool:
        return self.state is ChannelState.CONNECTED

    # ===== Lifecycle =====

    async def connect(self) -> bool:
        """Open the websocket and start the heartbeat loop.

        A failed first attempt falls through to the bounded reconnect loop.

        Returns:
            True if the channel is connected when this returns.
        """
        if self.state is not ChannelState.DISCONNECTED:
            logger.info(f"Signaling channel already {self.state.value}")
            return self.is_connected

        self._closing = False
        self.reconnect_exhausted = False
        self._closed_event().clear()

        connected = await self._open()

        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

        if not connected:
            self._schedule_reconnect()

        return connected

    async def close(self) -> None:
        """Stop heartbeats and reconnects and close the websocket."""
        logger.info("Closing signaling channel...")
        self._closing = True

        current = asyncio.current_task()
        for task in (self._heartbeat_task, self._reconnect_task, self._reader_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._heartbeat_task = self._reconnect_task = self._reader_task = None

        websocket, self.websocket = self.websocket, None
        if websocket is not None:
            try:
                await websocket.close()
            except WebSocketException as e:
                logger.debug(f"Error while closing websocket: {e}")

        self.session_code = None
        self._set_state(ChannelState.DISCONNECTED)
        self._closed_event().set()

    async def wait_closed(self) -> None:
        """Wait until close() is called or reconnection gives up."""
        await self._closed_event().wait()

    async def reconnect(self) -> bool:
        """Try to reopen the websocket, up to max_reconnect_attempts times.

        Returns:
            True if reconnected. On exhaustion the channel stays disconnected,
            reconnect_exhausted is set and wait_closed() returns.
        """
        attempts = 0
        while attempts < self.max_reconnect_attempts and not self._closing:
            attempts += 1
            await asyncio.sleep(self.reconnect_delay)
            if self._closing:
                return False

            logger.info(f"Reconnection attempt {attempts}/{self.max_reconnect_attempts}...")
            if await self._open():
                logger.info("Reconnected to signaling server.")
                return True

        if not self._closing:
            logger.error("Maximum reconnection attempts reached. Giving up.")
            self.reconnect_exhausted = True
            self._set_state(ChannelState.DISCONNECTED)
            if self._heartbeat_task is not None and not self._heartbeat_task.done():
                self._heartbeat_task.cancel()
            self._closed_event().set()
        return False

    async def heartbeat(self) -> None:
        """One liveness tick: heartbeat when connected, reconnect otherwise."""
        if self.is_connected:
            await self.send(MSG_HEARTBEAT)
        elif self.state is ChannelState.DISCONNECTED and not self.reconnect_exhausted:
            logger.warning("Signaling channel not connected at heartbeat, reconnecting")
            self._schedule_reconnect()

    # ===== Sending =====

    async def send(self, event: str, *args: Any) -> bool:
        """Send an event. Never raises.

        Returns:
            True if the frame was written to the socket.
        """
        log = logger.debug if event in QUIET_EVENTS else logger.warning

        websocket = self.websocket
        if not self.is_connected or websocket is None:
            log(f"Cannot send {event}: channel {self.state.value}")
            return False

        try:
            await websocket.send(format_message(event, *args))
        except (ConnectionClosed, WebSocketException, OSError) as e:
            log(f"Failed to send {event}: {e}")
            return False
        return True

    async def send_in_session(self, event: str, payload: Any) -> bool:
        """Send a session-scoped event tagged with the session code."""
        if self.session_code is None:
            log = logger.debug if event in QUIET_EVENTS else logger.warning
            log(f"Cannot send {event}: no pairing code yet")
            return False
        return await self.send(event, self.session_code, payload)

    async def generate_code(self) -> bool:
        return await self.send(MSG_GENERATE_CODE)

    async def join_with_code(self, code: str) -> bool:
        self._pending_join_code = code
        return await self.send(MSG_JOIN_WITH_CODE, code)

    async def request_monitoring_status(self) -> bool:
        return await self.send(MSG_REQUEST_MONITORING_STATUS)

    async def send_monitoring_status(self, active: bool) -> bool:
        return await self.send_in_session(MSG_MONITORING_STATUS, bool(active))

    async def send_description(self, description: SessionDescriptionPayload) -> bool:
        logger.info(f"Sending {description.type}")
        return await self.send_in_session(description.type, description.to_dict())

    async def send_candidate(self, candidate: IceCandidatePayload) -> bool:
        logger.debug(f"Sending ICE candidate: {candidate.candidate}")
        return await self.send_in_session(MSG_CANDIDATE, candidate.to_dict())

    # ===== Internals =====

    def _closed_event(self) -> asyncio.Event:
        if self._closed is None:
            self._closed = asyncio.Event()
        return self._closed

    def _set_state(self, state: ChannelState) -> None:
        if state is self.state:
            return
        self.state = state
        logger.info(f"Signaling channel {state.value}")
        for listener in list(self._state_listeners):
            try:
                result = listener(state)
                if inspect.isawaitable(result):
                    self._spawn(result)
            except Exception as e:
                logger.error(f"State listener failed: {e}")

    def _spawn(self, awaitable) -> asyncio.Future:
        task = asyncio.ensure_future(awaitable)
        self._background_tasks.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Future) -> None:
        self._background_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"State listener failed: {task.exception()}")

    async def _open(self) -> bool:
        self._set_state(ChannelState.CONNECTING)
        try:
            websocket = await self._connector(self.url)
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            logger.warning(f"Could not connect to {self.url}: {e}")
            self._set_state(ChannelState.DISCONNECTED)
            return False

        if self._closing:
            await websocket.close()
            return False

        self.websocket = websocket
        self._set_state(ChannelState.CONNECTED)
        self._reader_task = asyncio.create_task(self._read_loop(websocket))
        return True

    def _schedule_reconnect(self) -> None:
        if self._closing or self.reconnect_exhausted:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self.reconnect())

    async def _heartbeat_loop(self):
        logger.info(f"Starting heartbeat loop (interval: {self.heartbeat_interval}s)")
        while not self._closing and not self.reconnect_exhausted:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.heartbeat()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in heartbeat loop: {e}")

    async def _read_loop(self, websocket: ClientConnection):
        try:
            async for raw in websocket:
                await self._dispatch(raw)
        except ConnectionClosed as e:
            logger.info(f"Signaling connection closed: {e}")
        finally:
            if websocket is self.websocket:
                self._on_connection_lost()

    def _on_connection_lost(self) -> None:
        self.websocket = None
        self.session_code = None
        self._pending_join_code = None
        self._set_state(ChannelState.DISCONNECTED)
        if not self._closing:
            self._schedule_reconnect()

    async def _dispatch(self, raw) -> None:
        try:
            event, args = parse_message(raw)
        except MalformedMessageError as e:
            logger.warning(f"Dropping malformed frame: {e}")
            return

        if event == MSG_CODE_GENERATED:
            if args and isinstance(args[0], str):
                self.session_code = args[0]
                logger.info(f"Code generated: {self.session_code}")
            else:
                logger.warning(f"Invalid {event} payload: {args!r}")
                return
        elif event == MSG_PAIRING_SUCCESS:
            self.session_code = self._pending_join_code
            self._pending_join_code = None
            logger.info(f"Pairing successful ({self.session_code})")
        elif event == MSG_PAIRING_FAILED:
            self._pending_join_code = None
            logger.info("Pairing failed")
        elif event == MSG_PEER_DISCONNECTED:
            self.session_code = None

        handlers = list(self._handlers.get(event, []))
        if not handlers:
            logger.debug(f"Unhandled event: {event}")
            return

        for handler in handlers:
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Handler for {event} failed: {e}")
