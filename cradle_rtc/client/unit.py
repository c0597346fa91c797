"""A monitor or viewer unit: signaling channel, call and level telemetry.

PairedUnit connects the SignalingChannel's events to a NegotiationOrchestrator
(one per call) and to the AudioLevelRelay, and implements the pairing flow
on top of them:

Monitor
    connect -> generateCode -> codeGenerated -> viewerJoined -> start call,
    announce monitoringStatus(True), meter the microphone. When the viewer
    leaves or the call fails, close the call and ask for a fresh code.

Viewer
    connect -> joinWithCode -> pairingSuccess -> await offer, ask for the
    monitoring status. Pairing failure, the monitor leaving, losing the
    signaling session or a failed call all end the unit.
"""

import asyncio
import logging
from typing import Any, Callable, Optional, Set

from aiortc.contrib.media import MediaBlackhole

from cradle_rtc.client.audio_level import AudioLevelRelay, LevelMeter
from cradle_rtc.client.media import MediaSession
from cradle_rtc.client.negotiation import (
    NegotiationListener,
    NegotiationOrchestrator,
    NegotiationState,
    Role,
)
from cradle_rtc.client.signaling_channel import ChannelState, SignalingChannel
from cradle_rtc.client.transport import AiortcTransport, PeerTransport
from cradle_rtc.config import MediaSessionConfig
from cradle_rtc.exceptions import MalformedMessageError
from cradle_rtc.protocol import (
    MSG_ANSWER,
    MSG_CANDIDATE,
    MSG_CODE_GENERATED,
    MSG_MONITORING_STATUS,
    MSG_OFFER,
    MSG_PAIRING_FAILED,
    MSG_PAIRING_SUCCESS,
    MSG_PEER_DISCONNECTED,
    MSG_VIEWER_JOINED,
    IceCandidatePayload,
    SessionDescriptionPayload,
    parse_monitoring_status,
    payload_of,
)

logger = logging.getLogger(__name__)


class PairedUnit(NegotiationListener):
    """One end of a baby-monitor pairing.

    Attributes:
        role: MONITOR or VIEWER.
        channel: Signaling channel to the pairing server.
        level_relay: Audio level telemetry on top of channel.
        orchestrator: The current call, or None between calls.
        monitoring_active: Last monitoring status heard from the monitor.
        outcome: Why the unit finished (None while running).
    """

    def __init__(
        self,
        role: Role,
        channel: SignalingChannel,
        media_config: Optional[MediaSessionConfig] = None,
        pairing_code: Optional[str] = None,
        level_interval: float = 0.5,
        transport_factory: Optional[Callable[[Role], PeerTransport]] = None,
        media_session_factory: Optional[Callable[[], MediaSession]] = None,
        sink_factory: Optional[Callable[[], Any]] = None,
    ):
        """Initialize a unit.

        Args:
            role: MONITOR or VIEWER.
            channel: Unconnected SignalingChannel.
            media_config: Media settings for every call of this unit.
            pairing_code: Code to join with (viewer only).
            level_interval: Minimum seconds between posted audio levels.
            transport_factory: Builds a PeerTransport per call (default aiortc).
            media_session_factory: Builds a MediaSession per call.
            sink_factory: Builds the consumer of remote audio (viewer;
                default MediaBlackhole).
        """
        if role is Role.VIEWER and not pairing_code:
            raise ValueError("A viewer needs a pairing code")

        self.role = role
        self.channel = channel
        self.media_config = media_config or MediaSessionConfig()
        self.pairing_code = pairing_code
        self.level_interval = level_interval

        self.transport_factory = transport_factory or self._aiortc_transport
        self.media_session_factory = media_session_factory or (
            lambda: MediaSession(self.media_config)
        )
        self.sink_factory = sink_factory or MediaBlackhole

        self.level_relay = AudioLevelRelay(channel)
        self.orchestrator: Optional[NegotiationOrchestrator] = None
        self.monitoring_active = False
        self.outcome: Optional[str] = None

        # UI hooks
        self.on_code: Optional[Callable[[str], Any]] = None
        self.on_state: Optional[Callable[[NegotiationState], Any]] = None
        self.on_monitoring_status: Optional[Callable[[bool], Any]] = None

        self._joined_once = False
        self._sink = None
        self._meter_task: Optional[asyncio.Task] = None
        self._background_tasks: Set[asyncio.Future] = set()
        self._finished: Optional[asyncio.Event] = None

        self._register_handlers()

    # ===== Wiring =====

    def _register_handlers(self) -> None:
        self.channel.add_state_listener(self._on_channel_state)
        self.channel.on(MSG_OFFER, self._on_description)
        self.channel.on(MSG_ANSWER, self._on_description)
        self.channel.on(MSG_CANDIDATE, self._on_candidate)
        self.channel.on(MSG_MONITORING_STATUS, self._on_monitoring_status)
        self.channel.on(MSG_PEER_DISCONNECTED, self._on_peer_disconnected)

        if self.role is Role.MONITOR:
            self.channel.on(MSG_CODE_GENERATED, self._on_code_generated)
            self.channel.on(MSG_VIEWER_JOINED, self._on_viewer_joined)
        else:
            self.channel.on(MSG_PAIRING_SUCCESS, self._on_pairing_success)
            self.channel.on(MSG_PAIRING_FAILED, self._on_pairing_failed)

    def _aiortc_transport(self, role: Role) -> PeerTransport:
        return AiortcTransport(
            send_audio=role is Role.MONITOR,
            ice_servers=self.media_config.ice_servers,
        )

    def _new_orchestrator(self) -> NegotiationOrchestrator:
        return NegotiationOrchestrator(
            channel=self.channel,
            transport_factory=self.transport_factory,
            media_session=self.media_session_factory(),
            listener=self,
        )

    # ===== Lifecycle =====

    async def run(self) -> Optional[str]:
        """Connect and serve until the unit finishes or the channel gives up.

        Returns:
            The outcome string.
        """
        await self.channel.connect()

        finished = asyncio.ensure_future(self._finished_event().wait())
        closed = asyncio.ensure_future(self.channel.wait_closed())
        try:
            await asyncio.wait({finished, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            finished.cancel()
            closed.cancel()
            if self.outcome is None:
                self.outcome = "signaling unavailable"
            await self.shutdown()
        return self.outcome

    def finish(self, outcome: str) -> None:
        """Mark the unit finished; run() returns shortly after."""
        if self.outcome is None:
            self.outcome = outcome
            logger.info(f"Unit finished: {outcome}")
        self._finished_event().set()

    async def shutdown(self) -> None:
        await self.end_call()
        await self.channel.close()

    async def end_call(self) -> None:
        """Close the current call, if any, and its meter and sink."""
        if self._meter_task is not None:
            self._meter_task.cancel()
            self._meter_task = None

        orchestrator, self.orchestrator = self.orchestrator, None
        if orchestrator is not None:
            await orchestrator.close()

        sink, self._sink = self._sink, None
        if sink is not None:
            try:
                await sink.stop()
            except Exception as e:
                logger.error(f"Error stopping audio sink: {e}")

    async def restart(self) -> None:
        """Monitor: drop the current call and ask for a fresh pairing code."""
        await self.end_call()
        if self.channel.is_connected:
            await self.channel.generate_code()

    # ===== Channel events =====

    async def _on_channel_state(self, state: ChannelState) -> None:
        if state is ChannelState.CONNECTED:
            if self.role is Role.MONITOR:
                # A new connection means a new server-side identity and no session
                await self.end_call()
                await self.channel.generate_code()
            elif not self._joined_once:
                self._joined_once = True
                await self.channel.join_with_code(self.pairing_code)
            else:
                self.finish("pairing lost after reconnect")

        elif state is ChannelState.DISCONNECTED:
            await self.end_call()

    def _on_code_generated(self, code: str) -> None:
        logger.info(f"Pairing code: {code}")
        if self.on_code is not None:
            self.on_code(code)

    async def _on_viewer_joined(self) -> None:
        logger.info("Viewer joined, starting call")
        await self.end_call()
        self.orchestrator = self._new_orchestrator()
        await self.orchestrator.start_as_monitor()
        await self.channel.send_monitoring_status(True)
        self._start_meter()

    async def _on_pairing_success(self) -> None:
        logger.info("Paired, waiting for offer")
        await self.end_call()
        self.orchestrator = self._new_orchestrator()
        await self.orchestrator.start_as_viewer()
        await self.channel.request_monitoring_status()

    def _on_pairing_failed(self) -> None:
        self.finish("pairing failed")

    async def _on_description(self, *args) -> None:
        try:
            payload = SessionDescriptionPayload.from_dict(payload_of(list(args)))
        except MalformedMessageError as e:
            logger.warning(f"Failed to parse session description: {e}")
            return
        if self.orchestrator is None:
            logger.warning(f"Received {payload.type} with no call in progress")
            return
        await self.orchestrator.on_remote_description(payload)

    async def _on_candidate(self, *args) -> None:
        try:
            payload = IceCandidatePayload.from_dict(payload_of(list(args)))
        except MalformedMessageError as e:
            logger.warning(f"Failed to parse ICE candidate: {e}")
            return
        if self.orchestrator is None:
            logger.debug("Received candidate with no call in progress")
            return
        await self.orchestrator.on_candidate(payload)

    def _on_monitoring_status(self, *args) -> None:
        try:
            self.monitoring_active = parse_monitoring_status(payload_of(list(args)))
        except MalformedMessageError as e:
            logger.warning(f"Failed to parse monitoring status: {e}")
            return
        logger.info(f"Monitoring status: {self.monitoring_active}")
        if self.on_monitoring_status is not None:
            self.on_monitoring_status(self.monitoring_active)

    async def _on_peer_disconnected(self) -> None:
        logger.info("The other unit disconnected")
        if self.role is Role.MONITOR:
            await self.restart()
        else:
            await self.end_call()
            self.finish("monitor disconnected")

    # ===== NegotiationListener =====

    def on_state_changed(self, state: NegotiationState) -> None:
        if self.on_state is not None:
            self.on_state(state)

        if state is NegotiationState.FAILED:
            if self.role is Role.MONITOR:
                self._spawn(self.restart())
            else:
                self.finish("connection failed")

    def on_remote_track(self, track: Any) -> None:
        if track.kind != "audio" or self.role is not Role.VIEWER:
            return
        if self._sink is None:
            self._sink = self.sink_factory()
        self._sink.addTrack(track)
        self._spawn(self._sink.start())

    # ===== Internals =====

    def _start_meter(self) -> None:
        if self.orchestrator is None or self.orchestrator.media_session is None:
            return
        track = self.orchestrator.media_session.subscribe()
        if track is None:
            return
        meter = LevelMeter(self.level_relay.post_local_level, interval=self.level_interval)
        self._meter_task = asyncio.create_task(meter.run(track))

    def _spawn(self, awaitable) -> asyncio.Future:
        task = asyncio.ensure_future(awaitable)
        self._background_tasks.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Future) -> None:
        self._background_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background task failed: {task.exception()}")

    def _finished_event(self) -> asyncio.Event:
        if self._finished is None:
            self._finished = asyncio.Event()
        return self._finished
