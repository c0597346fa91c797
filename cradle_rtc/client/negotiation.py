"""Offer/answer negotiation for one call.

NegotiationOrchestrator drives the SDP and ICE exchange between a
PeerTransport and the SignalingChannel. Negotiation is strictly asymmetric:
the monitor always offers and the viewer always answers, and each state only
accepts the remote messages that belong to it.

State machine::

    idle -> role_selected -> offering (monitor) ----------\\
                          -> awaiting_offer (viewer) -----> description_exchanged
    description_exchanged -> connectivity_checking -> connected
    connected <-> disconnected
    any -> failed (terminal until close) -> closed

Every awaited transport operation captures the orchestrator's generation
token first and discards its result if the token changed in the meantime.
close() bumps the token, so completions that land after close() (or belong
to a superseded transport) have no effect.

Recovery is explicit: a failed connection stays failed. The caller closes
this instance and builds a new one.
"""

import logging
from enum import Enum
from functools import partial
from typing import Any, Callable, Optional

from cradle_rtc.client.sdp import normalize_sdp
from cradle_rtc.client.signaling_channel import SignalingChannel
from cradle_rtc.client.transport import PeerTransport
from cradle_rtc.exceptions import NegotiationError
from cradle_rtc.protocol import (
    MSG_ANSWER,
    MSG_OFFER,
    IceCandidatePayload,
    SessionDescriptionPayload,
)

logger = logging.getLogger(__name__)


class Role(str, Enum):
    MONITOR = "monitor"  # captures audio, offers
    VIEWER = "viewer"  # plays audio, answers

    def __str__(self) -> str:
        return self.value


class NegotiationState(str, Enum):
    IDLE = "idle"
    ROLE_SELECTED = "role_selected"
    OFFERING = "offering"
    AWAITING_OFFER = "awaiting_offer"
    DESCRIPTION_EXCHANGED = "description_exchanged"
    CONNECTIVITY_CHECKING = "connectivity_checking"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"

    def __str__(self) -> str:
        return self.value


# States in which remote candidates are forwarded to the transport
CANDIDATE_STATES = frozenset(
    {
        NegotiationState.ROLE_SELECTED,
        NegotiationState.OFFERING,
        NegotiationState.AWAITING_OFFER,
        NegotiationState.DESCRIPTION_EXCHANGED,
        NegotiationState.CONNECTIVITY_CHECKING,
        NegotiationState.CONNECTED,
        NegotiationState.DISCONNECTED,
    }
)

# States from which transport connectivity reports are applied
_PRE_CONNECTED = frozenset(
    {
        NegotiationState.ROLE_SELECTED,
        NegotiationState.OFFERING,
        NegotiationState.AWAITING_OFFER,
        NegotiationState.DESCRIPTION_EXCHANGED,
        NegotiationState.CONNECTIVITY_CHECKING,
    }
)


class NegotiationListener:
    """Callbacks from an orchestrator to the layer that owns it.

    Invoked synchronously on the orchestrator's event loop. Override what
    you need; the defaults do nothing.
    """

    def on_state_changed(self, state: NegotiationState) -> None:
        pass

    def on_remote_track(self, track: Any) -> None:
        pass


TransportFactory = Callable[[Role], PeerTransport]


class NegotiationOrchestrator:
    """Runs one call's negotiation as monitor or viewer.

    Attributes:
        channel: Signaling channel used to reach the other unit.
        state: Current NegotiationState.
        role: Role chosen by start_as_monitor()/start_as_viewer(), fixed after.
        transport: Active PeerTransport, None before start and after close.
    """

    def __init__(
        self,
        channel: SignalingChannel,
        transport_factory: TransportFactory,
        media_session=None,
        listener: Optional[NegotiationListener] = None,
    ):
        """Initialize an idle orchestrator.

        Args:
            channel: Connected (or connecting) SignalingChannel.
            transport_factory: Builds the PeerTransport for a role.
            media_session: Optional MediaSession providing the monitor's
                capture track; released on close().
            listener: Receiver of state changes and remote tracks.
        """
        self.channel = channel
        self.transport_factory = transport_factory
        self.media_session = media_session
        self.listener = listener or NegotiationListener()

        self.state = NegotiationState.IDLE
        self.role: Optional[Role] = None
        self.transport: Optional[PeerTransport] = None

        self._generation = 0
        self._local_op_in_flight = False
        self._remote_op_in_flight = False

    @property
    def generation(self) -> int:
        return self._generation

    # ===== Start =====

    async def start_as_monitor(self) -> None:
        """Create the sending transport, attach the microphone and send an offer."""
        self._select_role(Role.MONITOR)
        generation = self._generation

        if self.media_session is not None:
            track = self.media_session.configure_for_role(Role.MONITOR)
            if track is not None:
                self.transport.add_local_audio(track)
            else:
                logger.warning("Starting as monitor without a local audio track")

        offer = await self._create_local_description(MSG_OFFER, generation)
        if offer is None:
            return

        self._set_state(NegotiationState.OFFERING)
        await self.channel.send_description(offer)

    async def start_as_viewer(self) -> None:
        """Create the receive-only transport and wait for the monitor's offer."""
        self._select_role(Role.VIEWER)
        if self.media_session is not None:
            self.media_session.configure_for_role(Role.VIEWER)
        self._set_state(NegotiationState.AWAITING_OFFER)

    # ===== Remote input =====

    async def on_remote_description(self, payload: SessionDescriptionPayload) -> None:
        """Apply the other unit's offer (viewer) or answer (monitor).

        The SDP is normalized first. A viewer answers an offer immediately.
        Descriptions that do not fit the current state and role are ignored.
        """
        expected = {
            NegotiationState.OFFERING: MSG_ANSWER,
            NegotiationState.AWAITING_OFFER: MSG_OFFER,
        }.get(self.state)

        if expected is None or payload.type != expected:
            logger.warning(
                f"Ignoring remote {payload.type} in state {self.state} (role: {self.role})"
            )
            return
        if self._remote_op_in_flight:
            logger.warning(f"Ignoring remote {payload.type}: one is already being applied")
            return

        # Held until a viewer's answer is sent, so a second offer cannot slip in
        self._remote_op_in_flight = True
        try:
            await self._apply_remote_description(payload, self._generation)
        finally:
            self._remote_op_in_flight = False

    async def _apply_remote_description(
        self, payload: SessionDescriptionPayload, generation: int
    ) -> None:
        transport = self.transport
        normalized = SessionDescriptionPayload(type=payload.type, sdp=normalize_sdp(payload.sdp))

        try:
            await transport.set_remote_description(normalized)
        except Exception as e:
            if not self._is_stale(generation):
                logger.error(f"Failed to set remote description ({payload.type}): {e}")
            return

        if self._is_stale(generation):
            logger.info(f"Dropping stale remote {payload.type} completion")
            return

        logger.info(f"Remote description ({payload.type}) set successfully")

        if payload.type == MSG_OFFER:
            answer = await self._create_local_description(MSG_ANSWER, generation)
            if answer is None:
                return
            await self.channel.send_description(answer)
            if self._is_stale(generation):
                return

        if self.state in (NegotiationState.OFFERING, NegotiationState.AWAITING_OFFER):
            self._set_state(NegotiationState.DESCRIPTION_EXCHANGED)

    async def on_candidate(self, payload: IceCandidatePayload) -> None:
        """Hand a remote ICE candidate to the transport."""
        if self.state not in CANDIDATE_STATES or self.transport is None:
            logger.debug(f"Ignoring remote candidate in state {self.state}")
            return

        generation = self._generation
        try:
            await self.transport.add_ice_candidate(payload)
        except Exception as e:
            if not self._is_stale(generation):
                logger.error(f"Failed to add ICE candidate: {e}")
            return
        logger.debug(f"ICE candidate added (mid={payload.sdp_mid}, index={payload.sdp_mline_index})")

    # ===== Transport callbacks =====

    async def on_local_candidate(self, candidate: IceCandidatePayload) -> None:
        """Relay a locally gathered candidate to the other unit."""
        await self.channel.send_candidate(candidate)

    def on_connection_state_changed(self, state: str) -> None:
        """Map a transport connection state onto the negotiation state."""
        if self.state in (NegotiationState.CLOSED, NegotiationState.IDLE):
            return

        if state == "checking":
            if self.state in _PRE_CONNECTED:
                self._set_state(NegotiationState.CONNECTIVITY_CHECKING)

        elif state in ("connected", "completed"):
            if self.state is NegotiationState.FAILED:
                return
            self._set_state(NegotiationState.CONNECTED)

        elif state == "disconnected":
            if self.state in (NegotiationState.CONNECTED, NegotiationState.CONNECTIVITY_CHECKING):
                self._set_state(NegotiationState.DISCONNECTED)

        elif state == "failed":
            self._set_state(NegotiationState.FAILED)

        elif state == "closed":
            # Transport went away underneath us; nothing left to negotiate
            self._set_state(NegotiationState.CLOSED)

        else:
            logger.debug(f"Transport state {state} ignored")

    # ===== Teardown =====

    async def close(self) -> None:
        """Tear down the transport and release local media. Idempotent."""
        if self.state is NegotiationState.CLOSED and self.transport is None:
            return

        self._generation += 1
        transport, self.transport = self.transport, None

        if transport is not None:
            try:
                await transport.close()
            except Exception as e:
                logger.error(f"Error closing transport: {e}")

        if self.media_session is not None:
            self.media_session.deactivate()

        self._set_state(NegotiationState.CLOSED)

    # ===== Internals =====

    def _select_role(self, role: Role) -> None:
        if self.state is not NegotiationState.IDLE:
            raise NegotiationError(f"Cannot start as {role} in state {self.state}")

        self.role = role
        self._set_state(NegotiationState.ROLE_SELECTED)

        transport = self.transport_factory(role)
        generation = self._generation
        transport.on_connection_state_change = partial(self._on_transport_state, generation)
        transport.on_local_candidate = partial(self._on_transport_candidate, generation)
        transport.on_track = partial(self._on_transport_track, generation)
        self.transport = transport
        logger.info(f"Transport created for {role}")

    async def _create_local_description(
        self, kind: str, generation: int
    ) -> Optional[SessionDescriptionPayload]:
        """Create an offer or answer and apply it locally.

        Returns:
            The description to send, or None if it failed or went stale.
        """
        if self._local_op_in_flight:
            logger.warning(f"Cannot create {kind}: a local description is already in flight")
            return None

        transport = self.transport
        self._local_op_in_flight = True
        try:
            if kind == MSG_OFFER:
                description = await transport.create_offer()
            else:
                description = await transport.create_answer()
            if self._is_stale(generation):
                logger.info(f"Dropping stale {kind} completion")
                return None

            await transport.set_local_description(description)
            if self._is_stale(generation):
                logger.info(f"Dropping stale local {kind} after it was set")
                return None
        except Exception as e:
            if not self._is_stale(generation):
                logger.error(f"Failed to create local {kind}: {e}")
            return None
        finally:
            self._local_op_in_flight = False

        logger.info(f"Local description ({kind}) set successfully")
        # Prefer what the transport applied: it may carry gathered candidates
        return transport.local_description or description

    def _is_stale(self, generation: int) -> bool:
        return generation != self._generation

    def _set_state(self, state: NegotiationState) -> None:
        if state is self.state:
            return
        previous, self.state = self.state, state
        logger.info(f"Negotiation state: {previous} -> {state}")
        try:
            self.listener.on_state_changed(state)
        except Exception as e:
            logger.error(f"Negotiation listener failed: {e}")

    def _on_transport_state(self, generation: int, state: str) -> None:
        if self._is_stale(generation):
            return
        self.on_connection_state_changed(state)

    async def _on_transport_candidate(self, generation: int, candidate: IceCandidatePayload) -> None:
        if self._is_stale(generation):
            return
        await self.on_local_candidate(candidate)

    def _on_transport_track(self, generation: int, track: Any) -> None:
        if self._is_stale(generation):
            return
        try:
            self.listener.on_remote_track(track)
        except Exception as e:
            logger.error(f"Negotiation listener failed on track: {e}")
