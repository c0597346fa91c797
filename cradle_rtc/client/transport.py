"""Peer-to-peer transport capability used by the negotiation orchestrator.

PeerTransport is the narrow surface the orchestrator drives: create an offer
or answer, set local and remote descriptions, add remote ICE candidates, and
report connection-state changes, locally gathered candidates and remote
tracks through three callbacks. AiortcTransport implements it on top of
aiortc's RTCPeerConnection.
"""

import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.mediastreams import MediaStreamTrack
from aiortc.sdp import candidate_from_sdp

from cradle_rtc.protocol import IceCandidatePayload, SessionDescriptionPayload

logger = logging.getLogger(__name__)

Callback = Callable[..., Union[None, Awaitable[None]]]


class PeerTransport:
    """Base class for transports.

    Attributes:
        on_connection_state_change: Called with the new state name
            (new, checking, connected, completed, disconnected, failed, closed).
        on_local_candidate: Called with an IceCandidatePayload for every
            locally gathered candidate.
        on_track: Called with each remote media track.
    """

    def __init__(self):
        self.on_connection_state_change: Optional[Callback] = None
        self.on_local_candidate: Optional[Callback] = None
        self.on_track: Optional[Callback] = None

    @property
    def local_description(self) -> Optional[SessionDescriptionPayload]:
        """The applied local description, if the transport can report it."""
        return None

    async def create_offer(self) -> SessionDescriptionPayload:
        raise NotImplementedError

    async def create_answer(self) -> SessionDescriptionPayload:
        raise NotImplementedError

    async def set_local_description(self, description: SessionDescriptionPayload) -> None:
        raise NotImplementedError

    async def set_remote_description(self, description: SessionDescriptionPayload) -> None:
        raise NotImplementedError

    async def add_ice_candidate(self, candidate: IceCandidatePayload) -> None:
        raise NotImplementedError

    def add_local_audio(self, track: MediaStreamTrack) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError

    async def _emit(self, callback: Optional[Callback], *args: Any) -> None:
        if callback is None:
            return
        result = callback(*args)
        if inspect.isawaitable(result):
            await result


class AiortcTransport(PeerTransport):
    """PeerTransport backed by aiortc.

    The monitor gets one send-only audio transceiver and the viewer one
    receive-only audio transceiver. aiortc gathers candidates while setting
    the local description and embeds them in it rather than trickling, so
    on_local_candidate never fires here; the description sent by the
    orchestrator already carries them.
    """

    def __init__(self, send_audio: bool, ice_servers: Optional[List[Dict]] = None):
        """Create the underlying peer connection.

        Args:
            send_audio: True for the monitor (send-only audio), False for
                the viewer (receive-only audio).
            ice_servers: RTCIceServer keyword dicts (urls, username, credential).
        """
        super().__init__()

        if ice_servers:
            config = RTCConfiguration(
                iceServers=[RTCIceServer(**server) for server in ice_servers]
            )
            logger.info(f"Creating RTCPeerConnection with {len(ice_servers)} ICE server(s)")
            self.pc = RTCPeerConnection(configuration=config)
        else:
            logger.warning("No ICE servers configured, using default RTCPeerConnection")
            self.pc = RTCPeerConnection()

        direction = "sendonly" if send_audio else "recvonly"
        self.transceiver = self.pc.addTransceiver("audio", direction=direction)
        logger.info(f"Audio transceiver added with direction: {direction}")

        self.pc.on("iceconnectionstatechange", self._on_iceconnectionstatechange)
        self.pc.on("track", self._on_track)

    @property
    def local_description(self) -> Optional[SessionDescriptionPayload]:
        description = self.pc.localDescription
        if description is None:
            return None
        return SessionDescriptionPayload(type=description.type, sdp=description.sdp)

    async def create_offer(self) -> SessionDescriptionPayload:
        offer = await self.pc.createOffer()
        return SessionDescriptionPayload(type=offer.type, sdp=offer.sdp)

    async def create_answer(self) -> SessionDescriptionPayload:
        answer = await self.pc.createAnswer()
        return SessionDescriptionPayload(type=answer.type, sdp=answer.sdp)

    async def set_local_description(self, description: SessionDescriptionPayload) -> None:
        await self.pc.setLocalDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )

    async def set_remote_description(self, description: SessionDescriptionPayload) -> None:
        await self.pc.setRemoteDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )

    async def add_ice_candidate(self, candidate: IceCandidatePayload) -> None:
        text = candidate.candidate
        if text.startswith("candidate:"):
            text = text[len("candidate:"):]
        ice_candidate = candidate_from_sdp(text)
        ice_candidate.sdpMid = candidate.sdp_mid or None
        ice_candidate.sdpMLineIndex = candidate.sdp_mline_index
        await self.pc.addIceCandidate(ice_candidate)

    def add_local_audio(self, track: MediaStreamTrack) -> None:
        self.transceiver.sender.replaceTrack(track)
        logger.info(f"Local audio track {track.id} attached")

    async def close(self) -> None:
        await self.pc.close()

    async def _on_iceconnectionstatechange(self):
        state = self.pc.iceConnectionState
        logger.info(f"ICE connection state is now {state}")
        await self._emit(self.on_connection_state_change, state)

    async def _on_track(self, track: MediaStreamTrack):
        logger.info(f"Remote {track.kind} track received: {track.id}")
        await self._emit(self.on_track, track)
