"""Tests for PairedUnit: the pairing flow wired over a real SignalingChannel.

The websocket and the peer connection are faked; everything between them
(channel events, orchestrator, level relay) is the production code.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from cradle_rtc.client.negotiation import NegotiationState, Role
from cradle_rtc.client.signaling_channel import SignalingChannel
from cradle_rtc.client.transport import PeerTransport
from cradle_rtc.client.unit import PairedUnit
from cradle_rtc.protocol import SessionDescriptionPayload, format_message

OFFER = {"type": "offer", "sdp": "v=0\r\na=sendonly\r\n"}


# ── helpers ──────────────────────────────────────────────────────────────────

class FakeSocket:
    def __init__(self):
        self.sent = []
        self._incoming = asyncio.Queue()

    async def send(self, message):
        self.sent.append(message)

    async def close(self):
        self._incoming.put_nowait(None)

    def feed(self, frame):
        self._incoming.put_nowait(frame)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item

    def frames(self):
        return [json.loads(frame) for frame in self.sent]

    def events(self):
        return [frame["type"] for frame in self.frames()]


class FakeTransport(PeerTransport):
    def __init__(self, role):
        super().__init__()
        self.role = role
        self.local = None
        self.closed = False

    @property
    def local_description(self):
        return self.local

    async def create_offer(self):
        return SessionDescriptionPayload("offer", OFFER["sdp"])

    async def create_answer(self):
        return SessionDescriptionPayload("answer", "v=0\r\na=recvonly\r\n")

    async def set_local_description(self, description):
        self.local = description

    async def set_remote_description(self, description):
        pass

    async def add_ice_candidate(self, candidate):
        pass

    def add_local_audio(self, track):
        pass

    async def close(self):
        self.closed = True


async def wait_for(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def socket():
    return FakeSocket()


@pytest.fixture
def channel(socket):
    async def connector(url):
        return socket

    return SignalingChannel(
        "ws://test", heartbeat_interval=60.0, reconnect_delay=0, connector=connector
    )


def media_factory():
    media = MagicMock()
    media.configure_for_role.return_value = None
    media.subscribe.return_value = None
    return media


def make_unit(role, channel, **kwargs):
    return PairedUnit(
        role,
        channel,
        transport_factory=FakeTransport,
        media_session_factory=media_factory,
        **kwargs,
    )


# ── monitor ──────────────────────────────────────────────────────────────────

class TestMonitorUnit:
    @pytest.mark.asyncio
    async def test_requests_code_on_connect(self, channel, socket):
        unit = make_unit(Role.MONITOR, channel)
        codes = []
        unit.on_code = codes.append

        await channel.connect()
        await wait_for(lambda: "generateCode" in socket.events())

        await channel._dispatch(format_message("codeGenerated", "482913"))
        assert codes == ["482913"]
        await unit.shutdown()

    @pytest.mark.asyncio
    async def test_viewer_joined_starts_call(self, channel, socket):
        unit = make_unit(Role.MONITOR, channel)
        await channel.connect()
        await wait_for(lambda: "generateCode" in socket.events())
        await channel._dispatch(format_message("codeGenerated", "482913"))

        await channel._dispatch(format_message("viewerJoined"))

        assert unit.orchestrator.state is NegotiationState.OFFERING
        frames = socket.frames()
        assert {"type": "offer", "args": ["482913", OFFER]} in frames
        assert frames[-1] == {"type": "monitoringStatus", "args": ["482913", True]}
        await unit.shutdown()

    @pytest.mark.asyncio
    async def test_viewer_leaving_asks_for_new_code(self, channel, socket):
        unit = make_unit(Role.MONITOR, channel)
        await channel.connect()
        await wait_for(lambda: "generateCode" in socket.events())
        await channel._dispatch(format_message("codeGenerated", "482913"))
        await channel._dispatch(format_message("viewerJoined"))
        transport = unit.orchestrator.transport
        socket.sent.clear()

        await channel._dispatch(format_message("peerDisconnected"))

        assert unit.orchestrator is None
        assert transport.closed
        assert socket.events() == ["generateCode"]
        assert channel.session_code is None
        await unit.shutdown()

    @pytest.mark.asyncio
    async def test_failed_call_restarts_pairing(self, channel, socket):
        unit = make_unit(Role.MONITOR, channel)
        await channel.connect()
        await wait_for(lambda: "generateCode" in socket.events())
        await channel._dispatch(format_message("codeGenerated", "482913"))
        await channel._dispatch(format_message("viewerJoined"))
        socket.sent.clear()

        unit.orchestrator.on_connection_state_changed("failed")
        assert len(unit._background_tasks) == 1
        await wait_for(lambda: unit.orchestrator is None and "generateCode" in socket.events())
        await wait_for(lambda: not unit._background_tasks)

        assert unit.outcome is None
        await unit.shutdown()


# ── viewer ───────────────────────────────────────────────────────────────────

class TestViewerUnit:
    def test_viewer_needs_code(self, channel):
        with pytest.raises(ValueError):
            make_unit(Role.VIEWER, channel)

    @pytest.mark.asyncio
    async def test_joins_and_answers_offer(self, channel, socket):
        unit = make_unit(Role.VIEWER, channel, pairing_code="482913")
        await channel.connect()
        await wait_for(lambda: "joinWithCode" in socket.events())

        await channel._dispatch(format_message("pairingSuccess"))
        assert unit.orchestrator.state is NegotiationState.AWAITING_OFFER
        assert socket.events()[-1] == "requestMonitoringStatus"

        await channel._dispatch(format_message("offer", "482913", OFFER))

        answer = socket.frames()[-1]
        assert answer["type"] == "answer"
        assert answer["args"][0] == "482913"
        assert unit.orchestrator.state is NegotiationState.DESCRIPTION_EXCHANGED
        await unit.shutdown()

    @pytest.mark.asyncio
    async def test_monitoring_status_is_reported(self, channel):
        unit = make_unit(Role.VIEWER, channel, pairing_code="482913")
        statuses = []
        unit.on_monitoring_status = statuses.append

        await channel._dispatch(format_message("monitoringStatus", True))
        await channel._dispatch(format_message("monitoringStatus", "482913", False))
        await channel._dispatch(format_message("monitoringStatus", "482913", "yes"))

        assert statuses == [True, False]
        assert unit.monitoring_active is False

    @pytest.mark.asyncio
    async def test_malformed_offer_is_ignored(self, channel):
        unit = make_unit(Role.VIEWER, channel, pairing_code="482913")
        await channel._dispatch(format_message("pairingSuccess"))

        await channel._dispatch(format_message("offer", "482913", {"type": "offer"}))

        assert unit.orchestrator.state is NegotiationState.AWAITING_OFFER

    @pytest.mark.asyncio
    async def test_pairing_failure_ends_run(self, channel, socket):
        unit = make_unit(Role.VIEWER, channel, pairing_code="000000")
        run = asyncio.create_task(unit.run())
        await wait_for(lambda: "joinWithCode" in socket.events())

        socket.feed(format_message("pairingFailed"))
        outcome = await asyncio.wait_for(run, timeout=1.0)

        assert outcome == "pairing failed"
        assert not channel.is_connected

    @pytest.mark.asyncio
    async def test_monitor_leaving_ends_viewer(self, channel):
        unit = make_unit(Role.VIEWER, channel, pairing_code="482913")
        await channel._dispatch(format_message("pairingSuccess"))

        await channel._dispatch(format_message("peerDisconnected"))

        assert unit.outcome == "monitor disconnected"
        assert unit.orchestrator is None

    @pytest.mark.asyncio
    async def test_failed_call_ends_viewer(self, channel):
        unit = make_unit(Role.VIEWER, channel, pairing_code="482913")
        await channel._dispatch(format_message("pairingSuccess"))

        unit.orchestrator.on_connection_state_changed("failed")

        assert unit.outcome == "connection failed"

    @pytest.mark.asyncio
    async def test_remote_audio_goes_to_sink(self, channel):
        sink = MagicMock()
        sink.start = AsyncMock()
        sink.stop = AsyncMock()
        unit = make_unit(Role.VIEWER, channel, pairing_code="482913", sink_factory=lambda: sink)
        track = MagicMock(kind="audio")

        unit.on_remote_track(track)
        await wait_for(lambda: not unit._background_tasks)
        await unit.end_call()

        sink.addTrack.assert_called_once_with(track)
        sink.start.assert_awaited_once()
        sink.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_remote_levels_reach_observer(self, channel):
        unit = make_unit(Role.VIEWER, channel, pairing_code="482913")
        levels = []
        unit.level_relay.set_observer(levels.append)

        await channel._dispatch(format_message("audioLevel", "482913", {"value": -27.5}))

        assert levels == [-27.5]
