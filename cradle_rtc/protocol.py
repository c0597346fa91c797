"""Message protocol definitions for cradle-rtc.

This module defines the event names and payload shapes exchanged between the
monitor unit, the viewer unit and the pairing server over the signaling
websocket.

Frame Format
------------

Every frame is one JSON text message carrying an event name and a list of
positional arguments::

    {"type": "<event>", "args": [...]}

Events that belong to a pairing session (offer, answer, candidate,
monitoringStatus, audioLevel) are sent as ``args = [code, payload]``. The
server routes them by the sender's connection rather than by the code and
forwards the frame unchanged, so receivers always read the payload from the
last positional argument.

Events
------

**generateCode** (monitor → server)
    Ask for a fresh pairing code. No arguments.

**codeGenerated** (server → monitor)
    ``args = [code]``. The six-digit code now owned by the monitor.

**joinWithCode** (viewer → server)
    ``args = [code]``.

**pairingSuccess** / **pairingFailed** (server → viewer)
    Outcome of a join attempt. No arguments.

**viewerJoined** (server → monitor)
    A viewer bound itself to the monitor's code. No arguments.

**offer** / **answer** (peer → server → peer)
    Payload ``{"type": "offer" | "answer", "sdp": str}``.

**candidate** (peer → server → peer)
    Payload ``{"candidate": str, "sdpMLineIndex": int, "sdpMid": str}``.

**monitoringStatus** (peer → server → peer, server → peer)
    Payload ``bool``. The server remembers the last value per session.

**requestMonitoringStatus** (client → server)
    Ask for the stored monitoring flag of the caller's session.

**audioLevel** (peer → server → peer)
    Payload ``{"value": float}`` in dBFS, roughly -90..0.

**peerDisconnected** (server → peer)
    The other member of the session went away; the session is gone.

**heartbeat** (client → server)
    Liveness marker. No arguments, no reply.
"""

import json
from dataclasses import dataclass
from typing import Any, List, Tuple

from cradle_rtc.exceptions import MalformedMessageError

# Pairing
MSG_GENERATE_CODE = "generateCode"
MSG_CODE_GENERATED = "codeGenerated"
MSG_JOIN_WITH_CODE = "joinWithCode"
MSG_PAIRING_SUCCESS = "pairingSuccess"
MSG_PAIRING_FAILED = "pairingFailed"
MSG_VIEWER_JOINED = "viewerJoined"
MSG_PEER_DISCONNECTED = "peerDisconnected"

# Negotiation
MSG_OFFER = "offer"
MSG_ANSWER = "answer"
MSG_CANDIDATE = "candidate"

# Telemetry and liveness
MSG_MONITORING_STATUS = "monitoringStatus"
MSG_REQUEST_MONITORING_STATUS = "requestMonitoringStatus"
MSG_AUDIO_LEVEL = "audioLevel"
MSG_HEARTBEAT = "heartbeat"

# Events the server forwards to the other member of the sender's session.
RELAYED_EVENTS = frozenset(
    {MSG_OFFER, MSG_ANSWER, MSG_CANDIDATE, MSG_MONITORING_STATUS, MSG_AUDIO_LEVEL}
)

DESCRIPTION_TYPES = frozenset({MSG_OFFER, MSG_ANSWER})


def format_message(event: str, *args: Any) -> str:
    """Encode an event and its positional arguments as a signaling frame.

    Args:
        event: Event name, e.g. "offer".
        *args: JSON-serializable positional arguments.

    Returns:
        JSON text frame.
    """
    return json.dumps({"type": event, "args": list(args)})


def parse_message(raw) -> Tuple[str, List[Any]]:
    """Decode a signaling frame.

    Args:
        raw: Text (or UTF-8 bytes) frame received from the websocket.

    Returns:
        Tuple of (event name, positional arguments).

    Raises:
        MalformedMessageError: If the frame is not valid JSON or lacks a
            string ``type`` or has non-list ``args``.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedMessageError(f"Frame is not UTF-8: {e}") from e

    try:
        data = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as e:
        raise MalformedMessageError(f"Invalid JSON frame: {e}") from e

    if not isinstance(data, dict):
        raise MalformedMessageError("Frame must be a JSON object")

    event = data.get("type")
    if not isinstance(event, str) or not event:
        raise MalformedMessageError("Frame is missing 'type'")

    args = data.get("args", [])
    if not isinstance(args, list):
        raise MalformedMessageError(f"'args' of {event} must be a list")

    return event, args


def payload_of(args: List[Any]) -> Any:
    """Return the payload of a session-scoped event (its last argument)."""
    if not args:
        raise MalformedMessageError("Event carries no payload")
    return args[-1]


@dataclass(frozen=True)
class SessionDescriptionPayload:
    """An SDP offer or answer, opaque to everything but the orchestrator."""

    type: str
    sdp: str

    def to_dict(self) -> dict:
        return {"type": self.type, "sdp": self.sdp}

    @classmethod
    def from_dict(cls, data: Any) -> "SessionDescriptionPayload":
        if not isinstance(data, dict):
            raise MalformedMessageError(f"Session description must be an object: {data!r}")
        kind = data.get("type")
        sdp = data.get("sdp")
        if kind not in DESCRIPTION_TYPES:
            raise MalformedMessageError(f"Unknown session description type: {kind!r}")
        if not isinstance(sdp, str) or not sdp:
            raise MalformedMessageError("Session description is missing 'sdp'")
        return cls(type=kind, sdp=sdp)


@dataclass(frozen=True)
class IceCandidatePayload:
    """One trickled ICE candidate."""

    candidate: str
    sdp_mline_index: int
    sdp_mid: str = ""

    def to_dict(self) -> dict:
        return {
            "candidate": self.candidate,
            "sdpMLineIndex": self.sdp_mline_index,
            "sdpMid": self.sdp_mid,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "IceCandidatePayload":
        if not isinstance(data, dict):
            raise MalformedMessageError(f"Candidate must be an object: {data!r}")
        candidate = data.get("candidate")
        index = data.get("sdpMLineIndex")
        mid = data.get("sdpMid", "")
        if not isinstance(candidate, str) or not candidate:
            raise MalformedMessageError("Candidate is missing 'candidate'")
        # bool is an int subclass; reject it explicitly
        if not isinstance(index, int) or isinstance(index, bool):
            raise MalformedMessageError("Candidate is missing 'sdpMLineIndex'")
        if mid is None:
            mid = ""
        if not isinstance(mid, str):
            raise MalformedMessageError("Candidate 'sdpMid' must be a string")
        return cls(candidate=candidate, sdp_mline_index=index, sdp_mid=mid)


def parse_audio_level(payload: Any) -> float:
    """Extract the decibel value from an ``audioLevel`` payload."""
    if not isinstance(payload, dict):
        raise MalformedMessageError(f"Audio level must be an object: {payload!r}")
    value = payload.get("value")
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        raise MalformedMessageError(f"Audio level is missing numeric 'value': {payload!r}")
    return float(value)


def parse_monitoring_status(payload: Any) -> bool:
    """Extract the flag from a ``monitoringStatus`` payload."""
    if not isinstance(payload, bool):
        raise MalformedMessageError(f"Monitoring status must be a bool: {payload!r}")
    return payload
