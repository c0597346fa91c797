"""Text-level normalization of remote session descriptions.

Two rewrites are applied before a remote description is handed to the
transport:

* ``stereo=1`` (and ``sprop-stereo=1``) are turned into ``=0``: the monitor
  captures a single microphone and the level meter assumes mono.
* A media-level ``a=inactive`` becomes ``a=sendrecv``. The local transceiver
  direction (send-only on the monitor, receive-only on the viewer) already
  decides who sends, and an inherited ``inactive`` would mute an otherwise
  correct session.

String replacement only; this is not an SDP parser.
"""

import re

_STEREO_ON = re.compile(r"\bstereo=1\b")
_INACTIVE_LINE = re.compile(r"^a=inactive(?=\r?$)", re.MULTILINE)


def normalize_sdp(sdp: str) -> str:
    """Return sdp with stereo forced off and inactive directions reopened."""
    sdp = _STEREO_ON.sub("stereo=0", sdp)
    return _INACTIVE_LINE.sub("a=sendrecv", sdp)
