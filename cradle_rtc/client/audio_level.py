"""Audio level telemetry over the signaling channel.

The monitor meters its microphone and posts the level in dBFS as
``audioLevel`` events; the viewer hands every received value to one
observer. Levels are a live gauge: nothing is queued, averaged or reordered,
and a value that cannot be sent right now is simply dropped.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

import numpy as np
from aiortc.mediastreams import MediaStreamError, MediaStreamTrack

from cradle_rtc.client.signaling_channel import SignalingChannel
from cradle_rtc.exceptions import MalformedMessageError
from cradle_rtc.protocol import MSG_AUDIO_LEVEL, parse_audio_level, payload_of

logger = logging.getLogger(__name__)

MIN_LEVEL_DB = -90.0
MAX_LEVEL_DB = 0.0


def level_db(samples: np.ndarray) -> float:
    """RMS level of PCM samples in dBFS, clamped to [-90, 0].

    Integer samples are scaled by their type's full range; float samples are
    taken as already normalized to [-1, 1].
    """
    if samples.size == 0:
        return MIN_LEVEL_DB

    if np.issubdtype(samples.dtype, np.integer):
        data = samples.astype(np.float64) / float(np.iinfo(samples.dtype).max)
    else:
        data = samples.astype(np.float64)

    rms = float(np.sqrt(np.mean(np.square(data))))
    if rms <= 0.0:
        return MIN_LEVEL_DB
    return float(np.clip(20.0 * np.log10(rms), MIN_LEVEL_DB, MAX_LEVEL_DB))


class LevelMeter:
    """Turns audio frames into throttled level callbacks.

    Attributes:
        on_level: Called with each emitted dBFS value.
        interval: Minimum seconds between two emitted values.
    """

    def __init__(
        self,
        on_level: Callable[[float], object],
        interval: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.on_level = on_level
        self.interval = interval
        self._clock = clock
        self._last_emit: Optional[float] = None

    def feed(self, samples: np.ndarray) -> Optional[float]:
        """Meter one block of samples.

        Returns:
            The emitted level, or None when throttled.
        """
        now = self._clock()
        if self._last_emit is not None and now - self._last_emit < self.interval:
            return None
        self._last_emit = now

        level = level_db(samples)
        self.on_level(level)
        return level

    async def run(self, track: MediaStreamTrack) -> None:
        """Meter track until it ends."""
        logger.info("Local level meter started")
        while True:
            try:
                frame = await track.recv()
            except MediaStreamError:
                break
            self.feed(frame.to_ndarray())
        logger.info("Local level meter stopped")


class AudioLevelRelay:
    """Sends local levels and delivers remote ones.

    Attributes:
        channel: Signaling channel carrying the audioLevel events.
        observer: Single receiver of remote levels; last delivered wins.
    """

    def __init__(
        self,
        channel: SignalingChannel,
        observer: Optional[Callable[[float], object]] = None,
    ):
        self.channel = channel
        self.observer = observer
        self._in_flight: Optional[asyncio.Future] = None
        channel.on(MSG_AUDIO_LEVEL, self._handle_audio_level)

    def set_observer(self, observer: Optional[Callable[[float], object]]) -> None:
        self.observer = observer

    def post_local_level(self, value: float) -> bool:
        """Best-effort send of a local level. Never blocks, never queues.

        Dropped when the channel is down, there is no pairing code yet, or
        the previous level is still being written.

        Returns:
            True if a send was started.
        """
        if not self.channel.is_connected or self.channel.session_code is None:
            return False
        if self._in_flight is not None and not self._in_flight.done():
            return False

        self._in_flight = asyncio.ensure_future(
            self.channel.send_in_session(MSG_AUDIO_LEVEL, {"value": float(value)})
        )
        return True

    def on_remote_level(self, value: float) -> None:
        """Deliver a remote level to the observer."""
        logger.debug(f"Remote audio level: {value:.1f} dB")
        if self.observer is not None:
            self.observer(value)

    def _handle_audio_level(self, *args) -> None:
        try:
            value = parse_audio_level(payload_of(list(args)))
        except MalformedMessageError as e:
            logger.warning(f"Received malformed audio level data: {e}")
            return
        self.on_remote_level(value)
