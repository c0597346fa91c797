"""Local media ownership for one call.

MediaSession is created per orchestrator from a MediaSessionConfig. For the
monitor role it opens the microphone through aiortc's ffmpeg-backed
MediaPlayer and fans the single capture track out through a MediaRelay, so
the peer connection and the level meter each get their own subscription.
The viewer role opens nothing.
"""

import logging
from typing import Callable, Optional

from aiortc.contrib.media import MediaPlayer, MediaRelay
from aiortc.mediastreams import MediaStreamTrack

from cradle_rtc.client.negotiation import Role
from cradle_rtc.config import MediaSessionConfig

logger = logging.getLogger(__name__)


class MediaSession:
    """Owns the local capture device for the lifetime of one call.

    Attributes:
        config: Media settings for this call.
        role: Role the session is configured for, or None when inactive.
    """

    def __init__(
        self,
        config: MediaSessionConfig,
        player_factory: Callable[..., MediaPlayer] = MediaPlayer,
    ):
        self.config = config
        self.role = None
        self._player_factory = player_factory
        self._player: Optional[MediaPlayer] = None
        self._relay: Optional[MediaRelay] = None

    @property
    def is_active(self) -> bool:
        return self.role is not None

    def configure_for_role(self, role: Role) -> Optional[MediaStreamTrack]:
        """Prepare local media for role.

        Args:
            role: Role of the owning orchestrator.

        Returns:
            The audio track to send (monitor), or None (viewer).
        """
        if self.role == role:
            return self.subscribe()

        self.deactivate()
        self.role = role

        if role is not Role.MONITOR:
            logger.info(f"Media session configured for {role} (no capture)")
            return None

        if self.config.echo_cancellation or self.config.auto_gain_control or self.config.noise_suppression:
            logger.warning(
                "Voice processing flags are ignored: capture is always raw so levels stay meaningful"
            )

        logger.info(
            f"Opening microphone {self.config.audio_device!r} "
            f"(format: {self.config.audio_format}, no echo cancellation/AGC/noise suppression)"
        )
        self._player = self._player_factory(
            self.config.audio_device,
            format=self.config.audio_format,
            options=self.config.audio_options,
        )
        if self._player.audio is None:
            logger.error(f"Capture device {self.config.audio_device!r} has no audio stream")
            self.deactivate()
            return None

        self._relay = MediaRelay()
        return self.subscribe()

    def subscribe(self) -> Optional[MediaStreamTrack]:
        """Return a new consumer of the capture track, or None without capture."""
        if self._player is None or self._player.audio is None or self._relay is None:
            return None
        return self._relay.subscribe(self._player.audio)

    def deactivate(self) -> None:
        """Release the capture device. Safe to call repeatedly."""
        if self._player is not None:
            if self._player.audio is not None:
                self._player.audio.stop()
            logger.info("Microphone released")
        self._player = None
        self._relay = None
        self.role = None
