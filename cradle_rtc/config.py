"""Configuration management for cradle-rtc.

This module handles loading configuration from multiple sources with the following priority:
1. CLI arguments (handled by caller)
2. Environment variables (CRADLE_RTC_SIGNALING_WS, CRADLE_RTC_HOST, PORT)
3. TOML configuration file
4. Default values

Configuration files are loaded from:
- cradle-rtc.toml in current working directory
- ~/.cradle-rtc/config.toml

Environment selection via CRADLE_RTC_ENV (development, staging, production).
Defaults to production if not set.
"""

import os
import platform
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from loguru import logger


# Default signaling server endpoint used by the monitor and viewer units
DEFAULT_SIGNALING_WEBSOCKET = "ws://localhost:8080"

# Pairing server bind address; PORT follows the usual PaaS convention
DEFAULT_SERVER_HOST = "0.0.0.0"
DEFAULT_SERVER_PORT = 8080

# Signaling channel liveness
DEFAULT_HEARTBEAT_INTERVAL = 5.0  # seconds
DEFAULT_MAX_RECONNECT_ATTEMPTS = 5
DEFAULT_RECONNECT_DELAY = 2.0  # seconds

# Minimum spacing between audio level updates sent by the monitor
DEFAULT_LEVEL_INTERVAL = 0.5  # seconds

DEFAULT_ICE_SERVERS = [
    {"urls": "stun:stun.l.google.com:19302"},
    {"urls": "stun:stun1.l.google.com:19302"},
]

# Valid environment names
VALID_ENVIRONMENTS = {"development", "staging", "production"}


def default_audio_input() -> tuple:
    """Return the (device, ffmpeg format) pair for the platform's default microphone."""
    system = platform.system()
    if system == "Darwin":
        return ":0", "avfoundation"
    if system == "Windows":
        return "audio=Microphone", "dshow"
    return "default", "pulse"


@dataclass
class MediaSessionConfig:
    """Media settings handed to each call at construction.

    Attributes:
        ice_servers: STUN/TURN servers as RTCIceServer keyword dicts.
        audio_device: Capture device passed to the ffmpeg-backed player.
        audio_format: ffmpeg input format for the capture device.
        audio_options: Extra ffmpeg options for the capture device.
        echo_cancellation: Voice processing flags. All stay off so the
            metered level is the raw room level.
        auto_gain_control: See echo_cancellation.
        noise_suppression: See echo_cancellation.
    """

    ice_servers: List[Dict] = field(default_factory=lambda: list(DEFAULT_ICE_SERVERS))
    audio_device: str = field(default_factory=lambda: default_audio_input()[0])
    audio_format: Optional[str] = field(default_factory=lambda: default_audio_input()[1])
    audio_options: Dict[str, str] = field(default_factory=dict)
    echo_cancellation: bool = False
    auto_gain_control: bool = False
    noise_suppression: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "MediaSessionConfig":
        """Create MediaSessionConfig from a TOML [media] section.

        Args:
            data: Dictionary from TOML.

        Returns:
            MediaSessionConfig instance.
        """
        config = cls()

        ice_servers = data.get("ice_servers")
        if ice_servers is not None:
            config.ice_servers = parse_ice_servers(ice_servers)

        for key in ("audio_device", "audio_format"):
            if key in data:
                setattr(config, key, data[key])

        if isinstance(data.get("audio_options"), dict):
            config.audio_options = {
                str(k): str(v) for k, v in data["audio_options"].items()
            }

        return config


def parse_ice_servers(entries) -> List[Dict]:
    """Validate ICE server entries from TOML.

    Each entry needs ``urls``; ``username`` and ``credential`` are optional.
    Invalid entries are skipped with a warning.
    """
    servers = []
    for entry in entries:
        if not isinstance(entry, dict) or "urls" not in entry:
            logger.warning(f"Skipping invalid ICE server entry (missing urls): {entry}")
            continue
        server = {"urls": entry["urls"]}
        for key in ("username", "credential"):
            if key in entry:
                server[key] = entry[key]
        servers.append(server)
    return servers


class Config:
    """Configuration manager for cradle-rtc."""

    def __init__(self):
        """Initialize configuration with defaults."""
        self.signaling_websocket: str = DEFAULT_SIGNALING_WEBSOCKET
        self.server_host: str = DEFAULT_SERVER_HOST
        self.server_port: int = DEFAULT_SERVER_PORT
        self.heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL
        self.max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS
        self.reconnect_delay: float = DEFAULT_RECONNECT_DELAY
        self.level_interval: float = DEFAULT_LEVEL_INTERVAL
        self.environment: str = "production"
        self._config_data: dict = {}

    def load(self) -> None:
        """Load configuration from all sources.

        Priority order:
        1. Environment variables
        2. TOML configuration file
        3. Default values
        """
        self.environment = self._get_environment()

        config_file = self._find_config_file()
        if config_file:
            self._load_config_file(config_file)

        self._apply_env_overrides()

    def _get_environment(self) -> str:
        """Get the current environment from CRADLE_RTC_ENV.

        Returns:
            Environment name (development, staging, or production).
            Defaults to production if not set or invalid.
        """
        env = os.getenv("CRADLE_RTC_ENV", "production").lower()
        if env not in VALID_ENVIRONMENTS:
            logger.warning(
                f"Invalid CRADLE_RTC_ENV value '{env}'. "
                f"Valid values are: {', '.join(sorted(VALID_ENVIRONMENTS))}. "
                f"Defaulting to 'production'."
            )
            env = "production"
        return env

    def _find_config_file(self) -> Optional[Path]:
        """Find the configuration file.

        Searches in order:
        1. cradle-rtc.toml in current working directory
        2. ~/.cradle-rtc/config.toml

        Returns:
            Path to config file if found, None otherwise.
        """
        cwd_config = Path.cwd() / "cradle-rtc.toml"
        if cwd_config.exists():
            logger.info(f"Loading config from {cwd_config}")
            return cwd_config

        home_config = Path.home() / ".cradle-rtc" / "config.toml"
        if home_config.exists():
            logger.info(f"Loading config from {home_config}")
            return home_config

        logger.debug("No config file found, using defaults")
        return None

    def _load_config_file(self, config_file: Path) -> None:
        """Load configuration from TOML file.

        Args:
            config_file: Path to the TOML configuration file.
        """
        try:
            with open(config_file, "rb") as f:
                self._config_data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.warning(
                f"Failed to load config file {config_file}: {e}. Using defaults."
            )
            self._config_data = {}
            return

        environments = self._config_data.get("environments", {})
        env_config = environments.get(self.environment, {})

        if not env_config:
            logger.debug(
                f"No configuration found for environment '{self.environment}' "
                f"in {config_file}, using defaults"
            )
            return

        if "signaling_websocket" in env_config:
            self.signaling_websocket = env_config["signaling_websocket"]
            logger.debug(
                f"Loaded signaling_websocket from config: {self.signaling_websocket}"
            )

        if "server_host" in env_config:
            self.server_host = env_config["server_host"]

        if "server_port" in env_config:
            self.server_port = int(env_config["server_port"])

        for key in ("heartbeat_interval", "reconnect_delay", "level_interval"):
            if key in env_config:
                setattr(self, key, float(env_config[key]))

        if "max_reconnect_attempts" in env_config:
            self.max_reconnect_attempts = int(env_config["max_reconnect_attempts"])

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides.

        Environment variables take precedence over config file settings
        but are overridden by CLI arguments (handled by caller).
        """
        ws_override = os.getenv("CRADLE_RTC_SIGNALING_WS")
        if ws_override:
            self.signaling_websocket = ws_override
            logger.info(
                f"Overriding signaling_websocket from env: {self.signaling_websocket}"
            )

        host_override = os.getenv("CRADLE_RTC_HOST")
        if host_override:
            self.server_host = host_override
            logger.info(f"Overriding server_host from env: {self.server_host}")

        port_override = os.getenv("PORT")
        if port_override:
            try:
                self.server_port = int(port_override)
                logger.info(f"Overriding server_port from env: {self.server_port}")
            except ValueError:
                logger.warning(
                    f"Ignoring non-numeric PORT value '{port_override}', "
                    f"keeping {self.server_port}"
                )

    def get_media_session_config(self) -> MediaSessionConfig:
        """Get media configuration from loaded config data.

        Returns:
            MediaSessionConfig built from the [media] section, or defaults.
        """
        return MediaSessionConfig.from_dict(self._config_data.get("media", {}))


# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance.

    Loads configuration on first call.

    Returns:
        Global Config instance.
    """
    global _config
    if _config is None:
        _config = Config()
        _config.load()
    return _config


def reload_config() -> Config:
    """Reload configuration from sources.

    Useful for testing or runtime reconfiguration.

    Returns:
        Reloaded Config instance.
    """
    global _config
    _config = Config()
    _config.load()
    return _config
