"""Entry point for the monitor unit (the one next to the baby)."""

import asyncio
import logging

from cradle_rtc.client.negotiation import Role
from cradle_rtc.client.signaling_channel import SignalingChannel
from cradle_rtc.client.unit import PairedUnit
from cradle_rtc.config import get_config

logging.basicConfig(level=logging.INFO)


def build_channel(server=None) -> SignalingChannel:
    """Build a SignalingChannel from config, with an optional URL override."""
    config = get_config()
    return SignalingChannel(
        server or config.signaling_websocket,
        heartbeat_interval=config.heartbeat_interval,
        max_reconnect_attempts=config.max_reconnect_attempts,
        reconnect_delay=config.reconnect_delay,
    )


def run_monitor(server=None, on_code=None, on_state=None):
    """Run a monitor unit until interrupted or signaling gives up.

    Args:
        server: Signaling websocket URL. Overrides config/env.
        on_code: Called with every pairing code the server hands out.
        on_state: Called with every negotiation state change.

    Returns:
        The unit's outcome string, or None if interrupted.
    """
    config = get_config()
    unit = PairedUnit(
        Role.MONITOR,
        build_channel(server),
        media_config=config.get_media_session_config(),
        level_interval=config.level_interval,
    )
    unit.on_code = on_code
    unit.on_state = on_state

    try:
        return asyncio.run(unit.run())
    except KeyboardInterrupt:
        logging.info("Monitor interrupted by user. Shutting down...")
        return None
    finally:
        logging.info("Monitor exiting...")
