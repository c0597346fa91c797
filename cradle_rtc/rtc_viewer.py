"""Entry point for the viewer unit (the one with the parent)."""

import asyncio
import logging

from aiortc.contrib.media import MediaRecorder

from cradle_rtc.client.negotiation import Role
from cradle_rtc.client.unit import PairedUnit
from cradle_rtc.config import get_config
from cradle_rtc.rtc_monitor import build_channel

logging.basicConfig(level=logging.INFO)


def run_viewer(code, server=None, record=None, on_state=None, on_level=None, on_status=None):
    """Join the monitor with pairing code and listen until the call ends.

    Args:
        code: Six-digit pairing code shown by the monitor.
        server: Signaling websocket URL. Overrides config/env.
        record: Optional file to record the received audio to.
        on_state: Called with every negotiation state change.
        on_level: Called with every audio level (dBFS) from the monitor.
        on_status: Called with the monitor's monitoring status.

    Returns:
        The unit's outcome string, or None if interrupted.
    """
    config = get_config()
    sink_factory = (lambda: MediaRecorder(record)) if record else None

    unit = PairedUnit(
        Role.VIEWER,
        build_channel(server),
        media_config=config.get_media_session_config(),
        pairing_code=code,
        sink_factory=sink_factory,
    )
    unit.on_state = on_state
    unit.on_monitoring_status = on_status
    unit.level_relay.set_observer(on_level)

    try:
        return asyncio.run(unit.run())
    except KeyboardInterrupt:
        logging.info("Viewer interrupted by user. Shutting down...")
        return None
    finally:
        logging.info("Viewer exiting...")
