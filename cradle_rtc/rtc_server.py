"""Entry point for the cradle-rtc pairing server."""

import asyncio
import logging

from cradle_rtc.config import get_config
from cradle_rtc.server.signaling_server import SignalingServer

logging.basicConfig(level=logging.INFO)


def run_server(host=None, port=None):
    """Create the SignalingServer and serve until interrupted.

    Args:
        host: Interface to bind. CLI option overrides config/env.
        port: Port to bind. CLI option overrides config/env.
    """
    config = get_config()

    server = SignalingServer(
        host=host or config.server_host,
        port=port or config.server_port,
    )

    try:
        asyncio.run(server.serve_forever())
    except KeyboardInterrupt:
        logging.info("Server interrupted by user. Shutting down...")
    finally:
        logging.info("Server exiting...")
