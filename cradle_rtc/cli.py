"""Unified CLI for cradle-rtc using Click."""

import re
import sys

import click
from loguru import logger

from cradle_rtc.client.negotiation import NegotiationState
from cradle_rtc.rtc_monitor import run_monitor
from cradle_rtc.rtc_server import run_server
from cradle_rtc.rtc_viewer import run_viewer

CODE_PATTERN = re.compile(r"^\d{6}$")

# Outcomes a viewer reports as errors
FAILED_OUTCOMES = {"pairing failed", "connection failed", "signaling unavailable"}


@click.group()
def cli():
    pass


@cli.command()
@click.option(
    "--host",
    type=str,
    required=False,
    help="Interface to bind. Overrides CRADLE_RTC_HOST and the config file.",
)
@click.option(
    "--port",
    "-p",
    type=int,
    required=False,
    help="Port for websocket and liveness checks. Overrides PORT and the config file.",
)
def server(host, port):
    """Start the pairing and signaling server.

    The same port answers websocket upgrades and plain HTTP GETs (liveness).

    Example:
        cradle-rtc server --port 8080
    """
    if port is not None and not 0 < port < 65536:
        logger.error(f"Invalid port: {port}")
        sys.exit(1)

    run_server(host=host, port=port)


@cli.command()
@click.option(
    "--server",
    "-s",
    "server_url",
    type=str,
    envvar="CRADLE_RTC_SIGNALING_WS",
    required=False,
    help="Signaling websocket URL (ws://host:port).",
)
def monitor(server_url):
    """Run the monitor unit: capture the microphone and wait for a viewer.

    Prints a six-digit pairing code; type it into the viewer. A new code is
    printed whenever the viewer leaves.
    """

    def show_code(code):
        click.echo(f"Pairing code: {code}")

    def show_state(state):
        click.echo(f"Connection: {state}")

    outcome = run_monitor(server=server_url, on_code=show_code, on_state=show_state)
    if outcome is not None:
        logger.error(f"Monitor stopped: {outcome}")
        sys.exit(1)


@cli.command()
@click.option(
    "--code",
    "-c",
    type=str,
    required=True,
    help="Six-digit pairing code shown by the monitor.",
)
@click.option(
    "--server",
    "-s",
    "server_url",
    type=str,
    envvar="CRADLE_RTC_SIGNALING_WS",
    required=False,
    help="Signaling websocket URL (ws://host:port).",
)
@click.option(
    "--record",
    "-r",
    type=click.Path(dir_okay=False, writable=True),
    required=False,
    help="Record the received audio to this file (e.g. baby.wav).",
)
def viewer(code, server_url, record):
    """Run the viewer unit: pair with a monitor and listen.

    Example:
        cradle-rtc viewer --code 482913 --record baby.wav
    """
    code = code.strip()
    if not CODE_PATTERN.match(code):
        logger.error(f"Pairing codes are six digits, got: {code!r}")
        sys.exit(1)

    def show_state(state):
        if state is NegotiationState.CONNECTED:
            click.echo("Listening to the monitor")
        elif state is NegotiationState.DISCONNECTED:
            click.echo("Connection to the monitor interrupted")
        else:
            click.echo(f"Connection: {state}")

    def show_level(value):
        click.echo(f"Level: {value:6.1f} dB")

    def show_status(active):
        click.echo("Monitor is listening" if active else "Monitor is paused")

    outcome = run_viewer(
        code,
        server=server_url,
        record=record,
        on_state=show_state,
        on_level=show_level,
        on_status=show_status,
    )
    if outcome in FAILED_OUTCOMES:
        logger.error(f"Viewer stopped: {outcome}")
        sys.exit(1)
    if outcome is not None:
        click.echo(f"Viewer stopped: {outcome}")


if __name__ == "__main__":
    cli()
