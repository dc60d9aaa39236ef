"""Unified CLI for audio-mesh using Click."""

import asyncio
import logging
import sys

import click
from loguru import logger

from audio_mesh.signaling import SignalingError


def _configure_logging(verbose: bool) -> None:
    level = "DEBUG" if verbose else "INFO"
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.remove()
    # Resolve stderr per message; it may be swapped after setup.
    logger.add(lambda message: sys.stderr.write(message), level=level)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose):
    _configure_logging(verbose)


@cli.command()
@click.option(
    "--server",
    "-s",
    type=str,
    required=False,
    help="Relay WebSocket URL. Overrides config file and AUDIO_MESH_SIGNALING_WS.",
)
@click.option(
    "--mic/--no-mic",
    default=True,
    help="Capture the local microphone (default) or join listen-only.",
)
@click.option(
    "--unmuted",
    is_flag=True,
    help="Start with the microphone enabled. Microphones start muted otherwise.",
)
@click.option(
    "--device",
    type=str,
    required=False,
    help="Capture device name passed to ffmpeg (e.g. 'default', 'hw:1').",
)
@click.option(
    "--format",
    "fmt",
    type=str,
    required=False,
    help="Capture backend format for --device (e.g. 'pulse', 'alsa', 'avfoundation').",
)
@click.option(
    "--timeout",
    type=float,
    required=False,
    help="Seconds to wait for the relay before giving up.",
)
def join(server, mic, unmuted, device, fmt, timeout):
    """Join an audio room through a relay server.

    Every other participant in the room gets a direct peer-to-peer audio
    session. Press Enter to toggle your microphone.

    Example:
        audio-mesh join --server ws://localhost:8080
    """
    from audio_mesh.config import get_config
    from audio_mesh.rtc_peer import run_peer

    if fmt and not device:
        logger.error("--format requires --device")
        sys.exit(1)

    server_url = server or get_config().signaling_websocket
    logger.info(f"Using relay server: {server_url}")

    try:
        run_peer(
            server=server_url,
            use_mic=mic,
            unmuted=unmuted,
            device=device,
            fmt=fmt,
            connect_timeout=timeout,
        )
    except SignalingError as e:
        logger.error(f"Could not join room: {e}")
        sys.exit(1)
    except RuntimeError as e:
        logger.error(str(e))
        sys.exit(1)


@cli.command()
@click.option("--host", default="localhost", help="Host to bind to.")
@click.option("--port", type=int, default=8080, help="Port to listen on.")
def relay(host, port):
    """Run a development relay (signaling) server.

    Example:
        audio-mesh relay --host 0.0.0.0 --port 8080
    """
    from audio_mesh.relay import serve

    try:
        asyncio.run(serve(host, port))
    except KeyboardInterrupt:
        logger.info("Server stopped")
    except OSError as e:
        logger.error(f"Could not start relay on {host}:{port}: {e}")
        sys.exit(1)


if __name__ == "__main__":
    cli()
