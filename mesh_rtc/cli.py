"""Unified CLI for mesh-rtc using Click."""

import asyncio

import click
from loguru import logger

from mesh_rtc.rtc_call import run_call
from mesh_rtc.server import run_server


@click.group()
def cli():
    pass


@cli.command()
@click.option("--host", default="localhost", help="Host to bind to.")
@click.option("--port", type=int, default=8080, help="Port to listen on.")
def serve(host, port):
    """Run the rendezvous (signaling) server.

    Example:
        mesh-rtc serve --host 0.0.0.0 --port 8080
    """
    try:
        asyncio.run(run_server(host, port))
    except KeyboardInterrupt:
        logger.info("Server stopped")


@cli.command()
@click.argument("room", required=False)
@click.option("--name", "-n", default=None, help="Display name shown to other participants.")
@click.option(
    "--server",
    "-s",
    default=None,
    help="Signaling server URL (overrides config and MESH_RTC_SIGNALING_WS).",
)
@click.option("--video/--no-video", default=True, help="Start with the camera on.")
@click.option("--audio/--no-audio", default=True, help="Start with the microphone on.")
def join(room, name, server, video, audio):
    """Join a call room and log who comes and goes.

    ROOM defaults to the configured room (MESH_RTC_ROOM or "shared-doc").

    Example:
        mesh-rtc join shared-doc --name Ada --no-video
    """
    run_call(room_id=room, name=name, server=server, audio=audio, video=video)


if __name__ == "__main__":
    cli()
