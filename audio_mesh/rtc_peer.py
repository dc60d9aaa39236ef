"""Entry point for joining an audio-mesh room from the command line."""

import asyncio
import logging
import sys
from typing import Dict, Optional

from audio_mesh.client import AudioMeshClient
from audio_mesh.config import get_config
from audio_mesh.media import RemoteAudioSink, open_microphone
from audio_mesh.signaling import SignalingChannel
from audio_mesh.transport import aiortc_transport_factory

logger = logging.getLogger(__name__)


async def _toggle_on_enter(client: AudioMeshClient) -> None:
    """Toggle the microphone every time Enter is pressed."""
    loop = asyncio.get_running_loop()
    while True:
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if not line:
            return
        await client.toggle_mic(not client.is_mic_on())
        print(f"Microphone {'ON' if client.is_mic_on() else 'OFF'}")


async def join_room(
    server: str,
    use_mic: bool = True,
    unmuted: bool = False,
    device: Optional[str] = None,
    fmt: Optional[str] = None,
    connect_timeout: Optional[float] = None,
) -> None:
    """Join the room behind ``server`` and stay until the relay goes away."""
    config = get_config()
    sinks: Dict[str, RemoteAudioSink] = {}

    async def on_peer_audio(remote_id, track):
        sink = sinks.setdefault(remote_id, RemoteAudioSink(remote_id))
        await sink.start(track)

    async def on_peer_disconnect(remote_id):
        sink = sinks.pop(remote_id, None)
        if sink is not None:
            await sink.stop()
        print(f"{remote_id} left")

    def on_user_connected(remote_id):
        print(f"{remote_id} joined")

    def on_mic_status(remote_id, status):
        print(f"{remote_id} microphone {'ON' if status else 'OFF'}")

    client = AudioMeshClient(
        signaling=SignalingChannel(server, connect_timeout or config.connect_timeout),
        transport_factory=aiortc_transport_factory(config.rtc_configuration()),
        on_peer_audio=on_peer_audio,
        on_peer_disconnect=on_peer_disconnect,
        on_user_connected=on_user_connected,
        on_mic_status=on_mic_status,
    )

    local_id = await client.connect()
    print(f"Joined as {local_id}")

    toggle_task = None
    try:
        if use_mic:
            player, backend = open_microphone(device, fmt)
            logger.info(f"Using microphone backend: {backend}")
            await client.set_local_track(player.audio)
            if unmuted:
                await client.toggle_mic(True)
            print("Press Enter to toggle the microphone")
            toggle_task = asyncio.create_task(_toggle_on_enter(client))

        await client.wait_closed()
    finally:
        if toggle_task is not None:
            toggle_task.cancel()
        await client.close()
        for sink in list(sinks.values()):
            await sink.stop()


def run_peer(**kwargs) -> None:
    """Run :func:`join_room` until interrupted."""
    try:
        asyncio.run(join_room(**kwargs))
    except KeyboardInterrupt:
        logger.info("Interrupted by user. Shutting down...")
    finally:
        logger.info("Peer exiting...")
