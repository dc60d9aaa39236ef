"""High-level audio mesh participant.

:class:`AudioMeshClient` connects to a relay, assigns the engine its local id
from the welcome frame, and dispatches inbound frames. Each frame is handled
in its own task so a slow negotiation with one remote never stalls the
others; decisions are taken as soon as a task starts, so per-remote ordering
of frames is preserved.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Set

from aiortc import MediaStreamTrack

from audio_mesh.engine import NegotiationEngine, invoke_callback
from audio_mesh.media import MuteGate
from audio_mesh.mic_status import MicStatusBroadcaster
from audio_mesh.protocol import (
    MSG_ANSWER,
    MSG_ICE_CANDIDATE,
    MSG_MIC_STATUS,
    MSG_OFFER,
    MSG_USER_CONNECTED,
    MSG_USER_DISCONNECTED,
    MSG_WELCOME,
    ProtocolError,
    description_from_payload,
    sender_of,
)
from audio_mesh.session import PeerSessionTable
from audio_mesh.signaling import SignalingChannel

logger = logging.getLogger(__name__)


class AudioMeshClient:
    """One participant in a peer-to-peer audio room.

    Attributes:
        signaling: Channel to the relay server.
        engine: Negotiation engine owning all sessions.
        gate: Local audio track and mute state.
        mic_status: Mute-state broadcaster.
    """

    def __init__(
        self,
        signaling: SignalingChannel,
        transport_factory: Callable[[str], Any],
        on_peer_audio: Optional[Callable[[str, Any], Any]] = None,
        on_peer_disconnect: Optional[Callable[[str], Any]] = None,
        on_user_connected: Optional[Callable[[str], Any]] = None,
        on_mic_status: Optional[Callable[[str, bool], Any]] = None,
    ):
        self.signaling = signaling
        self.gate = MuteGate()
        self.on_user_connected = on_user_connected
        self._on_peer_disconnect = on_peer_disconnect

        self.engine = NegotiationEngine(
            sessions=PeerSessionTable(transport_factory),
            send=signaling.send,
            gate=self.gate,
            on_peer_audio=on_peer_audio,
            on_peer_disconnect=self._handle_peer_gone,
        )
        self.mic_status = MicStatusBroadcaster(signaling.send, on_change=on_mic_status)

        self._receive_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    @property
    def local_id(self) -> Optional[str]:
        return self.engine.local_id

    @property
    def sessions(self) -> PeerSessionTable:
        return self.engine.sessions

    async def connect(self) -> str:
        """Connect to the relay and start negotiating with everyone present.

        Returns:
            The local identifier assigned by the relay.

        Raises:
            SignalingError: If the relay cannot be reached.
        """
        local_id, users = await self.signaling.connect()
        await self.handle_message({"type": MSG_WELCOME, "id": local_id, "users": users})
        self._receive_task = asyncio.create_task(self._receive_loop())
        return local_id

    async def wait_closed(self) -> None:
        """Block until the signaling connection ends."""
        if self._receive_task is not None:
            await self._receive_task

    async def _receive_loop(self) -> None:
        async for data in self.signaling.messages():
            self._spawn(self.handle_message(data))
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def handle_message(self, data: Dict[str, Any]) -> None:
        """Dispatch one decoded signaling frame. Never raises."""
        msg_type = data.get("type")
        try:
            if msg_type == MSG_WELCOME:
                await self._handle_welcome(data)
            elif msg_type == MSG_USER_CONNECTED:
                await self._handle_user_connected(data)
            elif msg_type == MSG_USER_DISCONNECTED:
                remote_id = data.get("id")
                if isinstance(remote_id, str):
                    logger.info(f"User disconnected: {remote_id}")
                    await self.engine.remove_peer(remote_id)
            elif msg_type == MSG_MIC_STATUS:
                await invoke_callback(self.mic_status.handle, data)
            elif msg_type in (MSG_OFFER, MSG_ANSWER, MSG_ICE_CANDIDATE):
                await self._handle_negotiation(msg_type, data)
            else:
                logger.debug(f"Ignoring unknown signaling message: {msg_type}")
        except ProtocolError as e:
            logger.error(f"Dropping malformed {msg_type} frame: {e}")
        except Exception as e:
            logger.error(f"Error handling {msg_type} frame: {e}")

    async def _handle_welcome(self, data: Dict[str, Any]) -> None:
        local_id = data.get("id")
        if not isinstance(local_id, str) or not local_id:
            raise ProtocolError("welcome without an id")
        if self.engine.local_id is not None:
            self.engine.set_local_id(local_id)
            return

        self.engine.set_local_id(local_id)
        logger.info(f"My ID assigned from welcome: {local_id}")
        users = [u for u in data.get("users") or [] if isinstance(u, str) and u != local_id]
        for user_id in users:
            await invoke_callback(self.on_user_connected, user_id)
        await asyncio.gather(*(self.engine.initiate(u) for u in users))

    async def _handle_user_connected(self, data: Dict[str, Any]) -> None:
        remote_id = data.get("id")
        if not isinstance(remote_id, str) or remote_id == self.local_id:
            return
        logger.info(f"New user connected: {remote_id}")
        await invoke_callback(self.on_user_connected, remote_id)
        if self.gate.track is not None:
            await self.mic_status.announce(self.gate.enabled)
        await self.engine.initiate(remote_id)

    async def _handle_negotiation(self, msg_type: str, data: Dict[str, Any]) -> None:
        remote_id = sender_of(data)
        if remote_id is None:
            raise ProtocolError(f"{msg_type} frame without a sender")
        if remote_id == self.local_id:
            return

        if msg_type == MSG_OFFER:
            await self.engine.handle_offer(
                remote_id, description_from_payload(data.get("sdp"), "offer")
            )
        elif msg_type == MSG_ANSWER:
            await self.engine.handle_answer(
                remote_id, description_from_payload(data.get("sdp"), "answer")
            )
        else:
            candidate = data.get("candidate")
            if candidate is not None and not isinstance(candidate, dict):
                raise ProtocolError("ice-candidate payload is not an object")
            await self.engine.handle_ice_candidate(remote_id, candidate)

    async def _handle_peer_gone(self, remote_id: str) -> None:
        self.mic_status.forget(remote_id)
        await invoke_callback(self._on_peer_disconnect, remote_id)

    async def set_local_track(self, track: MediaStreamTrack) -> None:
        """Use ``track`` as our outbound audio, starting muted.

        The track is attached to every existing session.
        """
        was_enabled = self.gate.enabled
        self.gate.set_source(track)
        if was_enabled:
            await self.mic_status.announce(False)
        await self.engine.attach_to_all()

    def has_local_track(self) -> bool:
        return self.gate.track is not None

    async def toggle_mic(self, enabled: bool) -> None:
        """Mute or unmute without renegotiating, and tell everyone."""
        self.gate.set_enabled(enabled)
        await self.mic_status.announce(enabled)

    def is_mic_on(self) -> bool:
        return self.gate.enabled

    async def close(self) -> None:
        """Leave the room: close every session, the track and the relay socket."""
        if self._closed:
            return
        self._closed = True
        logger.info("Disconnecting audio mesh client...")

        await self.engine.close()
        self.gate.stop()
        await self.signaling.close()

        if self._receive_task is not None and not self._receive_task.done():
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass
        for task in list(self._tasks):
            task.cancel()
