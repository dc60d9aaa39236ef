"""Transport capability interface and its aiortc implementation.

The negotiation engine only depends on the narrow :class:`Transport` protocol
below. :class:`AiortcTransport` adapts ``aiortc.RTCPeerConnection`` to it;
tests substitute a deterministic fake.

Events are delivered through a ``pyee`` emitter exposed as
``transport.events``:

- ``connectionstatechange`` ``(state: str)``
- ``icecandidate`` ``(candidate: dict)`` in wire form
- ``track`` ``(track)`` for every inbound media track
"""

import inspect
import logging
from typing import Any, Dict, Optional, Protocol

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceCandidate,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaRelay
from aiortc.sdp import candidate_from_sdp
from pyee.asyncio import AsyncIOEventEmitter

from audio_mesh.protocol import description_to_payload

logger = logging.getLogger(__name__)

# Connection states that end a session.
TERMINAL_CONNECTION_STATES = frozenset({"disconnected", "failed"})


class TransportError(RuntimeError):
    """Raised when the transport engine cannot perform an operation."""


class Sender(Protocol):
    """Outbound media sender bound to one transceiver."""

    @property
    def track(self) -> Optional[Any]: ...

    async def replace_track(self, track: Optional[Any]) -> None: ...


class Transport(Protocol):
    """Capabilities the negotiation engine needs from a peer transport."""

    events: AsyncIOEventEmitter

    @property
    def signaling_state(self) -> str: ...

    @property
    def connection_state(self) -> str: ...

    @property
    def local_description(self) -> Optional[Dict[str, str]]: ...

    @property
    def remote_description(self) -> Optional[Dict[str, str]]: ...

    def add_transceiver(self, kind: str, direction: str) -> Sender: ...

    async def create_offer(self) -> Dict[str, str]: ...

    async def create_answer(self) -> Dict[str, str]: ...

    async def set_local_description(self, description: Dict[str, str]) -> None: ...

    async def set_remote_description(self, description: Dict[str, str]) -> None: ...

    async def add_ice_candidate(self, candidate: Dict[str, Any]) -> None: ...

    async def close(self) -> None: ...


def _as_payload(description: Optional[RTCSessionDescription]) -> Optional[Dict[str, str]]:
    if description is None:
        return None
    return description_to_payload(description)


def parse_candidate(payload: Dict[str, Any]) -> RTCIceCandidate:
    """Build an aiortc candidate from its browser wire form.

    Raises:
        ValueError: If the candidate line cannot be parsed.
    """
    line = payload.get("candidate") or ""
    if line.startswith("candidate:"):
        line = line[len("candidate:"):]
    if not line:
        raise ValueError("Empty ICE candidate")

    candidate = candidate_from_sdp(line)
    candidate.sdpMid = payload.get("sdpMid")
    candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
    return candidate


class AiortcSender:
    """Sender wrapper that fans a shared local track out through a relay.

    ``track`` reports the original local track so callers can compare
    identity, while aiortc receives a per-sender relay subscription.
    """

    def __init__(self, rtc_sender, relay: MediaRelay):
        self._rtc_sender = rtc_sender
        self._relay = relay
        self._track: Optional[MediaStreamTrack] = None

    @property
    def track(self) -> Optional[MediaStreamTrack]:
        return self._track

    async def replace_track(self, track: Optional[MediaStreamTrack]) -> None:
        proxy = self._relay.subscribe(track) if track is not None else None
        result = self._rtc_sender.replaceTrack(proxy)
        if inspect.isawaitable(result):
            await result
        self._track = track


class AiortcTransport:
    """:class:`Transport` backed by an ``aiortc.RTCPeerConnection``.

    aiortc gathers local candidates into the SDP instead of trickling them,
    so ``icecandidate`` is never emitted for local candidates.
    """

    def __init__(
        self,
        configuration: Optional[RTCConfiguration] = None,
        relay: Optional[MediaRelay] = None,
    ):
        self._pc = RTCPeerConnection(configuration=configuration)
        self._relay = relay or MediaRelay()
        self._closed = False
        self.events = AsyncIOEventEmitter()

        @self._pc.on("connectionstatechange")
        def on_connection_state_change():
            self.events.emit("connectionstatechange", self._pc.connectionState)

        @self._pc.on("track")
        def on_track(track):
            self.events.emit("track", track)

    @property
    def signaling_state(self) -> str:
        return self._pc.signalingState

    @property
    def connection_state(self) -> str:
        return self._pc.connectionState

    @property
    def local_description(self) -> Optional[Dict[str, str]]:
        return _as_payload(self._pc.localDescription)

    @property
    def remote_description(self) -> Optional[Dict[str, str]]:
        return _as_payload(self._pc.remoteDescription)

    def add_transceiver(self, kind: str, direction: str) -> AiortcSender:
        transceiver = self._pc.addTransceiver(kind, direction=direction)
        return AiortcSender(transceiver.sender, self._relay)

    async def create_offer(self) -> Dict[str, str]:
        return _as_payload(await self._pc.createOffer())

    async def create_answer(self) -> Dict[str, str]:
        return _as_payload(await self._pc.createAnswer())

    async def set_local_description(self, description: Dict[str, str]) -> None:
        await self._pc.setLocalDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description["type"])
        )

    async def set_remote_description(self, description: Dict[str, str]) -> None:
        if description["type"] == "offer" and self.signaling_state == "have-local-offer":
            self._rollback_local_offer()
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description["type"])
        )

    async def add_ice_candidate(self, candidate: Dict[str, Any]) -> None:
        await self._pc.addIceCandidate(parse_candidate(candidate))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._pc.close()

    def _rollback_local_offer(self) -> None:
        """Discard a pending local offer so a remote offer can be applied.

        Browsers roll back implicitly inside setRemoteDescription; aiortc has
        no rollback, so the pending offer is dropped here.
        """
        pc = self._pc
        if not hasattr(pc, "_RTCPeerConnection__pendingLocalDescription"):
            raise TransportError("Transport engine cannot roll back a local offer")
        pc._RTCPeerConnection__pendingLocalDescription = None
        pc._RTCPeerConnection__setSignalingState("stable")
        logger.debug("Rolled back pending local offer")


def aiortc_transport_factory(configuration: Optional[RTCConfiguration] = None):
    """Return a factory creating :class:`AiortcTransport` handles.

    All transports from one factory share a single ``MediaRelay`` so one local
    track can feed every session.
    """
    relay = MediaRelay()

    def create(remote_id: str) -> AiortcTransport:
        logger.debug(f"Creating aiortc transport for {remote_id}")
        return AiortcTransport(configuration=configuration, relay=relay)

    return create
