"""Shared fixtures: a deterministic fake transport and an in-memory relay."""

import asyncio
from typing import Any, Dict, List, Optional

import pytest
from pyee.asyncio import AsyncIOEventEmitter

from audio_mesh.client import AudioMeshClient
from audio_mesh.engine import NegotiationEngine
from audio_mesh.media import MuteGate
from audio_mesh.protocol import MSG_MIC_STATUS, MSG_USER_CONNECTED, MSG_USER_DISCONNECTED, MSG_WELCOME
from audio_mesh.session import PeerSessionTable


class InvalidStateError(Exception):
    pass


class FakeSender:
    def __init__(self):
        self.track = None
        self.replace_calls = 0

    async def replace_track(self, track):
        await asyncio.sleep(0)
        self.replace_calls += 1
        self.track = track


class FakeTransport:
    """Transport double that completes every operation on the next loop turn.

    Mirrors browser signaling-state rules, including implicit rollback of a
    local offer when a remote offer is applied.
    """

    def __init__(self, owner: str = "", remote_id: str = ""):
        self.owner = owner
        self.remote_id = remote_id
        self.events = AsyncIOEventEmitter()
        self.signaling_state = "stable"
        self.connection_state = "new"
        self.transceivers: List[FakeSender] = []
        self.applied_candidates: List[Dict[str, Any]] = []
        self.fail_candidates = False
        self.fail_remote_description = False
        self.close_count = 0
        self._current_local: Optional[Dict[str, str]] = None
        self._pending_local: Optional[Dict[str, str]] = None
        self._current_remote: Optional[Dict[str, str]] = None
        self._pending_remote: Optional[Dict[str, str]] = None
        self._counter = 0

    @property
    def local_description(self):
        return self._pending_local or self._current_local

    @property
    def remote_description(self):
        return self._pending_remote or self._current_remote

    def add_transceiver(self, kind, direction):
        sender = FakeSender()
        self.transceivers.append(sender)
        return sender

    def _describe(self, kind):
        self._counter += 1
        return {
            "type": kind,
            "sdp": f"{kind} #{self._counter} from {self.owner} m-lines={len(self.transceivers)}",
        }

    async def create_offer(self):
        await asyncio.sleep(0)
        return self._describe("offer")

    async def create_answer(self):
        await asyncio.sleep(0)
        if self.signaling_state != "have-remote-offer":
            raise InvalidStateError(f"createAnswer in {self.signaling_state}")
        return self._describe("answer")

    async def set_local_description(self, description):
        await asyncio.sleep(0)
        if description["type"] == "offer":
            if self.signaling_state not in ("stable", "have-local-offer"):
                raise InvalidStateError(f"local offer in {self.signaling_state}")
            self._pending_local = description
            self.signaling_state = "have-local-offer"
        else:
            if self.signaling_state != "have-remote-offer":
                raise InvalidStateError(f"local answer in {self.signaling_state}")
            self._current_local = description
            self._current_remote = self._pending_remote
            self._pending_local = self._pending_remote = None
            self.signaling_state = "stable"

    async def set_remote_description(self, description):
        await asyncio.sleep(0)
        if self.fail_remote_description:
            raise InvalidStateError("remote description rejected")
        if self.signaling_state == "closed":
            raise InvalidStateError("transport closed")
        if description["type"] == "offer":
            if self.signaling_state == "have-local-offer":
                self._pending_local = None
            self._pending_remote = description
            self.signaling_state = "have-remote-offer"
        else:
            if self.signaling_state != "have-local-offer":
                raise InvalidStateError(f"remote answer in {self.signaling_state}")
            self._current_local = self._pending_local
            self._current_remote = description
            self._pending_local = self._pending_remote = None
            self.signaling_state = "stable"

    async def add_ice_candidate(self, candidate):
        await asyncio.sleep(0)
        if self.fail_candidates:
            raise InvalidStateError("candidate rejected")
        if self.remote_description is None:
            raise InvalidStateError("no remote description")
        self.applied_candidates.append(candidate)

    async def close(self):
        self.close_count += 1
        self.signaling_state = "closed"


class FakeTransportFactory:
    def __init__(self, owner: str = ""):
        self.owner = owner
        self.created: Dict[str, List[FakeTransport]] = {}

    def __call__(self, remote_id: str) -> FakeTransport:
        transport = FakeTransport(self.owner, remote_id)
        self.created.setdefault(remote_id, []).append(transport)
        return transport


class RecordingSend:
    """Async send function that records every outbound message."""

    def __init__(self):
        self.messages: List[Dict[str, Any]] = []

    async def __call__(self, message):
        self.messages.append(message)
        return True

    def of_type(self, msg_type):
        return [m for m in self.messages if m["type"] == msg_type]


class FakeSignaling:
    """Stand-in for SignalingChannel that routes through a FakeRelay."""

    def __init__(self, relay: "FakeRelay"):
        self.relay = relay
        self.local_id: Optional[str] = None
        self.sent: List[Dict[str, Any]] = []
        self.closed = False

    async def send(self, message):
        self.sent.append(message)
        self.relay.deliver(self.local_id, message)
        return True

    def sent_of_type(self, msg_type):
        return [m for m in self.sent if m["type"] == msg_type]

    async def close(self):
        self.closed = True


class FakeRelay:
    """In-memory relay delivering each frame to its target in a new task."""

    def __init__(self):
        self.clients: Dict[str, AudioMeshClient] = {}
        self.factories: Dict[str, FakeTransportFactory] = {}
        self.tasks: List[asyncio.Task] = []

    def _post(self, target: str, frame: Dict[str, Any]) -> None:
        client = self.clients.get(target)
        if client is not None:
            self.tasks.append(asyncio.create_task(client.handle_message(frame)))

    def deliver(self, sender: str, message: Dict[str, Any]) -> None:
        frame = dict(message)
        if frame["type"] == MSG_MIC_STATUS:
            for peer_id in list(self.clients):
                if peer_id != sender:
                    self._post(peer_id, {"type": MSG_MIC_STATUS, "id": sender, "status": frame["status"]})
            return
        target = frame.pop("to", None)
        frame["from"] = sender
        self._post(target, frame)

    def add_client(self, local_id: str, **callbacks) -> AudioMeshClient:
        factory = FakeTransportFactory(local_id)
        signaling = FakeSignaling(self)
        signaling.local_id = local_id
        client = AudioMeshClient(signaling=signaling, transport_factory=factory, **callbacks)
        self.factories[local_id] = factory
        return client

    async def join(self, local_id: str, **callbacks) -> AudioMeshClient:
        """Connect a new participant the way a real relay would announce it."""
        client = self.add_client(local_id, **callbacks)
        existing = list(self.clients)
        self.clients[local_id] = client
        for peer_id in existing:
            self._post(peer_id, {"type": MSG_USER_CONNECTED, "id": local_id})
        self.tasks.append(
            asyncio.create_task(
                client.handle_message({"type": MSG_WELCOME, "id": local_id, "users": existing})
            )
        )
        return client

    async def leave(self, local_id: str) -> None:
        client = self.clients.pop(local_id)
        await client.close()
        for peer_id in list(self.clients):
            self._post(peer_id, {"type": MSG_USER_DISCONNECTED, "id": local_id})

    async def settle(self) -> None:
        """Run until no frames are in flight."""
        for _ in range(200):
            for _ in range(5):
                await asyncio.sleep(0)
            pending = [t for t in self.tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending)
        raise AssertionError("relay did not settle")

    def transport(self, owner: str, remote_id: str) -> FakeTransport:
        return self.factories[owner].created[remote_id][-1]


@pytest.fixture
def relay():
    return FakeRelay()


@pytest.fixture
def send():
    return RecordingSend()


@pytest.fixture
def factory():
    return FakeTransportFactory("alice")


@pytest.fixture
def engine(factory, send):
    """Engine for local participant 'alice' backed by fake transports."""
    eng = NegotiationEngine(
        sessions=PeerSessionTable(factory),
        send=send,
        gate=MuteGate(),
    )
    eng.set_local_id("alice")
    return eng
