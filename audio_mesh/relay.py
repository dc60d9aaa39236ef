"""Simple WebSocket relay server for audio-mesh rooms.

A minimal signaling relay for local development and testing. It assigns
every connection an id, welcomes it with the ids already present, announces
joins and departures, fans out mic-status, and forwards offer / answer /
ice-candidate frames to their ``to`` participant with ``from`` stamped on.
It never looks at SDP or media.

Usage:
    audio-mesh relay [--host HOST] [--port PORT]
"""

import asyncio
import json
import uuid
from typing import Any, Dict, Optional

import websockets
import websockets.exceptions
from loguru import logger

from audio_mesh.protocol import (
    MSG_ANSWER,
    MSG_ICE_CANDIDATE,
    MSG_MIC_STATUS,
    MSG_OFFER,
    MSG_USER_CONNECTED,
    MSG_USER_DISCONNECTED,
    MSG_WELCOME,
    ProtocolError,
    decode_frame,
    encode_frame,
)

FORWARDED_TYPES = (MSG_OFFER, MSG_ANSWER, MSG_ICE_CANDIDATE)


class RelayServer:
    """Room relay: one room, any number of participants.

    Attributes:
        peers: Connected participants, id -> websocket.
    """

    def __init__(self):
        self.peers: Dict[str, Any] = {}

    def _new_id(self) -> str:
        return uuid.uuid4().hex[:12]

    async def _send(self, peer_id: str, text: str) -> bool:
        websocket = self.peers.get(peer_id)
        if websocket is None:
            return False
        try:
            await websocket.send(text)
        except websockets.exceptions.ConnectionClosed:
            logger.debug(f"Dropped frame for closed peer {peer_id}")
            return False
        return True

    async def _broadcast(self, text: str, exclude: Optional[str] = None) -> None:
        targets = [pid for pid in list(self.peers) if pid != exclude]
        await asyncio.gather(*(self._send(pid, text) for pid in targets))

    async def handler(self, websocket) -> None:
        """Handle one participant's WebSocket connection."""
        peer_id = self._new_id()
        existing = list(self.peers)
        self.peers[peer_id] = websocket
        logger.info(f"Registered peer: {peer_id} (total: {len(self.peers)})")

        try:
            await websocket.send(encode_frame(MSG_WELCOME, id=peer_id, users=existing))
            await self._broadcast(encode_frame(MSG_USER_CONNECTED, id=peer_id), exclude=peer_id)

            async for message in websocket:
                await self.route(peer_id, message)

        except websockets.exceptions.ConnectionClosed:
            logger.info(f"Connection closed: {peer_id}")
        finally:
            if self.peers.pop(peer_id, None) is not None:
                logger.info(f"Removed peer: {peer_id} (remaining: {len(self.peers)})")
                await self._broadcast(encode_frame(MSG_USER_DISCONNECTED, id=peer_id))

    async def route(self, peer_id: str, message: Any) -> None:
        """Route one frame received from ``peer_id``."""
        try:
            data = decode_frame(message)
        except ProtocolError as e:
            logger.warning(f"Dropping malformed frame from {peer_id}: {e}")
            return

        msg_type = data["type"]
        if msg_type in FORWARDED_TYPES:
            target = data.pop("to", None)
            if target not in self.peers:
                logger.warning(f"Target peer not found: {target}")
                return
            data["from"] = peer_id
            await self._send(target, json.dumps(data))
            logger.debug(f"Forwarded {msg_type} from {peer_id} to {target}")

        elif msg_type == MSG_MIC_STATUS:
            status = bool(data.get("status"))
            await self._broadcast(
                encode_frame(MSG_MIC_STATUS, id=peer_id, status=status), exclude=peer_id
            )

        else:
            logger.warning(f"Unsupported message type from {peer_id}: {msg_type}")


async def serve(host: str, port: int) -> None:
    """Start the relay server and run forever."""
    relay = RelayServer()
    async with websockets.serve(relay.handler, host, port):
        logger.info(f"Relay server running on ws://{host}:{port}")
        await asyncio.Future()  # Run forever
