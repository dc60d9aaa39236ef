"""WebSocket adapter for the relay (signaling) server.

The channel is a thin duplex pipe: :meth:`SignalingChannel.messages` yields
decoded inbound frames, :meth:`SignalingChannel.send` relays outbound ones.
Malformed frames are logged and dropped; sending while disconnected is logged
and dropped. Neither ever reaches the negotiator.
"""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import websockets

from audio_mesh.protocol import MSG_WELCOME, ProtocolError, decode_frame

logger = logging.getLogger(__name__)


class SignalingError(ConnectionError):
    """Raised when the relay cannot be reached or never welcomes us."""


class SignalingChannel:
    """Duplex message pipe to a relay server.

    Attributes:
        url: WebSocket URL of the relay.
        connect_timeout: Seconds to wait for the socket and the welcome frame.
        local_id: Identifier assigned by the relay's welcome frame.
    """

    def __init__(self, url: str, connect_timeout: float = 10.0):
        self.url = url
        self.connect_timeout = connect_timeout
        self.local_id: Optional[str] = None
        self._websocket = None

    @property
    def connected(self) -> bool:
        return self._websocket is not None

    async def connect(self) -> Tuple[str, List[str]]:
        """Open the socket and wait for the relay's welcome.

        Frames arriving before the welcome are dropped.

        Returns:
            Tuple of (local id, ids of participants already present).

        Raises:
            SignalingError: On connection failure, timeout, or if the socket
                closes before the welcome frame arrives.
        """
        logger.info(f"Connecting to signaling server: {self.url}")
        try:
            self._websocket = await asyncio.wait_for(
                websockets.connect(self.url), timeout=self.connect_timeout
            )
            welcome = await asyncio.wait_for(
                self._wait_for_welcome(), timeout=self.connect_timeout
            )
        except asyncio.TimeoutError as e:
            await self.close()
            raise SignalingError(
                "Connection timeout - server not responding"
            ) from e
        except (OSError, websockets.exceptions.WebSocketException) as e:
            await self.close()
            raise SignalingError(
                f"Could not connect to signaling server at {self.url}: {e}"
            ) from e

        self.local_id = welcome["id"]
        users = [u for u in welcome.get("users") or [] if isinstance(u, str)]
        logger.info(f"Assigned id {self.local_id} ({len(users)} existing users)")
        return self.local_id, users

    async def _wait_for_welcome(self) -> Dict[str, Any]:
        async for raw in self._websocket:
            data = self._decode(raw)
            if data is None:
                continue
            if data["type"] == MSG_WELCOME and isinstance(data.get("id"), str):
                return data
            logger.debug(f"Dropping {data['type']} received before welcome")
        raise SignalingError("Connection closed before welcome")

    def _decode(self, raw: Any) -> Optional[Dict[str, Any]]:
        try:
            return decode_frame(raw)
        except ProtocolError as e:
            logger.error(f"Failed to parse signaling message: {e}")
            return None

    async def messages(self) -> AsyncIterator[Dict[str, Any]]:
        """Yield decoded inbound frames until the socket closes."""
        if self._websocket is None:
            return
        try:
            async for raw in self._websocket:
                data = self._decode(raw)
                if data is not None:
                    yield data
        except websockets.exceptions.ConnectionClosed as e:
            logger.info(f"Signaling connection closed: {e}")
        finally:
            logger.info("Disconnected from signaling server")

    async def send(self, message: Dict[str, Any]) -> bool:
        """Send one frame to the relay.

        Returns:
            True if the frame was handed to the socket, False if dropped.
        """
        msg_type = message.get("type")
        if self._websocket is None:
            logger.warning(f"WebSocket not ready, cannot send: {msg_type}")
            return False
        try:
            await self._websocket.send(json.dumps(message))
        except websockets.exceptions.ConnectionClosed:
            logger.warning(f"WebSocket closed, dropped: {msg_type}")
            return False
        logger.debug(f"Sent to signaling server: {msg_type}")
        return True

    async def close(self) -> None:
        websocket, self._websocket = self._websocket, None
        if websocket is not None:
            await websocket.close()
