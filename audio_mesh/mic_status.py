"""Mute-state broadcast between participants."""

import logging
from typing import Any, Callable, Dict, Optional

from audio_mesh.protocol import MSG_MIC_STATUS, sender_of

logger = logging.getLogger(__name__)


class MicStatusBroadcaster:
    """Announces the local mute state and tracks everyone else's.

    Outbound frames are not addressed; the relay fans them out. Inbound state
    is keyed by sender id and never touches the session table.
    """

    def __init__(
        self,
        send: Callable[[Dict[str, Any]], Any],
        on_change: Optional[Callable[[str, bool], Any]] = None,
    ):
        """Initialize the broadcaster.

        Args:
            send: Sends one signaling message (a dict) to the relay.
            on_change: Called with ``(remote_id, status)`` on remote updates.
        """
        self._send = send
        self._on_change = on_change
        self._statuses: Dict[str, bool] = {}

    @property
    def statuses(self) -> Dict[str, bool]:
        return dict(self._statuses)

    def status_of(self, remote_id: str) -> Optional[bool]:
        return self._statuses.get(remote_id)

    async def announce(self, status: bool) -> None:
        await self._send({"type": MSG_MIC_STATUS, "status": bool(status)})

    def handle(self, data: Dict[str, Any]) -> Any:
        """Ingest an inbound ``mic-status`` frame.

        Returns:
            Whatever ``on_change`` returned, so async callbacks can be awaited.
        """
        remote_id = sender_of(data)
        status = data.get("status")
        if remote_id is None or not isinstance(status, bool):
            logger.warning(f"Dropping malformed mic-status frame: {data}")
            return None

        self._statuses[remote_id] = status
        logger.debug(f"Mic status of {remote_id}: {'on' if status else 'off'}")
        if self._on_change is not None:
            return self._on_change(remote_id, status)
        return None

    def forget(self, remote_id: str) -> None:
        self._statuses.pop(remote_id, None)
