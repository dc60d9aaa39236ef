"""Per-remote session state and the peer session table."""

import logging
import weakref
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class Role(str, Enum):
    """Collision-resolution role of the local side within one session."""

    POLITE = "polite"
    IMPOLITE = "impolite"


class SignalingPhase(str, Enum):
    """Negotiation phase of a session's transport."""

    STABLE = "stable"
    HAVE_LOCAL_OFFER = "have-local-offer"
    HAVE_REMOTE_OFFER = "have-remote-offer"
    CLOSED = "closed"

    @classmethod
    def parse(cls, value: str) -> "SignalingPhase":
        """Map a transport signaling state onto a phase.

        Provisional-answer states are folded into the offer they answer.
        """
        try:
            return cls(value)
        except ValueError:
            if value == "have-local-pranswer":
                return cls.HAVE_REMOTE_OFFER
            if value == "have-remote-pranswer":
                return cls.HAVE_LOCAL_OFFER
            raise


def role_for(local_id: str, remote_id: str) -> Role:
    """Derive the local role: the lexicographically smaller id is polite."""
    return Role.POLITE if local_id < remote_id else Role.IMPOLITE


@dataclass(eq=False)
class Session:
    """Negotiation and transport state for one remote participant.

    Attributes:
        remote_id: Identifier of the remote participant.
        role: Local role, fixed for the session's lifetime.
        transport: Exclusively owned transport handle.
        sender: The single outbound audio sender created with the transport.
        making_offer: True only while an offer is being built and sent.
        remote_description_set: True once a remote description has been
            applied and the candidate buffer drained.
        remote_offer_count: Remote offers applied so far; an offer of ours
            started before the latest one is superseded.
        pending_candidates: Remote candidates received before any remote
            description, in arrival order.
    """

    remote_id: str
    role: Role
    transport: Any
    sender: Any = None
    making_offer: bool = False
    remote_description_set: bool = False
    remote_offer_count: int = 0
    pending_candidates: List[Dict[str, Any]] = field(default_factory=list)
    closed: bool = False
    _sent_track_ref: Optional[weakref.ref] = field(default=None, repr=False)

    @property
    def signaling_phase(self) -> SignalingPhase:
        if self.closed:
            return SignalingPhase.CLOSED
        return SignalingPhase.parse(self.transport.signaling_state)

    @property
    def sent_track(self) -> Any:
        """The outbound track currently attached, if it is still alive."""
        if self._sent_track_ref is None:
            return None
        return self._sent_track_ref()

    @sent_track.setter
    def sent_track(self, track: Any) -> None:
        self._sent_track_ref = weakref.ref(track) if track is not None else None


class PeerSessionTable:
    """Authoritative mapping from remote id to :class:`Session`.

    The table owns session lifetime: a session's transport is closed exactly
    when the session leaves the table. Iteration must go through
    :meth:`all`, which returns a snapshot.
    """

    def __init__(self, transport_factory: Callable[[str], Any]):
        """Initialize the table.

        Args:
            transport_factory: Called with the remote id to create the
                transport handle for a new session.
        """
        self._transport_factory = transport_factory
        self._sessions: Dict[str, Session] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, remote_id: str) -> bool:
        return remote_id in self._sessions

    def get(self, remote_id: str) -> Optional[Session]:
        return self._sessions.get(remote_id)

    def get_or_create(self, remote_id: str, initial_role: Role) -> Session:
        """Return the session for ``remote_id``, creating it if needed.

        An existing session is reused as-is and ``initial_role`` is ignored.
        Nothing is remembered once a session is removed, so callers must
        derive the role from the ids alone (see :func:`role_for`) for a
        re-created session to keep it.
        """
        session = self._sessions.get(remote_id)
        if session is not None:
            logger.debug(f"Reusing existing session for {remote_id}")
            return session

        transport = self._transport_factory(remote_id)
        session = Session(remote_id=remote_id, role=initial_role, transport=transport)
        self._sessions[remote_id] = session
        logger.info(f"Created session for {remote_id} (role: {initial_role.value})")
        return session

    async def remove(self, remote_id: str) -> Optional[Session]:
        """Remove a session and close its transport.

        Removing an absent id is a no-op.

        Returns:
            The removed session, or None if there was nothing to remove.
        """
        session = self._sessions.pop(remote_id, None)
        if session is None:
            return None

        session.closed = True
        session.pending_candidates.clear()
        try:
            await session.transport.close()
        except Exception as e:
            logger.warning(f"Error closing transport for {remote_id}: {e}")
        logger.info(f"Removed session for {remote_id}")
        return session

    def all(self) -> List[Session]:
        """Snapshot of the current sessions, safe to hold across awaits."""
        return list(self._sessions.values())

    def is_current(self, session: Session) -> bool:
        """True if ``session`` is still the live entry for its remote id."""
        return self._sessions.get(session.remote_id) is session
