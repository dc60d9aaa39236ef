"""Perfect-negotiation engine for the audio mesh.

This module drives offer/answer exchange between the local participant and
every remote participant, one :class:`~audio_mesh.session.Session` each.

Key responsibilities:
- Deterministic role assignment (smaller identifier is polite)
- Offer/answer exchange and collision resolution
- ICE candidate buffering until a remote description exists
- Attaching/replacing the shared local audio track on each session's single
  audio transceiver, and renegotiating when it changes
- Session teardown on departure or terminal connectivity

Concurrency model:
Every trigger (inbound frame, join/leave, track change, transport callback)
runs as its own coroutine. Decisions are taken synchronously from the
session's current state (see :mod:`audio_mesh.negotiation`) and the effects are
then awaited one by one. Between effects the engine checks that the session
is still in the table; if it was removed meanwhile, the remaining effects are
abandoned silently. Overlapping triggers for one session are resolved by
collision detection, not by locking.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from audio_mesh.media import MuteGate
from audio_mesh.negotiation import Decision, Effect, Event, NegotiationState, decide
from audio_mesh.protocol import MSG_ANSWER, MSG_ICE_CANDIDATE, MSG_OFFER
from audio_mesh.session import PeerSessionTable, Role, Session, role_for
from audio_mesh.transport import TERMINAL_CONNECTION_STATES

logger = logging.getLogger(__name__)

SendFn = Callable[[Dict[str, Any]], Awaitable[Any]]

# Limits on candidates held for remotes we have no session with yet.
MAX_EARLY_CANDIDATE_PEERS = 32
MAX_EARLY_CANDIDATES = 64


class OfferSuperseded(Exception):
    """A remote offer was accepted while our own offer was being built."""


async def invoke_callback(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    """Invoke a consumer callback, sync or async, without letting it raise."""
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.error(f"Callback {getattr(callback, '__name__', callback)} failed: {e}")


class NegotiationEngine:
    """Coordinates audio sessions with every remote participant.

    Attributes:
        sessions: The peer session table.
        gate: Owner of the local audio track.
        local_id: Our identifier, set once from the relay's welcome.
        pending_ice_candidates: Candidates from remotes we have no session
            with yet, moved into the session when it is created. Bounded by
            ``MAX_EARLY_CANDIDATE_PEERS`` remotes and ``MAX_EARLY_CANDIDATES``
            candidates per remote; overflow is dropped.
    """

    def __init__(
        self,
        sessions: PeerSessionTable,
        send: SendFn,
        gate: MuteGate,
        on_peer_audio: Optional[Callable[[str, Any], Any]] = None,
        on_peer_disconnect: Optional[Callable[[str], Any]] = None,
    ):
        """Initialize the engine.

        Args:
            sessions: Table owning sessions and their transports.
            send: Coroutine sending one signaling message to the relay.
            gate: Mute gate holding the local audio track.
            on_peer_audio: Called with ``(remote_id, track)`` for inbound audio.
            on_peer_disconnect: Called with ``remote_id`` when a session ends.
        """
        self.sessions = sessions
        self.gate = gate
        self._send = send
        self.on_peer_audio = on_peer_audio
        self.on_peer_disconnect = on_peer_disconnect

        self.local_id: Optional[str] = None
        self.pending_ice_candidates: Dict[str, List[Dict[str, Any]]] = {}

    def set_local_id(self, local_id: str) -> None:
        """Record our identifier. It can only be assigned once."""
        if self.local_id is not None and self.local_id != local_id:
            logger.warning(
                f"Ignoring new local id {local_id}; already assigned {self.local_id}"
            )
            return
        self.local_id = local_id

    def role_for(self, remote_id: str) -> Role:
        if self.local_id is None:
            raise RuntimeError("Local id has not been assigned yet")
        return role_for(self.local_id, remote_id)

    # ------------------------------------------------------------------
    # Session setup
    # ------------------------------------------------------------------

    def ensure_session(self, remote_id: str) -> Session:
        """Return the session for ``remote_id``, creating and wiring it if new."""
        session = self.sessions.get(remote_id)
        if session is not None:
            return session

        session = self.sessions.get_or_create(remote_id, self.role_for(remote_id))
        # One stable audio transceiver per session; later track changes
        # replace in place so the media line count never changes.
        session.sender = session.transport.add_transceiver("audio", "sendrecv")
        self._wire_transport_events(session)

        buffered = self.pending_ice_candidates.pop(remote_id, None)
        if buffered:
            session.pending_candidates.extend(buffered)
            logger.debug(f"Moved {len(buffered)} early ICE candidates into session {remote_id}")
        return session

    def _wire_transport_events(self, session: Session) -> None:
        remote_id = session.remote_id
        events = session.transport.events

        @events.on("icecandidate")
        async def on_ice_candidate(candidate):
            if not candidate or not self.sessions.is_current(session):
                return
            await self._send(
                {"type": MSG_ICE_CANDIDATE, "to": remote_id, "candidate": candidate}
            )

        @events.on("track")
        async def on_track(track):
            if getattr(track, "kind", None) != "audio":
                return
            if remote_id == self.local_id:
                logger.info("Skipping own audio stream to prevent echo")
                return
            if not self.sessions.is_current(session):
                return
            logger.info(f"Received audio track from {remote_id}")
            await invoke_callback(self.on_peer_audio, remote_id, track)

        @events.on("connectionstatechange")
        async def on_connection_state_change(state):
            logger.info(f"Peer {remote_id} connection state: {state}")
            if state in TERMINAL_CONNECTION_STATES and self.sessions.is_current(session):
                await self.remove_peer(remote_id)

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def initiate(self, remote_id: str) -> bool:
        """Start negotiating with ``remote_id`` if nothing is in flight.

        Returns:
            True if an offer was sent.
        """
        if remote_id == self.local_id:
            return False
        session = self.ensure_session(remote_id)
        logger.info(f"Creating offer for peer: {remote_id}")
        return await self._run(session, Event.INITIATE)

    async def renegotiate(self, remote_id: str) -> bool:
        """Send a fresh offer to an established session after a media change."""
        session = self.sessions.get(remote_id)
        if session is None:
            return False
        return await self._run(session, Event.RENEGOTIATE)

    async def handle_offer(self, remote_id: str, description: Dict[str, str]) -> bool:
        logger.info(f"Handling offer from peer: {remote_id}")
        session = self.ensure_session(remote_id)
        return await self._run(session, Event.REMOTE_OFFER, description)

    async def handle_answer(self, remote_id: str, description: Dict[str, str]) -> bool:
        session = self.sessions.get(remote_id)
        if session is None:
            logger.warning(f"No session found for answer from {remote_id}")
            return False
        return await self._run(session, Event.REMOTE_ANSWER, description)

    async def handle_ice_candidate(self, remote_id: str, candidate: Dict[str, Any]) -> bool:
        if not candidate:
            logger.debug(f"Received empty ICE candidate from {remote_id} (end of candidates)")
            return False
        session = self.sessions.get(remote_id)
        if session is None:
            return self._buffer_early_candidate(remote_id, candidate)
        return await self._run(session, Event.REMOTE_CANDIDATE, candidate)

    def _buffer_early_candidate(self, remote_id: str, candidate: Dict[str, Any]) -> bool:
        buffered = self.pending_ice_candidates.get(remote_id)
        if buffered is None:
            if len(self.pending_ice_candidates) >= MAX_EARLY_CANDIDATE_PEERS:
                logger.warning(
                    f"Dropping ICE candidate from unknown peer {remote_id}: too many unknown peers"
                )
                return False
            buffered = self.pending_ice_candidates[remote_id] = []
        if len(buffered) >= MAX_EARLY_CANDIDATES:
            logger.warning(f"Dropping ICE candidate from unknown peer {remote_id}: buffer full")
            return False
        buffered.append(candidate)
        logger.debug(f"Buffered ICE candidate for unknown peer {remote_id}")
        return True

    async def attach_to_all(self) -> None:
        """Push the current local track to every session.

        The track is attached in place on every session first, including ones
        whose first offer is still in flight. Sessions without a remote
        description are then (re)initiated and established ones get a
        renegotiation attempt. Sessions are handled concurrently so one slow
        peer does not hold up the rest.
        """
        if self.gate.track is None:
            return
        snapshot = self.sessions.all()
        logger.info(f"Adding local audio to all existing peers: {len(snapshot)}")
        await asyncio.gather(*(self._attach_and_renegotiate(s) for s in snapshot))

    async def _attach_and_renegotiate(self, session: Session) -> None:
        if not self.sessions.is_current(session):
            return
        try:
            await self._attach_local_track(session)
        except Exception as e:
            logger.error(f"Failed to attach local audio track for {session.remote_id}: {e}")
            return
        if not self.sessions.is_current(session):
            return
        if session.transport.remote_description is None:
            await self._run(session, Event.INITIATE)
        else:
            await self._run(session, Event.RENEGOTIATE)

    async def remove_peer(self, remote_id: str) -> bool:
        """Tear down the session with ``remote_id``. Safe to call repeatedly.

        Returns:
            True if a session was removed.
        """
        self.pending_ice_candidates.pop(remote_id, None)
        removed = await self.sessions.remove(remote_id)
        if removed is None:
            return False
        await invoke_callback(self.on_peer_disconnect, remote_id)
        return True

    async def close(self) -> None:
        """Tear down every session."""
        for session in self.sessions.all():
            await self.remove_peer(session.remote_id)
        self.pending_ice_candidates.clear()

    # ------------------------------------------------------------------
    # Effect execution
    # ------------------------------------------------------------------

    async def _run(self, session: Session, event: Event, payload: Any = None) -> bool:
        """Decide on ``event`` and carry out the resulting effects.

        Returns:
            True if every effect completed.
        """
        decision: Decision = decide(NegotiationState.of(session), event)
        if decision.skipped:
            logger.info(f"Skipping {event.value} for {session.remote_id}: {decision.reason}")
            return False

        offering = Effect.SEND_OFFER in decision.effects
        if offering:
            session.making_offer = True
            payload = session.remote_offer_count
        try:
            for effect in decision.effects:
                if not self.sessions.is_current(session):
                    logger.debug(
                        f"Session {session.remote_id} removed during {event.value}; aborting"
                    )
                    return False
                await self._apply(session, effect, payload)
            return True
        except OfferSuperseded:
            logger.info(f"Own offer to {session.remote_id} superseded by their offer")
            return False
        except Exception as e:
            if offering and session.remote_offer_count != payload:
                logger.info(f"Own offer to {session.remote_id} superseded by their offer: {e}")
            elif self.sessions.is_current(session):
                logger.error(f"Error during {event.value} with {session.remote_id}: {e}")
            else:
                logger.debug(f"{event.value} with removed session {session.remote_id} ended: {e}")
            return False
        finally:
            if offering:
                session.making_offer = False

    async def _apply(self, session: Session, effect: Effect, payload: Any) -> None:
        transport = session.transport

        if effect is Effect.ATTACH_TRACK:
            try:
                await self._attach_local_track(session)
            except Exception as e:
                logger.error(f"Failed to attach local audio track: {e}")

        elif effect is Effect.SEND_OFFER:
            # payload: remote offers applied when this offer was started.
            offer = await transport.create_offer()
            if session.remote_offer_count != payload:
                raise OfferSuperseded()
            await transport.set_local_description(offer)
            if session.remote_offer_count != payload:
                raise OfferSuperseded()
            if self.sessions.is_current(session):
                await self._send(
                    {
                        "type": MSG_OFFER,
                        "to": session.remote_id,
                        "sdp": transport.local_description or offer,
                    }
                )

        elif effect is Effect.SET_REMOTE_DESCRIPTION:
            await transport.set_remote_description(payload)
            if payload.get("type") == "offer":
                session.remote_offer_count += 1

        elif effect is Effect.DRAIN_CANDIDATES:
            await self._drain_candidates(session)

        elif effect is Effect.SEND_ANSWER:
            answer = await transport.create_answer()
            await transport.set_local_description(answer)
            if self.sessions.is_current(session):
                await self._send(
                    {
                        "type": MSG_ANSWER,
                        "to": session.remote_id,
                        "sdp": transport.local_description or answer,
                    }
                )

        elif effect is Effect.BUFFER_CANDIDATE:
            session.pending_candidates.append(payload)
            logger.debug(f"Queueing ICE candidate for peer: {session.remote_id}")

        elif effect is Effect.APPLY_CANDIDATE:
            await self._add_candidate(session, payload)

    async def _drain_candidates(self, session: Session) -> None:
        # Candidates arriving while draining are appended and picked up here.
        count = 0
        while session.pending_candidates:
            candidate = session.pending_candidates.pop(0)
            await self._add_candidate(session, candidate)
            count += 1
        session.remote_description_set = True
        if count:
            logger.info(f"Processed {count} pending ICE candidates for {session.remote_id}")

    async def _add_candidate(self, session: Session, candidate: Dict[str, Any]) -> None:
        try:
            await session.transport.add_ice_candidate(candidate)
        except Exception as e:
            logger.error(f"Error adding ICE candidate from {session.remote_id}: {e}")

    async def _attach_local_track(self, session: Session) -> None:
        track = self.gate.track
        if track is None:
            return

        sender = session.sender
        if sender is not None:
            if sender.track is track:
                return
            await sender.replace_track(track)
        else:
            logger.warning(f"No audio sender for {session.remote_id}; adding a transceiver")
            sender = session.transport.add_transceiver("audio", "sendrecv")
            session.sender = sender
            await sender.replace_track(track)
        session.sent_track = track
        logger.debug(f"Attached local audio track to {session.remote_id}")
