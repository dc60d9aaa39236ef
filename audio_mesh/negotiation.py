"""Pure perfect-negotiation decisions.

Every negotiation trigger is expressed as ``decide(state, event)`` returning
the state the session moves to and the ordered effects the engine must carry
out. Nothing here touches a transport, so collision handling can be exercised
directly.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Tuple

from audio_mesh.session import Role, Session, SignalingPhase


class Event(str, Enum):
    """Negotiation triggers."""

    INITIATE = "initiate"
    RENEGOTIATE = "renegotiate"
    REMOTE_OFFER = "remote-offer"
    REMOTE_ANSWER = "remote-answer"
    REMOTE_CANDIDATE = "remote-candidate"


class Effect(str, Enum):
    """Side effects, executed by the engine in the order returned."""

    ATTACH_TRACK = "attach-track"
    SEND_OFFER = "send-offer"
    SET_REMOTE_DESCRIPTION = "set-remote-description"
    DRAIN_CANDIDATES = "drain-candidates"
    SEND_ANSWER = "send-answer"
    BUFFER_CANDIDATE = "buffer-candidate"
    APPLY_CANDIDATE = "apply-candidate"


@dataclass(frozen=True)
class NegotiationState:
    """Snapshot of the negotiation-relevant parts of a session."""

    role: Role
    phase: SignalingPhase = SignalingPhase.STABLE
    making_offer: bool = False
    has_remote_description: bool = False
    candidates_released: bool = False

    @classmethod
    def of(cls, session: Session) -> "NegotiationState":
        return cls(
            role=session.role,
            phase=session.signaling_phase,
            making_offer=session.making_offer,
            has_remote_description=session.transport.remote_description is not None,
            candidates_released=session.remote_description_set,
        )

    @property
    def offer_collision(self) -> bool:
        return self.making_offer or self.phase is not SignalingPhase.STABLE


@dataclass(frozen=True)
class Decision:
    """Outcome of one negotiation trigger.

    Attributes:
        state: Expected state once all effects have completed.
        effects: Effects to execute, in order. Empty means skip.
        reason: Why the trigger was skipped or ignored, for logging.
    """

    state: NegotiationState
    effects: Tuple[Effect, ...] = ()
    reason: str = ""

    @property
    def skipped(self) -> bool:
        return not self.effects


def _skip(state: NegotiationState, reason: str) -> Decision:
    return Decision(state=state, reason=reason)


def decide(state: NegotiationState, event: Event) -> Decision:
    """Decide how a session reacts to a negotiation trigger."""
    if state.phase is SignalingPhase.CLOSED:
        return _skip(state, "session closed")

    if event is Event.INITIATE:
        if state.making_offer or state.phase is not SignalingPhase.STABLE:
            return _skip(state, f"negotiation in progress ({state.phase.value})")
        return Decision(
            state=replace(state, phase=SignalingPhase.HAVE_LOCAL_OFFER),
            effects=(Effect.ATTACH_TRACK, Effect.SEND_OFFER),
        )

    if event is Event.RENEGOTIATE:
        if not state.has_remote_description:
            return _skip(state, "no remote description yet")
        if state.making_offer:
            return _skip(state, "offer already in flight")
        if state.phase is not SignalingPhase.STABLE:
            return _skip(state, f"not stable ({state.phase.value})")
        return Decision(
            state=replace(state, phase=SignalingPhase.HAVE_LOCAL_OFFER),
            effects=(Effect.SEND_OFFER,),
        )

    if event is Event.REMOTE_OFFER:
        if state.offer_collision and state.role is Role.IMPOLITE:
            return _skip(state, "offer collision, impolite side keeps its offer")
        return Decision(
            state=replace(
                state,
                phase=SignalingPhase.STABLE,
                making_offer=False,
                has_remote_description=True,
                candidates_released=True,
            ),
            effects=(
                Effect.ATTACH_TRACK,
                Effect.SET_REMOTE_DESCRIPTION,
                Effect.DRAIN_CANDIDATES,
                Effect.SEND_ANSWER,
            ),
        )

    if event is Event.REMOTE_ANSWER:
        if state.phase is not SignalingPhase.HAVE_LOCAL_OFFER:
            return _skip(state, f"stale answer ({state.phase.value})")
        return Decision(
            state=replace(
                state,
                phase=SignalingPhase.STABLE,
                has_remote_description=True,
                candidates_released=True,
            ),
            effects=(Effect.SET_REMOTE_DESCRIPTION, Effect.DRAIN_CANDIDATES),
        )

    if event is Event.REMOTE_CANDIDATE:
        if not state.candidates_released:
            return Decision(state=state, effects=(Effect.BUFFER_CANDIDATE,))
        return Decision(state=state, effects=(Effect.APPLY_CANDIDATE,))

    raise ValueError(f"Unknown negotiation event: {event!r}")
