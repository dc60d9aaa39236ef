"""Tests for the pure perfect-negotiation decisions."""

import pytest

from audio_mesh.negotiation import Effect, Event, NegotiationState, decide
from audio_mesh.session import Role, SignalingPhase


def state(role=Role.POLITE, **kwargs):
    return NegotiationState(role=role, **kwargs)


class TestInitiate:
    def test_stable_idle_session_sends_offer(self):
        decision = decide(state(), Event.INITIATE)
        assert decision.effects == (Effect.ATTACH_TRACK, Effect.SEND_OFFER)
        assert decision.state.phase is SignalingPhase.HAVE_LOCAL_OFFER

    def test_skipped_while_making_offer(self):
        decision = decide(state(making_offer=True), Event.INITIATE)
        assert decision.skipped
        assert "in progress" in decision.reason

    @pytest.mark.parametrize(
        "phase", [SignalingPhase.HAVE_LOCAL_OFFER, SignalingPhase.HAVE_REMOTE_OFFER]
    )
    def test_skipped_when_not_stable(self, phase):
        assert decide(state(phase=phase), Event.INITIATE).skipped

    def test_closed_session_does_nothing(self):
        decision = decide(state(phase=SignalingPhase.CLOSED), Event.INITIATE)
        assert decision.skipped
        assert decision.reason == "session closed"


class TestRemoteOffer:
    def test_no_collision_is_answered(self):
        decision = decide(state(role=Role.IMPOLITE), Event.REMOTE_OFFER)
        assert decision.effects == (
            Effect.ATTACH_TRACK,
            Effect.SET_REMOTE_DESCRIPTION,
            Effect.DRAIN_CANDIDATES,
            Effect.SEND_ANSWER,
        )
        assert decision.state.phase is SignalingPhase.STABLE
        assert decision.state.has_remote_description

    def test_impolite_ignores_colliding_offer_while_making_offer(self):
        decision = decide(state(role=Role.IMPOLITE, making_offer=True), Event.REMOTE_OFFER)
        assert decision.skipped
        assert "collision" in decision.reason

    def test_impolite_ignores_colliding_offer_in_have_local_offer(self):
        decision = decide(
            state(role=Role.IMPOLITE, phase=SignalingPhase.HAVE_LOCAL_OFFER),
            Event.REMOTE_OFFER,
        )
        assert decision.skipped

    def test_polite_yields_on_collision(self):
        decision = decide(
            state(role=Role.POLITE, making_offer=True, phase=SignalingPhase.HAVE_LOCAL_OFFER),
            Event.REMOTE_OFFER,
        )
        assert Effect.SEND_ANSWER in decision.effects
        assert decision.state.making_offer is False


class TestRemoteAnswer:
    def test_accepted_in_have_local_offer(self):
        decision = decide(state(phase=SignalingPhase.HAVE_LOCAL_OFFER), Event.REMOTE_ANSWER)
        assert decision.effects == (Effect.SET_REMOTE_DESCRIPTION, Effect.DRAIN_CANDIDATES)
        assert decision.state.phase is SignalingPhase.STABLE

    @pytest.mark.parametrize(
        "phase", [SignalingPhase.STABLE, SignalingPhase.HAVE_REMOTE_OFFER]
    )
    def test_stale_answer_discarded_without_state_change(self, phase):
        before = state(phase=phase, has_remote_description=True)
        decision = decide(before, Event.REMOTE_ANSWER)
        assert decision.skipped
        assert decision.state == before


class TestRemoteCandidate:
    def test_buffered_before_remote_description(self):
        decision = decide(state(), Event.REMOTE_CANDIDATE)
        assert decision.effects == (Effect.BUFFER_CANDIDATE,)

    def test_applied_after_remote_description(self):
        decision = decide(
            state(has_remote_description=True, candidates_released=True),
            Event.REMOTE_CANDIDATE,
        )
        assert decision.effects == (Effect.APPLY_CANDIDATE,)


class TestRenegotiate:
    def test_established_stable_session_sends_offer(self):
        decision = decide(state(has_remote_description=True), Event.RENEGOTIATE)
        assert decision.effects == (Effect.SEND_OFFER,)

    def test_skipped_without_remote_description(self):
        assert decide(state(), Event.RENEGOTIATE).skipped

    def test_skipped_while_making_offer(self):
        decision = decide(
            state(has_remote_description=True, making_offer=True), Event.RENEGOTIATE
        )
        assert decision.skipped

    def test_skipped_when_not_stable(self):
        decision = decide(
            state(has_remote_description=True, phase=SignalingPhase.HAVE_REMOTE_OFFER),
            Event.RENEGOTIATE,
        )
        assert decision.skipped
