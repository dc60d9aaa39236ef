"""Tests for the aiortc transport adapter."""

import asyncio
from unittest.mock import MagicMock

import pytest
from aiortc import RTCConfiguration
from aiortc.mediastreams import AudioStreamTrack

from audio_mesh.engine import NegotiationEngine
from audio_mesh.media import MuteGate
from audio_mesh.session import PeerSessionTable
from audio_mesh.transport import (
    AiortcTransport,
    TransportError,
    aiortc_transport_factory,
    parse_candidate,
)


class TestParseCandidate:
    def test_strips_prefix_and_keeps_media_line(self):
        candidate = parse_candidate(
            {
                "candidate": "candidate:842163049 1 udp 1677729535 203.0.113.7 61234 typ srflx raddr 10.0.0.2 rport 61234",
                "sdpMid": "0",
                "sdpMLineIndex": 0,
            }
        )

        assert candidate.ip == "203.0.113.7"
        assert candidate.port == 61234
        assert candidate.type == "srflx"
        assert candidate.sdpMid == "0"
        assert candidate.sdpMLineIndex == 0

    def test_accepts_line_without_prefix(self):
        candidate = parse_candidate({"candidate": "1 1 udp 2122260223 10.0.0.2 5000 typ host"})
        assert candidate.type == "host"

    @pytest.mark.parametrize("payload", [{}, {"candidate": ""}, {"candidate": "candidate:"}])
    def test_empty_candidate_rejected(self, payload):
        with pytest.raises(ValueError):
            parse_candidate(payload)


class TestAiortcTransport:
    @pytest.mark.asyncio
    async def test_offer_has_single_audio_line(self):
        transport = AiortcTransport()
        transport.add_transceiver("audio", "sendrecv")

        offer = await transport.create_offer()

        assert offer["type"] == "offer"
        assert offer["sdp"].count("m=audio") == 1
        assert transport.signaling_state == "stable"
        assert transport.remote_description is None
        await transport.close()

    @pytest.mark.asyncio
    async def test_sender_reports_original_track(self):
        transport = AiortcTransport()
        sender = transport.add_transceiver("audio", "sendrecv")
        track = AudioStreamTrack()

        await sender.replace_track(track)

        assert sender.track is track
        await transport.close()
        track.stop()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        transport = AiortcTransport()
        await transport.close()
        await transport.close()
        assert transport.signaling_state == "closed"

    @pytest.mark.asyncio
    async def test_rollback_requires_engine_support(self):
        transport = AiortcTransport()
        pc = transport._pc
        transport._pc = MagicMock(spec=[])
        try:
            with pytest.raises(TransportError):
                transport._rollback_local_offer()
        finally:
            transport._pc = pc
            await transport.close()

    @pytest.mark.asyncio
    async def test_factory_shares_one_relay(self):
        create = aiortc_transport_factory()
        first, second = create("bob"), create("carl")

        assert first is not second
        assert first._relay is second._relay
        await first.close()
        await second.close()


class TestAiortcGlare:
    """Two engines on real aiortc peer connections offering at the same time."""

    @staticmethod
    def make_mesh():
        engines = {}
        sent = {"alice": [], "bob": []}
        tasks = []

        def make_send(sender):
            async def send(message):
                sent[sender].append(message["type"])
                target = engines[message["to"]]
                if message["type"] == "offer":
                    coro = target.handle_offer(sender, message["sdp"])
                elif message["type"] == "answer":
                    coro = target.handle_answer(sender, message["sdp"])
                else:
                    coro = target.handle_ice_candidate(sender, message["candidate"])
                tasks.append(asyncio.create_task(coro))
                return True

            return send

        for local_id in ("alice", "bob"):
            engine = NegotiationEngine(
                sessions=PeerSessionTable(
                    aiortc_transport_factory(RTCConfiguration(iceServers=[]))
                ),
                send=make_send(local_id),
                gate=MuteGate(),
            )
            engine.set_local_id(local_id)
            engines[local_id] = engine
        return engines, sent, tasks

    @pytest.mark.asyncio
    async def test_simultaneous_offers_settle_stable(self):
        engines, sent, tasks = self.make_mesh()
        alice, bob = engines["alice"], engines["bob"]

        async def negotiate():
            await asyncio.gather(alice.initiate("bob"), bob.initiate("alice"))
            while tasks:
                pending = list(tasks)
                tasks.clear()
                await asyncio.gather(*pending)

        try:
            await asyncio.wait_for(negotiate(), 30)

            for engine, remote_id in ((alice, "bob"), (bob, "alice")):
                transport = engine.sessions.get(remote_id).transport
                assert transport.signaling_state == "stable"
                assert transport.remote_description is not None
                assert transport.local_description is not None

            # The polite side (alice) rolls back its own offer and answers.
            assert alice.sessions.get("bob").transport.remote_description["type"] == "offer"
            assert bob.sessions.get("alice").transport.remote_description["type"] == "answer"
            assert sent["alice"].count("answer") == 1
            assert "answer" not in sent["bob"]
        finally:
            await alice.close()
            await bob.close()
