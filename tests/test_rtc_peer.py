"""Tests for the command-line room entry point."""

import logging
from unittest import mock

from audio_mesh import rtc_peer


class TestRunPeer:
    def test_interrupt_logs_through_module_logger(self, caplog):
        with mock.patch.object(rtc_peer, "join_room", side_effect=KeyboardInterrupt):
            with caplog.at_level(logging.INFO, logger="audio_mesh.rtc_peer"):
                rtc_peer.run_peer(server="ws://relay")

        messages = [(r.name, r.getMessage()) for r in caplog.records]
        assert ("audio_mesh.rtc_peer", "Interrupted by user. Shutting down...") in messages
        assert ("audio_mesh.rtc_peer", "Peer exiting...") in messages
        assert all(r.name != "root" for r in caplog.records)
