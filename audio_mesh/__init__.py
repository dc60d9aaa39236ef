"""Peer-to-peer audio mesh with perfect negotiation over a relay server."""

from audio_mesh.client import AudioMeshClient
from audio_mesh.engine import NegotiationEngine
from audio_mesh.media import MuteGate
from audio_mesh.mic_status import MicStatusBroadcaster
from audio_mesh.session import PeerSessionTable, Role, Session, SignalingPhase
from audio_mesh.signaling import SignalingChannel, SignalingError

__version__ = "0.1.0"

__all__ = [
    "AudioMeshClient",
    "MicStatusBroadcaster",
    "MuteGate",
    "NegotiationEngine",
    "PeerSessionTable",
    "Role",
    "Session",
    "SignalingChannel",
    "SignalingError",
    "SignalingPhase",
]
