"""Signaling message protocol for audio-mesh.

This module defines the frames exchanged with the relay (signaling) server.
The relay only forwards these frames; it never inspects or touches media.

Frame Format
------------

Every frame is a single JSON object with a ``type`` field. Frames addressed to
one participant carry ``to`` when sent and arrive with ``from`` stamped by the
relay.

Message Types
-------------

**welcome** (inbound only, once per connection)
    Fields: ``id`` (our identifier), ``users`` (identifiers already present)
    Example: ``{"type": "welcome", "id": "bob", "users": ["alice"]}``

**user-connected** (inbound)
    Fields: ``id``
    Example: ``{"type": "user-connected", "id": "carl"}``

**user-disconnected** (inbound)
    Fields: ``id``
    Example: ``{"type": "user-disconnected", "id": "carl"}``

**offer** / **answer** (bidirectional)
    Fields: ``to`` or ``from``, ``sdp`` (``{"type": ..., "sdp": ...}``)
    Example: ``{"type": "offer", "to": "alice", "sdp": {"type": "offer", "sdp": "v=0..."}}``

**ice-candidate** (bidirectional)
    Fields: ``to`` or ``from``, ``candidate``
    (``{"candidate": ..., "sdpMid": ..., "sdpMLineIndex": ...}``)

**mic-status** (bidirectional)
    Fields: ``status`` (bool); inbound frames also carry the sender ``id``.
    The relay fans these out to every other participant.

Message Flow Example
--------------------

1. Relay → bob: welcome {id: bob, users: [alice]}
2. Relay → alice: user-connected {id: bob}
3. bob → alice: offer; alice → bob: offer (collision)
4. alice is polite ("alice" < "bob"): she yields and answers bob's offer
5. bob is impolite: he ignores alice's offer and applies her answer
6. Both sides: ice-candidate frames, buffered until a remote description exists
"""

import json
from typing import Any, Dict, Optional

# Session setup
MSG_WELCOME = "welcome"
MSG_USER_CONNECTED = "user-connected"
MSG_USER_DISCONNECTED = "user-disconnected"

# Negotiation
MSG_OFFER = "offer"
MSG_ANSWER = "answer"
MSG_ICE_CANDIDATE = "ice-candidate"

# Presence
MSG_MIC_STATUS = "mic-status"


class ProtocolError(ValueError):
    """Raised when a signaling frame cannot be decoded."""


def encode_frame(msg_type: str, **fields: Any) -> str:
    """Encode a signaling frame.

    Args:
        msg_type: One of the ``MSG_*`` constants.
        **fields: Additional frame fields.

    Returns:
        JSON text ready to be sent over the signaling socket.

    Examples:
        >>> encode_frame(MSG_MIC_STATUS, status=True)
        '{"type": "mic-status", "status": true}'
    """
    return json.dumps({"type": msg_type, **fields})


def decode_frame(raw: Any) -> Dict[str, Any]:
    """Decode and minimally validate an inbound signaling frame.

    Args:
        raw: Text (or bytes) received from the signaling socket.

    Returns:
        The frame as a dictionary with a string ``type``.

    Raises:
        ProtocolError: If the frame is not a JSON object with a string type.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Frame is not valid UTF-8: {e}") from e

    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Frame is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ProtocolError(f"Frame is not a JSON object: {type(data).__name__}")

    msg_type = data.get("type")
    if not isinstance(msg_type, str) or not msg_type:
        raise ProtocolError("Frame is missing a string 'type' field")

    return data


def sender_of(data: Dict[str, Any]) -> Optional[str]:
    """Return the participant a relayed frame came from, if present."""
    sender = data.get("from") or data.get("id")
    if isinstance(sender, str) and sender:
        return sender
    return None


def description_to_payload(description: Any) -> Dict[str, str]:
    """Convert an ``RTCSessionDescription``-like object to its wire form."""
    return {"type": description.type, "sdp": description.sdp}


def description_from_payload(payload: Any, default_type: str) -> Dict[str, str]:
    """Normalise an inbound ``sdp`` field to ``{"type": ..., "sdp": ...}``.

    Browsers send the whole description object; some clients send the bare
    SDP text. ``default_type`` fills in the type for the latter.

    Raises:
        ProtocolError: If no SDP text can be found.
    """
    if isinstance(payload, str) and payload:
        return {"type": default_type, "sdp": payload}
    if isinstance(payload, dict) and isinstance(payload.get("sdp"), str):
        return {"type": payload.get("type") or default_type, "sdp": payload["sdp"]}
    raise ProtocolError(f"Missing SDP in {default_type} frame")

