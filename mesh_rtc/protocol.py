"""Signaling protocol definitions for mesh-rtc.

This module defines the control messages exchanged between call participants and
the rendezvous (signaling) server. The signaling server never sees media; it only
tracks room membership and relays negotiation payloads between participants.

Wire Format
-----------

Every frame is a JSON object with a ``type`` field.

### Client → Server

**join**
    Purpose: Enter a room. The server answers with exactly one ``roster``.
    Format: ``{"type": "join", "room_id": "...", "user_id": "...", "display_name": "..."}``

**leave**
    Purpose: Leave the current room. Other members receive ``peer_left``.
    Format: ``{"type": "leave", "room_id": "..."}``

**signal**
    Purpose: Deliver a negotiation payload to one other member of the room.
    Format: ``{"type": "signal", "to": "<connection_id>", "payload": {...}}``

### Server → Client

**roster**
    Sent once, immediately after ``join``. Lists every member already present.
    Format: ``{"type": "roster", "peers": [{"connection_id": "...", "display_name": "..."}]}``

**peer_joined**
    Format: ``{"type": "peer_joined", "connection_id": "...", "display_name": "..."}``

**peer_left**
    Format: ``{"type": "peer_left", "connection_id": "..."}``

**signal**
    Relayed verbatim from another member's ``signal``, stamped with the sender.
    Format: ``{"type": "signal", "from": "<connection_id>", "payload": {...}}``

**error**
    Format: ``{"type": "error", "reason": "..."}``

### Signal Payloads

Opaque to the signaling server; only the peer connection interprets them.

- ``{"type": "offer", "sdp": "..."}``
- ``{"type": "answer", "sdp": "..."}``
- ``{"type": "candidate", "candidate": "candidate:...", "sdpMid": "0", "sdpMLineIndex": 0}``
- ``{"type": "renegotiate"}``: asks the initiating side of a pair to send a
  fresh offer after the answering side changed its outgoing tracks.

Message Flow Example
--------------------

1. A → Server: join(R1)            Server → A: roster([])
2. B → Server: join(R1)            Server → B: roster([A]); Server → A: peer_joined(B)
3. B → Server: signal(to=A, offer) Server → A: signal(from=B, offer)
4. A → Server: signal(to=B, answer)
5. Both sides trickle ``candidate`` payloads until media flows.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, Union

from mesh_rtc.errors import ProtocolError

# Client -> Server message types
MSG_JOIN = "join"
MSG_LEAVE = "leave"

# Server -> Client message types
MSG_ROSTER = "roster"
MSG_PEER_JOINED = "peer_joined"
MSG_PEER_LEFT = "peer_left"
MSG_ERROR = "error"

# Both directions
MSG_SIGNAL = "signal"

# Signal payload types
PAYLOAD_OFFER = "offer"
PAYLOAD_ANSWER = "answer"
PAYLOAD_CANDIDATE = "candidate"
PAYLOAD_RENEGOTIATE = "renegotiate"


@dataclass(frozen=True)
class Identity:
    """Local participant identity, supplied by the authentication layer.

    Attributes:
        user_id: Opaque user identifier.
        display_name: Name shown to other participants.
    """

    user_id: str
    display_name: str


@dataclass(frozen=True)
class PeerInfo:
    """A room member as announced by the signaling server."""

    connection_id: str
    display_name: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"connection_id": self.connection_id, "display_name": self.display_name}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PeerInfo":
        connection_id = data.get("connection_id")
        if not connection_id:
            raise ProtocolError(f"Peer entry missing connection_id: {data}")
        return cls(connection_id=str(connection_id), display_name=data.get("display_name") or "")


# =============================================================================
# Signal payloads
# =============================================================================


@dataclass(frozen=True)
class Offer:
    sdp: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": PAYLOAD_OFFER, "sdp": self.sdp}


@dataclass(frozen=True)
class Answer:
    sdp: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": PAYLOAD_ANSWER, "sdp": self.sdp}


@dataclass(frozen=True)
class IceCandidate:
    """A trickled ICE candidate in browser ``RTCIceCandidateInit`` shape."""

    candidate: str
    sdp_mid: Optional[str] = None
    sdp_mline_index: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": PAYLOAD_CANDIDATE,
            "candidate": self.candidate,
            "sdpMid": self.sdp_mid,
            "sdpMLineIndex": self.sdp_mline_index,
        }


@dataclass(frozen=True)
class RenegotiateRequest:
    def to_dict(self) -> Dict[str, Any]:
        return {"type": PAYLOAD_RENEGOTIATE}


Payload = Union[Offer, Answer, IceCandidate, RenegotiateRequest]


def decode_payload(data: Any) -> Payload:
    """Build a payload object from its JSON dictionary.

    Args:
        data: Decoded ``payload`` field of a signal frame.

    Returns:
        The matching payload dataclass.

    Raises:
        ProtocolError: If the payload is not a known variant.
    """
    if not isinstance(data, dict):
        raise ProtocolError(f"Signal payload must be an object, got {type(data).__name__}")

    payload_type = data.get("type")
    if payload_type in (PAYLOAD_OFFER, PAYLOAD_ANSWER):
        sdp = data.get("sdp")
        if not isinstance(sdp, str):
            raise ProtocolError(f"{payload_type} payload missing sdp")
        return Offer(sdp) if payload_type == PAYLOAD_OFFER else Answer(sdp)
    if payload_type == PAYLOAD_CANDIDATE or (payload_type is None and "candidate" in data):
        # Browsers send bare RTCIceCandidateInit objects without a type.
        candidate = data.get("candidate")
        if not isinstance(candidate, str):
            raise ProtocolError("candidate payload missing candidate string")
        mline_index = data.get("sdpMLineIndex")
        return IceCandidate(
            candidate=candidate,
            sdp_mid=data.get("sdpMid"),
            sdp_mline_index=int(mline_index) if mline_index is not None else None,
        )
    if payload_type == PAYLOAD_RENEGOTIATE:
        return RenegotiateRequest()
    raise ProtocolError(f"Unknown signal payload type: {payload_type}")


# =============================================================================
# Signaling messages
# =============================================================================


@dataclass(frozen=True)
class Join:
    room_id: str
    user_id: str = ""
    display_name: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": MSG_JOIN,
            "room_id": self.room_id,
            "user_id": self.user_id,
            "display_name": self.display_name,
        }


@dataclass(frozen=True)
class Leave:
    room_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": MSG_LEAVE, "room_id": self.room_id}


@dataclass(frozen=True)
class Roster:
    peers: Tuple[PeerInfo, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": MSG_ROSTER, "peers": [peer.to_dict() for peer in self.peers]}


@dataclass(frozen=True)
class PeerJoined:
    peer: PeerInfo

    def to_dict(self) -> Dict[str, Any]:
        return {"type": MSG_PEER_JOINED, **self.peer.to_dict()}


@dataclass(frozen=True)
class PeerLeft:
    connection_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": MSG_PEER_LEFT, "connection_id": self.connection_id}


@dataclass(frozen=True)
class Signal:
    """A negotiation payload addressed to (``to``) or relayed from (``sender``) a peer."""

    payload: Payload
    to: Optional[str] = None
    sender: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": MSG_SIGNAL, "payload": self.payload.to_dict()}
        if self.to is not None:
            data["to"] = self.to
        if self.sender is not None:
            data["from"] = self.sender
        return data


@dataclass(frozen=True)
class Error:
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": MSG_ERROR, "reason": self.reason}


SignalingMessage = Union[Join, Leave, Roster, PeerJoined, PeerLeft, Signal, Error]


def encode_message(message: SignalingMessage) -> str:
    """Serialize a signaling message to its JSON wire form.

    Examples:
        >>> encode_message(Leave("R1"))
        '{"type": "leave", "room_id": "R1"}'
    """
    return json.dumps(message.to_dict())


def decode_message(raw: Union[str, bytes]) -> SignalingMessage:
    """Parse a JSON frame into a signaling message.

    Args:
        raw: Text (or UTF-8 bytes) frame received from the transport.

    Returns:
        The matching message dataclass.

    Raises:
        ProtocolError: If the frame is not JSON or not a known message.

    Examples:
        >>> decode_message('{"type": "peer_left", "connection_id": "abc"}')
        PeerLeft(connection_id='abc')
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(f"Invalid JSON frame: {e}") from e

    if not isinstance(data, dict):
        raise ProtocolError("Signaling frame must be a JSON object")

    msg_type = data.get("type")

    if msg_type == MSG_JOIN:
        room_id = data.get("room_id")
        if not room_id:
            raise ProtocolError("join missing room_id")
        return Join(
            room_id=room_id,
            user_id=data.get("user_id") or "",
            display_name=data.get("display_name") or "",
        )

    if msg_type == MSG_LEAVE:
        return Leave(room_id=data.get("room_id") or "")

    if msg_type == MSG_ROSTER:
        peers = data.get("peers") or []
        if not isinstance(peers, list):
            raise ProtocolError("roster peers must be a list")
        return Roster(peers=tuple(PeerInfo.from_dict(peer) for peer in peers))

    if msg_type == MSG_PEER_JOINED:
        return PeerJoined(peer=PeerInfo.from_dict(data))

    if msg_type == MSG_PEER_LEFT:
        connection_id = data.get("connection_id")
        if not connection_id:
            raise ProtocolError("peer_left missing connection_id")
        return PeerLeft(connection_id=connection_id)

    if msg_type == MSG_SIGNAL:
        return Signal(
            payload=decode_payload(data.get("payload")),
            to=data.get("to"),
            sender=data.get("from"),
        )

    if msg_type == MSG_ERROR:
        return Error(reason=data.get("reason") or "")

    raise ProtocolError(f"Unknown message type: {msg_type}")
