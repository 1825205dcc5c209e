"""Peer-to-peer audio/video mesh conferencing for mesh-rtc.

This package provides:
- session: CallSession, the facade for joining a room and toggling media
- mesh: MeshTopologyManager, one peer connection per remote participant
- peer: PeerConnection, the per-participant negotiation state machine
- media: LocalMediaController, local capture and track ownership
- signaling / protocol: the rendezvous channel and its wire format
- server: the reference rendezvous server
"""

from mesh_rtc.errors import (
    MeshRTCError,
    SignalingDisconnected,
    NegotiationFailed,
    IceFailed,
    UnknownPeerSignal,
    MediaCaptureError,
    PermissionDenied,
    DeviceNotFound,
    DeviceBusy,
    ConstraintUnsatisfiable,
    UnknownCaptureError,
)
from mesh_rtc.media import LocalMediaController, MediaConstraints, MediaStream
from mesh_rtc.mesh import MeshTopologyManager
from mesh_rtc.peer import PeerConnection, PeerConnectionState
from mesh_rtc.protocol import Identity, PeerInfo
from mesh_rtc.session import CallSession, CallSnapshot, PeerSnapshot

__all__ = [
    # Facade
    "CallSession",
    "CallSnapshot",
    "PeerSnapshot",
    "Identity",
    "PeerInfo",
    # Components
    "MeshTopologyManager",
    "PeerConnection",
    "PeerConnectionState",
    "LocalMediaController",
    "MediaConstraints",
    "MediaStream",
    # Errors
    "MeshRTCError",
    "SignalingDisconnected",
    "NegotiationFailed",
    "IceFailed",
    "UnknownPeerSignal",
    "MediaCaptureError",
    "PermissionDenied",
    "DeviceNotFound",
    "DeviceBusy",
    "ConstraintUnsatisfiable",
    "UnknownCaptureError",
]
