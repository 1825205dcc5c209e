"""Shared fixtures: fake media transport, fake capture and an in-memory signaling channel.

The fakes speak the same API as the real collaborators (aiortc RTCPeerConnection,
the capture primitive, SignalingChannel) so the code under test runs unchanged.
Session descriptions produced by FakeTransport are JSON listing the media kinds
the side is sending; applying a remote description emits one inbound ``track``
event per newly seen kind, the way aiortc does for each receiving transceiver.
"""

import asyncio
import json
from typing import List

import pytest
from aiortc import AudioStreamTrack, RTCSessionDescription, VideoStreamTrack

from mesh_rtc.config import Config
from mesh_rtc.errors import SignalingDisconnected
from mesh_rtc.protocol import Join, decode_message, encode_message
from mesh_rtc.server import RoomRegistry

CANDIDATE_1 = "candidate:842163049 1 udp 1677729535 192.168.1.2 53302 typ srflx raddr 0.0.0.0 rport 0"
CANDIDATE_2 = "candidate:1467250027 1 udp 2122260223 192.168.1.2 46243 typ host"


def fake_sdp(*kinds: str) -> str:
    return json.dumps({"kinds": sorted(kinds)})


# ── Media transport ───────────────────────────────────────────────────────────


class FakeSender:
    def __init__(self, track=None):
        self.track = track

    def replaceTrack(self, track):
        self.track = track


class FakeReceiver:
    def __init__(self):
        self.track = None


class FakeTransceiver:
    def __init__(self, kind, direction):
        self.kind = kind
        self.direction = direction
        self.currentDirection = None
        self.sender = FakeSender()
        self.receiver = FakeReceiver()

    @property
    def sending(self):
        return self.sender.track is not None and "send" in self.direction


def _combine(send, recv):
    return {
        (True, True): "sendrecv",
        (True, False): "sendonly",
        (False, True): "recvonly",
        (False, False): "inactive",
    }[(send, recv)]


class FakeTransport:
    """In-memory stand-in for RTCPeerConnection.

    Transceivers follow aiortc's rules: addTrack reuses a same-kind
    transceiver with no track, and currentDirection is settled once the
    answer is applied on either side.
    """

    def __init__(self):
        self.handlers = {}
        self.transceivers: List[FakeTransceiver] = []
        self.localDescription = None
        self.remoteDescription = None
        self.iceConnectionState = "new"
        self.remote_tracks = {}
        self.remote_kinds = []
        self.candidates = []
        # Ordered log of remote descriptions and applied candidates
        self.events = []
        self.close_calls = 0

    def on(self, event, handler):
        self.handlers.setdefault(event, []).append(handler)
        return handler

    async def emit(self, event, *args):
        for handler in list(self.handlers.get(event, [])):
            result = handler(*args)
            if asyncio.iscoroutine(result):
                await result

    async def set_ice_state(self, state):
        self.iceConnectionState = state
        await self.emit("iceconnectionstatechange")

    @property
    def senders(self):
        return [t.sender for t in self.transceivers if t.sender.track is not None]

    @property
    def sending_kinds(self):
        return sorted({t.kind for t in self.transceivers if t.sending})

    def getTransceivers(self):
        return list(self.transceivers)

    def addTrack(self, track):
        for transceiver in self.transceivers:
            if transceiver.kind == track.kind and transceiver.sender.track is None:
                transceiver.sender.replaceTrack(track)
                recv = "recv" in transceiver.direction
                transceiver.direction = _combine(True, recv)
                return transceiver.sender
        transceiver = self.addTransceiver(track.kind, direction="sendrecv")
        transceiver.sender.replaceTrack(track)
        return transceiver.sender

    def addTransceiver(self, kind, direction="sendrecv"):
        transceiver = FakeTransceiver(kind, direction)
        self.transceivers.append(transceiver)
        return transceiver

    async def createOffer(self):
        return RTCSessionDescription(sdp=fake_sdp(*self.sending_kinds), type="offer")

    async def createAnswer(self):
        return RTCSessionDescription(sdp=fake_sdp(*self.sending_kinds), type="answer")

    async def setLocalDescription(self, description):
        self.localDescription = description
        if description.type == "answer":
            self._settle()

    async def setRemoteDescription(self, description):
        self.remoteDescription = description
        self.events.append(("remote_description", description.type))
        try:
            kinds = json.loads(description.sdp).get("kinds", [])
        except ValueError:
            kinds = []
        self.remote_kinds = list(kinds)
        for kind in kinds:
            transceiver = next((t for t in self.transceivers if t.kind == kind), None)
            if transceiver is None:
                transceiver = self.addTransceiver(kind, direction="recvonly")
            if transceiver.receiver.track is None:
                track = AudioStreamTrack() if kind == "audio" else VideoStreamTrack()
                transceiver.receiver.track = track
                self.remote_tracks[kind] = track
                await self.emit("track", track)
        if description.type == "answer":
            self._settle()

    def _settle(self):
        for transceiver in self.transceivers:
            recv = transceiver.kind in self.remote_kinds and "recv" in transceiver.direction
            transceiver.currentDirection = _combine(transceiver.sending, recv)

    async def addIceCandidate(self, candidate):
        self.candidates.append(candidate)
        self.events.append(("candidate", candidate.foundation))

    async def close(self):
        self.close_calls += 1
        self.iceConnectionState = "closed"
        for track in self.remote_tracks.values():
            track.stop()


class TransportFactory:
    """Callable transport factory that remembers every transport it made."""

    def __init__(self):
        self.created: List[FakeTransport] = []

    def __call__(self):
        transport = FakeTransport()
        self.created.append(transport)
        return transport


# ── Capture ───────────────────────────────────────────────────────────────────


class FakeCapture:
    """Capture primitive returning synthetic aiortc tracks.

    Args:
        error: Exception raised by every capture call, if set.
        extra_kinds: Kinds returned on top of what was asked for.
        gate: Event every capture waits on before returning.
    """

    def __init__(self, error=None, extra_kinds=(), gate=None):
        self.error = error
        self.extra_kinds = tuple(extra_kinds)
        self.gate = gate
        self.calls = []
        self.tracks = []

    async def capture(self, constraints):
        self.calls.append(constraints)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        tracks = []
        for kind in constraints.kinds + self.extra_kinds:
            tracks.append(AudioStreamTrack() if kind == "audio" else VideoStreamTrack())
        self.tracks.extend(tracks)
        return tracks


# ── Signaling ─────────────────────────────────────────────────────────────────

_DROPPED = object()


class LoopbackSocket:
    """Server-side end of a LoopbackChannel, as seen by RoomRegistry."""

    def __init__(self):
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.open = True

    async def send(self, frame):
        if self.open:
            self.inbox.put_nowait(frame)


class LoopbackChannel:
    """SignalingChannel replacement talking directly to a RoomRegistry."""

    def __init__(self, registry: RoomRegistry, fail_connect: bool = False):
        self.registry = registry
        self.fail_connect = fail_connect
        self.socket = None
        self.connection_id = None
        self.sent = []

    async def connect(self, room_id, identity):
        if self.fail_connect:
            raise SignalingDisconnected("Could not reach signaling server loopback")
        self.socket = LoopbackSocket()
        self.connection_id = self.registry.register(self.socket)
        await self.send(Join(room_id, identity.user_id, identity.display_name))

    async def send(self, message):
        if self.socket is None:
            raise SignalingDisconnected("Signaling channel is not connected")
        self.sent.append(message)
        await self.registry.handle_message(self.connection_id, encode_message(message))

    def __aiter__(self):
        return self._messages(self.socket)

    async def _messages(self, socket):
        if socket is None:
            raise SignalingDisconnected("Signaling channel is not connected")
        while True:
            frame = await socket.inbox.get()
            if frame is None:
                return
            if frame is _DROPPED:
                raise SignalingDisconnected("Signaling channel closed: connection lost")
            yield decode_message(frame)

    async def close(self):
        socket, self.socket = self.socket, None
        if socket is None:
            return
        socket.open = False
        await self.registry.unregister(self.connection_id)
        socket.inbox.put_nowait(None)

    async def drop(self):
        """Simulate the network going away under the channel."""
        socket, self.socket = self.socket, None
        socket.open = False
        await self.registry.unregister(self.connection_id)
        socket.inbox.put_nowait(_DROPPED)


# ── Fixtures ──────────────────────────────────────────────────────────────────


@pytest.fixture
def transport_factory():
    return TransportFactory()


@pytest.fixture
def registry():
    return RoomRegistry()


@pytest.fixture
def fast_config():
    """Config with short timers and no file or environment lookups."""
    config = Config()
    config.retry_delay = 0.01
    config.max_reconnect_attempts = 2
    config.reconnect_timeout = 0.1
    return config


@pytest.fixture
def eventually():
    """Poll a predicate until it holds, failing after ``timeout`` seconds."""

    async def wait(predicate, timeout=2.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.01)

    return wait
