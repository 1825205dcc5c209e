"""Tests for mesh formation and signal routing."""

import pytest

from conftest import FakeCapture, TransportFactory, fake_sdp
from mesh_rtc.errors import NegotiationFailed, SignalingDisconnected, UnknownPeerSignal
from mesh_rtc.media import LocalMediaController
from mesh_rtc.mesh import PLACEHOLDER_NAME, MeshTopologyManager
from mesh_rtc.peer import PeerConnectionState
from mesh_rtc.protocol import (
    Answer,
    Error,
    IceCandidate,
    Offer,
    PeerInfo,
    PeerJoined,
    PeerLeft,
    Roster,
    Signal,
)


class RecordingChannel:
    """Channel stub: records outgoing messages and replays a fixed inbound script."""

    def __init__(self, inbound=()):
        self.inbound = list(inbound)
        self.sent = []

    async def send(self, message):
        self.sent.append(message)

    async def __aiter__(self):
        for message in self.inbound:
            yield message


@pytest.fixture
def mesh_setup():
    factory = TransportFactory()
    media = LocalMediaController(FakeCapture())
    changes = []
    mesh = MeshTopologyManager(media, transport_factory=factory, on_change=lambda: changes.append(1))
    channel = RecordingChannel()
    mesh.channel = channel
    return mesh, media, factory, channel, changes


class TestMeshFormation:
    @pytest.mark.asyncio
    async def test_roster_creates_initiators(self, mesh_setup):
        mesh, _, factory, channel, _ = mesh_setup

        mesh.on_roster([PeerInfo("a", "Ada"), PeerInfo("b", "Bob"), PeerInfo("c", "Cy")])
        await mesh.drain()

        assert sorted(mesh.peers) == ["a", "b", "c"]
        assert all(peer.initiator for peer in mesh.peers.values())
        assert len(factory.created) == 3
        offers = [m for m in channel.sent if isinstance(m.payload, Offer)]
        assert sorted(m.to for m in offers) == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_empty_roster(self, mesh_setup):
        mesh, _, factory, _, _ = mesh_setup
        mesh.on_roster([])
        assert mesh.peers == {}
        assert factory.created == []

    @pytest.mark.asyncio
    async def test_peer_joined_creates_answerer(self, mesh_setup):
        mesh, _, _, channel, changes = mesh_setup

        mesh.on_peer_joined(PeerInfo("n", "Newcomer"))
        await mesh.drain()

        peer = mesh.peers["n"]
        assert not peer.initiator
        assert peer.display_name == "Newcomer"
        assert peer.state is PeerConnectionState.NEGOTIATING
        assert channel.sent == []
        assert changes

    @pytest.mark.asyncio
    async def test_roster_skips_known_peers(self, mesh_setup):
        mesh, _, factory, _, _ = mesh_setup
        mesh.on_peer_joined(PeerInfo("a", "Ada"))

        mesh.on_roster([PeerInfo("a", "Ada")])

        assert len(factory.created) == 1
        assert not mesh.peers["a"].initiator

    @pytest.mark.asyncio
    async def test_new_peers_get_current_local_tracks(self, mesh_setup):
        mesh, media, factory, _, _ = mesh_setup
        await media.enable(audio=True, video=True)

        mesh.on_roster([PeerInfo("a", "Ada")])

        assert factory.created[0].sending_kinds == ["audio", "video"]


class TestSignalRouting:
    @pytest.mark.asyncio
    async def test_offer_from_unknown_sender_creates_answerer(self, mesh_setup):
        mesh, _, _, channel, _ = mesh_setup

        assert mesh.on_signal("x", Offer(fake_sdp("audio"))) is None
        await mesh.drain()

        peer = mesh.peers["x"]
        assert not peer.initiator
        assert peer.display_name == PLACEHOLDER_NAME
        assert [m.payload for m in channel.sent if m.to == "x"] == [Answer(fake_sdp())]

    @pytest.mark.asyncio
    async def test_late_peer_joined_fills_in_name(self, mesh_setup):
        mesh, _, factory, _, _ = mesh_setup
        mesh.on_signal("x", Offer(fake_sdp()))

        mesh.on_peer_joined(PeerInfo("x", "Xena"))

        assert mesh.peers["x"].display_name == "Xena"
        assert len(factory.created) == 1

    @pytest.mark.asyncio
    async def test_non_offer_from_unknown_sender_is_dropped(self, mesh_setup):
        mesh, _, factory, _, _ = mesh_setup

        error = mesh.on_signal("ghost", IceCandidate("candidate:x", "0", 0))

        assert isinstance(error, UnknownPeerSignal)
        assert error.connection_id == "ghost"
        assert mesh.peers == {}
        assert factory.created == []

    @pytest.mark.asyncio
    async def test_signal_without_sender_is_dropped(self, mesh_setup):
        mesh, _, _, _, _ = mesh_setup
        assert isinstance(mesh.on_signal(None, Offer("v=0")), UnknownPeerSignal)
        assert mesh.peers == {}

    @pytest.mark.asyncio
    async def test_answer_routed_to_initiator(self, mesh_setup):
        mesh, _, _, _, _ = mesh_setup
        mesh.on_roster([PeerInfo("a", "Ada")])

        mesh.on_signal("a", Answer(fake_sdp("video")))
        await mesh.drain()

        assert mesh.peers["a"].state is PeerConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_send_without_channel_is_contained(self, mesh_setup):
        mesh, _, _, _, _ = mesh_setup
        mesh.channel = None

        mesh.on_roster([PeerInfo("a", "Ada")])
        await mesh.drain()

        assert mesh.peers["a"].state is PeerConnectionState.NEGOTIATING

    @pytest.mark.asyncio
    async def test_send_signal_requires_channel(self, mesh_setup):
        mesh, _, _, _, _ = mesh_setup
        mesh.channel = None
        with pytest.raises(SignalingDisconnected):
            await mesh._send_signal("a", Offer("v=0"))


class TestTeardown:
    @pytest.mark.asyncio
    async def test_peer_left_unknown_is_noop(self, mesh_setup):
        mesh, _, _, _, changes = mesh_setup
        await mesh.on_peer_left("nobody")
        assert mesh.peers == {}
        assert changes == []

    @pytest.mark.asyncio
    async def test_peer_left_closes_transport_once(self, mesh_setup):
        mesh, _, factory, _, _ = mesh_setup
        mesh.on_peer_joined(PeerInfo("a", "Ada"))
        mesh.on_peer_joined(PeerInfo("b", "Bob"))

        await mesh.on_peer_left("a")
        await mesh.on_peer_left("a")

        assert list(mesh.peers) == ["b"]
        assert factory.created[0].close_calls == 1
        assert factory.created[1].close_calls == 0

    @pytest.mark.asyncio
    async def test_failed_peer_removed_without_affecting_others(self, mesh_setup):
        mesh, _, factory, _, _ = mesh_setup
        mesh.on_roster([PeerInfo("a", "Ada"), PeerInfo("b", "Bob")])

        # An offer to an initiator is a protocol violation
        mesh.on_signal("a", Offer(fake_sdp()))
        await mesh.drain()

        assert list(mesh.peers) == ["b"]
        assert isinstance(mesh.failures["a"], NegotiationFailed)
        assert factory.created[0].close_calls == 1
        assert mesh.peers["b"].state is PeerConnectionState.NEGOTIATING

    @pytest.mark.asyncio
    async def test_close_all(self, mesh_setup):
        mesh, _, factory, _, _ = mesh_setup
        mesh.on_roster([PeerInfo("a", "Ada"), PeerInfo("b", "Bob")])

        await mesh.close_all()

        assert mesh.peers == {}
        assert [t.close_calls for t in factory.created] == [1, 1]
        assert mesh.failures == {}


class TestLocalTrackFanOut:
    @pytest.mark.asyncio
    async def test_enable_and_disable_reach_every_peer(self, mesh_setup):
        mesh, media, factory, _, _ = mesh_setup
        mesh.on_roster([PeerInfo("a", "Ada"), PeerInfo("b", "Bob")])
        for connection_id in ("a", "b"):
            mesh.on_signal(connection_id, Answer(fake_sdp("audio")))
        await mesh.drain()

        await media.enable_video()
        await mesh.drain()
        assert [t.sending_kinds for t in factory.created] == [["video"], ["video"]]

        media.disable_video()
        await mesh.drain()
        assert [t.sending_kinds for t in factory.created] == [[], []]


class TestDispatch:
    @pytest.mark.asyncio
    async def test_run_consumes_channel(self, mesh_setup):
        mesh, _, _, _, _ = mesh_setup
        channel = RecordingChannel(
            [
                Roster((PeerInfo("a", "Ada"),)),
                PeerJoined(PeerInfo("b", "Bob")),
                Signal(Answer(fake_sdp("audio")), sender="a"),
                Error("bad frame"),
                PeerLeft("b"),
            ]
        )

        await mesh.run(channel)
        await mesh.drain()

        assert mesh.channel is channel
        assert list(mesh.peers) == ["a"]
        assert mesh.peers["a"].state is PeerConnectionState.CONNECTED
        assert [m.to for m in channel.sent] == ["a"]
