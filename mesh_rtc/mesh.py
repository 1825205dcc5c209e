"""Mesh topology manager.

Keeps exactly one :class:`PeerConnection` per remote participant in the room and
attaches every local track to each of them.

Initiator rule: the participant that joins later initiates toward everyone
already present. A joining participant receives the roster and creates an
initiating connection per entry; participants already in the room learn about
the newcomer through ``peer_joined`` and wait for its offer. The role is decided
once per pair, so both sides can never offer to each other at the same time.
"""

import functools
import logging
from typing import Callable, Dict, Iterable, Optional

from aiortc import MediaStreamTrack

from mesh_rtc.errors import MeshRTCError, SignalingDisconnected, UnknownPeerSignal
from mesh_rtc.media import LocalMediaController, TrackChange
from mesh_rtc.peer import PeerConnection, PeerConnectionState, TransportFactory, create_transport
from mesh_rtc.protocol import (
    Error,
    Offer,
    Payload,
    PeerInfo,
    PeerJoined,
    PeerLeft,
    Roster,
    Signal,
    SignalingMessage,
)

logger = logging.getLogger(__name__)

# Name shown for a participant that offered before it was announced
PLACEHOLDER_NAME = "Remote User"


class MeshTopologyManager:
    """Creates, routes to and tears down the peer connections of one session.

    Attributes:
        peers: Live connections keyed by remote connection id.
        failures: Last error of every connection that closed on failure,
            keyed by connection id. Cleared when the id reappears.
        channel: Signaling channel used to send payloads, set by :meth:`run`.
    """

    def __init__(
        self,
        media: LocalMediaController,
        transport_factory: Optional[TransportFactory] = None,
        ice_servers: Optional[list] = None,
        reconnect_timeout: float = 30.0,
        negotiation_timeout: Optional[float] = None,
        on_change: Optional[Callable[[], None]] = None,
    ):
        self.media = media
        self.transport_factory = transport_factory or functools.partial(
            create_transport, ice_servers
        )
        self.reconnect_timeout = reconnect_timeout
        self.negotiation_timeout = negotiation_timeout
        self.on_change = on_change

        self.peers: Dict[str, PeerConnection] = {}
        self.failures: Dict[str, MeshRTCError] = {}
        self.channel = None

        media.add_listener(self.on_local_track_changed)

    def _notify(self) -> None:
        if self.on_change is not None:
            self.on_change()

    # ===== Peer bookkeeping =====

    def _create_peer(self, info: PeerInfo, initiator: bool) -> PeerConnection:
        peer = PeerConnection(
            connection_id=info.connection_id,
            display_name=info.display_name or PLACEHOLDER_NAME,
            initiator=initiator,
            send_signal=self._send_signal,
            transport_factory=self.transport_factory,
            local_tracks=list(self.media.tracks.values()),
            on_change=self._on_peer_change,
            reconnect_timeout=self.reconnect_timeout,
            negotiation_timeout=self.negotiation_timeout,
        )
        self.failures.pop(info.connection_id, None)
        self.peers[info.connection_id] = peer
        role = "initiator" if initiator else "answerer"
        logger.info(f"Created connection to {peer.display_name} ({info.connection_id}) as {role}")
        peer.start()
        self._notify()
        return peer

    def _on_peer_change(self, peer: PeerConnection) -> None:
        if peer.state is PeerConnectionState.CLOSED:
            if self.peers.get(peer.connection_id) is peer:
                del self.peers[peer.connection_id]
                logger.info(f"Removed connection {peer.connection_id} ({len(self.peers)} remaining)")
            if peer.last_error is not None:
                self.failures[peer.connection_id] = peer.last_error
        self._notify()

    async def _send_signal(self, connection_id: str, payload: Payload) -> None:
        if self.channel is None:
            raise SignalingDisconnected("No signaling channel attached")
        await self.channel.send(Signal(payload=payload, to=connection_id))

    # ===== Membership events =====

    def on_roster(self, peers: Iterable[PeerInfo]) -> None:
        """Initiate toward every participant already in the room."""
        peers = list(peers)
        logger.info(f"Roster received with {len(peers)} peer(s)")
        for info in peers:
            if info.connection_id in self.peers:
                logger.debug(f"Already connected to {info.connection_id}, skipping")
                continue
            self._create_peer(info, initiator=True)

    def on_peer_joined(self, info: PeerInfo) -> None:
        """Prepare to answer a newcomer's offer."""
        existing = self.peers.get(info.connection_id)
        if existing is not None:
            # Its offer got here first; fill in the real name
            if info.display_name and existing.display_name != info.display_name:
                existing.display_name = info.display_name
                self._notify()
            return
        self._create_peer(info, initiator=False)

    def on_signal(self, sender: Optional[str], payload: Payload) -> Optional[UnknownPeerSignal]:
        """Route a negotiation payload to its connection.

        An offer from an unknown sender creates the connection on the spot.

        Returns:
            An UnknownPeerSignal if the payload was dropped, otherwise None.
        """
        if not sender:
            error = UnknownPeerSignal(f"Dropping {type(payload).__name__} without a sender")
            logger.warning(str(error))
            return error

        peer = self.peers.get(sender)
        if peer is None:
            if not isinstance(payload, Offer):
                error = UnknownPeerSignal(
                    f"Dropping {type(payload).__name__} from unknown peer {sender}", sender
                )
                logger.warning(str(error))
                return error
            logger.info(f"Offer from unannounced peer {sender}, creating connection")
            peer = self._create_peer(PeerInfo(sender, PLACEHOLDER_NAME), initiator=False)

        peer.deliver(payload)
        return None

    async def on_peer_left(self, connection_id: str) -> None:
        peer = self.peers.pop(connection_id, None)
        if peer is None:
            logger.debug(f"peer_left for unknown connection {connection_id}, ignoring")
            return
        logger.info(f"{peer.display_name} ({connection_id}) left")
        await peer.close()
        self._notify()

    def on_local_track_changed(self, track: MediaStreamTrack, change: TrackChange) -> None:
        """Add or remove a local track on every live connection."""
        for peer in list(self.peers.values()):
            if change is TrackChange.ADDED:
                peer.add_local_track(track)
            else:
                peer.remove_local_track(track)

    async def close_all(self) -> None:
        """Close every connection and forget it."""
        peers = list(self.peers.values())
        self.peers.clear()
        for peer in peers:
            await peer.close()
        if peers:
            logger.info(f"Closed {len(peers)} connection(s)")
            self._notify()

    # ===== Message loop =====

    async def dispatch(self, message: SignalingMessage) -> None:
        """Handle one signaling message without waiting on any negotiation."""
        if isinstance(message, Roster):
            self.on_roster(message.peers)
        elif isinstance(message, PeerJoined):
            self.on_peer_joined(message.peer)
        elif isinstance(message, PeerLeft):
            await self.on_peer_left(message.connection_id)
        elif isinstance(message, Signal):
            self.on_signal(message.sender, message.payload)
        elif isinstance(message, Error):
            logger.warning(f"Signaling server reported an error: {message.reason}")
        else:
            logger.warning(f"Ignoring unexpected signaling message: {message!r}")

    async def run(self, channel) -> None:
        """Consume the channel until it ends.

        Raises:
            SignalingDisconnected: If the channel drops.
        """
        self.channel = channel
        async for message in channel:
            await self.dispatch(message)

    async def drain(self) -> None:
        """Wait until every connection has handled its queued messages."""
        for peer in list(self.peers.values()):
            await peer.drain()
