"""Per-participant peer connection state machine.

One :class:`PeerConnection` exists for every remote participant in the room. It
owns the media transport (an aiortc ``RTCPeerConnection``), runs the offer/answer
exchange, buffers ICE candidates that arrive before a remote description, and
exposes the remote media stream.

States::

    NEW -> NEGOTIATING -> CONNECTED -> RECONNECTING -> CONNECTED
                                                    -> CLOSED
    (any state) -> CLOSED

Only the initiating side of a pair ever creates offers. When the answering side
changes its outgoing tracks it asks the initiator for a fresh offer, so both
sides can never offer at the same time.

All inbound payloads and local track changes pass through a per-peer inbox and
are handled one at a time, in arrival order. A slow negotiation therefore only
ever delays messages for the same peer.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceCandidate,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from mesh_rtc.errors import IceFailed, MeshRTCError, NegotiationFailed, SignalingDisconnected
from mesh_rtc.media import AUDIO, VIDEO, MediaStream, TrackChange
from mesh_rtc.protocol import Answer, IceCandidate, Offer, Payload, RenegotiateRequest

logger = logging.getLogger(__name__)

# Transceiver directions that include receiving, and the direction a
# transceiver narrows to once its sender has no track.
_RECEIVING = ("sendrecv", "recvonly")
_STOP_SENDING = {"sendrecv": "recvonly", "sendonly": "inactive"}


class PeerConnectionState(str, enum.Enum):
    NEW = "new"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


SendSignal = Callable[[str, Payload], Awaitable[None]]
TransportFactory = Callable[[], Any]


def create_transport(ice_servers: Optional[List[Dict[str, Any]]] = None) -> RTCPeerConnection:
    """Create an RTCPeerConnection configured with the given ICE servers.

    Args:
        ice_servers: Dicts accepted by ``RTCIceServer`` (``urls``, ``username``,
            ``credential``). None uses aiortc's defaults; an empty list
            gathers host candidates only.

    Returns:
        A fresh RTCPeerConnection.
    """
    if ice_servers is None:
        logger.warning("No ICE servers configured, using default RTCPeerConnection")
        return RTCPeerConnection()

    ice_server_objects = [RTCIceServer(**server) for server in ice_servers]
    logger.debug(f"Creating RTCPeerConnection with {len(ice_server_objects)} ICE server(s)")
    return RTCPeerConnection(configuration=RTCConfiguration(iceServers=ice_server_objects))


def candidate_from_payload(payload: IceCandidate) -> RTCIceCandidate:
    """Convert a trickled candidate payload into an aiortc candidate."""
    sdp = payload.candidate
    if sdp.startswith("candidate:"):
        sdp = sdp[len("candidate:"):]
    candidate = candidate_from_sdp(sdp)
    candidate.sdpMid = payload.sdp_mid
    candidate.sdpMLineIndex = payload.sdp_mline_index
    return candidate


def payload_from_candidate(candidate: RTCIceCandidate) -> IceCandidate:
    """Convert a locally gathered aiortc candidate into a signal payload."""
    return IceCandidate(
        candidate=f"candidate:{candidate_to_sdp(candidate)}",
        sdp_mid=candidate.sdpMid,
        sdp_mline_index=candidate.sdpMLineIndex,
    )


@dataclass(frozen=True)
class _StartNegotiation:
    pass


@dataclass(frozen=True)
class _LocalTrackChange:
    track: MediaStreamTrack
    change: TrackChange


class PeerConnection:
    """Connection to one remote participant.

    Attributes:
        connection_id: Signaling-assigned id of the remote connection.
        display_name: Remote participant's display name.
        initiator: Whether this side creates the offers. Fixed at creation.
        state: Current PeerConnectionState.
        remote_stream: Remote media, None until the first remote track arrives.
        pending_candidates: Candidates received before any remote description.
        last_error: Failure that closed this connection, if any.
        transport: The underlying RTCPeerConnection (or compatible object).
    """

    def __init__(
        self,
        connection_id: str,
        display_name: str,
        initiator: bool,
        send_signal: SendSignal,
        transport_factory: TransportFactory = create_transport,
        local_tracks: Iterable[MediaStreamTrack] = (),
        on_change: Optional[Callable[["PeerConnection"], None]] = None,
        reconnect_timeout: float = 30.0,
        negotiation_timeout: Optional[float] = None,
    ):
        self.connection_id = connection_id
        self.display_name = display_name
        self.initiator = initiator
        self.state = PeerConnectionState.NEW
        self.remote_stream: Optional[MediaStream] = None
        self.pending_candidates: List[IceCandidate] = []
        self.last_error: Optional[MeshRTCError] = None
        self.reconnect_timeout = reconnect_timeout
        self.negotiation_timeout = negotiation_timeout

        self._send_signal = send_signal
        self._on_change = on_change

        # Negotiation bookkeeping
        self._remote_description_set = False
        self._offer_in_flight = False
        self._renegotiation_wanted = False
        self._media_observed = False

        self._inbox: asyncio.Queue = asyncio.Queue()
        self._worker_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._negotiation_task: Optional[asyncio.Task] = None

        self.transport = transport_factory()
        self.transport.on("track", self._on_track)
        self.transport.on("icecandidate", self._on_ice_candidate)
        self.transport.on("iceconnectionstatechange", self._on_ice_connection_state_change)

        # track id -> RTCRtpSender
        self._senders: Dict[str, Any] = {}
        local_tracks = list(local_tracks)
        for track in local_tracks:
            self._attach(track)

        if initiator:
            # Receive-only slot per missing kind; addTrack later reuses it and
            # widens it to sendrecv.
            sending = {track.kind for track in local_tracks}
            for kind in (AUDIO, VIDEO):
                if kind not in sending:
                    self.transport.addTransceiver(kind, direction="recvonly")

    def __repr__(self) -> str:
        role = "initiator" if self.initiator else "answerer"
        return f"PeerConnection({self.connection_id!r}, {role}, {self.state.value})"

    # ===== Lifecycle =====

    def start(self) -> None:
        """Enter NEGOTIATING; the initiator queues its first offer."""
        if self._worker_task is not None or self.state is PeerConnectionState.CLOSED:
            return
        self._worker_task = asyncio.create_task(
            self._process_inbox(), name=f"peer-{self.connection_id}"
        )
        self._set_state(PeerConnectionState.NEGOTIATING)
        if self.initiator:
            self._inbox.put_nowait(_StartNegotiation())
        else:
            logger.info(f"Waiting for offer from {self.connection_id}")

    def deliver(self, payload: Payload) -> None:
        """Queue an inbound signal payload for in-order processing."""
        if self.state is PeerConnectionState.CLOSED:
            logger.debug(f"Dropping {type(payload).__name__} for closed peer {self.connection_id}")
            return
        self._inbox.put_nowait(payload)

    def add_local_track(self, track: MediaStreamTrack) -> None:
        if self.state is not PeerConnectionState.CLOSED:
            self._inbox.put_nowait(_LocalTrackChange(track, TrackChange.ADDED))

    def remove_local_track(self, track: MediaStreamTrack) -> None:
        if self.state is not PeerConnectionState.CLOSED:
            self._inbox.put_nowait(_LocalTrackChange(track, TrackChange.REMOVED))

    async def drain(self) -> None:
        """Wait until every queued message has been handled."""
        await self._inbox.join()

    async def close(self) -> None:
        """Close the connection and release the transport.

        Safe to call more than once; the transport is closed exactly once.
        In-flight negotiation is cancelled rather than awaited.
        """
        if self.state is PeerConnectionState.CLOSED:
            return

        self._set_state(PeerConnectionState.CLOSED)
        self.pending_candidates.clear()
        self._cancel_task(self._worker_task)
        self._cancel_task(self._reconnect_task)
        self._cancel_task(self._negotiation_task)
        self._discard_inbox()

        logger.info(f"Closing transport to {self.connection_id}")
        try:
            await self.transport.close()
        except Exception as e:
            logger.error(f"Error closing transport to {self.connection_id}: {e}")

    async def _fail(self, error: MeshRTCError) -> None:
        if self.state is PeerConnectionState.CLOSED:
            return
        self.last_error = error
        logger.warning(f"Connection to {self.connection_id} failed: {error}")
        await self.close()

    # ===== State helpers =====

    def _set_state(self, state: PeerConnectionState) -> None:
        if self.state is state:
            return
        previous, self.state = self.state, state
        logger.info(f"Peer {self.connection_id}: {previous.value} -> {state.value}")

        if state is PeerConnectionState.NEGOTIATING:
            self._arm_negotiation_timer()
        else:
            self._cancel_task(self._negotiation_task)
            self._negotiation_task = None
        if state is not PeerConnectionState.RECONNECTING:
            self._cancel_task(self._reconnect_task)
            self._reconnect_task = None

        self._notify()

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change(self)

    @staticmethod
    def _cancel_task(task: Optional[asyncio.Task]) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()

    def _discard_inbox(self) -> None:
        while not self._inbox.empty():
            self._inbox.get_nowait()
            self._inbox.task_done()

    def _arm_negotiation_timer(self) -> None:
        if not self.negotiation_timeout or self._negotiation_task is not None:
            return
        self._negotiation_task = asyncio.create_task(self._negotiation_watchdog())

    async def _negotiation_watchdog(self) -> None:
        await asyncio.sleep(self.negotiation_timeout)
        if self.state is PeerConnectionState.NEGOTIATING:
            self._negotiation_task = None
            await self._fail(
                NegotiationFailed(
                    f"Negotiation with {self.connection_id} did not complete "
                    f"within {self.negotiation_timeout}s",
                    self.connection_id,
                )
            )

    async def _reconnect_watchdog(self) -> None:
        await asyncio.sleep(self.reconnect_timeout)
        if self.state is PeerConnectionState.RECONNECTING:
            self._reconnect_task = None
            await self._fail(
                IceFailed(
                    f"Connection to {self.connection_id} did not recover "
                    f"within {self.reconnect_timeout}s",
                    self.connection_id,
                )
            )

    # ===== Inbox =====

    async def _process_inbox(self) -> None:
        while self.state is not PeerConnectionState.CLOSED:
            item = await self._inbox.get()
            try:
                await self._handle(item)
            except NegotiationFailed as e:
                await self._fail(e)
            except Exception as e:
                await self._fail(
                    NegotiationFailed(
                        f"Negotiation with {self.connection_id} failed: {e}",
                        self.connection_id,
                    )
                )
            finally:
                self._inbox.task_done()

    async def _handle(self, item: Any) -> None:
        if isinstance(item, _StartNegotiation):
            await self._send_offer()
        elif isinstance(item, _LocalTrackChange):
            await self._apply_local_track_change(item)
        elif isinstance(item, Offer):
            await self._handle_offer(item)
        elif isinstance(item, Answer):
            await self._handle_answer(item)
        elif isinstance(item, IceCandidate):
            await self._handle_candidate(item)
        elif isinstance(item, RenegotiateRequest):
            await self._handle_renegotiate_request()
        else:
            logger.warning(f"Ignoring unknown item for {self.connection_id}: {item!r}")

    # ===== Offer / answer =====

    async def _send(self, payload: Payload) -> None:
        try:
            await self._send_signal(self.connection_id, payload)
        except SignalingDisconnected as e:
            logger.warning(
                f"Could not send {type(payload).__name__} to {self.connection_id}: {e}"
            )

    async def _send_offer(self) -> None:
        self._set_state(PeerConnectionState.NEGOTIATING)
        offer = await self.transport.createOffer()
        await self.transport.setLocalDescription(offer)
        self._offer_in_flight = True
        logger.info(f"Sending offer to {self.connection_id}")
        await self._send(Offer(sdp=self.transport.localDescription.sdp))

    async def _handle_offer(self, offer: Offer) -> None:
        if self.initiator:
            raise NegotiationFailed(
                f"Unexpected offer from {self.connection_id}: this side initiates",
                self.connection_id,
            )

        logger.info(f"Received offer from {self.connection_id}")
        self._set_state(PeerConnectionState.NEGOTIATING)
        await self.transport.setRemoteDescription(
            RTCSessionDescription(sdp=offer.sdp, type="offer")
        )
        await self._on_remote_description()

        answer = await self.transport.createAnswer()
        await self.transport.setLocalDescription(answer)
        self._sync_remote_tracks()
        logger.info(f"Sending answer to {self.connection_id}")
        await self._send(Answer(sdp=self.transport.localDescription.sdp))
        self._negotiation_complete()

    async def _handle_answer(self, answer: Answer) -> None:
        if not self.initiator or not self._offer_in_flight:
            raise NegotiationFailed(
                f"Unexpected answer from {self.connection_id}: no offer outstanding",
                self.connection_id,
            )

        logger.info(f"Received answer from {self.connection_id}")
        await self.transport.setRemoteDescription(
            RTCSessionDescription(sdp=answer.sdp, type="answer")
        )
        self._offer_in_flight = False
        await self._on_remote_description()
        self._sync_remote_tracks()
        self._negotiation_complete()

        if self._renegotiation_wanted:
            self._renegotiation_wanted = False
            await self._send_offer()

    def _negotiation_complete(self) -> None:
        # A renegotiation does not produce new track events; fall back to
        # CONNECTED as soon as the exchange ends if media was already flowing.
        if self.state is PeerConnectionState.NEGOTIATING and self._media_observed:
            self._set_state(PeerConnectionState.CONNECTED)

    async def _handle_renegotiate_request(self) -> None:
        if not self.initiator:
            raise NegotiationFailed(
                f"Renegotiation request from {self.connection_id} sent to answering side",
                self.connection_id,
            )
        logger.info(f"{self.connection_id} requested renegotiation")
        await self._renegotiate()

    async def _renegotiate(self) -> None:
        if self.initiator:
            if self._offer_in_flight:
                self._renegotiation_wanted = True
                return
            if not self._remote_description_set:
                # The first offer has not gone out yet and will carry the change
                return
            await self._send_offer()
        else:
            if not self._remote_description_set:
                # The answer to the first offer will carry the change
                return
            self._set_state(PeerConnectionState.NEGOTIATING)
            await self._send(RenegotiateRequest())

    # ===== ICE candidates =====

    async def _handle_candidate(self, payload: IceCandidate) -> None:
        if not self._remote_description_set:
            self.pending_candidates.append(payload)
            logger.debug(
                f"Buffered ICE candidate from {self.connection_id} "
                f"({len(self.pending_candidates)} pending)"
            )
            return
        await self._apply_candidate(payload)

    async def _apply_candidate(self, payload: IceCandidate) -> None:
        try:
            await self.transport.addIceCandidate(candidate_from_payload(payload))
            logger.debug(f"Added ICE candidate from {self.connection_id}")
        except Exception as e:
            logger.warning(f"Failed to add ICE candidate from {self.connection_id}: {e}")

    async def _on_remote_description(self) -> None:
        self._remote_description_set = True
        pending, self.pending_candidates = self.pending_candidates, []
        if pending:
            logger.debug(f"Applying {len(pending)} buffered ICE candidate(s) from {self.connection_id}")
        for payload in pending:
            await self._apply_candidate(payload)

    # ===== Local tracks =====

    def _attach(self, track: MediaStreamTrack) -> bool:
        if track.id in self._senders:
            return False
        self._senders[track.id] = self.transport.addTrack(track)
        return True

    def _detach(self, track: MediaStreamTrack) -> bool:
        sender = self._senders.pop(track.id, None)
        if sender is None:
            return False
        # Keeps the transceiver for a later track of the same kind
        sender.replaceTrack(None)
        for transceiver in self.transport.getTransceivers():
            if transceiver.sender is sender:
                transceiver.direction = _STOP_SENDING.get(
                    transceiver.direction, transceiver.direction
                )
        return True

    async def _apply_local_track_change(self, item: _LocalTrackChange) -> None:
        if item.change is TrackChange.ADDED:
            changed = self._attach(item.track)
        else:
            changed = self._detach(item.track)
        if changed:
            logger.info(
                f"Local {item.track.kind} track {item.change.value} for {self.connection_id}"
            )
            await self._renegotiate()

    # ===== Transport events =====

    def _on_track(self, track: MediaStreamTrack) -> None:
        if self.state is PeerConnectionState.CLOSED:
            return
        logger.info(f"Received {track.kind} track from {self.connection_id}")

        if self.remote_stream is None:
            self.remote_stream = MediaStream(self.connection_id)
        self.remote_stream.add_track(track)
        self._media_observed = True

        @track.on("ended")
        def on_ended():
            if self.remote_stream is not None:
                self.remote_stream.remove_track(track)
                self._notify()

        if self.state is PeerConnectionState.NEGOTIATING:
            self._set_state(PeerConnectionState.CONNECTED)
        else:
            self._notify()

    def _sync_remote_tracks(self) -> None:
        """Match remote_stream to the transceivers that currently receive."""
        changed = False
        for transceiver in self.transport.getTransceivers():
            track = transceiver.receiver.track
            if track is None:
                continue
            if transceiver.currentDirection in _RECEIVING:
                if self.remote_stream is None:
                    self.remote_stream = MediaStream(self.connection_id)
                if track not in self.remote_stream.get_tracks():
                    logger.info(f"{self.connection_id} resumed sending {track.kind}")
                    self.remote_stream.add_track(track)
                    changed = True
                self._media_observed = True
            elif self.remote_stream is not None and track in self.remote_stream.get_tracks():
                logger.info(f"{self.connection_id} stopped sending {track.kind}")
                self.remote_stream.remove_track(track)
                changed = True
        if changed:
            self._notify()

    async def _on_ice_candidate(self, candidate: Optional[RTCIceCandidate]) -> None:
        if candidate is None or self.state is PeerConnectionState.CLOSED:
            return
        await self._send(payload_from_candidate(candidate))

    async def _on_ice_connection_state_change(self) -> None:
        ice_state = self.transport.iceConnectionState
        logger.info(f"ICE state with {self.connection_id}: {ice_state}")

        if self.state is PeerConnectionState.CLOSED:
            return

        # Success states
        if ice_state in ("connected", "completed"):
            self._media_observed = True
            if self.state in (PeerConnectionState.NEGOTIATING, PeerConnectionState.RECONNECTING):
                self._set_state(PeerConnectionState.CONNECTED)
            return

        # Temporary loss - wait for recovery
        if ice_state == "disconnected":
            if self.state is PeerConnectionState.CONNECTED:
                self._set_state(PeerConnectionState.RECONNECTING)
                self._reconnect_task = asyncio.create_task(self._reconnect_watchdog())
            return

        if ice_state == "failed":
            await self._fail(
                IceFailed(f"ICE connectivity with {self.connection_id} failed", self.connection_id)
            )
        elif ice_state == "closed":
            await self.close()
