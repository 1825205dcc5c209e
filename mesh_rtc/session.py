"""Call session facade.

:class:`CallSession` is the public entry point: join a room, toggle local media,
read snapshots of the call and subscribe to changes. No public method raises;
failures come back as error values and are kept in ``last_error``.

Example::

    session = CallSession()
    await session.join("shared-doc", Identity("u1", "Ada"))
    await session.toggle_video()
    session.subscribe(lambda snapshot: print(snapshot.peers))
    ...
    await session.leave()
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from mesh_rtc.config import Config, get_config
from mesh_rtc.errors import MeshRTCError, SignalingDisconnected
from mesh_rtc.media import CaptureSource, LocalMediaController, MediaStream
from mesh_rtc.mesh import MeshTopologyManager
from mesh_rtc.peer import PeerConnectionState, TransportFactory
from mesh_rtc.protocol import Identity
from mesh_rtc.signaling import SignalingChannel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PeerSnapshot:
    connection_id: str
    display_name: str
    state: PeerConnectionState
    stream: Optional[MediaStream] = None


@dataclass(frozen=True)
class CallSnapshot:
    """Point-in-time view of the call.

    Attributes:
        room_id: Joined room, None when not in a call.
        connected: Whether the signaling channel is currently open.
        local_preview: Stream of the local tracks, None when nothing is captured.
        peers: Live remote participants keyed by connection id.
        failed_peers: Errors of connections that closed on failure.
        last_error: Most recent session-level or capture error.
        audio_enabled: Microphone is capturing.
        video_enabled: Camera is capturing.
    """

    room_id: Optional[str]
    connected: bool
    local_preview: Optional[MediaStream]
    peers: Dict[str, PeerSnapshot] = field(default_factory=dict)
    failed_peers: Dict[str, MeshRTCError] = field(default_factory=dict)
    last_error: Optional[MeshRTCError] = None
    audio_enabled: bool = False
    video_enabled: bool = False


Subscriber = Callable[[CallSnapshot], None]


class CallSession:
    """One participant's membership in one room.

    Each session owns its own media controller, mesh manager and signaling
    channel; several sessions can run side by side in one event loop.

    Args:
        config: Settings to use. Defaults to the global configuration.
        capture: Capture primitive. Defaults to local devices.
        transport_factory: Creates one media transport per peer. Defaults to
            an aiortc RTCPeerConnection with the configured ICE servers.
        channel_factory: Creates a signaling channel. Defaults to a websocket
            channel to the configured signaling server.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        capture: Optional[CaptureSource] = None,
        transport_factory: Optional[TransportFactory] = None,
        channel_factory: Optional[Callable[[], SignalingChannel]] = None,
    ):
        self.config = config or get_config()
        self.media = LocalMediaController(capture, self.config.media)
        self.mesh = MeshTopologyManager(
            self.media,
            transport_factory=transport_factory,
            ice_servers=self.config.ice_servers,
            reconnect_timeout=self.config.reconnect_timeout,
            negotiation_timeout=self.config.negotiation_timeout,
            on_change=self._notify,
        )
        self.channel_factory = channel_factory or (
            lambda: SignalingChannel(self.config.get_websocket_url())
        )

        self.room_id: Optional[str] = None
        self.identity: Optional[Identity] = None
        self.channel = None
        self.last_error: Optional[MeshRTCError] = None

        self._run_task: Optional[asyncio.Task] = None
        self._subscribers: List[Subscriber] = []

        self.media.add_listener(lambda track, change: self._notify())

    # ===== Observation =====

    def snapshot(self) -> CallSnapshot:
        return CallSnapshot(
            room_id=self.room_id,
            connected=self.channel is not None,
            local_preview=self.media.local_preview,
            peers={
                connection_id: PeerSnapshot(
                    connection_id=connection_id,
                    display_name=peer.display_name,
                    state=peer.state,
                    stream=peer.remote_stream,
                )
                for connection_id, peer in self.mesh.peers.items()
            },
            failed_peers=dict(self.mesh.failures),
            last_error=self.last_error,
            audio_enabled=self.media.audio_enabled,
            video_enabled=self.media.video_enabled,
        )

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Call ``callback`` with a fresh snapshot after every change.

        Returns:
            A function that removes the subscription.
        """
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self) -> None:
        if not self._subscribers:
            return
        snapshot = self.snapshot()
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception as e:
                logger.error(f"Snapshot subscriber {callback!r} raised: {e}")

    # ===== Room membership =====

    async def join(
        self, room_id: Optional[str] = None, identity: Optional[Identity] = None
    ) -> Optional[MeshRTCError]:
        """Join a room and start forming the mesh.

        Joining the room the session is already in is a no-op; joining another
        room leaves the current one first.

        Args:
            room_id: Room to join. Defaults to the configured room.
            identity: Local identity. Defaults to an anonymous one.

        Returns:
            None on success, otherwise the error (also stored in last_error).
        """
        room_id = room_id or self.config.default_room
        if self.room_id == room_id and self.channel is not None:
            return None
        if self.room_id is not None:
            await self.leave()

        self.room_id = room_id
        self.identity = identity or Identity(user_id="", display_name="Anonymous")

        error = await self._connect()
        if error is not None:
            self.room_id = None
            self.last_error = error
            self._notify()
            return error

        self.last_error = None
        self._run_task = asyncio.create_task(self._run(), name=f"call-{room_id}")
        self._notify()
        return None

    async def leave(self) -> None:
        """Stop capture, close every connection and leave the room."""
        task, self._run_task = self._run_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

        self.media.stop_all()
        await self.mesh.close_all()
        await self._close_channel()

        if self.room_id is not None:
            logger.info(f"Left room {self.room_id}")
        self.room_id = None
        self.mesh.failures.clear()
        self._notify()

    async def _connect(self) -> Optional[SignalingDisconnected]:
        channel = self.channel_factory()
        try:
            await channel.connect(self.room_id, self.identity)
        except SignalingDisconnected as e:
            logger.warning(f"Could not join room {self.room_id}: {e}")
            return e
        self.channel = channel
        self.mesh.channel = channel
        return None

    async def _close_channel(self) -> None:
        channel, self.channel = self.channel, None
        self.mesh.channel = None
        if channel is None:
            return
        try:
            await channel.close()
        except Exception as e:
            logger.warning(f"Error closing signaling channel: {e}")

    async def _run(self) -> None:
        while True:
            try:
                await self.mesh.run(self.channel)
                return
            except SignalingDisconnected as e:
                logger.warning(f"Signaling lost in room {self.room_id}: {e}")
                self.last_error = e
                await self.mesh.close_all()
                await self._close_channel()
                self._notify()
                if not await self._rejoin():
                    return

    async def _rejoin(self) -> bool:
        """Re-join the room from scratch with bounded retries."""
        attempts = self.config.max_reconnect_attempts
        for attempt in range(1, attempts + 1):
            logger.info(
                f"Re-joining {self.room_id} in {self.config.retry_delay}s "
                f"(attempt {attempt}/{attempts})"
            )
            await asyncio.sleep(self.config.retry_delay)
            error = await self._connect()
            if error is None:
                logger.info(f"Re-joined room {self.room_id}")
                self.last_error = None
                self._notify()
                return True
            self.last_error = error
            self._notify()

        logger.error(f"Giving up on room {self.room_id} after {attempts} attempt(s)")
        # Out of the room; a later join() starts over instead of being a no-op
        self.room_id = None
        self._notify()
        return False

    # ===== Local media =====

    async def toggle_video(self) -> Optional[MeshRTCError]:
        """Turn the camera on or off without touching the microphone.

        Returns:
            None on success, otherwise the capture error (also in last_error).
        """
        self.last_error = None
        if self.media.video_enabled:
            self.media.disable_video()
            return None
        error = await self.media.enable_video()
        if error is not None:
            self.last_error = error
            self._notify()
        return error

    async def toggle_audio(self) -> Optional[MeshRTCError]:
        """Turn the microphone on or off without touching the camera."""
        self.last_error = None
        if self.media.audio_enabled:
            self.media.disable_audio()
            return None
        error = await self.media.enable_audio()
        if error is not None:
            self.last_error = error
            self._notify()
        return error

    async def enable_media(self, audio: bool = True, video: bool = True) -> Optional[MeshRTCError]:
        """Turn on several kinds at once with a single capture request."""
        self.last_error = None
        error = await self.media.enable(audio=audio, video=video)
        if error is not None:
            self.last_error = error
            self._notify()
        return error

    def stop_all(self) -> None:
        """Stop every local track; remote participants stay connected."""
        self.media.stop_all()
        self._notify()
