"""Local media capture and track ownership.

The :class:`LocalMediaController` is the only component that opens capture
devices or stops local tracks. Everything else (peer connections, the local
preview) reads its current track set and listens for track changes.

Audio and video are handled independently: enabling or disabling one kind never
touches the running track of the other kind.
"""

import asyncio
import enum
import logging
import platform
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer

from mesh_rtc.config import MediaConfig
from mesh_rtc.errors import (
    DeviceNotFound,
    MediaCaptureError,
    classify_capture_error,
)

logger = logging.getLogger(__name__)

AUDIO = "audio"
VIDEO = "video"

# Human readable device names used in capture error messages
DEVICE_NAMES = {AUDIO: "microphone", VIDEO: "camera"}


class TrackChange(str, enum.Enum):
    ADDED = "added"
    REMOVED = "removed"


TrackListener = Callable[[MediaStreamTrack, TrackChange], None]


@dataclass(frozen=True)
class MediaConstraints:
    """What to capture and how.

    Attributes:
        audio: Capture a microphone track.
        video: Capture a camera track.
        video_width: Ideal capture width.
        video_height: Ideal capture height.
        framerate: Ideal capture frame rate.
        echo_cancellation: Request echo cancellation on the microphone.
        noise_suppression: Request noise suppression on the microphone.
        auto_gain_control: Request automatic gain control on the microphone.
    """

    audio: bool = False
    video: bool = False
    video_width: int = 640
    video_height: int = 480
    framerate: int = 30
    echo_cancellation: bool = True
    noise_suppression: bool = True
    auto_gain_control: bool = True

    @property
    def kinds(self) -> Tuple[str, ...]:
        return tuple(
            kind for kind, wanted in ((AUDIO, self.audio), (VIDEO, self.video)) if wanted
        )


class MediaStream:
    """An ordered group of tracks, used for the local preview and remote media."""

    def __init__(self, stream_id: Optional[str] = None):
        self.id = stream_id or str(uuid.uuid4())
        self._tracks: List[MediaStreamTrack] = []

    def add_track(self, track: MediaStreamTrack) -> None:
        if track not in self._tracks:
            self._tracks.append(track)

    def remove_track(self, track: MediaStreamTrack) -> None:
        if track in self._tracks:
            self._tracks.remove(track)

    def get_tracks(self) -> List[MediaStreamTrack]:
        return list(self._tracks)

    def get_audio_tracks(self) -> List[MediaStreamTrack]:
        return [track for track in self._tracks if track.kind == AUDIO]

    def get_video_tracks(self) -> List[MediaStreamTrack]:
        return [track for track in self._tracks if track.kind == VIDEO]

    def __len__(self) -> int:
        return len(self._tracks)

    def __repr__(self) -> str:
        kinds = ",".join(track.kind for track in self._tracks)
        return f"MediaStream(id={self.id!r}, tracks=[{kinds}])"


class CaptureSource(Protocol):
    """Capture primitive: open devices matching the constraints.

    Implementations raise a :class:`MediaCaptureError` subclass on failure.
    """

    async def capture(self, constraints: MediaConstraints) -> List[MediaStreamTrack]:
        ...


# (device, format) per platform, following the FFmpeg input device names
_PLATFORM_DEVICES = {
    "Linux": {VIDEO: ("/dev/video0", "v4l2"), AUDIO: ("default", "pulse")},
    "Darwin": {VIDEO: ("default:none", "avfoundation"), AUDIO: ("none:default", "avfoundation")},
    "Windows": {VIDEO: ("video=Integrated Camera", "dshow"), AUDIO: ("audio=Microphone", "dshow")},
}


class DeviceCapture:
    """Capture primitive backed by local devices through ``MediaPlayer``.

    Each kind is opened through its own player so that audio and video can be
    started and stopped independently. Stopping the last track of a player
    releases the underlying device.

    FFmpeg input devices expose no echo cancellation, noise suppression or gain
    control switches; those constraints are accepted and not applied.
    """

    def __init__(self, media_config: Optional[MediaConfig] = None, system: Optional[str] = None):
        self.media_config = media_config or MediaConfig()
        self.system = system or platform.system()

    def _device_for(self, kind: str) -> Tuple[str, Optional[str]]:
        defaults = _PLATFORM_DEVICES.get(self.system, {})
        default_device, default_format = defaults.get(kind, (None, None))
        if kind == VIDEO:
            device = self.media_config.video_device or default_device
            fmt = self.media_config.video_format or default_format
        else:
            device = self.media_config.audio_device or default_device
            fmt = self.media_config.audio_format or default_format
        if device is None:
            raise DeviceNotFound(device=DEVICE_NAMES[kind])
        return device, fmt

    def _open(self, kind: str, constraints: MediaConstraints) -> MediaStreamTrack:
        """Open one device and return its track. Blocking."""
        device, fmt = self._device_for(kind)
        options = {}
        if kind == VIDEO:
            options = {
                "video_size": f"{constraints.video_width}x{constraints.video_height}",
                "framerate": str(constraints.framerate),
            }
        logger.info(f"Opening {DEVICE_NAMES[kind]} {device} (format={fmt})")
        player = MediaPlayer(device, format=fmt, options=options)
        track = player.video if kind == VIDEO else player.audio
        if track is None:
            # Opened something, but it does not carry the requested kind
            for other in (player.audio, player.video):
                if other is not None:
                    other.stop()
            raise DeviceNotFound(device=DEVICE_NAMES[kind])
        return track

    async def capture(self, constraints: MediaConstraints) -> List[MediaStreamTrack]:
        loop = asyncio.get_running_loop()
        tracks: List[MediaStreamTrack] = []
        for kind in constraints.kinds:
            try:
                tracks.append(await loop.run_in_executor(None, self._open, kind, constraints))
            except Exception as e:
                for track in tracks:
                    track.stop()
                raise classify_capture_error(e, DEVICE_NAMES[kind]) from e
        return tracks


class LocalMediaController:
    """Owns the local capture devices and the set of outgoing tracks.

    Invariant: a track of a kind exists in :attr:`tracks` if and only if that
    kind is enabled, and there is at most one track per kind. The enabled flags
    are derived from the track set, so the two cannot disagree.

    Attributes:
        tracks: Current local tracks keyed by kind.
        last_error: Most recent capture error, cleared by the next successful enable.
    """

    def __init__(
        self,
        capture: Optional[CaptureSource] = None,
        media_config: Optional[MediaConfig] = None,
    ):
        self.media_config = media_config or MediaConfig()
        self.capture_source: CaptureSource = capture or DeviceCapture(self.media_config)
        self.tracks: Dict[str, MediaStreamTrack] = {}
        self.last_error: Optional[MediaCaptureError] = None

        self._preview = MediaStream()
        self._listeners: List[TrackListener] = []
        # Serializes enable requests so two quick toggles never capture a kind twice
        self._lock = asyncio.Lock()
        # Bumped by stop_all() to discard captures that were in flight
        self._generation = 0

    @property
    def audio_enabled(self) -> bool:
        return AUDIO in self.tracks

    @property
    def video_enabled(self) -> bool:
        return VIDEO in self.tracks

    @property
    def local_preview(self) -> Optional[MediaStream]:
        """Stream of the current local tracks, or None when nothing is captured."""
        return self._preview if len(self._preview) else None

    def add_listener(self, listener: TrackListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: TrackListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, track: MediaStreamTrack, change: TrackChange) -> None:
        for listener in list(self._listeners):
            listener(track, change)

    def constraints_for(self, kinds: Tuple[str, ...]) -> MediaConstraints:
        return MediaConstraints(
            audio=AUDIO in kinds,
            video=VIDEO in kinds,
            video_width=self.media_config.video_width,
            video_height=self.media_config.video_height,
            framerate=self.media_config.framerate,
        )

    async def enable(self, audio: bool = False, video: bool = False) -> Optional[MediaCaptureError]:
        """Start capturing the requested kinds that are not already running.

        Kinds requested together are captured with a single call to the capture
        primitive. Already-enabled kinds are skipped without touching the device.
        On failure nothing is added, the error is stored in :attr:`last_error`
        and returned.

        Returns:
            None on success or no-op, otherwise the capture error.
        """
        async with self._lock:
            wanted = tuple(
                kind
                for kind, requested in ((AUDIO, audio), (VIDEO, video))
                if requested and kind not in self.tracks
            )
            if not wanted:
                return None

            generation = self._generation
            device = " and ".join(DEVICE_NAMES[kind] for kind in wanted)

            try:
                captured = await self.capture_source.capture(self.constraints_for(wanted))
            except Exception as e:
                error = classify_capture_error(e, device)
                logger.warning(f"Capture of {device} failed: {error}")
                self.last_error = error
                return error

            accepted: Dict[str, MediaStreamTrack] = {}
            for track in captured:
                if track.kind in wanted and track.kind not in accepted:
                    accepted[track.kind] = track
                else:
                    # The primitive returned more than was asked for
                    track.stop()

            missing = [kind for kind in wanted if kind not in accepted]
            if missing or generation != self._generation:
                for track in accepted.values():
                    track.stop()
                if missing:
                    error = DeviceNotFound(device=DEVICE_NAMES[missing[0]])
                    logger.warning(f"Capture returned no {missing[0]} track")
                    self.last_error = error
                    return error
                logger.info("Discarding capture that finished after stop_all()")
                return None

            self.last_error = None
            for kind, track in accepted.items():
                self.tracks[kind] = track
                self._preview.add_track(track)
                logger.info(f"Local {kind} track started ({track.id})")
                self._notify(track, TrackChange.ADDED)
            return None

    async def enable_audio(self) -> Optional[MediaCaptureError]:
        return await self.enable(audio=True)

    async def enable_video(self) -> Optional[MediaCaptureError]:
        return await self.enable(video=True)

    def _release(self, kind: str) -> bool:
        track = self.tracks.pop(kind, None)
        if track is None:
            return False
        track.stop()
        self._preview.remove_track(track)
        logger.info(f"Local {kind} track stopped ({track.id})")
        self._notify(track, TrackChange.REMOVED)
        return True

    def disable_audio(self) -> bool:
        """Stop and remove the audio track only. Returns False if it was not running."""
        return self._release(AUDIO)

    def disable_video(self) -> bool:
        """Stop and remove the video track only. Returns False if it was not running."""
        return self._release(VIDEO)

    def stop_all(self) -> None:
        """Stop every local track and reset both kinds to disabled.

        Peer connections stay open; the call continues without outgoing media.
        """
        self._generation += 1
        for kind in list(self.tracks):
            self._release(kind)
