"""Error taxonomy for mesh-rtc.

Errors are raised where they happen (signaling channel, capture primitive,
negotiation) and caught at the mesh or session boundary, where they are logged
and stored as state. Nothing here escapes :class:`mesh_rtc.session.CallSession`.
"""

import errno


class MeshRTCError(Exception):
    """Base class for every error raised by mesh-rtc."""

    pass


class SignalingDisconnected(MeshRTCError):
    """Raised when the signaling channel drops or is used after closing.

    Recovered by a full re-join of the room, never by message replay.
    """

    pass


class ProtocolError(MeshRTCError):
    """Raised when a signaling frame cannot be decoded."""

    pass


class NegotiationFailed(MeshRTCError):
    """Raised when an offer/answer exchange is malformed or out of sequence.

    Attributes:
        connection_id: Remote connection the negotiation was running against.
    """

    def __init__(self, message: str, connection_id: str | None = None):
        super().__init__(message)
        self.connection_id = connection_id


class IceFailed(MeshRTCError):
    """Raised when connectivity to a peer could not be established or recovered."""

    def __init__(self, message: str, connection_id: str | None = None):
        super().__init__(message)
        self.connection_id = connection_id


class UnknownPeerSignal(MeshRTCError):
    """Raised for a non-offer signal from a connection that is not tracked."""

    def __init__(self, message: str, connection_id: str | None = None):
        super().__init__(message)
        self.connection_id = connection_id


class MediaCaptureError(MeshRTCError):
    """Base class for local capture failures.

    Attributes:
        device: Human readable device name ("camera", "microphone").
        code: Stable identifier of the failure kind.
    """

    code = "unknown"
    reason = "Unknown error."

    def __init__(self, message: str | None = None, device: str = "media device"):
        self.device = device
        super().__init__(message or f"Unable to access {device}. {self.reason}")


class PermissionDenied(MediaCaptureError):
    code = "permission_denied"
    reason = "Permission denied. Check device permissions."


class DeviceNotFound(MediaCaptureError):
    code = "device_not_found"

    def __init__(self, message: str | None = None, device: str = "media device"):
        self.reason = f"No {device} found. Check if the {device} is connected."
        super().__init__(message, device)


class DeviceBusy(MediaCaptureError):
    code = "device_busy"

    def __init__(self, message: str | None = None, device: str = "media device"):
        self.reason = f"The {device} is in use by another application."
        super().__init__(message, device)


class ConstraintUnsatisfiable(MediaCaptureError):
    code = "constraint_unsatisfiable"

    def __init__(self, message: str | None = None, device: str = "media device"):
        self.reason = f"The {device} does not support the requested settings."
        super().__init__(message, device)


class UnknownCaptureError(MediaCaptureError):
    code = "unknown"


def classify_capture_error(error: Exception, device: str) -> MediaCaptureError:
    """Map a low-level capture exception onto the capture error taxonomy.

    PyAV raises subclasses of the builtin ``OSError`` family when a device
    cannot be opened, so the builtin types are enough to tell the cases apart.

    Args:
        error: Exception raised while opening or reading the device.
        device: Device name used in the resulting message.

    Returns:
        A MediaCaptureError subclass instance with ``__cause__`` left to the caller.
    """
    if isinstance(error, MediaCaptureError):
        return error
    if isinstance(error, PermissionError):
        return PermissionDenied(device=device)
    if isinstance(error, FileNotFoundError):
        return DeviceNotFound(device=device)
    if isinstance(error, OSError) and error.errno == errno.EBUSY:
        return DeviceBusy(device=device)
    if isinstance(error, ValueError):
        return ConstraintUnsatisfiable(device=device)
    detail = str(error) or UnknownCaptureError.reason
    return UnknownCaptureError(f"Unable to access {device}. {detail}", device=device)
