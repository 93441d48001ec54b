"""
errors.py — Exception hierarchy for plate-scanner.

Only two kinds of error ever reach the operator as a blocking failure:

  CameraError          the camera could not be acquired (or died)
  ChainExhaustedError  no detector strategy could be initialised

Everything else is turned into a normal ScanOutcome by the orchestrator,
so a continuous scan never has to tell "broken" apart from "nothing found
yet".  Those errors still show up in the log.
"""

import enum


class PlateScannerError(Exception):
    """Base class for every error raised by this package."""


class ConfigError(PlateScannerError):
    """The configuration file is unreadable or malformed."""


# ---------------------------------------------------------------------------
# Camera
# ---------------------------------------------------------------------------

class CameraErrorKind(enum.Enum):
    PERMISSION_DENIED = "permission_denied"
    DEVICE_NOT_FOUND = "device_not_found"
    DEVICE_BUSY = "device_busy"
    UNSUPPORTED = "unsupported"
    STREAM_TIMEOUT = "stream_timeout"


# Operator-facing text for each kind.
_CAMERA_HINTS = {
    CameraErrorKind.PERMISSION_DENIED: "Camera access was denied. Check device permissions.",
    CameraErrorKind.DEVICE_NOT_FOUND: "No camera found. Connect a camera and retry.",
    CameraErrorKind.DEVICE_BUSY: "Camera is in use by another application.",
    CameraErrorKind.UNSUPPORTED: "Camera capture is not supported on this system.",
    CameraErrorKind.STREAM_TIMEOUT: "Camera did not deliver a frame in time.",
}


class CameraError(PlateScannerError):
    """The camera source could not be started or stopped delivering frames.

    Terminal for the current session until the operator retries.
    """

    def __init__(self, kind: CameraErrorKind, message: str = ""):
        self.kind = kind
        super().__init__(message or _CAMERA_HINTS[kind])

    @property
    def hint(self) -> str:
        return _CAMERA_HINTS[self.kind]


# ---------------------------------------------------------------------------
# Detectors
# ---------------------------------------------------------------------------

class DetectorError(PlateScannerError):
    """Base for failures of a detector strategy."""


class DetectorInitError(DetectorError):
    """A strategy could not be made ready (missing model, no credential …)."""


class DetectorRuntimeError(DetectorError):
    """A ready strategy broke while analysing a frame."""


class ChainExhaustedError(DetectorInitError):
    """Every strategy in the fallback chain failed to initialise."""


class DetectionTimeout(PlateScannerError):
    """A detection attempt did not finish within the attempt timeout."""


# ---------------------------------------------------------------------------
# Remote vision service
# ---------------------------------------------------------------------------

class VisionServiceError(DetectorRuntimeError):
    """Base for remote vision-service failures."""


class VisionAuthError(VisionServiceError):
    """The credential was missing, invalid or not allowed to use the model."""


class PayloadTooLargeError(VisionServiceError):
    """The encoded image exceeds the service's request ceiling."""


class RateLimitedError(VisionServiceError):
    """The service asked us to slow down."""


class VisionTransportError(VisionServiceError):
    """Network failure, timeout or an unexpected server error."""


# ---------------------------------------------------------------------------
# Lookup / orchestration
# ---------------------------------------------------------------------------

class VehicleLookupError(PlateScannerError):
    """The records backend could not be queried."""


class ScanStateError(PlateScannerError):
    """A request is not valid in the orchestrator's current state."""
