"""
camera.py — Camera sources: live capture (picamera2 / OpenCV) and stills.

How the live source works:
  1. start_camera() opens the device and launches a background thread.
  2. The thread keeps grabbing frames and stores only the LATEST one
     (under a lock).  Older frames are simply overwritten — the scanner
     only ever wants "what the camera sees now".
  3. get_current_frame() hands out an immutable copy, so the capture
     thread can keep overwriting its buffer while a detection runs.

picamera2 vs OpenCV
───────────────────
  - On a Raspberry Pi with a Pi Camera Module, picamera2 talks directly
    to the libcamera stack.
  - Everywhere else OpenCV's VideoCapture works with any USB webcam.
  - Set camera.use_picamera2 = true in config.yaml to try picamera2 first.

Startup failures are reported as CameraError with one of the kinds in
errors.CameraErrorKind so the operator gets a specific hint.
"""

import abc
import itertools
import logging
import os
import threading
import time
from typing import List, Optional, Sequence

import cv2
import numpy as np

from .errors import CameraError, CameraErrorKind
from .frame import Frame

logger = logging.getLogger(__name__)


class CameraSource(abc.ABC):
    """Something that can be started, stopped and asked for a frame."""

    name: str = "camera"

    @abc.abstractmethod
    def start_camera(self):
        """Acquire the device.  Raises CameraError."""

    @abc.abstractmethod
    def stop_camera(self):
        """Release the device.  Safe to call when not started."""

    @abc.abstractmethod
    def get_current_frame(self) -> Optional[Frame]:
        """The most recent frame, or None if nothing has arrived yet."""

    @property
    @abc.abstractmethod
    def is_active(self) -> bool:
        ...


# ═══════════════════════════════════════════════════════════════════════════
#  Live camera
# ═══════════════════════════════════════════════════════════════════════════

class OpenCVCameraSource(CameraSource):
    """Threaded live capture via picamera2 or OpenCV.

    Args:
        config: The full application config dict (we read "camera").
    """

    def __init__(self, config: dict):
        cfg = config["camera"]
        self.resolution = tuple(cfg["resolution"])
        self.fps = cfg["fps"]
        self.use_picamera2 = cfg.get("use_picamera2", False)
        self.opencv_device = cfg.get("opencv_device", 0)
        self.fmt = cfg.get("format", "RGB888")
        self.start_timeout: float = cfg.get("start_timeout", 10.0)

        self._camera = None
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._latest: Optional[np.ndarray] = None
        self._latest_ts = 0.0
        self._first_frame = threading.Event()

    @property
    def name(self) -> str:
        if self._camera and self._camera[0] == "picam":
            return "picamera2"
        return f"opencv:{self.opencv_device}"

    @property
    def is_active(self) -> bool:
        return self._running

    # ------------------------------------------------------------------ #
    #  Start / Stop
    # ------------------------------------------------------------------ #

    def start_camera(self):
        if self._running:
            return

        # Forget any frame from a previous session
        self._first_frame.clear()
        with self._lock:
            self._latest = None

        self._open()
        self._running = True
        self._thread = threading.Thread(target=self._loop, daemon=True, name="camera")
        self._thread.start()

        # Block until the thread has produced something usable
        if not self._first_frame.wait(self.start_timeout):
            self.stop_camera()
            raise CameraError(
                CameraErrorKind.STREAM_TIMEOUT,
                f"No frame from {self.name} within {self.start_timeout:.0f}s",
            )
        logger.info(
            "Camera started  res=%s  fps=%d  backend=%s",
            self.resolution, self.fps, self.name,
        )

    def stop_camera(self):
        self._running = False
        if self._thread:
            self._thread.join(timeout=5)  # the loop notices _running within one frame
            self._thread = None
        self._close()
        logger.info("Camera stopped")

    def get_current_frame(self) -> Optional[Frame]:
        with self._lock:
            img, ts = self._latest, self._latest_ts
        if img is None:
            return None
        # Copy outside the lock; the thread replaces _latest, never mutates it
        return Frame.from_array(img, ts, self.name)

    # ------------------------------------------------------------------ #
    #  Camera initialisation
    # ------------------------------------------------------------------ #

    def _open(self):
        if self.use_picamera2:
            try:
                self._init_picamera2()
                return
            except (ImportError, RuntimeError) as exc:
                logger.warning("picamera2 unavailable (%s), falling back to OpenCV", exc)
        self._init_opencv()

    def _init_picamera2(self):
        """Set up the Raspberry Pi Camera Module via picamera2."""
        from picamera2 import Picamera2

        cam = Picamera2()
        cam_cfg = cam.create_preview_configuration(
            main={"size": self.resolution, "format": self.fmt},
            buffer_count=4,
        )
        cam.configure(cam_cfg)
        cam.start()
        time.sleep(1.0)  # let auto-exposure / white balance settle
        self._camera = ("picam", cam)
        logger.info("picamera2 initialised")

    def _init_opencv(self):
        """Open a webcam via OpenCV and probe one frame."""
        backends = getattr(cv2, "videoio_registry", None)
        if backends is not None and not backends.getCameraBackends():
            raise CameraError(CameraErrorKind.UNSUPPORTED, "OpenCV was built without camera support")

        # Check permissions up front; VideoCapture only says "not opened"
        dev_path = self._device_path()
        if dev_path and os.path.exists(dev_path) and not os.access(dev_path, os.R_OK | os.W_OK):
            raise CameraError(CameraErrorKind.PERMISSION_DENIED, f"No access to {dev_path}")

        try:
            cap = cv2.VideoCapture(self.opencv_device)
        except PermissionError as exc:
            raise CameraError(CameraErrorKind.PERMISSION_DENIED, str(exc)) from exc

        if not cap.isOpened():
            cap.release()
            raise CameraError(
                CameraErrorKind.DEVICE_NOT_FOUND,
                f"Cannot open camera device {self.opencv_device}",
            )

        # Requests only; drivers pick the nearest mode they support
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.resolution[0])
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.resolution[1])
        cap.set(cv2.CAP_PROP_FPS, self.fps)

        # A device that opens but won't deliver is usually held by another app
        ok, _ = cap.read()
        if not ok:
            cap.release()
            raise CameraError(
                CameraErrorKind.DEVICE_BUSY,
                f"Camera device {self.opencv_device} opened but returned no frame",
            )

        self._camera = ("cv", cap)
        logger.info("OpenCV VideoCapture initialised  dev=%s", self.opencv_device)

    def _device_path(self) -> Optional[str]:
        if isinstance(self.opencv_device, int):
            return f"/dev/video{self.opencv_device}"
        if isinstance(self.opencv_device, str) and self.opencv_device.startswith("/dev/"):
            return self.opencv_device
        return None

    def _close(self):
        if self._camera is None:
            return
        kind, obj = self._camera
        try:
            if kind == "picam":
                obj.stop()
                obj.close()
            else:
                obj.release()
        except Exception as exc:
            logger.warning("Error releasing camera: %s", exc)
        self._camera = None

    # ------------------------------------------------------------------ #
    #  Capture loop (runs in background thread)
    # ------------------------------------------------------------------ #

    def _loop(self):
        interval = 1.0 / self.fps
        seq = 0

        while self._running:
            t0 = time.monotonic()

            frame = self._grab()
            if frame is None:
                time.sleep(0.05)  # back off briefly on a dropped frame
                continue

            seq += 1
            with self._lock:
                self._latest = frame
                self._latest_ts = time.time()
            self._first_frame.set()

            # Throttle to the configured fps
            elapsed = time.monotonic() - t0
            if elapsed < interval:
                time.sleep(interval - elapsed)

        logger.info("Capture loop exited after %d frames", seq)

    def _grab(self) -> Optional[np.ndarray]:
        if self._camera is None:
            return None
        kind, obj = self._camera
        try:
            if kind == "picam":
                # picamera2 returns RGB; OpenCV uses BGR
                rgb = obj.capture_array()
                return cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR)
            ok, frame = obj.read()
            return frame if ok else None
        except Exception as exc:
            logger.error("Grab error: %s", exc)
            return None


# ═══════════════════════════════════════════════════════════════════════════
#  Still images
# ═══════════════════════════════════════════════════════════════════════════

class ImageFileSource(CameraSource):
    """Serve still images from disk as if they were a camera.

    Each get_current_frame() call returns the next image, cycling back to
    the first after the last.

    Args:
        paths: Image files (anything cv2.imread understands).
    """

    def __init__(self, paths: Sequence[str]):
        self.paths: List[str] = [str(p) for p in paths]
        self._images: List[np.ndarray] = []
        self._cycle = None
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return "images"

    @property
    def is_active(self) -> bool:
        return bool(self._images)

    def start_camera(self):
        if not self.paths:
            raise CameraError(CameraErrorKind.DEVICE_NOT_FOUND, "No image files given")

        # Decode everything now so a bad file fails start_camera, not a scan
        images = []
        for p in self.paths:
            if not os.path.isfile(p):
                raise CameraError(CameraErrorKind.DEVICE_NOT_FOUND, f"No such image: {p}")
            if not os.access(p, os.R_OK):
                raise CameraError(CameraErrorKind.PERMISSION_DENIED, f"Cannot read {p}")
            img = cv2.imread(p)
            if img is None:
                raise CameraError(CameraErrorKind.UNSUPPORTED, f"Cannot decode image {p}")
            images.append(img)

        self._images = images
        self._cycle = itertools.cycle(range(len(images)))
        logger.info("Image source started with %d image(s)", len(images))

    def stop_camera(self):
        self._images = []
        self._cycle = None

    def get_current_frame(self) -> Optional[Frame]:
        with self._lock:
            if not self._images:
                return None
            i = next(self._cycle)
        return Frame.from_array(self._images[i], source=self.paths[i])


def build_camera(config: dict, images: Optional[Sequence[str]] = None) -> CameraSource:
    """Still-image source when *images* is given, otherwise the live camera."""
    if images:
        return ImageFileSource(images)
    return OpenCVCameraSource(config)
