"""
fakes.py — Stand-ins for the camera, detectors, OCR engine and lookup.

None of them need hardware, Tesseract, a model file or the network, so the
orchestration logic can be tested anywhere.
"""

import asyncio
from typing import Dict, Optional, Sequence

import numpy as np

from plate_scanner.camera import CameraSource
from plate_scanner.detectors import Detector
from plate_scanner.errors import DetectorInitError
from plate_scanner.frame import Frame
from plate_scanner.grammar import validate
from plate_scanner.lookup import VehicleLookup
from plate_scanner.ocr import OcrEngine
from plate_scanner.results import (
    BoundingBox,
    DetectionResult,
    DetectorCapability,
    LookupResult,
    OcrResult,
)


def plate_image(width=640, height=480, box=(200, 300, 150, 40)) -> np.ndarray:
    """Black frame with one white plate-shaped rectangle."""
    img = np.zeros((height, width, 3), dtype=np.uint8)
    x, y, w, h = box
    img[y : y + h, x : x + w] = 255
    return img


def make_frame(image: Optional[np.ndarray] = None) -> Frame:
    return Frame.from_array(plate_image() if image is None else image, source="test")


def detection(text="GR1234 20", det=0.9, ocr=0.95,
              capability=DetectorCapability.HEURISTIC_ONLY) -> DetectionResult:
    return DetectionResult(
        plate=validate(text),
        detection_confidence=det,
        ocr_confidence=ocr,
        box=BoundingBox(10, 10, 120, 30),
        capability=capability,
    )


class FakeCamera(CameraSource):
    name = "fake"

    def __init__(self, image: Optional[np.ndarray] = None, start_error=None):
        self.image = plate_image() if image is None else image
        self.start_error = start_error
        self.active = False
        self.starts = 0
        self.stops = 0
        self.frames_served = 0

    @property
    def is_active(self):
        return self.active

    def start_camera(self):
        self.starts += 1
        if self.start_error is not None:
            raise self.start_error
        self.active = True

    def stop_camera(self):
        self.stops += 1
        self.active = False

    def get_current_frame(self):
        if not self.active:
            return None
        self.frames_served += 1
        return Frame.from_array(self.image, source="fake")


class FakeDetector(Detector):
    """Scripted detector.

    Args:
        results:    Returned (or raised, for exceptions) one per detect()
                    call; the last entry repeats.
        init_error: Raised from initialize() when set.
        delay:      Seconds each detect() call takes.
        init_delay: Seconds initialize() takes (a slow model load).
    """

    def __init__(self, config, capability=DetectorCapability.HEURISTIC_ONLY,
                 results: Sequence = (None,), init_error: Optional[Exception] = None,
                 delay: float = 0.0, name: str = "fake", init_delay: float = 0.0):
        self.capability = capability
        self.name = name
        super().__init__(config)
        self.results = list(results)
        self.init_error = init_error
        self.delay = delay
        self.init_delay = init_delay
        self.calls = 0
        self.disposals = 0
        self.running = 0
        self.max_running = 0

    async def _acquire(self):
        if self.init_delay:
            await asyncio.sleep(self.init_delay)
        if self.init_error is not None:
            raise self.init_error

    async def _detect(self, frame):
        self.calls += 1
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            item = self.results[min(self.calls - 1, len(self.results) - 1)]
        finally:
            self.running -= 1
        if isinstance(item, BaseException):
            raise item
        return item

    async def _release(self):
        self.disposals += 1


def broken_detector(config, name="broken", capability=DetectorCapability.REMOTE):
    return FakeDetector(
        config, capability, init_error=DetectorInitError(f"{name} unavailable"), name=name,
    )


class FakeLookup(VehicleLookup):
    def __init__(self, registry: Optional[Dict[str, LookupResult]] = None, error=None):
        self.registry = registry or {}
        self.error = error
        self.calls = []

    async def lookup(self, plate):
        self.calls.append(str(plate))
        if self.error is not None:
            raise self.error
        return self.registry.get(str(plate))


class FakeOcrEngine(OcrEngine):
    def __init__(self, text="GR1234-20", confidence=0.9, error=None):
        self.text = text
        self.confidence = confidence
        self.error = error
        self.images = []

    def check(self):
        return "fake-1.0"

    def recognize(self, image, whitelist, flags):
        self.images.append(image)
        if self.error is not None:
            raise self.error
        if self.text is None:
            return None
        return OcrResult(self.text, self.confidence)
