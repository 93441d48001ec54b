"""
detectors.py — The four interchangeable plate-detector strategies.

Every strategy follows the same contract (Detector):

  await initialize()   make ready; idempotent; DetectorInitError on failure
  await detect(frame)  DetectionResult, or None for "nothing found";
                       raises only when the strategy itself is broken
  await dispose()      release resources, back to "not ready"

Strategies, most capable first
──────────────────────────────
  RemoteVisionDetector   remote multimodal model reads the plate directly
  CustomModelDetector    purpose-trained plate model → OCR
                         (degrades to region proposals → OCR without a model)
  GenericModelDetector   COCO YOLO finds vehicles → region proposals inside
                         each vehicle → OCR
  HeuristicDetector      region proposals → OCR, nothing learned

The local strategies are CPU-bound, so their work runs in a worker thread
(asyncio.to_thread) and the event loop stays free while an attempt runs.
"""

import abc
import asyncio
import logging
from typing import List, Optional, Sequence

import numpy as np

from .errors import ConfigError, DetectorInitError, DetectorRuntimeError
from .frame import Frame
from .grammar import validate
from .ocr import PlateReader
from .proposals import RegionProposer, non_max_suppression
from .results import BoundingBox, CandidateRegion, DetectionResult, DetectorCapability
from .vision import VisionServiceClient
from .yolo import COCO_VEHICLE_LABELS, YoloOnnxModel

logger = logging.getLogger(__name__)


class Detector(abc.ABC):
    """Base class for a detector strategy.

    Subclasses implement ``_acquire`` / ``_detect`` / ``_release``; the
    public methods add the readiness bookkeeping.
    """

    capability: DetectorCapability
    name: str = "detector"

    def __init__(self, config: dict):
        self._ready = False
        self.acquisitions = 0  # how many times resources were really acquired

    @property
    def ready(self) -> bool:
        return self._ready

    def __repr__(self):
        return f"<{type(self).__name__} ready={self._ready}>"

    async def initialize(self):
        if self._ready:
            return
        try:
            await self._acquire()
        except DetectorInitError:
            raise
        except Exception as exc:
            raise DetectorInitError(f"{self.name}: {exc}") from exc
        self._ready = True
        self.acquisitions += 1
        logger.info("Detector ready: %s", self.name)

    async def detect(self, frame: Frame) -> Optional[DetectionResult]:
        # The chain treats this as a runtime failure and demotes
        if not self._ready:
            raise DetectorRuntimeError(f"{self.name} used before initialize()")
        return await self._detect(frame)

    async def dispose(self):
        if not self._ready:
            return
        try:
            await self._release()
        finally:
            self._ready = False
            logger.info("Detector disposed: %s", self.name)

    @abc.abstractmethod
    async def _acquire(self):
        ...

    @abc.abstractmethod
    async def _detect(self, frame: Frame) -> Optional[DetectionResult]:
        ...

    async def _release(self):
        pass


# ═══════════════════════════════════════════════════════════════════════════
#  Shared helpers
# ═══════════════════════════════════════════════════════════════════════════

def read_best_region(
    image: np.ndarray,
    regions: Sequence[CandidateRegion],
    reader: PlateReader,
    capability: DetectorCapability,
) -> Optional[DetectionResult]:
    """OCR *regions* in order and return the first one that validates."""
    h, w = image.shape[:2]
    for region in regions:
        # Regions arrive best-first; the first legible plate wins
        box = region.box.clamp(w, h)
        if box.area == 0:
            continue
        crop = image[box.y : box.y2, box.x : box.x2].copy()  # detach from the frame
        hit = reader.read_plate(crop)
        if hit is None:
            continue
        plate, ocr = hit
        return DetectionResult(
            plate=plate,
            detection_confidence=region.confidence,
            ocr_confidence=ocr.confidence,
            box=box,
            capability=capability,
        )
    return None


def passes_gate(result: DetectionResult, thresholds: dict) -> bool:
    """Both confidences must strictly exceed their thresholds."""
    return (
        result.detection_confidence > thresholds["detection"]
        and result.ocr_confidence > thresholds["ocr"]
    )


def overlay_box(width: int, height: int) -> BoundingBox:
    """Plate-shaped box in the lower-centre of a frame (display only)."""
    # 30 % of the frame wide, 4:1 like a plate, centred in the bottom 30 % band
    bw = max(1, int(width * 0.3))
    bh = max(1, min(bw // 4, int(height * 0.3)))
    x = (width - bw) // 2
    y = int(height * 0.7) + (int(height * 0.3) - bh) // 2
    return BoundingBox(x, y, bw, bh).clamp(width, height)


# ═══════════════════════════════════════════════════════════════════════════
#  1. Remote vision service
# ═══════════════════════════════════════════════════════════════════════════

class RemoteVisionDetector(Detector):
    """Send the whole frame to a remote vision model.

    The service only returns text, so confidences are fixed values and
    the overlay box is synthesised (or omitted when
    ``remote.synthesize_overlay`` is false).  That box is never used to
    crop anything.
    """

    capability = DetectorCapability.REMOTE
    name = "remote-vision"

    def __init__(self, config: dict, client: Optional[VisionServiceClient] = None):
        super().__init__(config)
        cfg = config["remote"]
        self.vision = client or VisionServiceClient(config)
        self.det_conf: float = cfg["detection_confidence"]
        self.ocr_conf: float = cfg["ocr_confidence"]
        self.overlay: bool = cfg["synthesize_overlay"]
        self.allow_swaps: bool = config["grammar"]["allow_swaps"]

    async def _acquire(self):
        if not self.vision.configured:
            raise DetectorInitError(
                "No vision API key (set PLATE_SCANNER_VISION_API_KEY)"
            )

    async def _detect(self, frame):
        text = await self.vision.read_plate(frame.pixels)
        if text is None:
            return None

        plate = validate(text, allow_swaps=self.allow_swaps)
        if plate is None:
            logger.debug("Remote reply failed validation: %r", text)
            return None

        box = overlay_box(frame.width, frame.height) if self.overlay else None
        return DetectionResult(plate, self.det_conf, self.ocr_conf, box, self.capability)

    async def _release(self):
        await self.vision.close()


# ═══════════════════════════════════════════════════════════════════════════
#  2. Custom plate model
# ═══════════════════════════════════════════════════════════════════════════

class CustomModelDetector(Detector):
    """Run a purpose-trained plate detector, then OCR its boxes.

    If the model file is missing or won't load, the strategy still comes
    up and uses region proposals in its place.
    """

    capability = DetectorCapability.CUSTOM_MODEL
    name = "custom-model"

    def __init__(
        self,
        config: dict,
        reader: Optional[PlateReader] = None,
        proposer: Optional[RegionProposer] = None,
        model: Optional[YoloOnnxModel] = None,
    ):
        super().__init__(config)
        cfg = config["custom_model"]
        self.reader = reader or PlateReader(config)
        self.proposer = proposer or RegionProposer(config)
        self.model = model or YoloOnnxModel(
            cfg["model_path"],
            confidence=cfg["confidence"],
            input_size=cfg["input_size"],
            labels={0: "plate"},
        )
        self.max_regions: int = config["proposals"]["max_regions"]
        self.using_model = False

    async def _acquire(self):
        # Tesseract is mandatory; the model is not
        await asyncio.to_thread(self.reader.check)
        try:
            await asyncio.to_thread(self.model.load)
            self.using_model = True
        except DetectorInitError as exc:
            logger.warning("Custom plate model unavailable (%s); using region proposals", exc)
            self.using_model = False

    async def _detect(self, frame):
        return await asyncio.to_thread(self._run, frame.pixels)

    def _run(self, image: np.ndarray) -> Optional[DetectionResult]:
        if self.using_model:
            regions = [
                CandidateRegion(d.box, d.confidence)
                for d in self.model.detect(image)[: self.max_regions]
            ]
        else:
            regions = self.proposer.propose(image)
        return read_best_region(image, regions, self.reader, self.capability)

    async def _release(self):
        self.model.close()
        self.using_model = False


# ═══════════════════════════════════════════════════════════════════════════
#  3. Generic object model + region proposals
# ═══════════════════════════════════════════════════════════════════════════

class GenericModelDetector(Detector):
    """Find vehicles with a COCO model, then look for plates inside them.

    A region's confidence is scaled by its vehicle's confidence.  When no
    vehicle is found the whole frame is searched instead.
    """

    capability = DetectorCapability.GENERIC_MODEL
    name = "generic-model"

    def __init__(
        self,
        config: dict,
        reader: Optional[PlateReader] = None,
        proposer: Optional[RegionProposer] = None,
        model: Optional[YoloOnnxModel] = None,
    ):
        super().__init__(config)
        cfg = config["generic_model"]
        self.reader = reader or PlateReader(config)
        self.proposer = proposer or RegionProposer(config)
        self.model = model or YoloOnnxModel(
            cfg["model_path"],
            confidence=cfg["confidence"],
            classes=cfg["vehicle_classes"],
            input_size=cfg["input_size"],
            labels=COCO_VEHICLE_LABELS,
        )
        self.max_vehicles: int = cfg["max_vehicles"]
        self.nms_iou: float = config["proposals"]["nms_iou"]
        self.max_regions: int = config["proposals"]["max_regions"]

    async def _acquire(self):
        await asyncio.to_thread(self.reader.check)
        await asyncio.to_thread(self.model.load)

    async def _detect(self, frame):
        return await asyncio.to_thread(self._run, frame.pixels)

    def _run(self, image: np.ndarray) -> Optional[DetectionResult]:
        vehicles = self.model.detect(image)[: self.max_vehicles]

        if vehicles:
            # Search each vehicle; regions from overlapping vehicles are merged by NMS
            regions = []
            for v in vehicles:
                for r in self.proposer.propose_within(image, v.box):
                    regions.append(CandidateRegion(r.box, r.confidence * v.confidence))
            regions = non_max_suppression(regions, self.nms_iou, self.max_regions)
            logger.debug("%d vehicle(s), %d plate region(s)", len(vehicles), len(regions))
        else:
            # Parked/partial vehicles often go undetected; try the whole frame
            regions = self.proposer.propose(image)

        return read_best_region(image, regions, self.reader, self.capability)

    async def _release(self):
        self.model.close()


# ═══════════════════════════════════════════════════════════════════════════
#  4. Heuristics only
# ═══════════════════════════════════════════════════════════════════════════

class HeuristicDetector(Detector):
    """Region proposals straight into OCR.  Needs nothing but Tesseract."""

    capability = DetectorCapability.HEURISTIC_ONLY
    name = "heuristic"

    def __init__(
        self,
        config: dict,
        reader: Optional[PlateReader] = None,
        proposer: Optional[RegionProposer] = None,
    ):
        super().__init__(config)
        self.reader = reader or PlateReader(config)
        self.proposer = proposer or RegionProposer(config)

    async def _acquire(self):
        await asyncio.to_thread(self.reader.check)

    async def _detect(self, frame):
        return await asyncio.to_thread(self._run, frame.pixels)

    def _run(self, image: np.ndarray) -> Optional[DetectionResult]:
        regions = self.proposer.propose(image)
        return read_best_region(image, regions, self.reader, self.capability)


# ═══════════════════════════════════════════════════════════════════════════
#  Factory
# ═══════════════════════════════════════════════════════════════════════════

def build_detectors(config: dict, reader: Optional[PlateReader] = None) -> List[Detector]:
    """Create the strategies listed in ``detectors.order``, in that order.

    One PlateReader and RegionProposer are shared by all local strategies.
    """
    reader = reader or PlateReader(config)
    proposer = RegionProposer(config)

    # Only strategies named in the order get constructed
    factories = {
        "remote": lambda: RemoteVisionDetector(config),
        "custom_model": lambda: CustomModelDetector(config, reader, proposer),
        "generic_model": lambda: GenericModelDetector(config, reader, proposer),
        "heuristic": lambda: HeuristicDetector(config, reader, proposer),
    }

    detectors = []
    for key in config["detectors"]["order"]:
        if key not in factories:
            raise ConfigError(
                f"Unknown detector {key!r} in detectors.order "
                f"(choose from {', '.join(factories)})"
            )
        detectors.append(factories[key]())
    if not detectors:
        raise ConfigError("detectors.order is empty")
    return detectors
