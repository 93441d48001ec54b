"""
results.py — Value types passed between the pipeline stages.

  BoundingBox / CandidateRegion   region proposals (one attempt only)
  OcrResult                        raw text before grammar validation
  DetectionResult                  one successful detector call
  LookupResult                     what the records backend knows
  ScanOutcome                      what the operator is shown
"""

import enum
import time
from dataclasses import dataclass, field
from typing import List, Optional


# ═══════════════════════════════════════════════════════════════════════════
#  Geometry
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned box in pixel coordinates (top-left corner + size)."""

    x: int
    y: int
    width: int
    height: int

    @property
    def x2(self) -> int:
        return self.x + self.width

    @property
    def y2(self) -> int:
        return self.y + self.height

    @property
    def area(self) -> int:
        return self.width * self.height

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height if self.height else 0.0

    def clamp(self, width: int, height: int) -> "BoundingBox":
        """Clip the box to an image of the given size."""
        x1 = min(max(0, self.x), width)
        y1 = min(max(0, self.y), height)
        x2 = min(max(0, self.x2), width)
        y2 = min(max(0, self.y2), height)
        return BoundingBox(x1, y1, x2 - x1, y2 - y1)

    def offset(self, dx: int, dy: int) -> "BoundingBox":
        return BoundingBox(self.x + dx, self.y + dy, self.width, self.height)

    def to_dict(self) -> dict:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass(frozen=True)
class CandidateRegion:
    box: BoundingBox
    confidence: float


# ═══════════════════════════════════════════════════════════════════════════
#  Detection
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class OcrResult:
    text: str
    confidence: float  # 0-1


class DetectorCapability(enum.Enum):
    """Detector strategies, most capable first.

    The value doubles as the config key for thresholds and ordering.
    """

    REMOTE = "remote"
    CUSTOM_MODEL = "custom_model"
    GENERIC_MODEL = "generic_model"
    HEURISTIC_ONLY = "heuristic"


@dataclass(frozen=True)
class DetectionResult:
    """A validated plate found by one detector call.

    ``box`` is None when the strategy has no location to offer.
    """

    plate: str  # always a grammar.PlateString
    detection_confidence: float
    ocr_confidence: float
    box: Optional[BoundingBox]
    capability: DetectorCapability

    def to_dict(self) -> dict:
        return {
            "plate": str(self.plate),
            "detection_confidence": round(self.detection_confidence, 3),
            "ocr_confidence": round(self.ocr_confidence, 3),
            "box": self.box.to_dict() if self.box else None,
            "capability": self.capability.value,
        }


# ═══════════════════════════════════════════════════════════════════════════
#  Lookup + outcome
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class LookupResult:
    """Registration and fine summary for one plate."""

    plate: str
    make: str = ""
    model: str = ""
    year: Optional[int] = None
    owner_name: str = ""
    registration_status: str = ""
    outstanding_violations: int = 0
    fines: List[dict] = field(default_factory=list)

    @property
    def vehicle_model(self) -> str:
        """e.g. "2018 Toyota Corolla"."""
        parts = [str(self.year) if self.year else "", self.make, self.model]
        return " ".join(p for p in parts if p)

    @property
    def has_violations(self) -> bool:
        return self.outstanding_violations > 0

    @property
    def violation_summary(self) -> str:
        n = self.outstanding_violations
        if n == 0:
            return "No Violations"
        return f"{n} Outstanding Violation{'s' if n != 1 else ''}"

    def to_dict(self) -> dict:
        return {
            "plate": self.plate,
            "vehicle": self.vehicle_model,
            "owner_name": self.owner_name,
            "registration_status": self.registration_status,
            "outstanding_violations": self.outstanding_violations,
            "status": self.violation_summary,
        }


class ScanState(enum.Enum):
    IDLE = "idle"
    CAMERA_STARTING = "camera_starting"
    CAMERA_ACTIVE = "camera_active"
    SCANNING = "scanning"
    CAPTURING = "capturing"
    ANALYZING = "analyzing"
    ERROR = "error"


class ScanStatus(enum.Enum):
    REGISTERED = "registered"
    NOT_REGISTERED = "not_registered"
    NO_PLATE_DETECTED = "no_plate_detected"
    DETECTION_ERROR = "detection_error"


@dataclass(frozen=True)
class ScanOutcome:
    """The result of one scan attempt, capture or manual lookup.

    ``plate`` is set for every status except NO_PLATE_DETECTED.
    """

    status: ScanStatus
    plate: Optional[str] = None
    vehicle_info: Optional[LookupResult] = None
    detection: Optional[DetectionResult] = None
    source: str = "scan"  # "scan" | "capture" | "manual"
    message: str = ""
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "plate": str(self.plate) if self.plate else None,
            "vehicle_info": self.vehicle_info.to_dict() if self.vehicle_info else None,
            "detection": self.detection.to_dict() if self.detection else None,
            "source": self.source,
            "message": self.message,
            "timestamp": self.timestamp,
        }
