"""
proposals.py — Classical plate-region proposals (no neural network).

Every detector strategy that runs locally uses this engine.  It looks for
rectangles whose outline shows up strongly in an edge map and whose shape
matches a number plate.

Pipeline
────────
  1. Greyscale (luminance-weighted: 0.299 R + 0.587 G + 0.114 B).
  2. 3×3 Sobel gradients → magnitude → binary edge mask.
  3. 8-connected components of edge pixels.  Tiny blobs are noise.
  4. Bounding box per component, filtered by:
       - aspect ratio   (plates are 2:1 … 5:1)
       - area           (800 … 20 000 px² at 720p)
       - rectangularity (share of the box outline that lies on edges)
  5. Score = (rectangularity + mean edge strength inside the box) / 2.
  6. Non-maximum suppression, best first, capped at a handful of regions.

The engine never invents a region: if nothing clears every filter the
result is an empty list.  It is pure and deterministic; the input pixels
are never modified.
"""

import logging
from typing import List, Optional, Sequence, Union

import cv2
import numpy as np

from .frame import Frame
from .results import BoundingBox, CandidateRegion

logger = logging.getLogger(__name__)


class RegionProposer:
    """Find plate-shaped regions in a frame.

    Args:
        config: Full app config dict — we read the "proposals" section.
    """

    def __init__(self, config: dict):
        cfg = config["proposals"]
        self.edge_threshold: float = cfg["edge_threshold"]
        self.min_contour_length: int = cfg["min_contour_length"]
        self.min_rectangularity: float = cfg["min_rectangularity"]
        self.min_ar: float = cfg["min_aspect_ratio"]
        self.max_ar: float = cfg["max_aspect_ratio"]
        self.min_area: int = cfg["min_area"]
        self.max_area: int = cfg["max_area"]
        self.nms_iou: float = cfg["nms_iou"]
        self.max_regions: int = cfg["max_regions"]

    # ------------------------------------------------------------------ #
    #  Public interface
    # ------------------------------------------------------------------ #

    def propose(self, frame: Union[Frame, np.ndarray]) -> List[CandidateRegion]:
        """Return up to ``max_regions`` candidates, best first."""
        image = frame.pixels if isinstance(frame, Frame) else frame
        if image is None or image.size == 0:
            return []

        gray = to_gray(image)
        mag = gradient_magnitude(gray)
        edges = (mag > self.edge_threshold).astype(np.uint8)
        if not edges.any():
            return []

        candidates = self._candidates(edges, mag)
        kept = non_max_suppression(candidates, self.nms_iou, self.max_regions)
        logger.debug(
            "Proposals: %d candidates → %d after NMS", len(candidates), len(kept)
        )
        return kept

    def propose_within(
        self, frame: Union[Frame, np.ndarray], roi: BoundingBox
    ) -> List[CandidateRegion]:
        """Run :meth:`propose` inside *roi*; boxes come back in frame coords."""
        image = frame.pixels if isinstance(frame, Frame) else frame
        h, w = image.shape[:2]
        roi = roi.clamp(w, h)
        if roi.area == 0:
            return []
        sub = image[roi.y : roi.y2, roi.x : roi.x2]
        return [
            CandidateRegion(r.box.offset(roi.x, roi.y), r.confidence)
            for r in self.propose(sub)
        ]

    # ------------------------------------------------------------------ #
    #  Internal helpers
    # ------------------------------------------------------------------ #

    def _candidates(self, edges: np.ndarray, mag: np.ndarray) -> List[CandidateRegion]:
        """Turn edge components into scored, filtered regions."""
        n, _, stats, _ = cv2.connectedComponentsWithStats(edges, connectivity=8)

        out: List[CandidateRegion] = []
        for i in range(1, n):  # label 0 is the background
            x, y, w, h, count = (int(v) for v in stats[i])
            if count < self.min_contour_length:
                continue

            box = BoundingBox(x, y, w, h)
            if not self._shape_ok(box):
                continue

            rect = rectangularity(edges, box)
            if rect < self.min_rectangularity:
                continue

            strength = edge_strength(mag, box)
            score = (rect + strength) / 2.0
            out.append(CandidateRegion(box, float(min(max(score, 0.0), 1.0))))
        return out

    def _shape_ok(self, box: BoundingBox) -> bool:
        if box.height < 2 or box.width < 2:
            return False
        return (
            self.min_ar <= box.aspect_ratio <= self.max_ar
            and self.min_area <= box.area <= self.max_area
        )


# ═══════════════════════════════════════════════════════════════════════════
#  Image helpers
# ═══════════════════════════════════════════════════════════════════════════

def to_gray(image: np.ndarray) -> np.ndarray:
    """Greyscale copy of a BGR (or already grey) image."""
    if image.ndim == 2:
        return image.copy()
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)


def gradient_magnitude(gray: np.ndarray) -> np.ndarray:
    """3×3 Sobel gradient magnitude as float32."""
    gx = cv2.Sobel(gray, cv2.CV_32F, 1, 0, ksize=3)
    gy = cv2.Sobel(gray, cv2.CV_32F, 0, 1, ksize=3)
    return cv2.magnitude(gx, gy)


def rectangularity(edges: np.ndarray, box: BoundingBox) -> float:
    """Fraction of the box outline that lies on edge pixels."""
    x1, y1, x2, y2 = box.x, box.y, box.x2 - 1, box.y2 - 1
    top = edges[y1, x1 : x2 + 1]
    bottom = edges[y2, x1 : x2 + 1]
    left = edges[y1 + 1 : y2, x1]
    right = edges[y1 + 1 : y2, x2]
    total = top.size + bottom.size + left.size + right.size
    if total == 0:
        return 0.0
    hits = (
        np.count_nonzero(top) + np.count_nonzero(bottom)
        + np.count_nonzero(left) + np.count_nonzero(right)
    )
    return hits / total


def edge_strength(mag: np.ndarray, box: BoundingBox) -> float:
    """Mean gradient magnitude inside *box*, clipped and scaled to 0–1."""
    patch = mag[box.y : box.y2, box.x : box.x2]
    if patch.size == 0:
        return 0.0
    return float(np.clip(patch, 0, 255).mean() / 255.0)


# ═══════════════════════════════════════════════════════════════════════════
#  Non-maximum suppression
# ═══════════════════════════════════════════════════════════════════════════

def iou(a: BoundingBox, b: BoundingBox) -> float:
    """Intersection-over-Union of two boxes (0 = disjoint, 1 = identical)."""
    ix1, iy1 = max(a.x, b.x), max(a.y, b.y)
    ix2, iy2 = min(a.x2, b.x2), min(a.y2, b.y2)
    inter = max(0, ix2 - ix1) * max(0, iy2 - iy1)
    union = a.area + b.area - inter
    return inter / union if union > 0 else 0.0


def non_max_suppression(
    regions: Sequence[CandidateRegion],
    threshold: float,
    limit: Optional[int] = None,
) -> List[CandidateRegion]:
    """Keep the best regions, dropping any that overlap a kept one by > *threshold*.

    Ties are broken top-to-bottom, left-to-right so the output does not
    depend on the input order.
    """
    ordered = sorted(regions, key=lambda r: (-r.confidence, r.box.y, r.box.x))
    kept: List[CandidateRegion] = []
    for r in ordered:
        if limit is not None and len(kept) >= limit:
            break
        if all(iou(r.box, k.box) <= threshold for k in kept):
            kept.append(r)
    return kept
