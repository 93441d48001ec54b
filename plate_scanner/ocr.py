"""
ocr.py — Plate-crop OCR (Tesseract) with preprocessing and validation.

Preprocessing pipeline
──────────────────────
  1. Convert to greyscale.
  2. Adaptive MEAN threshold over a 15 px neighbourhood, so a shadow across
     half the plate doesn't wipe out the characters on that half.
  3. 2×2 morphological close then open — fills pin-holes in strokes, then
     removes isolated speckles.
  4. Flip to dark-on-light if the plate came out inverted.
  5. Upscale ~3× with cubic interpolation (Tesseract likes tall glyphs).
  6. Add a white border (Tesseract struggles when characters touch the edge).

The OCR engine sits behind a tiny interface (OcrEngine) so tests can use a
fake and the rest of the pipeline never imports pytesseract directly.
"""

import abc
import logging
import re
from typing import Optional, Tuple

import cv2
import numpy as np

from .errors import DetectorInitError, DetectorRuntimeError
from .grammar import PlateString, validate
from .proposals import to_gray
from .results import OcrResult

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  OCR engines
# ═══════════════════════════════════════════════════════════════════════════

class OcrEngine(abc.ABC):
    """Text-recognition collaborator.

    ``recognize`` receives a preprocessed binary image plus the allowed
    characters and engine flags, and returns an OcrResult (confidence
    0–1) or None when nothing legible was found.
    """

    @abc.abstractmethod
    def recognize(self, image: np.ndarray, whitelist: str,
                  flags: str) -> Optional[OcrResult]:
        ...

    def check(self) -> str:
        """Raise DetectorInitError if the engine cannot run; else return a version."""
        return "unknown"


class TesseractEngine(OcrEngine):
    """OcrEngine backed by the Tesseract binary via pytesseract."""

    def __init__(self):
        self._tess = None  # lazy-loaded below

    def _pytess(self):
        """Lazy-import pytesseract.

        The module can then be imported on machines without Tesseract
        (e.g. to run the preprocessing tests).
        """
        if self._tess is None:
            import pytesseract
            self._tess = pytesseract
        return self._tess

    def check(self) -> str:
        try:
            tess = self._pytess()
            return str(tess.get_tesseract_version())
        except ImportError as exc:
            raise DetectorInitError(f"pytesseract not installed: {exc}") from exc
        except (OSError, RuntimeError) as exc:
            # TesseractNotFoundError is an EnvironmentError subclass
            raise DetectorInitError(f"Tesseract unavailable: {exc}") from exc

    def recognize(self, image, whitelist, flags):
        tess = self._pytess()
        cfg = f"{flags} -c tessedit_char_whitelist={whitelist}"
        try:
            data = tess.image_to_data(image, config=cfg, output_type=tess.Output.DICT)
        except tess.TesseractNotFoundError as exc:
            raise DetectorRuntimeError(f"Tesseract binary disappeared: {exc}") from exc

        parts, confs = [], []
        for txt, c in zip(data["text"], data["conf"]):
            t = str(txt).strip()
            c = float(c)
            if t and c > 0:  # skip empty strings and "no confidence" rows
                parts.append(t)
                confs.append(c)

        if not parts:
            return None
        return OcrResult("".join(parts), sum(confs) / len(confs) / 100.0)


# ═══════════════════════════════════════════════════════════════════════════
#  Plate reader
# ═══════════════════════════════════════════════════════════════════════════

class PlateReader:
    """Pre-process a plate crop, OCR it and validate the text.

    Args:
        config: Full app config dict — we read "ocr" and "grammar".
        engine: OcrEngine to use (defaults to Tesseract).
    """

    def __init__(self, config: dict, engine: Optional[OcrEngine] = None):
        cfg = config["ocr"]
        self.tess_cfg: str = cfg["tesseract_config"]
        self.whitelist: str = cfg["char_whitelist"]
        self.block_size: int = int(cfg["block_size"]) | 1  # must be odd
        self.offset: float = cfg["threshold_offset"]
        self.kernel: int = cfg["morph_kernel"]
        self.upscale: float = cfg["upscale"]
        self.max_blur: float = cfg["max_blur_variance"]
        self.min_len: int = cfg["min_text_length"]
        self.allow_swaps: bool = config["grammar"]["allow_swaps"]
        self.engine = engine or TesseractEngine()

    def check(self) -> str:
        """Make sure the OCR engine is usable (raises DetectorInitError)."""
        return self.engine.check()

    # ------------------------------------------------------------------ #
    #  Blur detection
    # ------------------------------------------------------------------ #

    @staticmethod
    def blur_score(img: np.ndarray) -> float:
        """Laplacian variance — higher = sharper."""
        g = img if img.ndim == 2 else cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
        return float(cv2.Laplacian(g, cv2.CV_64F).var())

    # ------------------------------------------------------------------ #
    #  Image preprocessing
    # ------------------------------------------------------------------ #

    def preprocess(self, plate: np.ndarray) -> np.ndarray:
        """Prepare a plate crop for OCR.  Returns a new binary image."""
        if plate is None or plate.size == 0:
            return plate

        gray = to_gray(plate)

        th = cv2.adaptiveThreshold(
            gray, 255,
            cv2.ADAPTIVE_THRESH_MEAN_C,
            cv2.THRESH_BINARY,
            self.block_size,
            self.offset,
        )

        kern = np.ones((self.kernel, self.kernel), dtype=np.uint8)
        th = cv2.morphologyEx(th, cv2.MORPH_CLOSE, kern)
        th = cv2.morphologyEx(th, cv2.MORPH_OPEN, kern)

        # Mostly black after thresholding means light text on a dark plate
        white_ratio = np.count_nonzero(th) / th.size
        if white_ratio < 0.3:
            th = cv2.bitwise_not(th)

        if self.upscale and self.upscale != 1.0:
            th = cv2.resize(
                th, None, fx=self.upscale, fy=self.upscale,
                interpolation=cv2.INTER_CUBIC,
            )

        return cv2.copyMakeBorder(th, 10, 10, 10, 10, cv2.BORDER_CONSTANT, value=255)

    # ------------------------------------------------------------------ #
    #  Main OCR entry points
    # ------------------------------------------------------------------ #

    def extract(self, region: np.ndarray) -> Optional[OcrResult]:
        """OCR a region crop.

        Returns:
            OcrResult with the cleaned raw text, or None if the crop was
            empty, too blurry, or produced no usable text.

        Raises:
            DetectorRuntimeError: the OCR engine itself is broken.
        """
        if region is None or region.size == 0:
            return None

        if self.max_blur > 0:
            bscore = self.blur_score(region)
            if bscore < self.max_blur:
                logger.debug("Region too blurry (var=%.1f)", bscore)
                return None

        processed = self.preprocess(region)
        try:
            result = self.engine.recognize(processed, self.whitelist, self.tess_cfg)
        except DetectorRuntimeError:
            raise
        except Exception as exc:
            logger.warning("OCR error: %s", exc)
            return None

        if result is None:
            return None

        text = re.sub(r"[^A-Z0-9-]", "", result.text.upper())
        if len(text.replace("-", "")) < self.min_len:
            logger.debug("OCR text too short: %r", result.text)
            return None

        conf = min(max(result.confidence, 0.0), 1.0)
        return OcrResult(text, conf)

    def validate(self, text: str) -> Optional[PlateString]:
        return validate(text, allow_swaps=self.allow_swaps)

    def read_plate(self, region: np.ndarray) -> Optional[Tuple[PlateString, OcrResult]]:
        """extract() then validate(); None unless both succeed."""
        ocr = self.extract(region)
        if ocr is None:
            return None
        plate = self.validate(ocr.text)
        if plate is None:
            logger.debug("Rejected OCR text: %s (conf=%.2f)", ocr.text, ocr.confidence)
            return None
        return plate, ocr
