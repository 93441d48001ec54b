"""
storage.py — Rotating local evidence storage for manual captures.

When an officer presses "capture", the frozen frame and the outcome are
kept on disk so the stop can be documented later.

Evidence structure on disk
──────────────────────────
  evidence/
  ├── 20250601/                          ← one folder per day
  │   ├── 143022_GR-1234-20_frame.jpg    ← captured frame (JPEG, quality 85)
  │   ├── 143022_GR-1234-20_plate.jpg    ← plate crop, when a box is known
  │   └── 143022_GR-1234-20_meta.json    ← ScanOutcome as JSON
  └── …

Captures without a plate are saved as "noplate".

Rotation policy
───────────────
  1. Folders older than max_age_days are deleted entirely.
  2. If total evidence size exceeds max_size_mb, the oldest captures are
     deleted (frame, crop and metadata together) until we're back under
     the limit.
"""

import json
import logging
import shutil
import time
from pathlib import Path

import cv2

from .frame import Frame
from .results import DetectorCapability, ScanOutcome

logger = logging.getLogger(__name__)


class EvidenceStorage:
    """Save captured frames + outcome metadata by date; rotate by age & size.

    Args:
        config: Full app config dict — we read the "storage" section.
    """

    def __init__(self, config: dict):
        cfg = config["storage"]
        self.root = Path(cfg["evidence_dir"])
        self.max_mb = cfg["max_size_mb"]
        self.max_days = cfg["max_age_days"]
        self.root.mkdir(parents=True, exist_ok=True)
        logger.info("Evidence dir: %s", self.root)

    # ------------------------------------------------------------------ #
    #  Saving evidence
    # ------------------------------------------------------------------ #

    def save(self, frame: Frame, outcome: ScanOutcome) -> str:
        """Write the frame, optional plate crop and metadata.

        Returns:
            Path to the saved frame JPEG.
        """
        ts = outcome.timestamp
        day = time.strftime("%Y%m%d", time.localtime(ts))
        hms = time.strftime("%H%M%S", time.localtime(ts))
        label = str(outcome.plate) if outcome.plate else "noplate"

        day_dir = self.root / day
        day_dir.mkdir(exist_ok=True)  # first capture of the day creates it

        # Full frame at moderate quality; the crop is kept sharper below
        fname = f"{hms}_{label}_frame.jpg"
        fpath = day_dir / fname
        cv2.imwrite(str(fpath), frame.pixels, [cv2.IMWRITE_JPEG_QUALITY, 85])

        pname = None
        det = outcome.detection
        # Remote boxes are display-only overlays, not real plate locations
        if (
            det is not None
            and det.box is not None
            and det.box.area > 0
            and det.capability is not DetectorCapability.REMOTE
        ):
            crop = frame.crop(det.box)
            if crop.size:
                pname = f"{hms}_{label}_plate.jpg"
                cv2.imwrite(str(day_dir / pname), crop, [cv2.IMWRITE_JPEG_QUALITY, 90])

        # Filenames are relative so a day folder can be moved as a unit
        info = {
            "datetime": time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(ts)),
            "frame_image": fname,
            "plate_image": pname,
            "frame_source": frame.source,
            **outcome.to_dict(),
        }
        with open(day_dir / f"{hms}_{label}_meta.json", "w") as f:
            json.dump(info, f, indent=2)

        logger.info("Evidence saved: %s", fpath)
        return str(fpath)

    # ------------------------------------------------------------------ #
    #  Cleanup / rotation
    # ------------------------------------------------------------------ #

    def cleanup(self):
        """Run both age-based and size-based cleanup."""
        self._by_age()
        self._by_size()

    def _by_age(self):
        """Delete day folders last touched more than max_age_days ago."""
        cutoff = time.time() - self.max_days * 86400  # 86400 s per day

        for d in sorted(self.root.iterdir()):
            if not d.is_dir():
                continue
            try:
                if d.stat().st_mtime < cutoff:
                    shutil.rmtree(d)  # the whole day goes at once
                    logger.info("Removed old evidence dir %s", d.name)
            except OSError as e:
                logger.warning("Cleanup error %s: %s", d, e)

    def _by_size(self):
        """Delete the oldest captures until evidence fits in max_size_mb.

        Files of one capture share a "<hms>_<label>" prefix and are removed
        together, so no metadata is left pointing at a missing image.
        """
        limit = self.max_mb * 1024 * 1024  # MB → bytes

        # prefix → (newest mtime, [(path, size), ...])
        captures = {}
        total = 0
        for p in self.root.rglob("*"):
            if not p.is_file():
                continue
            try:
                st = p.stat()
            except OSError as e:
                logger.debug("Skipping %s: %s", p, e)
                continue
            key = p.parent / p.name.rsplit("_", 1)[0]
            newest, files = captures.get(key, (0.0, []))
            files.append((p, st.st_size))
            captures[key] = (max(newest, st.st_mtime), files)
            total += st.st_size

        if total <= limit:
            return  # within budget

        # Oldest capture first; stop as soon as we fit
        for key, (_, files) in sorted(captures.items(), key=lambda kv: kv[1][0]):
            if total <= limit:
                break
            for fp, sz in files:
                try:
                    fp.unlink()
                    total -= sz
                except OSError as e:
                    logger.warning("Cannot remove %s: %s", fp, e)
            logger.debug("Rotated out capture %s", key.name)

        # Day folders emptied by the loop above
        for d in self.root.iterdir():
            if d.is_dir() and not any(d.iterdir()):
                d.rmdir()
