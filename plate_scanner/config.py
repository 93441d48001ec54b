"""
config.py — Configuration management for plate-scanner.

How it works:
  1. A big dictionary of sensible DEFAULT values lives in this file.
  2. When the app starts it loads your config.yaml and merges your
     values on top of the defaults (so you only need to override what
     you care about).
  3. Environment variables can override the service credentials so they
     never need to live in a file:
       PLATE_SCANNER_VISION_API_KEY   (falls back to OPENAI_API_KEY)
       PLATE_SCANNER_LOOKUP_TOKEN

Typical usage:
    from plate_scanner.config import load_config
    cfg = load_config("config.yaml")
    print(cfg["scan"]["interval_seconds"])
"""

import os
from typing import Optional

import yaml

from .errors import ConfigError

# ---------------------------------------------------------------------------
# DEFAULT_CONFIG
# Every setting the app uses, with a safe default.  Your config.yaml only
# needs to contain the keys you want to change.
# ---------------------------------------------------------------------------
DEFAULT_CONFIG = {
    # ── Camera ────────────────────────────────────────────────────────
    "camera": {
        "resolution": [1280, 720],   # Width x height in pixels
        "fps": 15,                   # Capture rate of the background thread
        "format": "RGB888",          # Pixel format for picamera2
        "use_picamera2": False,      # True = Pi Camera Module via picamera2
        "opencv_device": 0,          # /dev/video0, used when picamera2 is off
        "start_timeout": 10.0,       # Seconds to wait for the first frame
    },

    # ── Scan loop ─────────────────────────────────────────────────────
    "scan": {
        "auto_scan": True,                # Start scanning as soon as the camera is up
        "interval_seconds": 1.5,          # Pause between attempts
        "initial_delay_seconds": 0.5,     # Delay before the very first attempt
        "attempt_timeout_seconds": 8.0,   # Abandon an attempt after this long
        "stats_every": 20,                # Log a STATS line every N attempts
    },

    # ── Region proposals (edge/contour heuristics, no model) ──────────
    "proposals": {
        "edge_threshold": 50,        # Sobel magnitude needed to count as an edge
        "min_contour_length": 20,    # Ignore edge blobs with fewer pixels
        "min_rectangularity": 0.6,   # Fraction of box border lying on edges
        "min_aspect_ratio": 2.0,     # Plate width / height; reject below this
        "max_aspect_ratio": 5.0,     # …and above this
        "min_area": 800,             # Box area in px²
        "max_area": 20000,
        "nms_iou": 0.3,              # Drop boxes overlapping a better one by more
        "max_regions": 5,            # Cap on regions handed to OCR
    },

    # ── OCR (Tesseract) ──────────────────────────────────────────────
    "ocr": {
        "tesseract_config": "--psm 8 --oem 3",
            # --psm 8 = treat image as a single word
            # --oem 3 = use both legacy + LSTM engines
        "char_whitelist": "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789-",
        "block_size": 15,            # Adaptive threshold neighbourhood (odd)
        "threshold_offset": 2,       # Constant subtracted from the local mean
        "morph_kernel": 2,           # Close/open kernel size in pixels
        "upscale": 3.0,              # Resize factor before OCR
        "max_blur_variance": 0.0,    # Laplacian variance.  Below = too blurry.
        "min_text_length": 5,        # Shorter OCR output is treated as noise
    },

    # ── Plate grammar ────────────────────────────────────────────────
    "grammar": {
        "allow_swaps": True,         # Retry with single O/0, I/1 … swaps
    },

    # ── Detector strategies ──────────────────────────────────────────
    "detectors": {
        # Preference order, most capable first.
        "order": ["remote", "custom_model", "generic_model", "heuristic"],
        # Both gates must be strictly exceeded for a result to count.
        "thresholds": {
            "remote":        {"detection": 0.7,  "ocr": 0.8},
            "custom_model":  {"detection": 0.4,  "ocr": 0.5},
            "generic_model": {"detection": 0.3,  "ocr": 0.4},
            "heuristic":     {"detection": 0.35, "ocr": 0.45},
        },
    },

    # ── Remote vision service ────────────────────────────────────────
    "remote": {
        "api_key": "",               # Set via env var PLATE_SCANNER_VISION_API_KEY
        "base_url": None,            # None = OpenAI; any compatible endpoint works
        "model": "gpt-4o-mini",
        "timeout": 15.0,             # HTTP timeout in seconds
        "max_payload_mb": 18,        # Refuse to send larger request bodies
        "jpeg_quality": 80,
        "max_tokens": 20,
        "detection_confidence": 0.85,  # Fixed scores on a structural success
        "ocr_confidence": 0.9,
        "synthesize_overlay": True,  # False = no bounding box for overlays
    },

    # ── Custom plate model (single-class YOLO export) ────────────────
    "custom_model": {
        "model_path": "plates.onnx",
        "confidence": 0.25,
        "input_size": 640,
    },

    # ── Generic object model (COCO YOLOv8-nano) ──────────────────────
    "generic_model": {
        "model_path": "yolov8n.onnx",
        "confidence": 0.4,
        "vehicle_classes": [2, 3, 5, 7],  # COCO: car, motorcycle, bus, truck
        "input_size": 640,
        "max_vehicles": 3,           # Only search plates in the best N vehicles
    },

    # ── Vehicle lookup (records backend) ─────────────────────────────
    "lookup": {
        "api_url": "http://localhost:5000/api",
        "api_token": "",             # Set via env var PLATE_SCANNER_LOOKUP_TOKEN
        "timeout": 10,               # HTTP timeout in seconds
        "cache_seconds": 60,         # Reuse a result for the same plate this long
    },

    # ── Local storage + logging ──────────────────────────────────────
    "storage": {
        "enabled": False,                  # Save manual captures as evidence
        "evidence_dir": "./evidence",
        "max_size_mb": 500,                # Auto-delete oldest when exceeded
        "max_age_days": 7,                 # Auto-delete evidence older than this
        "log_file": "./plate-scanner.log", # Application log file ("" = none)
        "log_level": "INFO",               # DEBUG / INFO / WARNING / ERROR
    },
}


def load_config(path: Optional[str] = None) -> dict:
    """Load configuration from a YAML file and merge with defaults.

    Lookup order when *path* is None:
      1. $PLATE_SCANNER_CONFIG environment variable
      2. ./config.yaml
      3. /etc/plate-scanner/config.yaml

    Args:
        path: Explicit path to a YAML file, or None for auto-discovery.

    Returns:
        A fully-populated config dictionary (defaults + your overrides).

    Raises:
        ConfigError: the file exists but is not valid YAML, or its top
            level is not a mapping.
    """
    config = _deep_copy(DEFAULT_CONFIG)

    if path is None:
        candidates = [
            os.environ.get("PLATE_SCANNER_CONFIG", ""),
            "./config.yaml",
            "/etc/plate-scanner/config.yaml",
        ]
        for c in candidates:
            if c and os.path.isfile(c):
                path = c
                break

    if path and os.path.isfile(path):
        try:
            with open(path, "r") as f:
                user_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
        if not isinstance(user_config, dict):
            raise ConfigError(f"{path}: top level must be a mapping")
        _deep_merge(config, user_config)

    # Environment-variable overrides for secrets
    env_key = (
        os.environ.get("PLATE_SCANNER_VISION_API_KEY")
        or os.environ.get("OPENAI_API_KEY")
    )
    if env_key:
        config["remote"]["api_key"] = env_key

    env_token = os.environ.get("PLATE_SCANNER_LOOKUP_TOKEN")
    if env_token:
        config["lookup"]["api_token"] = env_token

    return config


def thresholds_for(config: dict, key: str) -> dict:
    """Return ``{"detection": x, "ocr": y}`` for the strategy *key*."""
    table = config["detectors"]["thresholds"]
    if key not in table:
        raise ConfigError(f"No confidence thresholds configured for {key!r}")
    return table[key]


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------

def _deep_copy(d: dict) -> dict:
    """Recursively copy a nested dictionary so mutations don't leak."""
    out = {}
    for k, v in d.items():
        if isinstance(v, dict):
            out[k] = _deep_copy(v)
        elif isinstance(v, list):
            out[k] = v.copy()
        else:
            out[k] = v
    return out


def _deep_merge(base: dict, override: dict):
    """Recursively merge *override* into *base* in place.

    Sub-dictionaries are merged; everything else is replaced.
    """
    for k, v in override.items():
        if k in base and isinstance(base[k], dict) and isinstance(v, dict):
            _deep_merge(base[k], v)
        else:
            base[k] = v
