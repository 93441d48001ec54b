"""
diagnostics.py — "Why isn't detection working?" report.

Checks the runtime pieces each detector strategy depends on and turns the
findings into plain-language recommendations.  Run it with

    python -m plate_scanner.main --diagnose
"""

import logging
import os
import platform
from typing import List

import cv2
import numpy as np
import requests

logger = logging.getLogger(__name__)


def collect_diagnostics(config: dict) -> dict:
    """Gather environment facts.  Never raises; failures are recorded."""
    info = {
        "python": platform.python_version(),
        "platform": platform.platform(),
        "opencv": cv2.__version__,
        "numpy": np.__version__,
        "camera_backends": _camera_backends(),
        "onnxruntime": _onnxruntime_version(),
        "tesseract": _tesseract_version(),
        "custom_model_present": os.path.isfile(config["custom_model"]["model_path"]),
        "generic_model_present": os.path.isfile(config["generic_model"]["model_path"]),
        "vision_api_key_set": bool(config["remote"]["api_key"]),
        "detector_order": list(config["detectors"]["order"]),
    }
    # Network check last: it is the only one that can take seconds
    info["lookup_reachable"], info["lookup_error"] = _check_url(
        config["lookup"]["api_url"], config["lookup"]["timeout"]
    )
    return info


def recommendations(info: dict) -> List[str]:
    """Advice for each problem found in *info*."""
    out = []
    order = info.get("detector_order", [])

    # Strategies left out of the order are not worth complaining about

    if "remote" in order and not info["vision_api_key_set"]:
        out.append(
            "Remote vision is disabled: set PLATE_SCANNER_VISION_API_KEY "
            "(or OPENAI_API_KEY) to enable the most accurate detector."
        )
    # OCR backs every strategy except remote
    if info["tesseract"] is None:
        out.append(
            "Tesseract OCR not found: install it (apt install tesseract-ocr); "
            "every local detector needs it."
        )
    if info["onnxruntime"] is None and ("custom_model" in order or "generic_model" in order):
        out.append("onnxruntime is not installed: model-based detectors are unavailable.")
    if "generic_model" in order and not info["generic_model_present"]:
        out.append(
            "Generic model file missing: export yolov8n.onnx and set "
            "generic_model.model_path."
        )
    if "custom_model" in order and not info["custom_model_present"]:
        out.append(
            "Custom plate model missing: the custom-model detector will fall "
            "back to region proposals."
        )
    if not info["camera_backends"]:
        out.append("OpenCV reports no camera backends: live capture is unsupported here.")
    if not info["lookup_reachable"]:
        out.append(
            f"Vehicle records backend unreachable ({info['lookup_error']}): "
            "detections will be reported as lookup errors."
        )
    if not out:
        out.append("All checks passed.")
    return out


def log_diagnostics(config: dict) -> dict:
    """Collect, log and return the diagnostics report."""
    info = collect_diagnostics(config)
    logger.info("=== detection diagnostics ===")
    for key, value in info.items():
        logger.info("  %-22s %s", key, value)
    for rec in recommendations(info):
        logger.info("  → %s", rec)
    return info


# ---------------------------------------------------------------------------
# Probes
# ---------------------------------------------------------------------------

def _camera_backends() -> List[str]:
    # Older OpenCV builds have no videoio_registry
    registry = getattr(cv2, "videoio_registry", None)
    if registry is None:
        return []
    return [registry.getBackendName(b) for b in registry.getCameraBackends()]


def _onnxruntime_version():
    try:
        import onnxruntime
    except ImportError:
        return None
    return onnxruntime.__version__


def _tesseract_version():
    try:
        import pytesseract
        return str(pytesseract.get_tesseract_version())
    except (ImportError, OSError, RuntimeError) as exc:
        logger.debug("Tesseract probe failed: %s", exc)
        return None


def _check_url(url: str, timeout: float):
    # Any HTTP status counts; only reachability is checked here
    try:
        requests.head(url, timeout=timeout)
    except requests.RequestException as exc:
        return False, type(exc).__name__
    return True, None
