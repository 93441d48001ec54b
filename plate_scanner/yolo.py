"""
yolo.py — YOLOv8 object detection via ONNX Runtime.

Used by two strategies:
  - the generic-model strategy, with the stock COCO ``yolov8n.onnx`` to
    find vehicles (the plate search then runs inside each vehicle box);
  - the custom-model strategy, with a single-class plate model exported
    the same way.

Export once with ultralytics installed::

    python3 -c "from ultralytics import YOLO; YOLO('yolov8n.pt').export(format='onnx')"

Output layout: (1, 4 + num_classes, N) — cx, cy, w, h in letter-boxed
input pixels followed by one score per class.
"""

import logging
import os
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

import cv2
import numpy as np

from .errors import DetectorInitError, DetectorRuntimeError
from .results import BoundingBox

logger = logging.getLogger(__name__)

COCO_VEHICLE_LABELS = {2: "car", 3: "motorcycle", 5: "bus", 7: "truck"}


@dataclass(frozen=True)
class ModelDetection:
    box: BoundingBox
    confidence: float
    class_id: int
    label: str


class YoloOnnxModel:
    """Letter-box, run and decode a YOLOv8 ONNX export.

    Args:
        model_path: Path to the ``.onnx`` file.
        confidence: Minimum class score to keep.
        classes:    Class IDs to keep (None = all).
        input_size: Square network input resolution.
        labels:     Optional class-ID → name map for readable results.
    """

    # NMS IoU threshold for overlapping boxes
    _NMS_IOU = 0.45

    def __init__(
        self,
        model_path: str,
        confidence: float = 0.4,
        classes: Optional[Iterable[int]] = None,
        input_size: int = 640,
        labels: Optional[dict] = None,
    ):
        self.model_path = model_path
        self.conf = confidence
        self.classes = set(classes) if classes is not None else None
        self.imgsz = input_size
        self.labels = labels or {}
        self._session = None

    @property
    def loaded(self) -> bool:
        return self._session is not None

    def load(self):
        """Create the inference session and run one warm-up pass.

        Raises:
            DetectorInitError: missing file, missing onnxruntime, or a
                model that onnxruntime refuses to load.
        """
        if self._session is not None:
            return
        if not os.path.isfile(self.model_path):
            raise DetectorInitError(f"Model file not found: {self.model_path}")

        try:
            import onnxruntime as ort
        except ImportError as exc:
            raise DetectorInitError(f"onnxruntime not installed: {exc}") from exc

        try:
            self._session = ort.InferenceSession(
                self.model_path,
                providers=["CPUExecutionProvider"],
            )
            dummy = np.zeros((self.imgsz, self.imgsz, 3), dtype=np.uint8)
            self._infer(dummy)
        except Exception as exc:
            self._session = None
            raise DetectorInitError(f"Cannot load {self.model_path}: {exc}") from exc
        logger.info("ONNX model loaded and warmed up: %s", self.model_path)

    def close(self):
        self._session = None

    # ------------------------------------------------------------------ #
    #  Preprocessing
    # ------------------------------------------------------------------ #

    def _preprocess(self, image: np.ndarray) -> Tuple[np.ndarray, float, int, int]:
        """Letter-box *image* to a square NCHW float tensor.

        Returns:
            (blob, ratio, pad_x, pad_y)
        """
        if image.ndim == 2:
            image = cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
        h, w = image.shape[:2]
        ratio = self.imgsz / max(h, w)
        new_w, new_h = int(w * ratio), int(h * ratio)

        resized = cv2.resize(image, (new_w, new_h), interpolation=cv2.INTER_LINEAR)

        pad_x = (self.imgsz - new_w) // 2
        pad_y = (self.imgsz - new_h) // 2
        padded = np.full((self.imgsz, self.imgsz, 3), 114, dtype=np.uint8)
        padded[pad_y : pad_y + new_h, pad_x : pad_x + new_w] = resized

        # HWC → CHW, BGR → RGB, 0-255 → 0-1, add batch dim
        blob = padded[:, :, ::-1].transpose(2, 0, 1).astype(np.float32) / 255.0
        return blob[np.newaxis, ...], ratio, pad_x, pad_y

    # ------------------------------------------------------------------ #
    #  Postprocessing
    # ------------------------------------------------------------------ #

    def _postprocess(
        self, output: np.ndarray, ratio: float, pad_x: int, pad_y: int,
        orig_h: int, orig_w: int,
    ) -> List[ModelDetection]:
        """Decode the raw output tensor and apply NMS."""
        preds = output[0].T  # (N, 4 + classes)
        if preds.shape[1] < 5:
            raise DetectorRuntimeError(f"Unexpected model output shape {output.shape}")

        cx, cy, bw, bh = preds[:, 0], preds[:, 1], preds[:, 2], preds[:, 3]
        class_scores = preds[:, 4:]

        class_ids = np.argmax(class_scores, axis=1)
        confidences = class_scores[np.arange(len(class_ids)), class_ids]

        keep = confidences >= self.conf
        if self.classes is not None:
            keep &= np.isin(class_ids, list(self.classes))

        cx, cy, bw, bh = cx[keep], cy[keep], bw[keep], bh[keep]
        confidences = confidences[keep]
        class_ids = class_ids[keep]
        if len(confidences) == 0:
            return []

        # Centre-wh → corners, then undo the letter-box
        x1 = (cx - bw / 2 - pad_x) / ratio
        y1 = (cy - bh / 2 - pad_y) / ratio
        x2 = (cx + bw / 2 - pad_x) / ratio
        y2 = (cy + bh / 2 - pad_y) / ratio

        boxes_for_nms = np.stack([x1, y1, x2 - x1, y2 - y1], axis=1).tolist()
        indices = cv2.dnn.NMSBoxes(
            boxes_for_nms, confidences.tolist(), self.conf, self._NMS_IOU,
        )
        if len(indices) == 0:
            return []

        out: List[ModelDetection] = []
        for idx in np.array(indices).flatten():
            i = int(idx)
            bx1 = max(0, int(x1[i]))
            by1 = max(0, int(y1[i]))
            bx2 = min(orig_w, int(x2[i]))
            by2 = min(orig_h, int(y2[i]))
            if bx2 <= bx1 or by2 <= by1:
                continue
            cid = int(class_ids[i])
            out.append(ModelDetection(
                box=BoundingBox(bx1, by1, bx2 - bx1, by2 - by1),
                confidence=float(confidences[i]),
                class_id=cid,
                label=self.labels.get(cid, str(cid)),
            ))
        out.sort(key=lambda d: -d.confidence)
        return out

    # ------------------------------------------------------------------ #
    #  Inference
    # ------------------------------------------------------------------ #

    def _infer(self, image: np.ndarray):
        blob, ratio, pad_x, pad_y = self._preprocess(image)
        input_name = self._session.get_inputs()[0].name
        outputs = self._session.run(None, {input_name: blob})
        return outputs[0], ratio, pad_x, pad_y

    def detect(self, image: np.ndarray) -> List[ModelDetection]:
        """Run the model on a BGR image; detections sorted best first.

        Raises:
            DetectorRuntimeError: the model is not loaded or inference failed.
        """
        if self._session is None:
            raise DetectorRuntimeError("Model used before load()")
        h, w = image.shape[:2]
        try:
            output, ratio, pad_x, pad_y = self._infer(image)
        except Exception as exc:
            raise DetectorRuntimeError(f"Inference failed: {exc}") from exc
        return self._postprocess(output, ratio, pad_x, pad_y, h, w)
