"""
Face detection post‑processing.

:class:`FaceDetector` turns raw provider detections into clean
:class:`~frameface_cluster.models.FacePrediction` records: coordinates are
validated, probabilities clamped, zero probabilities re‑estimated on the
cropped face, and overlapping boxes removed by non‑max suppression.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, List, Optional

import cv2
import numpy as np

from .config import MIN_DETECTION_CONFIDENCE, NMS_IOU_THRESHOLD, MAX_DETECTIONS, RECOVERY_PADDING
from .embedders import ModelProvider
from .images import crop_region
from .models import FacePrediction

logger = logging.getLogger(__name__)


def _as_probability(value: Any) -> float:
    if isinstance(value, (list, tuple, np.ndarray)):
        value = np.asarray(value).ravel()[0]
    p = float(value)
    if math.isnan(p):
        return 0.0
    return max(0.0, min(1.0, p))


def convert_prediction(raw: Dict[str, Any]) -> Optional[FacePrediction]:
    """Convert one raw provider detection, or ``None`` if its box is unusable."""
    try:
        x1, y1 = (float(v) for v in np.asarray(raw["topLeft"]).ravel()[:2])
        x2, y2 = (float(v) for v in np.asarray(raw["bottomRight"]).ravel()[:2])
        probability = _as_probability(raw.get("probability", 0.0))
    except (KeyError, TypeError, ValueError) as exc:
        logger.warning("Skipping malformed detection %r: %s", raw, exc)
        return None
    if not all(math.isfinite(v) for v in (x1, y1, x2, y2)):
        logger.warning("Skipping detection with non-finite coordinates")
        return None
    landmarks = raw.get("landmarks")
    return FacePrediction(
        top_left=(x1, y1),
        bottom_right=(x2, y2),
        probability=probability,
        landmarks=[(float(x), float(y)) for x, y in landmarks] if landmarks is not None else None,
    )


class FaceDetector:
    """Detect faces through a provider and filter the results.

    Parameters
    ----------
    provider: ModelProvider
        Initialised model provider.
    min_confidence: float
        Detections below this probability are discarded.
    iou_threshold: float
        Overlap above which the less confident of two boxes is suppressed.
    max_faces: int
        Upper bound on the number of faces returned.
    recovery_padding: int
        Pixels added around a face before re‑detecting a zero probability.
    """

    def __init__(self, provider: ModelProvider, min_confidence: float = MIN_DETECTION_CONFIDENCE,
                 iou_threshold: float = NMS_IOU_THRESHOLD, max_faces: int = MAX_DETECTIONS,
                 recovery_padding: int = RECOVERY_PADDING) -> None:
        self.provider = provider
        self.min_confidence = min_confidence
        self.iou_threshold = iou_threshold
        self.max_faces = max_faces
        self.recovery_padding = recovery_padding

    def recover_probability(self, img: np.ndarray, face: FacePrediction) -> float:
        """Re‑run detection on the padded face region and return its probability.

        Some detectors report a probability of exactly zero for tightly
        cropped faces; the first detection inside the region replaces it.
        Returns 0 if nothing is found or anything fails.
        """
        try:
            region = crop_region(img, face.top_left, face.bottom_right, self.recovery_padding)
            if region.size == 0:
                return 0.0
            found = self.provider.detect(np.ascontiguousarray(region))
            if not found:
                return 0.0
            return _as_probability(found[0].get("probability", 0.0))
        except Exception as exc:
            logger.warning("Probability recovery failed: %s", exc)
            return 0.0

    def detect(self, img: np.ndarray) -> List[FacePrediction]:
        """Return the faces of a BGR image, most confident first."""
        faces: List[FacePrediction] = []
        for raw in self.provider.detect(img):
            face = convert_prediction(raw)
            if face is None:
                continue
            if face.probability == 0.0:
                face.probability = self.recover_probability(img, face)
            faces.append(face)
        return self.suppress(faces)

    def suppress(self, faces: List[FacePrediction]) -> List[FacePrediction]:
        """Apply the confidence floor and non‑max suppression."""
        if not faces:
            return []
        boxes = [[f.top_left[0], f.top_left[1], max(0.0, f.width), max(0.0, f.height)] for f in faces]
        scores = [float(f.probability) for f in faces]
        keep = cv2.dnn.NMSBoxes(boxes, scores, self.min_confidence, self.iou_threshold)
        indices = [int(i) for i in np.asarray(keep, dtype=np.int64).ravel()]
        indices.sort(key=lambda i: (-scores[i], i))
        return [faces[i] for i in indices[: self.max_faces]]
