"""
Categorical face attributes.

Four classifier heads (gender, age group, hair colour, skin tone) are run on a
padded face crop.  Each head is an ONNX model executed with onnxruntime; the
heads take a 224×224 RGB crop scaled to [-1, 1] in NCHW layout.  A category
without a head, or whose head fails, keeps its neutral default so that
unattributed faces can still be clustered on embedding similarity alone.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .images import to_model_input

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"
DEFAULT_CONFIDENCE = 0.5
ATTRIBUTE_INPUT_SIZE = (224, 224)

GENDERS = ("female", "male")
AGE_GROUPS = ("child", "young", "middle", "senior")
HAIR_COLORS = ("black", "brown", "blonde", "red", "gray")
SKIN_TONES = ("light", "medium", "dark")

# category name -> model file stem
HEADS = {
    "gender": "gender",
    "ageGroup": "age",
    "hairColor": "hair",
    "skinTone": "skin",
}

Attributes = Dict[str, str]
Confidence = Dict[str, float]


def default_attributes() -> Tuple[Attributes, Confidence]:
    """Neutral attributes used when classification is unavailable."""
    return ({name: UNKNOWN for name in HEADS},
            {name: DEFAULT_CONFIDENCE for name in HEADS})


def decode_gender(probs: Sequence[float]) -> Tuple[str, float]:
    """Decode a single sigmoid output; values above 0.5 are ``male``."""
    p = float(probs[0])
    return ("male" if p > 0.5 else "female"), abs(p - 0.5) * 2


def decode_argmax(probs: Sequence[float], labels: Sequence[str]) -> Tuple[str, float]:
    """Pick the most likely label of a softmax head."""
    arr = np.asarray(probs, dtype=np.float64).ravel()
    if arr.size != len(labels):
        raise ValueError(f"expected {len(labels)} outputs, got {arr.size}")
    idx = int(np.argmax(arr))
    return labels[idx], float(arr[idx])


_DECODERS = {
    "gender": decode_gender,
    "ageGroup": lambda p: decode_argmax(p, AGE_GROUPS),
    "hairColor": lambda p: decode_argmax(p, HAIR_COLORS),
    "skinTone": lambda p: decode_argmax(p, SKIN_TONES),
}


class AttributeClassifier:
    """Runs the attribute heads that are available.

    Parameters
    ----------
    sessions: dict
        Mapping of category name (``gender``, ``ageGroup``, ``hairColor``,
        ``skinTone``) to an onnxruntime ``InferenceSession``.  Missing
        categories are reported with their defaults.
    """

    def __init__(self, sessions: Dict[str, Any]) -> None:
        unknown = set(sessions) - set(HEADS)
        if unknown:
            raise ValueError(f"unknown attribute heads: {sorted(unknown)}")
        self.sessions = dict(sessions)

    @classmethod
    def from_directory(cls, directory: Path, providers: Optional[List[str]] = None) -> "AttributeClassifier":
        """Load ``<stem>.onnx`` heads found in ``directory``."""
        import onnxruntime as ort

        sessions: Dict[str, Any] = {}
        for name, stem in HEADS.items():
            model_path = Path(directory) / f"{stem}.onnx"
            if not model_path.exists():
                logger.warning("Attribute head %s not found; %s will be reported as %s",
                               model_path, name, UNKNOWN)
                continue
            sessions[name] = ort.InferenceSession(
                str(model_path), providers=providers or ["CPUExecutionProvider"])
        return cls(sessions)

    def classify(self, face_crop: np.ndarray) -> Tuple[Attributes, Confidence]:
        attributes, confidence = default_attributes()
        if not self.sessions or face_crop.size == 0:
            return attributes, confidence
        tensor = to_model_input(face_crop, ATTRIBUTE_INPUT_SIZE)
        for name, session in self.sessions.items():
            try:
                input_name = session.get_inputs()[0].name
                outputs = session.run(None, {input_name: tensor})
                label, conf = _DECODERS[name](np.asarray(outputs[0]).ravel())
            except Exception as exc:
                logger.warning("Attribute head %s failed: %s", name, exc)
                continue
            attributes[name] = label
            confidence[name] = conf
        return attributes, confidence
