"""
Model provider wrappers.

This module abstracts away the details of loading and running the face models.
A :class:`ModelProvider` exposes three capabilities, each treated as a
deterministic black box by the rest of the pipeline:

- :meth:`ModelProvider.detect` – face boxes, landmarks and confidences;
- :meth:`ModelProvider.embed` – a fixed‑length vector for a preprocessed image;
- :meth:`ModelProvider.classify_attributes` – coarse categorical attributes.

Providers are constructed explicitly and handed to the components that need
them; their models are loaded by :meth:`~ModelProvider.initialize` and released
by :meth:`~ModelProvider.dispose`.  By default InsightFace (``buffalo_l``) is
used for detection and embeddings.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from .attributes import AttributeClassifier, default_attributes
from .config import EMBEDDING_INPUT_SIZE
from .errors import ModelInferenceFailure

logger = logging.getLogger(__name__)


class ModelProvider:
    """Base class for all model providers.

    Subclasses implement :meth:`_load`, :meth:`_unload` and the three
    capabilities.  ``input_size`` is the ``(width, height)`` expected by
    :meth:`embed`.
    """

    input_size: Tuple[int, int] = EMBEDDING_INPUT_SIZE

    def __init__(self) -> None:
        self._ready = False

    @property
    def ready(self) -> bool:
        return self._ready

    def initialize(self) -> "ModelProvider":
        """Load model handles.  Calling it again is a no‑op."""
        if not self._ready:
            self._load()
            self._ready = True
        return self

    def dispose(self) -> None:
        """Release model handles.  The provider may be initialised again."""
        if self._ready:
            self._unload()
            self._ready = False

    def __enter__(self) -> "ModelProvider":
        return self.initialize()

    def __exit__(self, *exc_info: Any) -> None:
        self.dispose()

    def require_ready(self) -> None:
        if not self._ready:
            raise ModelInferenceFailure(f"{type(self).__name__} is not initialised")

    def _load(self) -> None:
        pass

    def _unload(self) -> None:
        pass

    def detect(self, img: np.ndarray) -> List[Dict[str, Any]]:
        """Detect faces in a BGR image.

        Returns a list of dicts with ``topLeft`` and ``bottomRight`` (``[x, y]``
        pixel coordinates), ``probability`` and optionally ``landmarks``.
        """
        raise NotImplementedError

    def embed(self, tensor: np.ndarray) -> np.ndarray:
        """Return the feature vector of an NCHW float32 tensor scaled to [-1, 1]."""
        raise NotImplementedError

    def classify_attributes(self, face_crop: np.ndarray) -> Tuple[Dict[str, str], Dict[str, float]]:
        """Return ``(attributes, confidence)`` for a BGR face crop."""
        return default_attributes()


def _execution_providers(use_gpu: bool) -> List[str]:
    if use_gpu:
        try:
            import onnxruntime as ort
        except ImportError:
            return ["CPUExecutionProvider"]
        if "CUDAExecutionProvider" in ort.get_available_providers():
            return ["CUDAExecutionProvider", "CPUExecutionProvider"]
    return ["CPUExecutionProvider"]


class InsightFaceProvider(ModelProvider):
    """Provider backed by an InsightFace model package.

    Parameters
    ----------
    model_name: str
        Name of the model package to load from InsightFace.  ``"iresnet100"``
        is accepted as an alias of ``buffalo_l`` (glint360k).
    attribute_models: Path, optional
        Directory of ONNX attribute heads, see
        :class:`~frameface_cluster.attributes.AttributeClassifier`.
    use_gpu: bool
        Whether to use CUDA if available; falls back to CPU otherwise.
    det_size: tuple of int
        Detector input resolution.
    det_thresh: float
        Detector score floor.  Kept below the pipeline's own confidence
        filter so that low‑confidence boxes reach the recovery step.
    """

    def __init__(self, model_name: str = "buffalo_l", attribute_models: Optional[Path] = None,
                 use_gpu: bool = True, det_size: Tuple[int, int] = (640, 640),
                 det_thresh: float = 0.3) -> None:
        super().__init__()
        name_map = {"iresnet100": "buffalo_l"}
        self.model_name = name_map.get(model_name, model_name)
        self.attribute_models = attribute_models
        self.use_gpu = use_gpu
        self.det_size = det_size
        self.det_thresh = det_thresh
        self._app = None
        self._det = None
        self._rec = None
        self._attributes: Optional[AttributeClassifier] = None

    def _load(self) -> None:
        from insightface.app import FaceAnalysis

        providers = _execution_providers(self.use_gpu)
        ctx_id = 0 if "CUDAExecutionProvider" in providers else -1
        try:
            app = FaceAnalysis(name=self.model_name, allowed_modules=["detection", "recognition"],
                               providers=providers)
            app.prepare(ctx_id=ctx_id, det_thresh=self.det_thresh, det_size=self.det_size)
        except Exception as exc:
            raise ModelInferenceFailure(
                f"failed to load InsightFace package {self.model_name!r}: {exc}") from exc
        self._app = app
        self._det = app.det_model
        self._rec = app.models["recognition"]
        self.input_size = tuple(self._rec.input_size)
        if self.attribute_models is not None:
            self._attributes = AttributeClassifier.from_directory(self.attribute_models, providers)
        logger.info("Loaded InsightFace package %s (providers: %s)", self.model_name, ", ".join(providers))

    def _unload(self) -> None:
        self._app = None
        self._det = None
        self._rec = None
        self._attributes = None

    def detect(self, img: np.ndarray) -> List[Dict[str, Any]]:
        self.require_ready()
        try:
            bboxes, kpss = self._det.detect(img, max_num=0, metric="default")
        except Exception as exc:
            raise ModelInferenceFailure(f"face detection failed: {exc}") from exc
        results: List[Dict[str, Any]] = []
        for i, row in enumerate(bboxes):
            x1, y1, x2, y2, score = (float(v) for v in row[:5])
            record: Dict[str, Any] = {
                "topLeft": [x1, y1],
                "bottomRight": [x2, y2],
                "probability": score,
            }
            if kpss is not None:
                record["landmarks"] = [[float(x), float(y)] for x, y in kpss[i]]
            results.append(record)
        return results

    def embed(self, tensor: np.ndarray) -> np.ndarray:
        self.require_ready()
        try:
            outputs = self._rec.session.run(self._rec.output_names, {self._rec.input_name: tensor})
        except Exception as exc:
            raise ModelInferenceFailure(f"embedding inference failed: {exc}") from exc
        return np.asarray(outputs[0][0], dtype=np.float32)

    def classify_attributes(self, face_crop: np.ndarray) -> Tuple[Dict[str, str], Dict[str, float]]:
        self.require_ready()
        if self._attributes is None:
            return default_attributes()
        return self._attributes.classify(face_crop)


def get_provider(model_name: str = "buffalo_l", attribute_models: Optional[Path] = None,
                 use_gpu: bool = True) -> ModelProvider:
    """Factory function returning an uninitialised provider for a model name."""
    return InsightFaceProvider(model_name=model_name.lower(), attribute_models=attribute_models,
                               use_gpu=use_gpu)
