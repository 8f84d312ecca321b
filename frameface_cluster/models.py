"""
Record types shared by the generator, the cache and the clustering engine.

The on‑disk JSON uses the camelCase keys of the cache format
(``topLeft``, ``embeddingFile``, ``noFaces``…); the dataclasses use Python
names and convert at the boundary with ``to_dict``/``from_dict``.
"""

from __future__ import annotations

import datetime as _dt
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


def utc_now_iso() -> str:
    """Current UTC time as an ISO‑8601 string with millisecond precision."""
    now = _dt.datetime.now(_dt.timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _point(value: Any) -> Tuple[float, float]:
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        raise ValueError(f"expected a 2‑element point, got {value!r}")
    return float(value[0]), float(value[1])


@dataclass
class FacePrediction:
    """A single detected face region."""
    top_left: Tuple[float, float]
    bottom_right: Tuple[float, float]
    probability: float
    landmarks: Optional[List[Tuple[float, float]]] = None
    attributes: Optional[Dict[str, str]] = None
    attribute_confidence: Optional[Dict[str, float]] = None

    @property
    def width(self) -> float:
        return self.bottom_right[0] - self.top_left[0]

    @property
    def height(self) -> float:
        return self.bottom_right[1] - self.top_left[1]

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "topLeft": [float(self.top_left[0]), float(self.top_left[1])],
            "bottomRight": [float(self.bottom_right[0]), float(self.bottom_right[1])],
            "probability": float(self.probability),
        }
        if self.landmarks is not None:
            data["landmarks"] = [[float(x), float(y)] for x, y in self.landmarks]
        if self.attributes is not None:
            data["attributes"] = dict(self.attributes)
        if self.attribute_confidence is not None:
            data["attributeConfidence"] = {k: float(v) for k, v in self.attribute_confidence.items()}
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FacePrediction":
        if not isinstance(data, dict):
            raise ValueError("prediction must be an object")
        landmarks = data.get("landmarks")
        return cls(
            top_left=_point(data["topLeft"]),
            bottom_right=_point(data["bottomRight"]),
            probability=float(data["probability"]),
            landmarks=[_point(p) for p in landmarks] if landmarks is not None else None,
            attributes=dict(data["attributes"]) if data.get("attributes") is not None else None,
            attribute_confidence=(
                {k: float(v) for k, v in data["attributeConfidence"].items()}
                if data.get("attributeConfidence") is not None else None
            ),
        )


@dataclass
class FaceEmbedding:
    """Embedding record for one source image with at least one face.

    ``path`` is assigned by the caller; the generator leaves it empty.
    Zero‑face records (``faces == 0``, empty ``embedding``) are only written to
    back ``noFaces`` index entries.
    """
    embedding: List[float]
    faces: int
    predictions: List[FacePrediction]
    path: str = ""
    cached: str = field(default_factory=utc_now_iso)

    @classmethod
    def empty(cls, path: str) -> "FaceEmbedding":
        return cls(embedding=[], faces=0, predictions=[], path=path)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "embedding": [float(v) for v in self.embedding],
            "faces": int(self.faces),
            "cached": self.cached,
            "predictions": [p.to_dict() for p in self.predictions],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FaceEmbedding":
        """Parse a cache payload, raising ``ValueError`` for malformed shapes."""
        if not isinstance(data, dict):
            raise ValueError("embedding payload must be an object")
        embedding = data.get("embedding")
        if not isinstance(embedding, list):
            raise ValueError("'embedding' must be a list")
        predictions = data.get("predictions", [])
        if not isinstance(predictions, list):
            raise ValueError("'predictions' must be a list")
        faces = data.get("faces")
        if not isinstance(faces, int) or isinstance(faces, bool):
            raise ValueError("'faces' must be an integer")
        return cls(
            path=str(data.get("path") or ""),
            embedding=[float(v) for v in embedding],
            faces=faces,
            cached=str(data.get("cached") or ""),
            predictions=[FacePrediction.from_dict(p) for p in predictions],
        )

    @property
    def attributes(self) -> Optional[Dict[str, str]]:
        """Attributes of the first (representative) face, if any."""
        return self.predictions[0].attributes if self.predictions else None

    @property
    def attribute_confidence(self) -> Optional[Dict[str, float]]:
        return self.predictions[0].attribute_confidence if self.predictions else None


@dataclass
class IndexEntry:
    """Index record for one tracked source path."""
    path: str
    mtime: float
    faces: int
    embedding_file: str
    no_faces: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "path": self.path,
            "mtime": self.mtime,
            "faces": self.faces,
            "embeddingFile": self.embedding_file,
        }
        if self.no_faces:
            data["noFaces"] = True
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IndexEntry":
        if not isinstance(data, dict) or not data.get("embeddingFile"):
            raise ValueError("index entry without an embedding file")
        return cls(
            path=str(data["path"]),
            mtime=float(data.get("mtime", 0.0)),
            faces=int(data.get("faces", 0)),
            embedding_file=str(data["embeddingFile"]),
            no_faces=bool(data.get("noFaces", False)),
        )


@dataclass
class CacheIndex:
    """Map of source path to :class:`IndexEntry`.

    ``entries`` preserves insertion order; every consumer that depends on
    ordering (clustering in particular) iterates it in that order.
    """
    entries: Dict[str, IndexEntry] = field(default_factory=dict)
    last_update: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entries": {path: entry.to_dict() for path, entry in self.entries.items()},
            "lastUpdate": self.last_update,
        }

    def ordered_entries(self) -> List[IndexEntry]:
        return list(self.entries.values())
