"""
Top‑level package for the frameface pipeline.

Turns a directory tree of video frames into a persistent face embedding cache
and groups the cached faces into candidate identities.  The command line
entry point lives in :mod:`frameface_cluster.cli`.

The actual functionality is organised into smaller modules:

- :mod:`frameface_cluster.config` – constants and the run configuration dataclass.
- :mod:`frameface_cluster.errors` – exception hierarchy.
- :mod:`frameface_cluster.models` – face prediction, embedding record and index entry types.
- :mod:`frameface_cluster.embedders` – InsightFace backed model provider.
- :mod:`frameface_cluster.attributes` – ONNX attribute heads and their decoding.
- :mod:`frameface_cluster.detector` – detection post‑processing and non‑max suppression.
- :mod:`frameface_cluster.lru` – bounded in‑memory result cache.
- :mod:`frameface_cluster.images` – frame discovery, decoding, crops and model input.
- :mod:`frameface_cluster.generator` – per‑image embedding generation.
- :mod:`frameface_cluster.similarity` – cosine and attribute similarity.
- :mod:`frameface_cluster.cache` – content‑addressable embedding files and the self‑healing index.
- :mod:`frameface_cluster.clustering` – two‑pass identity clustering.
- :mod:`frameface_cluster.appearances` – per‑episode and per‑character appearance statistics.
- :mod:`frameface_cluster.recognition` – comparison and nearest‑neighbour search.
- :mod:`frameface_cluster.pipeline` – incremental batch indexing of a frame tree.
- :mod:`frameface_cluster.db` – SQLite run history.
- :mod:`frameface_cluster.embeddings_io` – Parquet export of the cache.
- :mod:`frameface_cluster.crops` – face crops of cluster samples.

You can run the pipeline from the command line using the ``frameface`` script
installed by this package.
"""

__all__ = [
    "config",
    "errors",
    "models",
    "embedders",
    "attributes",
    "detector",
    "lru",
    "images",
    "generator",
    "similarity",
    "cache",
    "clustering",
    "appearances",
    "recognition",
    "pipeline",
    "db",
    "embeddings_io",
    "crops",
    "cli",
]
